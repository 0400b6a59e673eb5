"""
Unit tests for QC configuration and the genotype schema.
"""

import numpy as np
import pytest
from pydantic import ValidationError

from outbredqc.config import PipelineConfig, QCThresholds, load_config
from outbredqc.core.exceptions import SchemaValidationError
from outbredqc.core.schemas.genotypes import (
    GenotypeSchema,
    chromosome_mask,
    complete_founder_markers,
    declared_sex,
    founder_strains,
)


@pytest.mark.unit
class TestQCThresholds:
    """Test threshold defaults and validation."""

    def test_defaults(self):
        th = QCThresholds()
        assert th.max_individual_missingness == pytest.approx(0.1997)
        assert th.duplicate_concordance == pytest.approx(0.90)
        assert th.review_concordance == pytest.approx(0.85)
        assert th.min_joint_call_fraction == pytest.approx(0.5)
        assert th.error_lod_cutoff == pytest.approx(2.0)
        assert th.max_marker_error_rate == pytest.approx(0.05)
        assert th.high_drift == pytest.approx(1.5)
        assert th.min_high_drift_markers == 5
        assert th.exclude_sex_discordant is False

    def test_review_above_duplicate_rejected(self):
        with pytest.raises(ValidationError):
            QCThresholds(duplicate_concordance=0.8, review_concordance=0.85)

    def test_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            QCThresholds(max_individual_missingness=1.5)
        with pytest.raises(ValidationError):
            QCThresholds(high_drift=3.0)

    def test_percentile_order_rejected(self):
        with pytest.raises(ValidationError):
            QCThresholds(intensity_low_percentile=99, intensity_high_percentile=1)


@pytest.mark.unit
class TestLoadConfig:
    """Test TOML configuration loading."""

    def test_load_config(self, tmp_path):
        path = tmp_path / "qc.toml"
        path.write_text(
            "[pipeline]\n"
            "error_rate = 0.01\n"
            "max_workers = 2\n"
            'chromosomes = ["1", "2"]\n'
            "\n"
            "[thresholds]\n"
            "max_individual_missingness = 0.1\n"
            "exclude_sex_discordant = true\n"
        )
        config = load_config(path)
        assert isinstance(config, PipelineConfig)
        assert config.error_rate == pytest.approx(0.01)
        assert config.max_workers == 2
        assert config.chromosomes == ["1", "2"]
        assert config.thresholds.max_individual_missingness == pytest.approx(0.1)
        assert config.thresholds.exclude_sex_discordant is True
        # untouched values keep defaults
        assert config.thresholds.duplicate_concordance == pytest.approx(0.90)

    def test_missing_sections_use_defaults(self, tmp_path):
        path = tmp_path / "empty.toml"
        path.write_text("")
        config = load_config(path)
        assert config == PipelineConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.toml")

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text("[pipeline]\nmax_workers = 0\n")
        with pytest.raises(ValidationError):
            load_config(path)


@pytest.mark.unit
class TestGenotypeSchema:
    """Test schema validation and accessors."""

    def test_valid_data_passes(self, tiny_adata):
        GenotypeSchema.validate(tiny_adata, require_founders=True, require_map=True)

    def test_missing_genotype_layer(self, tiny_adata):
        del tiny_adata.layers["GT"]
        with pytest.raises(SchemaValidationError, match="GT"):
            GenotypeSchema.validate(tiny_adata)

    def test_missing_intensity_when_required(self, tiny_adata):
        with pytest.raises(SchemaValidationError, match="intensity"):
            GenotypeSchema.validate(tiny_adata, require_intensity=True)

    def test_unexpected_codes(self, tiny_adata):
        gt = np.asarray(tiny_adata.layers["GT"]).copy()
        gt[0, 0] = 5
        tiny_adata.layers["GT"] = gt
        with pytest.raises(SchemaValidationError, match="unexpected genotype codes"):
            GenotypeSchema.validate(tiny_adata)

    def test_schema_lists_required_layer(self):
        schema = GenotypeSchema.get_schema()
        assert "GT" in schema["layers"]["required"]

    def test_complete_founder_markers(self, tiny_adata):
        assert complete_founder_markers(tiny_adata).tolist() == [True, True, True, True, False, False]

    def test_chromosome_mask(self, tiny_adata):
        assert chromosome_mask(tiny_adata, ["2"]).sum() == 2
        assert chromosome_mask(tiny_adata, None).all()

    def test_declared_sex_normalised(self, tiny_adata):
        tiny_adata.obs["sex"] = ["female", "M", "", None]
        sex = declared_sex(tiny_adata)
        assert sex["ind_a"] == "F"
        assert sex["ind_b"] == "M"
        assert sex.iloc[2:].isna().all()

    def test_founder_strains(self, tiny_adata):
        assert founder_strains(tiny_adata) == ["A/J", "C57BL/6J"]
        del tiny_adata.uns["founder_strains"]
        assert founder_strains(tiny_adata) == ["A", "B"]
