"""
Pydantic models for QC thresholds and pipeline configuration.

Configuration can be built in code or loaded from a TOML file:

    [pipeline]
    error_rate = 0.002
    max_workers = 4

    [thresholds]
    max_individual_missingness = 0.1997
    duplicate_concordance = 0.90
"""

import tomllib
from pathlib import Path
from typing import List, Optional, Union

from pydantic import BaseModel, Field, model_validator

from outbredqc.config import constants as C
from outbredqc.utils.logger import get_logger

logger = get_logger(__name__)


class QCThresholds(BaseModel):
    """
    Classification thresholds used by the QC services.

    Defaults reproduce the values chosen for the original DO dataset; all of
    them are dataset-dependent.
    """

    max_individual_missingness: float = Field(
        C.DEFAULT_MAX_INDIVIDUAL_MISSINGNESS,
        ge=0.0,
        le=1.0,
        description="Exclude individuals with a larger fraction of missing calls",
    )
    duplicate_concordance: float = Field(
        C.DEFAULT_DUPLICATE_CONCORDANCE,
        ge=0.0,
        le=1.0,
        description="Pairs with concordance above this are probable duplicates",
    )
    review_concordance: float = Field(
        C.DEFAULT_REVIEW_CONCORDANCE,
        ge=0.0,
        le=1.0,
        description="Pairs between this and duplicate_concordance need manual review",
    )
    min_joint_call_fraction: float = Field(
        C.DEFAULT_MIN_JOINT_CALL_FRACTION,
        ge=0.0,
        le=1.0,
        description="Minimum fraction of markers called in both members of a pair",
    )
    exclude_sex_discordant: bool = Field(
        False, description="Also exclude individuals whose inferred sex is discordant"
    )
    sex_test_alpha: float = Field(
        C.DEFAULT_SEX_TEST_ALPHA,
        gt=0.0,
        lt=1.0,
        description="Family-wise alpha for Bonferroni marker selection",
    )
    aneuploidy_z: float = Field(
        C.DEFAULT_ANEUPLOIDY_Z,
        gt=0.0,
        description="Robust z below -aneuploidy_z flags reduced X intensity",
    )
    intensity_low_percentile: float = Field(1.0, ge=0.0, le=100.0)
    intensity_high_percentile: float = Field(99.0, ge=0.0, le=100.0)
    intensity_outlier_z: float = Field(C.DEFAULT_INTENSITY_OUTLIER_Z, gt=0.0)
    min_decode_prob: float = Field(
        C.DEFAULT_MIN_DECODE_PROB,
        ge=0.0,
        le=1.0,
        description="Positions whose best state is less probable are undecodable",
    )
    error_lod_cutoff: float = Field(
        C.DEFAULT_ERROR_LOD_CUTOFF,
        ge=0.0,
        description="Calls with error LOD above this are apparent errors",
    )
    max_marker_error_rate: float = Field(
        C.DEFAULT_MAX_MARKER_ERROR_RATE,
        ge=0.0,
        le=1.0,
        description="Exclude markers with a larger apparent error rate",
    )
    max_marker_missingness: Optional[float] = Field(
        None, ge=0.0, le=1.0, description="Optional marker missingness cutoff"
    )
    high_drift: float = Field(
        C.DEFAULT_HIGH_DRIFT,
        ge=0.0,
        le=2.0,
        description="Drift above this counts as a large change",
    )
    min_high_drift_markers: int = Field(
        C.DEFAULT_MIN_HIGH_DRIFT_MARKERS,
        ge=1,
        description="High-drift markers on one chromosome that flag an individual",
    )

    @model_validator(mode="after")
    def _check_ordering(self) -> "QCThresholds":
        if self.review_concordance > self.duplicate_concordance:
            raise ValueError(
                "review_concordance must not exceed duplicate_concordance "
                f"({self.review_concordance} > {self.duplicate_concordance})"
            )
        if self.intensity_low_percentile >= self.intensity_high_percentile:
            raise ValueError("intensity_low_percentile must be below intensity_high_percentile")
        return self


class PipelineConfig(BaseModel):
    """
    End-to-end pipeline configuration.

    Attributes:
        error_rate: Genotyping error rate passed to the reconstruction
        chromosomes: Chromosomes to reconstruct (None = all except Y/MT)
        max_workers: Worker pool size for per-chromosome reconstruction
        duplicate_block_size: Rows per block for concordance computation
        duplicate_workers: Worker pool size for concordance blocks
        duplicate_markers: Optional marker subset for concordance
        reconstruction_atol: Tolerance on state sums of reconstruction output
        thresholds: Classification thresholds
    """

    error_rate: float = Field(C.DEFAULT_ERROR_RATE, gt=0.0, lt=0.5)
    chromosomes: Optional[List[str]] = None
    max_workers: int = Field(4, ge=1)
    duplicate_block_size: int = Field(256, ge=1)
    duplicate_workers: int = Field(1, ge=1)
    duplicate_markers: Optional[List[str]] = None
    reconstruction_atol: float = Field(1e-6, gt=0.0)
    thresholds: QCThresholds = Field(default_factory=QCThresholds)


def load_config(path: Union[str, Path]) -> PipelineConfig:
    """
    Load pipeline configuration from a TOML file.

    Keys under ``[pipeline]`` map to PipelineConfig fields and keys under
    ``[thresholds]`` to QCThresholds. Missing sections fall back to defaults.

    Args:
        path: Path to the TOML file

    Returns:
        PipelineConfig: Validated configuration

    Raises:
        FileNotFoundError: If the file does not exist
        pydantic.ValidationError: If values are out of range
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "rb") as f:
        data = tomllib.load(f)

    pipeline = dict(data.get("pipeline", {}))
    pipeline["thresholds"] = QCThresholds(**data.get("thresholds", {}))
    config = PipelineConfig(**pipeline)
    logger.debug(f"Loaded QC configuration from {path}")
    return config
