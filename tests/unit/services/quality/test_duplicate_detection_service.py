"""
Unit tests for DuplicateDetectionService.

This test suite covers:
- Concordance matrix properties (symmetry, unit diagonal, NaN denominators)
- Block-parallel computation matching the single-block result
- Pair classification with joint-call demotion
- Deterministic duplicate resolution and its logging
"""

import numpy as np
import pandas as pd
import pytest

from outbredqc.core.exceptions import SchemaValidationError
from outbredqc.services.quality.duplicate_detection_service import (
    DuplicateDetectionService,
    DuplicateReport,
)


@pytest.fixture
def duplicate_service():
    """Create DuplicateDetectionService instance."""
    return DuplicateDetectionService(block_size=7)


@pytest.fixture
def dup_adata(do_adata):
    """DO cross where DO-010 is an exact copy of DO-004."""
    gt = np.asarray(do_adata.layers["GT"]).copy()
    src = do_adata.obs_names.get_loc("DO-004")
    dst = do_adata.obs_names.get_loc("DO-010")
    gt[dst] = gt[src]
    do_adata.layers["GT"] = gt
    return do_adata


@pytest.mark.unit
class TestConcordanceMatrix:
    """Test pairwise concordance."""

    def test_symmetric_with_unit_diagonal(self, duplicate_service, do_adata):
        conc, joint = duplicate_service.concordance_matrix(do_adata)
        values = conc.to_numpy()
        np.testing.assert_allclose(values, values.T, equal_nan=True)
        np.testing.assert_allclose(np.diag(values), 1.0)
        assert (joint.to_numpy() == joint.to_numpy().T).all()

    def test_known_values(self, duplicate_service, tiny_adata):
        conc, joint = duplicate_service.concordance_matrix(tiny_adata)
        # ind_a vs ind_b: jointly called m1, m2, m3, m5, m6 and all agree
        assert joint.loc["ind_a", "ind_b"] == 5
        assert conc.loc["ind_a", "ind_b"] == pytest.approx(1.0)
        # ind_a vs ind_d: m1..m5 called jointly, agree at m4, m5
        assert joint.loc["ind_a", "ind_d"] == 5
        assert conc.loc["ind_a", "ind_d"] == pytest.approx(2 / 5)

    def test_no_joint_calls_is_nan(self, duplicate_service, tiny_adata):
        conc, joint = duplicate_service.concordance_matrix(tiny_adata)
        # ind_c has no calls at all
        assert joint.loc["ind_a", "ind_c"] == 0
        assert np.isnan(conc.loc["ind_a", "ind_c"])
        assert np.isnan(conc.loc["ind_c", "ind_c"])

    def test_blocked_and_threaded_match_single_block(self, do_adata):
        single, _ = DuplicateDetectionService(block_size=1000).concordance_matrix(do_adata)
        blocked, _ = DuplicateDetectionService(block_size=3, max_workers=4).concordance_matrix(do_adata)
        pd.testing.assert_frame_equal(single, blocked)

    def test_marker_subset(self, duplicate_service, tiny_adata):
        conc, joint = duplicate_service.concordance_matrix(tiny_adata, markers=["m1", "m2"])
        assert joint.loc["ind_a", "ind_d"] == 2
        assert conc.loc["ind_a", "ind_d"] == pytest.approx(0.0)

    def test_unknown_marker(self, duplicate_service, tiny_adata):
        with pytest.raises(KeyError):
            duplicate_service.concordance_matrix(tiny_adata, markers=["nope"])


@pytest.mark.unit
class TestClassifyPairs:
    """Test pair classification."""

    def _frames(self, value, n_joint):
        names = ["a", "b"]
        conc = pd.DataFrame([[1.0, value], [value, 1.0]], index=names, columns=names)
        joint = pd.DataFrame([[100, n_joint], [n_joint, 100]], index=names, columns=names)
        return conc, joint

    def test_probable_duplicate(self, duplicate_service):
        conc, joint = self._frames(0.95, 90)
        pairs = duplicate_service.classify_pairs(conc, joint, n_markers=100)
        assert pairs["status"].tolist() == ["duplicate"]

    def test_review_band(self, duplicate_service):
        conc, joint = self._frames(0.87, 90)
        pairs = duplicate_service.classify_pairs(conc, joint, n_markers=100)
        assert pairs["status"].tolist() == ["ambiguous"]

    def test_low_overlap_demoted(self, duplicate_service):
        conc, joint = self._frames(0.99, 30)
        pairs = duplicate_service.classify_pairs(conc, joint, n_markers=100)
        assert pairs["status"].tolist() == ["ambiguous"]
        assert pairs["joint_call_fraction"].iloc[0] == pytest.approx(0.3)

    def test_review_pairs(self, duplicate_service):
        conc, joint = self._frames(0.87, 90)
        pairs = duplicate_service.classify_pairs(conc, joint, n_markers=100)
        report = DuplicateReport(concordance=conc, n_joint=joint, pairs=pairs)
        assert len(report.review_pairs) == 1
        assert report.group_of().empty

    def test_below_review_not_reported(self, duplicate_service):
        conc, joint = self._frames(0.6, 90)
        pairs = duplicate_service.classify_pairs(conc, joint, n_markers=100)
        assert pairs.empty


@pytest.mark.unit
class TestResolveDuplicates:
    """Test deterministic tie-breaking."""

    def test_lower_missingness_wins(self, duplicate_service):
        miss = pd.Series({"a": 0.10, "b": 0.02})
        retained, excluded = duplicate_service.resolve_duplicates([["a", "b"]], miss)
        assert retained == {0: "b"}
        assert excluded == ["a"]

    def test_sex_consistency_beats_missingness(self, duplicate_service):
        miss = pd.Series({"a": 0.10, "b": 0.02})
        discordant = pd.Series({"a": False, "b": True})
        retained, excluded = duplicate_service.resolve_duplicates([["a", "b"]], miss, discordant)
        assert retained == {0: "a"}
        assert excluded == ["b"]

    def test_tie_broken_by_id_and_logged(self, duplicate_service, caplog):
        miss = pd.Series({"DO-2": 0.01, "DO-1": 0.01})
        with caplog.at_level("INFO", logger="outbredqc"):
            retained, excluded = duplicate_service.resolve_duplicates([["DO-1", "DO-2"]], miss)
        assert retained == {0: "DO-1"}
        assert excluded == ["DO-2"]
        assert "broken by ID" in caplog.text

    def test_groups_are_connected_components(self, duplicate_service):
        pairs = pd.DataFrame(
            {
                "id_1": ["a", "b", "x"],
                "id_2": ["b", "c", "y"],
                "concordance": [0.99, 0.98, 0.97],
                "n_joint": [100, 100, 100],
                "joint_call_fraction": [1.0, 1.0, 1.0],
                "status": ["duplicate", "duplicate", "ambiguous"],
            }
        )
        assert duplicate_service.duplicate_groups(pairs) == [["a", "b", "c"]]


@pytest.mark.unit
class TestDetectDuplicates:
    """Test the 3-tuple entry point."""

    def test_exact_copy_detected(self, duplicate_service, dup_adata):
        report, stats, ir = duplicate_service.detect_duplicates(dup_adata)
        assert isinstance(report, DuplicateReport)
        assert report.concordance.loc["DO-004", "DO-010"] == pytest.approx(1.0)
        assert report.groups == [["DO-004", "DO-010"]]
        assert report.excluded == ["DO-010"]
        assert stats["n_duplicate_pairs"] == 1
        assert report.group_of()["DO-004"] == 0
        assert ir.tool_name == "DuplicateDetectionService.detect_duplicates"

    def test_uses_obs_missingness(self, duplicate_service, dup_adata):
        dup_adata.obs["missingness"] = 0.01
        dup_adata.obs.loc["DO-004", "missingness"] = 0.05
        report, _, _ = duplicate_service.detect_duplicates(dup_adata)
        assert report.retained == {0: "DO-010"}
        assert report.excluded == ["DO-004"]

    def test_unrelated_individuals_not_flagged(self, duplicate_service, do_adata):
        report, stats, _ = duplicate_service.detect_duplicates(do_adata)
        assert report.groups == []
        assert stats["n_duplicate_pairs"] == 0

    def test_missing_layer(self, duplicate_service, tiny_adata):
        del tiny_adata.layers["GT"]
        with pytest.raises(SchemaValidationError):
            duplicate_service.detect_duplicates(tiny_adata)
