"""
Unit tests for ResultCache and lineage metadata.
"""

import numpy as np
import pandas as pd
import pytest

from outbredqc.core.cache import ResultCache
from outbredqc.core.lineage import LINEAGE_KEY, derive_lineage, ensure_lineage, get_lineage


@pytest.mark.unit
class TestResultCacheKeys:
    """Test cache key derivation."""

    def test_equal_inputs_give_equal_keys(self):
        a = np.arange(12).reshape(3, 4)
        df = pd.DataFrame(a, index=["x", "y", "z"])
        assert ResultCache.key_for("stage", a, df, 0.002) == ResultCache.key_for(
            "stage", a.copy(), df.copy(), 0.002
        )

    def test_changed_values_change_key(self):
        a = np.arange(12).reshape(3, 4)
        b = a.copy()
        b[0, 0] = 99
        assert ResultCache.key_for(a) != ResultCache.key_for(b)

    def test_dtype_and_shape_are_part_of_key(self):
        a = np.arange(6, dtype=np.int64)
        assert ResultCache.key_for(a) != ResultCache.key_for(a.astype(np.int32))
        assert ResultCache.key_for(a) != ResultCache.key_for(a.reshape(2, 3))

    def test_dataframe_columns_are_part_of_key(self):
        df = pd.DataFrame({"m1": [0, 1], "m2": [2, 0]})
        renamed = df.rename(columns={"m2": "m3"})
        assert ResultCache.key_for(df) != ResultCache.key_for(renamed)


@pytest.mark.unit
class TestResultCacheStore:
    """Test memoization behaviour."""

    def test_get_or_compute_memoizes(self):
        cache = ResultCache()
        calls = []

        def compute():
            calls.append(1)
            return "value"

        assert cache.get_or_compute("k", compute) == "value"
        assert cache.get_or_compute("k", compute) == "value"
        assert len(calls) == 1
        assert cache.hits == 1
        assert cache.misses == 1
        assert "k" in cache
        assert len(cache) == 1

    def test_failures_are_not_cached(self):
        cache = ResultCache()

        def boom():
            raise RuntimeError("fail")

        with pytest.raises(RuntimeError):
            cache.get_or_compute("k", boom)
        assert "k" not in cache

    def test_clear(self):
        cache = ResultCache()
        cache.put("k", 1)
        cache.clear()
        assert "k" not in cache
        assert len(cache) == 0


@pytest.mark.unit
class TestLineage:
    """Test lineage tracking on filtered views."""

    def test_ensure_lineage_sets_raw_version(self, tiny_adata):
        ensure_lineage(tiny_adata, base_name="cohort")
        lineage = get_lineage(tiny_adata)
        assert lineage.version == 1
        assert lineage.processing_step == "raw"
        assert lineage.base_name == "cohort"

    def test_ensure_lineage_is_idempotent(self, tiny_adata):
        ensure_lineage(tiny_adata, base_name="cohort")
        ensure_lineage(tiny_adata, base_name="other")
        assert get_lineage(tiny_adata).base_name == "cohort"

    def test_derive_lineage_increments_version(self, tiny_adata):
        ensure_lineage(tiny_adata)
        child = tiny_adata[:2, :].copy()
        derive_lineage(tiny_adata, child, "individuals_filtered", step_summary="removed 2")
        lineage = get_lineage(child)
        assert lineage.version == 2
        assert lineage.parent_version == 1
        assert lineage.n_individuals == 2
        assert lineage.step_summary == "removed 2"
        # parent untouched
        assert get_lineage(tiny_adata).version == 1

    def test_non_canonical_step_logged(self, tiny_adata, caplog):
        child = tiny_adata[:2, :].copy()
        with caplog.at_level("DEBUG", logger="outbredqc"):
            derive_lineage(tiny_adata, child, "hand_curated")
        assert get_lineage(child).processing_step == "hand_curated"
        assert "Non-canonical lineage step: hand_curated" in caplog.text

    def test_canonical_step_not_logged(self, tiny_adata, caplog):
        child = tiny_adata[:2, :].copy()
        with caplog.at_level("DEBUG", logger="outbredqc"):
            derive_lineage(tiny_adata, child, "markers_filtered")
        assert "Non-canonical" not in caplog.text

    def test_missing_lineage(self, tiny_adata):
        tiny_adata.uns.pop(LINEAGE_KEY, None)
        assert get_lineage(tiny_adata) is None
