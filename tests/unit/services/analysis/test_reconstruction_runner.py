"""
Unit tests for ReconstructionRunner.

This test suite covers:
- Per-chromosome inputs in genetic-map order
- Validation of reconstructor output (shape, sums, partial NaN)
- Failure isolation: one chromosome failing leaves the others usable
- Input-keyed caching
"""

import numpy as np
import pandas as pd
import pytest

from outbredqc.core.cache import ResultCache
from outbredqc.core.exceptions import ReconstructionFailure, SchemaValidationError
from outbredqc.services.analysis.reconstruction_runner import (
    ReconstructionResult,
    ReconstructionRunner,
    chromosome_inputs,
)
from outbredqc.testing.fixtures import SimulatedReconstructor


@pytest.fixture
def tiny_truth(tiny_adata):
    return pd.DataFrame(0, index=tiny_adata.obs_names, columns=tiny_adata.var_names)


@pytest.mark.unit
class TestChromosomeInputs:
    """Test preparation of one chromosome's inputs."""

    def test_sorted_by_genetic_position(self, tiny_adata):
        tiny_adata.var["cM"] = [3.0, 1.0, 2.0, 1.0, 2.0, 5.0]
        genotypes, genetic_map, founders = chromosome_inputs(tiny_adata, "1")
        assert list(genotypes.columns) == ["m2", "m3", "m1"]
        assert genetic_map.is_monotonic_increasing
        assert list(founders.columns) == ["m2", "m3", "m1"]
        assert list(founders.index) == ["A/J", "C57BL/6J"]
        assert founders.loc["C57BL/6J", "m1"] == 2

    def test_genotypes_unchanged(self, tiny_adata):
        genotypes, _, _ = chromosome_inputs(tiny_adata, "2")
        assert genotypes.loc["ind_d"].tolist() == [0, 1]
        assert genotypes.loc["ind_b", "m4"] == -1


@pytest.mark.unit
class TestRun:
    """Test blocking per-chromosome execution."""

    def test_default_chromosomes_skip_y(self, runner, do_adata):
        assert runner.default_chromosomes(do_adata) == ["1", "2", "X"]

    def test_all_chromosomes_validated(self, runner, do_adata):
        result = runner.run(do_adata)
        assert isinstance(result, ReconstructionResult)
        assert result.chromosomes == ["1", "2", "X"]
        assert not result.failures
        hp = result.require("1")
        assert hp.probs.shape == (40, 36, 60)
        np.testing.assert_allclose(hp.probs.sum(axis=1), 1.0)

    def test_threaded_matches_sequential(self, reconstructor, do_adata):
        sequential = ReconstructionRunner(reconstructor, max_workers=1).run(do_adata)
        threaded = ReconstructionRunner(reconstructor, max_workers=3).run(do_adata)
        assert threaded.chromosomes == sequential.chromosomes
        for chrom in sequential.chromosomes:
            np.testing.assert_array_equal(
                threaded.require(chrom).probs, sequential.require(chrom).probs
            )

    def test_failed_chromosome_is_isolated(self, do_adata, do_truth):
        failing = SimulatedReconstructor(do_truth, failing_markers=["2_0005"])
        result = ReconstructionRunner(failing, max_workers=2).run(do_adata)
        assert result.chromosomes == ["1", "X"]
        assert list(result.failures) == ["2"]
        assert "RuntimeError" in result.failures["2"].reason
        with pytest.raises(ReconstructionFailure):
            result.require("2")

    def test_unknown_chromosome(self, runner, do_adata):
        result = runner.run(do_adata, chromosomes=["1", "19"])
        assert result.chromosomes == ["1"]
        assert result.failures["19"].reason == "no markers on chromosome"

    def test_not_run_chromosome(self, runner, do_adata):
        result = runner.run(do_adata, chromosomes=["1"])
        with pytest.raises(ReconstructionFailure, match="not reconstructed"):
            result.require("X")

    def test_wrong_shape_rejected(self, runner, reconstructor, do_adata, mocker):
        mocker.patch.object(reconstructor, "reconstruct", return_value=np.zeros((1, 1, 1)))
        result = runner.run(do_adata, chromosomes=["1"])
        assert "shape" in result.failures["1"].reason

    def test_bad_sums_rejected(self, runner, reconstructor, do_adata, mocker):
        mocker.patch.object(reconstructor, "reconstruct", return_value=np.full((40, 36, 60), 0.5))
        result = runner.run(do_adata, chromosomes=["1"])
        assert "sum to 1" in result.failures["1"].reason

    def test_partially_undefined_rejected(self, runner, reconstructor, do_adata, mocker):
        probs = np.full((40, 36, 60), 1 / 36)
        probs[0, 0, 0] = np.nan
        mocker.patch.object(reconstructor, "reconstruct", return_value=probs)
        result = runner.run(do_adata, chromosomes=["1"])
        assert "partially undefined" in result.failures["1"].reason

    def test_no_calls_gives_undefined_slice(self, tiny_adata, tiny_truth):
        runner = ReconstructionRunner(SimulatedReconstructor(tiny_truth), max_workers=1)
        result = runner.run(tiny_adata, chromosomes=["1"])
        defined = result.require("1").defined_mask()
        row = tiny_adata.obs_names.get_loc("ind_c")
        assert not defined[row].any()
        assert defined[0].all()

    def test_requires_founders(self, runner, tiny_adata):
        del tiny_adata.varm["founder_GT"]
        with pytest.raises(SchemaValidationError):
            runner.run(tiny_adata)

    def test_rejects_non_reconstructor(self):
        with pytest.raises(TypeError):
            ReconstructionRunner(object())


@pytest.mark.unit
class TestCaching:
    """Test input-keyed reuse of chromosome results."""

    def test_second_run_is_served_from_cache(self, reconstructor, do_adata):
        cache = ResultCache()
        runner = ReconstructionRunner(reconstructor, max_workers=1, cache=cache)
        first = runner.run(do_adata)
        calls = reconstructor.calls
        second = runner.run(do_adata)
        assert reconstructor.calls == calls
        assert cache.hits == 3
        assert second.require("1") is first.require("1")

    def test_changed_chromosome_recomputed(self, reconstructor, do_adata):
        cache = ResultCache()
        runner = ReconstructionRunner(reconstructor, max_workers=1, cache=cache)
        runner.run(do_adata)
        calls = reconstructor.calls

        subset = do_adata[:, do_adata.var_names != "1_0010"].copy()
        runner.run(subset)
        assert reconstructor.calls == calls + 1
        assert cache.hits == 2

    def test_error_rate_is_part_of_key(self, reconstructor, do_adata):
        runner = ReconstructionRunner(reconstructor, max_workers=1, cache=ResultCache())
        runner.run(do_adata, chromosomes=["1"], error_rate=0.002)
        runner.run(do_adata, chromosomes=["1"], error_rate=0.01)
        assert reconstructor.calls == 2
