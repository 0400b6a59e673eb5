"""
Genotyping-error diagnostics from reconstructed haplotype probabilities.

Given per-chromosome founder-pair probabilities, the founder panel and the
observed calls this service derives:

    decoded states      per-position argmax (maximum marginal, not Viterbi)
    crossover counts    state changes between adjacent decoded positions
    error LOD           evidence that an observed call is wrong
    predicted SNP calls decoded state mapped through the founder panel

Error LOD for an observed call with reconstructed probability p and
genotyping error rate e:

    LOD = log10((1 - p) / p) + log10((1 - e) / e),  floored at 0

LOD is NaN where the call is missing, the founder panel is incomplete at the
marker, or the reconstruction is undefined at that position.
"""

from typing import Any, Dict, Mapping, Optional, Tuple

import anndata
import numpy as np
import pandas as pd
from scipy import stats as sp_stats

from outbredqc.config.constants import (
    DEFAULT_ERROR_LOD_CUTOFF,
    DEFAULT_ERROR_RATE,
    DEFAULT_MIN_DECODE_PROB,
    GT_MISSING,
)
from outbredqc.core.analysis_ir import AnalysisStep, ParameterSpec
from outbredqc.core.exceptions import InsufficientDataError, QCError
from outbredqc.core.haplotypes import HaplotypeProbabilities, state_snp_genotypes
from outbredqc.core.schemas.genotypes import GenotypeSchema, founder_matrix, genotype_matrix
from outbredqc.services.analysis.reconstruction_runner import ReconstructionResult
from outbredqc.utils.logger import get_logger
from outbredqc.utils.statistics import nan_fraction

logger = get_logger(__name__)

UNDECODABLE = -1

ERROR_LOD_LAYER = "error_lod"
DECODED_LAYER = "decoded_state"
PREDICTED_LAYER = "GT_predicted"
CROSSOVER_KEY = "crossovers"


class ErrorDiagnosticsError(QCError):
    """Base exception for error diagnostics."""

    pass


class ErrorDiagnosticsService:
    """
    Stateless service for decoding, crossover counting and error scoring.
    """

    def __init__(self, **kwargs):
        logger.debug("Initializing stateless ErrorDiagnosticsService")

    # ===== Decoding and crossovers =====

    def decode_genotypes(
        self, probs: HaplotypeProbabilities, min_prob: float = DEFAULT_MIN_DECODE_PROB
    ) -> pd.DataFrame:
        """
        Most probable founder-pair state at each position.

        Args:
            probs: Reconstruction for one chromosome
            min_prob: Positions whose best state has lower probability are
                undecodable

        Returns:
            pd.DataFrame: individuals × markers of state indices, -1 where
            undecodable or undefined
        """
        defined = probs.defined_mask()
        filled = np.where(np.isfinite(probs.probs), probs.probs, -np.inf)
        best = np.argmax(filled, axis=1)
        best_p = np.take_along_axis(filled, best[:, None, :], axis=1)[:, 0, :]

        decoded = np.where(defined & (best_p >= min_prob), best, UNDECODABLE).astype(np.int16)
        return pd.DataFrame(decoded, index=list(probs.individuals), columns=list(probs.markers))

    def count_crossovers(self, decoded_by_chrom: Mapping[str, pd.DataFrame]) -> pd.DataFrame:
        """
        Count state transitions along each chromosome.

        A transition counts only between adjacent positions that are both
        decoded; a change across an undecodable position is not counted.

        Args:
            decoded_by_chrom: chromosome → decoded states (individuals ×
                markers in genome order)

        Returns:
            pd.DataFrame: individuals × chromosomes of crossover counts
            (nullable Int64), over the union of individuals; <NA> where an
            individual has no decoded table for a chromosome
        """
        columns = {}
        for chrom, decoded in decoded_by_chrom.items():
            values = decoded.to_numpy()
            if values.shape[1] < 2:
                columns[chrom] = pd.Series(0, index=decoded.index)
                continue
            left, right = values[:, :-1], values[:, 1:]
            transitions = (left != UNDECODABLE) & (right != UNDECODABLE) & (left != right)
            columns[chrom] = pd.Series(transitions.sum(axis=1), index=decoded.index)
        table = pd.DataFrame(columns)
        table.columns.name = "chromosome"
        return table.astype("Int64")

    # ===== Founder-panel mapping =====

    def _state_snp_codes(self, probs: HaplotypeProbabilities, adata: anndata.AnnData) -> np.ndarray:
        cols = adata.var_names.get_indexer(list(probs.markers))
        if (cols < 0).any():
            raise ErrorDiagnosticsError(
                f"Reconstruction for chromosome {probs.chromosome} contains markers absent from data"
            )
        founders = founder_matrix(adata)[cols, :]
        if founders.shape[1] != probs.n_founders:
            raise ErrorDiagnosticsError(
                f"Founder panel has {founders.shape[1]} founders but reconstruction "
                f"uses {probs.n_founders}"
            )
        return state_snp_genotypes(founders)

    def snp_genotype_probabilities(
        self, probs: HaplotypeProbabilities, adata: anndata.AnnData
    ) -> np.ndarray:
        """
        Probability of each SNP genotype implied by the founder-pair probabilities.

        Returns:
            np.ndarray: individuals × 3 (AA, AB, BB) × markers; NaN where the
            founder panel is incomplete or the reconstruction undefined
        """
        snp = self._state_snp_codes(probs, adata)
        out = np.stack(
            [np.einsum("ism,sm->im", probs.probs, (snp == g).astype(float)) for g in range(3)],
            axis=1,
        )
        incomplete = np.all(snp == GT_MISSING, axis=0)
        out[:, :, incomplete] = np.nan
        return out

    def error_lod(
        self,
        probs: HaplotypeProbabilities,
        adata: anndata.AnnData,
        error_rate: float = DEFAULT_ERROR_RATE,
    ) -> pd.DataFrame:
        """
        Error LOD for each observed call on one chromosome.

        Args:
            probs: Reconstruction for one chromosome
            adata: Genotype AnnData the reconstruction was computed from
            error_rate: Genotyping error rate used for the reconstruction

        Returns:
            pd.DataFrame: individuals × markers, NaN where not scoreable
        """
        if not 0 < error_rate < 1:
            raise ValueError(f"error_rate must be in (0, 1), got {error_rate}")

        snp_probs = self.snp_genotype_probabilities(probs, adata)
        observed = self._observed(probs, adata)

        called = observed != GT_MISSING
        index = np.clip(observed, 0, 2)[:, None, :]
        p_obs = np.take_along_axis(snp_probs, index, axis=1)[:, 0, :]
        p_obs = np.where(called, p_obs, np.nan)

        # keep LOD finite for calls the reconstruction rules out entirely
        tiny = np.finfo(float).tiny
        p_clipped = np.clip(p_obs, tiny, 1.0)
        with np.errstate(divide="ignore", invalid="ignore"):
            lod = np.log10((1.0 - p_clipped) / p_clipped) + np.log10((1.0 - error_rate) / error_rate)
        lod = np.where(np.isnan(p_obs), np.nan, np.maximum(lod, 0.0))
        return pd.DataFrame(lod, index=list(probs.individuals), columns=list(probs.markers))

    def predict_snp_genotypes(
        self, decoded: pd.DataFrame, probs: HaplotypeProbabilities, adata: anndata.AnnData
    ) -> pd.DataFrame:
        """
        SNP genotype implied by each decoded state.

        Returns:
            pd.DataFrame: individuals × markers of codes, -1 where the state
            is undecodable or the founder panel incomplete
        """
        snp = self._state_snp_codes(probs, adata)
        states = decoded.to_numpy()
        marker_idx = np.broadcast_to(np.arange(states.shape[1]), states.shape)
        predicted = snp[np.clip(states, 0, None), marker_idx]
        predicted = np.where(states == UNDECODABLE, GT_MISSING, predicted).astype(np.int8)
        return pd.DataFrame(predicted, index=decoded.index, columns=decoded.columns)

    def _observed(self, probs: HaplotypeProbabilities, adata: anndata.AnnData) -> np.ndarray:
        rows = adata.obs_names.get_indexer(list(probs.individuals))
        cols = adata.var_names.get_indexer(list(probs.markers))
        if (rows < 0).any() or (cols < 0).any():
            raise ErrorDiagnosticsError(
                f"Reconstruction for chromosome {probs.chromosome} does not match the genotype data"
            )
        return genotype_matrix(adata)[np.ix_(rows, cols)]

    # ===== Aggregation =====

    def error_rates(
        self,
        lod_by_chrom: Mapping[str, pd.DataFrame],
        cutoff: float = DEFAULT_ERROR_LOD_CUTOFF,
    ) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """
        Apparent error rates per individual and per marker.

        Denominators count scoreable (non-NaN) cells only.

        Returns:
            Tuple of (individual table, marker table), each with columns
            n_scored, n_errors, error_rate
        """
        if not lod_by_chrom:
            empty = pd.DataFrame(columns=["n_scored", "n_errors", "error_rate"])
            return empty, empty.copy()

        lod = pd.concat(list(lod_by_chrom.values()), axis=1)
        values = lod.to_numpy()
        scored = np.isfinite(values)
        errors = scored & (np.nan_to_num(values, nan=-np.inf) > cutoff)

        def table(axis: int, index: pd.Index) -> pd.DataFrame:
            n_scored = scored.sum(axis=axis)
            n_errors = errors.sum(axis=axis)
            return pd.DataFrame(
                {
                    "n_scored": n_scored,
                    "n_errors": n_errors,
                    "error_rate": nan_fraction(n_errors, n_scored),
                },
                index=index,
            )

        return table(1, lod.index), table(0, lod.columns)

    def mismatch_rates(
        self, observed: pd.DataFrame, predicted: pd.DataFrame
    ) -> Tuple[pd.Series, pd.Series]:
        """
        Observed-vs-predicted disagreement per individual and per marker.

        Only cells where both the observed and predicted call exist count.
        """
        predicted = predicted.reindex(index=observed.index, columns=observed.columns)
        obs_values = observed.to_numpy()
        pred_values = predicted.fillna(GT_MISSING).to_numpy()
        compared = (obs_values != GT_MISSING) & (pred_values != GT_MISSING)
        differ = compared & (obs_values != pred_values)
        by_individual = pd.Series(
            nan_fraction(differ.sum(axis=1), compared.sum(axis=1)),
            index=observed.index,
            name="mismatch_rate",
        )
        by_marker = pd.Series(
            nan_fraction(differ.sum(axis=0), compared.sum(axis=0)),
            index=observed.columns,
            name="mismatch_rate",
        )
        return by_individual, by_marker

    def crossover_generation_trend(
        self, crossovers: pd.DataFrame, generation: pd.Series
    ) -> Dict[str, float]:
        """
        Linear trend of total crossovers against DO generation.

        Crossovers accumulate with each outbreeding generation, so a flat or
        negative slope points at decoding problems.

        Raises:
            InsufficientDataError: With fewer than three individuals or a
                single generation value
        """
        total = crossovers.sum(axis=1)
        generation = pd.to_numeric(generation, errors="coerce").reindex(total.index)
        usable = generation.notna()
        x = generation[usable].to_numpy(dtype=float)
        y = total[usable].to_numpy(dtype=float)
        if len(x) < 3 or np.unique(x).size < 2:
            raise InsufficientDataError(
                "Need at least three individuals from two or more generations for a crossover trend"
            )

        fit = sp_stats.linregress(x, y)
        return {
            "slope": float(fit.slope),
            "intercept": float(fit.intercept),
            "r_value": float(fit.rvalue),
            "p_value": float(fit.pvalue),
            "n_individuals": int(len(x)),
        }

    # ===== Full assessment =====

    def assess_errors(
        self,
        adata: anndata.AnnData,
        reconstruction: ReconstructionResult,
        error_rate: float = DEFAULT_ERROR_RATE,
        min_prob: float = DEFAULT_MIN_DECODE_PROB,
        lod_cutoff: float = DEFAULT_ERROR_LOD_CUTOFF,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Run all error diagnostics for every reconstructed chromosome.

        Markers on chromosomes that were not reconstructed (or failed) keep
        NaN diagnostics and are listed under ``unavailable_chromosomes``.

        Adds to a copy of ``adata``:
            obs:    n_scored, n_errors, error_rate, mismatch_rate, n_crossovers
            var:    n_scored, n_errors, error_rate, mismatch_rate
            layers: error_lod (float), decoded_state (int), GT_predicted (int)
            obsm:   crossovers (individuals × chromosomes)

        Args:
            adata: Genotype AnnData the reconstruction was computed from
            reconstruction: Output of ReconstructionRunner.run
            error_rate: Genotyping error rate used for reconstruction
            min_prob: Minimum probability for a decoded call
            lod_cutoff: Error LOD above which a call is an apparent error

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]

        Raises:
            ErrorDiagnosticsError: If diagnostics fail
        """
        try:
            logger.debug("Starting error diagnostics")
            GenotypeSchema.validate(adata, require_founders=True)
            adata_err = adata.copy()

            lod_layer = np.full(adata.shape, np.nan)
            decoded_layer = np.full(adata.shape, UNDECODABLE, dtype=np.int16)
            predicted_layer = np.full(adata.shape, GT_MISSING, dtype=np.int8)

            lod_by_chrom: Dict[str, pd.DataFrame] = {}
            decoded_by_chrom: Dict[str, pd.DataFrame] = {}
            for chrom, probs in reconstruction.probabilities.items():
                probs = probs.subset(individuals=[i for i in probs.individuals if i in adata.obs_names])
                rows = adata.obs_names.get_indexer(list(probs.individuals))
                cols = adata.var_names.get_indexer(list(probs.markers))

                lod = self.error_lod(probs, adata, error_rate)
                decoded = self.decode_genotypes(probs, min_prob)
                predicted = self.predict_snp_genotypes(decoded, probs, adata)

                lod_layer[np.ix_(rows, cols)] = lod.to_numpy()
                decoded_layer[np.ix_(rows, cols)] = decoded.to_numpy()
                predicted_layer[np.ix_(rows, cols)] = predicted.to_numpy()
                lod_by_chrom[chrom] = lod
                decoded_by_chrom[chrom] = decoded

            ind_rates, marker_rates = self.error_rates(lod_by_chrom, lod_cutoff)
            observed = pd.DataFrame(genotype_matrix(adata), index=adata.obs_names, columns=adata.var_names)
            predicted_df = pd.DataFrame(predicted_layer, index=adata.obs_names, columns=adata.var_names)
            ind_mismatch, marker_mismatch = self.mismatch_rates(observed, predicted_df)
            crossovers = self.count_crossovers(decoded_by_chrom).reindex(adata.obs_names)

            for col in ["n_scored", "n_errors", "error_rate"]:
                adata_err.obs[col] = ind_rates[col].reindex(adata.obs_names)
                adata_err.var[col] = marker_rates[col].reindex(adata.var_names)
            adata_err.obs["mismatch_rate"] = ind_mismatch
            adata_err.var["mismatch_rate"] = marker_mismatch
            adata_err.obs["n_crossovers"] = crossovers.sum(axis=1) if crossovers.shape[1] else np.nan

            adata_err.layers[ERROR_LOD_LAYER] = lod_layer
            adata_err.layers[DECODED_LAYER] = decoded_layer
            adata_err.layers[PREDICTED_LAYER] = predicted_layer
            adata_err.obsm[CROSSOVER_KEY] = crossovers.fillna(0).astype(int)

            unavailable = sorted(
                set(adata.var["chr"].astype(str)) - set(reconstruction.probabilities)
            )
            trend: Optional[Dict[str, float]] = None
            if "generation" in adata.obs.columns and crossovers.shape[1]:
                try:
                    trend = self.crossover_generation_trend(crossovers, adata.obs["generation"])
                except InsufficientDataError as e:
                    logger.info(f"Skipping crossover trend: {e}")

            n_scored = int(np.isfinite(lod_layer).sum())
            n_errors = int((np.nan_to_num(lod_layer, nan=-np.inf) > lod_cutoff).sum())
            n_markers_with_errors = int((marker_rates["n_errors"] > 0).sum())

            stats = {
                "analysis_type": "error_diagnostics",
                "error_rate": error_rate,
                "min_prob": min_prob,
                "lod_cutoff": lod_cutoff,
                "chromosomes": list(reconstruction.probabilities),
                "unavailable_chromosomes": unavailable,
                "n_scored_calls": n_scored,
                "n_apparent_errors": n_errors,
                "overall_error_rate": float(n_errors / n_scored) if n_scored else float("nan"),
                "n_markers_with_errors": n_markers_with_errors,
                "mean_crossovers": float(crossovers.sum(axis=1).mean()) if crossovers.shape[1] else float("nan"),
                "crossover_generation_trend": trend,
            }

            logger.info(
                f"Error diagnostics completed: {n_errors}/{n_scored} calls with LOD > {lod_cutoff} "
                f"across {len(reconstruction.probabilities)} chromosomes"
            )
            if unavailable:
                logger.warning(f"Diagnostics unavailable for chromosomes: {unavailable}")

            ir = self._create_assess_errors_ir(error_rate, min_prob, lod_cutoff)
            return adata_err, stats, ir

        except QCError:
            raise
        except Exception as e:
            logger.exception(f"Error in error diagnostics: {e}")
            raise ErrorDiagnosticsError(f"Error diagnostics failed: {str(e)}") from e

    # ===== IR Creation Methods =====

    def _create_assess_errors_ir(
        self, error_rate: float, min_prob: float, lod_cutoff: float
    ) -> AnalysisStep:
        """Create IR for error diagnostics."""
        return AnalysisStep(
            operation="outbredqc.qc.assess_errors",
            tool_name="ErrorDiagnosticsService.assess_errors",
            description="Error LOD, decoded states, predicted SNP calls and crossover counts",
            library="numpy",
            code_template="""from outbredqc.services.analysis.error_diagnostics_service import ErrorDiagnosticsService

adata_err, stats, _ = ErrorDiagnosticsService().assess_errors(
    adata,
    reconstruction,
    error_rate={{ error_rate }},
    min_prob={{ min_prob }},
    lod_cutoff={{ lod_cutoff }},
)
print(adata_err.var['error_rate'].describe())""",
            imports=[
                "from outbredqc.services.analysis.error_diagnostics_service import ErrorDiagnosticsService"
            ],
            parameters={
                "error_rate": error_rate,
                "min_prob": min_prob,
                "lod_cutoff": lod_cutoff,
            },
            parameter_schema={
                "error_rate": ParameterSpec(
                    param_type="float",
                    default_value=DEFAULT_ERROR_RATE,
                    validation_rule="0 < error_rate < 1",
                    description="Per-call genotyping error rate of the reconstruction",
                ),
                "min_prob": ParameterSpec(
                    param_type="float",
                    papermill_injectable=True,
                    default_value=DEFAULT_MIN_DECODE_PROB,
                    validation_rule="0 <= min_prob <= 1",
                    description="Minimum state probability for a decoded call",
                ),
                "lod_cutoff": ParameterSpec(
                    param_type="float",
                    papermill_injectable=True,
                    default_value=DEFAULT_ERROR_LOD_CUTOFF,
                    validation_rule="lod_cutoff >= 0",
                    description="Error LOD above which a call is an apparent error",
                ),
            },
            input_entities=["adata", "reconstruction"],
            output_entities=["adata_err"],
            execution_context={"qc_type": "genotyping_errors", "decode": "maximum_marginal"},
        )
