"""
End-to-end QC pipeline for outbred genotype data.

Stages, in order:

    raw → metrics → {sex check, duplicates} → individual filter
        → baseline reconstruction → error diagnostics → marker filter
        → re-reconstruction → drift

Each stage reads an immutable snapshot and produces a new one. Stages that
cannot run (no intensities, one declared sex, failed chromosomes) are logged
and skipped; only a missing genotype layer aborts the run.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import anndata
import numpy as np
import pandas as pd

from outbredqc.config.constants import FOUNDER_GENOTYPE_KEY, INTENSITY_LAYER
from outbredqc.config.qc_config import PipelineConfig
from outbredqc.core.analysis_ir import AnalysisStep
from outbredqc.core.cache import ResultCache
from outbredqc.core.exceptions import QCError
from outbredqc.core.lineage import ensure_lineage
from outbredqc.core.protocols import HaplotypeReconstructor
from outbredqc.core.schemas.genotypes import GenotypeSchema, declared_sex
from outbredqc.services.analysis.drift_analysis_service import DriftAnalyzer, DriftReport
from outbredqc.services.analysis.error_diagnostics_service import ErrorDiagnosticsService
from outbredqc.services.analysis.reconstruction_runner import (
    ReconstructionResult,
    ReconstructionRunner,
)
from outbredqc.services.quality.duplicate_detection_service import (
    DuplicateDetectionService,
    DuplicateReport,
)
from outbredqc.services.quality.filter_policy_service import FilterDecision, FilterPolicyService
from outbredqc.services.quality.genotype_metrics_service import GenotypeMetricsService
from outbredqc.services.quality.sex_check_service import SexCheckService
from outbredqc.utils.logger import get_logger

logger = get_logger(__name__)

INDIVIDUAL_COLUMNS = [
    "sex",
    "generation",
    "missingness",
    "low_intensity_array",
    "x_intensity",
    "y_intensity",
    "sex_inferred",
    "sex_discordant",
    "aneuploidy_candidate",
    "error_rate",
    "mismatch_rate",
    "n_crossovers",
]

MARKER_COLUMNS = [
    "chr",
    "cM",
    "bp",
    "missingness",
    "founder_mac",
    "error_rate",
    "mismatch_rate",
]


@dataclass
class QCReport:
    """
    Everything the pipeline decided, with per-ID tables sorted by ID.

    Attributes:
        individuals: One row per input individual
        markers: One row per input marker
        individual_decision: Stage-1 exclusions
        marker_decision: Stage-2 exclusions
        duplicates: Duplicate detection report (None if skipped)
        drift: Drift report (None if reconstruction was skipped)
        failures: stage → chromosome → failure reason
        steps: Provenance records in execution order
        stats: Statistics per stage
        skipped: stage → reason for stages that did not run
    """

    individuals: pd.DataFrame
    markers: pd.DataFrame
    individual_decision: FilterDecision
    marker_decision: FilterDecision
    duplicates: Optional[DuplicateReport] = None
    drift: Optional[DriftReport] = None
    failures: Dict[str, Dict[str, str]] = field(default_factory=dict)
    steps: List[AnalysisStep] = field(default_factory=list)
    stats: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        return {
            "n_individuals": len(self.individuals),
            "n_individuals_excluded": len(self.individual_decision.excluded_individuals),
            "n_markers": len(self.markers),
            "n_markers_excluded": len(self.marker_decision.excluded_markers),
            "n_review_pairs": len(self.duplicates.review_pairs) if self.duplicates else 0,
            "n_sensitive_individuals": len(self.drift.sensitive_individuals) if self.drift else 0,
            "failed_chromosomes": {stage: sorted(f) for stage, f in self.failures.items() if f},
            "skipped_stages": sorted(self.skipped),
        }


class QCPipeline:
    """
    Orchestrates the QC services around an external haplotype reconstructor.

    Args:
        reconstructor: Object satisfying HaplotypeReconstructor
        config: Pipeline configuration (defaults if None)
        cache: Memoization store for reconstructions, kept across runs.
            If None, each run gets a fresh in-memory cache so unchanged
            chromosomes are not recomputed after filtering and nothing is
            retained once the run returns
    """

    def __init__(
        self,
        reconstructor: HaplotypeReconstructor,
        config: Optional[PipelineConfig] = None,
        cache: Optional[ResultCache] = None,
    ):
        if not isinstance(reconstructor, HaplotypeReconstructor):
            raise TypeError(f"{type(reconstructor).__name__} is not a HaplotypeReconstructor")
        self.config = config or PipelineConfig()
        self.reconstructor = reconstructor
        self.cache = cache
        self.metrics_service = GenotypeMetricsService()
        self.sex_service = SexCheckService()
        self.duplicate_service = DuplicateDetectionService(
            block_size=self.config.duplicate_block_size,
            max_workers=self.config.duplicate_workers,
        )
        self.policy_service = FilterPolicyService()
        self.error_service = ErrorDiagnosticsService()

    def run(self, adata: anndata.AnnData) -> QCReport:
        """
        Run every QC stage on ``adata`` (not modified).

        Raises:
            SchemaValidationError: If the genotype layer or marker
                annotations are missing
        """
        GenotypeSchema.validate(adata)
        th = self.config.thresholds
        steps: List[AnalysisStep] = []
        stats: Dict[str, Dict[str, Any]] = {}
        skipped: Dict[str, str] = {}
        failures: Dict[str, Dict[str, str]] = {}

        runner = self._make_runner()

        raw = ensure_lineage(adata.copy())
        logger.info(f"Starting QC pipeline on {raw.n_obs} individuals × {raw.n_vars} markers")

        # metrics
        qc, stats["metrics"], ir = self.metrics_service.assess_quality(
            raw,
            p_low=th.intensity_low_percentile,
            p_high=th.intensity_high_percentile,
            intensity_outlier_z=th.intensity_outlier_z,
        )
        steps.append(ir)

        # sex check
        if INTENSITY_LAYER not in qc.layers:
            skipped["sex_check"] = "no intensity layer"
        else:
            try:
                qc, stats["sex_check"], ir = self.sex_service.check_sex(
                    qc, alpha=th.sex_test_alpha, aneuploidy_z=th.aneuploidy_z
                )
                steps.append(ir)
            except QCError as e:
                skipped["sex_check"] = str(e)
        if "sex_check" in skipped:
            logger.warning(f"Sex check skipped: {skipped['sex_check']}")

        # duplicates
        duplicates: Optional[DuplicateReport] = None
        try:
            duplicates, stats["duplicates"], ir = self.duplicate_service.detect_duplicates(
                qc,
                markers=self.config.duplicate_markers,
                duplicate_concordance=th.duplicate_concordance,
                review_concordance=th.review_concordance,
                min_joint_call_fraction=th.min_joint_call_fraction,
            )
            steps.append(ir)
        except QCError as e:
            skipped["duplicates"] = str(e)
            logger.warning(f"Duplicate detection skipped: {e}")

        # stage 1: individuals
        individual_decision = self.policy_service.decide_individuals(qc.obs, duplicates, th)
        stage1, stats["individual_filter"], ir = self.policy_service.apply_decision(
            qc, individual_decision
        )
        steps.append(ir)

        marker_decision = FilterDecision()
        drift_report: Optional[DriftReport] = None
        diagnosed: Optional[anndata.AnnData] = None

        reason = self._reconstruction_blocker(stage1)
        if reason:
            for stage in ("error_diagnostics", "marker_filter", "drift"):
                skipped[stage] = reason
            logger.warning(f"Reconstruction-dependent stages skipped: {reason}")
        else:
            baseline = runner.run(
                stage1, chromosomes=self.config.chromosomes, error_rate=self.config.error_rate
            )
            failures["baseline"] = self._failure_reasons(baseline)

            try:
                diagnosed, stats["error_diagnostics"], ir = self.error_service.assess_errors(
                    stage1,
                    baseline,
                    error_rate=self.config.error_rate,
                    min_prob=th.min_decode_prob,
                    lod_cutoff=th.error_lod_cutoff,
                )
                steps.append(ir)
            except QCError as e:
                for stage in ("error_diagnostics", "marker_filter", "drift"):
                    skipped[stage] = str(e)
                logger.warning(f"Error diagnostics failed: {e}")

            if diagnosed is not None:
                # stage 2: markers
                marker_decision = self.policy_service.decide_markers(diagnosed.var, th)
                stage2, stats["marker_filter"], ir = self.policy_service.apply_decision(
                    diagnosed, marker_decision
                )
                steps.append(ir)

                analyzer = DriftAnalyzer.from_baseline(
                    runner, baseline, error_rate=self.config.error_rate
                )
                filtered = analyzer.refilter(stage2)
                failures["filtered"] = self._failure_reasons(filtered)
                drift_report, stats["drift"], ir = analyzer.compare(
                    high_drift=th.high_drift, min_high_drift_markers=th.min_high_drift_markers
                )
                steps.append(ir)

        report = QCReport(
            individuals=self._individual_table(qc, diagnosed, duplicates, individual_decision, drift_report),
            markers=self._marker_table(qc, diagnosed, marker_decision, drift_report),
            individual_decision=individual_decision,
            marker_decision=marker_decision,
            duplicates=duplicates,
            drift=drift_report,
            failures=failures,
            steps=steps,
            stats=stats,
            skipped=skipped,
        )
        logger.info(f"QC pipeline finished: {report.summary()}")
        return report

    # ===== Helper Methods =====

    def _make_runner(self) -> ReconstructionRunner:
        return ReconstructionRunner(
            self.reconstructor,
            max_workers=self.config.max_workers,
            cache=self.cache if self.cache is not None else ResultCache(),
            atol=self.config.reconstruction_atol,
        )

    def _reconstruction_blocker(self, adata: anndata.AnnData) -> Optional[str]:
        if adata.n_obs == 0:
            return "no individuals left after filtering"
        if FOUNDER_GENOTYPE_KEY not in adata.varm:
            return f"no varm['{FOUNDER_GENOTYPE_KEY}']"
        if "cM" not in adata.var.columns:
            return "no genetic map (var['cM'])"
        return None

    @staticmethod
    def _failure_reasons(result: ReconstructionResult) -> Dict[str, str]:
        return {chrom: failure.reason for chrom, failure in result.failures.items()}

    def _individual_table(
        self,
        qc: anndata.AnnData,
        diagnosed: Optional[anndata.AnnData],
        duplicates: Optional[DuplicateReport],
        decision: FilterDecision,
        drift: Optional[DriftReport],
    ) -> pd.DataFrame:
        obs = qc.obs.copy()
        obs["sex"] = declared_sex(qc)
        if diagnosed is not None:
            for col in ("error_rate", "mismatch_rate", "n_crossovers"):
                obs[col] = diagnosed.obs[col].reindex(obs.index)

        table = pd.DataFrame(index=obs.index)
        for col in INDIVIDUAL_COLUMNS:
            table[col] = obs[col] if col in obs.columns else np.nan

        table["duplicate_group"] = (
            duplicates.group_of().reindex(table.index) if duplicates is not None else pd.NA
        )
        if drift is not None:
            summary = drift.individual_summary().reindex(table.index)
            table["max_drift"] = summary["max_drift"]
            table["n_high_drift_markers"] = summary["n_high_drift_markers"]
            table["drift_sensitive"] = table.index.isin(drift.sensitive_individuals)
        else:
            table["max_drift"] = np.nan
            table["n_high_drift_markers"] = np.nan
            table["drift_sensitive"] = False

        table["excluded"] = table.index.isin(list(decision.excluded_individuals))
        table["exclusion_reasons"] = decision.reasons_series(table.index)
        table.index.name = "individual"
        return table.sort_index()

    def _marker_table(
        self,
        qc: anndata.AnnData,
        diagnosed: Optional[anndata.AnnData],
        decision: FilterDecision,
        drift: Optional[DriftReport],
    ) -> pd.DataFrame:
        var = qc.var.copy()
        if diagnosed is not None:
            for col in ("error_rate", "mismatch_rate"):
                var[col] = diagnosed.var[col].reindex(var.index)

        table = pd.DataFrame(index=var.index)
        for col in MARKER_COLUMNS:
            table[col] = var[col] if col in var.columns else np.nan

        if drift is not None:
            summary = drift.marker_summary().reindex(table.index)
            table["mean_drift"] = summary["mean_drift"]
            table["max_drift"] = summary["max_drift"]
        else:
            table["mean_drift"] = np.nan
            table["max_drift"] = np.nan

        table["excluded"] = table.index.isin(list(decision.excluded_markers))
        table["exclusion_reasons"] = decision.reasons_series(table.index)
        table.index.name = "marker"
        return table.sort_index()
