"""
Before/after comparison of haplotype reconstructions around marker filtering.

Drift at one individual and position is the L1 distance between the two
founder-pair distributions,

    drift = sum over states |p_before(state) - p_after(state)|

which lies in [0, 2]: 0 for identical distributions, 2 for disjoint support.

The analysis is a small state machine:

    BASELINE  --refilter()-->  FILTERED  --compare()-->  COMPARED

``refilter`` re-runs the reconstruction on the filtered data and blocks until
every chromosome is done. Calling a transition from the wrong state raises
DriftStateError.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import anndata
import numpy as np
import pandas as pd

from outbredqc.config.constants import (
    DEFAULT_ERROR_RATE,
    DEFAULT_HIGH_DRIFT,
    DEFAULT_MIN_HIGH_DRIFT_MARKERS,
)
from outbredqc.core.analysis_ir import AnalysisStep, ParameterSpec
from outbredqc.core.exceptions import DriftStateError
from outbredqc.core.haplotypes import HaplotypeProbabilities
from outbredqc.services.analysis.reconstruction_runner import (
    ReconstructionResult,
    ReconstructionRunner,
)
from outbredqc.utils.logger import get_logger

logger = get_logger(__name__)


class DriftState(str, Enum):
    BASELINE = "baseline"
    FILTERED = "filtered"
    COMPARED = "compared"


def compute_drift(before: HaplotypeProbabilities, after: HaplotypeProbabilities) -> pd.DataFrame:
    """
    Drift for every individual and marker present in both reconstructions.

    Args:
        before: Baseline reconstruction for one chromosome
        after: Reconstruction of the same chromosome after filtering

    Returns:
        pd.DataFrame: individuals × markers (baseline order), NaN where
        either distribution is undefined
    """
    if before.states != after.states:
        raise ValueError(
            f"State spaces differ for chromosome {before.chromosome}: "
            f"{len(before.states)} vs {len(after.states)} states"
        )
    after_individuals = set(after.individuals)
    after_markers = set(after.markers)
    individuals = [i for i in before.individuals if i in after_individuals]
    markers = [m for m in before.markers if m in after_markers]

    b = before.subset(individuals, markers).probs
    a = after.subset(individuals, markers).probs
    drift = np.clip(np.abs(b - a).sum(axis=1), 0.0, 2.0)
    undefined = ~(np.all(np.isfinite(b), axis=1) & np.all(np.isfinite(a), axis=1))
    drift[undefined] = np.nan
    return pd.DataFrame(drift, index=individuals, columns=markers)


@dataclass
class DriftReport:
    """
    Outcome of a drift comparison.

    Attributes:
        drift: chromosome → individuals × markers drift
        high_drift_counts: individuals × chromosomes, markers with drift
            above the high-drift threshold
        sensitive_individuals: individuals with at least
            ``min_high_drift_markers`` high-drift markers on one chromosome
        unavailable: chromosomes missing from either reconstruction
        removed_markers: markers present before filtering but not after
    """

    drift: Dict[str, pd.DataFrame] = field(default_factory=dict)
    high_drift_counts: pd.DataFrame = field(default_factory=pd.DataFrame)
    sensitive_individuals: List[str] = field(default_factory=list)
    unavailable: List[str] = field(default_factory=list)
    removed_markers: List[str] = field(default_factory=list)
    high_drift: float = DEFAULT_HIGH_DRIFT
    min_high_drift_markers: int = DEFAULT_MIN_HIGH_DRIFT_MARKERS

    def individual_summary(self) -> pd.DataFrame:
        """Per-individual max/mean drift and high-drift marker count."""
        if not self.drift:
            return pd.DataFrame(
                columns=["max_drift", "mean_drift", "n_high_drift_markers", "drift_sensitive"]
            )
        combined = pd.concat(list(self.drift.values()), axis=1)
        summary = pd.DataFrame(
            {
                "max_drift": combined.max(axis=1, skipna=True),
                "mean_drift": combined.mean(axis=1, skipna=True),
                "n_high_drift_markers": self.high_drift_counts.sum(axis=1).reindex(combined.index),
            }
        )
        summary["drift_sensitive"] = summary.index.isin(self.sensitive_individuals)
        return summary

    def marker_summary(self) -> pd.DataFrame:
        """Per-marker max/mean drift across individuals."""
        if not self.drift:
            return pd.DataFrame(columns=["max_drift", "mean_drift"])
        combined = pd.concat(list(self.drift.values()), axis=1)
        return pd.DataFrame(
            {
                "max_drift": combined.max(axis=0, skipna=True),
                "mean_drift": combined.mean(axis=0, skipna=True),
            }
        )


class DriftAnalyzer:
    """
    Drives the baseline → filtered → compared comparison.

    Use ``DriftAnalyzer.from_baseline`` with the baseline reconstruction,
    then ``refilter`` with the marker-filtered AnnData and finally
    ``compare``.
    """

    def __init__(
        self,
        runner: ReconstructionRunner,
        baseline: ReconstructionResult,
        error_rate: float = DEFAULT_ERROR_RATE,
    ):
        self.runner = runner
        self.baseline = baseline
        self.error_rate = error_rate
        self.filtered: Optional[ReconstructionResult] = None
        self.report: Optional[DriftReport] = None
        self._state = DriftState.BASELINE
        logger.debug(
            f"DriftAnalyzer at baseline with {len(baseline.probabilities)} chromosomes"
        )

    @classmethod
    def from_baseline(
        cls,
        runner: ReconstructionRunner,
        baseline: ReconstructionResult,
        error_rate: float = DEFAULT_ERROR_RATE,
    ) -> "DriftAnalyzer":
        return cls(runner, baseline, error_rate=error_rate)

    @property
    def state(self) -> DriftState:
        return self._state

    def _require_state(self, expected: DriftState, action: str) -> None:
        if self._state is not expected:
            raise DriftStateError(
                f"Cannot {action} in state '{self._state.value}' (requires '{expected.value}')"
            )

    def refilter(
        self,
        adata_filtered: anndata.AnnData,
        chromosomes: Optional[Sequence[str]] = None,
    ) -> ReconstructionResult:
        """
        Re-run reconstruction on the filtered data (blocking).

        Args:
            adata_filtered: Marker-filtered AnnData
            chromosomes: Chromosomes to re-run (default: those that succeeded
                at baseline)

        Returns:
            ReconstructionResult of the filtered data

        Raises:
            DriftStateError: If not in BASELINE state
        """
        self._require_state(DriftState.BASELINE, "refilter")
        if chromosomes is None:
            chromosomes = list(self.baseline.probabilities)
        logger.info(
            f"Re-running reconstruction after filtering on {len(chromosomes)} chromosomes "
            f"({adata_filtered.n_vars} markers)"
        )
        self.filtered = self.runner.run(adata_filtered, chromosomes=chromosomes, error_rate=self.error_rate)
        self._state = DriftState.FILTERED
        return self.filtered

    def compare(
        self,
        high_drift: float = DEFAULT_HIGH_DRIFT,
        min_high_drift_markers: int = DEFAULT_MIN_HIGH_DRIFT_MARKERS,
    ) -> Tuple[DriftReport, Dict[str, Any], AnalysisStep]:
        """
        Compare baseline and filtered reconstructions.

        Args:
            high_drift: Drift above this is a large change
            min_high_drift_markers: High-drift markers on one chromosome that
                mark an individual as sensitive to the removed markers

        Returns:
            Tuple[DriftReport, Dict[str, Any], AnalysisStep]

        Raises:
            DriftStateError: If not in FILTERED state
        """
        self._require_state(DriftState.FILTERED, "compare")

        drift: Dict[str, pd.DataFrame] = {}
        unavailable: List[str] = []
        removed: List[str] = []
        chromosomes = list(
            dict.fromkeys(
                list(self.baseline.probabilities)
                + list(self.baseline.failures)
                + list(self.filtered.failures)
            )
        )
        for chrom in chromosomes:
            before = self.baseline.probabilities.get(chrom)
            after = self.filtered.probabilities.get(chrom)
            if before is None or after is None:
                unavailable.append(chrom)
                logger.warning(f"Drift unavailable for chromosome {chrom}")
                continue
            drift[chrom] = compute_drift(before, after)
            after_markers = set(after.markers)
            removed.extend(m for m in before.markers if m not in after_markers)

        counts = pd.DataFrame(
            {chrom: (d > high_drift).sum(axis=1) for chrom, d in drift.items()}
        )
        counts.columns.name = "chromosome"
        if counts.shape[1]:
            counts = counts.fillna(0).astype(int)
            sensitive_mask = (counts >= min_high_drift_markers).any(axis=1)
            sensitive = sorted(counts.index[sensitive_mask.to_numpy()].astype(str))
        else:
            sensitive = []

        report = DriftReport(
            drift=drift,
            high_drift_counts=counts,
            sensitive_individuals=sensitive,
            unavailable=unavailable,
            removed_markers=removed,
            high_drift=high_drift,
            min_high_drift_markers=min_high_drift_markers,
        )
        self.report = report
        self._state = DriftState.COMPARED

        n_high = int(counts.to_numpy().sum()) if counts.size else 0
        max_drift = max(
            (float(np.nanmax(d.to_numpy())) for d in drift.values() if np.isfinite(d.to_numpy()).any()),
            default=float("nan"),
        )
        stats = {
            "analysis_type": "drift_analysis",
            "high_drift": high_drift,
            "min_high_drift_markers": min_high_drift_markers,
            "chromosomes_compared": list(drift),
            "unavailable_chromosomes": unavailable,
            "n_removed_markers": len(removed),
            "n_high_drift_values": n_high,
            "max_drift": max_drift,
            "n_sensitive_individuals": len(sensitive),
            "sensitive_individuals": sensitive,
        }

        logger.info(
            f"Drift comparison completed: {n_high} values above {high_drift}, "
            f"{len(sensitive)} sensitive individuals"
        )

        ir = self._create_compare_ir(high_drift, min_high_drift_markers)
        return report, stats, ir

    # ===== IR Creation Methods =====

    def _create_compare_ir(self, high_drift: float, min_high_drift_markers: int) -> AnalysisStep:
        """Create IR for drift comparison."""
        return AnalysisStep(
            operation="outbredqc.qc.drift",
            tool_name="DriftAnalyzer.compare",
            description="L1 drift of founder-pair probabilities before vs after marker filtering",
            library="numpy",
            code_template="""from outbredqc.services.analysis.drift_analysis_service import DriftAnalyzer

analyzer = DriftAnalyzer.from_baseline(runner, baseline, error_rate={{ error_rate }})
analyzer.refilter(adata_filtered)
report, stats, _ = analyzer.compare(
    high_drift={{ high_drift }},
    min_high_drift_markers={{ min_high_drift_markers }},
)
print(report.sensitive_individuals)""",
            imports=["from outbredqc.services.analysis.drift_analysis_service import DriftAnalyzer"],
            parameters={
                "error_rate": self.error_rate,
                "high_drift": high_drift,
                "min_high_drift_markers": min_high_drift_markers,
            },
            parameter_schema={
                "error_rate": ParameterSpec(
                    param_type="float",
                    default_value=DEFAULT_ERROR_RATE,
                    validation_rule="0 < error_rate < 1",
                    description="Genotyping error rate for the re-run reconstruction",
                ),
                "high_drift": ParameterSpec(
                    param_type="float",
                    papermill_injectable=True,
                    default_value=DEFAULT_HIGH_DRIFT,
                    validation_rule="0 <= high_drift <= 2",
                    description="Drift above this is a large change",
                ),
                "min_high_drift_markers": ParameterSpec(
                    param_type="int",
                    papermill_injectable=True,
                    default_value=DEFAULT_MIN_HIGH_DRIFT_MARKERS,
                    validation_rule="min_high_drift_markers >= 1",
                    description="High-drift markers on one chromosome that flag an individual",
                ),
            },
            input_entities=["baseline", "adata_filtered"],
            output_entities=["report"],
            execution_context={"qc_type": "drift", "distance": "l1"},
        )
