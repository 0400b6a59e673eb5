"""
Threshold-based inclusion decisions for individuals and markers.

Decisions are computed from metric tables only and returned as frozen index
sets with per-ID reasons. Nothing upstream is modified; ``apply_decision``
produces a new restricted AnnData with lineage for the caller that chooses to
act on a decision.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import anndata
import pandas as pd

from outbredqc.config.qc_config import QCThresholds
from outbredqc.core.analysis_ir import AnalysisStep, ParameterSpec
from outbredqc.core.exceptions import InsufficientDataError, QCError
from outbredqc.core.lineage import derive_lineage
from outbredqc.services.quality.duplicate_detection_service import DuplicateReport
from outbredqc.utils.logger import get_logger

logger = get_logger(__name__)

REASON_MISSINGNESS = "missingness"
REASON_DUPLICATE = "duplicate"
REASON_SEX_DISCORDANT = "sex_discordant"
REASON_ERROR_RATE = "error_rate"
REASON_MARKER_MISSINGNESS = "marker_missingness"


class FilterPolicyError(QCError):
    """Base exception for filter policy operations."""

    pass


def _freeze_reasons(reasons: Dict[str, List[str]]) -> Mapping[str, Tuple[str, ...]]:
    return MappingProxyType({k: tuple(sorted(set(v))) for k, v in sorted(reasons.items())})


@dataclass(frozen=True)
class FilterDecision:
    """
    Immutable exclusion sets.

    Attributes:
        excluded_individuals: IDs to drop from obs
        excluded_markers: IDs to drop from var
        reasons: ID → sorted tuple of reason codes
    """

    excluded_individuals: frozenset = frozenset()
    excluded_markers: frozenset = frozenset()
    reasons: Mapping[str, Tuple[str, ...]] = field(
        default_factory=lambda: MappingProxyType({}), hash=False
    )

    @property
    def is_empty(self) -> bool:
        return not self.excluded_individuals and not self.excluded_markers

    def reason_counts(self) -> Dict[str, int]:
        """Number of excluded IDs per reason code."""
        counts: Dict[str, int] = {}
        for codes in self.reasons.values():
            for code in codes:
                counts[code] = counts.get(code, 0) + 1
        return dict(sorted(counts.items()))

    def reasons_series(self, index: Iterable[str]) -> pd.Series:
        """Semicolon-joined reasons aligned to ``index`` (empty string if kept)."""
        return pd.Series(
            {i: ";".join(self.reasons.get(i, ())) for i in index}, dtype=object, name="exclusion_reasons"
        )


class FilterPolicyService:
    """
    Stateless policy service: metric tables in, frozen decisions out.
    """

    def __init__(self, **kwargs):
        logger.debug("Initializing stateless FilterPolicyService")

    def decide_individuals(
        self,
        obs: pd.DataFrame,
        duplicates: Union[DuplicateReport, Iterable[str], None] = None,
        thresholds: Optional[QCThresholds] = None,
    ) -> FilterDecision:
        """
        Decide which individuals to exclude.

        Rules:
            - missingness > max_individual_missingness
            - non-retained member of a probable-duplicate group
            - sex-discordant, only if thresholds.exclude_sex_discordant

        NaN missingness (no markers to assess) never triggers exclusion.

        Args:
            obs: Individual table with a 'missingness' column and optionally
                'sex_discordant'
            duplicates: DuplicateReport or IDs excluded by duplicate resolution
            thresholds: Thresholds (defaults if None)

        Returns:
            FilterDecision with only excluded_individuals populated

        Raises:
            InsufficientDataError: If obs has no 'missingness' column
        """
        thresholds = thresholds or QCThresholds()
        if "missingness" not in obs.columns:
            raise InsufficientDataError(
                "obs has no 'missingness' column. Run GenotypeMetricsService.assess_quality() first."
            )

        reasons: Dict[str, List[str]] = {}
        missingness = obs["missingness"].astype(float)
        for ind in obs.index[(missingness > thresholds.max_individual_missingness).to_numpy()]:
            reasons.setdefault(str(ind), []).append(REASON_MISSINGNESS)

        if isinstance(duplicates, DuplicateReport):
            duplicate_ids = duplicates.excluded
        else:
            duplicate_ids = list(duplicates or [])
        known = set(obs.index.astype(str))
        for ind in duplicate_ids:
            if str(ind) in known:
                reasons.setdefault(str(ind), []).append(REASON_DUPLICATE)

        if thresholds.exclude_sex_discordant and "sex_discordant" in obs.columns:
            discordant = obs["sex_discordant"].fillna(False).astype(bool)
            for ind in obs.index[discordant.to_numpy()]:
                reasons.setdefault(str(ind), []).append(REASON_SEX_DISCORDANT)

        return FilterDecision(
            excluded_individuals=frozenset(reasons),
            reasons=_freeze_reasons(reasons),
        )

    def decide_markers(
        self,
        var: pd.DataFrame,
        thresholds: Optional[QCThresholds] = None,
    ) -> FilterDecision:
        """
        Decide which markers to exclude.

        Rules:
            - error_rate > max_marker_error_rate
            - missingness > max_marker_missingness, if that cutoff is set

        Markers with NaN error rate (nothing scoreable) are kept.

        Args:
            var: Marker table with an 'error_rate' column
            thresholds: Thresholds (defaults if None)

        Returns:
            FilterDecision with only excluded_markers populated

        Raises:
            InsufficientDataError: If var has no 'error_rate' column
        """
        thresholds = thresholds or QCThresholds()
        if "error_rate" not in var.columns:
            raise InsufficientDataError(
                "var has no 'error_rate' column. Run ErrorDiagnosticsService.assess_errors() first."
            )

        reasons: Dict[str, List[str]] = {}
        error_rate = var["error_rate"].astype(float)
        for marker in var.index[(error_rate > thresholds.max_marker_error_rate).to_numpy()]:
            reasons.setdefault(str(marker), []).append(REASON_ERROR_RATE)

        if thresholds.max_marker_missingness is not None and "missingness" in var.columns:
            missingness = var["missingness"].astype(float)
            for marker in var.index[(missingness > thresholds.max_marker_missingness).to_numpy()]:
                reasons.setdefault(str(marker), []).append(REASON_MARKER_MISSINGNESS)

        return FilterDecision(
            excluded_markers=frozenset(reasons),
            reasons=_freeze_reasons(reasons),
        )

    def apply_decision(
        self,
        adata: anndata.AnnData,
        decision: FilterDecision,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Return a restricted copy of ``adata`` without the excluded IDs.

        IDs in the decision that are absent from ``adata`` are ignored, so
        applying the same decision twice gives the same result.

        Args:
            adata: Source AnnData (not modified)
            decision: Decision to apply

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]

        Raises:
            FilterPolicyError: If filtering fails
        """
        try:
            keep_obs = ~adata.obs_names.isin(list(decision.excluded_individuals))
            keep_var = ~adata.var_names.isin(list(decision.excluded_markers))
            filtered = adata[keep_obs, keep_var].copy()

            if decision.excluded_individuals and not decision.excluded_markers:
                step = "individuals_filtered"
            elif decision.excluded_markers and not decision.excluded_individuals:
                step = "markers_filtered"
            else:
                step = "custom"

            n_obs_removed = int((~keep_obs).sum())
            n_var_removed = int((~keep_var).sum())
            summary = f"removed {n_obs_removed} individuals and {n_var_removed} markers"
            derive_lineage(adata, filtered, step, step_summary=summary)

            stats = {
                "analysis_type": "apply_filter_decision",
                "individuals_before": adata.n_obs,
                "individuals_after": filtered.n_obs,
                "individuals_removed": n_obs_removed,
                "markers_before": adata.n_vars,
                "markers_after": filtered.n_vars,
                "markers_removed": n_var_removed,
                "removal_reasons": decision.reason_counts(),
            }

            logger.info(
                f"Applied filter decision: {filtered.n_obs}/{adata.n_obs} individuals, "
                f"{filtered.n_vars}/{adata.n_vars} markers retained"
            )

            ir = self._create_apply_decision_ir(decision)
            return filtered, stats, ir

        except Exception as e:
            logger.exception(f"Error applying filter decision: {e}")
            raise FilterPolicyError(f"Applying filter decision failed: {str(e)}") from e

    # ===== IR Creation Methods =====

    def _create_apply_decision_ir(self, decision: FilterDecision) -> AnalysisStep:
        """Create IR for applying a filter decision."""
        individuals = sorted(decision.excluded_individuals)
        markers = sorted(decision.excluded_markers)
        return AnalysisStep(
            operation="outbredqc.qc.apply_filter",
            tool_name="FilterPolicyService.apply_decision",
            description="Restrict genotype data to retained individuals and markers",
            library="anndata",
            code_template="""keep_obs = ~adata.obs_names.isin({{ excluded_individuals }})
keep_var = ~adata.var_names.isin({{ excluded_markers }})
adata_filtered = adata[keep_obs, keep_var].copy()""",
            imports=[],
            parameters={
                "excluded_individuals": individuals,
                "excluded_markers": markers,
            },
            parameter_schema={
                "excluded_individuals": ParameterSpec(
                    param_type="List[str]",
                    default_value=[],
                    description="Individual IDs removed from obs",
                ),
                "excluded_markers": ParameterSpec(
                    param_type="List[str]",
                    default_value=[],
                    description="Marker IDs removed from var",
                ),
            },
            input_entities=["adata"],
            output_entities=["adata_filtered"],
            execution_context={"reason_counts": decision.reason_counts()},
        )
