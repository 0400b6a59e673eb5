"""
Pairwise genotype concordance and duplicate-sample detection.

Concordance between two individuals is the fraction of markers with identical
calls among markers called in both. It is computed for all pairs with
indicator-matrix products, one row block per work unit; blocks are
independent and merged once at the end.

Classification of a pair:
    concordance > duplicate cutoff, enough joint calls   → "duplicate"
    concordance > duplicate cutoff, few joint calls      → "ambiguous"
    review cutoff < concordance <= duplicate cutoff      → "ambiguous"

Resolution of duplicate groups is deterministic: keep the sex-consistent
member, then the one with lower missingness, then the lexicographically
smallest ID.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import anndata
import numpy as np
import pandas as pd
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components

from outbredqc.config.constants import (
    DEFAULT_DUPLICATE_CONCORDANCE,
    DEFAULT_MIN_JOINT_CALL_FRACTION,
    DEFAULT_REVIEW_CONCORDANCE,
    GT_AA,
    GT_AB,
    GT_BB,
    GT_MISSING,
)
from outbredqc.core.analysis_ir import AnalysisStep, ParameterSpec
from outbredqc.core.exceptions import QCError
from outbredqc.core.schemas.genotypes import GenotypeSchema, genotype_matrix
from outbredqc.utils.logger import get_logger

logger = get_logger(__name__)


class DuplicateDetectionError(QCError):
    """Base exception for duplicate detection."""

    pass


@dataclass
class DuplicateReport:
    """
    Result of duplicate detection.

    Attributes:
        concordance: individuals × individuals concordance (NaN = no joint calls)
        n_joint: individuals × individuals count of jointly called markers
        pairs: flagged pairs (id_1, id_2, concordance, n_joint,
            joint_call_fraction, status), sorted by concordance descending
        groups: probable-duplicate groups (connected components), each a
            sorted list of IDs
        retained: ID kept for each group (keyed by group index)
        excluded: IDs to exclude by duplicate resolution
    """

    concordance: pd.DataFrame
    n_joint: pd.DataFrame
    pairs: pd.DataFrame
    groups: List[List[str]] = field(default_factory=list)
    retained: Dict[int, str] = field(default_factory=dict)
    excluded: List[str] = field(default_factory=list)

    def group_of(self) -> pd.Series:
        """Duplicate group index per grouped individual."""
        mapping = {ind: g for g, members in enumerate(self.groups) for ind in members}
        return pd.Series(mapping, dtype="Int64", name="duplicate_group")

    @property
    def review_pairs(self) -> pd.DataFrame:
        return self.pairs[self.pairs["status"] == "ambiguous"]


class DuplicateDetectionService:
    """
    Stateless service for pairwise concordance and duplicate resolution.

    Duplicate resolution is deterministic: within a group the sex-consistent
    member wins, then lower missingness, then the smallest ID. Earlier
    practice picked the kept member at random, and ranking sex consistency
    above missingness is an addition to the missingness-then-ID rule, so
    results will not match older runs.
    """

    def __init__(self, block_size: int = 256, max_workers: int = 1, **kwargs):
        """
        Initialize the duplicate detection service.

        Args:
            block_size: Rows per concordance work unit
            max_workers: Worker threads for concordance blocks
            **kwargs: Ignored
        """
        logger.debug("Initializing stateless DuplicateDetectionService")
        self.block_size = block_size
        self.max_workers = max_workers

    def concordance_matrix(
        self,
        adata: anndata.AnnData,
        markers: Optional[Sequence[str]] = None,
        block_size: Optional[int] = None,
        max_workers: Optional[int] = None,
    ) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """
        Concordance for all pairs of individuals.

        Args:
            adata: Genotype AnnData
            markers: Optional marker subset (speeds up large arrays)
            block_size: Rows per work unit (defaults to the service setting)
            max_workers: Worker threads (defaults to the service setting)

        Returns:
            Tuple of (concordance, n_joint) DataFrames, both individuals ×
            individuals. Concordance is NaN where no marker is jointly called;
            the diagonal is 1 for any individual with at least one call.
        """
        gt = genotype_matrix(adata)
        if markers is not None:
            cols = adata.var_names.get_indexer(list(markers))
            if (cols < 0).any():
                raise KeyError(f"Unknown markers: {list(np.asarray(markers)[cols < 0])[:5]}")
            gt = gt[:, cols]

        called = (gt != GT_MISSING).astype(np.float32)
        indicators = [(gt == code).astype(np.float32) for code in (GT_AA, GT_AB, GT_BB)]

        n = gt.shape[0]
        matches = np.zeros((n, n), dtype=np.float64)
        joint = np.zeros((n, n), dtype=np.float64)

        block_size = block_size or self.block_size
        max_workers = max_workers or self.max_workers
        blocks = [(start, min(start + block_size, n)) for start in range(0, n, block_size)]

        def compute_block(bounds: Tuple[int, int]) -> Tuple[Tuple[int, int], np.ndarray, np.ndarray]:
            start, stop = bounds
            block_matches = sum(ind[start:stop] @ ind.T for ind in indicators)
            block_joint = called[start:stop] @ called.T
            return bounds, block_matches, block_joint

        if max_workers > 1 and len(blocks) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                futures = [executor.submit(compute_block, b) for b in blocks]
                for future in as_completed(futures):
                    (start, stop), block_matches, block_joint = future.result()
                    matches[start:stop] = block_matches
                    joint[start:stop] = block_joint
        else:
            for b in blocks:
                (start, stop), block_matches, block_joint = compute_block(b)
                matches[start:stop] = block_matches
                joint[start:stop] = block_joint

        concordance = np.divide(
            matches, joint, out=np.full((n, n), np.nan), where=joint > 0
        )
        names = adata.obs_names
        return (
            pd.DataFrame(concordance, index=names, columns=names),
            pd.DataFrame(joint.astype(np.int64), index=names, columns=names),
        )

    def classify_pairs(
        self,
        concordance: pd.DataFrame,
        n_joint: pd.DataFrame,
        n_markers: int,
        duplicate_concordance: float = DEFAULT_DUPLICATE_CONCORDANCE,
        review_concordance: float = DEFAULT_REVIEW_CONCORDANCE,
        min_joint_call_fraction: float = DEFAULT_MIN_JOINT_CALL_FRACTION,
    ) -> pd.DataFrame:
        """
        Flag pairs above the review cutoff.

        Returns:
            pd.DataFrame with one row per flagged pair (upper triangle only)
        """
        values = concordance.to_numpy()
        joint = n_joint.to_numpy()
        rows, cols = np.triu_indices(values.shape[0], k=1)
        pair_conc = values[rows, cols]
        flagged = np.nan_to_num(pair_conc, nan=-1.0) > review_concordance

        rows, cols = rows[flagged], cols[flagged]
        pair_conc = pair_conc[flagged]
        pair_joint = joint[rows, cols]
        joint_fraction = pair_joint / n_markers if n_markers > 0 else np.full(len(rows), np.nan)

        is_duplicate = (pair_conc > duplicate_concordance) & (joint_fraction >= min_joint_call_fraction)
        names = concordance.index
        pairs = pd.DataFrame(
            {
                "id_1": names[rows],
                "id_2": names[cols],
                "concordance": pair_conc,
                "n_joint": pair_joint.astype(int),
                "joint_call_fraction": joint_fraction,
                "status": np.where(is_duplicate, "duplicate", "ambiguous"),
            }
        )
        return pairs.sort_values(
            ["concordance", "id_1", "id_2"], ascending=[False, True, True]
        ).reset_index(drop=True)

    def duplicate_groups(self, pairs: pd.DataFrame) -> List[List[str]]:
        """
        Connected components of probable-duplicate pairs.

        Returns:
            Sorted list of groups, each a sorted list of IDs (size >= 2)
        """
        dup = pairs[pairs["status"] == "duplicate"]
        if dup.empty:
            return []

        ids = sorted(set(dup["id_1"]) | set(dup["id_2"]))
        pos = {name: i for i, name in enumerate(ids)}
        rows = dup["id_1"].map(pos).to_numpy()
        cols = dup["id_2"].map(pos).to_numpy()
        graph = coo_matrix((np.ones(len(rows)), (rows, cols)), shape=(len(ids), len(ids)))
        _, labels = connected_components(graph, directed=False)

        groups: Dict[int, List[str]] = {}
        for name, label in zip(ids, labels):
            groups.setdefault(int(label), []).append(name)
        return sorted((sorted(members) for members in groups.values()), key=lambda g: g[0])

    def resolve_duplicates(
        self,
        groups: List[List[str]],
        missingness: pd.Series,
        sex_discordant: Optional[pd.Series] = None,
    ) -> Tuple[Dict[int, str], List[str]]:
        """
        Choose one member to keep per duplicate group.

        Ordering: sex-consistent before discordant, then lower missingness,
        then lexicographically smallest ID. Individuals without a sex call
        count as consistent; missing missingness sorts last.

        Returns:
            Tuple of (retained ID per group index, sorted IDs to exclude)
        """
        retained: Dict[int, str] = {}
        excluded: List[str] = []
        for g, members in enumerate(groups):

            def sort_key(ind: str):
                discordant = bool(sex_discordant.get(ind, False)) if sex_discordant is not None else False
                miss = missingness.get(ind, np.nan)
                miss = np.inf if pd.isna(miss) else float(miss)
                return (discordant, miss, ind)

            ranked = sorted(members, key=sort_key)
            keep = ranked[0]
            retained[g] = keep
            excluded.extend(ranked[1:])

            tied = len(ranked) > 1 and sort_key(ranked[0])[:2] == sort_key(ranked[1])[:2]
            logger.info(
                f"Duplicate group {g} {members}: retaining {keep}"
                + (" (tie on sex/missingness, broken by ID)" if tied else "")
            )
        return retained, sorted(excluded)

    def detect_duplicates(
        self,
        adata: anndata.AnnData,
        markers: Optional[Sequence[str]] = None,
        duplicate_concordance: float = DEFAULT_DUPLICATE_CONCORDANCE,
        review_concordance: float = DEFAULT_REVIEW_CONCORDANCE,
        min_joint_call_fraction: float = DEFAULT_MIN_JOINT_CALL_FRACTION,
    ) -> Tuple[DuplicateReport, Dict[str, Any], AnalysisStep]:
        """
        Compute concordance, classify pairs and resolve duplicate groups.

        Missingness is taken from obs['missingness'] when present (else
        computed from the genotype layer); sex consistency from
        obs['sex_discordant'] when present.

        Args:
            adata: Genotype AnnData
            markers: Optional marker subset for concordance
            duplicate_concordance: Probable duplicate cutoff
            review_concordance: Manual review cutoff
            min_joint_call_fraction: Minimum joint call fraction for a
                reliable duplicate call

        Returns:
            Tuple[DuplicateReport, Dict[str, Any], AnalysisStep]

        Raises:
            DuplicateDetectionError: If detection fails
        """
        try:
            logger.debug("Starting duplicate detection")
            GenotypeSchema.validate(adata)
            if review_concordance > duplicate_concordance:
                raise ValueError("review_concordance must not exceed duplicate_concordance")

            concordance, n_joint = self.concordance_matrix(adata, markers)
            n_markers = adata.n_vars if markers is None else len(markers)
            pairs = self.classify_pairs(
                concordance,
                n_joint,
                n_markers,
                duplicate_concordance=duplicate_concordance,
                review_concordance=review_concordance,
                min_joint_call_fraction=min_joint_call_fraction,
            )
            groups = self.duplicate_groups(pairs)

            if "missingness" in adata.obs.columns:
                missingness = adata.obs["missingness"].astype(float)
            else:
                gt = genotype_matrix(adata)
                missingness = pd.Series((gt == GT_MISSING).mean(axis=1), index=adata.obs_names)
            sex_discordant = (
                adata.obs["sex_discordant"].astype(bool)
                if "sex_discordant" in adata.obs.columns
                else None
            )
            retained, excluded = self.resolve_duplicates(groups, missingness, sex_discordant)

            report = DuplicateReport(
                concordance=concordance,
                n_joint=n_joint,
                pairs=pairs,
                groups=groups,
                retained=retained,
                excluded=excluded,
            )

            n_dup = int((pairs["status"] == "duplicate").sum())
            n_review = int((pairs["status"] == "ambiguous").sum())
            stats = {
                "analysis_type": "duplicate_detection",
                "n_individuals": adata.n_obs,
                "n_markers_compared": n_markers,
                "duplicate_concordance": duplicate_concordance,
                "review_concordance": review_concordance,
                "min_joint_call_fraction": min_joint_call_fraction,
                "n_duplicate_pairs": n_dup,
                "n_review_pairs": n_review,
                "n_duplicate_groups": len(groups),
                "excluded_individuals": excluded,
            }

            logger.info(
                f"Duplicate detection completed: {n_dup} duplicate pairs in {len(groups)} groups, "
                f"{n_review} pairs for manual review"
            )

            ir = self._create_detect_duplicates_ir(
                duplicate_concordance, review_concordance, min_joint_call_fraction
            )
            return report, stats, ir

        except QCError:
            raise
        except Exception as e:
            logger.exception(f"Error in duplicate detection: {e}")
            raise DuplicateDetectionError(f"Duplicate detection failed: {str(e)}") from e

    # ===== IR Creation Methods =====

    def _create_detect_duplicates_ir(
        self,
        duplicate_concordance: float,
        review_concordance: float,
        min_joint_call_fraction: float,
    ) -> AnalysisStep:
        """Create IR for duplicate detection."""
        return AnalysisStep(
            operation="outbredqc.qc.detect_duplicates",
            tool_name="DuplicateDetectionService.detect_duplicates",
            description="Pairwise genotype concordance with deterministic duplicate resolution",
            library="numpy",
            code_template="""from outbredqc.services.quality.duplicate_detection_service import DuplicateDetectionService

report, stats, _ = DuplicateDetectionService().detect_duplicates(
    adata,
    duplicate_concordance={{ duplicate_concordance }},
    review_concordance={{ review_concordance }},
    min_joint_call_fraction={{ min_joint_call_fraction }},
)
print(report.pairs.head())""",
            imports=[
                "from outbredqc.services.quality.duplicate_detection_service import DuplicateDetectionService"
            ],
            parameters={
                "duplicate_concordance": duplicate_concordance,
                "review_concordance": review_concordance,
                "min_joint_call_fraction": min_joint_call_fraction,
            },
            parameter_schema={
                "duplicate_concordance": ParameterSpec(
                    param_type="float",
                    default_value=DEFAULT_DUPLICATE_CONCORDANCE,
                    validation_rule="0 < duplicate_concordance <= 1",
                    description="Concordance above which a pair is a probable duplicate",
                ),
                "review_concordance": ParameterSpec(
                    param_type="float",
                    default_value=DEFAULT_REVIEW_CONCORDANCE,
                    validation_rule="review_concordance <= duplicate_concordance",
                    description="Concordance above which a pair needs manual review",
                ),
                "min_joint_call_fraction": ParameterSpec(
                    param_type="float",
                    default_value=DEFAULT_MIN_JOINT_CALL_FRACTION,
                    validation_rule="0 <= min_joint_call_fraction <= 1",
                    description="Joint call fraction required for a reliable duplicate call",
                ),
            },
            input_entities=["adata"],
            output_entities=["report"],
            execution_context={
                "qc_type": "duplicates",
                "tie_break": "sex_consistent, lower_missingness, lexicographic_id",
                "block_size": self.block_size,
            },
        )
