"""
Lineage tracking for filtered genotype views.

Filtering never mutates an AnnData in place; each restriction is a new object
whose adata.uns['lineage'] records where it came from:

    {
        "base_name": str,           # dataset name without processing suffixes
        "version": int,             # 1 = raw, incremented per filtering step
        "processing_step": str,     # e.g. "individuals_filtered"
        "parent_version": int | None,
        "step_summary": str | None,
        "n_individuals": int,
        "n_markers": int,
    }
"""

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

from outbredqc.utils.logger import get_logger

if TYPE_CHECKING:
    from anndata import AnnData

logger = get_logger(__name__)

LINEAGE_KEY = "lineage"

CANONICAL_STEPS: set[str] = {
    "raw",
    "quality_assessed",
    "individuals_filtered",
    "markers_filtered",
    "custom",
}


@dataclass
class LineageMetadata:
    """Lineage metadata schema for adata.uns['lineage']."""

    base_name: str
    version: int
    processing_step: str
    parent_version: Optional[int]
    step_summary: Optional[str]
    n_individuals: int
    n_markers: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LineageMetadata":
        valid_keys = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in valid_keys})


def get_lineage(adata: "AnnData") -> Optional[LineageMetadata]:
    """Extract lineage metadata from AnnData if present."""
    if LINEAGE_KEY not in adata.uns:
        return None
    return LineageMetadata.from_dict(dict(adata.uns[LINEAGE_KEY]))


def ensure_lineage(adata: "AnnData", base_name: str = "genotypes") -> "AnnData":
    """Attach raw (version 1) lineage if the object has none. Modifies in place."""
    if LINEAGE_KEY not in adata.uns:
        adata.uns[LINEAGE_KEY] = LineageMetadata(
            base_name=base_name,
            version=1,
            processing_step="raw",
            parent_version=None,
            step_summary=None,
            n_individuals=adata.n_obs,
            n_markers=adata.n_vars,
        ).to_dict()
    return adata


def derive_lineage(
    parent: "AnnData",
    child: "AnnData",
    step: str,
    step_summary: Optional[str] = None,
) -> "AnnData":
    """
    Record that ``child`` was derived from ``parent`` by ``step``.

    Args:
        parent: Source object (not modified)
        child: Newly created object (lineage attached in place)
        step: Processing step; names outside CANONICAL_STEPS are accepted
            and logged at debug level
        step_summary: Human-readable summary of what changed

    Returns:
        The child object
    """
    if step not in CANONICAL_STEPS:
        logger.debug(f"Non-canonical lineage step: {step}")
    parent_lineage = get_lineage(parent)
    base_name = parent_lineage.base_name if parent_lineage else "genotypes"
    parent_version = parent_lineage.version if parent_lineage else 1

    child.uns[LINEAGE_KEY] = LineageMetadata(
        base_name=base_name,
        version=parent_version + 1,
        processing_step=step,
        parent_version=parent_version,
        step_summary=step_summary,
        n_individuals=child.n_obs,
        n_markers=child.n_vars,
    ).to_dict()
    return child
