"""
Error taxonomy for the QC pipeline.

Statistic-level problems are normally expressed as NaN values rather than
exceptions; the classes below cover the cases where a computation cannot
produce a meaningful result at all.
"""

from typing import Optional


class QCError(Exception):
    """Base exception for all outbredqc errors."""

    pass


class SchemaValidationError(QCError):
    """Input AnnData lacks required layers or annotations."""

    pass


class InsufficientDataError(QCError):
    """Too few non-missing values to compute a statistic."""

    pass


class InsufficientGroupsError(QCError):
    """A classifier cannot form its contrast groups (e.g. only one declared sex)."""

    pass


class InconsistentFounderPanelError(QCError):
    """A marker's founder genotypes are incomplete."""

    def __init__(self, marker: str, message: Optional[str] = None):
        self.marker = marker
        super().__init__(message or f"Founder genotypes incomplete at marker '{marker}'")


class ReconstructionFailure(QCError):
    """Haplotype reconstruction failed for a chromosome."""

    def __init__(self, chromosome: str, reason: str):
        self.chromosome = chromosome
        self.reason = reason
        super().__init__(f"Reconstruction failed for chromosome {chromosome}: {reason}")


class DriftStateError(QCError):
    """A drift analysis transition was requested out of order."""

    pass
