"""
Constants and defaults for outbred-population genotype QC.

Numeric thresholds below were chosen empirically for one Diversity Outbred
dataset (~500 mice on the GigaMUGA array). They are defaults for
``QCThresholds``, not universal constants; tune them per dataset.
"""

from typing import Final, List

__all__ = [
    "GT_MISSING",
    "GT_AA",
    "GT_AB",
    "GT_BB",
    "GENOTYPE_LABELS",
    "GENOTYPE_LAYER",
    "INTENSITY_LAYER",
    "FOUNDER_GENOTYPE_KEY",
    "FOUNDER_STRAINS_KEY",
    "DEFAULT_MAX_INDIVIDUAL_MISSINGNESS",
    "DEFAULT_DUPLICATE_CONCORDANCE",
    "DEFAULT_REVIEW_CONCORDANCE",
    "DEFAULT_MIN_JOINT_CALL_FRACTION",
    "DEFAULT_ERROR_LOD_CUTOFF",
    "DEFAULT_MAX_MARKER_ERROR_RATE",
    "DEFAULT_HIGH_DRIFT",
    "DEFAULT_MIN_HIGH_DRIFT_MARKERS",
    "DEFAULT_SEX_TEST_ALPHA",
    "DEFAULT_MIN_DECODE_PROB",
    "DEFAULT_ANEUPLOIDY_Z",
    "DEFAULT_INTENSITY_OUTLIER_Z",
    "DEFAULT_ERROR_RATE",
    "DO_FOUNDER_STRAINS",
    "NON_RECONSTRUCTED_CHROMOSOMES",
    "NON_AUTOSOMES",
]

# Genotype codes used in layers["GT"] and varm["founder_GT"]
GT_MISSING: Final[int] = -1
GT_AA: Final[int] = 0  # homozygous major
GT_AB: Final[int] = 1  # heterozygous
GT_BB: Final[int] = 2  # homozygous minor
GENOTYPE_LABELS: Final[List[str]] = ["AA", "AB", "BB"]

# AnnData keys
GENOTYPE_LAYER: Final[str] = "GT"
INTENSITY_LAYER: Final[str] = "intensity"
FOUNDER_GENOTYPE_KEY: Final[str] = "founder_GT"
FOUNDER_STRAINS_KEY: Final[str] = "founder_strains"

# Default thresholds (dataset-dependent)
DEFAULT_MAX_INDIVIDUAL_MISSINGNESS = 0.1997  # fraction missing per individual
DEFAULT_DUPLICATE_CONCORDANCE = 0.90  # probable duplicate above this
DEFAULT_REVIEW_CONCORDANCE = 0.85  # manual review between this and duplicate cutoff
DEFAULT_MIN_JOINT_CALL_FRACTION = 0.50  # below this, concordance is unreliable
DEFAULT_ERROR_LOD_CUTOFF = 2.0  # log10 scale
DEFAULT_MAX_MARKER_ERROR_RATE = 0.05
DEFAULT_HIGH_DRIFT = 1.5  # on the [0, 2] scale
DEFAULT_MIN_HIGH_DRIFT_MARKERS = 5
DEFAULT_SEX_TEST_ALPHA = 0.05  # before Bonferroni correction
DEFAULT_MIN_DECODE_PROB = 0.5
DEFAULT_ANEUPLOIDY_Z = 3.5  # robust z of X intensity within a sex cluster
DEFAULT_INTENSITY_OUTLIER_Z = 3.5  # robust z of low log-intensity percentile
DEFAULT_ERROR_RATE = 0.002  # per-call genotyping error for reconstruction

# Diversity Outbred founder panel (order defines state letters A..H)
DO_FOUNDER_STRAINS: Final[List[str]] = [
    "A/J",
    "C57BL/6J",
    "129S1/SvImJ",
    "NOD/ShiLtJ",
    "NZO/HlLtJ",
    "CAST/EiJ",
    "PWK/PhJ",
    "WSB/EiJ",
]

NON_RECONSTRUCTED_CHROMOSOMES: Final[List[str]] = ["Y", "M", "MT"]
NON_AUTOSOMES: Final[frozenset] = frozenset({"X", "Y", "M", "MT"})
