"""
Schema definitions for outbred-population genotype data.

This module defines the expected structure of the AnnData object consumed by
the QC services and provides small accessors that every service uses to pull
matrices out of it consistently.

Layout (individuals × markers):

    obs:    index = individual ID
            sex         "M" / "F" / NaN   declared sex
            generation  int               DO generation (optional)

    var:    index = marker ID
            chr         str               chromosome ("1".."19", "X", "Y", "M")
            cM          float             genetic map position
            bp          int               physical position (optional)

    layers: GT          -1 missing, 0 AA, 1 AB, 2 BB
            intensity   float, NaN missing (optional; sum of both channels)

    varm:   founder_GT  markers × founders, same codes as GT

    uns:    founder_strains  list of founder names (column order of founder_GT)

Example layers['GT'] (3 individuals × 4 markers):
              UNC6     JAX00001  UNC102   backupUNC1
    DO-001        0        1        2        -1
    DO-002        1        0        1         2
    DO-003        2        2        0         0
"""

from typing import Any, Dict, List, Optional

import anndata
import numpy as np
import pandas as pd

from outbredqc.config.constants import (
    FOUNDER_GENOTYPE_KEY,
    FOUNDER_STRAINS_KEY,
    GENOTYPE_LAYER,
    GT_AA,
    GT_BB,
    GT_MISSING,
    INTENSITY_LAYER,
)
from outbredqc.core.exceptions import SchemaValidationError


class GenotypeSchema:
    """Schema definition and validation for outbred genotype AnnData objects."""

    @staticmethod
    def get_schema() -> Dict[str, Any]:
        """
        Get the schema definition.

        Returns:
            Dict[str, Any]: Required and optional keys per AnnData slot
        """
        return {
            "modality": "outbred_genotypes",
            "description": "Multi-parent outbred genotype array data",
            "obs": {
                "required": [],
                "optional": ["sex", "generation"],
                "types": {"sex": "categorical", "generation": "numeric"},
            },
            "var": {
                "required": ["chr"],
                "optional": ["cM", "bp", "founder_mac"],
                "types": {
                    "chr": "categorical",
                    "cM": "numeric",
                    "bp": "numeric",
                    "founder_mac": "numeric",
                },
            },
            "layers": {
                "required": [GENOTYPE_LAYER],
                "optional": [INTENSITY_LAYER],
            },
            "varm": {"required": [], "optional": [FOUNDER_GENOTYPE_KEY]},
            "uns": {"required": [], "optional": [FOUNDER_STRAINS_KEY, "lineage"]},
        }

    @staticmethod
    def validate(
        adata: anndata.AnnData,
        require_founders: bool = False,
        require_map: bool = False,
        require_intensity: bool = False,
    ) -> None:
        """
        Validate an AnnData object against the schema.

        Args:
            adata: Object to validate
            require_founders: Require varm['founder_GT']
            require_map: Require var['cM']
            require_intensity: Require layers['intensity']

        Raises:
            SchemaValidationError: If any requirement is not met
        """
        problems: List[str] = []

        if adata.n_obs == 0 or adata.n_vars == 0:
            problems.append(f"empty data (shape {adata.shape})")
        if GENOTYPE_LAYER not in adata.layers:
            problems.append(f"missing layers['{GENOTYPE_LAYER}']")
        if "chr" not in adata.var.columns:
            problems.append("missing var['chr']")
        if require_map and "cM" not in adata.var.columns:
            problems.append("missing var['cM']")
        if require_intensity and INTENSITY_LAYER not in adata.layers:
            problems.append(f"missing layers['{INTENSITY_LAYER}']")
        if require_founders and FOUNDER_GENOTYPE_KEY not in adata.varm:
            problems.append(f"missing varm['{FOUNDER_GENOTYPE_KEY}']")

        if GENOTYPE_LAYER in adata.layers and not problems:
            codes = np.unique(np.asarray(adata.layers[GENOTYPE_LAYER]))
            unexpected = set(codes.tolist()) - {GT_MISSING, GT_AA, 1, GT_BB}
            if unexpected:
                problems.append(
                    f"unexpected genotype codes {sorted(unexpected)[:5]} "
                    f"(expected -1, 0, 1, 2)"
                )

        if problems:
            raise SchemaValidationError("Invalid genotype data: " + "; ".join(problems))


def genotype_matrix(adata: anndata.AnnData) -> np.ndarray:
    """Return layers['GT'] as an int8 ndarray (individuals × markers)."""
    gt = adata.layers[GENOTYPE_LAYER]
    if hasattr(gt, "toarray"):
        gt = gt.toarray()
    return np.asarray(gt).astype(np.int8)


def intensity_matrix(adata: anndata.AnnData) -> np.ndarray:
    """Return layers['intensity'] as a float ndarray with NaN for missing."""
    if INTENSITY_LAYER not in adata.layers:
        raise SchemaValidationError(f"missing layers['{INTENSITY_LAYER}']")
    values = adata.layers[INTENSITY_LAYER]
    if hasattr(values, "toarray"):
        values = values.toarray()
    return np.asarray(values, dtype=float)


def founder_matrix(adata: anndata.AnnData) -> np.ndarray:
    """Return varm['founder_GT'] as an int8 ndarray (markers × founders)."""
    if FOUNDER_GENOTYPE_KEY not in adata.varm:
        raise SchemaValidationError(f"missing varm['{FOUNDER_GENOTYPE_KEY}']")
    return np.asarray(adata.varm[FOUNDER_GENOTYPE_KEY]).astype(np.int8)


def founder_strains(adata: anndata.AnnData) -> List[str]:
    """Founder names in column order of varm['founder_GT']."""
    n_founders = founder_matrix(adata).shape[1]
    strains = adata.uns.get(FOUNDER_STRAINS_KEY)
    if strains is None:
        return [chr(ord("A") + i) for i in range(n_founders)]
    return [str(s) for s in strains]


def complete_founder_markers(adata: anndata.AnnData) -> np.ndarray:
    """
    Boolean mask of markers whose founder genotypes are complete.

    Founders are inbred, so a usable founder call is homozygous (AA or BB).
    Missing or heterozygous founder calls make the marker unusable for
    founder-dependent analyses.
    """
    fg = founder_matrix(adata)
    return np.all((fg == GT_AA) | (fg == GT_BB), axis=1)


def chromosome_mask(adata: anndata.AnnData, chromosomes: Optional[List[str]]) -> np.ndarray:
    """Boolean marker mask for the given chromosomes (all markers if None)."""
    if chromosomes is None:
        return np.ones(adata.n_vars, dtype=bool)
    wanted = {str(c) for c in chromosomes}
    return adata.var["chr"].astype(str).isin(wanted).to_numpy()


def chromosome_order(adata: anndata.AnnData) -> List[str]:
    """Chromosomes in order of first appearance in var."""
    return list(pd.unique(adata.var["chr"].astype(str)))


def declared_sex(adata: anndata.AnnData) -> pd.Series:
    """Declared sex per individual normalised to 'M' / 'F' / NaN."""
    if "sex" not in adata.obs.columns:
        return pd.Series(np.nan, index=adata.obs_names, dtype=object)
    raw = adata.obs["sex"].astype(object)
    normalised = raw.map(
        lambda s: str(s).strip().upper()[:1] if isinstance(s, str) and s.strip() else np.nan
    )
    return normalised.where(normalised.isin(["M", "F"]))
