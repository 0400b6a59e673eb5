"""
Per-individual and per-marker summary metrics for outbred genotype data.

This service computes missingness, genotype frequencies (optionally
stratified by founder minor-allele count) and array intensity percentiles.
All metric methods are pure functions of the input AnnData; assess_quality()
follows the 3-tuple pattern and writes the metrics into a copy.
"""

from typing import Any, Dict, List, Optional, Tuple

import anndata
import numpy as np
import pandas as pd

from outbredqc.config.constants import (
    FOUNDER_GENOTYPE_KEY,
    GENOTYPE_LABELS,
    GT_AA,
    GT_AB,
    GT_BB,
    GT_MISSING,
    INTENSITY_LAYER,
    NON_AUTOSOMES,
)
from outbredqc.core.analysis_ir import AnalysisStep, ParameterSpec
from outbredqc.core.exceptions import QCError
from outbredqc.core.schemas.genotypes import (
    GenotypeSchema,
    chromosome_mask,
    complete_founder_markers,
    founder_matrix,
    genotype_matrix,
    intensity_matrix,
)
from outbredqc.utils.logger import get_logger
from outbredqc.utils.statistics import nan_fraction, robust_zscore

logger = get_logger(__name__)


class GenotypeMetricsError(QCError):
    """Base exception for genotype metric computation."""

    pass


class GenotypeMetricsService:
    """
    Stateless service for genotype and intensity summary statistics.

    Metrics:
        - missingness per individual (all markers or a chromosome subset)
        - missingness per marker
        - founder minor-allele count per marker
        - AA/AB/BB frequencies per individual or marker, optionally by
          founder minor-allele count
        - percentiles of log10(intensity + 1) per individual
    """

    def __init__(self, config=None, **kwargs):
        """
        Initialize the genotype metrics service.

        Args:
            config: Optional configuration dict (unused)
            **kwargs: Ignored
        """
        logger.debug("Initializing stateless GenotypeMetricsService")
        self.config = config or {}

    # ===== Missingness =====

    def missingness_by_individual(
        self, adata: anndata.AnnData, chromosomes: Optional[List[str]] = None
    ) -> pd.Series:
        """
        Fraction of missing calls per individual.

        Args:
            adata: Genotype AnnData
            chromosomes: Restrict to these chromosomes (e.g. autosomes only)

        Returns:
            pd.Series indexed by individual ID, values in [0, 1]; NaN when the
            chromosome subset contains no markers
        """
        mask = chromosome_mask(adata, chromosomes)
        gt = genotype_matrix(adata)[:, mask]
        n_missing = (gt == GT_MISSING).sum(axis=1)
        n_total = np.full(adata.n_obs, gt.shape[1])
        return pd.Series(
            nan_fraction(n_missing, n_total), index=adata.obs_names, name="missingness"
        )

    def missingness_by_marker(self, adata: anndata.AnnData) -> pd.Series:
        """
        Fraction of missing calls per marker across all individuals.

        Returns:
            pd.Series indexed by marker ID
        """
        gt = genotype_matrix(adata)
        n_missing = (gt == GT_MISSING).sum(axis=0)
        n_total = np.full(adata.n_vars, gt.shape[0])
        return pd.Series(
            nan_fraction(n_missing, n_total), index=adata.var_names, name="missingness"
        )

    # ===== Founder panel =====

    def founder_minor_allele_count(self, adata: anndata.AnnData) -> pd.Series:
        """
        Number of founders homozygous for the minor (B) allele at each marker.

        Markers whose founder calls are incomplete are NaN and excluded from
        frequency analyses.

        Returns:
            pd.Series (float, NaN for incomplete markers) indexed by marker ID
        """
        fg = founder_matrix(adata)
        complete = complete_founder_markers(adata)
        mac = (fg == GT_BB).sum(axis=1).astype(float)
        mac[~complete] = np.nan

        n_incomplete = int((~complete).sum())
        if n_incomplete:
            logger.warning(
                f"{n_incomplete}/{adata.n_vars} markers have incomplete founder genotypes; "
                "excluded from founder-dependent analyses"
            )
        return pd.Series(mac, index=adata.var_names, name="founder_mac")

    # ===== Genotype frequencies =====

    def genotype_frequency(
        self,
        adata: anndata.AnnData,
        axis: str = "individual",
        by_founder_mac: bool = False,
    ) -> pd.DataFrame:
        """
        Empirical AA/AB/BB frequencies among non-missing calls.

        Args:
            adata: Genotype AnnData
            axis: "individual" (one row per individual) or "marker"
            by_founder_mac: Stratify by founder minor-allele count. Columns
                then form a (founder_mac, genotype) MultiIndex over bins
                1..n_founders; markers with incomplete founder genotypes are
                dropped. Only valid for axis="individual".

        Returns:
            pd.DataFrame of frequencies; NaN where a group has no calls

        Raises:
            ValueError: For an unknown axis or stratified marker frequencies
        """
        if axis not in ("individual", "marker"):
            raise ValueError(f"axis must be 'individual' or 'marker', got: {axis}")

        gt = genotype_matrix(adata)
        reduce_axis = 1 if axis == "individual" else 0
        index = adata.obs_names if axis == "individual" else adata.var_names

        if not by_founder_mac:
            return self._frequency_table(gt, reduce_axis, index)

        if axis == "marker":
            raise ValueError("by_founder_mac stratification is only defined for axis='individual'")

        mac = self.founder_minor_allele_count(adata).to_numpy()
        n_founders = founder_matrix(adata).shape[1]
        blocks = []
        for bin_value in range(1, n_founders + 1):
            in_bin = mac == bin_value
            table = self._frequency_table(gt[:, in_bin], 1, index)
            table.columns = pd.MultiIndex.from_product([[bin_value], table.columns])
            blocks.append(table)

        result = pd.concat(blocks, axis=1)
        result.columns.names = ["founder_mac", "genotype"]
        return result

    # ===== Intensities =====

    def intensity_percentiles(
        self,
        adata: anndata.AnnData,
        p_low: float = 1.0,
        p_high: float = 99.0,
        chromosomes: Optional[List[str]] = None,
    ) -> pd.DataFrame:
        """
        Per-individual percentiles of log10(intensity + 1).

        Args:
            adata: AnnData with layers['intensity']
            p_low: Low percentile (0-100)
            p_high: High percentile (0-100)
            chromosomes: Restrict to these chromosomes

        Returns:
            pd.DataFrame with columns intensity_p_low / intensity_p_high;
            NaN for individuals without any intensity value
        """
        if not 0 <= p_low < p_high <= 100:
            raise ValueError(
                f"Percentiles must satisfy 0 <= p_low < p_high <= 100, got {p_low}, {p_high}"
            )

        mask = chromosome_mask(adata, chromosomes)
        values = intensity_matrix(adata)[:, mask]
        values = np.where(values < 0, np.nan, values)
        log_values = np.log10(values + 1.0)

        low = np.full(adata.n_obs, np.nan)
        high = np.full(adata.n_obs, np.nan)
        has_values = np.isfinite(log_values).any(axis=1)
        if has_values.any():
            low[has_values], high[has_values] = np.nanpercentile(
                log_values[has_values], [p_low, p_high], axis=1
            )

        n_empty = int((~has_values).sum())
        if n_empty:
            logger.warning(f"{n_empty} individuals have no intensity values; percentiles undefined")

        return pd.DataFrame(
            {"intensity_p_low": low, "intensity_p_high": high}, index=adata.obs_names
        )

    # ===== 3-tuple entry point =====

    def assess_quality(
        self,
        adata: anndata.AnnData,
        autosomes_only: bool = False,
        p_low: float = 1.0,
        p_high: float = 99.0,
        intensity_outlier_z: float = 3.5,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Compute all summary metrics and store them on a copy.

        Adds obs columns: missingness, freq_AA/freq_AB/freq_BB and, when
        intensities are present, intensity_p_low, intensity_p_high,
        low_intensity_array (percentiles over autosomes when present). Adds
        var columns: missingness, founder_mac (when founder genotypes are
        present), freq_AA/freq_AB/freq_BB.

        Args:
            adata: Genotype AnnData
            autosomes_only: Compute individual missingness on autosomes only
            p_low: Low intensity percentile
            p_high: High intensity percentile
            intensity_outlier_z: Robust z below -intensity_outlier_z on the
                low percentile flags a low-intensity array

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]

        Raises:
            GenotypeMetricsError: If the computation fails
        """
        try:
            logger.debug("Starting genotype metric assessment")
            GenotypeSchema.validate(adata)

            adata_qc = adata.copy()

            autosomes = sorted(set(adata.var["chr"].astype(str)) - NON_AUTOSOMES)
            chromosomes = autosomes if autosomes_only else None

            adata_qc.obs["missingness"] = self.missingness_by_individual(adata, chromosomes)
            ind_freq = self.genotype_frequency(adata, axis="individual")
            for label in GENOTYPE_LABELS:
                adata_qc.obs[f"freq_{label}"] = ind_freq[label].to_numpy()

            adata_qc.var["missingness"] = self.missingness_by_marker(adata)
            marker_freq = self.genotype_frequency(adata, axis="marker")
            for label in GENOTYPE_LABELS:
                adata_qc.var[f"freq_{label}"] = marker_freq[label].to_numpy()

            has_founders = FOUNDER_GENOTYPE_KEY in adata.varm
            if has_founders:
                adata_qc.var["founder_mac"] = self.founder_minor_allele_count(adata)

            n_low_intensity = None
            if INTENSITY_LAYER in adata.layers:
                # sex chromosome intensities differ by sex and would mask array failures
                pct = self.intensity_percentiles(
                    adata, p_low=p_low, p_high=p_high, chromosomes=autosomes or None
                )
                adata_qc.obs["intensity_p_low"] = pct["intensity_p_low"]
                adata_qc.obs["intensity_p_high"] = pct["intensity_p_high"]
                z = robust_zscore(pct["intensity_p_low"].to_numpy())
                low_flag = np.nan_to_num(z, nan=0.0) < -intensity_outlier_z
                adata_qc.obs["low_intensity_array"] = low_flag
                n_low_intensity = int(low_flag.sum())

            missingness = adata_qc.obs["missingness"]
            stats = {
                "analysis_type": "genotype_metrics",
                "n_individuals": adata_qc.n_obs,
                "n_markers": adata_qc.n_vars,
                "autosomes_only": autosomes_only,
                "mean_individual_missingness": float(np.nanmean(missingness)),
                "max_individual_missingness": float(np.nanmax(missingness)),
                "mean_marker_missingness": float(np.nanmean(adata_qc.var["missingness"])),
                "n_founder_incomplete_markers": (
                    int(adata_qc.var["founder_mac"].isna().sum()) if has_founders else None
                ),
                "n_low_intensity_arrays": n_low_intensity,
            }

            logger.info(
                f"Genotype metrics computed for {adata_qc.n_obs} individuals × {adata_qc.n_vars} markers "
                f"(mean missingness {stats['mean_individual_missingness']:.3f})"
            )

            ir = self._create_assess_quality_ir(autosomes_only, p_low, p_high, intensity_outlier_z)
            return adata_qc, stats, ir

        except QCError:
            raise
        except Exception as e:
            logger.exception(f"Error in genotype metric assessment: {e}")
            raise GenotypeMetricsError(f"Genotype metric assessment failed: {str(e)}") from e

    # ===== Helper Methods =====

    def _frequency_table(self, gt: np.ndarray, reduce_axis: int, index: pd.Index) -> pd.DataFrame:
        """AA/AB/BB frequencies among called genotypes along one axis."""
        n_called = (gt != GT_MISSING).sum(axis=reduce_axis)
        columns = {}
        for label, code in zip(GENOTYPE_LABELS, (GT_AA, GT_AB, GT_BB)):
            columns[label] = nan_fraction((gt == code).sum(axis=reduce_axis), n_called)
        return pd.DataFrame(columns, index=index)

    def _create_assess_quality_ir(
        self, autosomes_only: bool, p_low: float, p_high: float, intensity_outlier_z: float
    ) -> AnalysisStep:
        """Create IR for genotype metric assessment."""
        return AnalysisStep(
            operation="outbredqc.qc.genotype_metrics",
            tool_name="GenotypeMetricsService.assess_quality",
            description="Missingness, genotype frequencies and intensity percentiles",
            library="outbredqc.services.quality.genotype_metrics_service",
            code_template="""from outbredqc.services.quality.genotype_metrics_service import GenotypeMetricsService

adata_qc, stats, _ = GenotypeMetricsService().assess_quality(
    adata,
    autosomes_only={{ autosomes_only }},
    p_low={{ p_low }},
    p_high={{ p_high }},
    intensity_outlier_z={{ intensity_outlier_z }},
)""",
            imports=[
                "from outbredqc.services.quality.genotype_metrics_service import GenotypeMetricsService"
            ],
            parameters={
                "autosomes_only": autosomes_only,
                "p_low": p_low,
                "p_high": p_high,
                "intensity_outlier_z": intensity_outlier_z,
            },
            parameter_schema={
                "autosomes_only": ParameterSpec(
                    param_type="bool",
                    default_value=False,
                    description="Compute individual missingness on autosomes only",
                ),
                "p_low": ParameterSpec(
                    param_type="float",
                    default_value=1.0,
                    validation_rule="0 <= p_low < p_high",
                    description="Low percentile of log10(intensity + 1)",
                ),
                "p_high": ParameterSpec(
                    param_type="float",
                    default_value=99.0,
                    validation_rule="p_low < p_high <= 100",
                    description="High percentile of log10(intensity + 1)",
                ),
                "intensity_outlier_z": ParameterSpec(
                    param_type="float",
                    default_value=3.5,
                    validation_rule="intensity_outlier_z > 0",
                    description="Robust z cutoff for low-intensity arrays",
                ),
            },
            input_entities=["adata"],
            output_entities=["adata_qc"],
            execution_context={"qc_type": "genotype_metrics"},
        )
