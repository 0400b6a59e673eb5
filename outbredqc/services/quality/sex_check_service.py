"""
Sex verification from X and Y chromosome array intensities.

Markers whose intensity separates declared males from declared females are
selected per chromosome with Welch t-tests and a Bonferroni cutoff. Each
individual is summarised by its mean intensity over the selected X and Y
markers, and the (X, Y) summaries are split into two clusters by k-means.
The cluster boundary is therefore fit from the data, never a fixed constant.

Flags:
    - sex_discordant: the individual falls in the cluster opposite its
      declared sex
    - aneuploidy_candidate: X intensity anomalously low within the
      individual's own (declared = inferred) sex cluster, e.g. XO females
"""

from typing import Any, Dict, Tuple

import anndata
import numpy as np
import pandas as pd
from scipy import stats
from sklearn.cluster import KMeans
from sklearn.preprocessing import StandardScaler

from outbredqc.config.constants import DEFAULT_ANEUPLOIDY_Z, DEFAULT_SEX_TEST_ALPHA
from outbredqc.core.analysis_ir import AnalysisStep, ParameterSpec
from outbredqc.core.exceptions import InsufficientDataError, InsufficientGroupsError, QCError
from outbredqc.core.schemas.genotypes import (
    GenotypeSchema,
    chromosome_mask,
    declared_sex,
    intensity_matrix,
)
from outbredqc.utils.logger import get_logger
from outbredqc.utils.statistics import bonferroni_select, nan_fraction, robust_zscore

logger = get_logger(__name__)


class SexCheckError(QCError):
    """Base exception for sex verification."""

    pass


class SexCheckService:
    """
    Stateless service for intensity-based sex verification.

    The classification has three steps:
        1. select_informative_markers() on X and on Y
        2. average_intensity() over the selected markers
        3. k-means (k=2) on the standardised (X, Y) summaries
    """

    def __init__(self, random_state: int = 0, **kwargs):
        """
        Initialize the sex check service.

        Args:
            random_state: Seed for k-means initialisation, fixed so that
                results are reproducible
            **kwargs: Ignored
        """
        logger.debug("Initializing stateless SexCheckService")
        self.random_state = random_state

    def select_informative_markers(
        self,
        adata: anndata.AnnData,
        chromosome: str,
        alpha: float = DEFAULT_SEX_TEST_ALPHA,
    ) -> pd.DataFrame:
        """
        Test each marker on a chromosome for a male/female intensity difference.

        Args:
            adata: AnnData with layers['intensity'] and obs['sex']
            chromosome: Chromosome to test (e.g. "X")
            alpha: Family-wise alpha; per-test threshold is alpha / n_tested

        Returns:
            pd.DataFrame indexed by marker with t_statistic, p_value and
            selected; stats threshold in attrs['bonferroni_threshold']

        Raises:
            InsufficientGroupsError: If declared sex is absent or single-valued
        """
        sex = declared_sex(adata)
        males = (sex == "M").to_numpy()
        females = (sex == "F").to_numpy()
        if males.sum() < 2 or females.sum() < 2:
            raise InsufficientGroupsError(
                f"Need at least two declared males and two declared females, "
                f"got {int(males.sum())} M / {int(females.sum())} F"
            )

        mask = chromosome_mask(adata, [chromosome])
        markers = adata.var_names[mask]
        if mask.sum() == 0:
            result = pd.DataFrame(
                {"t_statistic": [], "p_value": [], "selected": []}, index=markers
            )
            result.attrs["bonferroni_threshold"] = float("nan")
            return result

        values = intensity_matrix(adata)[:, mask]
        t_stat, p_values = stats.ttest_ind(
            values[males], values[females], axis=0, equal_var=False, nan_policy="omit"
        )
        t_stat = np.ma.filled(np.ma.asarray(t_stat, dtype=float), np.nan)
        p_values = np.ma.filled(np.ma.asarray(p_values, dtype=float), np.nan)

        selected, threshold = bonferroni_select(p_values, alpha=alpha)
        result = pd.DataFrame(
            {"t_statistic": t_stat, "p_value": p_values, "selected": selected}, index=markers
        )
        result.attrs["bonferroni_threshold"] = threshold

        logger.debug(
            f"Chromosome {chromosome}: {int(selected.sum())}/{int(np.isfinite(p_values).sum())} "
            f"markers pass Bonferroni threshold {threshold:.3g}"
        )
        return result

    def average_intensity(self, adata: anndata.AnnData, markers: pd.Index) -> pd.Series:
        """
        Mean intensity per individual over the given markers, ignoring NaN.

        Returns:
            pd.Series indexed by individual; NaN where no marker has a value
        """
        cols = adata.var_names.get_indexer(markers)
        if (cols < 0).any():
            raise KeyError(f"Unknown markers: {list(markers[cols < 0])[:5]}")
        values = intensity_matrix(adata)[:, cols]
        finite = np.isfinite(values)
        means = nan_fraction(np.where(finite, values, 0.0).sum(axis=1), finite.sum(axis=1))
        return pd.Series(means, index=adata.obs_names)

    def check_sex(
        self,
        adata: anndata.AnnData,
        alpha: float = DEFAULT_SEX_TEST_ALPHA,
        aneuploidy_z: float = DEFAULT_ANEUPLOIDY_Z,
        x_chromosome: str = "X",
        y_chromosome: str = "Y",
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Infer sex from X/Y intensities and flag discordant individuals.

        Adds obs columns x_intensity, y_intensity, sex_inferred ("M"/"F"/NaN),
        sex_discordant and aneuploidy_candidate to a copy of the input.

        Args:
            adata: AnnData with layers['intensity'] and obs['sex']
            alpha: Family-wise alpha for marker selection
            aneuploidy_z: Robust z below -aneuploidy_z within the own sex
                cluster flags a possible aneuploidy
            x_chromosome: Name of the X chromosome in var['chr']
            y_chromosome: Name of the Y chromosome in var['chr']

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]

        Raises:
            InsufficientGroupsError: If declared sex cannot form two groups
            InsufficientDataError: If no informative X or Y marker is found
            SexCheckError: For any other failure
        """
        try:
            logger.debug("Starting intensity-based sex check")
            GenotypeSchema.validate(adata, require_intensity=True)

            x_tests = self.select_informative_markers(adata, x_chromosome, alpha)
            y_tests = self.select_informative_markers(adata, y_chromosome, alpha)
            x_markers = x_tests.index[x_tests["selected"].to_numpy(dtype=bool)]
            y_markers = y_tests.index[y_tests["selected"].to_numpy(dtype=bool)]

            if len(x_markers) == 0 or len(y_markers) == 0:
                raise InsufficientDataError(
                    f"No informative markers after Bonferroni selection "
                    f"({len(x_markers)} on {x_chromosome}, {len(y_markers)} on {y_chromosome})"
                )

            x_int = self.average_intensity(adata, x_markers)
            y_int = self.average_intensity(adata, y_markers)

            inferred, cluster_info = self._cluster_sexes(x_int, y_int)
            declared = declared_sex(adata)
            discordant = declared.notna() & inferred.notna() & (declared != inferred)

            aneuploidy = pd.Series(False, index=adata.obs_names)
            for sex_label in ("M", "F"):
                in_cluster = (inferred == sex_label).to_numpy()
                z = robust_zscore(np.where(in_cluster, x_int.to_numpy(), np.nan))
                low_x = np.nan_to_num(z, nan=0.0) < -aneuploidy_z
                aneuploidy |= low_x & in_cluster & ~discordant.to_numpy()

            adata_sex = adata.copy()
            adata_sex.obs["x_intensity"] = x_int
            adata_sex.obs["y_intensity"] = y_int
            adata_sex.obs["sex_inferred"] = inferred.astype(object)
            adata_sex.obs["sex_discordant"] = discordant.to_numpy(dtype=bool)
            adata_sex.obs["aneuploidy_candidate"] = aneuploidy.to_numpy(dtype=bool)

            discordant_ids = sorted(adata.obs_names[discordant.to_numpy(dtype=bool)])
            aneuploidy_ids = sorted(adata.obs_names[aneuploidy.to_numpy(dtype=bool)])
            stats_dict = {
                "analysis_type": "sex_check",
                "alpha": alpha,
                "n_x_markers_tested": int(np.isfinite(x_tests["p_value"]).sum()),
                "n_x_markers_selected": int(len(x_markers)),
                "x_bonferroni_threshold": x_tests.attrs["bonferroni_threshold"],
                "n_y_markers_tested": int(np.isfinite(y_tests["p_value"]).sum()),
                "n_y_markers_selected": int(len(y_markers)),
                "y_bonferroni_threshold": y_tests.attrs["bonferroni_threshold"],
                **cluster_info,
                "n_inferred_male": int((inferred == "M").sum()),
                "n_inferred_female": int((inferred == "F").sum()),
                "n_unclassified": int(inferred.isna().sum()),
                "n_discordant": len(discordant_ids),
                "discordant_individuals": discordant_ids,
                "n_aneuploidy_candidates": len(aneuploidy_ids),
                "aneuploidy_candidates": aneuploidy_ids,
            }

            if discordant_ids:
                logger.warning(
                    f"{len(discordant_ids)} individuals with discordant sex: "
                    f"{', '.join(discordant_ids[:10])}"
                )
            logger.info(
                f"Sex check completed: {stats_dict['n_inferred_male']} M / "
                f"{stats_dict['n_inferred_female']} F inferred, {len(discordant_ids)} discordant, "
                f"{len(aneuploidy_ids)} aneuploidy candidates"
            )

            ir = self._create_check_sex_ir(alpha, aneuploidy_z, x_chromosome, y_chromosome)
            return adata_sex, stats_dict, ir

        except QCError:
            raise
        except Exception as e:
            logger.exception(f"Error in sex check: {e}")
            raise SexCheckError(f"Sex check failed: {str(e)}") from e

    # ===== Helper Methods =====

    def _cluster_sexes(
        self, x_int: pd.Series, y_int: pd.Series
    ) -> Tuple[pd.Series, Dict[str, Any]]:
        """
        Split individuals into a male and a female cluster.

        The female cluster is the one with the larger median (X - Y).

        Returns:
            Tuple of (inferred sex per individual, cluster summary for stats)
        """
        summaries = pd.DataFrame({"x": x_int, "y": y_int})
        usable = summaries.notna().all(axis=1).to_numpy()
        if usable.sum() < 2:
            raise InsufficientDataError(
                f"Only {int(usable.sum())} individuals have both X and Y intensity summaries"
            )

        points = summaries.to_numpy()[usable]
        scaled = StandardScaler().fit_transform(points)
        labels = KMeans(n_clusters=2, n_init=10, random_state=self.random_state).fit_predict(scaled)

        medians = np.array([np.median(points[labels == k], axis=0) for k in (0, 1)])
        female_label = int(np.argmax(medians[:, 0] - medians[:, 1]))
        male_label = 1 - female_label

        inferred = pd.Series(np.nan, index=summaries.index, dtype=object)
        inferred[usable] = np.where(labels == female_label, "F", "M")

        female_median = medians[female_label]
        male_median = medians[male_label]
        cluster_info = {
            "female_median_x": float(female_median[0]),
            "female_median_y": float(female_median[1]),
            "male_median_x": float(male_median[0]),
            "male_median_y": float(male_median[1]),
            "x_boundary": float((female_median[0] + male_median[0]) / 2),
            "y_boundary": float((female_median[1] + male_median[1]) / 2),
        }
        return inferred, cluster_info

    def _create_check_sex_ir(
        self, alpha: float, aneuploidy_z: float, x_chromosome: str, y_chromosome: str
    ) -> AnalysisStep:
        """Create IR for sex verification."""
        return AnalysisStep(
            operation="outbredqc.qc.sex_check",
            tool_name="SexCheckService.check_sex",
            description="Infer sex from X/Y intensities with Bonferroni marker selection and k-means",
            library="scikit-learn",
            code_template="""from outbredqc.services.quality.sex_check_service import SexCheckService

adata_sex, stats, _ = SexCheckService().check_sex(
    adata,
    alpha={{ alpha }},
    aneuploidy_z={{ aneuploidy_z }},
    x_chromosome="{{ x_chromosome }}",
    y_chromosome="{{ y_chromosome }}",
)
print(f"Discordant: {stats['discordant_individuals']}")""",
            imports=["from outbredqc.services.quality.sex_check_service import SexCheckService"],
            parameters={
                "alpha": alpha,
                "aneuploidy_z": aneuploidy_z,
                "x_chromosome": x_chromosome,
                "y_chromosome": y_chromosome,
            },
            parameter_schema={
                "alpha": ParameterSpec(
                    param_type="float",
                    default_value=DEFAULT_SEX_TEST_ALPHA,
                    validation_rule="0 < alpha < 1",
                    description="Family-wise alpha before Bonferroni correction",
                ),
                "aneuploidy_z": ParameterSpec(
                    param_type="float",
                    default_value=DEFAULT_ANEUPLOIDY_Z,
                    validation_rule="aneuploidy_z > 0",
                    description="Robust z cutoff for reduced X intensity",
                ),
            },
            input_entities=["adata"],
            output_entities=["adata_sex"],
            execution_context={
                "qc_type": "sex_check",
                "method": "welch_t_bonferroni_kmeans",
                "random_state": self.random_state,
            },
        )
