"""
Synthetic data and test doubles for outbredqc testing.

Functions:
    - synthetic_do_cross: Generate a Diversity Outbred-like genotype dataset
      together with its true founder-pair states
    - inject_genotype_errors: Overwrite calls with values inconsistent with
      the true states

Classes:
    - SimulatedReconstructor: Deterministic HaplotypeReconstructor that turns
      known true states into probability tensors

Example:
    >>> from outbredqc.testing.fixtures import SimulatedReconstructor, synthetic_do_cross
    >>> adata, truth = synthetic_do_cross(n_individuals=20, markers_per_chromosome=50)
    >>> reconstructor = SimulatedReconstructor(truth)
    >>> adata.layers["GT"].shape
    (20, 220)
"""

import threading
from typing import Dict, Iterable, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd

from outbredqc.config.constants import (
    DO_FOUNDER_STRAINS,
    FOUNDER_GENOTYPE_KEY,
    FOUNDER_STRAINS_KEY,
    GENOTYPE_LAYER,
    GT_MISSING,
    INTENSITY_LAYER,
)
from outbredqc.core.exceptions import InconsistentFounderPanelError
from outbredqc.core.haplotypes import n_states_for, state_snp_genotypes


def synthetic_do_cross(
    n_individuals: int = 100,
    markers_per_chromosome: int = 100,
    seed: int = 42,
    *,
    autosomes: Sequence[str] = ("1", "2"),
    n_x_markers: Optional[int] = None,
    n_y_markers: int = 20,
    n_founders: int = 8,
    missing_rate: float = 0.01,
    mean_crossovers: float = 1.5,
    with_intensity: bool = True,
) -> Tuple[ad.AnnData, pd.DataFrame]:
    """Generate a synthetic multi-parent outbred genotype dataset.

    Each individual is a mosaic of founder-pair states: per chromosome a
    Poisson number of breakpoints splits the markers into segments with a
    random state each. Observed SNP calls follow from the founder panel with
    missing calls at ``missing_rate``. Y markers are called in males only.

    Intensities (sum of both channels) are about 1.0 on autosomes, 1.0 / 0.5
    on X for females / males and 0.1 / 0.8 on Y, with small noise.

    Args:
        n_individuals: Number of individuals, alternating F / M declared sex
        markers_per_chromosome: Markers per autosome
        seed: Random seed
        autosomes: Autosome names
        n_x_markers: Markers on X (defaults to markers_per_chromosome)
        n_y_markers: Markers on Y
        n_founders: Founder panel size
        missing_rate: Probability of a missing call
        mean_crossovers: Mean breakpoints per chromosome
        with_intensity: Add layers['intensity']

    Returns:
        Tuple of (AnnData, true states individuals × reconstructable markers)

    Example:
        >>> adata, truth = synthetic_do_cross(n_individuals=10, markers_per_chromosome=20)
        >>> sorted(set(adata.var["chr"]))
        ['1', '2', 'X', 'Y']
    """
    rng = np.random.default_rng(seed)
    n_x_markers = markers_per_chromosome if n_x_markers is None else n_x_markers
    n_states = n_states_for(n_founders)

    individuals = [f"DO-{i + 1:03d}" for i in range(n_individuals)]
    sex = np.array(["F" if i % 2 == 0 else "M" for i in range(n_individuals)], dtype=object)
    is_male = sex == "M"

    chrom_sizes = [(c, markers_per_chromosome) for c in autosomes] + [("X", n_x_markers)]
    if n_y_markers:
        chrom_sizes.append(("Y", n_y_markers))

    var_frames = []
    gt_blocks = []
    truth_blocks = []
    founder_blocks = []
    for chrom, n_markers in chrom_sizes:
        ids = [f"{chrom}_{j + 1:04d}" for j in range(n_markers)]
        cm = np.sort(rng.uniform(0, 100, n_markers))
        var_frames.append(
            pd.DataFrame(
                {"chr": chrom, "cM": cm, "bp": (cm * 1e6).astype(np.int64) + 3_000_000},
                index=ids,
            )
        )

        founders = rng.integers(0, 2, size=(n_markers, n_founders)) * 2
        monomorphic = np.all(founders == founders[:, :1], axis=1)
        flip = rng.integers(0, n_founders, size=n_markers)
        founders[monomorphic, flip[monomorphic]] = 2 - founders[monomorphic, flip[monomorphic]]
        founder_blocks.append(founders.astype(np.int8))

        if chrom == "Y":
            founder_idx = rng.integers(0, n_founders, size=n_individuals)
            gt = founders[:, founder_idx].T.astype(np.int8)
            gt[~is_male, :] = GT_MISSING
        else:
            states = np.empty((n_individuals, n_markers), dtype=np.int16)
            for i in range(n_individuals):
                n_breaks = min(rng.poisson(mean_crossovers), n_markers - 1)
                breaks = np.sort(rng.choice(np.arange(1, n_markers), size=n_breaks, replace=False))
                bounds = np.concatenate([[0], breaks, [n_markers]])
                for start, stop in zip(bounds[:-1], bounds[1:]):
                    states[i, start:stop] = rng.integers(0, n_states)
            snp = state_snp_genotypes(founders)
            gt = snp[states, np.arange(n_markers)].astype(np.int8)
            truth_blocks.append(pd.DataFrame(states, index=individuals, columns=ids))
        gt_blocks.append(gt)

    var = pd.concat(var_frames)
    gt = np.concatenate(gt_blocks, axis=1)
    gt[rng.random(gt.shape) < missing_rate] = GT_MISSING

    obs = pd.DataFrame(
        {"sex": sex, "generation": rng.integers(10, 25, size=n_individuals)},
        index=individuals,
    )
    adata = ad.AnnData(
        X=np.zeros(gt.shape, dtype=np.float32),
        obs=obs,
        var=var,
    )
    adata.layers[GENOTYPE_LAYER] = gt
    adata.varm[FOUNDER_GENOTYPE_KEY] = np.concatenate(founder_blocks, axis=0)
    adata.uns[FOUNDER_STRAINS_KEY] = list(DO_FOUNDER_STRAINS[:n_founders])

    if with_intensity:
        chrom = var["chr"].to_numpy()
        base = np.ones(gt.shape)
        base[:, chrom == "X"] = np.where(is_male, 0.5, 1.0)[:, None]
        base[:, chrom == "Y"] = np.where(is_male, 0.8, 0.1)[:, None]
        noise = rng.normal(0.0, 0.05, size=gt.shape)
        adata.layers[INTENSITY_LAYER] = np.clip(base + noise, 0.0, None)

    truth = pd.concat(truth_blocks, axis=1)
    return adata, truth


def set_sex_intensity(adata: ad.AnnData, individual: str, sex: str, seed: int = 0) -> None:
    """Regenerate X/Y intensities of one individual as a typical ``sex`` ('M'/'F'). In place."""
    rng = np.random.default_rng(seed)
    row = adata.obs_names.get_loc(individual)
    chrom = adata.var["chr"].to_numpy()
    values = np.asarray(adata.layers[INTENSITY_LAYER], dtype=float)
    x_level, y_level = (0.5, 0.8) if sex == "M" else (1.0, 0.1)
    for mask, level in ((chrom == "X", x_level), (chrom == "Y", y_level)):
        values[row, mask] = np.clip(level + rng.normal(0.0, 0.05, size=int(mask.sum())), 0.0, None)
    adata.layers[INTENSITY_LAYER] = values


def inject_genotype_errors(
    adata: ad.AnnData,
    truth: pd.DataFrame,
    marker: str,
    individuals: Iterable[str],
) -> None:
    """
    Replace calls at ``marker`` with a genotype the true state cannot produce.

    Modifies adata in place.

    Raises:
        InconsistentFounderPanelError: If the founder calls at ``marker`` are
            incomplete, so the expected genotype is unknown
    """
    col = adata.var_names.get_loc(marker)
    founders = np.asarray(adata.varm[FOUNDER_GENOTYPE_KEY])[col : col + 1, :]
    snp = state_snp_genotypes(founders)[:, 0]
    if (snp == GT_MISSING).any():
        raise InconsistentFounderPanelError(marker)
    gt = np.asarray(adata.layers[GENOTYPE_LAYER]).copy()
    for ind in individuals:
        row = adata.obs_names.get_loc(ind)
        expected = snp[int(truth.loc[ind, marker])]
        # a homozygous call opposite to the expected one is always inconsistent
        gt[row, col] = 2 if expected == 0 else 0
    adata.layers[GENOTYPE_LAYER] = gt


class SimulatedReconstructor:
    """
    Deterministic stand-in for a forward-backward reconstruction.

    The true state receives ``confidence`` of the mass, the rest is spread
    evenly. Where an observed call contradicts the true state, ``error_shift``
    of the mass moves to the next state; every contradicting call within
    ``window`` markers moves a further ``neighbour_shift``. Individuals with
    no calls on a chromosome get an undefined (all-NaN) slice.

    Markers listed in ``failing_markers`` make the call raise, which
    simulates a failed chromosome.
    """

    def __init__(
        self,
        truth: pd.DataFrame,
        confidence: float = 0.98,
        error_shift: float = 0.45,
        neighbour_shift: float = 0.05,
        window: int = 2,
        failing_markers: Iterable[str] = (),
    ):
        self.truth = truth
        self.confidence = confidence
        self.error_shift = error_shift
        self.neighbour_shift = neighbour_shift
        self.window = window
        self.failing_markers = set(failing_markers)
        self.calls = 0
        self._lock = threading.Lock()

    def reconstruct(
        self,
        genotypes: pd.DataFrame,
        genetic_map: pd.Series,
        founder_genotypes: pd.DataFrame,
        error_rate: float,
    ) -> np.ndarray:
        with self._lock:
            self.calls += 1
        failing = self.failing_markers.intersection(genotypes.columns)
        if failing:
            raise RuntimeError(f"simulated failure at markers {sorted(failing)}")

        states = self.truth.loc[genotypes.index, genotypes.columns].to_numpy()
        observed = genotypes.to_numpy()
        snp = state_snp_genotypes(founder_genotypes.to_numpy().T)
        n_states = snp.shape[0]
        n_ind, n_markers = observed.shape

        expected = snp[states, np.arange(n_markers)]
        inconsistent = (observed != GT_MISSING) & (expected != GT_MISSING) & (observed != expected)

        neighbours = np.zeros(inconsistent.shape, dtype=float)
        for offset in range(1, self.window + 1):
            neighbours[:, offset:] += inconsistent[:, :-offset]
            neighbours[:, :-offset] += inconsistent[:, offset:]
        shift = np.minimum(
            self.error_shift * inconsistent + self.neighbour_shift * neighbours,
            self.confidence - 1.0 / n_states,
        )

        other = (1.0 - self.confidence) / (n_states - 1)
        probs = np.full((n_ind, n_states, n_markers), other)
        rows = np.arange(n_ind)[:, None]
        cols = np.arange(n_markers)[None, :]
        probs[rows, states, cols] = self.confidence - shift
        probs[rows, (states + 1) % n_states, cols] += shift

        no_calls = np.all(observed == GT_MISSING, axis=1)
        probs[no_calls] = np.nan
        return probs
