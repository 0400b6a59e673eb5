"""
Founder-pair state space and haplotype probability containers.

The external reconstruction returns, per chromosome, a tensor of shape
(individuals × states × markers) where states are the unordered founder pairs
(i, j), i <= j. For the 8-founder DO panel that gives 36 states labelled
"AA", "AB", ..., "HH".
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from outbredqc.core.exceptions import ReconstructionFailure


def founder_letters(n_founders: int) -> List[str]:
    """Single-letter codes for founders (A, B, C, ...)."""
    return [chr(ord("A") + i) for i in range(n_founders)]


def founder_pair_states(n_founders: int) -> List[Tuple[int, int]]:
    """Unordered founder pairs (i, j) with i <= j, in canonical order."""
    return [(i, j) for i in range(n_founders) for j in range(i, n_founders)]


def state_labels(n_founders: int) -> List[str]:
    """Two-letter labels for the founder-pair states."""
    letters = founder_letters(n_founders)
    return [letters[i] + letters[j] for i, j in founder_pair_states(n_founders)]


def n_states_for(n_founders: int) -> int:
    return n_founders * (n_founders + 1) // 2


def founders_for_states(n_states: int) -> int:
    """Invert n_states_for; raises ValueError if n_states is not triangular."""
    n = int((np.sqrt(8 * n_states + 1) - 1) / 2)
    if n_states_for(n) != n_states:
        raise ValueError(f"{n_states} is not a valid founder-pair state count")
    return n


def state_snp_genotypes(founder_codes: np.ndarray) -> np.ndarray:
    """
    SNP genotype implied by each founder-pair state at each marker.

    Args:
        founder_codes: markers × founders array of homozygous founder calls
            (0 = AA, 2 = BB). Rows containing other codes yield -1.

    Returns:
        np.ndarray: states × markers array of SNP codes (0, 1, 2, or -1)
    """
    founder_codes = np.asarray(founder_codes)
    n_markers, n_founders = founder_codes.shape
    pairs = np.array(founder_pair_states(n_founders))

    usable = np.all((founder_codes == 0) | (founder_codes == 2), axis=1)
    # B-allele dosage carried by each founder haplotype
    allele = (founder_codes // 2).T  # founders × markers
    snp = allele[pairs[:, 0], :] + allele[pairs[:, 1], :]
    snp = snp.astype(np.int8)
    snp[:, ~usable] = -1
    return snp


@dataclass(frozen=True)
class HaplotypeProbabilities:
    """
    Reconstructed founder-pair probabilities for one chromosome.

    Attributes:
        chromosome: Chromosome name
        probs: ndarray (individuals × states × markers); a slice over states
            sums to 1, or is entirely NaN where no informative data exists
        individuals: Individual IDs (row order)
        markers: Marker IDs in genome order
        states: State labels
    """

    chromosome: str
    probs: np.ndarray
    individuals: Tuple[str, ...]
    markers: Tuple[str, ...]
    states: Tuple[str, ...]

    def __post_init__(self):
        expected = (len(self.individuals), len(self.states), len(self.markers))
        if self.probs.shape != expected:
            raise ValueError(
                f"Probability tensor shape {self.probs.shape} does not match "
                f"(individuals, states, markers) = {expected}"
            )

    @property
    def n_founders(self) -> int:
        return founders_for_states(len(self.states))

    def defined_mask(self) -> np.ndarray:
        """Boolean (individuals × markers): True where the distribution is defined."""
        return np.all(np.isfinite(self.probs), axis=1)

    def validate(self, atol: float = 1e-6) -> None:
        """
        Check the reconstruction contract.

        Raises:
            ReconstructionFailure: If probabilities leave [0, 1], a slice is
                partially undefined, or a defined slice does not sum to 1
        """
        finite = np.isfinite(self.probs)
        partially_defined = np.any(finite, axis=1) & ~np.all(finite, axis=1)
        if partially_defined.any():
            raise ReconstructionFailure(
                self.chromosome,
                f"{int(partially_defined.sum())} positions are partially undefined",
            )

        values = self.probs[finite]
        if values.size and (values.min() < -atol or values.max() > 1 + atol):
            raise ReconstructionFailure(self.chromosome, "probabilities outside [0, 1]")

        defined = self.defined_mask()
        sums = np.nansum(self.probs, axis=1)
        bad = defined & ~np.isclose(sums, 1.0, atol=atol)
        if bad.any():
            raise ReconstructionFailure(
                self.chromosome,
                f"{int(bad.sum())} positions do not sum to 1 (max deviation "
                f"{float(np.max(np.abs(sums[bad] - 1.0))):.3g})",
            )

    def subset(
        self,
        individuals: Optional[Sequence[str]] = None,
        markers: Optional[Sequence[str]] = None,
    ) -> "HaplotypeProbabilities":
        """Restrict to the given individuals / markers (in the given order)."""
        ind_list = list(self.individuals) if individuals is None else list(individuals)
        mk_list = list(self.markers) if markers is None else list(markers)
        ind_pos = {name: i for i, name in enumerate(self.individuals)}
        mk_pos = {name: i for i, name in enumerate(self.markers)}
        rows = [ind_pos[i] for i in ind_list]
        cols = [mk_pos[m] for m in mk_list]
        return HaplotypeProbabilities(
            chromosome=self.chromosome,
            probs=self.probs[np.ix_(rows, np.arange(len(self.states)), cols)],
            individuals=tuple(ind_list),
            markers=tuple(mk_list),
            states=self.states,
        )
