"""
Protocol definitions for outbredqc.

Collaborators use structural subtyping: any object with the right method
signature satisfies the protocol, no inheritance required.
"""

from typing import Protocol, runtime_checkable

import numpy as np
import pandas as pd


@runtime_checkable
class HaplotypeReconstructor(Protocol):
    """
    Contract for the external haplotype reconstruction (forward-backward over
    founder-pair states).

    ``reconstruct`` is called once per chromosome with:
    - genotypes: individuals × markers DataFrame of codes (-1, 0, 1, 2),
      markers in genome order
    - genetic_map: marker positions in cM, indexed like genotypes.columns
    - founder_genotypes: founders × markers DataFrame, same codes
    - error_rate: per-call genotyping error probability

    It must return an ndarray of shape (individuals, states, markers) where
    each slice over states sums to 1, or is entirely NaN where no informative
    flanking data exists.
    """

    def reconstruct(
        self,
        genotypes: pd.DataFrame,
        genetic_map: pd.Series,
        founder_genotypes: pd.DataFrame,
        error_rate: float,
    ) -> np.ndarray:
        ...


__all__ = ["HaplotypeReconstructor"]
