"""
Per-chromosome driver for the external haplotype reconstruction.

The reconstruction itself (forward-backward over founder-pair states) lives
behind the ``HaplotypeReconstructor`` protocol. This runner prepares one work
unit per chromosome, runs the units on a bounded thread pool, blocks until all
of them finish and validates every tensor before it is handed downstream. A
chromosome that fails is recorded as a ``ReconstructionFailure``; no partial
tensor is ever returned for it.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import anndata
import numpy as np
import pandas as pd

from outbredqc.config.constants import DEFAULT_ERROR_RATE, NON_RECONSTRUCTED_CHROMOSOMES
from outbredqc.core.cache import ResultCache
from outbredqc.core.exceptions import ReconstructionFailure
from outbredqc.core.haplotypes import HaplotypeProbabilities, state_labels
from outbredqc.core.protocols import HaplotypeReconstructor
from outbredqc.core.schemas.genotypes import (
    GenotypeSchema,
    chromosome_order,
    founder_matrix,
    founder_strains,
    genotype_matrix,
)
from outbredqc.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ReconstructionResult:
    """
    Validated reconstruction output for one pipeline stage.

    Attributes:
        probabilities: chromosome → HaplotypeProbabilities
        failures: chromosome → ReconstructionFailure
    """

    probabilities: Dict[str, HaplotypeProbabilities] = field(default_factory=dict)
    failures: Dict[str, ReconstructionFailure] = field(default_factory=dict)

    @property
    def chromosomes(self) -> List[str]:
        """Chromosomes with a usable tensor."""
        return list(self.probabilities)

    def require(self, chromosome: str) -> HaplotypeProbabilities:
        """
        Tensor for ``chromosome``.

        Raises:
            ReconstructionFailure: If the chromosome failed or was not run
        """
        if chromosome in self.failures:
            raise self.failures[chromosome]
        if chromosome not in self.probabilities:
            raise ReconstructionFailure(chromosome, "chromosome was not reconstructed")
        return self.probabilities[chromosome]


def chromosome_inputs(adata: anndata.AnnData, chromosome: str):
    """
    Reconstruction inputs for one chromosome, markers sorted by genetic position.

    Returns:
        Tuple of (genotypes individuals × markers, genetic_map,
        founder_genotypes founders × markers)
    """
    var = adata.var
    mask = (var["chr"].astype(str) == str(chromosome)).to_numpy()
    positions = np.flatnonzero(mask)
    cm = var["cM"].to_numpy(dtype=float)[positions]
    positions = positions[np.argsort(cm, kind="stable")]

    marker_ids = adata.var_names[positions]
    genotypes = pd.DataFrame(
        genotype_matrix(adata)[:, positions], index=adata.obs_names, columns=marker_ids
    )
    genetic_map = pd.Series(
        var["cM"].to_numpy(dtype=float)[positions], index=marker_ids, name="cM"
    )
    founders = pd.DataFrame(
        founder_matrix(adata)[positions, :].T,
        index=founder_strains(adata),
        columns=marker_ids,
    )
    return genotypes, genetic_map, founders


class ReconstructionRunner:
    """
    Blocking, per-chromosome reconstruction with output validation.

    Args:
        reconstructor: Object satisfying HaplotypeReconstructor
        max_workers: Maximum concurrent chromosome units
        cache: Optional memoization store keyed by the chromosome's inputs
        atol: Tolerance on state sums
    """

    def __init__(
        self,
        reconstructor: HaplotypeReconstructor,
        max_workers: int = 4,
        cache: Optional[ResultCache] = None,
        atol: float = 1e-6,
    ):
        if not isinstance(reconstructor, HaplotypeReconstructor):
            raise TypeError(
                f"{type(reconstructor).__name__} does not implement reconstruct(genotypes, "
                "genetic_map, founder_genotypes, error_rate)"
            )
        self.reconstructor = reconstructor
        self.max_workers = max_workers
        self.cache = cache
        self.atol = atol
        logger.debug(
            f"Initialized ReconstructionRunner with {type(reconstructor).__name__}, "
            f"max_workers={max_workers}, cache={'on' if cache is not None else 'off'}"
        )

    @property
    def reconstructor_id(self) -> str:
        cls = type(self.reconstructor)
        return f"{cls.__module__}.{cls.__qualname__}"

    def default_chromosomes(self, adata: anndata.AnnData) -> List[str]:
        """All chromosomes in var except Y and mitochondria."""
        return [c for c in chromosome_order(adata) if c not in NON_RECONSTRUCTED_CHROMOSOMES]

    def run(
        self,
        adata: anndata.AnnData,
        chromosomes: Optional[Sequence[str]] = None,
        error_rate: float = DEFAULT_ERROR_RATE,
    ) -> ReconstructionResult:
        """
        Reconstruct every requested chromosome and wait for all of them.

        Args:
            adata: Genotype AnnData with var['cM'] and varm['founder_GT']
            chromosomes: Chromosomes to run (default: all but Y/M/MT)
            error_rate: Per-call genotyping error probability

        Returns:
            ReconstructionResult with validated tensors and per-chromosome
            failures
        """
        GenotypeSchema.validate(adata, require_founders=True, require_map=True)
        chromosomes = list(chromosomes) if chromosomes is not None else self.default_chromosomes(adata)
        present = set(chromosome_order(adata))

        result = ReconstructionResult()
        units = []
        for chrom in chromosomes:
            if str(chrom) not in present:
                result.failures[str(chrom)] = ReconstructionFailure(str(chrom), "no markers on chromosome")
                logger.warning(f"Skipping chromosome {chrom}: no markers")
                continue
            units.append(str(chrom))

        logger.info(
            f"Reconstructing {len(units)} chromosomes for {adata.n_obs} individuals "
            f"(error_rate={error_rate}, max_workers={self.max_workers})"
        )

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(self._run_chromosome, adata, chrom, error_rate): chrom
                for chrom in units
            }
            for future in as_completed(futures):
                chrom = futures[future]
                try:
                    result.probabilities[chrom] = future.result()
                except ReconstructionFailure as e:
                    result.failures[chrom] = e
                    logger.warning(str(e))
                except Exception as e:
                    failure = ReconstructionFailure(chrom, f"{type(e).__name__}: {e}")
                    result.failures[chrom] = failure
                    logger.warning(str(failure))

        # keep chromosome order stable regardless of completion order
        result.probabilities = {c: result.probabilities[c] for c in units if c in result.probabilities}
        result.failures = {
            c: result.failures[c] for c in [str(c) for c in chromosomes] if c in result.failures
        }

        logger.info(
            f"Reconstruction finished: {len(result.probabilities)} succeeded, "
            f"{len(result.failures)} failed"
        )
        return result

    def _run_chromosome(
        self, adata: anndata.AnnData, chromosome: str, error_rate: float
    ) -> HaplotypeProbabilities:
        genotypes, genetic_map, founders = chromosome_inputs(adata, chromosome)

        def compute() -> HaplotypeProbabilities:
            logger.debug(f"Reconstructing chromosome {chromosome} ({genotypes.shape[1]} markers)")
            raw = self.reconstructor.reconstruct(genotypes, genetic_map, founders, error_rate)
            return self._validated(chromosome, raw, genotypes, founders.shape[0])

        if self.cache is None:
            return compute()

        key = ResultCache.key_for(
            "reconstruct", self.reconstructor_id, chromosome, genotypes, genetic_map, founders, error_rate
        )
        return self.cache.get_or_compute(key, compute)

    def _validated(
        self,
        chromosome: str,
        raw: np.ndarray,
        genotypes: pd.DataFrame,
        n_founders: int,
    ) -> HaplotypeProbabilities:
        if raw is None:
            raise ReconstructionFailure(chromosome, "reconstructor returned no result")
        probs = np.asarray(raw, dtype=float)
        labels = tuple(state_labels(n_founders))
        expected = (genotypes.shape[0], len(labels), genotypes.shape[1])
        if probs.shape != expected:
            raise ReconstructionFailure(
                chromosome, f"output shape {probs.shape} != expected {expected}"
            )

        hp = HaplotypeProbabilities(
            chromosome=chromosome,
            probs=probs,
            individuals=tuple(genotypes.index),
            markers=tuple(genotypes.columns),
            states=labels,
        )
        hp.validate(atol=self.atol)
        n_undefined = int((~hp.defined_mask()).sum())
        if n_undefined:
            logger.debug(f"Chromosome {chromosome}: {n_undefined} undefined positions")
        return hp
