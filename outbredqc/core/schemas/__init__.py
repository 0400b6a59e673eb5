from outbredqc.core.schemas.genotypes import GenotypeSchema

__all__ = ["GenotypeSchema"]
