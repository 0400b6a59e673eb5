"""Services that depend on haplotype reconstruction."""
