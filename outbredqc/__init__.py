"""
outbredqc: genotype quality control for multi-parent outbred populations.

Detects mislabeled sex, duplicate samples, miscalled markers, array failures
and genotyping errors in Diversity Outbred style data, and measures how much
haplotype reconstruction moves when suspect markers are removed.
"""

__version__ = "0.1.0"
