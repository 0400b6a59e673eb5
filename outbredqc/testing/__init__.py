"""Synthetic datasets and reconstructor doubles for tests and examples."""
