"""Per-individual and per-marker quality services."""
