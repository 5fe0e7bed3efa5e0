"""jointDE: pseudobulk differential expression for multi-sample single-cell data."""

__version__ = "0.1.0"
