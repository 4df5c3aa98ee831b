"""Cross-cluster pod network overlay control plane."""

__version__ = "0.1.0"
