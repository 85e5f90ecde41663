"""Credit-limit-aware order reconciliation for the Order Appu backend."""

__version__ = "0.1.0"
