"""Fee-delegated transaction relay for Kaia."""

__version__ = "0.1.0"
