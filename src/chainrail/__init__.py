"""Multi-chain transaction execution layer."""

__version__ = "0.1.0"
