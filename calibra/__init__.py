"""Calibra: commit-reveal forecast submission and settlement."""

__version__ = "0.1.0"
