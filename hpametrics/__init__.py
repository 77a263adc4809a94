"""Nakadi and ZMON clients, an in-memory metric store, collector scheduling and scheduled scaling for HPAs."""

__version__ = "0.1.0"

__all__ = ["__version__"]