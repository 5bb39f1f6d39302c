"""Laddered martingale entries with take-profit / stop-loss exits on perpetual futures."""

__version__ = "0.1.0"
