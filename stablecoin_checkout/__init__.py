"""Stablecoin checkout: fingerprinted deposits and automatic fiat payouts."""

__version__ = "0.1.0"
