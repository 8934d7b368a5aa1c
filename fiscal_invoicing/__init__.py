"""Fiscal invoice authorization and credit-note lifecycle service."""

__version__ = "1.0.0"
