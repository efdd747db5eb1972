"""Strata CMMS: work-order schedule reconciliation and compliance tracking."""

__version__ = "1.0.0"
