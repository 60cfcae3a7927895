"""resellhub: external reconciliation layer for a digital goods reseller."""

__version__ = "1.0.0"
