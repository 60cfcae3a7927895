"""Core reconciliation logic: webhook reconciler, wallet ledger, catalog sync, fulfillment."""
