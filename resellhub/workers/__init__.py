"""Background workers."""
from .catalog_sync_worker import run_catalog_sync, start_catalog_sync_worker

__all__ = ["run_catalog_sync", "start_catalog_sync_worker"]
