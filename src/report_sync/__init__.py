"""Report Sync - incremental synchronization of report data into a local SQLite store."""

__version__ = "1.0.0"
__author__ = "Report Sync Contributors"

from report_sync.config import Settings, SyncOptions

__all__ = ["Settings", "SyncOptions", "__version__"]
