"""Utility modules for Report Sync."""

from report_sync.utils.logger import setup_logging, get_logger
from report_sync.utils.display import SyncProgressDisplay

__all__ = ["setup_logging", "get_logger", "SyncProgressDisplay"]
