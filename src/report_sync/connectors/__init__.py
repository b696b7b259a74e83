"""Connectors for Report Sync: the local store DAO and the remote API client."""

from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.connectors.api_client import ApiClient, ApiError, DataSource

__all__ = ["SQLiteConnector", "ApiClient", "ApiError", "DataSource"]
