"""
Report Sync error hierarchy.

Errors fall into three families:
- Configuration errors: the call cannot proceed with the given wiring/scope
  and is never retried.
- Migration errors: the store cannot be brought to the supported schema
  version; startup must be aborted.
- Remote data source errors live next to the client in
  ``report_sync.connectors.api_client``.
"""

from __future__ import annotations


class ReportSyncError(Exception):
    """Base exception for report sync errors."""


class ConfigurationError(ReportSyncError):
    """Raised when a component is used with missing or invalid wiring."""


class SyncQueueIDSettingError(ConfigurationError):
    """Raised when a sync scope id is missing or not an integer."""

    def __init__(self, message: str = "The sync queue id is not set") -> None:
        super().__init__(message)


class IncompleteScopeError(ConfigurationError):
    """Raised when a checkpoint scope lacks a field its collection requires."""

    def __init__(self, coll_name: str, missing: str) -> None:
        super().__init__(
            f"Scope of collection '{coll_name}' requires '{missing}'"
        )
        self.coll_name = coll_name
        self.missing = missing


class SubAccountLedgersBalancesRecalcError(ConfigurationError):
    """Raised when sub-account balances are recalculated without an ownership map."""

    def __init__(
        self,
        message: str = "Sub-account ledgers balances can not be recalculated "
        "without sub-account ownership data",
    ) -> None:
        super().__init__(message)


class SchemaDefinitionError(ConfigurationError):
    """Raised when a collection model is inconsistent."""


class MigrationError(ReportSyncError):
    """Raised when a migration can not be applied."""

    def __init__(self, message: str, version: int | None = None) -> None:
        super().__init__(message)
        self.version = version


class DbVersionError(MigrationError):
    """Raised when the store was written by a newer schema version."""

    def __init__(self, persisted: int, supported: int) -> None:
        super().__init__(
            f"Store schema version {persisted} is newer than "
            f"the supported version {supported}",
            version=persisted,
        )
        self.persisted = persisted
        self.supported = supported
