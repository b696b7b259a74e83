"""
Checkpoint value type.

A ``SyncUserStep`` mirrors one ``syncUserSteps`` row: the scope it belongs to
and two time windows. The *base* window covers history older than anything
synced so far, the *curr* window covers data newer than the last sync. A
window flagged ready needs no fetching.

Instances are immutable; ``with_params`` returns a modified copy.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Mapping


# Dataclass field -> syncUserSteps column
_COLUMNS = {
    "id": "_id",
    "coll_name": "collName",
    "user_id": "user_id",
    "sub_user_id": "subUserId",
    "symbol": "symbol",
    "timeframe": "timeframe",
    "base_start": "baseStart",
    "base_end": "baseEnd",
    "is_base_step_ready": "isBaseStepReady",
    "curr_start": "currStart",
    "curr_end": "currEnd",
    "is_curr_step_ready": "isCurrStepReady",
    "synced_at": "syncedAt",
    "sync_queue_id": "syncQueueId",
}
_BOOL_FIELDS = ("is_base_step_ready", "is_curr_step_ready")

ScopeKey = tuple[str, int | None, int | None, str | None, str | None]


def _is_mts(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class SyncUserStep:
    """Checkpoint of one collection within one scope."""

    coll_name: str
    user_id: int | None = None
    sub_user_id: int | None = None
    symbol: str | None = None
    timeframe: str | None = None
    base_start: int | None = None
    base_end: int | None = None
    is_base_step_ready: bool = False
    curr_start: int | None = None
    curr_end: int | None = None
    is_curr_step_ready: bool = False
    synced_at: int | None = None
    sync_queue_id: int | None = None
    id: int | None = None

    @property
    def has_base_step(self) -> bool:
        return _is_mts(self.base_start) and _is_mts(self.base_end)

    @property
    def has_curr_step(self) -> bool:
        return _is_mts(self.curr_start) and _is_mts(self.curr_end)

    @property
    def is_fully_synced(self) -> bool:
        return self.is_base_step_ready and self.is_curr_step_ready

    @property
    def scope_key(self) -> ScopeKey:
        return (
            self.coll_name,
            self.user_id,
            self.sub_user_id,
            self.symbol,
            self.timeframe,
        )

    @property
    def latest_end(self) -> int | None:
        """The newest window end known to this checkpoint."""
        ends = [e for e in (self.base_end, self.curr_end) if _is_mts(e)]
        return max(ends) if ends else None

    def with_params(self, **params: Any) -> "SyncUserStep":
        """Return a copy with the given fields replaced."""
        return replace(self, **params)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SyncUserStep":
        """Build a checkpoint from a ``syncUserSteps`` row."""
        data = {
            name: row.get(column)
            for name, column in _COLUMNS.items()
            if column in row
        }
        for name in _BOOL_FIELDS:
            data[name] = bool(data.get(name))
        return cls(**data)

    def to_row(self, include_id: bool = False) -> dict[str, Any]:
        """Column -> value mapping, without ``_id`` unless asked for."""
        row = {
            _COLUMNS[f.name]: getattr(self, f.name)
            for f in fields(self)
        }
        if not include_id:
            row.pop("_id")
        return row


@dataclass(frozen=True)
class LastSyncedInfo:
    """Checkpoint plus the newest date already stored for its scope."""

    step: SyncUserStep
    last_elem_mts_from_tables: int
