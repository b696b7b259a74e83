"""
Step Manager - checkpoint persistence.

Loads, lazily creates and updates ``syncUserSteps`` rows:
- One checkpoint per (collection, user, sub-account, symbol, timeframe)
- Snapshots handed out are immutable; updates are explicit
- Writes to one scope are serialized with a per-scope lock plus a
  write transaction
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any

from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.errors import IncompleteScopeError, SyncQueueIDSettingError
from report_sync.core.steps import LastSyncedInfo, ScopeKey, SyncUserStep
from report_sync.schema.registry import TableNames
from report_sync.schema.sync_schema import SyncSchemaEntry
from report_sync.utils.dates import now_mts


logger = logging.getLogger(__name__)

StepMutation = Callable[[SyncUserStep], SyncUserStep] | Mapping[str, Any]


def is_sync_queue_id(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class StepManager:
    """
    Manages checkpoints of the current sync run.

    Example:
        step_manager = StepManager(dao)
        step_manager.init(sync_queue_id)

        info = step_manager.get_last_synced_info_for_curr_coll(
            schema, user_id=1, curr_mts=now
        )
        step_manager.update_step(info.step, {"is_base_step_ready": True})
    """

    def __init__(
        self,
        dao: SQLiteConnector,
        clock: Callable[[], int] = now_mts,
    ) -> None:
        self.dao = dao
        self.clock = clock
        self._sync_queue_id: int | None = None
        self._locks: dict[ScopeKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def init(self, sync_queue_id: int) -> None:
        """Bind the manager to a sync run; scope locks of earlier runs are dropped."""
        if not is_sync_queue_id(sync_queue_id):
            raise SyncQueueIDSettingError()
        self._sync_queue_id = sync_queue_id
        with self._locks_guard:
            self._locks.clear()

    @property
    def sync_queue_id(self) -> int:
        if self._sync_queue_id is None:
            raise SyncQueueIDSettingError()
        return self._sync_queue_id

    def _get_lock(self, key: ScopeKey) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    # =========================================================================
    # Reading
    # =========================================================================

    def get_last_synced_info_for_curr_coll(
        self,
        schema: SyncSchemaEntry,
        *,
        coll_name: str | None = None,
        user_id: int | None = None,
        sub_user_id: int | None = None,
        symbol: str | None = None,
        timeframe: str | None = None,
        default_start: int | None = None,
        curr_mts: int | None = None,
    ) -> LastSyncedInfo:
        """
        Get the checkpoint of a scope and the newest stored date for it.

        Args:
            schema: Sync schema entry of the collection
            coll_name: Checkpoint collection name (defaults to the method name)
            user_id: Owner, required for private collections
            sub_user_id: Sub-account of the owner, if any
            symbol: Required for public collections grouped by symbol
            timeframe: Candles timeframe
            default_start: Base window start of a checkpoint created now
            curr_mts: Base window end of a checkpoint created now

        Returns:
            LastSyncedInfo with an immutable checkpoint snapshot
        """
        sync_queue_id = self.sync_queue_id
        template = self._build_scope(
            schema,
            coll_name=coll_name or schema.method,
            user_id=user_id,
            sub_user_id=sub_user_id,
            symbol=symbol,
            timeframe=timeframe,
        )

        with self._get_lock(template.scope_key):
            with self.dao.transaction(immediate=True):
                step = self._find_step(template)
                if step is None:
                    step = self._create_step(
                        template, sync_queue_id, default_start, curr_mts
                    )

        last_elem_mts = self._get_last_elem_mts(schema, step)
        if last_elem_mts is None:
            last_elem_mts = step.latest_end or default_start or 0

        return LastSyncedInfo(step=step, last_elem_mts_from_tables=last_elem_mts)

    def _build_scope(
        self,
        schema: SyncSchemaEntry,
        *,
        coll_name: str,
        user_id: int | None,
        sub_user_id: int | None,
        symbol: str | None,
        timeframe: str | None,
    ) -> SyncUserStep:
        if schema.is_public:
            user_id = sub_user_id = None
        elif user_id is None:
            raise IncompleteScopeError(coll_name, "user_id")

        if schema.is_grouped:
            if not symbol:
                raise IncompleteScopeError(coll_name, "symbol")
            if schema.has_timeframe and not timeframe:
                raise IncompleteScopeError(coll_name, "timeframe")
        else:
            symbol = None
        if not schema.has_timeframe:
            timeframe = None

        return SyncUserStep(
            coll_name=coll_name,
            user_id=user_id,
            sub_user_id=sub_user_id,
            symbol=symbol,
            timeframe=timeframe,
        )

    @staticmethod
    def _scope_filter(step: SyncUserStep) -> dict[str, Any]:
        return {
            "collName": step.coll_name,
            "user_id": step.user_id,
            "subUserId": step.sub_user_id,
            "symbol": step.symbol,
            "timeframe": step.timeframe,
        }

    def _find_step(self, template: SyncUserStep) -> SyncUserStep | None:
        row = self.dao.get_elem_in_coll_by(
            TableNames.SYNC_USER_STEPS, filter=self._scope_filter(template)
        )
        return SyncUserStep.from_row(row) if row else None

    def _create_step(
        self,
        template: SyncUserStep,
        sync_queue_id: int,
        default_start: int | None,
        curr_mts: int | None,
    ) -> SyncUserStep:
        has_window = curr_mts is not None
        step = template.with_params(
            base_start=(default_start or 0) if has_window else None,
            base_end=curr_mts if has_window else None,
            is_base_step_ready=False,
            # Nothing newer than the base window exists yet
            is_curr_step_ready=True,
            sync_queue_id=sync_queue_id,
        )
        step_id = self.dao.insert_elem_to_db(
            TableNames.SYNC_USER_STEPS, step.to_row()
        )
        logger.debug(
            "Created checkpoint %s",
            step.coll_name,
            extra={"scope": step.scope_key},
        )
        return step.with_params(id=step_id)

    def _get_last_elem_mts(
        self, schema: SyncSchemaEntry, step: SyncUserStep
    ) -> int | None:
        date_field = schema.date_field_name
        if not date_field:
            return None

        filter: dict[str, Any] = {}
        if schema.is_public:
            if schema.symbol_field_name and step.symbol:
                filter[schema.symbol_field_name] = step.symbol
            if schema.timeframe_field_name and step.timeframe:
                filter[schema.timeframe_field_name] = step.timeframe
        else:
            filter["user_id"] = step.user_id
            filter["subUserId"] = step.sub_user_id

        rows = self.dao.get_elems_in_coll_by(
            schema.name,
            filter=filter,
            group_fns={"mts": ("MAX", date_field)},
        )
        value = rows[0]["mts"] if rows else None
        return int(value) if value is not None else None

    def get_steps(
        self,
        user_id: int | None = None,
        coll_name: str | None = None,
    ) -> list[SyncUserStep]:
        """All checkpoints, optionally narrowed to a user or collection."""
        filter: dict[str, Any] = {}
        if user_id is not None:
            filter["user_id"] = user_id
        if coll_name is not None:
            filter["collName"] = coll_name
        rows = self.dao.get_elems_in_coll_by(
            TableNames.SYNC_USER_STEPS,
            filter=filter,
            sort=[("collName", 1), ("_id", 1)],
        )
        return [SyncUserStep.from_row(row) for row in rows]

    # =========================================================================
    # Writing
    # =========================================================================

    def update_step(
        self,
        step: SyncUserStep,
        mutation: StepMutation,
    ) -> SyncUserStep | None:
        """
        Read-modify-write the freshest row of a checkpoint.

        Args:
            step: Snapshot identifying the checkpoint
            mutation: Field values to set, or a function of the fresh snapshot

        Returns:
            The persisted checkpoint, or None if it was removed meanwhile
        """
        sync_queue_id = self.sync_queue_id

        with self._get_lock(step.scope_key):
            with self.dao.transaction(immediate=True):
                fresh = self._find_step(step)
                if fresh is None:
                    logger.warning(
                        "Checkpoint %s was removed before it could be updated",
                        step.coll_name,
                        extra={"scope": step.scope_key},
                    )
                    return None

                if callable(mutation):
                    updated = mutation(fresh)
                else:
                    updated = fresh.with_params(**mutation)
                updated = updated.with_params(
                    id=fresh.id,
                    coll_name=fresh.coll_name,
                    user_id=fresh.user_id,
                    sub_user_id=fresh.sub_user_id,
                    symbol=fresh.symbol,
                    timeframe=fresh.timeframe,
                    synced_at=self.clock(),
                    sync_queue_id=sync_queue_id,
                )

                self.dao.update_coll_by(
                    TableNames.SYNC_USER_STEPS,
                    {"_id": fresh.id},
                    updated.to_row(),
                )

        return updated

    def remove_steps(
        self,
        *,
        coll_name: str | None = None,
        user_id: int | None = None,
        sub_user_id: int | None = None,
        symbol: str | None = None,
        timeframe: str | None = None,
    ) -> int:
        """Purge checkpoints matching every given scope field."""
        filter = {
            column: value
            for column, value in (
                ("collName", coll_name),
                ("user_id", user_id),
                ("subUserId", sub_user_id),
                ("symbol", symbol),
                ("timeframe", timeframe),
            )
            if value is not None
        }
        if not filter:
            raise ValueError("At least one scope field is required")

        removed = self.dao.remove_elems_from_db(TableNames.SYNC_USER_STEPS, filter)
        logger.info("Removed %d checkpoints", removed, extra={"scope": filter})
        return removed
