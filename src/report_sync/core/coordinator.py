"""
Sync Run Coordinator.

Runs one synchronization end to end:
1. Open a ``syncQueue`` row; its id scopes the run
2. Ask the Data Checker for the fetch plan of every account, then of the
   public collections
3. Fetch each planned window page by page (newest first) and insert rows
4. Persist windows as ready once fully fetched
5. Recalculate sub-account ledger balances when ledgers gained such rows

A failed fetch aborts only its step; the checkpoint stays unfinished and the
window is retried by the next run.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from report_sync.config import SyncOptions
from report_sync.connectors.api_client import ApiError, DataSource
from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.core.data_checker import CheckedColl, DataChecker
from report_sync.core.interrupter import SyncInterrupter
from report_sync.core.recalc import RecalcStats, SubAccountLedgersBalancesRecalc
from report_sync.core.step_manager import StepManager
from report_sync.core.steps import SyncUserStep
from report_sync.core.users import UserAuth, get_sub_user_auths
from report_sync.schema.registry import TableNames
from report_sync.schema.sync_schema import CollType, SyncSchemaEntry
from report_sync.utils.dates import now_mts


logger = logging.getLogger(__name__)

# Ceiling of the page size when a run of rows shares one timestamp
MAX_PAGE_LIMIT = 10_000


class SyncQueueState(str, Enum):
    """State of a ``syncQueue`` row."""

    NEW = "NEW"
    PROCESSING = "PROCESSING"
    FINISHED = "FINISHED"
    INTERRUPTED = "INTERRUPTED"
    ERROR = "ERROR"


@dataclass
class SyncProgress:
    """Progress report sent after every step."""

    sync_queue_id: int
    method: str
    user_id: int | None
    steps_done: int
    steps_total: int
    inserted: int

    @property
    def percent(self) -> float:
        if self.steps_total == 0:
            return 100.0
        return round(self.steps_done / self.steps_total * 100, 2)


@dataclass
class SyncResult:
    """Outcome of one sync run."""

    sync_queue_id: int
    state: SyncQueueState = SyncQueueState.NEW
    inserted: dict[str, int] = field(default_factory=dict)
    failed_steps: list[str] = field(default_factory=list)
    recalc: RecalcStats | None = None

    @property
    def total_inserted(self) -> int:
        return sum(self.inserted.values())


@dataclass
class _Window:
    kind: str  # "base" or "curr"
    start: int
    end: int


ProgressCallback = Callable[[SyncProgress], None]


class SyncRunner:
    """
    Coordinates a sync run.

    Example:
        async with ApiClient.from_settings(settings) as client:
            runner = SyncRunner(dao, client, options=settings.sync)
            result = await runner.run([UserAuth(user_id=1, api_key=k, api_secret=s)])
    """

    def __init__(
        self,
        dao: SQLiteConnector,
        data_source: DataSource,
        options: SyncOptions | None = None,
        page_limit: int = 500,
        interrupter: SyncInterrupter | None = None,
        progress_callback: ProgressCallback | None = None,
        method_coll_map: Mapping[str, SyncSchemaEntry] | None = None,
        currency_synonyms: Mapping[str, Iterable[str]] | None = None,
        clock: Callable[[], int] = now_mts,
    ) -> None:
        self.dao = dao
        self.data_source = data_source
        self.options = options or SyncOptions()
        self.page_limit = page_limit
        self.interrupter = interrupter or SyncInterrupter()
        self.progress_callback = progress_callback
        self.clock = clock

        self.step_manager = StepManager(dao, clock=clock)
        self.data_checker = DataChecker(
            dao,
            self.step_manager,
            interrupter=self.interrupter,
            method_coll_map=method_coll_map,
            options=self.options,
            clock=clock,
            currency_synonyms=currency_synonyms,
        )

        self._steps_done = 0
        self._steps_total = 0
        self._has_sub_account_ledgers = False

    @property
    def is_interrupted(self) -> bool:
        return self.interrupter.is_interrupted

    async def run(
        self,
        auths: Sequence[UserAuth],
        sync_public: bool = True,
    ) -> SyncResult:
        """
        Synchronize the private data of ``auths`` and the public data.

        Args:
            auths: Accounts to sync (sub-accounts carry ``sub_user_id``)
            sync_public: Also sync the public collections

        Returns:
            SyncResult
        """
        sync_queue_id = self.dao.insert_elem_to_db(
            TableNames.SYNC_QUEUE,
            {
                "collName": "ALL",
                "state": SyncQueueState.PROCESSING.value,
                "ownerUserId": auths[0].user_id if auths else None,
                "isOwnerScheduler": False,
            },
        )
        result = SyncResult(sync_queue_id=sync_queue_id)
        self.data_checker.init(sync_queue_id)
        self._steps_done = self._steps_total = 0
        self._has_sub_account_ledgers = False

        logger.info(
            "Sync started",
            extra={"sync_queue_id": sync_queue_id, "accounts": len(auths)},
        )

        try:
            for auth in auths:
                if self.is_interrupted:
                    break
                plan = self.data_checker.check_new_data(auth)
                await self._sync_plan(plan, auth, result)

            if self._has_sub_account_ledgers and not self.is_interrupted:
                result.recalc = self._recalc_sub_account_balances()

            if sync_public and not self.is_interrupted:
                plan = self.data_checker.check_new_public_data()
                await self._sync_plan(plan, None, result)

            result.state = (
                SyncQueueState.INTERRUPTED
                if self.is_interrupted
                else SyncQueueState.FINISHED
            )
        except BaseException:
            result.state = SyncQueueState.ERROR
            raise
        finally:
            self.dao.update_coll_by(
                TableNames.SYNC_QUEUE,
                {"_id": sync_queue_id},
                {"state": result.state.value},
            )
            logger.info(
                "Sync %s",
                result.state.value.lower(),
                extra={
                    "sync_queue_id": sync_queue_id,
                    "inserted": result.total_inserted,
                    "failed_steps": len(result.failed_steps),
                },
            )

        return result

    def _recalc_sub_account_balances(self) -> RecalcStats | None:
        ownership = get_sub_user_auths(self.dao)
        if not ownership:
            logger.warning(
                "Ledgers have sub-account rows but no sub-accounts are stored"
            )
            return None
        recalc = SubAccountLedgersBalancesRecalc(
            self.dao, options=self.options, interrupter=self.interrupter
        )
        return recalc.run(ownership)

    # =========================================================================
    # Plan execution
    # =========================================================================

    async def _sync_plan(
        self,
        plan: Mapping[str, CheckedColl],
        auth: UserAuth | None,
        result: SyncResult,
    ) -> None:
        self._steps_total += sum(len(checked.start) for checked in plan.values())

        for method, checked in plan.items():
            for step in checked.start:
                if self.is_interrupted:
                    return

                inserted = await self._sync_step(method, checked.schema, step, auth, result)
                result.inserted[checked.schema.name] = (
                    result.inserted.get(checked.schema.name, 0) + inserted
                )
                self._steps_done += 1
                self._report_progress(result, method, auth, inserted)

    def _report_progress(
        self,
        result: SyncResult,
        method: str,
        auth: UserAuth | None,
        inserted: int,
    ) -> None:
        if self.progress_callback is None:
            return
        self.progress_callback(
            SyncProgress(
                sync_queue_id=result.sync_queue_id,
                method=method,
                user_id=auth.user_id if auth else None,
                steps_done=self._steps_done,
                steps_total=self._steps_total,
                inserted=inserted,
            )
        )

    async def _sync_step(
        self,
        method: str,
        schema: SyncSchemaEntry,
        step: SyncUserStep,
        auth: UserAuth | None,
        result: SyncResult,
    ) -> int:
        """Fetch every unfinished window of one step; returns inserted rows."""
        request_auth = auth.to_request_auth() if auth else None
        inserted = 0

        try:
            if schema.is_monolith:
                if step.is_fully_synced:
                    return 0
                rows = await self._fetch_all(method, request_auth)
                inserted = self._insert(schema, step, auth, rows)
                self.step_manager.update_step(
                    step, {"is_base_step_ready": True, "is_curr_step_ready": True}
                )
                return inserted

            windows = self._get_windows(schema, step)
            for window in windows:
                count, completed = await self._fetch_window(
                    method, schema, step, auth, request_auth, window
                )
                inserted += count
                if not completed:
                    return inserted
                self.step_manager.update_step(step, self._ready_params(window))

            has_base_window = any(w.kind == "base" for w in windows)
            if not step.is_base_step_ready and not has_base_window:
                # Nothing older than the checkpoint to fetch
                self.step_manager.update_step(step, {"is_base_step_ready": True})
        except ApiError as e:
            result.failed_steps.append(method)
            logger.warning(
                "Fetching %s failed, step aborted: %s",
                method,
                e,
                extra={"scope": step.scope_key},
            )

        return inserted

    def _get_windows(self, schema: SyncSchemaEntry, step: SyncUserStep) -> list[_Window]:
        windows: list[_Window] = []

        if not step.is_base_step_ready:
            if step.has_base_step:
                windows.append(
                    _Window("base", int(step.base_start), int(step.base_end))
                )
            elif schema.type.is_updatable:
                windows.append(_Window("base", 0, self.clock()))

        if not step.is_curr_step_ready and step.curr_start is not None:
            # Updatable collections are re-fetched up to now
            curr_end = step.curr_end if step.curr_end is not None else self.clock()
            windows.append(_Window("curr", int(step.curr_start), int(curr_end)))

        return windows

    @staticmethod
    def _ready_params(window: _Window) -> dict[str, Any]:
        if window.kind == "base":
            return {
                "base_start": window.start,
                "base_end": window.end,
                "is_base_step_ready": True,
            }
        return {
            "curr_start": window.start,
            "curr_end": window.end,
            "is_curr_step_ready": True,
        }

    # =========================================================================
    # Fetching
    # =========================================================================

    async def _fetch_all(
        self, method: str, request_auth: dict[str, Any] | None
    ) -> list[Any]:
        page = await self.data_source.fetch(method, auth=request_auth, params={})
        rows, _ = _unpack_page(page)
        return rows

    async def _fetch_window(
        self,
        method: str,
        schema: SyncSchemaEntry,
        step: SyncUserStep,
        auth: UserAuth | None,
        request_auth: dict[str, Any] | None,
        window: _Window,
    ) -> tuple[int, bool]:
        """
        Fetch one window newest-first.

        Returns:
            (inserted rows, whether the window was fully fetched)
        """
        inserted = 0
        end = window.end
        limit = self.page_limit

        while end >= window.start:
            if self.is_interrupted:
                return inserted, False

            params: dict[str, Any] = {
                "start": window.start,
                "end": end,
                "limit": limit,
            }
            if step.symbol:
                params["symbol"] = step.symbol
            if step.timeframe:
                params["timeframe"] = step.timeframe

            page = await self.data_source.fetch(method, auth=request_auth, params=params)
            rows, next_page = _unpack_page(page)
            if not rows:
                break

            inserted += self._insert(schema, step, auth, rows)

            if next_page is not None:
                next_end = int(next_page)
                if next_end >= end:
                    # Cursor did not move back; stop instead of looping
                    break
            else:
                if len(rows) < limit:
                    break
                dates = [
                    row.get(schema.date_field_name) for row in rows
                    if isinstance(row, Mapping)
                    and isinstance(row.get(schema.date_field_name), (int, float))
                ]
                if not dates:
                    break
                # The oldest timestamp may continue past the page; re-read it,
                # duplicates are dropped on insert
                next_end = int(min(dates))
                if next_end >= end:
                    # A full page of one timestamp: widen the page to get the rest
                    if limit >= MAX_PAGE_LIMIT:
                        logger.warning(
                            "More than %d %s rows share mts %d; the rest are skipped",
                            limit, method, end,
                        )
                        break
                    limit = min(limit * 2, MAX_PAGE_LIMIT)
                    continue

            end = next_end
            limit = self.page_limit

        return inserted, True

    # =========================================================================
    # Inserting
    # =========================================================================

    def _insert(
        self,
        schema: SyncSchemaEntry,
        step: SyncUserStep,
        auth: UserAuth | None,
        rows: Sequence[Any],
    ) -> int:
        normalized = [
            self._normalize_row(schema, step, auth, row) for row in rows
        ]
        normalized = [row for row in normalized if row]
        if not normalized:
            return 0

        inserted = self.dao.insert_elems_to_db(
            schema.name,
            normalized,
            on_conflict="IGNORE" if schema.type.is_insertable else "REPLACE",
        )
        if (
            schema.name == TableNames.LEDGERS
            and auth is not None
            and auth.sub_user_id is not None
            and inserted > 0
        ):
            self._has_sub_account_ledgers = True
        return inserted

    def _normalize_row(
        self,
        schema: SyncSchemaEntry,
        step: SyncUserStep,
        auth: UserAuth | None,
        row: Any,
    ) -> dict[str, Any]:
        """Shape a fetched row to the model of its collection."""
        if schema.type == CollType.PUBLIC_UPDATABLE_ARRAY:
            if row is None:
                return {}
            return {schema.field_name: row}
        if not isinstance(row, Mapping):
            return {}

        data = dict(row)

        if schema.name == TableNames.LEDGERS:
            data.setdefault("_nativeBalance", data.get("balance"))
            data.setdefault("_nativeBalanceUsd", data.get("balanceUsd"))

        if schema.is_grouped:
            if schema.symbol_field_name and step.symbol:
                data.setdefault(schema.symbol_field_name, step.symbol)
            if schema.timeframe_field_name and step.timeframe:
                data.setdefault(schema.timeframe_field_name, step.timeframe)

        if not schema.is_public and auth is not None:
            data["user_id"] = auth.user_id
            data["subUserId"] = auth.sub_user_id

        model = schema.model
        return {
            name: _to_db_value(value)
            for name, value in data.items()
            if name != "_id" and model.has_column(name)
        }


def _to_db_value(value: Any) -> Any:
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value)
    return value


def _unpack_page(page: Any) -> tuple[list[Any], Any]:
    """Split a fetched page into (rows, nextPage)."""
    if page is None:
        return [], None
    if isinstance(page, Mapping):
        rows = page.get("res") or []
        next_page = page.get("nextPage")
        if isinstance(next_page, bool):
            next_page = None
        return list(rows), next_page
    return list(page), None
