"""
Data Checker - builds the fetch plan of a sync run.

For every synchronized collection the checker compares the stored
checkpoints with the current time (and with the configured public
collections) and decides which windows still have to be fetched:

- Private insertable collections: unfinished checkpoints plus a fresh
  window when the last sync is older than the allowed freshness gap
- Configurable public collections (candles, public trades, tickers
  history, status messages): one checkpoint per configured symbol
  (and timeframe), widened when the configured start moved back
- Candles needed to convert ledger currencies, anchored at the first
  non-USD ledger entry
- Public monoliths (currencies, symbols ...): always re-fetched

All time comparisons are in whole UTC minutes and strictly greater than
the allowed difference.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from report_sync.config import SyncOptions
from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.core.interrupter import SyncInterrupter
from report_sync.core.step_manager import StepManager, is_sync_queue_id
from report_sync.core.steps import SyncUserStep
from report_sync.core.users import UserAuth
from report_sync.errors import SyncQueueIDSettingError
from report_sync.schema.registry import TableNames
from report_sync.schema.sync_schema import (
    CollType,
    SyncSchemaEntry,
    get_method_coll_map,
)
from report_sync.utils.dates import diff_in_minutes, now_mts


logger = logging.getLogger(__name__)

_FUNDING_SUFFIX_RE = re.compile(r"F0$", re.IGNORECASE)


@dataclass
class CheckedColl:
    """Check result of one collection."""

    schema: SyncSchemaEntry
    has_new_data: bool = False
    start: list[SyncUserStep] = field(default_factory=list)

    def push(self, step: SyncUserStep) -> None:
        self.has_new_data = True
        self.start.append(step)


class DataChecker:
    """
    Decides which windows of which collections need fetching.

    Example:
        checker = DataChecker(dao, StepManager(dao), interrupter=interrupter)
        checker.init(sync_queue_id)

        private_plan = checker.check_new_data(UserAuth(user_id=1))
        public_plan = checker.check_new_public_data()
    """

    def __init__(
        self,
        dao: SQLiteConnector,
        step_manager: StepManager,
        interrupter: SyncInterrupter | None = None,
        method_coll_map: Mapping[str, SyncSchemaEntry] | None = None,
        options: SyncOptions | None = None,
        clock: Callable[[], int] = now_mts,
        currency_synonyms: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        self.dao = dao
        self.step_manager = step_manager
        self.interrupter = interrupter or SyncInterrupter()
        self.options = options or SyncOptions()
        self.clock = clock
        self.currency_synonyms = currency_synonyms or {}

        self._default_method_coll_map = dict(
            method_coll_map if method_coll_map is not None else get_method_coll_map()
        )
        self._method_coll_map = dict(self._default_method_coll_map)
        self._checked: dict[str, CheckedColl] = {}
        self.sync_queue_id: int | None = None

    def init(
        self,
        sync_queue_id: int,
        method_coll_map: Mapping[str, SyncSchemaEntry] | None = None,
    ) -> None:
        """
        Bind the checker (and its step manager) to a sync run.

        Args:
            sync_queue_id: Id of the ``syncQueue`` row of the run
            method_coll_map: Optional subset of collections to check
        """
        if not is_sync_queue_id(sync_queue_id):
            raise SyncQueueIDSettingError()

        self.sync_queue_id = sync_queue_id
        self._method_coll_map = dict(
            method_coll_map
            if method_coll_map is not None
            else self._default_method_coll_map
        )
        self._checked = {
            method: CheckedColl(schema=schema)
            for method, schema in self._method_coll_map.items()
        }
        self.step_manager.init(sync_queue_id)

    @property
    def is_interrupted(self) -> bool:
        return self.interrupter.is_interrupted

    def _ensure_initialized(self) -> None:
        if self.sync_queue_id is None:
            raise SyncQueueIDSettingError()

    def _filtered(self, is_public: bool) -> dict[str, CheckedColl]:
        return {
            method: checked
            for method, checked in self._checked.items()
            if checked.has_new_data and checked.schema.is_public == is_public
        }

    def _reset(self, method: str) -> CheckedColl:
        checked = self._checked[method] = CheckedColl(
            schema=self._method_coll_map[method]
        )
        return checked

    # =========================================================================
    # Entry points
    # =========================================================================

    def check_new_data(self, auth: UserAuth) -> dict[str, CheckedColl]:
        """Plan for the private collections of one account."""
        self._ensure_initialized()

        for method, schema in self._method_coll_map.items():
            if self.is_interrupted:
                break
            if schema.type != CollType.INSERTABLE_ARRAY_OBJECTS:
                continue

            checked = self._reset(method)
            self._check_item_new_data_arr_obj_type(method, checked, auth)

        return self._filtered(is_public=False)

    def check_new_public_data(self) -> dict[str, CheckedColl]:
        """Plan for the public collections."""
        self._ensure_initialized()

        self._check_new_data_public_arr_obj_type()
        self._check_new_public_updatable_data()

        return self._filtered(is_public=True)

    # =========================================================================
    # Private collections
    # =========================================================================

    def _check_item_new_data_arr_obj_type(
        self, method: str, checked: CheckedColl, auth: UserAuth
    ) -> None:
        curr_mts = self.clock()
        info = self.step_manager.get_last_synced_info_for_curr_coll(
            checked.schema,
            coll_name=method,
            user_id=auth.user_id,
            sub_user_id=auth.sub_user_id,
        )
        step = info.step

        if not step.is_fully_synced:
            checked.push(step)

        if not self._should_fresh_sync_be_added(step, curr_mts):
            return

        checked.push(
            step.with_params(
                curr_start=info.last_elem_mts_from_tables,
                curr_end=curr_mts,
                is_curr_step_ready=False,
            )
        )

    # =========================================================================
    # Public collections
    # =========================================================================

    def _check_new_data_public_arr_obj_type(self) -> None:
        for method, schema in self._method_coll_map.items():
            if self.is_interrupted:
                return
            if schema.type != CollType.PUBLIC_INSERTABLE_ARRAY_OBJECTS:
                continue

            checked = self._reset(method)

            if schema.name == TableNames.CANDLES:
                self._check_new_candles_data(method, checked)
            if schema.is_grouped:
                self._check_new_configurable_public_data(method, checked)

    def _check_new_public_updatable_data(self) -> None:
        for method, schema in self._method_coll_map.items():
            if self.is_interrupted:
                return
            if not (schema.is_public and schema.type.is_updatable):
                continue

            checked = self._reset(method)

            if schema.is_grouped:
                self._check_new_configurable_public_data(method, checked)
                continue

            info = self.step_manager.get_last_synced_info_for_curr_coll(
                schema, coll_name=method
            )
            step = info.step

            if not step.is_fully_synced:
                checked.push(step)
                continue

            # Monoliths carry no dates, so they are fetched on every sync
            checked.push(step.with_params(is_curr_step_ready=False))

    def _get_public_colls_confs(self, schema: SyncSchemaEntry) -> list[dict[str, Any]]:
        group_res_by = ["symbol", "timeframe"] if schema.has_timeframe else ["symbol"]
        return self.dao.get_elems_in_coll_by(
            TableNames.PUBLIC_COLLS_CONF,
            filter={"confName": schema.conf_name},
            group_res_by=group_res_by,
            group_fns={"start": ("MIN", "start")},
            sort=[(f, 1) for f in group_res_by],
        )

    def _check_new_configurable_public_data(
        self, method: str, checked: CheckedColl
    ) -> None:
        if self.is_interrupted:
            return

        schema = checked.schema
        is_updatable = schema.type.is_updatable
        curr_mts = self.clock()

        for conf in self._get_public_colls_confs(schema):
            if self.is_interrupted:
                return

            start = conf.get("start") or 0
            info = self.step_manager.get_last_synced_info_for_curr_coll(
                schema,
                coll_name=method,
                symbol=conf.get("symbol"),
                timeframe=conf.get("timeframe"),
                default_start=start,
                curr_mts=None if is_updatable else curr_mts,
            )
            step = info.step

            if not step.is_fully_synced:
                checked.push(step)

                if is_updatable:
                    continue

            if is_updatable:
                checked.push(
                    step.with_params(curr_start=start, is_curr_step_ready=False)
                )
                continue

            self._push_widened_step(
                checked, step, start, info.last_elem_mts_from_tables, curr_mts
            )

    def _check_new_candles_data(self, method: str, checked: CheckedColl) -> None:
        """Candles needed to convert ledger currencies."""
        if self.is_interrupted:
            return

        curr_mts = self.clock()
        first_ledger_mts = self._get_first_ledger_mts()

        if first_ledger_mts is None:
            return

        for symbol in self._get_candles_pairs():
            if self.is_interrupted:
                return

            info = self.step_manager.get_last_synced_info_for_curr_coll(
                checked.schema,
                coll_name=method,
                symbol=symbol,
                timeframe=self.options.candles_timeframe,
                default_start=first_ledger_mts,
            )
            step = info.step

            if not step.is_fully_synced:
                checked.push(step)

            self._push_widened_step(
                checked,
                step,
                first_ledger_mts,
                info.last_elem_mts_from_tables,
                curr_mts,
            )

    def _push_widened_step(
        self,
        checked: CheckedColl,
        step: SyncUserStep,
        start: int,
        last_elem_mts: int,
        curr_mts: int,
    ) -> None:
        """
        Push one derived step when the start moved back or the data is stale.

        The derived step starts from both windows ready; a moved start opens
        a base window ``[start, old base_start)`` and staleness opens a curr
        window ``[last_elem_mts, now)``.
        """
        was_start_point_changed = self._was_start_point_changed(step, start)
        should_fresh_sync_be_added = self._should_fresh_sync_be_added(step, curr_mts)

        if not was_start_point_changed and not should_fresh_sync_be_added:
            return

        fresh = step.with_params(is_base_step_ready=True, is_curr_step_ready=True)

        if was_start_point_changed:
            fresh = fresh.with_params(
                base_start=start,
                base_end=step.base_start,
                is_base_step_ready=False,
            )
        if should_fresh_sync_be_added:
            fresh = fresh.with_params(
                curr_start=last_elem_mts,
                curr_end=curr_mts,
                is_curr_step_ready=False,
            )

        checked.push(fresh)

    # =========================================================================
    # Decisions
    # =========================================================================

    def _should_fresh_sync_be_added(self, step: SyncUserStep, curr_mts: int) -> bool:
        base_end = (
            step.base_end
            if not step.is_base_step_ready and step.has_base_step
            else 0
        )
        curr_end = (
            step.curr_end
            if not step.is_curr_step_ready and step.has_curr_step
            else 0
        )
        diff = diff_in_minutes(curr_mts, max(base_end, curr_end))

        return diff > self.options.allowed_freshness_gap_minutes

    def _was_start_point_changed(self, step: SyncUserStep, start_mts: int = 0) -> bool:
        base_start = (
            step.base_start
            if step.is_base_step_ready and step.has_base_step
            else 0
        )
        diff = diff_in_minutes(base_start, start_mts or 0)

        return diff > self.options.allowed_start_drift_minutes

    # =========================================================================
    # Ledger lookups for currency conversion
    # =========================================================================

    def _get_first_ledger_mts(self) -> int | None:
        row = self.dao.get_elem_in_coll_by(
            TableNames.LEDGERS,
            filter={
                "$not": {"currency": self.options.convert_to},
                "$isNotNull": ["mts"],
            },
            sort=[("mts", 1)],
        )
        mts = row.get("mts") if row else None
        return int(mts) if mts is not None else None

    def _get_unique_symbs_from_ledgers(self) -> list[str]:
        rows = self.dao.get_elems_in_coll_by(
            TableNames.LEDGERS,
            filter={"$not": {"currency": list(self.options.forex_symbols)}},
            projection=["currency"],
            is_distinct=True,
            sort=[("currency", 1)],
        )

        symbs: list[str] = []
        for row in rows:
            currency = row.get("currency")
            if not currency:
                continue
            if currency not in symbs:
                symbs.append(currency)
            for synonym in self.currency_synonyms.get(currency, ()):
                if synonym not in symbs:
                    symbs.append(synonym)

        return symbs

    def _get_candles_pairs(self) -> list[str]:
        """Candle symbols converting ledger currencies and forex through BTC."""
        pairs: list[str] = []

        for symbol in self._get_unique_symbs_from_ledgers():
            currency = _FUNDING_SUFFIX_RE.sub("", symbol)
            if not currency:
                continue
            separator = ":" if len(currency) > 3 else ""
            pair = f"t{currency}{separator}{self.options.convert_to}"
            if pair not in pairs:
                pairs.append(pair)

        for forex_symbol in self.options.forex_symbols:
            pair = f"tBTC{forex_symbol}"
            if pair not in pairs:
                pairs.append(pair)

        return pairs
