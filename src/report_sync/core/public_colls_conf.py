"""
Public collections configuration.

Users choose which public market data is synchronized (candles, status
messages, tickers history, public trades) by storing ``publicCollsConf``
rows: a symbol (plus a timeframe for candles) and the start of the history
to keep. The Data Checker reads these rows to plan public syncs.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.schema.registry import TableNames


logger = logging.getLogger(__name__)

CANDLES_CONF = "candlesConf"

CONF_NAMES_MAP: dict[str, str] = {
    CANDLES_CONF: TableNames.CANDLES,
    "statusMessagesConf": TableNames.STATUS_MESSAGES,
    "tickersHistoryConf": TableNames.TICKERS_HISTORY,
    "publicTradesConf": TableNames.PUBLIC_TRADES,
}


@dataclass
class ConfEditResult:
    """Row counts of one configuration edit."""

    inserted: int = 0
    removed: int = 0
    updated: int = 0


class PublicCollsConfAccessors:
    """
    Read and edit the public collections configuration of a user.

    Example:
        accessors = PublicCollsConfAccessors(dao)
        accessors.edit_public_colls_conf(
            "candlesConf",
            user_id,
            [{"symbol": "tBTCUSD", "timeframe": "1D", "start": 0}],
        )
    """

    def __init__(self, dao: SQLiteConnector) -> None:
        self.dao = dao
        self.conf_names_map = dict(CONF_NAMES_MAP)

    def is_candles_conf(self, conf_name: str) -> bool:
        return conf_name == CANDLES_CONF

    def _prop_names(self, conf_name: str) -> list[str]:
        if self.is_candles_conf(conf_name):
            return ["symbol", "start", "timeframe"]
        return ["symbol", "start"]

    def _check_conf_name(self, conf_name: str) -> None:
        if conf_name not in self.conf_names_map:
            raise ValueError(f"Unknown public collections conf: {conf_name}")

    def is_unique_conf(
        self,
        conf_name: str,
        confs: Iterable[Mapping[str, Any]],
        curr_conf: Mapping[str, Any],
    ) -> bool:
        """True when no conf in ``confs`` has the same key as ``curr_conf``."""
        return all(
            conf.get("symbol") != curr_conf.get("symbol")
            or (
                self.is_candles_conf(conf_name)
                and conf.get("timeframe") != curr_conf.get("timeframe")
            )
            for conf in confs
        )

    def has_conf(
        self,
        conf_name: str,
        confs: Iterable[Mapping[str, Any]],
        curr_conf: Mapping[str, Any],
    ) -> bool:
        return any(
            conf.get("symbol") == curr_conf.get("symbol")
            and (
                not self.is_candles_conf(conf_name)
                or conf.get("timeframe") == curr_conf.get("timeframe")
            )
            for conf in confs
        )

    # =========================================================================
    # Editing
    # =========================================================================

    def edit_all_public_colls_confs(
        self,
        user_id: int,
        params: Mapping[str, Any],
    ) -> list[str]:
        """
        Replace every conf present in ``params``.

        Returns:
            Tables whose configuration was edited
        """
        synced_colls: list[str] = []

        for conf_name, data in params.items():
            if conf_name not in self.conf_names_map:
                continue

            self.edit_public_colls_conf(conf_name, user_id, data)
            synced_colls.append(self.conf_names_map[conf_name])

        return synced_colls

    def edit_public_colls_conf(
        self,
        conf_name: str,
        user_id: int,
        data: Mapping[str, Any] | Sequence[Mapping[str, Any]],
    ) -> ConfEditResult:
        """
        Make the stored conf of a user equal to ``data``.

        New keys are inserted, keys missing from ``data`` are removed and
        existing keys get their ``start`` updated.
        """
        self._check_conf_name(conf_name)
        items = [data] if isinstance(data, Mapping) else list(data)

        conf = self.dao.get_elems_in_coll_by(
            TableNames.PUBLIC_COLLS_CONF,
            filter={"confName": conf_name, "user_id": user_id},
            sort=[("symbol", 1), ("timeframe", 1)],
        )
        prop_names = self._prop_names(conf_name)

        new_data: list[dict[str, Any]] = []
        for curr in items:
            if (
                self.is_unique_conf(conf_name, conf, curr)
                and self.is_unique_conf(conf_name, new_data, curr)
            ):
                new_data.append({
                    **{k: curr[k] for k in prop_names if k in curr},
                    "confName": conf_name,
                    "user_id": user_id,
                })

        removed: list[dict[str, Any]] = []
        for curr in conf:
            if (
                self.is_unique_conf(conf_name, items, curr)
                and self.is_unique_conf(conf_name, removed, curr)
            ):
                removed.append(curr)

        updated_data: list[dict[str, Any]] = []
        for curr in items:
            if (
                self.has_conf(conf_name, conf, curr)
                and self.is_unique_conf(conf_name, updated_data, curr)
            ):
                updated_data.append({
                    "symbol": curr.get("symbol"),
                    "timeframe": curr.get("timeframe"),
                    "start": curr.get("start"),
                    "confName": conf_name,
                    "user_id": user_id,
                })

        result = ConfEditResult()
        with self.dao.transaction():
            if new_data:
                result.inserted = self.dao.insert_elems_to_db(
                    TableNames.PUBLIC_COLLS_CONF, new_data
                )
            if removed:
                result.removed = self.dao.remove_elems_from_db(
                    TableNames.PUBLIC_COLLS_CONF,
                    {
                        "confName": conf_name,
                        "user_id": user_id,
                        "_id": [row["_id"] for row in removed],
                    },
                )
            if updated_data:
                match_fields = ["confName", "user_id", "symbol"]
                if self.is_candles_conf(conf_name):
                    match_fields.append("timeframe")
                result.updated = self.dao.update_elems_in_coll_by(
                    TableNames.PUBLIC_COLLS_CONF,
                    updated_data,
                    match_fields=match_fields,
                    update_fields=["start"],
                )

        logger.info(
            "Edited %s of user %s",
            conf_name,
            user_id,
            extra={
                "inserted": result.inserted,
                "removed": result.removed,
                "updated": result.updated,
            },
        )
        return result

    # =========================================================================
    # Reading
    # =========================================================================

    def get_all_public_colls_confs(self, user_id: int) -> dict[str, list[dict[str, Any]]]:
        return {
            conf_name: self.get_public_colls_conf(conf_name, user_id)
            for conf_name in self.conf_names_map
        }

    def get_public_colls_conf(
        self,
        conf_name: str,
        user_id: int,
        symbol: str | Sequence[str] | None = None,
        timeframe: str | Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Stored confs of a user, optionally narrowed to symbols/timeframes."""
        self._check_conf_name(conf_name)

        filter: dict[str, Any] = {"confName": conf_name, "user_id": user_id}
        if symbol:
            filter["symbol"] = symbol if isinstance(symbol, str) else list(symbol)
        if timeframe:
            filter["timeframe"] = (
                timeframe if isinstance(timeframe, str) else list(timeframe)
            )

        rows = self.dao.get_elems_in_coll_by(
            TableNames.PUBLIC_COLLS_CONF,
            filter=filter,
            sort=[("symbol", 1), ("timeframe", 1)],
        )
        prop_names = self._prop_names(conf_name)
        return [{k: row.get(k) for k in prop_names} for row in rows]

    # =========================================================================
    # Request args
    # =========================================================================

    @staticmethod
    def _as_list(
        confs: Mapping[str, Any] | Sequence[Mapping[str, Any]],
    ) -> list[Mapping[str, Any]]:
        return [confs] if isinstance(confs, Mapping) else list(confs)

    def get_start(
        self,
        confs: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        start: int | float | None = 0,
    ) -> Any:
        """Move ``start`` forward to the earliest configured start."""
        starts = [
            c.get("start") for c in self._as_list(confs)
            if c.get("start") is not None
        ]
        min_conf_start = min(starts) if starts else None

        if (
            isinstance(start, (int, float))
            and min_conf_start is not None
            and start < min_conf_start
        ):
            return min_conf_start
        return start

    def get_symbol(self, confs: Mapping[str, Any] | Sequence[Mapping[str, Any]]) -> list[Any]:
        return [c.get("symbol") for c in self._as_list(confs)]

    def get_timeframe(self, confs: Mapping[str, Any] | Sequence[Mapping[str, Any]]) -> list[Any]:
        return [c.get("timeframe") for c in self._as_list(confs)]

    def get_args(
        self,
        confs: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        params: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Request params narrowed to the configured symbols and start."""
        args = {
            **params,
            "symbol": self.get_symbol(confs),
            "start": self.get_start(confs, params.get("start", 0)),
        }
        timeframe = [t for t in self.get_timeframe(confs) if t is not None]
        if timeframe:
            args["timeframe"] = timeframe
        return args
