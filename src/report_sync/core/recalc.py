"""
Sub-account ledgers balances recalculation.

A master account's ledger rows that came from sub-accounts carry the
sub-account's own running balance in ``_nativeBalance``. After a sync the
``balance`` of every such row is recomputed as the sum of the latest
``_nativeBalance`` of each sibling sub-account (same wallet and currency)
at or before the row's time.

Rows are walked in pages ordered by ``(mts asc, _id desc)``; the last two
pages are kept as a sliding window so most lookups never hit the store.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from report_sync.config import SyncOptions
from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.core.interrupter import SyncInterrupter
from report_sync.core.users import SubUserAuth
from report_sync.errors import SubAccountLedgersBalancesRecalcError
from report_sync.schema.registry import TableNames


logger = logging.getLogger(__name__)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class RecalcStats:
    """Outcome of one recalculation run."""

    pages: int = 0
    updated_rows: int = 0
    reached_page_limit: bool = False
    interrupted: bool = False


class SubAccountLedgersBalancesRecalc:
    """
    Recomputes ``balance`` of sub-account ledger rows.

    Example:
        recalc = SubAccountLedgersBalancesRecalc(dao)
        stats = recalc.run(get_sub_user_auths(dao))
    """

    def __init__(
        self,
        dao: SQLiteConnector,
        options: SyncOptions | None = None,
        interrupter: SyncInterrupter | None = None,
    ) -> None:
        self.dao = dao
        options = options or SyncOptions()
        self.batch_size = options.recalc_batch_size
        self.max_pages = options.recalc_max_pages
        self.interrupter = interrupter

    def run(self, ownership: Iterable[SubUserAuth] | None) -> RecalcStats:
        """
        Recalculate balances of all ledger rows having a sub-account.

        Args:
            ownership: Master -> sub-account entries

        Returns:
            RecalcStats

        Raises:
            SubAccountLedgersBalancesRecalcError: ownership is missing or empty
        """
        auths = list(ownership or ())
        if not auths:
            raise SubAccountLedgersBalancesRecalcError()

        sub_users_by_master: dict[int, list[int]] = {}
        for auth in auths:
            sub_users = sub_users_by_master.setdefault(auth.master_user_id, [])
            if auth.sub_user_id not in sub_users:
                sub_users.append(auth.sub_user_id)

        stats = RecalcStats()
        window: list[list[dict[str, Any]]] = [[], []]
        mts: int | float = 0
        skipped_ids: list[int] = []

        while True:
            if stats.pages >= self.max_pages:
                stats.reached_page_limit = True
                logger.warning(
                    "Sub-account balances recalculation stopped after %d pages",
                    stats.pages,
                    extra={"cursor_mts": mts},
                )
                break
            if self.interrupter is not None and self.interrupter.is_interrupted:
                stats.interrupted = True
                break

            elems = self.dao.get_elems_in_coll_by(
                TableNames.LEDGERS,
                filter={
                    "$gte": {"mts": mts},
                    "$nin": {"_id": skipped_ids},
                    "$isNotNull": ["subUserId"],
                },
                sort=[("mts", 1), ("_id", -1)],
                limit=self.batch_size,
            )
            if not elems:
                break

            stats.pages += 1
            window = [window[1], elems]
            siblings_window = [*window[0], *window[1]]

            recalc_elems = [
                {
                    "_id": elem["_id"],
                    "balance": self._get_recalc_balance(
                        sub_users_by_master, siblings_window, elem
                    ),
                }
                for elem in elems
            ]

            # Each page commits on its own
            stats.updated_rows += self.dao.update_elems_in_coll_by(
                TableNames.LEDGERS,
                recalc_elems,
                match_fields=["_id"],
                update_fields=["balance"],
            )

            mts = elems[-1]["mts"]
            skipped_ids = [e["_id"] for e in elems if e["mts"] == mts]

        logger.info(
            "Recalculated %d sub-account ledger balances",
            stats.updated_rows,
            extra={"pages": stats.pages},
        )
        return stats

    def _get_recalc_balance(
        self,
        sub_users_by_master: dict[int, list[int]],
        window: Sequence[dict[str, Any]],
        item: dict[str, Any],
    ) -> Any:
        mts = item.get("mts")
        wallet = item.get("wallet")
        currency = item.get("currency")
        user_id = item.get("user_id")
        native_balance = item.get("_nativeBalance")

        sub_users_ids = sub_users_by_master.get(user_id)
        if not sub_users_ids:
            return native_balance

        # Latest first; among equal mts the lowest _id comes first
        candidates = [
            elem for elem in reversed(window)
            if elem.get("subUserId") is not None
            and elem.get("user_id") == user_id
            and elem.get("mts") <= mts
            and elem.get("wallet") == wallet
            and elem.get("currency") == currency
        ]

        balances: list[int | float] = []
        for sub_user_id in sub_users_ids:
            found = next(
                (e for e in candidates if e.get("subUserId") == sub_user_id),
                None,
            )
            balance = found.get("_nativeBalance") if found else None

            if not _is_number(balance):
                balance = self._get_balance_from_db(
                    wallet, currency, user_id, sub_user_id, mts
                )
            if _is_number(balance):
                balances.append(balance)

        if not balances:
            return native_balance

        return sum(balances)

    def _get_balance_from_db(
        self,
        wallet: str | None,
        currency: str | None,
        user_id: int,
        sub_user_id: int,
        mts: int | float,
    ) -> Any:
        row = self.dao.get_elem_in_coll_by(
            TableNames.LEDGERS,
            filter={
                "$eq": {
                    "wallet": wallet,
                    "currency": currency,
                    "user_id": user_id,
                    "subUserId": sub_user_id,
                },
                "$lte": {"mts": mts},
            },
            sort=[("mts", -1), ("_id", 1)],
        )
        return row.get("_nativeBalance") if row else None
