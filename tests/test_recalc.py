"""Tests for the sub-account ledgers balances recalculation."""

import logging

import pytest

from report_sync.config import SyncOptions
from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.core.interrupter import SyncInterrupter
from report_sync.core.recalc import SubAccountLedgersBalancesRecalc
from report_sync.core.users import SubUserAuth, get_sub_user_auths
from report_sync.errors import SubAccountLedgersBalancesRecalcError
from report_sync.schema.registry import TableNames


@pytest.fixture
def ledgers(dao: SQLiteConnector, sub_account_ids) -> None:
    """Master ledgers mirrored from two sub-accounts plus one own row."""
    master, sub_a, sub_b = sub_account_ids

    def row(id: int, mts: int, sub_user_id: int | None, native: float, currency: str = "USD"):
        return {
            "id": id,
            "user_id": master,
            "subUserId": sub_user_id,
            "mts": mts,
            "wallet": "exchange",
            "currency": currency,
            "_nativeBalance": native,
            "balance": native,
        }

    dao.insert_elems_to_db(
        TableNames.LEDGERS,
        [
            row(1, 1000, sub_a, 5),
            row(2, 2000, sub_b, 7),
            row(3, 2500, sub_b, 1, currency="BTC"),
            row(4, 3000, sub_a, 8),
            row(5, 3500, None, 99),
        ],
    )


def balances(dao: SQLiteConnector) -> dict[int, float]:
    rows = dao.get_elems_in_coll_by(
        TableNames.LEDGERS, projection=["id", "balance"], sort=[("id", 1)]
    )
    return {row["id"]: row["balance"] for row in rows}


EXPECTED = {1: 5, 2: 12, 3: 1, 4: 15, 5: 99}


class TestSubAccountLedgersBalancesRecalc:
    """Tests for SubAccountLedgersBalancesRecalc.run."""

    def test_sums_latest_sibling_balances(self, dao: SQLiteConnector, ledgers) -> None:
        stats = SubAccountLedgersBalancesRecalc(dao).run(get_sub_user_auths(dao))

        assert balances(dao) == EXPECTED
        assert stats.updated_rows == 4
        assert stats.pages == 1
        assert not stats.reached_page_limit

    def test_rerun_is_idempotent(self, dao: SQLiteConnector, ledgers) -> None:
        recalc = SubAccountLedgersBalancesRecalc(dao)
        recalc.run(get_sub_user_auths(dao))
        recalc.run(get_sub_user_auths(dao))

        assert balances(dao) == EXPECTED

    def test_single_row_pages(self, dao: SQLiteConnector, ledgers) -> None:
        """Balances outside the two page window are read from the store."""
        recalc = SubAccountLedgersBalancesRecalc(
            dao, options=SyncOptions(recalc_batch_size=1)
        )
        stats = recalc.run(get_sub_user_auths(dao))

        assert balances(dao) == EXPECTED
        assert stats.pages == 4

    def test_page_limit(
        self, dao: SQLiteConnector, ledgers, caplog: pytest.LogCaptureFixture
    ) -> None:
        recalc = SubAccountLedgersBalancesRecalc(
            dao, options=SyncOptions(recalc_batch_size=1, recalc_max_pages=1)
        )
        with caplog.at_level(logging.WARNING, logger="report_sync"):
            stats = recalc.run(get_sub_user_auths(dao))

        assert stats.reached_page_limit
        assert stats.updated_rows == 1
        assert "stopped after 1 pages" in caplog.text

    def test_unknown_master_keeps_native_balance(
        self, dao: SQLiteConnector, ledgers, sub_account_ids
    ) -> None:
        _, sub_a, _ = sub_account_ids
        SubAccountLedgersBalancesRecalc(dao).run(
            [SubUserAuth(master_user_id=12345, sub_user_id=sub_a)]
        )

        assert balances(dao) == {1: 5, 2: 7, 3: 1, 4: 8, 5: 99}

    def test_interrupted(self, dao: SQLiteConnector, ledgers) -> None:
        interrupter = SyncInterrupter()
        interrupter.interrupt()

        stats = SubAccountLedgersBalancesRecalc(dao, interrupter=interrupter).run(
            get_sub_user_auths(dao)
        )

        assert stats.interrupted
        assert stats.pages == 0

    @pytest.mark.parametrize("ownership", [None, []])
    def test_missing_ownership(self, dao: SQLiteConnector, ownership) -> None:
        with pytest.raises(SubAccountLedgersBalancesRecalcError):
            SubAccountLedgersBalancesRecalc(dao).run(ownership)
