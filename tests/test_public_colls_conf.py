"""Tests for the public collections configuration accessors."""

import pytest

from conftest import add_user
from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.core.public_colls_conf import PublicCollsConfAccessors
from report_sync.schema.registry import TableNames


@pytest.fixture
def accessors(dao: SQLiteConnector) -> PublicCollsConfAccessors:
    return PublicCollsConfAccessors(dao)


CANDLES = [
    {"symbol": "tBTCUSD", "timeframe": "1D", "start": 1000},
    {"symbol": "tBTCUSD", "timeframe": "1h", "start": 2000},
    {"symbol": "tETHUSD", "timeframe": "1D", "start": 3000},
]


class TestEditPublicCollsConf:
    """Tests for edit_public_colls_conf."""

    def test_insert(self, accessors: PublicCollsConfAccessors, user_id: int) -> None:
        result = accessors.edit_public_colls_conf("candlesConf", user_id, CANDLES)

        assert result.inserted == 3
        assert accessors.get_public_colls_conf("candlesConf", user_id) == CANDLES

    def test_duplicates_inserted_once(
        self, accessors: PublicCollsConfAccessors, user_id: int
    ) -> None:
        result = accessors.edit_public_colls_conf(
            "statusMessagesConf",
            user_id,
            [{"symbol": "tBTCF0:USTF0", "start": 1}, {"symbol": "tBTCF0:USTF0", "start": 2}],
        )

        assert result.inserted == 1
        assert accessors.get_public_colls_conf("statusMessagesConf", user_id) == [
            {"symbol": "tBTCF0:USTF0", "start": 1}
        ]

    def test_replace(self, accessors: PublicCollsConfAccessors, user_id: int) -> None:
        """Missing keys are removed, kept keys get their start updated."""
        accessors.edit_public_colls_conf("candlesConf", user_id, CANDLES)

        result = accessors.edit_public_colls_conf(
            "candlesConf",
            user_id,
            [
                {"symbol": "tBTCUSD", "timeframe": "1D", "start": 500},
                {"symbol": "tLTCUSD", "timeframe": "1D", "start": 0},
            ],
        )

        assert (result.inserted, result.removed, result.updated) == (1, 2, 1)
        assert accessors.get_public_colls_conf("candlesConf", user_id) == [
            {"symbol": "tBTCUSD", "timeframe": "1D", "start": 500},
            {"symbol": "tLTCUSD", "timeframe": "1D", "start": 0},
        ]

    def test_single_mapping(self, accessors: PublicCollsConfAccessors, user_id: int) -> None:
        accessors.edit_public_colls_conf(
            "publicTradesConf", user_id, {"symbol": "tBTCUSD", "start": 10}
        )
        assert accessors.get_public_colls_conf("publicTradesConf", user_id) == [
            {"symbol": "tBTCUSD", "start": 10}
        ]

    def test_users_are_isolated(
        self, accessors: PublicCollsConfAccessors, dao: SQLiteConnector, user_id: int
    ) -> None:
        other = add_user(dao, "other@example.com")
        accessors.edit_public_colls_conf("candlesConf", user_id, CANDLES)
        accessors.edit_public_colls_conf("candlesConf", other, [])

        assert len(accessors.get_public_colls_conf("candlesConf", user_id)) == 3
        assert dao.get_row_count(TableNames.PUBLIC_COLLS_CONF) == 3

    def test_unknown_conf(self, accessors: PublicCollsConfAccessors, user_id: int) -> None:
        with pytest.raises(ValueError, match="Unknown public collections conf"):
            accessors.edit_public_colls_conf("walletsConf", user_id, [])

    def test_edit_all(self, accessors: PublicCollsConfAccessors, user_id: int) -> None:
        synced = accessors.edit_all_public_colls_confs(
            user_id,
            {
                "candlesConf": CANDLES,
                "tickersHistoryConf": [{"symbol": "tBTCUSD", "start": 0}],
                "unknownConf": [{"symbol": "x"}],
            },
        )

        assert synced == [TableNames.CANDLES, TableNames.TICKERS_HISTORY]
        confs = accessors.get_all_public_colls_confs(user_id)
        assert confs["statusMessagesConf"] == []
        assert len(confs["candlesConf"]) == 3


class TestReadPublicCollsConf:
    """Tests for reading confs and building request args."""

    def test_filter_by_symbol_and_timeframe(
        self, accessors: PublicCollsConfAccessors, user_id: int
    ) -> None:
        accessors.edit_public_colls_conf("candlesConf", user_id, CANDLES)

        assert accessors.get_public_colls_conf(
            "candlesConf", user_id, symbol="tBTCUSD", timeframe=["1h"]
        ) == [{"symbol": "tBTCUSD", "timeframe": "1h", "start": 2000}]

    @pytest.mark.parametrize(
        ("start", "expected"),
        [(0, 1000), (1500, 1500), (None, None)],
    )
    def test_get_start(self, accessors: PublicCollsConfAccessors, start, expected) -> None:
        assert accessors.get_start(CANDLES, start) == expected

    def test_get_args(self, accessors: PublicCollsConfAccessors) -> None:
        args = accessors.get_args(CANDLES[:2], {"start": 0, "end": 5000, "limit": 10})

        assert args == {
            "start": 1000,
            "end": 5000,
            "limit": 10,
            "symbol": ["tBTCUSD", "tBTCUSD"],
            "timeframe": ["1D", "1h"],
        }

    def test_get_args_without_timeframe(self, accessors: PublicCollsConfAccessors) -> None:
        args = accessors.get_args({"symbol": "tBTCUSD", "start": 0}, {"end": 1})
        assert "timeframe" not in args
        assert args["symbol"] == ["tBTCUSD"]
