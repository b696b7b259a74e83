"""Shared fixtures: a migrated store, accounts and a controllable clock."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.core.bootstrap import open_store
from report_sync.schema.registry import TableNames
from report_sync.utils.dates import MS_PER_MINUTE


# 2026-01-01T00:00:00Z
NOW = 1_767_225_600_000


class FakeClock:
    """Callable clock returning a settable millisecond timestamp."""

    def __init__(self, now: int = NOW) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, minutes: int) -> None:
        self.now += minutes * MS_PER_MINUTE


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "report.db"


@pytest.fixture
def dao(store_path: Path) -> Iterator[SQLiteConnector]:
    """A store created at the supported schema version."""
    connector, _ = open_store(store_path)
    yield connector
    connector.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def add_user(dao: SQLiteConnector, email: str, **fields) -> int:
    return dao.insert_elem_to_db(
        TableNames.USERS,
        {"email": email, "active": True, **fields},
    )


@pytest.fixture
def user_id(dao: SQLiteConnector) -> int:
    return add_user(dao, "trader@example.com", apiKey="key", apiSecret="secret")


@pytest.fixture
def sub_account_ids(dao: SQLiteConnector) -> tuple[int, int, int]:
    """A master account owning two sub-users: (master, sub_a, sub_b)."""
    master = add_user(dao, "master@example.com", isSubAccount=True, id=100)
    sub_a = add_user(dao, "sub-a@example.com", isSubUser=True, apiKey="a", apiSecret="a")
    sub_b = add_user(dao, "sub-b@example.com", isSubUser=True, apiKey="b", apiSecret="b")
    dao.insert_elems_to_db(
        TableNames.SUB_ACCOUNTS,
        [
            {"masterUserId": master, "subUserId": sub_a},
            {"masterUserId": master, "subUserId": sub_b},
        ],
    )
    return master, sub_a, sub_b
