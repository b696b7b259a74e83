"""Tests for accounts and sub-account ownership."""

from conftest import add_user
from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.core.users import (
    SubUserAuth,
    UserAuth,
    get_sub_user_auths,
    get_user_auths,
    normalize_user_data,
)


class TestUserAuth:
    """Tests for UserAuth."""

    def test_key_pair(self) -> None:
        auth = UserAuth(user_id=1, api_key="k", api_secret="s")
        assert auth.to_request_auth() == {"apiKey": "k", "apiSecret": "s"}

    def test_token_wins(self) -> None:
        auth = UserAuth(user_id=1, api_key="k", api_secret="s", auth_token="t")
        assert auth.to_request_auth() == {"token": "t"}


class TestNormalizeUserData:
    """Tests for normalize_user_data."""

    def test_single_row(self) -> None:
        user = normalize_user_data({"_id": 1, "active": 1, "isSubUser": None})

        assert user["_id"] == 1
        assert user["active"] is True
        assert user["isSubUser"] is False
        assert user["isSyncOnStartupRequired"] is False

    def test_rows(self) -> None:
        users = normalize_user_data([{"isSubAccount": 1}, None])
        assert [u["isSubAccount"] for u in users] == [True, False]

    def test_other_values_untouched(self) -> None:
        assert normalize_user_data(None) is None
        assert normalize_user_data("x") == "x"


class TestGetUserAuths:
    """Tests for reading the accounts of a sync."""

    def test_own_credentials(self, dao: SQLiteConnector, user_id: int) -> None:
        assert get_user_auths(dao) == [
            UserAuth(user_id=user_id, api_key="key", api_secret="secret")
        ]

    def test_inactive_users_skipped(self, dao: SQLiteConnector, user_id: int) -> None:
        add_user(dao, "idle@example.com", active=False)
        assert [a.user_id for a in get_user_auths(dao)] == [user_id]

    def test_sub_accounts(self, dao: SQLiteConnector, sub_account_ids) -> None:
        """A master is synced once per sub-user, with the sub-user credentials."""
        master, sub_a, sub_b = sub_account_ids

        assert get_user_auths(dao) == [
            UserAuth(user_id=master, sub_user_id=sub_a, api_key="a", api_secret="a"),
            UserAuth(user_id=master, sub_user_id=sub_b, api_key="b", api_secret="b"),
        ]

    def test_restrict_to_ids(self, dao: SQLiteConnector, user_id: int, sub_account_ids) -> None:
        master, _, _ = sub_account_ids
        assert {a.user_id for a in get_user_auths(dao, [user_id])} == {user_id}
        assert {a.user_id for a in get_user_auths(dao, [master])} == {master}

    def test_sub_user_auths(self, dao: SQLiteConnector, sub_account_ids) -> None:
        master, sub_a, sub_b = sub_account_ids
        assert get_sub_user_auths(dao) == [
            SubUserAuth(master_user_id=master, sub_user_id=sub_a),
            SubUserAuth(master_user_id=master, sub_user_id=sub_b),
        ]
