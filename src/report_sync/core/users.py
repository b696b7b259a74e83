"""
Users and sub-account ownership.

- ``UserAuth``: credentials and scope of one account taking part in a sync
- ``SubUserAuth``: one master -> sub-account ownership entry
- ``get_user_auths``: the accounts of a sync, read from ``users``
- ``normalize_user_data``: cast the integer flags of ``users`` rows to bool
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence, overload

from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.schema.registry import TableNames


USER_BOOL_FLAGS = (
    "active",
    "isDataFromDb",
    "isSubAccount",
    "isSubUser",
    "haveSubUsers",
    "isNotProtected",
    "shouldNotSyncOnStartupAfterUpdate",
    "isSyncOnStartupRequired",
)


@dataclass(frozen=True)
class UserAuth:
    """Account whose private collections are synchronized."""

    user_id: int
    sub_user_id: int | None = None
    api_key: str | None = None
    api_secret: str | None = None
    auth_token: str | None = None

    def to_request_auth(self) -> dict[str, Any]:
        """Credentials in the shape the report service expects."""
        if self.auth_token:
            return {"token": self.auth_token}
        return {"apiKey": self.api_key, "apiSecret": self.api_secret}


@dataclass(frozen=True)
class SubUserAuth:
    """A sub-account and the master account owning it."""

    master_user_id: int
    sub_user_id: int


def get_sub_user_auths(dao: SQLiteConnector) -> list[SubUserAuth]:
    """Read the ownership map from the ``subAccounts`` table."""
    rows = dao.get_elems_in_coll_by(
        TableNames.SUB_ACCOUNTS,
        projection=["masterUserId", "subUserId"],
        sort=[("_id", 1)],
    )
    return [
        SubUserAuth(master_user_id=row["masterUserId"], sub_user_id=row["subUserId"])
        for row in rows
    ]


def _normalize(user_data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        **user_data,
        **{flag: bool(user_data.get(flag)) for flag in USER_BOOL_FLAGS},
    }


@overload
def normalize_user_data(user_data: Mapping[str, Any]) -> dict[str, Any]: ...
@overload
def normalize_user_data(
    user_data: Sequence[Mapping[str, Any]],
) -> list[dict[str, Any]]: ...
@overload
def normalize_user_data(user_data: None) -> None: ...


def normalize_user_data(user_data: Any) -> Any:
    """
    Cast the boolean flags of one or many ``users`` rows.

    Missing flags become False; anything that is not a row (or a list of
    rows) is returned untouched.
    """
    if isinstance(user_data, Mapping):
        return _normalize(user_data)
    if isinstance(user_data, (list, tuple)):
        return [_normalize(row or {}) for row in user_data]
    return user_data


def _to_auth(user_id: int, row: Mapping[str, Any], sub_user_id: int | None = None) -> UserAuth:
    return UserAuth(
        user_id=user_id,
        sub_user_id=sub_user_id,
        api_key=row.get("apiKey"),
        api_secret=row.get("apiSecret"),
        auth_token=row.get("authToken"),
    )


def get_user_auths(
    dao: SQLiteConnector,
    user_ids: Sequence[int] | None = None,
) -> list[UserAuth]:
    """
    Build the accounts of a sync from the ``users`` table.

    Active accounts that are not sub-users are synced with their own
    credentials; a sub-account master contributes one entry per sub-user,
    scoped to the master and carrying the sub-user's credentials.

    Args:
        dao: Store
        user_ids: Restrict to these accounts

    Returns:
        List of UserAuth in ``_id`` order
    """
    filter: dict[str, Any] = {"active": 1}
    if user_ids:
        filter["_id"] = list(user_ids)
    users = dao.get_elems_in_coll_by(TableNames.USERS, filter=filter, sort=[("_id", 1)])

    auths: list[UserAuth] = []
    for user in users:
        if user.get("isSubUser"):
            continue
        if not user.get("isSubAccount"):
            auths.append(_to_auth(user["_id"], user))
            continue

        sub_user_ids = [
            sub.sub_user_id
            for sub in get_sub_user_auths(dao)
            if sub.master_user_id == user["_id"]
        ]
        sub_users = dao.get_elems_in_coll_by(
            TableNames.USERS,
            filter={"_id": sub_user_ids},
            sort=[("_id", 1)],
        )
        auths.extend(_to_auth(user["_id"], sub, sub["_id"]) for sub in sub_users)

    return auths
