"""
Schema Registry - single source of truth for the local store layout.

The version must be increased when the store schema is changed. For each new
version a migration has to be added to ``report_sync.migrations.versions``
as ``migration_v<N>.py``, where ``N`` is ``SUPPORTED_DB_VERSION``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from pydantic import ValidationError

from report_sync.errors import SchemaDefinitionError
from report_sync.schema.models import (
    Column,
    ColumnType,
    ForeignKey,
    Index,
    Model,
    NullCheck,
    Trigger,
)


SUPPORTED_DB_VERSION = 5


class TableNames:
    """Names of the store tables."""

    USERS = "users"
    SUB_ACCOUNTS = "subAccounts"
    LEDGERS = "ledgers"
    TRADES = "trades"
    FUNDING_TRADES = "fundingTrades"
    PUBLIC_TRADES = "publicTrades"
    ORDERS = "orders"
    MOVEMENTS = "movements"
    FUNDING_OFFER_HISTORY = "fundingOfferHistory"
    FUNDING_LOAN_HISTORY = "fundingLoanHistory"
    FUNDING_CREDIT_HISTORY = "fundingCreditHistory"
    POSITIONS_HISTORY = "positionsHistory"
    LOGINS = "logins"
    CHANGE_LOGS = "changeLogs"
    TICKERS_HISTORY = "tickersHistory"
    STATUS_MESSAGES = "statusMessages"
    PUBLIC_COLLS_CONF = "publicCollsConf"
    SYMBOLS = "symbols"
    FUTURES = "futures"
    INACTIVE_CURRENCIES = "inactiveCurrencies"
    INACTIVE_SYMBOLS = "inactiveSymbols"
    CURRENCIES = "currencies"
    MARGIN_CURRENCY_LIST = "marginCurrencyList"
    CANDLES = "candles"
    SYNC_QUEUE = "syncQueue"
    SYNC_USER_STEPS = "syncUserSteps"


# =============================================================================
# Shared column, constraint and trigger definitions
# =============================================================================
ID = Column(type=ColumnType.ID)
INT = Column(type=ColumnType.INTEGER)
INT_NOT_NULL = Column(type=ColumnType.INTEGER, not_null=True)
BIGINT = Column(type=ColumnType.BIGINT)
DECIMAL = Column(type=ColumnType.DECIMAL)
VARCHAR = Column(type=ColumnType.VARCHAR)
VARCHAR_NOT_NULL = Column(type=ColumnType.VARCHAR, not_null=True)
TEXT = Column(type=ColumnType.TEXT)
JSON = Column(type=ColumnType.JSON)
BOOL = Column(type=ColumnType.BOOLEAN)
MTS = Column(type=ColumnType.TIMESTAMP)

SUB_USER_IS_SET = (NullCheck(column="subUserId"),)

USER_ID_CONSTRAINT = ForeignKey(
    name="user_id_fk", column="user_id", ref_table=TableNames.USERS
)
SUB_USER_ID_CONSTRAINT = ForeignKey(
    name="subUserId_fk", column="subUserId", ref_table=TableNames.USERS
)
MASTER_USER_ID_CONSTRAINT = ForeignKey(
    name="masterUserId_fk", column="masterUserId", ref_table=TableNames.USERS
)
OWNER_USER_ID_CONSTRAINT = ForeignKey(
    name="ownerUserId_fk", column="ownerUserId", ref_table=TableNames.USERS
)

_NOW_MTS = "CAST((julianday('now') - 2440587.5) * 86400000.0 AS INT)"

CREATE_UPDATE_MTS_TRIGGERS = (
    Trigger(
        name="insert_{table}_createdAt_and_updatedAt",
        event="INSERT",
        statement=(
            'UPDATE "{table}" '
            f"SET createdAt = {_NOW_MTS}, updatedAt = {_NOW_MTS} "
            "WHERE _id = NEW._id"
        ),
    ),
    Trigger(
        name="update_{table}_updatedAt",
        event="UPDATE",
        statement=(
            f'UPDATE "{{table}}" SET updatedAt = {_NOW_MTS} WHERE _id = NEW._id'
        ),
    ),
)

DELETE_SUB_USERS_TRIGGER = Trigger(
    name="delete_{table}_subUsers_from_users",
    event="DELETE",
    statement=f'DELETE FROM "{TableNames.USERS}" WHERE _id = OLD.subUserId',
)


def _index(*fields: str, where: tuple[NullCheck, ...] = ()) -> Index:
    return Index(fields=fields, where=where)


def _private_model(
    name: str,
    columns: dict[str, Column],
    date_field: str,
    unique: Iterable[Index] = (),
    indexes: Iterable[Index] = (),
) -> Model:
    """
    Build a per-user collection model.

    Adds the owner columns, their constraints and the sub-account partial
    index every private collection carries.
    """
    return Model(
        name=name,
        columns={
            "_id": ID,
            **columns,
            "subUserId": INT,
            "user_id": INT_NOT_NULL,
        },
        unique_indexes=tuple(unique),
        indexes=(
            *indexes,
            _index("user_id", "subUserId", date_field, where=SUB_USER_IS_SET),
        ),
        foreign_keys=(USER_ID_CONSTRAINT, SUB_USER_ID_CONSTRAINT),
    )


def _pairs_model(name: str) -> Model:
    return Model(
        name=name,
        columns={"_id": ID, "pairs": VARCHAR},
        unique_indexes=(_index("pairs"),),
    )


_FUNDING_HISTORY_COLUMNS: dict[str, Column] = {
    "id": BIGINT,
    "symbol": VARCHAR,
    "side": INT,
    "mtsCreate": MTS,
    "mtsUpdate": MTS,
    "amount": DECIMAL,
    "flags": TEXT,
    "status": TEXT,
    "rate": VARCHAR,
    "period": INT,
    "mtsOpening": MTS,
    "mtsLastPayout": MTS,
    "notify": BOOL,
    "hidden": BOOL,
    "renew": BOOL,
    "rateReal": INT,
    "noClose": BOOL,
}

_FUNDING_HISTORY_INDEXES = (
    _index("user_id", "symbol", "mtsUpdate"),
    _index("user_id", "status", "mtsUpdate"),
    _index("user_id", "mtsUpdate"),
)


# =============================================================================
# Models
# =============================================================================
def _build_models() -> list[Model]:
    return [
        Model(
            name=TableNames.USERS,
            columns={
                "_id": ID,
                "id": BIGINT,
                "email": VARCHAR,
                "apiKey": VARCHAR,
                "apiSecret": VARCHAR,
                "authToken": VARCHAR,
                "active": BOOL,
                "isDataFromDb": BOOL,
                "timezone": VARCHAR,
                "username": VARCHAR,
                "localUsername": VARCHAR,
                "passwordHash": VARCHAR,
                "isNotProtected": BOOL,
                "isSubAccount": BOOL,
                "isSubUser": BOOL,
                "shouldNotSyncOnStartupAfterUpdate": BOOL,
                "isSyncOnStartupRequired": BOOL,
                "authTokenTTLSec": INT,
                "createdAt": MTS,
                "updatedAt": MTS,
            },
            unique_indexes=(_index("email", "username"),),
            triggers=CREATE_UPDATE_MTS_TRIGGERS,
        ),
        Model(
            name=TableNames.SUB_ACCOUNTS,
            columns={
                "_id": ID,
                "masterUserId": INT_NOT_NULL,
                "subUserId": INT_NOT_NULL,
                "createdAt": MTS,
                "updatedAt": MTS,
            },
            foreign_keys=(MASTER_USER_ID_CONSTRAINT, SUB_USER_ID_CONSTRAINT),
            triggers=(DELETE_SUB_USERS_TRIGGER, *CREATE_UPDATE_MTS_TRIGGERS),
        ),
        _private_model(
            TableNames.LEDGERS,
            {
                "id": BIGINT,
                "currency": VARCHAR,
                "mts": MTS,
                "amount": DECIMAL,
                "amountUsd": DECIMAL,
                "balance": DECIMAL,
                "_nativeBalance": DECIMAL,
                "balanceUsd": DECIMAL,
                "_nativeBalanceUsd": DECIMAL,
                "description": TEXT,
                "wallet": VARCHAR,
                "_category": INT,
                "_isMarginFundingPayment": BOOL,
                "_isAffiliateRebate": BOOL,
                "_isStakingPayments": BOOL,
                "_isSubAccountsTransfer": BOOL,
                "_isBalanceRecalced": BOOL,
            },
            date_field="mts",
            unique=(_index("id", "user_id"),),
            indexes=(
                _index("user_id", "wallet", "currency", "mts"),
                _index("user_id", "wallet", "mts"),
                _index("user_id", "currency", "mts"),
                _index("user_id", "_isMarginFundingPayment", "mts"),
                _index("user_id", "_isAffiliateRebate", "mts"),
                _index("user_id", "_isStakingPayments", "mts"),
                _index("user_id", "_isSubAccountsTransfer", "mts"),
                _index("user_id", "_category", "mts"),
                _index("user_id", "mts"),
                _index("currency", "mts"),
                _index("subUserId", "mts", "_id", where=SUB_USER_IS_SET),
            ),
        ),
        _private_model(
            TableNames.TRADES,
            {
                "id": BIGINT,
                "symbol": VARCHAR,
                "mtsCreate": MTS,
                "orderID": BIGINT,
                "execAmount": DECIMAL,
                "execPrice": DECIMAL,
                "orderType": VARCHAR,
                "orderPrice": DECIMAL,
                "maker": BOOL,
                "fee": DECIMAL,
                "feeCurrency": VARCHAR,
            },
            date_field="mtsCreate",
            unique=(_index("id", "symbol", "user_id"),),
            indexes=(
                _index("user_id", "symbol", "mtsCreate"),
                _index("user_id", "orderID", "mtsCreate"),
                _index("user_id", "mtsCreate"),
                _index("subUserId", "orderID", where=SUB_USER_IS_SET),
            ),
        ),
        _private_model(
            TableNames.FUNDING_TRADES,
            {
                "id": BIGINT,
                "symbol": VARCHAR,
                "mtsCreate": MTS,
                "offerID": BIGINT,
                "amount": DECIMAL,
                "rate": DECIMAL,
                "period": BIGINT,
                "maker": BOOL,
            },
            date_field="mtsCreate",
            unique=(_index("id", "user_id"),),
            indexes=(
                _index("user_id", "symbol", "mtsCreate"),
                _index("user_id", "mtsCreate"),
            ),
        ),
        Model(
            name=TableNames.PUBLIC_TRADES,
            columns={
                "_id": ID,
                "id": BIGINT,
                "mts": MTS,
                "rate": DECIMAL,
                "period": BIGINT,
                "amount": DECIMAL,
                "price": DECIMAL,
                "_symbol": VARCHAR,
            },
            unique_indexes=(_index("id", "_symbol"),),
            indexes=(_index("_symbol", "mts"), _index("mts")),
        ),
        _private_model(
            TableNames.ORDERS,
            {
                "id": BIGINT,
                "gid": BIGINT,
                "cid": BIGINT,
                "symbol": VARCHAR,
                "mtsCreate": MTS,
                "mtsUpdate": MTS,
                "amount": DECIMAL,
                "amountOrig": DECIMAL,
                "type": VARCHAR,
                "typePrev": VARCHAR,
                "flags": INT,
                "status": VARCHAR,
                "price": DECIMAL,
                "priceAvg": DECIMAL,
                "priceTrailing": DECIMAL,
                "priceAuxLimit": DECIMAL,
                "notify": BOOL,
                "placedId": BIGINT,
                "_lastAmount": DECIMAL,
                "amountExecuted": DECIMAL,
                "routing": VARCHAR,
                "meta": JSON,
            },
            date_field="mtsUpdate",
            unique=(_index("id", "user_id"),),
            indexes=(
                _index("user_id", "symbol", "mtsUpdate"),
                _index("user_id", "type", "mtsUpdate"),
                _index("user_id", "mtsUpdate"),
            ),
        ),
        _private_model(
            TableNames.MOVEMENTS,
            {
                "id": BIGINT,
                "currency": VARCHAR,
                "currencyName": VARCHAR,
                "mtsStarted": MTS,
                "mtsUpdated": MTS,
                "status": VARCHAR,
                "amount": DECIMAL,
                "amountUsd": DECIMAL,
                "fees": DECIMAL,
                "destinationAddress": VARCHAR,
                "transactionId": VARCHAR,
                "note": TEXT,
            },
            date_field="mtsUpdated",
            unique=(_index("id", "user_id"),),
            indexes=(
                _index("user_id", "status", "mtsStarted"),
                _index("user_id", "status", "mtsUpdated"),
                _index("user_id", "currency", "mtsUpdated"),
                _index("user_id", "mtsUpdated"),
            ),
        ),
        _private_model(
            TableNames.FUNDING_OFFER_HISTORY,
            {
                "id": BIGINT,
                "symbol": VARCHAR,
                "mtsCreate": MTS,
                "mtsUpdate": MTS,
                "amount": DECIMAL,
                "amountOrig": DECIMAL,
                "type": VARCHAR,
                "flags": TEXT,
                "status": TEXT,
                "rate": VARCHAR,
                "period": INT,
                "notify": BOOL,
                "hidden": BOOL,
                "renew": BOOL,
                "rateReal": INT,
                "amountExecuted": DECIMAL,
            },
            date_field="mtsUpdate",
            unique=(_index("id", "user_id"),),
            indexes=_FUNDING_HISTORY_INDEXES,
        ),
        _private_model(
            TableNames.FUNDING_LOAN_HISTORY,
            dict(_FUNDING_HISTORY_COLUMNS),
            date_field="mtsUpdate",
            unique=(_index("id", "user_id"),),
            indexes=_FUNDING_HISTORY_INDEXES,
        ),
        _private_model(
            TableNames.FUNDING_CREDIT_HISTORY,
            {**_FUNDING_HISTORY_COLUMNS, "positionPair": VARCHAR},
            date_field="mtsUpdate",
            unique=(_index("id", "user_id"),),
            indexes=_FUNDING_HISTORY_INDEXES,
        ),
        _private_model(
            TableNames.POSITIONS_HISTORY,
            {
                "id": BIGINT,
                "symbol": VARCHAR,
                "status": VARCHAR,
                "amount": DECIMAL,
                "basePrice": DECIMAL,
                "closePrice": DECIMAL,
                "marginFunding": DECIMAL,
                "marginFundingType": INT,
                "pl": DECIMAL,
                "plPerc": DECIMAL,
                "liquidationPrice": DECIMAL,
                "leverage": DECIMAL,
                "placeholder": TEXT,
                "mtsCreate": MTS,
                "mtsUpdate": MTS,
            },
            date_field="mtsUpdate",
            unique=(_index("id", "user_id"),),
            indexes=(
                _index("user_id", "symbol", "mtsUpdate"),
                _index("user_id", "mtsUpdate", "mtsCreate"),
                _index("user_id", "mtsUpdate"),
                _index("subUserId", "id", where=SUB_USER_IS_SET),
            ),
        ),
        _private_model(
            TableNames.LOGINS,
            {
                "id": BIGINT,
                "time": MTS,
                "ip": VARCHAR,
                "extraData": JSON,
            },
            date_field="time",
            unique=(_index("id", "user_id"),),
            indexes=(_index("user_id", "time"),),
        ),
        _private_model(
            TableNames.CHANGE_LOGS,
            {
                "mtsCreate": MTS,
                "log": VARCHAR,
                "ip": VARCHAR,
                "userAgent": TEXT,
            },
            date_field="mtsCreate",
            unique=(_index("mtsCreate", "log", "user_id"),),
            indexes=(_index("user_id", "mtsCreate"),),
        ),
        Model(
            name=TableNames.TICKERS_HISTORY,
            columns={
                "_id": ID,
                "symbol": VARCHAR,
                "bid": DECIMAL,
                "bidPeriod": INT,
                "ask": DECIMAL,
                "mtsUpdate": MTS,
            },
            unique_indexes=(_index("mtsUpdate", "symbol"),),
            indexes=(_index("symbol", "mtsUpdate"),),
        ),
        Model(
            name=TableNames.STATUS_MESSAGES,
            columns={
                "_id": ID,
                "key": VARCHAR,
                "timestamp": MTS,
                "price": DECIMAL,
                "priceSpot": DECIMAL,
                "fundBal": DECIMAL,
                "fundingAccrued": DECIMAL,
                "fundingStep": DECIMAL,
                "clampMin": DECIMAL,
                "clampMax": DECIMAL,
                "_type": VARCHAR,
            },
            unique_indexes=(_index("key", "_type"),),
            indexes=(_index("key", "timestamp"),),
        ),
        Model(
            name=TableNames.PUBLIC_COLLS_CONF,
            columns={
                "_id": ID,
                "confName": VARCHAR,
                "symbol": VARCHAR,
                "start": MTS,
                "timeframe": VARCHAR,
                "createdAt": MTS,
                "updatedAt": MTS,
                "user_id": INT_NOT_NULL,
            },
            unique_indexes=(_index("symbol", "user_id", "confName", "timeframe"),),
            foreign_keys=(USER_ID_CONSTRAINT,),
            triggers=CREATE_UPDATE_MTS_TRIGGERS,
        ),
        _pairs_model(TableNames.SYMBOLS),
        _pairs_model(TableNames.FUTURES),
        _pairs_model(TableNames.INACTIVE_CURRENCIES),
        _pairs_model(TableNames.INACTIVE_SYMBOLS),
        Model(
            name=TableNames.CURRENCIES,
            columns={
                "_id": ID,
                "id": VARCHAR,
                "name": VARCHAR,
                "pool": VARCHAR,
                "explorer": JSON,
                "symbol": VARCHAR,
                "walletFx": JSON,
            },
            unique_indexes=(_index("id"),),
        ),
        Model(
            name=TableNames.MARGIN_CURRENCY_LIST,
            columns={"_id": ID, "symbol": VARCHAR},
            unique_indexes=(_index("symbol"),),
        ),
        Model(
            name=TableNames.CANDLES,
            columns={
                "_id": ID,
                "mts": MTS,
                "open": DECIMAL,
                "close": DECIMAL,
                "high": DECIMAL,
                "low": DECIMAL,
                "volume": DECIMAL,
                "_symbol": VARCHAR,
                "_timeframe": VARCHAR,
            },
            unique_indexes=(_index("_symbol", "_timeframe", "mts"),),
            indexes=(
                _index("_timeframe", "_symbol", "mts"),
                _index("_timeframe", "mts"),
                _index("_symbol", "mts"),
                _index("close", "mts"),
            ),
        ),
        Model(
            name=TableNames.SYNC_QUEUE,
            columns={
                "_id": ID,
                "collName": VARCHAR_NOT_NULL,
                "state": VARCHAR,
                "createdAt": MTS,
                "updatedAt": MTS,
                "ownerUserId": INT,
                "isOwnerScheduler": BOOL,
            },
            foreign_keys=(OWNER_USER_ID_CONSTRAINT,),
            triggers=CREATE_UPDATE_MTS_TRIGGERS,
        ),
        Model(
            name=TableNames.SYNC_USER_STEPS,
            columns={
                "_id": ID,
                "collName": VARCHAR_NOT_NULL,
                "syncedAt": MTS,
                "baseStart": MTS,
                "baseEnd": MTS,
                "isBaseStepReady": BOOL,
                "currStart": MTS,
                "currEnd": MTS,
                "isCurrStepReady": BOOL,
                "symbol": VARCHAR,
                "timeframe": VARCHAR,
                "createdAt": MTS,
                "updatedAt": MTS,
                "subUserId": INT,
                "user_id": INT,
                "syncQueueId": INT,
            },
            unique_indexes=SYNC_USER_STEPS_UNIQUE_INDEXES,
            foreign_keys=(USER_ID_CONSTRAINT, SUB_USER_ID_CONSTRAINT),
            triggers=CREATE_UPDATE_MTS_TRIGGERS,
        ),
    ]


# One unique index per kind of scope; NULLs are distinct in unique indexes
SYNC_USER_STEPS_UNIQUE_INDEXES = (
    # Public monolithic collections
    _index(
        "collName",
        where=(
            NullCheck(column="user_id", is_null=True),
            NullCheck(column="symbol", is_null=True),
        ),
    ),
    # Public collections grouped by symbol
    _index(
        "collName", "symbol",
        where=(
            NullCheck(column="user_id", is_null=True),
            NullCheck(column="symbol"),
            NullCheck(column="timeframe", is_null=True),
        ),
    ),
    # Public collections grouped by symbol and timeframe
    _index(
        "collName", "symbol", "timeframe",
        where=(
            NullCheck(column="user_id", is_null=True),
            NullCheck(column="symbol"),
            NullCheck(column="timeframe"),
        ),
    ),
    # Private collections
    _index(
        "user_id", "collName",
        where=(
            NullCheck(column="user_id"),
            NullCheck(column="subUserId", is_null=True),
        ),
    ),
    # Private collections of sub-accounts
    _index(
        "user_id", "subUserId", "collName",
        where=(
            NullCheck(column="user_id"),
            NullCheck(column="subUserId"),
        ),
    ),
)


class SchemaRegistry:
    """
    Versioned, ordered collection of models.

    Example:
        registry = SchemaRegistry(SUPPORTED_DB_VERSION, models)
        ledgers = registry.get_model("ledgers")
    """

    def __init__(self, version: int, models: Iterable[Model]) -> None:
        if not isinstance(version, int) or isinstance(version, bool) or version < 1:
            raise SchemaDefinitionError(f"Invalid schema version: {version!r}")

        self.version = version
        self._models: dict[str, Model] = {}
        for model in models:
            if model.name in self._models:
                raise SchemaDefinitionError(f"Duplicate model: {model.name}")
            self._models[model.name] = model

        self._validate_foreign_keys()

    def _validate_foreign_keys(self) -> None:
        for model in self._models.values():
            for fk in model.foreign_keys:
                ref = self._models.get(fk.ref_table)
                if ref is None or not ref.has_column(fk.ref_column):
                    raise SchemaDefinitionError(
                        f"{model.name}.{fk.column} references unknown "
                        f"{fk.ref_table}.{fk.ref_column}"
                    )

    def get_model(self, table_name: str) -> Model | None:
        return self._models.get(table_name)

    def get_all_models(self) -> dict[str, Model]:
        """Models in creation order (referenced tables first)."""
        return dict(self._models)

    def __contains__(self, table_name: object) -> bool:
        return table_name in self._models


def build_registry(
    version: int = SUPPORTED_DB_VERSION,
    models: Iterable[Model] | None = None,
) -> SchemaRegistry:
    """Build a registry, reporting descriptor problems as SchemaDefinitionError."""
    try:
        return SchemaRegistry(version, _build_models() if models is None else models)
    except ValidationError as e:
        raise SchemaDefinitionError(str(e)) from e


REGISTRY = build_registry()


def get_model(table_name: str) -> Model | None:
    return REGISTRY.get_model(table_name)


def get_all_models() -> Mapping[str, Model]:
    return REGISTRY.get_all_models()
