"""
Method -> collection map.

Every remote method the sync engine pulls from is described by a
``SyncSchemaEntry``: which table receives the rows, how the collection is
synchronized (``CollType``) and which fields carry its date, symbol and
timeframe.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from report_sync.schema.models import Model
from report_sync.schema.registry import REGISTRY, SchemaRegistry, TableNames


class CollType(str, Enum):
    """How a collection is synchronized."""

    # Append-only per-user history
    INSERTABLE_ARRAY_OBJECTS = "insertable:array:objects"
    # Per-user rows that may change in place
    UPDATABLE_ARRAY_OBJECTS = "updatable:array:objects"
    # Append-only public history (candles, public trades, tickers)
    PUBLIC_INSERTABLE_ARRAY_OBJECTS = "public:insertable:array:objects"
    # Public rows replaced on every sync (status messages, currencies)
    PUBLIC_UPDATABLE_ARRAY_OBJECTS = "public:updatable:array:objects"
    # Public lists of plain values (symbols, futures ...)
    PUBLIC_UPDATABLE_ARRAY = "public:updatable:array"

    @property
    def is_public(self) -> bool:
        return self.value.startswith("public:")

    @property
    def is_insertable(self) -> bool:
        return self in (
            CollType.INSERTABLE_ARRAY_OBJECTS,
            CollType.PUBLIC_INSERTABLE_ARRAY_OBJECTS,
        )

    @property
    def is_updatable(self) -> bool:
        return not self.is_insertable


@dataclass(frozen=True)
class SyncSchemaEntry:
    """Sync description of one remote method."""

    method: str
    name: str
    type: CollType
    model: Model
    date_field_name: str | None = None
    symbol_field_name: str | None = None
    timeframe_field_name: str | None = None
    conf_name: str | None = None
    field_name: str | None = None

    @property
    def is_public(self) -> bool:
        return self.type.is_public

    @property
    def is_grouped(self) -> bool:
        """Public collection whose checkpoints are kept per symbol."""
        return self.is_public and self.conf_name is not None

    @property
    def is_monolith(self) -> bool:
        """Public collection synchronized as one piece, without a date field."""
        return self.is_public and self.conf_name is None

    @property
    def has_timeframe(self) -> bool:
        return self.timeframe_field_name is not None


# (method, table, type, date field, symbol field, timeframe field, conf name, field name)
_SYNC_METHODS: tuple[tuple, ...] = (
    ("getLedgers", TableNames.LEDGERS, CollType.INSERTABLE_ARRAY_OBJECTS,
     "mts", "currency", None, None, None),
    ("getTrades", TableNames.TRADES, CollType.INSERTABLE_ARRAY_OBJECTS,
     "mtsCreate", "symbol", None, None, None),
    ("getFundingTrades", TableNames.FUNDING_TRADES, CollType.INSERTABLE_ARRAY_OBJECTS,
     "mtsCreate", "symbol", None, None, None),
    ("getOrders", TableNames.ORDERS, CollType.INSERTABLE_ARRAY_OBJECTS,
     "mtsUpdate", "symbol", None, None, None),
    ("getMovements", TableNames.MOVEMENTS, CollType.INSERTABLE_ARRAY_OBJECTS,
     "mtsUpdated", "currency", None, None, None),
    ("getFundingOfferHistory", TableNames.FUNDING_OFFER_HISTORY,
     CollType.INSERTABLE_ARRAY_OBJECTS, "mtsUpdate", "symbol", None, None, None),
    ("getFundingLoanHistory", TableNames.FUNDING_LOAN_HISTORY,
     CollType.INSERTABLE_ARRAY_OBJECTS, "mtsUpdate", "symbol", None, None, None),
    ("getFundingCreditHistory", TableNames.FUNDING_CREDIT_HISTORY,
     CollType.INSERTABLE_ARRAY_OBJECTS, "mtsUpdate", "symbol", None, None, None),
    ("getPositionsHistory", TableNames.POSITIONS_HISTORY,
     CollType.INSERTABLE_ARRAY_OBJECTS, "mtsUpdate", "symbol", None, None, None),
    ("getLogins", TableNames.LOGINS, CollType.INSERTABLE_ARRAY_OBJECTS,
     "time", None, None, None, None),
    ("getChangeLogs", TableNames.CHANGE_LOGS, CollType.INSERTABLE_ARRAY_OBJECTS,
     "mtsCreate", None, None, None, None),
    ("getPublicTrades", TableNames.PUBLIC_TRADES,
     CollType.PUBLIC_INSERTABLE_ARRAY_OBJECTS, "mts", "_symbol", None,
     "publicTradesConf", None),
    ("getTickersHistory", TableNames.TICKERS_HISTORY,
     CollType.PUBLIC_INSERTABLE_ARRAY_OBJECTS, "mtsUpdate", "symbol", None,
     "tickersHistoryConf", None),
    ("getStatusMessages", TableNames.STATUS_MESSAGES,
     CollType.PUBLIC_UPDATABLE_ARRAY_OBJECTS, "timestamp", "key", None,
     "statusMessagesConf", None),
    ("getCandles", TableNames.CANDLES, CollType.PUBLIC_INSERTABLE_ARRAY_OBJECTS,
     "mts", "_symbol", "_timeframe", "candlesConf", None),
    ("getCurrencies", TableNames.CURRENCIES, CollType.PUBLIC_UPDATABLE_ARRAY_OBJECTS,
     None, None, None, None, None),
    ("getSymbols", TableNames.SYMBOLS, CollType.PUBLIC_UPDATABLE_ARRAY,
     None, None, None, None, "pairs"),
    ("getFutures", TableNames.FUTURES, CollType.PUBLIC_UPDATABLE_ARRAY,
     None, None, None, None, "pairs"),
    ("getInactiveCurrencies", TableNames.INACTIVE_CURRENCIES,
     CollType.PUBLIC_UPDATABLE_ARRAY, None, None, None, None, "pairs"),
    ("getInactiveSymbols", TableNames.INACTIVE_SYMBOLS,
     CollType.PUBLIC_UPDATABLE_ARRAY, None, None, None, None, "pairs"),
    ("getMarginCurrencyList", TableNames.MARGIN_CURRENCY_LIST,
     CollType.PUBLIC_UPDATABLE_ARRAY, None, None, None, None, "symbol"),
)


def get_method_coll_map(
    registry: SchemaRegistry = REGISTRY,
) -> dict[str, SyncSchemaEntry]:
    """Build the ordered method -> entry map against a registry."""
    method_coll_map: dict[str, SyncSchemaEntry] = {}
    for (
        method, table, coll_type, date_field,
        symbol_field, timeframe_field, conf_name, field_name,
    ) in _SYNC_METHODS:
        model = registry.get_model(table)
        if model is None:
            continue
        method_coll_map[method] = SyncSchemaEntry(
            method=method,
            name=table,
            type=coll_type,
            model=model,
            date_field_name=date_field,
            symbol_field_name=symbol_field,
            timeframe_field_name=timeframe_field,
            conf_name=conf_name,
            field_name=field_name,
        )
    return method_coll_map
