"""Store schema: typed models, the versioned registry and the sync map."""

from report_sync.schema.models import Column, ColumnType, Index, Model
from report_sync.schema.registry import (
    REGISTRY,
    SUPPORTED_DB_VERSION,
    SchemaRegistry,
    TableNames,
    get_all_models,
    get_model,
)
from report_sync.schema.sync_schema import CollType, SyncSchemaEntry, get_method_coll_map

__all__ = [
    "Column",
    "ColumnType",
    "Index",
    "Model",
    "REGISTRY",
    "SUPPORTED_DB_VERSION",
    "SchemaRegistry",
    "TableNames",
    "get_all_models",
    "get_model",
    "CollType",
    "SyncSchemaEntry",
    "get_method_coll_map",
]
