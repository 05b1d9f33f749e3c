from __future__ import annotations

import json
import re
from importlib.resources import files
from typing import TYPE_CHECKING, Any

from .batch import MaxBatchSize, group_operations
from .codec import EdmType, EntityProperty, decode_entity, decode_value, encode_entity, encode_value
from .dictionary import DictionaryEntry, TableDictionary
from .errors import (
    BatchFailedError,
    ConflictError,
    IdentifierValidationError,
    KeyExistsError,
    KeyNotFoundError,
    NotFoundError,
    StoreError,
    TabledictError,
    ThrottledError,
    TypeMismatchError,
    UnavailableError,
    UnsupportedShapeError,
    ValidationError,
)
from .memory import AsyncMemoryRowStore, MemoryRowStore
from .store import AsyncRowStore, Entity, OperationResult, RowStore, TableOperation
from .validation import (
    MaxDictionaryNameLength,
    MaxKeyLength,
    validate_dictionary_name,
    validate_key,
    validate_not_none,
    validate_property_name,
    validate_row_key_value,
    validate_table_name,
)

if TYPE_CHECKING:
    from .azure_store import AsyncAzureTableRowStore, AzureTableRowStore
    from .config import RetryPolicy, StoreConfig, load_store_config
    from .dynamodb_store import DynamoRowStore
    from .model import AttributeConverter, ModelDefinition, ModelDefinitionError, entity_field
    from .runtime import StoreCallMetric, create_row_store, instrument_row_store
    from .table import EntityTable


def _read_repo_version() -> str:
    try:
        data = json.loads(files(__package__).joinpath("version.json").read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return "0.0.0"

    version = data.get("version")
    return version if isinstance(version, str) and version else "0.0.0"


def _normalize_repo_version(repo_version: str) -> str:
    match = re.match(r"^(\d+\.\d+\.\d+)-rc\.?([0-9]+)$", repo_version)
    if match:
        return f"{match.group(1)}rc{match.group(2)}"
    return repo_version


__repo_version__ = _read_repo_version()
__version__ = _normalize_repo_version(__repo_version__)


def __getattr__(name: str) -> Any:
    if name in {"AzureTableRowStore", "AsyncAzureTableRowStore"}:
        from . import azure_store

        return getattr(azure_store, name)
    if name == "DynamoRowStore":
        from .dynamodb_store import DynamoRowStore

        return DynamoRowStore
    if name in {"RetryPolicy", "StoreConfig", "load_store_config"}:
        from . import config

        return getattr(config, name)
    if name in {"AttributeConverter", "ModelDefinition", "ModelDefinitionError", "entity_field"}:
        from . import model

        return getattr(model, name)
    if name == "EntityTable":
        from .table import EntityTable

        return EntityTable
    if name in {"StoreCallMetric", "create_row_store", "instrument_row_store"}:
        from . import runtime

        return getattr(runtime, name)
    raise AttributeError(name)


__all__ = [
    "AsyncAzureTableRowStore",
    "AsyncMemoryRowStore",
    "AsyncRowStore",
    "AttributeConverter",
    "AzureTableRowStore",
    "BatchFailedError",
    "ConflictError",
    "DictionaryEntry",
    "DynamoRowStore",
    "EdmType",
    "Entity",
    "EntityProperty",
    "EntityTable",
    "IdentifierValidationError",
    "KeyExistsError",
    "KeyNotFoundError",
    "MaxBatchSize",
    "MaxDictionaryNameLength",
    "MaxKeyLength",
    "MemoryRowStore",
    "ModelDefinition",
    "ModelDefinitionError",
    "NotFoundError",
    "OperationResult",
    "RetryPolicy",
    "RowStore",
    "StoreCallMetric",
    "StoreConfig",
    "StoreError",
    "TableDictionary",
    "TableOperation",
    "TabledictError",
    "ThrottledError",
    "TypeMismatchError",
    "UnavailableError",
    "UnsupportedShapeError",
    "ValidationError",
    "__repo_version__",
    "__version__",
    "create_row_store",
    "decode_entity",
    "decode_value",
    "encode_entity",
    "encode_value",
    "entity_field",
    "group_operations",
    "instrument_row_store",
    "load_store_config",
    "validate_dictionary_name",
    "validate_key",
    "validate_not_none",
    "validate_property_name",
    "validate_row_key_value",
    "validate_table_name",
]
