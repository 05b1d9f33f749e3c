from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable, Iterator, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from azure.core import MatchConditions
from azure.core.exceptions import AzureError, ResourceExistsError
from azure.data.tables import EdmType as AzureEdmType
from azure.data.tables import EntityProperty as AzureEntityProperty
from azure.data.tables import TableClient, UpdateMode
from azure.data.tables.aio import TableClient as AsyncTableClient

from .azure_errors import map_azure_error, map_transaction_error
from .codec import EdmType, EntityProperty, to_entity_property
from .errors import NotFoundError, ValidationError
from .store import WILDCARD_ETAG, Entity, OperationResult, TableOperation
from .store import UpdateMode as StoreUpdateMode
from .validation import validate_table_name

if TYPE_CHECKING:
    from .config import StoreConfig

logger = logging.getLogger(__name__)

_KEY_PROPERTIES = frozenset({"PartitionKey", "RowKey"})
_PARTITION_FILTER = "PartitionKey eq @pk"

_TRANSACTION_VERBS: dict[str, str] = {
    "insert": "create",
    "insert_or_replace": "upsert",
    "insert_or_merge": "upsert",
    "merge": "update",
    "replace": "update",
    "delete": "delete",
}


class AzureTableRowStore:
    """Row store over an ``azure.data.tables.TableClient``.

    azure-core exceptions are translated at this boundary; callers only see
    the library's own error types.
    """

    def __init__(self, client: TableClient) -> None:
        validate_table_name(client.table_name)
        self._client = client

    @classmethod
    def from_connection_string(
        cls, connection_string: str, table_name: str, **client_kwargs: Any
    ) -> AzureTableRowStore:
        validate_table_name(table_name)
        client = TableClient.from_connection_string(connection_string, table_name=table_name, **client_kwargs)
        return cls(client)

    @classmethod
    def from_config(cls, config: StoreConfig) -> AzureTableRowStore:
        if not config.connection_string:
            raise ValidationError("azure backend requires connection_string")
        store = cls.from_connection_string(
            config.connection_string, config.table_name, **config.to_azure_kwargs()
        )
        if config.create_table:
            store.create_if_not_exists()
        return store

    @property
    def client(self) -> TableClient:
        return self._client

    @property
    def table_url(self) -> str:
        return _table_url(self._client)

    def create_if_not_exists(self) -> None:
        try:
            self._client.create_table()
            logger.info("created table %r", self._client.table_name)
        except ResourceExistsError:
            logger.debug("table %r already exists", self._client.table_name)
        except AzureError as err:
            raise map_azure_error(err) from err

    def get_entity(self, partition_key: str, row_key: str, *, select: Sequence[str] | None = None) -> Entity:
        try:
            raw = self._client.get_entity(partition_key, row_key, select=_select(select))
        except AzureError as err:
            raise map_azure_error(err) from err
        return from_table_entity(raw)

    def insert_entity(self, entity: Entity) -> Entity:
        try:
            meta = self._client.create_entity(entity=to_table_entity(entity))
        except AzureError as err:
            raise map_azure_error(err) from err
        return _with_metadata(entity, meta)

    def upsert_entity(self, entity: Entity, *, mode: StoreUpdateMode = "replace") -> Entity:
        try:
            meta = self._client.upsert_entity(entity=to_table_entity(entity), mode=_update_mode(mode))
        except AzureError as err:
            raise map_azure_error(err) from err
        return _with_metadata(entity, meta)

    def update_entity(
        self, entity: Entity, *, mode: StoreUpdateMode = "merge", etag: str | None = None
    ) -> Entity:
        try:
            meta = self._client.update_entity(
                entity=to_table_entity(entity), mode=_update_mode(mode), **_condition(etag)
            )
        except AzureError as err:
            raise map_azure_error(err) from err
        return _with_metadata(entity, meta)

    def delete_entity(self, partition_key: str, row_key: str, *, etag: str | None = None) -> None:
        # The SDK treats a 404 on delete as success; watch the status code instead.
        statuses: list[int] = []
        try:
            self._client.delete_entity(
                partition_key,
                row_key,
                raw_response_hook=lambda response: statuses.append(response.http_response.status_code),
                **_condition(etag),
            )
        except AzureError as err:
            raise map_azure_error(err) from err
        if statuses and statuses[-1] == 404:
            raise NotFoundError(f"entity not found: {partition_key!r}/{row_key!r}")

    def query_entities(
        self, partition_key: str | None = None, *, select: Sequence[str] | None = None
    ) -> Iterator[Entity]:
        try:
            if partition_key is None:
                pages = self._client.list_entities(select=_select(select))
            else:
                pages = self._client.query_entities(
                    _PARTITION_FILTER, parameters={"pk": partition_key}, select=_select(select)
                )
            for raw in pages:
                yield from_table_entity(raw)
        except AzureError as err:
            raise map_azure_error(err) from err

    def submit_batch(self, operations: Sequence[TableOperation]) -> list[OperationResult]:
        logger.debug("submit_transaction: table=%r size=%d", self._client.table_name, len(operations))
        try:
            metas = self._client.submit_transaction(to_transaction(operations))
        except AzureError as err:
            raise map_transaction_error(err) from err
        return _results(operations, metas)


class AsyncAzureTableRowStore:
    """Awaitable row store over ``azure.data.tables.aio.TableClient``."""

    def __init__(self, client: AsyncTableClient) -> None:
        validate_table_name(client.table_name)
        self._client = client

    @classmethod
    def from_connection_string(
        cls, connection_string: str, table_name: str, **client_kwargs: Any
    ) -> AsyncAzureTableRowStore:
        validate_table_name(table_name)
        client = AsyncTableClient.from_connection_string(
            connection_string, table_name=table_name, **client_kwargs
        )
        return cls(client)

    @property
    def table_url(self) -> str:
        return _table_url(self._client)

    async def close(self) -> None:
        await self._client.close()

    async def get_entity(
        self, partition_key: str, row_key: str, *, select: Sequence[str] | None = None
    ) -> Entity:
        try:
            raw = await self._client.get_entity(partition_key, row_key, select=_select(select))
        except AzureError as err:
            raise map_azure_error(err) from err
        return from_table_entity(raw)

    async def insert_entity(self, entity: Entity) -> Entity:
        try:
            meta = await self._client.create_entity(entity=to_table_entity(entity))
        except AzureError as err:
            raise map_azure_error(err) from err
        return _with_metadata(entity, meta)

    async def upsert_entity(self, entity: Entity, *, mode: StoreUpdateMode = "replace") -> Entity:
        try:
            meta = await self._client.upsert_entity(entity=to_table_entity(entity), mode=_update_mode(mode))
        except AzureError as err:
            raise map_azure_error(err) from err
        return _with_metadata(entity, meta)

    async def update_entity(
        self, entity: Entity, *, mode: StoreUpdateMode = "merge", etag: str | None = None
    ) -> Entity:
        try:
            meta = await self._client.update_entity(
                entity=to_table_entity(entity), mode=_update_mode(mode), **_condition(etag)
            )
        except AzureError as err:
            raise map_azure_error(err) from err
        return _with_metadata(entity, meta)

    async def delete_entity(self, partition_key: str, row_key: str, *, etag: str | None = None) -> None:
        statuses: list[int] = []
        try:
            await self._client.delete_entity(
                partition_key,
                row_key,
                raw_response_hook=lambda response: statuses.append(response.http_response.status_code),
                **_condition(etag),
            )
        except AzureError as err:
            raise map_azure_error(err) from err
        if statuses and statuses[-1] == 404:
            raise NotFoundError(f"entity not found: {partition_key!r}/{row_key!r}")

    async def query_entities(
        self, partition_key: str | None = None, *, select: Sequence[str] | None = None
    ) -> AsyncIterator[Entity]:
        try:
            if partition_key is None:
                pages = self._client.list_entities(select=_select(select))
            else:
                pages = self._client.query_entities(
                    _PARTITION_FILTER, parameters={"pk": partition_key}, select=_select(select)
                )
            async for raw in pages:
                yield from_table_entity(raw)
        except AzureError as err:
            raise map_azure_error(err) from err

    async def submit_batch(self, operations: Sequence[TableOperation]) -> list[OperationResult]:
        try:
            metas = await self._client.submit_transaction(to_transaction(operations))
        except AzureError as err:
            raise map_transaction_error(err) from err
        return _results(operations, metas)


def to_table_entity(entity: Entity) -> dict[str, Any]:
    out: dict[str, Any] = {"PartitionKey": entity.partition_key, "RowKey": entity.row_key}
    for name, prop in entity.properties.items():
        value = str(prop.value) if prop.edm_type is EdmType.GUID else prop.value
        out[name] = AzureEntityProperty(value, AzureEdmType(prop.edm_type.value))
    return out


def from_table_entity(raw: Mapping[str, Any]) -> Entity:
    properties: dict[str, EntityProperty] = {}
    for name, value in raw.items():
        if name in _KEY_PROPERTIES or value is None:
            continue
        properties[name] = _from_azure_value(value)

    metadata = getattr(raw, "metadata", None) or {}
    return Entity(
        partition_key=str(raw["PartitionKey"]),
        row_key=str(raw["RowKey"]),
        properties=properties,
        etag=metadata.get("etag"),
        timestamp=metadata.get("timestamp"),
    )


def to_transaction(operations: Iterable[TableOperation]) -> list[tuple[Any, ...]]:
    out: list[tuple[Any, ...]] = []
    for op in operations:
        verb = _TRANSACTION_VERBS[op.kind]
        entity = to_table_entity(op.entity)
        if verb == "create":
            out.append((verb, entity))
        elif verb == "upsert":
            mode = "merge" if op.kind == "insert_or_merge" else "replace"
            out.append((verb, entity, {"mode": _update_mode(mode)}))
        elif verb == "update":
            out.append((verb, entity, {"mode": _update_mode(op.kind), **_condition(op.etag)}))
        else:
            out.append((verb, entity, _condition(op.etag)))
    return out


def _from_azure_value(value: Any) -> EntityProperty:
    if isinstance(value, AzureEntityProperty):
        edm = EdmType(str(getattr(value.edm_type, "value", value.edm_type)))
        return EntityProperty(value.value, edm)
    return to_entity_property(value)


def _results(
    operations: Sequence[TableOperation], metas: Sequence[Mapping[str, Any]]
) -> list[OperationResult]:
    return [
        OperationResult(operation=op, etag=None if op.kind == "delete" else (meta or {}).get("etag"))
        for op, meta in zip(operations, metas, strict=True)
    ]


def _with_metadata(entity: Entity, meta: Mapping[str, Any] | None) -> Entity:
    meta = meta or {}
    return Entity(
        partition_key=entity.partition_key,
        row_key=entity.row_key,
        properties=entity.properties,
        etag=meta.get("etag"),
        timestamp=meta.get("date"),
    )


def _update_mode(mode: str) -> UpdateMode:
    return UpdateMode.MERGE if mode == "merge" else UpdateMode.REPLACE


def _condition(etag: str | None) -> dict[str, Any]:
    if etag is None or etag == WILDCARD_ETAG:
        return {}
    return {"etag": etag, "match_condition": MatchConditions.IfNotModified}


def _table_url(client: Any) -> str:
    # The SDK url may be the account endpoint and may carry a SAS query string.
    base = str(client.url).split("?", 1)[0].rstrip("/")
    name = str(client.table_name)
    return base if base.endswith("/" + name) else f"{base}/{name}"


def _select(select: Sequence[str] | None) -> list[str] | None:
    if select is None:
        return None
    # Projected rows must still carry their keys.
    wanted = ["PartitionKey", "RowKey"]
    wanted.extend(name for name in select if name not in wanted)
    return wanted
