from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Iterable
from datetime import UTC, datetime
from typing import Any

import pytest
from azure.core import MatchConditions
from azure.core.exceptions import (
    HttpResponseError,
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
)
from azure.data.tables import EdmType as AzureEdmType
from azure.data.tables import EntityProperty as AzureEntityProperty
from azure.data.tables import UpdateMode

from tabledict_py import TableDictionary
from tabledict_py.azure_store import AsyncAzureTableRowStore, AzureTableRowStore, to_transaction
from tabledict_py.codec import EdmType, EntityProperty
from tabledict_py.config import StoreConfig
from tabledict_py.errors import (
    BatchFailedError,
    ConflictError,
    IdentifierValidationError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from tabledict_py.store import Entity, RowStore, TableOperation
from tabledict_py.testkit import ANY, FakeClock, FakeTableClient, FakeTableEntity

_AZURITE = (
    "DefaultEndpointsProtocol=http;AccountName=devstoreaccount1;"
    "AccountKey=Eby8vdM02xNOcqFlqUwJPLlmEtlCDXJ1OUzFT50uSRZ6IFsuFq2UVErCz4I6tq/K1SZFPTOtr/KBHBeksoGMGw==;"
    "TableEndpoint=http://127.0.0.1:10002/devstoreaccount1;"
)
_WHEN = datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)


def _value(text: str) -> AzureEntityProperty:
    return AzureEntityProperty(text, AzureEdmType.STRING)


def test_azure_store_satisfies_row_store_protocol() -> None:
    store = AzureTableRowStore(FakeTableClient())
    assert isinstance(store, RowStore)
    assert store.table_url == "https://devstoreaccount1.table.core.windows.net/dictionaries"

    with pytest.raises(IdentifierValidationError):
        AzureTableRowStore(FakeTableClient("bad-name"))


def test_insert_entity_sends_typed_properties() -> None:
    client = FakeTableClient()
    guid = uuid.UUID("12345678-1234-5678-1234-567812345678")
    client.expect(
        "create_entity",
        {
            "entity": {
                "PartitionKey": "dict1",
                "RowKey": "k",
                "Value": _value("v"),
                "Big": AzureEntityProperty(2**40, AzureEdmType.INT64),
                "Id": AzureEntityProperty(str(guid), AzureEdmType.GUID),
            }
        },
        response={"etag": 'W/"1"', "date": _WHEN},
    )
    client.expect("create_entity", error=ResourceExistsError(message="exists"))

    store = AzureTableRowStore(client)
    entity = Entity(
        partition_key="dict1",
        row_key="k",
        properties={
            "Value": EntityProperty("v", EdmType.STRING),
            "Big": EntityProperty(2**40, EdmType.INT64),
            "Id": EntityProperty(guid, EdmType.GUID),
        },
    )

    written = store.insert_entity(entity)
    assert written.etag == 'W/"1"'
    assert written.timestamp == _WHEN

    with pytest.raises(ConflictError):
        store.insert_entity(entity)
    client.assert_no_pending()


def test_get_entity_reads_values_and_metadata() -> None:
    client = FakeTableClient()
    client.expect(
        "get_entity",
        {"partition_key": "dict1", "row_key": "k", "select": None},
        response=FakeTableEntity(
            {
                "PartitionKey": "dict1",
                "RowKey": "k",
                "Value": "v",
                "Count": AzureEntityProperty(2**40, AzureEdmType.INT64),
                "ExpiresAt": _WHEN,
                "Missing": None,
            },
            metadata={"etag": 'W/"7"', "timestamp": _WHEN},
        ),
    )
    client.expect(
        "get_entity",
        {"select": ["PartitionKey", "RowKey", "ExpiresAt"]},
        error=ResourceNotFoundError(message="missing"),
    )

    store = AzureTableRowStore(client)
    entity = store.get_entity("dict1", "k")

    assert entity.etag == 'W/"7"'
    assert entity.timestamp == _WHEN
    assert entity.properties == {
        "Value": EntityProperty("v", EdmType.STRING),
        "Count": EntityProperty(2**40, EdmType.INT64),
        "ExpiresAt": EntityProperty(_WHEN, EdmType.DATETIME),
    }

    with pytest.raises(NotFoundError):
        store.get_entity("dict1", "gone", select=["RowKey", "ExpiresAt"])


def test_update_entity_uses_match_conditions() -> None:
    client = FakeTableClient()
    client.expect(
        "update_entity",
        {"mode": UpdateMode.MERGE, "etag": 'W/"1"', "match_condition": MatchConditions.IfNotModified},
        response={"etag": 'W/"2"'},
    )
    client.expect("update_entity", {"mode": UpdateMode.REPLACE}, error=ResourceModifiedError(message="stale"))

    def unconditional(req: Any) -> None:
        assert "etag" not in req

    client.expect("update_entity", unconditional, response={"etag": 'W/"3"'})

    store = AzureTableRowStore(client)
    entity = Entity(partition_key="p", row_key="r")
    assert store.update_entity(entity, etag='W/"1"').etag == 'W/"2"'
    with pytest.raises(ConflictError):
        store.update_entity(entity, mode="replace", etag='W/"1"')
    assert store.update_entity(entity, etag="*").etag == 'W/"3"'


def test_upsert_entity_modes() -> None:
    client = FakeTableClient()
    client.expect("upsert_entity", {"mode": UpdateMode.REPLACE}, response={"etag": "a"})
    client.expect("upsert_entity", {"mode": UpdateMode.MERGE}, response={"etag": "b"})

    store = AzureTableRowStore(client)
    assert store.upsert_entity(Entity(partition_key="p", row_key="r")).etag == "a"
    assert store.upsert_entity(Entity(partition_key="p", row_key="r"), mode="merge").etag == "b"


def test_delete_entity_detects_missing_rows_from_status() -> None:
    client = FakeTableClient()
    client.expect("delete_entity", {"partition_key": "p", "row_key": "r"}, status=404)
    client.expect("delete_entity", {"etag": "e"}, status=204)
    client.expect("delete_entity", error=ResourceModifiedError(message="stale"))

    store = AzureTableRowStore(client)
    with pytest.raises(NotFoundError):
        store.delete_entity("p", "r")
    store.delete_entity("p", "r", etag="e")
    with pytest.raises(ConflictError):
        store.delete_entity("p", "r", etag="e")


def test_query_entities() -> None:
    client = FakeTableClient()
    client.expect(
        "query_entities",
        {
            "query_filter": "PartitionKey eq @pk",
            "parameters": {"pk": "dict1"},
            "select": ["PartitionKey", "RowKey"],
        },
        response=[
            FakeTableEntity({"PartitionKey": "dict1", "RowKey": "a"}, metadata={"etag": "1"}),
            FakeTableEntity({"PartitionKey": "dict1", "RowKey": "b"}, metadata={"etag": "2"}),
        ],
    )
    client.expect("list_entities", {"select": None}, response=[])
    client.expect("query_entities", error=HttpResponseError(message="throttled"))

    store = AzureTableRowStore(client)
    rows = list(store.query_entities("dict1", select=["RowKey"]))
    assert [(e.row_key, e.etag) for e in rows] == [("a", "1"), ("b", "2")]
    assert list(store.query_entities()) == []
    with pytest.raises(StoreError):
        list(store.query_entities("dict1"))


def test_submit_batch_translates_operations() -> None:
    ops = [
        TableOperation.insert(Entity(partition_key="p", row_key="1")),
        TableOperation.insert_or_merge(Entity(partition_key="p", row_key="2")),
        TableOperation.replace(Entity(partition_key="p", row_key="3"), etag="e3"),
        TableOperation.delete("p", "4"),
    ]
    assert to_transaction(ops) == [
        ("create", {"PartitionKey": "p", "RowKey": "1"}),
        ("upsert", {"PartitionKey": "p", "RowKey": "2"}, {"mode": UpdateMode.MERGE}),
        (
            "update",
            {"PartitionKey": "p", "RowKey": "3"},
            {"mode": UpdateMode.REPLACE, "etag": "e3", "match_condition": MatchConditions.IfNotModified},
        ),
        ("delete", {"PartitionKey": "p", "RowKey": "4"}, {}),
    ]

    failure = HttpResponseError(message="condition not met")
    failure.status_code = 412
    failure.index = 2  # type: ignore[attr-defined]

    client = FakeTableClient()
    client.expect(
        "submit_transaction",
        {"operations": ANY},
        response=[{"etag": "1"}, {"etag": "2"}, {"etag": "3"}, {}],
    )
    client.expect("submit_transaction", error=failure)

    store = AzureTableRowStore(client)
    results = store.submit_batch(ops)
    assert [r.etag for r in results] == ["1", "2", "3", None]

    with pytest.raises(BatchFailedError) as excinfo:
        store.submit_batch(ops)
    assert excinfo.value.index == 2
    assert isinstance(excinfo.value.cause, ConflictError)


def test_create_if_not_exists_ignores_existing_table() -> None:
    client = FakeTableClient()
    client.expect("create_table", response=None)
    client.expect("create_table", error=ResourceExistsError(message="exists"))

    store = AzureTableRowStore(client)
    store.create_if_not_exists()
    store.create_if_not_exists()
    client.assert_no_pending()


def test_from_config() -> None:
    with pytest.raises(ValidationError, match="connection_string"):
        AzureTableRowStore.from_config(StoreConfig(backend="azure"))

    store = AzureTableRowStore.from_config(
        StoreConfig(backend="azure", table_name="Settings", connection_string=_AZURITE)
    )
    assert store.client.table_name == "Settings"
    assert store.table_url.endswith("/Settings")


def test_table_dictionary_over_azure_store() -> None:
    client = FakeTableClient()
    client.expect(
        "upsert_entity",
        {
            "entity": {"PartitionKey": "dict1", "RowKey": "k", "Value": _value("v")},
            "mode": UpdateMode.REPLACE,
        },
        response={"etag": "1"},
    )
    client.expect(
        "get_entity",
        response=FakeTableEntity(
            {"PartitionKey": "dict1", "RowKey": "k", "Value": "v"}, metadata={"etag": "1"}
        ),
    )
    client.expect("delete_entity", status=204)
    client.expect("delete_entity", status=404)

    d = TableDictionary(AzureTableRowStore(client), "dict1")
    d["k"] = "v"
    assert d["k"] == "v"
    assert d.remove("k") is True
    assert d.remove("k") is False
    client.assert_no_pending()


def test_dictionary_key_reads_over_projected_rows() -> None:
    projection = ["PartitionKey", "RowKey", "ExpiresAt"]
    live = FakeTableEntity({"PartitionKey": "dict1", "RowKey": "a"}, metadata={"etag": "1"})
    expired = FakeTableEntity(
        {"PartitionKey": "dict1", "RowKey": "b", "ExpiresAt": _WHEN}, metadata={"etag": "2"}
    )
    client = FakeTableClient()
    client.expect(
        "query_entities", {"parameters": {"pk": "dict1"}, "select": projection}, response=[live, expired]
    )
    client.expect("query_entities", {"select": projection}, response=[live, expired])
    client.expect("get_entity", {"row_key": "a", "select": projection}, response=live)
    client.expect("get_entity", {"row_key": "b", "select": projection}, response=expired)
    client.expect(
        "query_entities",
        {"select": ["PartitionKey", "RowKey"]},
        response=[FakeTableEntity({"PartitionKey": "dict1", "RowKey": "b"})],
    )

    d = TableDictionary(AzureTableRowStore(client), "dict1", now=FakeClock(_WHEN.timestamp() + 60))
    assert list(d.keys()) == ["a"]
    assert len(d) == 1
    assert d.contains_key("a") is True
    assert d.contains_key("b") is False
    assert d.exists() is True
    client.assert_no_pending()


class _AsyncTableClient:
    """Awaitable facade over ``FakeTableClient`` shaped like the aio client."""

    def __init__(self, inner: FakeTableClient) -> None:
        self._inner = inner
        self.table_name = inner.table_name
        self.url = inner.url
        self.closed = False

    def __getattr__(self, name: str) -> Any:
        method = getattr(self._inner, name)

        async def call(*args: Any, **kwargs: Any) -> Any:
            return method(*args, **kwargs)

        return call

    def query_entities(self, *args: Any, **kwargs: Any) -> AsyncIterator[Any]:
        return _aiter(self._inner.query_entities(*args, **kwargs))

    async def close(self) -> None:
        self.closed = True


async def _aiter(items: Iterable[Any]) -> AsyncIterator[Any]:
    for item in items:
        yield item


def test_async_azure_store() -> None:
    inner = FakeTableClient()
    inner.expect("create_entity", response={"etag": "1"})
    inner.expect("get_entity", error=ResourceNotFoundError(message="missing"))
    inner.expect(
        "query_entities",
        response=[
            FakeTableEntity({"PartitionKey": "p", "RowKey": "a", "Value": "x"}, metadata={"etag": "1"})
        ],
    )
    inner.expect("delete_entity", status=404)
    inner.expect("submit_transaction", response=[{"etag": "2"}])

    client = _AsyncTableClient(inner)
    store = AsyncAzureTableRowStore(client)  # type: ignore[arg-type]

    async def scenario() -> None:
        assert (await store.insert_entity(Entity(partition_key="p", row_key="a"))).etag == "1"
        with pytest.raises(NotFoundError):
            await store.get_entity("p", "b")
        assert [e.row_key async for e in store.query_entities("p")] == ["a"]
        with pytest.raises(NotFoundError):
            await store.delete_entity("p", "b")
        put = TableOperation.insert_or_replace(Entity(partition_key="p", row_key="c"))
        results = await store.submit_batch([put])
        assert results[0].etag == "2"
        await store.close()

    asyncio.run(scenario())
    assert client.closed is True
    inner.assert_no_pending()
