from __future__ import annotations

import asyncio

import pytest

from tabledict_py import TableDictionary
from tabledict_py.config import StoreConfig
from tabledict_py.errors import NotFoundError
from tabledict_py.memory import AsyncMemoryRowStore, MemoryRowStore
from tabledict_py.mocks import FakeDynamoDBClient
from tabledict_py.runtime import StoreCallMetric, create_row_store, instrument_row_store
from tabledict_py.store import Entity


def test_instrument_row_store_records_calls() -> None:
    metrics: list[StoreCallMetric] = []
    store = instrument_row_store(MemoryRowStore("t"), on_call=metrics.append)

    d = TableDictionary(store, "dict1")
    d["k"] = "v"
    assert d["k"] == "v"
    assert d.remove("k") is True
    assert d.remove("k") is False

    assert [(m.operation, m.ok) for m in metrics] == [
        ("upsert_entity", True),
        ("get_entity", True),
        ("delete_entity", True),
        ("delete_entity", False),
    ]
    assert all(m.seconds >= 0 for m in metrics)
    assert store.table_url == "memory://t"
    assert store.table_name == "t"


def test_instrumented_enumeration_reports_once_at_exhaustion() -> None:
    metrics: list[StoreCallMetric] = []
    inner = MemoryRowStore()
    inner.insert_entity(Entity(partition_key="p", row_key="1"))
    inner.insert_entity(Entity(partition_key="p", row_key="2"))
    store = instrument_row_store(inner, on_call=metrics.append)

    rows = store.query_entities("p")
    assert metrics == []
    assert [e.row_key for e in rows] == ["1", "2"]
    assert [m.operation for m in metrics] == ["query_entities"]


def test_instrument_async_row_store() -> None:
    metrics: list[StoreCallMetric] = []
    store = instrument_row_store(AsyncMemoryRowStore(), on_call=metrics.append)

    async def scenario() -> list[str]:
        await store.insert_entity(Entity(partition_key="p", row_key="1"))
        with pytest.raises(NotFoundError):
            await store.get_entity("p", "missing")
        return [e.row_key async for e in store.query_entities("p")]

    assert asyncio.run(scenario()) == ["1"]
    assert [(m.operation, m.ok) for m in metrics] == [
        ("insert_entity", True),
        ("get_entity", False),
        ("query_entities", True),
    ]


def test_create_row_store_memory_backend() -> None:
    metrics: list[StoreCallMetric] = []
    store = create_row_store(StoreConfig(table_name="settings"), metrics=metrics.append)

    TableDictionary(store, "dict1")["k"] = 1
    assert store.table_url == "memory://settings"
    assert len(metrics) == 1


def test_create_row_store_dynamodb_backend_uses_session() -> None:
    client = FakeDynamoDBClient()

    class FakeSession:
        def __init__(self) -> None:
            self.kwargs: dict[str, object] = {}

        def client(self, service_name: str, **kwargs: object) -> object:
            assert service_name == "dynamodb"
            self.kwargs = kwargs
            return client

    session = FakeSession()
    config = StoreConfig(
        backend="dynamodb", table_name="Settings", endpoint="http://localhost:8000", region="us-east-1"
    )
    store = create_row_store(config, session=session)

    assert store.table_url == "dynamodb://local/Settings"
    assert session.kwargs["endpoint_url"] == "http://localhost:8000"
    assert session.kwargs["region_name"] == "us-east-1"
    assert session.kwargs["config"].read_timeout == 3.0
