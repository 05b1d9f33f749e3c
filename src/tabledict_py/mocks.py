from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any

type RequestCheck = Mapping[str, Any] | Callable[[Mapping[str, Any]], None]


class _AnySentinel:
    def __repr__(self) -> str:  # pragma: no cover
        return "ANY"


ANY: Any = _AnySentinel()


def _assert_match(expected: Any, actual: Any, *, path: str) -> None:
    """Match ``actual`` against ``expected``; mappings match as subsets, sequences exactly."""
    if expected is ANY:
        return

    if isinstance(expected, Mapping):
        if not isinstance(actual, Mapping):
            raise AssertionError(f"{path}: expected mapping, got {type(actual).__name__}")
        for key, want in expected.items():
            if key not in actual:
                raise AssertionError(f"{path}: missing key {key!r}")
            _assert_match(want, actual[key], path=f"{path}.{key}")
        return

    if isinstance(expected, list):
        if not isinstance(actual, (list, tuple)):
            raise AssertionError(f"{path}: expected sequence, got {type(actual).__name__}")
        if len(expected) != len(actual):
            raise AssertionError(f"{path}: expected {len(expected)} items, got {len(actual)}")
        for i, (want, got) in enumerate(zip(expected, actual, strict=True)):
            _assert_match(want, got, path=f"{path}[{i}]")
        return

    if expected != actual:
        raise AssertionError(f"{path}: expected {expected!r}, got {actual!r}")


@dataclass(frozen=True)
class Expectation:
    method: str
    check: RequestCheck | None = None
    response: Any = None
    error: Exception | None = None
    status: int | None = None


class _ExpectationClient:
    """Base for fake SDK clients that replay queued expectations in order."""

    def __init__(self) -> None:
        self._pending: list[Expectation] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def expect(
        self,
        method: str,
        check: RequestCheck | None = None,
        *,
        response: Any = None,
        error: Exception | None = None,
        status: int | None = None,
    ) -> None:
        self._pending.append(
            Expectation(method=method, check=check, response=response, error=error, status=status)
        )

    def assert_no_pending(self) -> None:
        if self._pending:
            raise AssertionError(f"pending expected calls: {[e.method for e in self._pending]!r}")

    def _take(self, method: str, req: dict[str, Any]) -> Expectation:
        self.calls.append((method, dict(req)))
        if not self._pending:
            raise AssertionError(f"unexpected call: {method}")

        expectation = self._pending.pop(0)
        if expectation.method != method:
            raise AssertionError(f"expected {expectation.method}, got {method}")

        if callable(expectation.check):
            expectation.check(req)
        elif expectation.check is not None:
            _assert_match(expectation.check, req, path=method)
        return expectation


class FakeTableEntity(dict[str, Any]):
    """Dict with the ``metadata`` attribute carried by ``azure.data.tables.TableEntity``."""

    def __init__(self, *args: Any, metadata: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.metadata: dict[str, Any] = dict(metadata or {})


class FakeTableClient(_ExpectationClient):
    """Stand-in for ``azure.data.tables.TableClient`` driven by expectations.

    ``status`` on an expectation is reported through ``raw_response_hook``,
    the way the SDK reports the HTTP status of a delete.
    """

    def __init__(self, table_name: str = "dictionaries", *, account: str = "devstoreaccount1") -> None:
        super().__init__()
        self.table_name = table_name
        self.url = f"https://{account}.table.core.windows.net/{table_name}"

    def _reply(self, method: str, req: dict[str, Any]) -> Any:
        expectation = self._take(method, req)
        hook = req.get("raw_response_hook")
        if expectation.status is not None and hook is not None:
            hook(SimpleNamespace(http_response=SimpleNamespace(status_code=expectation.status)))
        if expectation.error is not None:
            raise expectation.error
        return expectation.response

    def create_table(self, **kwargs: Any) -> Any:
        return self._reply("create_table", kwargs)

    def get_entity(self, partition_key: str, row_key: str, **kwargs: Any) -> Any:
        return self._reply("get_entity", {"partition_key": partition_key, "row_key": row_key, **kwargs})

    def create_entity(self, entity: Mapping[str, Any], **kwargs: Any) -> Any:
        return self._reply("create_entity", {"entity": entity, **kwargs})

    def upsert_entity(self, entity: Mapping[str, Any], **kwargs: Any) -> Any:
        return self._reply("upsert_entity", {"entity": entity, **kwargs})

    def update_entity(self, entity: Mapping[str, Any], **kwargs: Any) -> Any:
        return self._reply("update_entity", {"entity": entity, **kwargs})

    def delete_entity(self, partition_key: str, row_key: str, **kwargs: Any) -> Any:
        return self._reply("delete_entity", {"partition_key": partition_key, "row_key": row_key, **kwargs})

    def query_entities(self, query_filter: str, **kwargs: Any) -> Any:
        return iter(self._reply("query_entities", {"query_filter": query_filter, **kwargs}) or [])

    def list_entities(self, **kwargs: Any) -> Any:
        return iter(self._reply("list_entities", kwargs) or [])

    def submit_transaction(self, operations: Any, **kwargs: Any) -> Any:
        return self._reply("submit_transaction", {"operations": list(operations), **kwargs})


def _dynamodb_operation(method: str) -> Callable[..., Mapping[str, Any]]:
    def call(self: FakeDynamoDBClient, **kwargs: Any) -> Mapping[str, Any]:
        expectation = self._take(method, kwargs)
        if expectation.error is not None:
            raise expectation.error
        return dict(expectation.response or {})

    call.__name__ = method
    return call


class FakeDynamoDBClient(_ExpectationClient):
    """Keyword-only stand-in for a boto3 DynamoDB client; responses default to ``{}``."""

    def __init__(self, *, region_name: str | None = None) -> None:
        super().__init__()
        self.meta = SimpleNamespace(region_name=region_name)

    put_item = _dynamodb_operation("put_item")
    get_item = _dynamodb_operation("get_item")
    update_item = _dynamodb_operation("update_item")
    delete_item = _dynamodb_operation("delete_item")
    query = _dynamodb_operation("query")
    scan = _dynamodb_operation("scan")
    transact_write_items = _dynamodb_operation("transact_write_items")
    create_table = _dynamodb_operation("create_table")
    describe_table = _dynamodb_operation("describe_table")
