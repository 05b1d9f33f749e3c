from __future__ import annotations

import inspect
import time
from collections.abc import AsyncIterator, Callable, Iterator
from dataclasses import dataclass
from typing import Any

from .config import StoreConfig
from .store import RowStore

_STORE_OPERATIONS = frozenset(
    {
        "get_entity",
        "insert_entity",
        "upsert_entity",
        "update_entity",
        "delete_entity",
        "query_entities",
        "submit_batch",
    }
)


@dataclass(frozen=True)
class StoreCallMetric:
    operation: str
    seconds: float
    ok: bool


class _InstrumentedStore:
    def __init__(self, store: Any, on_call: Callable[[StoreCallMetric], None]) -> None:
        self._store = store
        self._on_call = on_call

    @property
    def table_url(self) -> str:
        return self._store.table_url

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._store, name)
        if name not in _STORE_OPERATIONS:
            return attr

        if name == "query_entities":
            if inspect.isasyncgenfunction(attr):
                return self._wrap_async_iter(name, attr)
            return self._wrap_iter(name, attr)
        if inspect.iscoroutinefunction(attr):
            return self._wrap_async(name, attr)
        return self._wrap(name, attr)

    def _emit(self, name: str, start: float, ok: bool) -> None:
        self._on_call(StoreCallMetric(operation=name, seconds=time.monotonic() - start, ok=ok))

    def _wrap(self, name: str, attr: Callable[..., Any]) -> Callable[..., Any]:
        def wrapped(*args: Any, **kwargs: Any) -> Any:
            start = time.monotonic()
            try:
                out = attr(*args, **kwargs)
            except Exception:
                self._emit(name, start, False)
                raise
            self._emit(name, start, True)
            return out

        return wrapped

    def _wrap_async(self, name: str, attr: Callable[..., Any]) -> Callable[..., Any]:
        async def wrapped(*args: Any, **kwargs: Any) -> Any:
            start = time.monotonic()
            try:
                out = await attr(*args, **kwargs)
            except Exception:
                self._emit(name, start, False)
                raise
            self._emit(name, start, True)
            return out

        return wrapped

    def _wrap_iter(self, name: str, attr: Callable[..., Iterator[Any]]) -> Callable[..., Iterator[Any]]:
        def wrapped(*args: Any, **kwargs: Any) -> Iterator[Any]:
            start = time.monotonic()
            try:
                yield from attr(*args, **kwargs)
            except Exception:
                self._emit(name, start, False)
                raise
            self._emit(name, start, True)

        return wrapped

    def _wrap_async_iter(
        self, name: str, attr: Callable[..., AsyncIterator[Any]]
    ) -> Callable[..., AsyncIterator[Any]]:
        async def wrapped(*args: Any, **kwargs: Any) -> AsyncIterator[Any]:
            start = time.monotonic()
            try:
                async for item in attr(*args, **kwargs):
                    yield item
            except Exception:
                self._emit(name, start, False)
                raise
            self._emit(name, start, True)

        return wrapped


def instrument_row_store(store: Any, *, on_call: Callable[[StoreCallMetric], None]) -> Any:
    """Wrap a sync or async row store so every store call reports a ``StoreCallMetric``.

    Enumerations report once, when the consumer exhausts the iterator or it fails.
    """
    return _InstrumentedStore(store, on_call)


def create_row_store(
    config: StoreConfig,
    *,
    metrics: Callable[[StoreCallMetric], None] | None = None,
    session: Any | None = None,
) -> RowStore:
    if config.backend == "azure":
        from .azure_store import AzureTableRowStore

        store: Any = AzureTableRowStore.from_config(config)
    elif config.backend == "dynamodb":
        from .dynamodb_store import DynamoRowStore

        store = DynamoRowStore.from_config(config, session=session)
    else:
        from .memory import MemoryRowStore

        store = MemoryRowStore(config.table_name)

    if metrics is not None:
        store = instrument_row_store(store, on_call=metrics)
    return store
