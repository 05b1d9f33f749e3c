from __future__ import annotations

import itertools
import threading
from collections.abc import AsyncIterator, Callable, Iterator, Mapping, Sequence
from dataclasses import replace
from datetime import UTC, datetime

from .batch import MaxBatchSize
from .codec import EntityProperty
from .errors import BatchFailedError, ConflictError, NotFoundError, TabledictError, ValidationError
from .store import WILDCARD_ETAG, Entity, OperationResult, TableOperation, UpdateMode

type _Rows = dict[tuple[str, str], Entity]


class MemoryRowStore:
    """Row store kept in process memory.

    Honours the store contract the dictionary relies on: per-row version
    tokens, lexicographic ``(PartitionKey, RowKey)`` ordering, and atomic
    single-partition batches.
    """

    def __init__(
        self,
        table_name: str = "memory",
        *,
        now: Callable[[], datetime] | None = None,
        max_batch_size: int = MaxBatchSize,
    ) -> None:
        self._table_name = table_name
        self._now = now or (lambda: datetime.now(UTC))
        self._max_batch_size = max_batch_size
        self._rows: _Rows = {}
        self._versions = itertools.count(1)
        self._lock = threading.Lock()

    @property
    def table_name(self) -> str:
        return self._table_name

    @property
    def table_url(self) -> str:
        return f"memory://{self._table_name}"

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)

    def get_entity(self, partition_key: str, row_key: str, *, select: Sequence[str] | None = None) -> Entity:
        with self._lock:
            entity = self._rows.get((partition_key, row_key))
        if entity is None:
            raise NotFoundError(f"entity not found: {partition_key!r}/{row_key!r}")
        return _project(entity, select)

    def insert_entity(self, entity: Entity) -> Entity:
        return self._apply_one(TableOperation.insert(entity))

    def upsert_entity(self, entity: Entity, *, mode: UpdateMode = "replace") -> Entity:
        kind = "insert_or_merge" if mode == "merge" else "insert_or_replace"
        return self._apply_one(TableOperation(kind=kind, entity=entity))

    def update_entity(self, entity: Entity, *, mode: UpdateMode = "merge", etag: str | None = None) -> Entity:
        kind = "merge" if mode == "merge" else "replace"
        return self._apply_one(TableOperation(kind=kind, entity=entity, etag=etag))

    def delete_entity(self, partition_key: str, row_key: str, *, etag: str | None = None) -> None:
        self._apply_one(TableOperation.delete(partition_key, row_key, etag=etag))

    def query_entities(
        self, partition_key: str | None = None, *, select: Sequence[str] | None = None
    ) -> Iterator[Entity]:
        with self._lock:
            keys = sorted(k for k in self._rows if partition_key is None or k[0] == partition_key)

        for key in keys:
            with self._lock:
                entity = self._rows.get(key)
            if entity is not None:
                yield _project(entity, select)

    def submit_batch(self, operations: Sequence[TableOperation]) -> list[OperationResult]:
        _validate_batch(operations, self._max_batch_size)

        with self._lock:
            staged: _Rows = dict(self._rows)
            results: list[OperationResult] = []
            for i, op in enumerate(operations):
                try:
                    written = self._apply(staged, op)
                except TabledictError as err:
                    raise BatchFailedError(
                        message=f"batch operation {i} failed: {err}", index=i, cause=err
                    ) from err
                results.append(OperationResult(operation=op, etag=written.etag if written else None))
            self._rows = staged
        return results

    def _apply_one(self, op: TableOperation) -> Entity:
        with self._lock:
            written = self._apply(self._rows, op)
        if written is None:
            return op.entity
        return written

    def _apply(self, rows: _Rows, op: TableOperation) -> Entity | None:
        key = (op.partition_key, op.row_key)
        current = rows.get(key)

        if op.kind == "delete":
            _check_version(current, op, key)
            del rows[key]
            return None

        if op.kind == "insert" and current is not None:
            raise ConflictError(f"entity already exists: {key[0]!r}/{key[1]!r}")
        if op.kind in {"merge", "replace"}:
            _check_version(current, op, key)

        properties: dict[str, EntityProperty] = {}
        if current is not None and op.kind in {"merge", "insert_or_merge"}:
            properties.update(current.properties)
        properties.update(op.entity.properties)

        written = Entity(
            partition_key=key[0],
            row_key=key[1],
            properties=properties,
            etag=f'W/"{next(self._versions)}"',
            timestamp=self._now(),
        )
        rows[key] = written
        return written


class AsyncMemoryRowStore:
    """Awaitable view over a ``MemoryRowStore``; both views share the same rows."""

    def __init__(self, store: MemoryRowStore | None = None) -> None:
        self._store = store or MemoryRowStore()

    @property
    def sync_store(self) -> MemoryRowStore:
        return self._store

    @property
    def table_url(self) -> str:
        return self._store.table_url

    async def get_entity(
        self, partition_key: str, row_key: str, *, select: Sequence[str] | None = None
    ) -> Entity:
        return self._store.get_entity(partition_key, row_key, select=select)

    async def insert_entity(self, entity: Entity) -> Entity:
        return self._store.insert_entity(entity)

    async def upsert_entity(self, entity: Entity, *, mode: UpdateMode = "replace") -> Entity:
        return self._store.upsert_entity(entity, mode=mode)

    async def update_entity(
        self, entity: Entity, *, mode: UpdateMode = "merge", etag: str | None = None
    ) -> Entity:
        return self._store.update_entity(entity, mode=mode, etag=etag)

    async def delete_entity(self, partition_key: str, row_key: str, *, etag: str | None = None) -> None:
        self._store.delete_entity(partition_key, row_key, etag=etag)

    async def query_entities(
        self, partition_key: str | None = None, *, select: Sequence[str] | None = None
    ) -> AsyncIterator[Entity]:
        for entity in self._store.query_entities(partition_key, select=select):
            yield entity

    async def submit_batch(self, operations: Sequence[TableOperation]) -> list[OperationResult]:
        return self._store.submit_batch(operations)


def _check_version(current: Entity | None, op: TableOperation, key: tuple[str, str]) -> None:
    if current is None:
        raise NotFoundError(f"entity not found: {key[0]!r}/{key[1]!r}")
    if op.etag is not None and op.etag != WILDCARD_ETAG and op.etag != current.etag:
        raise ConflictError(f"etag mismatch: {key[0]!r}/{key[1]!r}")


def _project(entity: Entity, select: Sequence[str] | None) -> Entity:
    if select is None:
        return entity
    wanted = set(select)
    properties: Mapping[str, EntityProperty] = {
        name: prop for name, prop in entity.properties.items() if name in wanted
    }
    return replace(entity, properties=properties)


def _validate_batch(operations: Sequence[TableOperation], max_batch_size: int) -> None:
    if not operations:
        raise ValidationError("batch must contain at least one operation")
    if len(operations) > max_batch_size:
        raise ValidationError(f"a batch supports at most {max_batch_size} operations")

    partition_keys = {op.partition_key for op in operations}
    if len(partition_keys) != 1:
        raise ValidationError("all operations in a batch must share one partition key")

    row_keys = [op.row_key for op in operations]
    if len(set(row_keys)) != len(row_keys):
        raise ValidationError("a batch may touch each row only once")
