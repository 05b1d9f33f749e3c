from __future__ import annotations

from collections.abc import AsyncIterator, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Protocol, runtime_checkable

from .codec import EntityProperty

type UpdateMode = Literal["replace", "merge"]

type OperationKind = Literal[
    "insert",
    "insert_or_replace",
    "insert_or_merge",
    "merge",
    "replace",
    "delete",
]

WILDCARD_ETAG = "*"


@dataclass(frozen=True)
class Entity:
    partition_key: str
    row_key: str
    properties: Mapping[str, EntityProperty] = field(default_factory=dict)
    etag: str | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True)
class TableOperation:
    kind: OperationKind
    entity: Entity
    etag: str | None = None

    @property
    def partition_key(self) -> str:
        return self.entity.partition_key

    @property
    def row_key(self) -> str:
        return self.entity.row_key

    @staticmethod
    def insert(entity: Entity) -> TableOperation:
        return TableOperation(kind="insert", entity=entity)

    @staticmethod
    def insert_or_replace(entity: Entity) -> TableOperation:
        return TableOperation(kind="insert_or_replace", entity=entity)

    @staticmethod
    def insert_or_merge(entity: Entity) -> TableOperation:
        return TableOperation(kind="insert_or_merge", entity=entity)

    @staticmethod
    def merge(entity: Entity, *, etag: str | None = None) -> TableOperation:
        return TableOperation(kind="merge", entity=entity, etag=etag)

    @staticmethod
    def replace(entity: Entity, *, etag: str | None = None) -> TableOperation:
        return TableOperation(kind="replace", entity=entity, etag=etag)

    @staticmethod
    def delete(partition_key: str, row_key: str, *, etag: str | None = None) -> TableOperation:
        return TableOperation(kind="delete", entity=Entity(partition_key, row_key), etag=etag)


@dataclass(frozen=True)
class OperationResult:
    operation: TableOperation
    etag: str | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@runtime_checkable
class RowStore(Protocol):
    """Blocking capability consumed by the dictionary and the entity table.

    ``get_entity``, ``update_entity`` and ``delete_entity`` raise
    ``NotFoundError`` for a missing row; version mismatches raise
    ``ConflictError``. ``submit_batch`` applies a single-partition group
    atomically and raises ``BatchFailedError`` naming the failing operation.
    """

    @property
    def table_url(self) -> str: ...

    def get_entity(
        self, partition_key: str, row_key: str, *, select: Sequence[str] | None = None
    ) -> Entity: ...

    def insert_entity(self, entity: Entity) -> Entity: ...

    def upsert_entity(self, entity: Entity, *, mode: UpdateMode = "replace") -> Entity: ...

    def update_entity(
        self, entity: Entity, *, mode: UpdateMode = "merge", etag: str | None = None
    ) -> Entity: ...

    def delete_entity(self, partition_key: str, row_key: str, *, etag: str | None = None) -> None: ...

    def query_entities(
        self, partition_key: str | None = None, *, select: Sequence[str] | None = None
    ) -> Iterator[Entity]: ...

    def submit_batch(self, operations: Sequence[TableOperation]) -> list[OperationResult]: ...


@runtime_checkable
class AsyncRowStore(Protocol):
    @property
    def table_url(self) -> str: ...

    async def get_entity(
        self, partition_key: str, row_key: str, *, select: Sequence[str] | None = None
    ) -> Entity: ...

    async def insert_entity(self, entity: Entity) -> Entity: ...

    async def upsert_entity(self, entity: Entity, *, mode: UpdateMode = "replace") -> Entity: ...

    async def update_entity(
        self, entity: Entity, *, mode: UpdateMode = "merge", etag: str | None = None
    ) -> Entity: ...

    async def delete_entity(self, partition_key: str, row_key: str, *, etag: str | None = None) -> None: ...

    def query_entities(
        self, partition_key: str | None = None, *, select: Sequence[str] | None = None
    ) -> AsyncIterator[Entity]: ...

    async def submit_batch(self, operations: Sequence[TableOperation]) -> list[OperationResult]: ...
