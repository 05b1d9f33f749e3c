from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import (
    AsyncIterator,
    Awaitable,
    Callable,
    ItemsView,
    Iterable,
    Iterator,
    KeysView,
    Mapping,
    MutableMapping,
    Sequence,
    ValuesView,
)
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from .batch import asubmit_grouped, submit_grouped
from .codec import EdmType, EntityProperty, as_utc, check_entity_size, decode_value, encode_value, is_leaf
from .errors import (
    ConflictError,
    KeyExistsError,
    KeyNotFoundError,
    NotFoundError,
    TabledictError,
    ValidationError,
)
from .store import AsyncRowStore, Entity, OperationResult, RowStore, TableOperation
from .validation import validate_dictionary_name, validate_key

logger = logging.getLogger(__name__)

EXPIRES_AT_PROPERTY = "ExpiresAt"

_KEY_PROJECTION = ("RowKey", EXPIRES_AT_PROPERTY)

type TimeToLive = float | int | timedelta


@dataclass(frozen=True)
class DictionaryEntry:
    dictionary_name: str
    key: str
    value: Any
    expires_at: datetime | None = None
    etag: str | None = None


class TableDictionary(MutableMapping[str, Any]):
    """A string-keyed mapping stored as one partition of a row-store table.

    Every entry is a row whose PartitionKey is the dictionary name and whose
    RowKey is the (optionally lower-cased) key. Entries written with a TTL
    carry an ``ExpiresAt`` timestamp and are treated as absent once ``now``
    passes it; expired rows stay in the table until ``remove``, ``clear`` or
    ``purge_expired`` deletes them.

    ``add_or_update`` is an unconditional insert-or-replace, so concurrent
    writers to one key resolve as last-writer-wins. Use ``add``,
    ``remove_item`` or ``EntityTable`` when a version check is needed.

    The instance holds no mutable state of its own and may be shared across
    threads.
    """

    def __init__(
        self,
        store: RowStore,
        dictionary_name: str,
        *,
        ignore_case: bool = False,
        now: Callable[[], float] | None = None,
        async_store: AsyncRowStore | None = None,
    ) -> None:
        if store is None:
            raise ValidationError("store is required")
        validate_dictionary_name(dictionary_name)

        self._store = store
        self._async_store = async_store
        self._dictionary_name = dictionary_name
        self._ignore_case = ignore_case
        self._now = now or time.time

    @property
    def dictionary_name(self) -> str:
        return self._dictionary_name

    @property
    def ignore_case(self) -> bool:
        return self._ignore_case

    @property
    def is_read_only(self) -> bool:
        return False

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TableDictionary):
            return NotImplemented
        return self._identity() == other._identity()

    def __hash__(self) -> int:
        return hash(self._identity())

    def __repr__(self) -> str:
        return (
            f"TableDictionary(table_url={self._store.table_url!r}, "
            f"dictionary_name={self._dictionary_name!r}, ignore_case={self._ignore_case!r})"
        )

    # Mapping protocol

    def __getitem__(self, key: str) -> Any:
        return self.get_value(key)

    def __setitem__(self, key: str, value: Any) -> None:
        self.add_or_update(key, value)

    def __delitem__(self, key: str) -> None:
        if not self.remove(key):
            raise KeyNotFoundError(key)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        return self.contains_key(key)

    def __iter__(self) -> Iterator[str]:
        return self._iter_keys()

    def __len__(self) -> int:
        return self.count()

    def keys(self) -> DictionaryKeysView:
        return DictionaryKeysView(self)

    def values(self) -> DictionaryValuesView:
        return DictionaryValuesView(self)

    def items(self) -> DictionaryItemsView:
        return DictionaryItemsView(self)

    # Blocking operations

    def get_value(self, key: str, value_type: Any = None) -> Any:
        entity = self._read_live(self._row_key(key))
        if entity is None:
            raise KeyNotFoundError(key)
        return decode_value(entity.properties, value_type)

    def try_get_value(self, key: str, value_type: Any = None) -> tuple[Any, bool]:
        entity = self._read_live(self._row_key(key))
        if entity is None:
            return None, False
        return decode_value(entity.properties, value_type), True

    def get_entry(self, key: str, value_type: Any = None) -> DictionaryEntry:
        entity = self._read_live(self._row_key(key))
        if entity is None:
            raise KeyNotFoundError(key)
        return self._entry(entity, value_type)

    def add_or_update(self, key: str, value: Any, ttl: TimeToLive | None = None) -> None:
        entity = self._build_entity(self._row_key(key), value, ttl)
        logger.debug("upsert: dictionary=%r key=%r", self._dictionary_name, entity.row_key)
        self._store.upsert_entity(entity, mode="replace")

    def add(self, key: str, value: Any, ttl: TimeToLive | None = None) -> None:
        entity = self._build_entity(self._row_key(key), value, ttl)
        current = self._read(entity.row_key)

        if current is not None:
            if not self._is_expired(current):
                raise KeyExistsError(key)
            try:
                self._store.update_entity(entity, mode="replace", etag=current.etag)
                return
            except ConflictError as err:
                raise KeyExistsError(key) from err
            except NotFoundError:
                pass

        try:
            self._store.insert_entity(entity)
        except ConflictError as err:
            raise KeyExistsError(key) from err

    def remove(self, key: str) -> bool:
        row_key = self._row_key(key)
        logger.debug("delete: dictionary=%r key=%r", self._dictionary_name, row_key)
        try:
            self._store.delete_entity(self._dictionary_name, row_key)
        except NotFoundError:
            return False
        return True

    def remove_item(self, key: str, value: Any) -> bool:
        """Remove ``key`` only while its live value equals ``value``.

        The delete is conditioned on the version token read alongside the
        value; a concurrent rewrite raises ``ConflictError``.
        """
        row_key = self._row_key(key)
        current = self._read_live(row_key)
        if current is None or not _value_equals(current, value):
            return False

        try:
            self._store.delete_entity(self._dictionary_name, row_key, etag=current.etag)
        except NotFoundError:
            return False
        return True

    def contains_key(self, key: str) -> bool:
        return self._read_live(self._row_key(key), select=_KEY_PROJECTION) is not None

    def contains_item(self, key: str, value: Any) -> bool:
        current = self._read_live(self._row_key(key))
        return current is not None and _value_equals(current, value)

    def count(self) -> int:
        return sum(1 for _ in self._iter_keys())

    def exists(self) -> bool:
        rows = self._store.query_entities(self._dictionary_name, select=("RowKey",))
        return next(iter(rows), None) is not None

    def clear(self) -> None:
        rows = self._store.query_entities(self._dictionary_name, select=("RowKey",))
        ops = [TableOperation.delete(self._dictionary_name, e.row_key) for e in rows]
        results = submit_grouped(self._store.submit_batch, ops)
        self._delete_failed(results)

    def add_or_update_many(
        self,
        items: Mapping[str, Any] | Iterable[tuple[str, Any]],
        ttl: TimeToLive | None = None,
    ) -> list[OperationResult]:
        """Upsert many entries through single-partition batches.

        Every entry is validated and encoded before the first batch is sent.
        Returns one result per entry, in input order; a failed batch marks all
        of its entries as failed because the store rolls the batch back.
        """
        ops = self._upsert_operations(items, ttl)
        return submit_grouped(self._store.submit_batch, ops)

    def purge_expired(self) -> int:
        """Delete expired rows; a row rewritten since the scan is left in place."""
        rows = self._store.query_entities(self._dictionary_name, select=_KEY_PROJECTION)
        ops = [
            TableOperation.delete(self._dictionary_name, e.row_key, etag=e.etag)
            for e in rows
            if self._is_expired(e)
        ]
        results = submit_grouped(self._store.submit_batch, ops)
        purged = sum(1 for r in results if r.ok) + self._delete_failed(results)
        logger.debug("purged %d expired rows from dictionary %r", purged, self._dictionary_name)
        return purged

    # Awaitable operations

    async def aget_value(self, key: str, value_type: Any = None) -> Any:
        entity = await self._aread_live(self._row_key(key))
        if entity is None:
            raise KeyNotFoundError(key)
        return decode_value(entity.properties, value_type)

    async def atry_get_value(self, key: str, value_type: Any = None) -> tuple[Any, bool]:
        entity = await self._aread_live(self._row_key(key))
        if entity is None:
            return None, False
        return decode_value(entity.properties, value_type), True

    async def aget_entry(self, key: str, value_type: Any = None) -> DictionaryEntry:
        entity = await self._aread_live(self._row_key(key))
        if entity is None:
            raise KeyNotFoundError(key)
        return self._entry(entity, value_type)

    async def aadd_or_update(self, key: str, value: Any, ttl: TimeToLive | None = None) -> None:
        entity = self._build_entity(self._row_key(key), value, ttl)
        logger.debug("upsert: dictionary=%r key=%r", self._dictionary_name, entity.row_key)
        await self._acall("upsert_entity", entity, mode="replace")

    async def aadd(self, key: str, value: Any, ttl: TimeToLive | None = None) -> None:
        entity = self._build_entity(self._row_key(key), value, ttl)
        current = await self._aread(entity.row_key)

        if current is not None:
            if not self._is_expired(current):
                raise KeyExistsError(key)
            try:
                await self._acall("update_entity", entity, mode="replace", etag=current.etag)
                return
            except ConflictError as err:
                raise KeyExistsError(key) from err
            except NotFoundError:
                pass

        try:
            await self._acall("insert_entity", entity)
        except ConflictError as err:
            raise KeyExistsError(key) from err

    async def aremove(self, key: str) -> bool:
        row_key = self._row_key(key)
        logger.debug("delete: dictionary=%r key=%r", self._dictionary_name, row_key)
        try:
            await self._acall("delete_entity", self._dictionary_name, row_key)
        except NotFoundError:
            return False
        return True

    async def aremove_item(self, key: str, value: Any) -> bool:
        row_key = self._row_key(key)
        current = await self._aread_live(row_key)
        if current is None or not _value_equals(current, value):
            return False

        try:
            await self._acall("delete_entity", self._dictionary_name, row_key, etag=current.etag)
        except NotFoundError:
            return False
        return True

    async def acontains_key(self, key: str) -> bool:
        return await self._aread_live(self._row_key(key), select=_KEY_PROJECTION) is not None

    async def acontains_item(self, key: str, value: Any) -> bool:
        current = await self._aread_live(self._row_key(key))
        return current is not None and _value_equals(current, value)

    async def akeys(self) -> AsyncIterator[str]:
        async for entity in self._aquery(select=_KEY_PROJECTION):
            if not self._is_expired(entity):
                yield entity.row_key

    async def avalues(self, value_type: Any = None) -> AsyncIterator[Any]:
        async for entity in self._aquery():
            if not self._is_expired(entity):
                yield decode_value(entity.properties, value_type)

    async def aitems(self, value_type: Any = None) -> AsyncIterator[tuple[str, Any]]:
        async for entity in self._aquery():
            if not self._is_expired(entity):
                yield entity.row_key, decode_value(entity.properties, value_type)

    async def acount(self) -> int:
        total = 0
        async for _ in self.akeys():
            total += 1
        return total

    async def aexists(self) -> bool:
        async for _ in self._aquery(select=("RowKey",)):
            return True
        return False

    async def aclear(self) -> None:
        ops = [
            TableOperation.delete(self._dictionary_name, e.row_key)
            async for e in self._aquery(select=("RowKey",))
        ]
        results = await asubmit_grouped(self._asubmit_batch, ops)
        await self._adelete_failed(results)

    async def aadd_or_update_many(
        self,
        items: Mapping[str, Any] | Iterable[tuple[str, Any]],
        ttl: TimeToLive | None = None,
    ) -> list[OperationResult]:
        ops = self._upsert_operations(items, ttl)
        return await asubmit_grouped(self._asubmit_batch, ops)

    async def apurge_expired(self) -> int:
        ops = [
            TableOperation.delete(self._dictionary_name, e.row_key, etag=e.etag)
            async for e in self._aquery(select=_KEY_PROJECTION)
            if self._is_expired(e)
        ]
        results = await asubmit_grouped(self._asubmit_batch, ops)
        return sum(1 for r in results if r.ok) + await self._adelete_failed(results)

    # Internals

    def _identity(self) -> tuple[str, str, bool]:
        return (self._store.table_url, self._dictionary_name, self._ignore_case)

    def _row_key(self, key: str) -> str:
        validate_key(key)
        if not self._ignore_case:
            return key
        row_key = key.lower()
        if row_key != key:
            validate_key(row_key)
        return row_key

    def _now_datetime(self) -> datetime:
        return datetime.fromtimestamp(self._now(), UTC)

    def _expires_at(self, ttl: TimeToLive | None) -> datetime | None:
        if ttl is None:
            return None
        if isinstance(ttl, bool) or not isinstance(ttl, (int, float, timedelta)):
            raise ValidationError("ttl must be a number of seconds or a timedelta")
        seconds = ttl.total_seconds() if isinstance(ttl, timedelta) else float(ttl)
        if seconds <= 0:
            raise ValidationError("ttl must be > 0")
        return datetime.fromtimestamp(self._now() + seconds, UTC)

    def _is_expired(self, entity: Entity) -> bool:
        prop = entity.properties.get(EXPIRES_AT_PROPERTY)
        if prop is None or not isinstance(prop.value, datetime):
            return False
        return self._now_datetime() > as_utc(prop.value)

    def _build_entity(self, row_key: str, value: Any, ttl: TimeToLive | None) -> Entity:
        properties = encode_value(value)
        expires_at = self._expires_at(ttl)
        if expires_at is not None:
            properties[EXPIRES_AT_PROPERTY] = EntityProperty(expires_at, EdmType.DATETIME)
        check_entity_size(properties)
        return Entity(partition_key=self._dictionary_name, row_key=row_key, properties=properties)

    def _upsert_operations(
        self,
        items: Mapping[str, Any] | Iterable[tuple[str, Any]],
        ttl: TimeToLive | None,
    ) -> list[TableOperation]:
        if items is None:
            raise ValidationError("items is required")
        pairs = items.items() if isinstance(items, Mapping) else items
        return [
            TableOperation.insert_or_replace(self._build_entity(self._row_key(k), v, ttl)) for k, v in pairs
        ]

    def _entry(self, entity: Entity, value_type: Any) -> DictionaryEntry:
        expires = entity.properties.get(EXPIRES_AT_PROPERTY)
        return DictionaryEntry(
            dictionary_name=self._dictionary_name,
            key=entity.row_key,
            value=decode_value(entity.properties, value_type),
            expires_at=as_utc(expires.value) if expires is not None else None,
            etag=entity.etag,
        )

    def _read(self, row_key: str, *, select: Sequence[str] | None = None) -> Entity | None:
        try:
            return self._store.get_entity(self._dictionary_name, row_key, select=select)
        except NotFoundError:
            return None

    def _read_live(self, row_key: str, *, select: Sequence[str] | None = None) -> Entity | None:
        entity = self._read(row_key, select=select)
        if entity is None or self._is_expired(entity):
            return None
        return entity

    def _iter_entities(self) -> Iterator[Entity]:
        for entity in self._store.query_entities(self._dictionary_name):
            if not self._is_expired(entity):
                yield entity

    def _iter_keys(self) -> Iterator[str]:
        for entity in self._store.query_entities(self._dictionary_name, select=_KEY_PROJECTION):
            if not self._is_expired(entity):
                yield entity.row_key

    def _iter_values(self, value_type: Any = None) -> Iterator[Any]:
        for entity in self._iter_entities():
            yield decode_value(entity.properties, value_type)

    def _iter_items(self, value_type: Any = None) -> Iterator[tuple[str, Any]]:
        for entity in self._iter_entities():
            yield entity.row_key, decode_value(entity.properties, value_type)

    def _delete_failed(self, results: Sequence[OperationResult]) -> int:
        deleted = 0
        for result in results:
            if result.ok:
                continue
            op = result.operation
            try:
                self._store.delete_entity(op.partition_key, op.row_key, etag=op.etag)
            except (NotFoundError, ConflictError):
                continue
            deleted += 1
        return deleted

    async def _aread(self, row_key: str, *, select: Sequence[str] | None = None) -> Entity | None:
        try:
            return await self._acall("get_entity", self._dictionary_name, row_key, select=select)
        except NotFoundError:
            return None

    async def _aread_live(self, row_key: str, *, select: Sequence[str] | None = None) -> Entity | None:
        entity = await self._aread(row_key, select=select)
        if entity is None or self._is_expired(entity):
            return None
        return entity

    async def _aquery(self, *, select: Sequence[str] | None = None) -> AsyncIterator[Entity]:
        if self._async_store is not None:
            async for entity in self._async_store.query_entities(self._dictionary_name, select=select):
                yield entity
            return

        rows = iter(self._store.query_entities(self._dictionary_name, select=select))
        while True:
            entity = await asyncio.to_thread(next, rows, None)
            if entity is None:
                return
            yield entity

    def _asubmit_batch(self, operations: Sequence[TableOperation]) -> Awaitable[list[OperationResult]]:
        return self._acall("submit_batch", operations)

    async def _adelete_failed(self, results: Sequence[OperationResult]) -> int:
        deleted = 0
        for result in results:
            if result.ok:
                continue
            op = result.operation
            try:
                await self._acall("delete_entity", op.partition_key, op.row_key, etag=op.etag)
            except (NotFoundError, ConflictError):
                continue
            deleted += 1
        return deleted

    async def _acall(self, method: str, *args: Any, **kwargs: Any) -> Any:
        if self._async_store is not None:
            return await getattr(self._async_store, method)(*args, **kwargs)
        return await asyncio.to_thread(getattr(self._store, method), *args, **kwargs)


class DictionaryKeysView(KeysView[str]):
    _mapping: TableDictionary

    def __iter__(self) -> Iterator[str]:
        return self._mapping._iter_keys()


class DictionaryValuesView(ValuesView[Any]):
    _mapping: TableDictionary

    def __iter__(self) -> Iterator[Any]:
        return self._mapping._iter_values()

    def __contains__(self, value: object) -> bool:
        # Single partition scan.
        return any(v is value or v == value for v in self)


class DictionaryItemsView(ItemsView[str, Any]):
    _mapping: TableDictionary

    def __iter__(self) -> Iterator[tuple[str, Any]]:
        return self._mapping._iter_items()


def _value_equals(entity: Entity, value: Any) -> bool:
    stored = decode_value(entity.properties)
    if stored == value:
        return True
    if is_leaf(value):
        return False
    try:
        return decode_value(entity.properties, type(value)) == value
    except TabledictError:
        return False
