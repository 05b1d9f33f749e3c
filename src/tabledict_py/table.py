from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterator, Sequence
from dataclasses import MISSING
from typing import Any

from .batch import MaxBatchSize, submit_grouped
from .codec import decode_member, encode_entity
from .errors import ValidationError
from .model import (
    ROLE_ETAG,
    ROLE_PARTITION_KEY,
    ROLE_ROW_KEY,
    ROLE_TIMESTAMP,
    AttributeDefinition,
    ModelDefinition,
)
from .store import Entity, OperationResult, RowStore, TableOperation, UpdateMode
from .validation import validate_row_key_value

logger = logging.getLogger(__name__)

type DeleteTarget = tuple[str, str] | tuple[str, str, str | None]


class EntityTable[T]:
    """Typed CRUD for dataclass models over a ``RowStore``.

    A model that declares an ``etag`` field sends its value as the expected
    version on ``merge``, ``replace`` and ``delete_item``; an empty value means
    "any version". Methods that write return a copy of the item with its
    ``etag`` and ``timestamp`` fields refreshed.
    """

    def __init__(self, model: ModelDefinition[T] | type[T], store: RowStore) -> None:
        if store is None:
            raise ValidationError("store is required")
        if not isinstance(model, ModelDefinition):
            model = ModelDefinition.from_dataclass(model)

        self._model: ModelDefinition[T] = model
        self._store = store

    @property
    def model(self) -> ModelDefinition[T]:
        return self._model

    @property
    def store(self) -> RowStore:
        return self._store

    def get(self, partition_key: str, row_key: str) -> T:
        validate_row_key_value(partition_key)
        validate_row_key_value(row_key)
        return self._from_entity(self._store.get_entity(partition_key, row_key))

    def insert(self, item: T) -> T:
        return self._with_version(item, self._store.insert_entity(self._to_entity(item)))

    def upsert(self, item: T, *, mode: UpdateMode = "replace") -> T:
        return self._with_version(item, self._store.upsert_entity(self._to_entity(item), mode=mode))

    def merge(self, item: T, *, etag: str | None = None) -> T:
        written = self._store.update_entity(
            self._to_entity(item), mode="merge", etag=self._expected_etag(item, etag)
        )
        return self._with_version(item, written)

    def replace(self, item: T, *, etag: str | None = None) -> T:
        written = self._store.update_entity(
            self._to_entity(item), mode="replace", etag=self._expected_etag(item, etag)
        )
        return self._with_version(item, written)

    def delete(self, partition_key: str, row_key: str, *, etag: str | None = None) -> None:
        validate_row_key_value(partition_key)
        validate_row_key_value(row_key)
        self._store.delete_entity(partition_key, row_key, etag=etag)

    def delete_item(self, item: T) -> None:
        entity = self._to_entity(item)
        self._store.delete_entity(entity.partition_key, entity.row_key, etag=self._expected_etag(item, None))

    def query(self, partition_key: str) -> Iterator[T]:
        validate_row_key_value(partition_key)
        for entity in self._store.query_entities(partition_key):
            yield self._from_entity(entity)

    def query_all(self) -> Iterator[T]:
        for entity in self._store.query_entities():
            yield self._from_entity(entity)

    def batch_write(
        self,
        *,
        puts: Sequence[T] = (),
        merges: Sequence[T] = (),
        deletes: Sequence[T | DeleteTarget] = (),
        max_batch_size: int = MaxBatchSize,
    ) -> list[OperationResult]:
        """Write through single-partition batches; one result per operation.

        Results are ordered puts, then merges, then deletes, each in input order.
        """
        ops: list[TableOperation] = [TableOperation.insert_or_replace(self._to_entity(item)) for item in puts]
        ops.extend(
            TableOperation.merge(self._to_entity(item), etag=self._expected_etag(item, None))
            for item in merges
        )
        ops.extend(self._delete_operation(target) for target in deletes)

        if not ops:
            return []
        logger.debug("batch_write: %d operations", len(ops))
        return submit_grouped(self._store.submit_batch, ops, max_batch_size=max_batch_size)

    def _delete_operation(self, target: T | DeleteTarget) -> TableOperation:
        if isinstance(target, tuple):
            if len(target) not in (2, 3):
                raise ValidationError("expected delete target (partition_key, row_key[, etag])")
            partition_key, row_key = target[0], target[1]
            etag = target[2] if len(target) == 3 else None
            validate_row_key_value(partition_key)
            validate_row_key_value(row_key)
            return TableOperation.delete(partition_key, row_key, etag=etag)

        entity = self._to_entity(target)
        etag = self._expected_etag(target, None)
        return TableOperation.delete(entity.partition_key, entity.row_key, etag=etag)

    def _expected_etag(self, item: T, etag: str | None) -> str | None:
        if etag is not None:
            return etag
        if self._model.etag is None:
            return None
        return getattr(item, self._model.etag.python_name) or None

    def _with_version(self, item: T, written: Entity) -> T:
        updates: dict[str, Any] = {}
        if self._model.etag is not None:
            updates[self._model.etag.python_name] = written.etag
        if self._model.timestamp is not None and written.timestamp is not None:
            updates[self._model.timestamp.python_name] = written.timestamp
        if not updates:
            return item
        return dataclasses.replace(item, **updates)  # type: ignore[type-var]

    def _to_entity(self, item: T) -> Entity:
        if not isinstance(item, self._model.model_type):
            raise ValidationError(f"item must be a {self._model.model_type.__name__} instance")

        data: dict[str, Any] = {}
        for attr in self._model.data_attributes:
            value = getattr(item, attr.python_name)
            if attr.converter is not None:
                value = attr.converter.to_store(value)
            if value is not None:
                data[attr.property_name] = value

        return Entity(
            partition_key=self._key_value(item, self._model.partition_key),
            row_key=self._key_value(item, self._model.row_key),
            properties=encode_entity(data),
        )

    def _key_value(self, item: T, attr: AttributeDefinition) -> str:
        value = getattr(item, attr.python_name)
        if attr.converter is not None:
            value = attr.converter.to_store(value)
        validate_row_key_value(value)
        return value

    def _from_entity(self, entity: Entity) -> T:
        kwargs: dict[str, Any] = {}
        for attr in self._model.attributes.values():
            if ROLE_PARTITION_KEY in attr.roles:
                value: Any = entity.partition_key
            elif ROLE_ROW_KEY in attr.roles:
                value = entity.row_key
            elif ROLE_ETAG in attr.roles:
                value = entity.etag
            elif ROLE_TIMESTAMP in attr.roles:
                value = entity.timestamp
            elif attr.converter is not None:
                prop = entity.properties.get(attr.property_name)
                if prop is None:
                    continue
                value = prop.value
            else:
                value = decode_member(entity.properties, attr.property_name, attr.annotation)
                if value is MISSING:
                    continue
                kwargs[attr.python_name] = value
                continue

            if attr.converter is not None and not attr.is_metadata:
                value = attr.converter.from_store(value)
            kwargs[attr.python_name] = value

        try:
            return self._model.model_type(**kwargs)
        except TypeError as err:
            raise ValidationError(str(err)) from err
