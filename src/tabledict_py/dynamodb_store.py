from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterator, Mapping, Sequence
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import boto3
from boto3.dynamodb.types import Binary, TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

from .aws_errors import map_client_error as _map_client_error
from .aws_errors import map_transaction_error as _map_transaction_error
from .batch import MaxBatchSize
from .codec import EdmType, EntityProperty, as_utc, to_entity_property
from .errors import NotFoundError, TypeMismatchError, ValidationError
from .store import WILDCARD_ETAG, Entity, OperationResult, TableOperation, UpdateMode

if TYPE_CHECKING:
    from .config import StoreConfig

logger = logging.getLogger(__name__)

PARTITION_KEY_ATTRIBUTE = "PartitionKey"
ROW_KEY_ATTRIBUTE = "RowKey"
ETAG_ATTRIBUTE = "_etag"

# Kinds DynamoDB cannot tell apart on read are stored as {"edm": <type>, "v": <value>}.
_TAGGED_KINDS = frozenset({EdmType.DOUBLE, EdmType.DATETIME, EdmType.GUID})
_RESERVED_ATTRIBUTES = frozenset({PARTITION_KEY_ATTRIBUTE, ROW_KEY_ATTRIBUTE, ETAG_ATTRIBUTE})


class DynamoRowStore:
    """Row store over a boto3 DynamoDB client.

    The table has a string hash key ``PartitionKey`` and a string range key
    ``RowKey``. Every write stamps a fresh ``_etag`` attribute, and
    version-checked writes condition on it.
    """

    def __init__(
        self,
        table_name: str,
        *,
        client: Any | None = None,
        new_etag: Callable[[], str] | None = None,
    ) -> None:
        if not table_name:
            raise ValidationError("table_name is required")

        self._table_name = table_name
        self._client: Any = client or boto3.client("dynamodb")
        self._new_etag = new_etag or (lambda: uuid.uuid4().hex)
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()

    @classmethod
    def from_config(cls, config: StoreConfig, *, session: Any | None = None) -> DynamoRowStore:
        sess = session or boto3.session.Session(region_name=config.region)
        client = sess.client(
            "dynamodb",
            region_name=config.region,
            endpoint_url=config.endpoint,
            config=config.to_boto3_config(),
        )
        store = cls(config.table_name, client=client)
        if config.create_table:
            store.create_if_not_exists()
        return store

    @property
    def table_name(self) -> str:
        return self._table_name

    @property
    def table_url(self) -> str:
        region = getattr(getattr(self._client, "meta", None), "region_name", None) or "local"
        return f"dynamodb://{region}/{self._table_name}"

    def create_if_not_exists(
        self,
        *,
        wait_timeout_seconds: float = 300.0,
        poll_interval_seconds: float = 0.25,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        try:
            self._client.create_table(
                TableName=self._table_name,
                AttributeDefinitions=[
                    {"AttributeName": PARTITION_KEY_ATTRIBUTE, "AttributeType": "S"},
                    {"AttributeName": ROW_KEY_ATTRIBUTE, "AttributeType": "S"},
                ],
                KeySchema=[
                    {"AttributeName": PARTITION_KEY_ATTRIBUTE, "KeyType": "HASH"},
                    {"AttributeName": ROW_KEY_ATTRIBUTE, "KeyType": "RANGE"},
                ],
                BillingMode="PAY_PER_REQUEST",
            )
            logger.info("created table %r", self._table_name)
        except ClientError as err:
            code = str(err.response.get("Error", {}).get("Code", ""))
            if code != "ResourceInUseException":
                raise _map_client_error(err) from err

        deadline = time.monotonic() + wait_timeout_seconds
        while time.monotonic() < deadline:
            try:
                resp = self._client.describe_table(TableName=self._table_name)
            except ClientError as err:
                raise _map_client_error(err) from err
            if str(resp.get("Table", {}).get("TableStatus", "")) == "ACTIVE":
                return
            sleep(poll_interval_seconds)

        raise ValidationError(f"timed out waiting for table ACTIVE: {self._table_name}")

    def get_entity(self, partition_key: str, row_key: str, *, select: Sequence[str] | None = None) -> Entity:
        req: dict[str, Any] = {
            "TableName": self._table_name,
            "Key": self._key(partition_key, row_key),
            "ConsistentRead": True,
        }
        if select is not None:
            req.update(self._projection(select))

        try:
            resp = self._client.get_item(**req)
        except ClientError as err:
            raise _map_client_error(err) from err

        item = resp.get("Item")
        if not item:
            raise NotFoundError(f"entity not found: {partition_key!r}/{row_key!r}")
        return self._from_item(item)

    def insert_entity(self, entity: Entity) -> Entity:
        written, req = self._put_request(TableOperation.insert(entity))
        self._call("put_item", req)
        return written

    def upsert_entity(self, entity: Entity, *, mode: UpdateMode = "replace") -> Entity:
        kind = "insert_or_merge" if mode == "merge" else "insert_or_replace"
        return self._write(TableOperation(kind=kind, entity=entity))

    def update_entity(self, entity: Entity, *, mode: UpdateMode = "merge", etag: str | None = None) -> Entity:
        kind = "merge" if mode == "merge" else "replace"
        return self._write(TableOperation(kind=kind, entity=entity, etag=etag))

    def delete_entity(self, partition_key: str, row_key: str, *, etag: str | None = None) -> None:
        op = TableOperation.delete(partition_key, row_key, etag=etag)
        self._call("delete_item", self._delete_request(op))

    def query_entities(
        self, partition_key: str | None = None, *, select: Sequence[str] | None = None
    ) -> Iterator[Entity]:
        req: dict[str, Any] = {"TableName": self._table_name}
        if select is not None:
            req.update(self._projection(select))

        if partition_key is None:
            method = self._client.scan
        else:
            method = self._client.query
            names = dict(req.get("ExpressionAttributeNames", {}))
            names["#pk"] = PARTITION_KEY_ATTRIBUTE
            req["ExpressionAttributeNames"] = names
            req["KeyConditionExpression"] = "#pk = :pk"
            req["ExpressionAttributeValues"] = {":pk": self._serializer.serialize(partition_key)}
            req["ConsistentRead"] = True

        while True:
            try:
                resp = method(**req)
            except ClientError as err:
                raise _map_client_error(err) from err

            for item in resp.get("Items", []):
                yield self._from_item(item)

            last = resp.get("LastEvaluatedKey")
            if not last:
                return
            req["ExclusiveStartKey"] = last

    def submit_batch(self, operations: Sequence[TableOperation]) -> list[OperationResult]:
        if not operations:
            raise ValidationError("batch must contain at least one operation")
        if len(operations) > MaxBatchSize:
            raise ValidationError(f"a batch supports at most {MaxBatchSize} operations")

        transact_items: list[dict[str, Any]] = []
        results: list[OperationResult] = []
        for op in operations:
            if op.kind == "delete":
                transact_items.append({"Delete": self._delete_request(op)})
                results.append(OperationResult(operation=op))
                continue
            if op.kind in {"merge", "insert_or_merge"}:
                written, req = self._update_request(op)
                transact_items.append({"Update": req})
            else:
                written, req = self._put_request(op)
                transact_items.append({"Put": req})
            results.append(OperationResult(operation=op, etag=written.etag))

        logger.debug("transact_write_items: table=%r size=%d", self._table_name, len(transact_items))
        try:
            self._client.transact_write_items(TransactItems=transact_items)
        except ClientError as err:
            raise _map_transaction_error(err) from err
        return results

    def _write(self, op: TableOperation) -> Entity:
        if op.kind in {"merge", "insert_or_merge"}:
            written, req = self._update_request(op)
            self._call("update_item", req)
        else:
            written, req = self._put_request(op)
            self._call("put_item", req)
        return written

    def _call(self, method: str, req: Mapping[str, Any]) -> Any:
        try:
            return getattr(self._client, method)(**req)
        except ClientError as err:
            raise _map_client_error(err) from err

    def _put_request(self, op: TableOperation) -> tuple[Entity, dict[str, Any]]:
        etag = self._new_etag()
        item = self._key(op.partition_key, op.row_key)
        for name, prop in op.entity.properties.items():
            item[_attribute_name(name)] = self._to_attribute(prop)
        item[ETAG_ATTRIBUTE] = {"S": etag}

        req: dict[str, Any] = {"TableName": self._table_name, "Item": item}
        if op.kind == "insert":
            req["ConditionExpression"] = "attribute_not_exists(#pk)"
            req["ExpressionAttributeNames"] = {"#pk": PARTITION_KEY_ATTRIBUTE}
            req["ReturnValuesOnConditionCheckFailure"] = "ALL_OLD"
        elif op.kind == "replace":
            req.update(_version_condition(op.etag))
        return _written(op, etag), req

    def _update_request(self, op: TableOperation) -> tuple[Entity, dict[str, Any]]:
        etag = self._new_etag()
        names: dict[str, str] = {"#etag": ETAG_ATTRIBUTE}
        values: dict[str, Any] = {":etag_new": {"S": etag}}
        assignments = ["#etag = :etag_new"]
        for i, (name, prop) in enumerate(op.entity.properties.items()):
            names[f"#a{i}"] = _attribute_name(name)
            values[f":a{i}"] = self._to_attribute(prop)
            assignments.append(f"#a{i} = :a{i}")

        req: dict[str, Any] = {
            "TableName": self._table_name,
            "Key": self._key(op.partition_key, op.row_key),
            "UpdateExpression": "SET " + ", ".join(assignments),
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
        }
        if op.kind == "merge":
            condition = _version_condition(op.etag)
            names.update(condition.pop("ExpressionAttributeNames"))
            values.update(condition.pop("ExpressionAttributeValues", {}))
            req.update(condition)
        return _written(op, etag), req

    def _delete_request(self, op: TableOperation) -> dict[str, Any]:
        return {
            "TableName": self._table_name,
            "Key": self._key(op.partition_key, op.row_key),
            **_version_condition(op.etag),
        }

    def _projection(self, select: Sequence[str]) -> dict[str, Any]:
        wanted = [PARTITION_KEY_ATTRIBUTE, ROW_KEY_ATTRIBUTE, ETAG_ATTRIBUTE]
        wanted.extend(name for name in select if name not in wanted)
        names = {f"#p{i}": name for i, name in enumerate(wanted)}
        return {"ProjectionExpression": ", ".join(names), "ExpressionAttributeNames": names}

    def _key(self, partition_key: str, row_key: str) -> dict[str, Any]:
        return {
            PARTITION_KEY_ATTRIBUTE: self._serializer.serialize(partition_key),
            ROW_KEY_ATTRIBUTE: self._serializer.serialize(row_key),
        }

    def _to_attribute(self, prop: EntityProperty) -> dict[str, Any]:
        value = prop.value
        if prop.edm_type in {EdmType.INT32, EdmType.INT64}:
            return self._serializer.serialize(Decimal(int(value)))
        if prop.edm_type is EdmType.DOUBLE:
            return {"M": {"edm": {"S": prop.edm_type.value}, "v": {"N": repr(float(value))}}}
        if prop.edm_type is EdmType.DATETIME:
            return {"M": {"edm": {"S": prop.edm_type.value}, "v": {"S": as_utc(value).isoformat()}}}
        if prop.edm_type is EdmType.GUID:
            return {"M": {"edm": {"S": prop.edm_type.value}, "v": {"S": str(value)}}}
        return self._serializer.serialize(value)

    def _from_attribute(self, name: str, attr: Mapping[str, Any]) -> EntityProperty:
        if "M" in attr:
            tagged = attr["M"]
            try:
                edm = EdmType(tagged["edm"]["S"])
                raw = self._deserializer.deserialize(tagged["v"])
            except (KeyError, ValueError) as err:
                raise TypeMismatchError(f"{name}: unsupported attribute shape") from err
            if edm not in _TAGGED_KINDS:
                raise TypeMismatchError(f"{name}: unsupported tagged type {edm}")
            if edm is EdmType.DOUBLE:
                return EntityProperty(float(raw), edm)
            if edm is EdmType.DATETIME:
                return EntityProperty(as_utc(datetime.fromisoformat(raw)), edm)
            return EntityProperty(uuid.UUID(raw), edm)

        value = self._deserializer.deserialize(dict(attr))
        if isinstance(value, Decimal):
            return to_entity_property(int(value) if value == value.to_integral_value() else float(value))
        if isinstance(value, Binary):
            return to_entity_property(value.value)
        try:
            return to_entity_property(value)
        except ValidationError as err:
            raise TypeMismatchError(f"{name}: {err}") from err

    def _from_item(self, item: Mapping[str, Any]) -> Entity:
        properties: dict[str, EntityProperty] = {}
        for name, attr in item.items():
            if name in _RESERVED_ATTRIBUTES:
                continue
            properties[name] = self._from_attribute(name, attr)

        etag = item.get(ETAG_ATTRIBUTE, {}).get("S")
        return Entity(
            partition_key=str(self._deserializer.deserialize(item[PARTITION_KEY_ATTRIBUTE])),
            row_key=str(self._deserializer.deserialize(item[ROW_KEY_ATTRIBUTE])),
            properties=properties,
            etag=etag,
        )


def _attribute_name(name: str) -> str:
    if name in _RESERVED_ATTRIBUTES:
        raise ValidationError(f"property name is reserved: {name}")
    return name


def _version_condition(etag: str | None) -> dict[str, Any]:
    condition: dict[str, Any] = {"ReturnValuesOnConditionCheckFailure": "ALL_OLD"}
    if etag is None or etag == WILDCARD_ETAG:
        condition["ConditionExpression"] = "attribute_exists(#pk)"
        condition["ExpressionAttributeNames"] = {"#pk": PARTITION_KEY_ATTRIBUTE}
        return condition

    condition["ConditionExpression"] = "#etag = :etag"
    condition["ExpressionAttributeNames"] = {"#etag": ETAG_ATTRIBUTE}
    condition["ExpressionAttributeValues"] = {":etag": {"S": etag}}
    return condition


def _written(op: TableOperation, etag: str) -> Entity:
    return Entity(
        partition_key=op.partition_key,
        row_key=op.row_key,
        properties=op.entity.properties,
        etag=etag,
    )
