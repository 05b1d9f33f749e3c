from __future__ import annotations

import base64
import binascii
import json
import types
import uuid
from collections.abc import Mapping
from dataclasses import MISSING, dataclass, fields, is_dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Union, get_args, get_origin, get_type_hints

from .errors import TypeMismatchError, UnsupportedShapeError, ValidationError
from .validation import validate_not_none, validate_property_name

VALUE_PROPERTY = "Value"
VALUE_FORMAT_PROPERTY = "ValueFormat"
JSON_VALUE_FORMAT = "json"
FLATTEN_SEPARATOR = "_"

MaxPropertyBytes = 64 * 1024
MaxPropertiesPerEntity = 252

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class EdmType(StrEnum):
    STRING = "Edm.String"
    INT32 = "Edm.Int32"
    INT64 = "Edm.Int64"
    DOUBLE = "Edm.Double"
    BOOLEAN = "Edm.Boolean"
    BINARY = "Edm.Binary"
    DATETIME = "Edm.DateTime"
    GUID = "Edm.Guid"


@dataclass(frozen=True)
class EntityProperty:
    value: Any
    edm_type: EdmType


_ALLOWED_KINDS: dict[Any, frozenset[EdmType]] = {
    str: frozenset({EdmType.STRING}),
    int: frozenset({EdmType.INT32, EdmType.INT64}),
    float: frozenset({EdmType.DOUBLE, EdmType.INT32, EdmType.INT64}),
    bool: frozenset({EdmType.BOOLEAN}),
    bytes: frozenset({EdmType.BINARY}),
    datetime: frozenset({EdmType.DATETIME}),
    uuid.UUID: frozenset({EdmType.GUID}),
}

_COLLECTION_TYPES = (list, tuple, set, frozenset)
_JSON_LEAF_TYPES = (str, int, float, bool)


def is_leaf(value: Any) -> bool:
    return isinstance(value, (str, int, float, bytes, bytearray, memoryview, datetime, uuid.UUID))


def to_entity_property(value: Any) -> EntityProperty:
    if isinstance(value, EntityProperty):
        return value
    if isinstance(value, bool):
        return EntityProperty(value, EdmType.BOOLEAN)
    if isinstance(value, int):
        if _INT32_MIN <= value <= _INT32_MAX:
            return EntityProperty(value, EdmType.INT32)
        if _INT64_MIN <= value <= _INT64_MAX:
            return EntityProperty(value, EdmType.INT64)
        raise UnsupportedShapeError("integer value is outside the 64-bit range")
    if isinstance(value, float):
        return EntityProperty(value, EdmType.DOUBLE)
    if isinstance(value, str):
        try:
            encoded = value.encode("utf-16-le")
        except UnicodeEncodeError as err:
            raise ValidationError("string property is not valid Unicode text") from err
        if len(encoded) > MaxPropertyBytes:
            raise ValidationError("string property exceeds the 64 KiB property limit")
        return EntityProperty(value, EdmType.STRING)
    if isinstance(value, (bytes, bytearray, memoryview)):
        data = bytes(value)
        if len(data) > MaxPropertyBytes:
            raise ValidationError("binary property exceeds the 64 KiB property limit")
        return EntityProperty(data, EdmType.BINARY)
    if isinstance(value, datetime):
        return EntityProperty(as_utc(value), EdmType.DATETIME)
    if isinstance(value, uuid.UUID):
        return EntityProperty(value, EdmType.GUID)
    raise UnsupportedShapeError(f"unsupported value type: {type(value).__name__}")


def from_entity_property(prop: EntityProperty, annotation: Any = Any) -> Any:
    target = _unwrap_optional(annotation)
    if prop.value is None or target is Any or target is object:
        return prop.value

    allowed = _ALLOWED_KINDS.get(target)
    if allowed is None:
        raise TypeMismatchError(f"cannot decode {prop.edm_type} into {_type_name(target)}")
    if prop.edm_type not in allowed:
        raise TypeMismatchError(f"stored {prop.edm_type} is not compatible with {_type_name(target)}")

    if target is float:
        return float(prop.value)
    return prop.value


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def encode_entity(obj: Any) -> dict[str, EntityProperty]:
    """Flatten a dataclass instance or string-keyed mapping into a property bag.

    Nested composites are flattened with ``_``-joined member names. Flat
    collections of JSON leaves are stored as one JSON string property. Cycles,
    collections of collections and unknown member types raise
    ``UnsupportedShapeError`` before anything is emitted.
    """
    if not _is_composite(obj):
        raise UnsupportedShapeError("entity value must be a dataclass instance or a mapping")

    out: dict[str, EntityProperty] = {}
    _flatten_into(out, obj, prefix="", path=set())
    check_entity_size(out)
    return out


def decode_entity[T](
    properties: Mapping[str, EntityProperty], target_type: type[T], *, prefix: str = ""
) -> T:
    if not _is_dataclass_type(target_type):
        raise ValidationError("target_type must be a dataclass type")

    hints = get_type_hints(target_type)
    kwargs: dict[str, Any] = {}
    for dc_field in fields(target_type):  # type: ignore[arg-type]
        if not dc_field.init:
            continue

        name = _member_name(prefix, dc_field.name)
        value = decode_member(properties, name, hints.get(dc_field.name, Any))
        if value is not MISSING:
            kwargs[dc_field.name] = value

    try:
        return target_type(**kwargs)
    except TypeError as err:
        raise ValidationError(str(err)) from err


def decode_member(properties: Mapping[str, EntityProperty], name: str, annotation: Any = Any) -> Any:
    """Decode the member stored under ``name``; returns ``MISSING`` when nothing was stored."""
    target = _unwrap_optional(annotation)

    if _is_dataclass_type(target):
        if any(k.startswith(name + FLATTEN_SEPARATOR) for k in properties):
            return decode_entity(properties, target, prefix=name)
        return MISSING

    if (get_origin(target) or target) in (dict, Mapping):
        nested = _collect_prefixed(properties, name, target)
        return nested if nested else MISSING

    prop = properties.get(name)
    if prop is None:
        return MISSING
    return _decode_member(prop, annotation, name)


def check_entity_size(properties: Mapping[str, EntityProperty]) -> None:
    if len(properties) > MaxPropertiesPerEntity:
        raise ValidationError(
            f"entity has {len(properties)} properties; the limit is {MaxPropertiesPerEntity}"
        )


def encode_value(value: Any) -> dict[str, EntityProperty]:
    validate_not_none(value)

    if is_leaf(value):
        return {VALUE_PROPERTY: to_entity_property(value)}

    text = json.dumps(_to_jsonable(value, path=set()), separators=(",", ":"))
    return {
        VALUE_PROPERTY: to_entity_property(text),
        VALUE_FORMAT_PROPERTY: EntityProperty(JSON_VALUE_FORMAT, EdmType.STRING),
    }


def decode_value(properties: Mapping[str, EntityProperty], value_type: Any = None) -> Any:
    prop = properties.get(VALUE_PROPERTY)
    if prop is None:
        return None

    fmt = properties.get(VALUE_FORMAT_PROPERTY)
    if fmt is not None and fmt.value == JSON_VALUE_FORMAT:
        if prop.edm_type is not EdmType.STRING:
            raise TypeMismatchError("JSON value must be stored as a string property")
        try:
            raw = json.loads(prop.value)
        except ValueError as err:
            raise TypeMismatchError("stored JSON value is malformed") from err
        if value_type is None:
            return raw
        return _from_jsonable(raw, value_type)

    if value_type is None:
        return prop.value
    return from_entity_property(prop, value_type)


def _flatten_into(out: dict[str, EntityProperty], obj: Any, *, prefix: str, path: set[int]) -> None:
    marker = id(obj)
    if marker in path:
        raise UnsupportedShapeError("cyclic reference detected")
    path.add(marker)
    try:
        for name, member in _members(obj):
            prop_name = _member_name(prefix, name)
            if member is None:
                continue
            if _is_composite(member):
                _flatten_into(out, member, prefix=prop_name, path=path)
                continue

            validate_property_name(prop_name)
            if isinstance(member, _COLLECTION_TYPES):
                out[prop_name] = to_entity_property(_dump_leaf_collection(member))
            else:
                out[prop_name] = to_entity_property(member)
    finally:
        path.discard(marker)


def _dump_leaf_collection(items: Any) -> str:
    values: list[Any] = []
    for item in items:
        if isinstance(item, _COLLECTION_TYPES) or _is_composite(item):
            raise UnsupportedShapeError("nested collections are not supported")
        if item is not None and not isinstance(item, _JSON_LEAF_TYPES):
            raise UnsupportedShapeError(f"unsupported collection element type: {type(item).__name__}")
        values.append(item)
    return json.dumps(values, separators=(",", ":"))


def _decode_member(prop: EntityProperty, annotation: Any, name: str) -> Any:
    target = _unwrap_optional(annotation)
    origin = get_origin(target) or target
    if origin in _COLLECTION_TYPES:
        if prop.edm_type is not EdmType.STRING:
            raise TypeMismatchError(f"{name}: stored {prop.edm_type} cannot be decoded into a collection")
        try:
            raw = json.loads(prop.value)
        except ValueError as err:
            raise TypeMismatchError(f"{name}: stored collection is malformed") from err
        if not isinstance(raw, list):
            raise TypeMismatchError(f"{name}: stored value is not a collection")
        return origin(raw)

    try:
        return from_entity_property(prop, target)
    except TypeMismatchError as err:
        raise TypeMismatchError(f"{name}: {err}") from err


def _collect_prefixed(properties: Mapping[str, EntityProperty], name: str, target: Any) -> dict[str, Any]:
    args = get_args(target)
    value_type = args[1] if len(args) == 2 else Any
    head = name + FLATTEN_SEPARATOR
    return {
        k[len(head) :]: from_entity_property(prop, value_type)
        for k, prop in properties.items()
        if k.startswith(head)
    }


def _to_jsonable(value: Any, *, path: set[int]) -> Any:
    if value is None or isinstance(value, _JSON_LEAF_TYPES):
        return value
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")

    if not (_is_composite(value) or isinstance(value, _COLLECTION_TYPES)):
        raise UnsupportedShapeError(f"unsupported value type: {type(value).__name__}")

    marker = id(value)
    if marker in path:
        raise UnsupportedShapeError("cyclic reference detected")
    path.add(marker)
    try:
        if _is_composite(value):
            return {name: _to_jsonable(member, path=path) for name, member in _members(value)}
        return [_to_jsonable(item, path=path) for item in value]
    finally:
        path.discard(marker)


def _from_jsonable(raw: Any, annotation: Any) -> Any:
    target = _unwrap_optional(annotation)
    if raw is None or target is Any or target is object:
        return raw

    if _is_dataclass_type(target):
        if not isinstance(raw, dict):
            raise TypeMismatchError(f"stored value is not an object; cannot decode into {_type_name(target)}")
        hints = get_type_hints(target)
        kwargs = {
            f.name: _from_jsonable(raw[f.name], hints.get(f.name, Any))
            for f in fields(target)
            if f.init and f.name in raw
        }
        try:
            return target(**kwargs)
        except TypeError as err:
            raise ValidationError(str(err)) from err

    origin = get_origin(target) or target
    args = get_args(target)

    if origin in _COLLECTION_TYPES:
        if not isinstance(raw, list):
            raise TypeMismatchError(f"stored value is not a list; cannot decode into {_type_name(origin)}")
        if origin is tuple and args and not (len(args) == 2 and args[1] is Ellipsis):
            if len(args) != len(raw):
                raise TypeMismatchError("stored list length does not match the tuple type")
            return tuple(_from_jsonable(v, a) for v, a in zip(raw, args, strict=True))
        elem = args[0] if args else Any
        return origin(_from_jsonable(v, elem) for v in raw)

    if origin in (dict, Mapping):
        if not isinstance(raw, dict):
            raise TypeMismatchError("stored value is not an object; cannot decode into a mapping")
        value_type = args[1] if len(args) == 2 else Any
        return {k: _from_jsonable(v, value_type) for k, v in raw.items()}

    return _from_json_leaf(raw, target)


def _from_json_leaf(raw: Any, target: Any) -> Any:
    if target is bool:
        if isinstance(raw, bool):
            return raw
    elif target is int:
        if isinstance(raw, int) and not isinstance(raw, bool):
            return raw
    elif target is float:
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return float(raw)
    elif target is str:
        if isinstance(raw, str):
            return raw
    elif target is datetime:
        if isinstance(raw, str):
            try:
                return as_utc(datetime.fromisoformat(raw))
            except ValueError as err:
                raise TypeMismatchError("stored string is not an ISO timestamp") from err
    elif target is uuid.UUID:
        if isinstance(raw, str):
            try:
                return uuid.UUID(raw)
            except ValueError as err:
                raise TypeMismatchError("stored string is not a GUID") from err
    elif target is bytes:
        if isinstance(raw, str):
            try:
                return base64.b64decode(raw, validate=True)
            except binascii.Error as err:
                raise TypeMismatchError("stored string is not base64") from err
    else:
        raise TypeMismatchError(f"unsupported target type: {_type_name(target)}")

    raise TypeMismatchError(f"stored {type(raw).__name__} is not compatible with {_type_name(target)}")


def _members(obj: Any) -> list[tuple[str, Any]]:
    if is_dataclass(obj) and not isinstance(obj, type):
        return [(f.name, getattr(obj, f.name)) for f in fields(obj)]

    out: list[tuple[str, Any]] = []
    for k, v in obj.items():
        if not isinstance(k, str):
            raise UnsupportedShapeError("mapping keys must be strings")
        out.append((k, v))
    return out


def _member_name(prefix: str, name: str) -> str:
    return f"{prefix}{FLATTEN_SEPARATOR}{name}" if prefix else name


def _is_composite(value: Any) -> bool:
    return (is_dataclass(value) and not isinstance(value, type)) or isinstance(value, Mapping)


def _is_dataclass_type(value: Any) -> bool:
    return isinstance(value, type) and is_dataclass(value)


def _unwrap_optional(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        args = [a for a in get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0]
        return Any
    return annotation


def _type_name(target: Any) -> str:
    return getattr(target, "__name__", repr(target))
