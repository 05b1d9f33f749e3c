from __future__ import annotations

import re
from typing import Any

from .errors import IdentifierValidationError, ValidationError

MaxKeyLength = 1024
MaxDictionaryNameLength = 1024
MaxPropertyNameLength = 255
MinTableNameLength = 3
MaxTableNameLength = 63

_FORBIDDEN_KEY_CHARACTERS = ("/", "\\", "#", "?")

_TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9]*$")
_PROPERTY_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_RESERVED_PROPERTY_NAMES = frozenset({"PartitionKey", "RowKey", "Timestamp", "ETag"})


def validate_dictionary_name(name: Any) -> None:
    _validate_row_store_key(name, what="dictionary name", max_length=MaxDictionaryNameLength)


def validate_key(key: Any) -> None:
    _validate_row_store_key(key, what="key", max_length=MaxKeyLength)


def validate_row_key_value(value: Any) -> None:
    """Validate a raw PartitionKey or RowKey value for the entity API."""
    _validate_row_store_key(value, what="key value", max_length=MaxKeyLength)


def validate_not_none(value: Any, *, what: str = "value") -> None:
    if value is None:
        raise ValidationError(f"{what} must not be None")


def validate_table_name(name: Any) -> None:
    if not isinstance(name, str):
        raise IdentifierValidationError(type="InvalidTableName", detail="table name must be a string")
    if len(name) < MinTableNameLength or len(name) > MaxTableNameLength:
        raise IdentifierValidationError(type="InvalidTableName", detail="table name length invalid")
    if _TABLE_NAME_PATTERN.match(name) is None:
        raise IdentifierValidationError(
            type="InvalidTableName",
            detail="table name must start with a letter and contain only alphanumeric characters",
        )
    if name.lower() == "tables":
        raise IdentifierValidationError(type="InvalidTableName", detail="table name is reserved")


def validate_property_name(name: Any) -> None:
    if not isinstance(name, str) or not name:
        raise IdentifierValidationError(type="InvalidProperty", detail="property name cannot be empty")
    if len(name) > MaxPropertyNameLength:
        raise IdentifierValidationError(type="InvalidProperty", detail="property name exceeds maximum length")
    if name in _RESERVED_PROPERTY_NAMES:
        raise IdentifierValidationError(type="InvalidProperty", detail=f"property name is reserved: {name}")
    if _PROPERTY_NAME_PATTERN.match(name) is None:
        raise IdentifierValidationError(
            type="InvalidProperty",
            detail="property name must start with letter or underscore and contain only alphanumeric "
            "characters and underscores",
        )


def contains_control_characters(value: str) -> bool:
    for ch in value:
        code = ord(ch)
        if code <= 0x1F or 0x7F <= code <= 0x9F:
            return True
    return False


def _validate_row_store_key(value: Any, *, what: str, max_length: int) -> None:
    if value is None:
        raise IdentifierValidationError(type="InvalidKey", detail=f"{what} must not be None")
    if not isinstance(value, str):
        raise IdentifierValidationError(type="InvalidKey", detail=f"{what} must be a string")
    if not value or value.isspace():
        raise IdentifierValidationError(type="InvalidKey", detail=f"{what} cannot be empty")
    if len(value) > max_length:
        raise IdentifierValidationError(
            type="InvalidKey", detail=f"{what} exceeds maximum length of {max_length}"
        )
    if any(ch in value for ch in _FORBIDDEN_KEY_CHARACTERS):
        raise IdentifierValidationError(
            type="InvalidKey", detail=f"{what} must not contain '/', '\\', '#' or '?'"
        )
    if contains_control_characters(value):
        raise IdentifierValidationError(type="InvalidKey", detail=f"{what} contains control characters")
