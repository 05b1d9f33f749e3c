from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from typing import Any, Protocol, cast, get_type_hints, overload

from .errors import ValidationError
from .validation import validate_property_name

ROLE_PARTITION_KEY = "partition_key"
ROLE_ROW_KEY = "row_key"
ROLE_ETAG = "etag"
ROLE_TIMESTAMP = "timestamp"

_ROLES = frozenset({ROLE_PARTITION_KEY, ROLE_ROW_KEY, ROLE_ETAG, ROLE_TIMESTAMP})
_METADATA_KEY = "tabledict"


class ModelDefinitionError(ValidationError):
    pass


class AttributeConverter(Protocol):
    def to_store(self, value: Any) -> Any: ...

    def from_store(self, value: Any) -> Any: ...


@dataclass(frozen=True)
class AttributeDefinition:
    python_name: str
    property_name: str
    annotation: Any
    roles: tuple[str, ...]
    converter: AttributeConverter | None = None

    @property
    def is_key(self) -> bool:
        return ROLE_PARTITION_KEY in self.roles or ROLE_ROW_KEY in self.roles

    @property
    def is_metadata(self) -> bool:
        return ROLE_ETAG in self.roles or ROLE_TIMESTAMP in self.roles


@overload
def entity_field(
    *,
    name: str | None = None,
    roles: Sequence[str] | None = None,
    converter: AttributeConverter | None = None,
    ignore: bool = False,
) -> Any: ...


@overload
def entity_field(
    *,
    name: str | None = None,
    roles: Sequence[str] | None = None,
    converter: AttributeConverter | None = None,
    ignore: bool = False,
    default: Any,
) -> Any: ...


@overload
def entity_field(
    *,
    name: str | None = None,
    roles: Sequence[str] | None = None,
    converter: AttributeConverter | None = None,
    ignore: bool = False,
    default_factory: Any,
) -> Any: ...


def entity_field(
    *,
    name: str | None = None,
    roles: Sequence[str] | None = None,
    converter: AttributeConverter | None = None,
    ignore: bool = False,
    default: Any = MISSING,
    default_factory: Any = MISSING,
) -> Any:
    if default is not MISSING and default_factory is not MISSING:
        raise ValueError("entity_field: cannot set both default and default_factory")

    opts: dict[str, Any] = {"converter": converter, "ignore": ignore}
    if name is not None:
        opts["name"] = name
    if roles is not None:
        opts["roles"] = list(roles)

    return field(default=default, default_factory=default_factory, metadata={_METADATA_KEY: opts})


@dataclass(frozen=True)
class ModelDefinition[T]:
    """Resolved mapping between a dataclass and the rows of an entity table."""

    model_type: type[T]
    partition_key: AttributeDefinition
    row_key: AttributeDefinition
    etag: AttributeDefinition | None
    timestamp: AttributeDefinition | None
    attributes: Mapping[str, AttributeDefinition]

    @classmethod
    def from_dataclass(cls, model_type: type[T]) -> ModelDefinition[T]:
        if not is_dataclass(model_type):
            raise ModelDefinitionError("model_type must be a dataclass")

        hints = get_type_hints(model_type)
        attributes: dict[str, AttributeDefinition] = {}
        by_role: dict[str, list[str]] = {role: [] for role in _ROLES}
        seen_names: set[str] = set()

        for dc_field in fields(model_type):
            opts = cast(dict[str, Any], dc_field.metadata.get(_METADATA_KEY, {}))
            if bool(opts.get("ignore", False)):
                continue

            roles = tuple(cast(list[str], opts.get("roles", [])))
            for role in roles:
                if role not in _ROLES:
                    raise ModelDefinitionError(f"unknown role {role!r} on field {dc_field.name}")
                by_role[role].append(dc_field.name)
            if len(roles) > 1:
                raise ModelDefinitionError(f"field {dc_field.name} may carry at most one role")

            property_name = cast(str, opts.get("name", dc_field.name))
            if not roles:
                try:
                    validate_property_name(property_name)
                except ValidationError as err:
                    raise ModelDefinitionError(f"field {dc_field.name}: {err}") from err
                if property_name in seen_names:
                    raise ModelDefinitionError(f"duplicate property name: {property_name}")
                seen_names.add(property_name)

            attributes[dc_field.name] = AttributeDefinition(
                python_name=dc_field.name,
                property_name=property_name,
                annotation=hints.get(dc_field.name, Any),
                roles=roles,
                converter=cast(AttributeConverter | None, opts.get("converter")),
            )

        for role in (ROLE_PARTITION_KEY, ROLE_ROW_KEY):
            if len(by_role[role]) != 1:
                raise ModelDefinitionError(
                    f"model must define exactly one {role} field (found {len(by_role[role])})"
                )
        for role in (ROLE_ETAG, ROLE_TIMESTAMP):
            if len(by_role[role]) > 1:
                raise ModelDefinitionError(
                    f"model must define at most one {role} field (found {len(by_role[role])})"
                )

        def single(role: str) -> AttributeDefinition | None:
            names = by_role[role]
            return attributes[names[0]] if names else None

        return cls(
            model_type=model_type,
            partition_key=attributes[by_role[ROLE_PARTITION_KEY][0]],
            row_key=attributes[by_role[ROLE_ROW_KEY][0]],
            etag=single(ROLE_ETAG),
            timestamp=single(ROLE_TIMESTAMP),
            attributes=attributes,
        )

    @property
    def data_attributes(self) -> list[AttributeDefinition]:
        return [a for a in self.attributes.values() if not a.is_key and not a.is_metadata]
