from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from typing import Any, Literal, cast

import yaml
from botocore.config import Config

from .errors import ValidationError

type Backend = Literal["memory", "azure", "dynamodb"]

_BACKENDS: frozenset[str] = frozenset({"memory", "azure", "dynamodb"})
_RETRY_MODES: frozenset[str] = frozenset({"legacy", "standard", "adaptive"})

ENV_PREFIX = "TABLEDICT_"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings handed to the store client; the library itself never retries."""

    max_attempts: int = 3
    backoff_factor: float = 0.8
    backoff_max: float = 30.0
    mode: str = "adaptive"

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValidationError("retry.max_attempts must be >= 1")
        if self.backoff_factor < 0 or self.backoff_max < 0:
            raise ValidationError("retry backoff values must be >= 0")
        if self.mode not in _RETRY_MODES:
            raise ValidationError(f"unsupported retry mode: {self.mode}")


@dataclass(frozen=True)
class StoreConfig:
    backend: Backend = "memory"
    table_name: str = "dictionaries"
    connection_string: str | None = None
    endpoint: str | None = None
    region: str | None = None
    connect_timeout: float = 1.0
    read_timeout: float = 3.0
    create_table: bool = False
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        if self.backend not in _BACKENDS:
            raise ValidationError(f"unsupported backend: {self.backend}")
        if not self.table_name:
            raise ValidationError("table_name is required")
        if self.connect_timeout <= 0 or self.read_timeout <= 0:
            raise ValidationError("timeouts must be > 0")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> StoreConfig:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValidationError(f"unknown config keys: {', '.join(unknown)}")

        kwargs = dict(data)
        retry = kwargs.pop("retry", None)
        if retry is not None:
            if not isinstance(retry, Mapping):
                raise ValidationError("retry must be a mapping")
            retry_known = {f.name for f in fields(RetryPolicy)}
            retry_unknown = sorted(set(retry) - retry_known)
            if retry_unknown:
                raise ValidationError(f"unknown retry keys: {', '.join(retry_unknown)}")
            kwargs["retry"] = RetryPolicy(**retry)

        try:
            return cls(**kwargs)
        except TypeError as err:
            raise ValidationError(str(err)) from err

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> StoreConfig:
        def get(name: str) -> str | None:
            value = environ.get(ENV_PREFIX + name)
            return value.strip() if value is not None and value.strip() else None

        config = cls()
        updates: dict[str, Any] = {}
        if (backend := get("BACKEND")) is not None:
            updates["backend"] = backend.lower()
        if (table_name := get("TABLE_NAME")) is not None:
            updates["table_name"] = table_name
        if (connection_string := get("CONNECTION_STRING")) is not None:
            updates["connection_string"] = connection_string
        if (endpoint := get("ENDPOINT")) is not None:
            updates["endpoint"] = endpoint
        if (region := get("REGION")) is not None:
            updates["region"] = region
        if (connect_timeout := get("CONNECT_TIMEOUT")) is not None:
            updates["connect_timeout"] = _parse_float("CONNECT_TIMEOUT", connect_timeout)
        if (read_timeout := get("READ_TIMEOUT")) is not None:
            updates["read_timeout"] = _parse_float("READ_TIMEOUT", read_timeout)
        if (create_table := get("CREATE_TABLE")) is not None:
            updates["create_table"] = create_table.lower() in {"1", "true", "yes", "on"}
        if (max_attempts := get("MAX_ATTEMPTS")) is not None:
            try:
                attempts = int(max_attempts)
            except ValueError as err:
                raise ValidationError(f"{ENV_PREFIX}MAX_ATTEMPTS must be an integer") from err
            updates["retry"] = replace(config.retry, max_attempts=attempts)

        return replace(config, **updates)

    def to_boto3_config(self) -> Config:
        return Config(
            connect_timeout=self.connect_timeout,
            read_timeout=self.read_timeout,
            retries={"max_attempts": self.retry.max_attempts, "mode": self.retry.mode},
        )

    def to_azure_kwargs(self) -> dict[str, Any]:
        return {
            "retry_total": self.retry.max_attempts - 1,
            "retry_backoff_factor": self.retry.backoff_factor,
            "retry_backoff_max": self.retry.backoff_max,
            "connection_timeout": self.connect_timeout,
            "read_timeout": self.read_timeout,
        }


def load_store_config(text: str) -> StoreConfig:
    """Parse a YAML (or JSON) document into a ``StoreConfig``.

    The document is either the config mapping itself or a mapping with a
    top-level ``store`` key.
    """
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as err:
        raise ValidationError(f"invalid config document: {err}") from err

    if raw is None:
        return StoreConfig()
    if not isinstance(raw, dict):
        raise ValidationError("config document must be a mapping")

    data = raw.get("store", raw)
    if not isinstance(data, dict):
        raise ValidationError("store config must be a mapping")
    return StoreConfig.from_mapping(cast(dict[str, Any], data))


def _parse_float(name: str, value: str) -> float:
    try:
        return float(value)
    except ValueError as err:
        raise ValidationError(f"{ENV_PREFIX}{name} must be a number") from err
