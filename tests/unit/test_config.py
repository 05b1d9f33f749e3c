from __future__ import annotations

import pytest

from tabledict_py.config import RetryPolicy, StoreConfig, load_store_config
from tabledict_py.errors import ValidationError


def test_store_config_defaults() -> None:
    config = StoreConfig()
    assert config.backend == "memory"
    assert config.table_name == "dictionaries"
    assert config.retry == RetryPolicy()
    assert config.create_table is False


def test_store_config_validation() -> None:
    with pytest.raises(ValidationError, match="unsupported backend"):
        StoreConfig(backend="sqlite")  # type: ignore[arg-type]
    with pytest.raises(ValidationError, match="table_name"):
        StoreConfig(table_name="")
    with pytest.raises(ValidationError, match="timeouts"):
        StoreConfig(read_timeout=0)
    with pytest.raises(ValidationError, match="max_attempts"):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValidationError, match="retry mode"):
        RetryPolicy(mode="eager")


def test_from_mapping_rejects_unknown_keys() -> None:
    with pytest.raises(ValidationError, match="unknown config keys: colour"):
        StoreConfig.from_mapping({"backend": "memory", "colour": "blue"})
    with pytest.raises(ValidationError, match="unknown retry keys: jitter"):
        StoreConfig.from_mapping({"retry": {"jitter": True}})
    with pytest.raises(ValidationError, match="retry must be a mapping"):
        StoreConfig.from_mapping({"retry": 3})


def test_load_store_config_reads_yaml() -> None:
    config = load_store_config(
        """
store:
  backend: dynamodb
  table_name: Settings
  endpoint: http://localhost:8000
  region: eu-west-1
  read_timeout: 5
  retry:
    max_attempts: 5
    mode: standard
"""
    )

    assert config.backend == "dynamodb"
    assert config.table_name == "Settings"
    assert config.endpoint == "http://localhost:8000"
    assert config.region == "eu-west-1"
    assert config.read_timeout == 5
    assert config.retry == RetryPolicy(max_attempts=5, mode="standard")


def test_load_store_config_edge_cases() -> None:
    assert load_store_config("") == StoreConfig()
    assert load_store_config("backend: azure\nconnection_string: x").backend == "azure"

    with pytest.raises(ValidationError, match="must be a mapping"):
        load_store_config("- a\n- b")
    with pytest.raises(ValidationError, match="store config must be a mapping"):
        load_store_config("store: 3")
    with pytest.raises(ValidationError, match="invalid config document"):
        load_store_config("store: [unclosed")


def test_from_env() -> None:
    config = StoreConfig.from_env(
        {
            "TABLEDICT_BACKEND": "DynamoDB",
            "TABLEDICT_TABLE_NAME": "Settings",
            "TABLEDICT_REGION": "us-east-1",
            "TABLEDICT_CONNECT_TIMEOUT": "2.5",
            "TABLEDICT_CREATE_TABLE": "yes",
            "TABLEDICT_MAX_ATTEMPTS": "7",
            "TABLEDICT_ENDPOINT": "   ",
        }
    )

    assert config.backend == "dynamodb"
    assert config.table_name == "Settings"
    assert config.region == "us-east-1"
    assert config.connect_timeout == 2.5
    assert config.create_table is True
    assert config.retry.max_attempts == 7
    assert config.endpoint is None

    assert StoreConfig.from_env({}) == StoreConfig()
    with pytest.raises(ValidationError, match="TABLEDICT_READ_TIMEOUT"):
        StoreConfig.from_env({"TABLEDICT_READ_TIMEOUT": "soon"})
    with pytest.raises(ValidationError, match="TABLEDICT_MAX_ATTEMPTS"):
        StoreConfig.from_env({"TABLEDICT_MAX_ATTEMPTS": "many"})


def test_client_settings() -> None:
    config = StoreConfig(connect_timeout=2.0, read_timeout=4.0, retry=RetryPolicy(max_attempts=4))

    boto_config = config.to_boto3_config()
    assert boto_config.connect_timeout == 2.0
    assert boto_config.read_timeout == 4.0
    assert boto_config.retries == {"max_attempts": 4, "mode": "adaptive"}

    assert config.to_azure_kwargs() == {
        "retry_total": 3,
        "retry_backoff_factor": 0.8,
        "retry_backoff_max": 30.0,
        "connection_timeout": 2.0,
        "read_timeout": 4.0,
    }
