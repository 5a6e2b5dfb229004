"""Typed store configurations and their byte codec.

Every :class:`StoreType` owns exactly one pydantic schema. ``schema_for``
matches exhaustively over the enum so that adding a backend without a schema
is rejected by the type checker and by the completeness check at the bottom of
this module.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Union, assert_never

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from fsplane.foundation.common import hash_bytes
from fsplane.foundation.errors import CorruptConfig, UnsupportedStoreType, ValidationError


class StoreType(str, Enum):
    REDIS = "REDIS"
    REDIS_CLUSTER = "REDIS_CLUSTER"
    BIGQUERY = "BIGQUERY"
    CASSANDRA = "CASSANDRA"


class _StoreConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class RedisConfig(_StoreConfigModel):
    host: str = Field(min_length=1)
    port: int = Field(ge=1, le=65535)
    initial_backoff_ms: int = Field(default=0, ge=0)
    max_retries: int = Field(default=0, ge=0)
    flush_frequency_seconds: int = Field(default=0, ge=0)


class RedisClusterConfig(_StoreConfigModel):
    # comma separated ``host:port`` seed list
    connection_string: str = Field(min_length=1)
    initial_backoff_ms: int = Field(default=0, ge=0)
    max_retries: int = Field(default=0, ge=0)
    flush_frequency_seconds: int = Field(default=0, ge=0)


class BigQueryConfig(_StoreConfigModel):
    project_id: str = Field(min_length=1)
    dataset_id: str = Field(min_length=1)
    staging_location: str = ""
    initial_retry_delay_seconds: int = Field(default=0, ge=0)
    total_timeout_seconds: int = Field(default=0, ge=0)
    write_triggering_frequency_seconds: int = Field(default=0, ge=0)


class CassandraConfig(_StoreConfigModel):
    bootstrap_hosts: str = Field(min_length=1)
    port: int = Field(ge=1, le=65535)
    keyspace: str = Field(min_length=1)
    table_name: str = Field(min_length=1)
    replication_options: dict[str, str] = Field(default_factory=dict)
    default_ttl: int = Field(default=0, ge=0)
    versionless: bool = False
    consistency: str = "ONE"
    tombstones: bool = False


StoreConfig = Union[RedisConfig, RedisClusterConfig, BigQueryConfig, CassandraConfig]


def coerce_store_type(raw: object) -> StoreType:
    """Return ``raw`` as a :class:`StoreType` or raise :class:`UnsupportedStoreType`."""

    if isinstance(raw, StoreType):
        return raw
    if isinstance(raw, str):
        try:
            return StoreType(raw.strip().upper())
        except ValueError:
            pass
    raise UnsupportedStoreType(raw)


def schema_for(store_type: StoreType) -> type[StoreConfig]:
    match store_type:
        case StoreType.REDIS:
            return RedisConfig
        case StoreType.REDIS_CLUSTER:
            return RedisClusterConfig
        case StoreType.BIGQUERY:
            return BigQueryConfig
        case StoreType.CASSANDRA:
            return CassandraConfig
        case _:
            assert_never(store_type)


def parse_config(store_type: object, data: Mapping[str, Any] | StoreConfig) -> StoreConfig:
    """Build the typed config for ``store_type`` from a plain mapping.

    Used at registry-write time, so every failure is a :class:`ValidationError`.
    """

    try:
        st = coerce_store_type(store_type)
    except UnsupportedStoreType as exc:
        raise ValidationError(str(exc)) from exc
    schema = schema_for(st)
    if isinstance(data, BaseModel):
        if not isinstance(data, schema):
            raise ValidationError(
                f"{type(data).__name__} is not a valid config for store type {st.value}"
            )
        return data
    try:
        return schema.model_validate(dict(data))
    except pydantic.ValidationError as exc:
        raise ValidationError(f"invalid {st.value} config: {exc}") from exc


def encode(store_type: object, config: StoreConfig) -> bytes:
    """Serialize ``config`` under the schema of ``store_type``."""

    typed = parse_config(store_type, config)
    return typed.model_dump_json().encode("utf-8")


def decode(store_type: object, data: bytes) -> StoreConfig:
    """Parse persisted ``data`` under the schema of ``store_type``.

    Raises :class:`UnsupportedStoreType` for unknown types and
    :class:`CorruptConfig` when the bytes do not match the schema.
    """

    st = coerce_store_type(store_type)
    schema = schema_for(st)
    try:
        return schema.model_validate_json(data)
    except pydantic.ValidationError as exc:
        raise CorruptConfig(st.value, f"{exc.error_count()} schema error(s)") from exc


def config_version(store_type: object, config: StoreConfig | bytes) -> str:
    """Content digest of a store config, stable across processes."""

    st = coerce_store_type(store_type)
    payload = config if isinstance(config, bytes) else encode(st, config)
    return hash_bytes(st.value.encode("utf-8") + b"\x00" + payload)


def _check_schemas_complete() -> None:
    missing = [t.value for t in StoreType if schema_for(t) is None]
    if missing:  # pragma: no cover - guarded by assert_never
        raise RuntimeError(f"store types without schema: {missing}")


_check_schemas_complete()


__all__ = [
    "StoreType",
    "StoreConfig",
    "RedisConfig",
    "RedisClusterConfig",
    "BigQueryConfig",
    "CassandraConfig",
    "coerce_store_type",
    "schema_for",
    "parse_config",
    "encode",
    "decode",
    "config_version",
]
