from .models import (
    WILDCARD,
    FeatureSet,
    FeatureSetReference,
    FieldSpec,
    SourceSpec,
    Store,
    StoreRecord,
    Subscription,
)
from .registry import Registry
from .repository import (
    InMemoryRegistryRepository,
    RegistryRepository,
    store_from_record,
    store_to_record,
)
from .snapshot import RegistrySnapshot
from .store_config import (
    BigQueryConfig,
    CassandraConfig,
    RedisClusterConfig,
    RedisConfig,
    StoreConfig,
    StoreType,
    config_version,
    decode,
    encode,
)
from .subscriptions import (
    format_subscriptions,
    parse_subscriptions,
    resolve,
    subscribed_stores,
)

__all__ = [
    "WILDCARD",
    "FeatureSet",
    "FeatureSetReference",
    "FieldSpec",
    "SourceSpec",
    "Store",
    "StoreRecord",
    "Subscription",
    "Registry",
    "RegistryRepository",
    "InMemoryRegistryRepository",
    "store_from_record",
    "store_to_record",
    "RegistrySnapshot",
    "StoreType",
    "StoreConfig",
    "RedisConfig",
    "RedisClusterConfig",
    "BigQueryConfig",
    "CassandraConfig",
    "encode",
    "decode",
    "config_version",
    "resolve",
    "subscribed_stores",
    "format_subscriptions",
    "parse_subscriptions",
]
