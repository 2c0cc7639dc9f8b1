from __future__ import annotations

import logging
from dataclasses import dataclass

from puter_gateway.settings import Settings
from puter_gateway.stores.base import (
    KEY_TYPE_DIRECT,
    KEY_TYPE_SYSTEM,
    KEY_TYPE_SYSTEM_FALLBACK,
    KEY_TYPE_TENANT,
    PoolStore,
    SystemConfig,
    SystemConfigStore,
    TenantRecord,
    TenantStore,
    UsageLogStore,
    UsageRecord,
    coerce_credentials,
    utc_today,
)
from puter_gateway.stores.memory import InMemoryGatewayStore
from puter_gateway.stores.redis_pool import RedisPoolStore, build_pool_store
from puter_gateway.stores.usage_log import JsonlUsageLog
from puter_gateway.stores.yaml_file import YamlGatewayStore

__all__ = [
    "KEY_TYPE_DIRECT",
    "KEY_TYPE_SYSTEM",
    "KEY_TYPE_SYSTEM_FALLBACK",
    "KEY_TYPE_TENANT",
    "GatewayStores",
    "InMemoryGatewayStore",
    "JsonlUsageLog",
    "PoolStore",
    "RedisPoolStore",
    "SystemConfig",
    "SystemConfigStore",
    "TenantRecord",
    "TenantStore",
    "UsageLogStore",
    "UsageRecord",
    "YamlGatewayStore",
    "build_stores",
    "coerce_credentials",
    "utc_today",
]


@dataclass(slots=True)
class GatewayStores:
    tenants: TenantStore
    system: SystemConfigStore
    usage: UsageLogStore
    pool: PoolStore

    @classmethod
    def in_memory(cls, store: InMemoryGatewayStore | None = None) -> GatewayStores:
        backing = store or InMemoryGatewayStore()
        return cls(tenants=backing, system=backing, usage=backing, pool=backing)


def build_stores(
    settings: Settings, logger: logging.Logger | None = None
) -> GatewayStores:
    backing: InMemoryGatewayStore | YamlGatewayStore
    usage: UsageLogStore
    if settings.store_backend == "memory":
        backing = InMemoryGatewayStore()
        usage = backing
    else:
        backing = YamlGatewayStore(settings.store_path)
        usage = JsonlUsageLog(
            path=settings.usage_log_path,
            enabled=settings.usage_log_enabled,
        )

    pool = build_pool_store(
        redis_url=settings.redis_url,
        key_prefix=settings.redis_key_prefix,
        fallback=backing,
        logger=logger,
    )
    return GatewayStores(tenants=backing, system=backing, usage=usage, pool=pool)
