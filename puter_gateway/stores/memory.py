from __future__ import annotations

import copy
from threading import Lock
from typing import Any

from puter_gateway.stores.base import SystemConfig, TenantRecord, UsageRecord


class InMemoryGatewayStore:
    """Process-local implementation of every store protocol."""

    def __init__(
        self,
        *,
        tenants: list[TenantRecord] | None = None,
        system_config: SystemConfig | None = None,
    ) -> None:
        self._lock = Lock()
        self._tenants: dict[str, TenantRecord] = {}
        self._lifetime: dict[str, dict[str, int]] = {}
        self._system_config = system_config or SystemConfig()
        self.usage_records: list[UsageRecord] = []
        self.blocked: dict[str, dict[str, dict[str, Any]]] = {}
        self.add_blocked_calls: list[tuple[str, str, str]] = []
        for tenant in tenants or []:
            self.add_tenant(tenant)

    def add_tenant(self, tenant: TenantRecord) -> None:
        with self._lock:
            self._tenants[tenant.tenant_id] = tenant

    def set_system_config(self, config: SystemConfig) -> None:
        with self._lock:
            self._system_config = config

    def tenant(self, tenant_id: str) -> TenantRecord | None:
        with self._lock:
            return self._tenants.get(tenant_id)

    def lifetime_usage(self, tenant_id: str) -> dict[str, int]:
        with self._lock:
            return dict(self._lifetime.get(tenant_id, {}))

    async def get_by_api_key(self, api_key: str) -> TenantRecord | None:
        with self._lock:
            for tenant in self._tenants.values():
                if tenant.api_key == api_key:
                    return copy.deepcopy(tenant)
        return None

    async def reset_daily_usage(self, tenant_id: str, today: str) -> None:
        with self._lock:
            tenant = self._tenants.get(tenant_id)
            if tenant is None:
                return
            tenant.daily_requests_used = 0
            tenant.last_request_date = today

    async def increment_daily_usage(self, tenant_id: str, today: str) -> int:
        with self._lock:
            tenant = self._tenants.get(tenant_id)
            if tenant is None:
                return 0
            if tenant.last_request_date != today:
                tenant.daily_requests_used = 0
                tenant.last_request_date = today
            tenant.daily_requests_used += 1
            return tenant.daily_requests_used

    async def add_lifetime_usage(
        self,
        tenant_id: str,
        *,
        prompt_tokens: int,
        completion_tokens: int,
        total_tokens: int,
        images: int = 0,
    ) -> None:
        with self._lock:
            counters = self._lifetime.setdefault(tenant_id, {})
            counters["total_requests"] = counters.get("total_requests", 0) + 1
            counters["total_prompt_tokens"] = (
                counters.get("total_prompt_tokens", 0) + prompt_tokens
            )
            counters["total_completion_tokens"] = (
                counters.get("total_completion_tokens", 0) + completion_tokens
            )
            counters["total_tokens"] = counters.get("total_tokens", 0) + total_tokens
            if images:
                counters["total_image_generations"] = (
                    counters.get("total_image_generations", 0) + images
                )

    async def get_system_config(self) -> SystemConfig:
        with self._lock:
            return copy.deepcopy(self._system_config)

    async def append(self, record: UsageRecord) -> None:
        with self._lock:
            self.usage_records.append(record)

    async def load_blocked(self, date_key: str) -> dict[str, dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self.blocked.get(date_key, {}))

    async def add_blocked(
        self,
        date_key: str,
        credential_hash: str,
        *,
        reason: str,
        failed_at: str,
    ) -> None:
        with self._lock:
            self.add_blocked_calls.append((date_key, credential_hash, reason))
            self.blocked.setdefault(date_key, {})[credential_hash] = {
                "failed_at": failed_at,
                "reason": reason,
            }
