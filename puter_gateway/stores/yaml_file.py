from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from puter_gateway.persistence import YamlDocument
from puter_gateway.stores.base import SystemConfig, TenantRecord, coerce_credentials

# Document layout:
#
#   system:
#     system_credentials: [...]
#     daily_free_limit: 15
#   tenants:
#     <tenant_id>:
#       api_key: sk-...
#       credentials: [...]
#       daily_requests_used: 0
#       last_request_date: "YYYY-MM-DD"
#   blocked_credentials:
#     "YYYY-MM-DD":
#       <hash>: {failed_at: ..., reason: ...}


class YamlGatewayStore:
    def __init__(self, path: str | Path) -> None:
        self._document = YamlDocument(path)

    @property
    def path(self) -> Path:
        return self._document.path

    async def get_by_api_key(self, api_key: str) -> TenantRecord | None:
        payload = await asyncio.to_thread(self._document.load)
        tenants = payload.get("tenants")
        if not isinstance(tenants, dict):
            return None
        for tenant_id, raw in tenants.items():
            if isinstance(raw, dict) and raw.get("api_key") == api_key:
                return _tenant_from_mapping(str(tenant_id), raw)
        return None

    async def reset_daily_usage(self, tenant_id: str, today: str) -> None:
        def mutate(payload: dict[str, Any]) -> None:
            tenant = _tenant_mapping(payload, tenant_id)
            if tenant is None:
                return
            tenant["daily_requests_used"] = 0
            tenant["last_request_date"] = today

        await asyncio.to_thread(self._document.update, mutate)

    async def increment_daily_usage(self, tenant_id: str, today: str) -> int:
        def mutate(payload: dict[str, Any]) -> int:
            tenant = _tenant_mapping(payload, tenant_id)
            if tenant is None:
                return 0
            used = _as_int(tenant.get("daily_requests_used"))
            if str(tenant.get("last_request_date") or "") != today:
                used = 0
            used += 1
            tenant["daily_requests_used"] = used
            tenant["last_request_date"] = today
            return used

        return await asyncio.to_thread(self._document.update, mutate)

    async def add_lifetime_usage(
        self,
        tenant_id: str,
        *,
        prompt_tokens: int,
        completion_tokens: int,
        total_tokens: int,
        images: int = 0,
    ) -> None:
        def mutate(payload: dict[str, Any]) -> None:
            tenant = _tenant_mapping(payload, tenant_id)
            if tenant is None:
                return
            increments = {
                "total_requests": 1,
                "total_prompt_tokens": prompt_tokens,
                "total_completion_tokens": completion_tokens,
                "total_tokens": total_tokens,
            }
            if images:
                increments["total_image_generations"] = images
            for key, amount in increments.items():
                tenant[key] = _as_int(tenant.get(key)) + int(amount)

        await asyncio.to_thread(self._document.update, mutate)

    async def get_system_config(self) -> SystemConfig:
        payload = await asyncio.to_thread(self._document.load)
        system = payload.get("system")
        if not isinstance(system, dict):
            return SystemConfig()
        limit = system.get("daily_free_limit")
        return SystemConfig(
            system_credentials=coerce_credentials(system.get("system_credentials")),
            daily_free_limit=limit if isinstance(limit, int) and limit >= 0 else None,
        )

    async def load_blocked(self, date_key: str) -> dict[str, dict[str, Any]]:
        payload = await asyncio.to_thread(self._document.load)
        blocked = payload.get("blocked_credentials")
        if not isinstance(blocked, dict):
            return {}
        # Unquoted YAML dates load as ``datetime.date`` keys.
        day = next(
            (value for key, value in blocked.items() if str(key) == date_key),
            None,
        )
        if not isinstance(day, dict):
            return {}
        return {
            str(credential_hash): dict(entry) if isinstance(entry, dict) else {}
            for credential_hash, entry in day.items()
        }

    async def add_blocked(
        self,
        date_key: str,
        credential_hash: str,
        *,
        reason: str,
        failed_at: str,
    ) -> None:
        def mutate(payload: dict[str, Any]) -> None:
            raw_blocked = payload.get("blocked_credentials")
            if not isinstance(raw_blocked, dict):
                raw_blocked = {}
            # Older day documents are dropped; only the current day is consulted.
            blocked = {
                str(key): value
                for key, value in raw_blocked.items()
                if str(key) >= date_key
            }
            day = blocked.get(date_key)
            if not isinstance(day, dict):
                day = {}
                blocked[date_key] = day
            day[credential_hash] = {"failed_at": failed_at, "reason": reason}
            payload["blocked_credentials"] = blocked

        await asyncio.to_thread(self._document.update, mutate)


def _tenant_mapping(payload: dict[str, Any], tenant_id: str) -> dict[str, Any] | None:
    tenants = payload.get("tenants")
    if not isinstance(tenants, dict):
        return None
    # Unquoted numeric tenant ids load as ``int`` keys.
    tenant = next(
        (value for key, value in tenants.items() if str(key) == tenant_id),
        None,
    )
    if not isinstance(tenant, dict):
        return None
    return tenant


def _tenant_from_mapping(tenant_id: str, raw: dict[str, Any]) -> TenantRecord:
    last_date = raw.get("last_request_date")
    return TenantRecord(
        tenant_id=tenant_id,
        api_key=str(raw.get("api_key", "")),
        credentials=coerce_credentials(raw.get("credentials")),
        daily_requests_used=_as_int(raw.get("daily_requests_used")),
        last_request_date=str(last_date) if last_date else None,
        email=raw.get("email") if isinstance(raw.get("email"), str) else None,
    )


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
