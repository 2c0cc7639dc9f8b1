from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

KEY_TYPE_TENANT = "tenant"
KEY_TYPE_SYSTEM = "system"
KEY_TYPE_DIRECT = "direct-token"
KEY_TYPE_SYSTEM_FALLBACK = "system-fallback"


@dataclass(slots=True)
class TenantRecord:
    tenant_id: str
    api_key: str
    credentials: list[str] = field(default_factory=list)
    daily_requests_used: int = 0
    last_request_date: str | None = None
    email: str | None = None

    @property
    def has_own_credentials(self) -> bool:
        return bool(self.credentials)


@dataclass(slots=True)
class SystemConfig:
    system_credentials: list[str] = field(default_factory=list)
    daily_free_limit: int | None = None


@dataclass(slots=True)
class UsageRecord:
    tenant_id: str | None
    model: str
    provider: str
    success: bool
    key_type: str | None = None
    kind: str = "chat"
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    error: str | None = None
    timestamp: str = ""
    date: str = ""

    def __post_init__(self) -> None:
        if not self.timestamp:
            now = datetime.now(timezone.utc)
            self.timestamp = now.isoformat()
            if not self.date:
                self.date = now.date().isoformat()
        elif not self.date:
            self.date = self.timestamp.split("T", 1)[0]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class TenantStore(Protocol):
    async def get_by_api_key(self, api_key: str) -> TenantRecord | None: ...

    async def reset_daily_usage(self, tenant_id: str, today: str) -> None: ...

    async def increment_daily_usage(self, tenant_id: str, today: str) -> int: ...

    async def add_lifetime_usage(
        self,
        tenant_id: str,
        *,
        prompt_tokens: int,
        completion_tokens: int,
        total_tokens: int,
        images: int = 0,
    ) -> None: ...


class SystemConfigStore(Protocol):
    async def get_system_config(self) -> SystemConfig: ...


class UsageLogStore(Protocol):
    async def append(self, record: UsageRecord) -> None: ...


class PoolStore(Protocol):
    async def load_blocked(self, date_key: str) -> dict[str, dict[str, Any]]: ...

    async def add_blocked(
        self,
        date_key: str,
        credential_hash: str,
        *,
        reason: str,
        failed_at: str,
    ) -> None: ...


def coerce_credentials(raw: Any) -> list[str]:
    """Accept ``["tok", {"key": "tok2"}]`` style lists and return plain tokens."""
    if not isinstance(raw, list):
        return []
    credentials: list[str] = []
    for item in raw:
        value = item.get("key") if isinstance(item, dict) else item
        if isinstance(value, str) and value.strip():
            credentials.append(value.strip())
    return credentials


def utc_today() -> str:
    return datetime.now(timezone.utc).date().isoformat()
