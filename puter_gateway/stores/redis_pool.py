from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

_redis_from_url: Any | None

try:
    from redis.asyncio import from_url as _redis_from_url
except ImportError:  # pragma: no cover - optional dependency.
    _redis_from_url = None

if TYPE_CHECKING:
    import logging

    from puter_gateway.stores.base import PoolStore

BLOCKED_TTL_SECONDS = 48 * 60 * 60


class RedisPoolStore:
    """Day-scoped blocked-credential documents kept as redis hashes."""

    def __init__(self, redis_client: Any, key_prefix: str = "puter-gateway") -> None:
        self._redis = redis_client
        self._key_prefix = key_prefix.rstrip(":")

    def _key(self, date_key: str) -> str:
        return f"{self._key_prefix}:blocked:{date_key}"

    async def load_blocked(self, date_key: str) -> dict[str, dict[str, Any]]:
        raw = await self._redis.hgetall(self._key(date_key))
        blocked: dict[str, dict[str, Any]] = {}
        for field, value in (raw or {}).items():
            credential_hash = field.decode("utf-8") if isinstance(field, bytes) else str(field)
            try:
                decoded = value.decode("utf-8") if isinstance(value, bytes) else value
                entry = json.loads(decoded)
            except (TypeError, ValueError, UnicodeDecodeError):
                entry = {}
            blocked[credential_hash] = entry if isinstance(entry, dict) else {}
        return blocked

    async def add_blocked(
        self,
        date_key: str,
        credential_hash: str,
        *,
        reason: str,
        failed_at: str,
    ) -> None:
        key = self._key(date_key)
        value = json.dumps(
            {"failed_at": failed_at, "reason": reason}, separators=(",", ":")
        )
        await self._redis.hset(key, credential_hash, value)
        await self._redis.expire(key, BLOCKED_TTL_SECONDS)

    async def close(self) -> None:
        close = getattr(self._redis, "aclose", None) or getattr(self._redis, "close", None)
        if close is not None:
            await close()


def build_redis_pool_store(redis_url: str, key_prefix: str) -> RedisPoolStore:
    if _redis_from_url is None:  # pragma: no cover - covered by fallback tests.
        msg = "redis package is not installed"
        raise RuntimeError(msg)
    client = _redis_from_url(redis_url, decode_responses=False)
    return RedisPoolStore(redis_client=client, key_prefix=key_prefix)


def build_pool_store(
    *,
    redis_url: str | None,
    key_prefix: str,
    fallback: PoolStore,
    logger: logging.Logger | None = None,
) -> PoolStore:
    if not redis_url:
        return fallback
    try:
        return build_redis_pool_store(redis_url, key_prefix)
    except RuntimeError as exc:
        if logger is not None:
            logger.warning(
                "pool_store_redis_unavailable reason=%s fallback=store_backend",
                str(exc),
            )
        return fallback
