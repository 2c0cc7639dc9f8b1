from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Sequence

from puter_gateway.stores.base import PoolStore

SHORT_BLOCK_SECONDS = 5 * 60.0

logger = logging.getLogger("uvicorn.error")


def hash_credential(credential: str) -> str:
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()[:16]


def utc_date_key(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).date().isoformat()


@dataclass(slots=True, frozen=True)
class CredentialChoice:
    credential: str
    index: int

    @property
    def credential_hash(self) -> str:
        return hash_credential(self.credential)


class KeyPool:
    """Credential health shared by every request in the process.

    Two independent block regimes apply to a credential hash: a short
    cooldown after a transient rate limit, and a day block that lasts until
    the UTC calendar date changes. All state sits behind one lock; every
    public entry point first rolls the day over if the date has changed.
    """

    def __init__(
        self,
        *,
        pool_store: PoolStore | None = None,
        short_block_seconds: float = SHORT_BLOCK_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._pool_store = pool_store
        self._short_block_seconds = float(short_block_seconds)
        self._clock = clock
        self._lock = Lock()
        self._short_blocked_until: dict[str, float] = {}
        self._daily_blocked: set[str] = set()
        self._current_date: str | None = None
        self._daily_loaded = False
        self._load_lock: asyncio.Lock | None = None
        self._load_lock_loop: asyncio.AbstractEventLoop | None = None
        self._pending: set[asyncio.Task[None]] = set()

    def _roll_date_locked(self) -> str:
        today = utc_date_key(self._clock())
        if self._current_date != today:
            if self._current_date is not None:
                logger.info(
                    "key_pool_date_rollover previous=%s current=%s cleared=%d",
                    self._current_date,
                    today,
                    len(self._daily_blocked),
                )
            self._daily_blocked.clear()
            self._daily_loaded = False
            self._current_date = today
        return today

    def _available_locked(self, credential_hash: str) -> bool:
        if credential_hash in self._daily_blocked:
            return False
        until = self._short_blocked_until.get(credential_hash)
        if until is None:
            return True
        if self._clock() < until:
            return False
        self._short_blocked_until.pop(credential_hash, None)
        return True

    def is_available(self, credential: str) -> bool:
        credential_hash = hash_credential(credential)
        with self._lock:
            self._roll_date_locked()
            return self._available_locked(credential_hash)

    def mark_temp_failed(self, credential: str) -> None:
        credential_hash = hash_credential(credential)
        with self._lock:
            self._roll_date_locked()
            until = self._clock() + self._short_block_seconds
            self._short_blocked_until[credential_hash] = until
        logger.info(
            "key_pool_temp_blocked hash=%s cooldown_seconds=%.0f",
            credential_hash[:8],
            self._short_block_seconds,
        )

    def mark_daily_limited(self, credential: str, reason: str = "usage-limited") -> None:
        credential_hash = hash_credential(credential)
        with self._lock:
            date_key = self._roll_date_locked()
            self._daily_blocked.add(credential_hash)
            failed_at = datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()
        logger.info(
            "key_pool_daily_blocked hash=%s date=%s reason=%s",
            credential_hash[:8],
            date_key,
            reason,
        )
        self._schedule_persist(date_key, credential_hash, reason, failed_at)

    def next(
        self, credentials: Sequence[str], start_index: int = 0
    ) -> CredentialChoice | None:
        total = len(credentials)
        if total == 0:
            return None
        start = start_index % total
        with self._lock:
            self._roll_date_locked()
            for offset in range(total):
                index = (start + offset) % total
                credential = credentials[index]
                if self._available_locked(hash_credential(credential)):
                    return CredentialChoice(credential=credential, index=index)
        return None

    async def load_daily_blocked(self) -> None:
        """Load today's persisted day blocks once; concurrent callers share the read.

        A failed read leaves the day unloaded so the next call retries it.
        """
        with self._lock:
            self._roll_date_locked()
            if self._daily_loaded:
                return
        async with self._loop_load_lock():
            with self._lock:
                date_key = self._roll_date_locked()
                if self._daily_loaded:
                    return
            if self._pool_store is None:
                blocked: dict[str, Any] = {}
            else:
                try:
                    blocked = await self._pool_store.load_blocked(date_key)
                except Exception as exc:
                    logger.warning(
                        "key_pool_load_failed date=%s error=%s", date_key, exc
                    )
                    return
            with self._lock:
                if self._current_date != date_key:
                    return
                self._daily_blocked.update(blocked.keys())
                self._daily_loaded = True
        if self._pool_store is not None:
            logger.info(
                "key_pool_daily_loaded date=%s blocked=%d", date_key, len(blocked)
            )

    def _loop_load_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._load_lock is None or self._load_lock_loop is not loop:
            self._load_lock = asyncio.Lock()
            self._load_lock_loop = loop
        return self._load_lock

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            date_key = self._roll_date_locked()
            now = self._clock()
            short_blocked = sum(
                1 for until in self._short_blocked_until.values() if until > now
            )
            return {
                "date": date_key,
                "daily_loaded": self._daily_loaded,
                "daily_blocked": len(self._daily_blocked),
                "short_blocked": short_blocked,
            }

    async def drain(self) -> None:
        """Wait for in-flight persistence writes."""
        pending = list(self._pending)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _schedule_persist(
        self, date_key: str, credential_hash: str, reason: str, failed_at: str
    ) -> None:
        if self._pool_store is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "key_pool_persist_skipped hash=%s reason=no_running_loop",
                credential_hash[:8],
            )
            return
        task = loop.create_task(
            self._persist(date_key, credential_hash, reason, failed_at)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(
        self, date_key: str, credential_hash: str, reason: str, failed_at: str
    ) -> None:
        if self._pool_store is None:
            return
        try:
            await self._pool_store.add_blocked(
                date_key,
                credential_hash,
                reason=reason,
                failed_at=failed_at,
            )
        except Exception as exc:
            logger.warning(
                "key_pool_persist_failed hash=%s date=%s error=%s",
                credential_hash[:8],
                date_key,
                exc,
            )
