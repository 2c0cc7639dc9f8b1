from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from fastapi.responses import JSONResponse, Response, StreamingResponse

from puter_gateway.errors import GatewayError, UpstreamError
from puter_gateway.key_pool import KeyPool, hash_credential
from puter_gateway.messages import build_chat_args, normalize_messages, prompt_text
from puter_gateway.model_router import ModelRouter, RouteDecision
from puter_gateway.responses import TokenUsage, completion_from_upstream, estimate_tokens
from puter_gateway.settings import Settings
from puter_gateway.stores import (
    KEY_TYPE_DIRECT,
    KEY_TYPE_SYSTEM,
    KEY_TYPE_SYSTEM_FALLBACK,
    KEY_TYPE_TENANT,
    GatewayStores,
    TenantRecord,
    UsageRecord,
    utc_today,
)
from puter_gateway.streaming import ChatStreamTranslator, sse_error
from puter_gateway.upstream import UpstreamClient, UpstreamStream

T = TypeVar("T")

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

logger = logging.getLogger("uvicorn.error")


class CredentialsExhaustedError(GatewayError):
    """Every credential in the list was tried or is currently blocked."""

    def __init__(
        self,
        last_error: UpstreamError | None = None,
        *,
        insufficient_funds: bool = False,
    ) -> None:
        super().__init__(500, "All keys unavailable")
        self.last_error = last_error
        self.insufficient_funds = insufficient_funds


@dataclass(slots=True)
class TenantAccess:
    tenant: TenantRecord | None
    credentials: list[str]
    key_type: str
    free_tier: bool = False
    daily_limit: int = 0
    direct_token: str | None = None
    fallback_credentials: list[str] = field(default_factory=list)

    @property
    def tenant_id(self) -> str | None:
        return self.tenant.tenant_id if self.tenant is not None else None


class BaseExecutor:
    """Tenant access, quota and credential rotation shared by chat and images."""

    def __init__(
        self,
        *,
        settings: Settings,
        stores: GatewayStores,
        key_pool: KeyPool,
        upstream: UpstreamClient,
        router: ModelRouter | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.stores = stores
        self.key_pool = key_pool
        self.upstream = upstream
        self.router = router or ModelRouter()
        self._rng = rng or random.Random()
        self._background: set[asyncio.Task[None]] = set()

    @staticmethod
    def require_api_key(api_key: str | None) -> str:
        if not api_key:
            raise GatewayError(401, "API key required", code="invalid_api_key")
        return api_key

    async def authenticate(self, api_key: str | None) -> TenantRecord:
        tenant = await self.stores.tenants.get_by_api_key(self.require_api_key(api_key))
        if tenant is None:
            raise GatewayError(401, "Invalid API key", code="invalid_api_key")
        return tenant

    async def system_credentials(self) -> tuple[list[str], int]:
        config = await self.stores.system.get_system_config()
        credentials = list(config.system_credentials) or self.settings.fallback_credentials
        limit = (
            config.daily_free_limit
            if config.daily_free_limit is not None
            else self.settings.free_daily_limit
        )
        return credentials, limit

    async def direct_access(self, token: str) -> TenantAccess:
        credentials, _ = await self.system_credentials()
        return TenantAccess(
            tenant=None,
            credentials=[token],
            key_type=KEY_TYPE_DIRECT,
            direct_token=token,
            fallback_credentials=credentials,
        )

    async def tenant_access(
        self,
        tenant: TenantRecord,
        *,
        model: str,
        provider: str,
        kind: str,
        request_id: str,
    ) -> TenantAccess:
        if tenant.has_own_credentials:
            return TenantAccess(
                tenant=tenant,
                credentials=list(tenant.credentials),
                key_type=KEY_TYPE_TENANT,
            )

        system_credentials, limit = await self.system_credentials()
        today = utc_today()
        used = tenant.daily_requests_used
        if tenant.last_request_date != today:
            await self.stores.tenants.reset_daily_usage(tenant.tenant_id, today)
            used = 0
        if used >= limit:
            await self._reject_daily_limit(
                tenant,
                used,
                limit,
                model=model,
                provider=provider,
                kind=kind,
                request_id=request_id,
            )
        if not system_credentials:
            raise GatewayError(500, "No credential configured")
        # The tenant snapshot may be stale; the store's count is authoritative.
        counted = await self.stores.tenants.increment_daily_usage(tenant.tenant_id, today)
        if counted > limit:
            await self._reject_daily_limit(
                tenant,
                counted - 1,
                limit,
                model=model,
                provider=provider,
                kind=kind,
                request_id=request_id,
            )
        return TenantAccess(
            tenant=tenant,
            credentials=system_credentials,
            key_type=KEY_TYPE_SYSTEM,
            free_tier=True,
            daily_limit=limit,
        )

    async def _reject_daily_limit(
        self,
        tenant: TenantRecord,
        used: int,
        limit: int,
        *,
        model: str,
        provider: str,
        kind: str,
        request_id: str,
    ) -> None:
        logger.info(
            "daily_limit_exceeded request_id=%s tenant=%s used=%d limit=%d",
            request_id,
            tenant.tenant_id,
            used,
            limit,
        )
        await self.record_usage(
            UsageRecord(
                tenant_id=tenant.tenant_id,
                model=model,
                provider=provider,
                success=False,
                key_type=KEY_TYPE_SYSTEM,
                kind=kind,
                error="Daily limit exceeded",
            )
        )
        raise GatewayError(
            403,
            f"Daily free limit ({limit}) reached.",
            code="DAILY_LIMIT_EXCEEDED",
            extra={"dailyUsed": used, "dailyLimit": limit},
        )

    def _start_index(self, total: int) -> int:
        if total <= 1 or not self.settings.randomize_credential_start:
            return 0
        return self._rng.randrange(total)

    async def rotate(
        self,
        credentials: list[str],
        attempt: Callable[[str], Awaitable[T]],
        *,
        request_id: str,
        retry_fatal: bool = False,
    ) -> T:
        if not credentials:
            raise GatewayError(500, "No credential configured")
        await self.key_pool.load_daily_blocked()

        total = len(credentials)
        start = self._start_index(total)
        tried: set[int] = set()
        last_error: UpstreamError | None = None
        insufficient_funds = False
        while len(tried) < total:
            choice = self.key_pool.next(credentials, start)
            if choice is None or choice.index in tried:
                break
            tried.add(choice.index)
            start = choice.index + 1
            try:
                return await attempt(choice.credential)
            except UpstreamError as exc:
                logger.warning(
                    (
                        "upstream_attempt_failed request_id=%s credential=%s attempt=%d/%d "
                        "rate_limited=%s daily=%s error=%s"
                    ),
                    request_id,
                    choice.credential_hash[:8],
                    len(tried),
                    total,
                    exc.rate_limited,
                    exc.daily,
                    exc.message,
                )
                last_error = exc
                insufficient_funds = insufficient_funds or exc.insufficient_funds
                if exc.rate_limited:
                    self.key_pool.mark_temp_failed(choice.credential)
                    if exc.daily:
                        self.key_pool.mark_daily_limited(
                            choice.credential, reason="usage-limited"
                        )
                    continue
                if retry_fatal:
                    continue
                raise
        logger.warning(
            "credentials_exhausted request_id=%s tried=%d total=%d",
            request_id,
            len(tried),
            total,
        )
        raise CredentialsExhaustedError(last_error, insufficient_funds=insufficient_funds)

    async def invoke(
        self,
        access: TenantAccess,
        attempt: Callable[[str], Awaitable[T]],
        *,
        request_id: str,
        retry_fatal: bool = False,
    ) -> tuple[T, str]:
        if access.direct_token is None:
            result = await self.rotate(
                access.credentials,
                attempt,
                request_id=request_id,
                retry_fatal=retry_fatal,
            )
            return result, access.key_type

        try:
            return await attempt(access.direct_token), KEY_TYPE_DIRECT
        except UpstreamError as exc:
            logger.warning(
                "direct_token_failed request_id=%s credential=%s fallback_credentials=%d error=%s",
                request_id,
                hash_credential(access.direct_token)[:8],
                len(access.fallback_credentials),
                exc.message,
            )
            if not access.fallback_credentials:
                raise
        result = await self.rotate(
            access.fallback_credentials,
            attempt,
            request_id=request_id,
            retry_fatal=retry_fatal,
        )
        return result, KEY_TYPE_SYSTEM_FALLBACK

    async def record_usage(self, record: UsageRecord) -> None:
        try:
            await self.stores.usage.append(record)
        except Exception as exc:
            logger.warning(
                "usage_log_failed tenant=%s model=%s error=%s",
                record.tenant_id,
                record.model,
                exc,
            )

    async def add_lifetime_usage(
        self, access: TenantAccess, usage: TokenUsage, *, images: int = 0
    ) -> None:
        if access.tenant is None:
            return
        try:
            await self.stores.tenants.add_lifetime_usage(
                access.tenant.tenant_id,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
                images=images,
            )
        except Exception as exc:
            logger.warning(
                "lifetime_usage_failed tenant=%s error=%s",
                access.tenant.tenant_id,
                exc,
            )

    def run_in_background(self, coroutine: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        pending = list(self._background)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.key_pool.drain()


class ChatExecutor(BaseExecutor):
    async def execute(
        self,
        payload: dict[str, Any],
        *,
        api_key: str | None,
        direct_token: str | None = None,
        request_id: str,
    ) -> Response:
        tenant: TenantRecord | None = None
        if not direct_token:
            tenant = await self.authenticate(api_key)

        messages = payload.get("messages")
        if not isinstance(messages, list) or not messages:
            raise GatewayError(400, "messages is required")

        route = self.router.resolve_chat(
            payload.get("model"),
            tools=payload.get("tools"),
            thinking_budget=payload.get("thinking_budget"),
        )
        normalized = normalize_messages(messages, multimodal=route.supports_multimodal)
        if not normalized:
            raise GatewayError(400, "messages must contain at least one non-empty message")

        if tenant is None:
            access = await self.direct_access(str(direct_token))
        else:
            access = await self.tenant_access(
                tenant,
                model=route.requested_model,
                provider=route.provider,
                kind="chat",
                request_id=request_id,
            )

        stream = bool(payload.get("stream"))
        args = build_chat_args(payload, route, normalized, stream=stream)
        prompt_tokens = estimate_tokens(prompt_text(args["messages"]))
        logger.info(
            (
                "chat_request request_id=%s tenant=%s model=%s driver=%s upstream_model=%s "
                "stream=%s key_type=%s credentials=%d"
            ),
            request_id,
            access.tenant_id,
            route.requested_model,
            route.driver,
            route.upstream_model,
            stream,
            access.key_type,
            len(access.credentials),
        )

        if stream:
            return await self._execute_stream(
                access, route, args, request_id=request_id, prompt_tokens=prompt_tokens
            )

        async def attempt(credential: str) -> dict[str, Any]:
            return await self.upstream.complete(credential, route.driver, args)

        try:
            data, key_type = await self.invoke(access, attempt, request_id=request_id)
        except GatewayError as exc:
            await self._record_failure(access, route, exc.message)
            raise
        except UpstreamError as exc:
            await self._record_failure(access, route, exc.message)
            raise GatewayError(500, exc.message) from exc

        completion, usage = completion_from_upstream(
            data,
            completion_id=f"chatcmpl-{request_id}",
            created=int(time.time()),
            model=route.requested_model,
            prompt_tokens_estimate=prompt_tokens,
        )
        await self._record_success(access, route, key_type, usage)
        return JSONResponse(content=completion)

    async def _execute_stream(
        self,
        access: TenantAccess,
        route: RouteDecision,
        args: dict[str, Any],
        *,
        request_id: str,
        prompt_tokens: int,
    ) -> Response:
        async def attempt(credential: str) -> UpstreamStream:
            return await self.upstream.open_stream(credential, route.driver, args)

        try:
            upstream_stream, key_type = await self.invoke(
                access, attempt, request_id=request_id
            )
        except GatewayError as exc:
            await self._record_failure(access, route, exc.message)
            raise
        except UpstreamError as exc:
            await self._record_failure(access, route, exc.message)
            raise GatewayError(500, exc.message) from exc

        translator = ChatStreamTranslator(
            completion_id=f"chatcmpl-{request_id}",
            created=int(time.time()),
            model=route.requested_model,
            prompt_tokens_estimate=prompt_tokens,
        )

        async def stream_generator() -> AsyncIterator[bytes]:
            completed = False
            error_message: str | None = None
            try:
                yield translator.role_chunk()
                async for event in upstream_stream.events():
                    for frame in translator.feed(event):
                        yield frame
                for frame in translator.finish():
                    yield frame
                completed = True
            except UpstreamError as exc:
                error_message = exc.message
                logger.warning(
                    "chat_stream_failed request_id=%s fallback=%s error=%s",
                    request_id,
                    upstream_stream.is_fallback,
                    exc.message,
                )
                yield sse_error(exc.message)
            finally:
                await upstream_stream.aclose()
                if completed:
                    self.run_in_background(
                        self._record_success(access, route, key_type, translator.usage())
                    )
                else:
                    if error_message is None:
                        error_message = "stream interrupted"
                        logger.info(
                            "chat_stream_interrupted request_id=%s", request_id
                        )
                    self.run_in_background(
                        self.record_usage(
                            self._usage_record(
                                access,
                                route,
                                success=False,
                                key_type=key_type,
                                error=error_message,
                            )
                        )
                    )

        return StreamingResponse(
            stream_generator(),
            media_type="text/event-stream",
            headers=STREAM_HEADERS,
        )

    def _usage_record(
        self,
        access: TenantAccess,
        route: RouteDecision,
        *,
        success: bool,
        key_type: str,
        usage: TokenUsage | None = None,
        error: str | None = None,
    ) -> UsageRecord:
        usage = usage or TokenUsage()
        return UsageRecord(
            tenant_id=access.tenant_id,
            model=route.requested_model,
            provider=route.provider,
            success=success,
            key_type=key_type,
            kind="chat",
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            error=error,
        )

    async def _record_success(
        self,
        access: TenantAccess,
        route: RouteDecision,
        key_type: str,
        usage: TokenUsage,
    ) -> None:
        await self.record_usage(
            self._usage_record(access, route, success=True, key_type=key_type, usage=usage)
        )
        await self.add_lifetime_usage(access, usage)

    async def _record_failure(
        self, access: TenantAccess, route: RouteDecision, error: str
    ) -> None:
        await self.record_usage(
            self._usage_record(
                access,
                route,
                success=False,
                key_type=access.key_type,
                error=error,
            )
        )
