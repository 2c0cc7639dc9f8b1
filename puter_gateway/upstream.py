from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any, AsyncIterator

import httpx

from puter_gateway.errors import (
    UpstreamError,
    UpstreamTimeoutError,
    classify_upstream_error,
    error_from_envelope,
    upstream_error_message,
)
from puter_gateway.settings import Settings
from puter_gateway.streaming import iter_ndjson

CHAT_INTERFACE = "puter-chat-completion"
IMAGE_INTERFACE = "puter-image-generation"

PNG_MAGIC = b"\x89PNG"
JPEG_MAGIC = b"\xff\xd8"

logger = logging.getLogger("uvicorn.error")


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    error_message = str(exc).strip() or error_repr
    return {
        "error": error_message,
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }


def _connection_error(exc: httpx.RequestError, budget_seconds: float) -> UpstreamError:
    details = _request_error_details(exc)
    if details["is_timeout"]:
        return UpstreamTimeoutError(budget_seconds)
    return UpstreamError(
        f"Upstream connection failed: {details['error_type']}: {details['error']}"
    )


def driver_envelope(
    interface: str, driver: str, method: str, args: dict[str, Any]
) -> dict[str, Any]:
    return {"interface": interface, "driver": driver, "method": method, "args": args}


def _payload_or_raise(status_code: int, payload: Any) -> dict[str, Any]:
    error = error_from_envelope(payload)
    if error is not None:
        error.status_code = status_code
        if status_code == 429:
            error.rate_limited = True
        raise error
    if status_code >= 400:
        raise classify_upstream_error(
            upstream_error_message(payload, f"Upstream HTTP {status_code}"),
            status_code=status_code,
        )
    if not isinstance(payload, dict):
        raise UpstreamError("Upstream returned an unexpected response body")
    return payload


def _decode_json(raw: bytes, status_code: int) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        snippet = raw[:200].decode("utf-8", errors="replace").strip()
        raise classify_upstream_error(
            f"Upstream returned non-JSON response (HTTP {status_code}): {snippet}",
            status_code=status_code,
        ) from None


class UpstreamStream:
    """An opened upstream stream, primed with its first event.

    A JSON response to a streaming request is treated as a complete,
    non-streamed result and replayed as a single event.
    """

    def __init__(
        self,
        *,
        budget_seconds: float,
        response: httpx.Response | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        self.budget_seconds = budget_seconds
        self.response = response
        self.payload = payload
        self._deadline = asyncio.get_running_loop().time() + budget_seconds
        self._iterator: AsyncIterator[dict[str, Any]] | None = None
        self._first: dict[str, Any] | None = None
        self._closed = False

    @property
    def is_fallback(self) -> bool:
        return self.response is None

    async def prime(self) -> None:
        if self.response is None:
            self._first = self.payload
            return
        self._iterator = iter_ndjson(self.response.aiter_bytes())
        self._first = await self._next_event()
        error = error_from_envelope(self._first)
        if error is not None:
            raise error

    async def _next_event(self) -> dict[str, Any] | None:
        if self._iterator is None:
            return None
        remaining = self._deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise UpstreamTimeoutError(self.budget_seconds)
        try:
            return await asyncio.wait_for(self._iterator.__anext__(), timeout=remaining)
        except StopAsyncIteration:
            return None
        except asyncio.TimeoutError:
            raise UpstreamTimeoutError(self.budget_seconds) from None
        except httpx.RequestError as exc:
            raise _connection_error(exc, self.budget_seconds) from exc

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        first, self._first = self._first, None
        if first is not None:
            yield first
        while True:
            event = await self._next_event()
            if event is None:
                return
            yield event

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.response is not None:
            await self.response.aclose()


class UpstreamClient:
    def __init__(
        self,
        *,
        url: str,
        origin: str,
        timeout_seconds: float = 120.0,
        stream_timeout_seconds: float = 240.0,
        connect_timeout_seconds: float = 10.0,
        image_fetch_timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.origin = origin
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        self.stream_timeout_seconds = max(0.1, float(stream_timeout_seconds))
        self.image_fetch_timeout_seconds = max(0.1, float(image_fetch_timeout_seconds))
        connect_timeout = max(0.1, float(connect_timeout_seconds))
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=connect_timeout,
                read=self.stream_timeout_seconds,
                write=self.timeout_seconds,
                pool=connect_timeout,
            ),
            limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
            http2=_can_enable_http2(),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> UpstreamClient:
        return cls(
            url=settings.upstream_url,
            origin=settings.upstream_origin,
            timeout_seconds=settings.upstream_timeout_seconds,
            stream_timeout_seconds=settings.upstream_stream_timeout_seconds,
            connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
            image_fetch_timeout_seconds=settings.image_fetch_timeout_seconds,
        )

    async def close(self) -> None:
        await self.client.aclose()

    def _headers(self, credential: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json",
            "Origin": self.origin,
        }

    async def _post(
        self, credential: str, body: dict[str, Any], budget_seconds: float
    ) -> httpx.Response:
        try:
            return await asyncio.wait_for(
                self.client.post(self.url, json=body, headers=self._headers(credential)),
                timeout=budget_seconds,
            )
        except asyncio.TimeoutError:
            raise UpstreamTimeoutError(budget_seconds) from None
        except httpx.RequestError as exc:
            raise _connection_error(exc, budget_seconds) from exc

    async def complete(
        self, credential: str, driver: str, args: dict[str, Any]
    ) -> dict[str, Any]:
        body = driver_envelope(CHAT_INTERFACE, driver, "complete", args)
        response = await self._post(credential, body, self.timeout_seconds)
        payload = _decode_json(response.content, response.status_code)
        return _payload_or_raise(response.status_code, payload)

    async def open_stream(
        self, credential: str, driver: str, args: dict[str, Any]
    ) -> UpstreamStream:
        body = driver_envelope(CHAT_INTERFACE, driver, "complete", args)
        request = self.client.build_request(
            "POST", self.url, json=body, headers=self._headers(credential)
        )
        budget = self.stream_timeout_seconds
        try:
            response = await asyncio.wait_for(
                self.client.send(request, stream=True), timeout=budget
            )
        except asyncio.TimeoutError:
            raise UpstreamTimeoutError(budget) from None
        except httpx.RequestError as exc:
            raise _connection_error(exc, budget) from exc

        content_type = response.headers.get("content-type", "").lower()
        if "application/json" in content_type:
            raw = await response.aread()
            await response.aclose()
            logger.info(
                "upstream_stream_json_fallback driver=%s status=%d",
                driver,
                response.status_code,
            )
            payload = _payload_or_raise(
                response.status_code, _decode_json(raw, response.status_code)
            )
            stream = UpstreamStream(budget_seconds=budget, payload=payload)
            await stream.prime()
            return stream
        if "text/html" in content_type or response.status_code >= 400:
            raw = await response.aread()
            await response.aclose()
            if "text/html" in content_type:
                message = f"Upstream returned an HTML page (HTTP {response.status_code})"
            else:
                message = raw[:200].decode("utf-8", errors="replace").strip() or (
                    f"Upstream HTTP {response.status_code}"
                )
            raise classify_upstream_error(message, status_code=response.status_code)

        stream = UpstreamStream(budget_seconds=budget, response=response)
        try:
            await stream.prime()
        except BaseException:
            await stream.aclose()
            raise
        return stream

    async def generate_image(
        self, credential: str, driver: str, args: dict[str, Any]
    ) -> list[dict[str, Any]]:
        body = driver_envelope(IMAGE_INTERFACE, driver, "generate", args)
        response = await self._post(credential, body, self.timeout_seconds)
        raw = response.content
        if raw.startswith(PNG_MAGIC) or raw.startswith(JPEG_MAGIC):
            return [
                {
                    "b64_json": base64.b64encode(raw).decode("ascii"),
                    "mime_type": "image/png" if raw.startswith(PNG_MAGIC) else "image/jpeg",
                }
            ]
        payload = _payload_or_raise(
            response.status_code, _decode_json(raw, response.status_code)
        )
        result = payload.get("result")
        if isinstance(result, str) and result:
            if result.startswith("http"):
                return [{"url": result}]
            return [{"b64_json": result}]
        if isinstance(result, dict) and isinstance(result.get("data"), list):
            return [item for item in result["data"] if isinstance(item, dict)]
        if isinstance(payload.get("data"), list):
            return [item for item in payload["data"] if isinstance(item, dict)]
        raise UpstreamError("Upstream returned no image data")

    async def fetch_image(self, url: str) -> tuple[str, str]:
        """Download an input image and return ``(base64, mime_type)``."""
        response = await self.client.get(
            url, timeout=self.image_fetch_timeout_seconds, follow_redirects=True
        )
        response.raise_for_status()
        mime_type = response.headers.get("content-type", "").split(";", 1)[0].strip()
        return (
            base64.b64encode(response.content).decode("ascii"),
            mime_type or "image/png",
        )


def _can_enable_http2() -> bool:
    try:
        import h2  # noqa: F401
    except Exception:
        return False
    return True
