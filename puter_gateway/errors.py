from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse

RATE_LIMIT_MARKERS = (
    "rate limit",
    "usage limit",
    "usage-limited",
    "quota",
    "exceeded",
    "too many requests",
    "permission denied",
    "429",
)
DAILY_LIMIT_MARKERS = (
    "usage-limited",
    "usage limit",
    "permission denied",
)
INSUFFICIENT_FUNDS_MARKERS = (
    "insufficient funds",
    "insufficient_funds",
    "funding",
)


class GatewayError(Exception):
    """Client-facing failure rendered as an OpenAI-style error body."""

    def __init__(
        self,
        status_code: int,
        message: str,
        *,
        code: str | None = None,
        error_type: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code
        self.error_type = error_type or _default_error_type(status_code)
        self.extra = extra or {}

    def to_payload(self) -> dict[str, Any]:
        error: dict[str, Any] = {"message": self.message, "type": self.error_type}
        if self.code:
            error["code"] = self.code
        error.update(self.extra)
        return {"error": error}

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.to_payload())


class UpstreamError(Exception):
    def __init__(
        self,
        message: str,
        *,
        rate_limited: bool = False,
        daily: bool = False,
        insufficient_funds: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.rate_limited = rate_limited
        self.daily = daily
        self.insufficient_funds = insufficient_funds
        self.status_code = status_code

    @property
    def retriable(self) -> bool:
        return self.rate_limited


class UpstreamTimeoutError(UpstreamError):
    def __init__(self, budget_seconds: float) -> None:
        super().__init__(
            f"Upstream request timed out after {budget_seconds:g}s",
        )
        self.budget_seconds = budget_seconds


def classify_upstream_error(
    message: str,
    *,
    status_code: int | None = None,
) -> UpstreamError:
    lowered = message.lower()
    rate_limited = status_code == 429 or any(
        marker in lowered for marker in RATE_LIMIT_MARKERS
    )
    daily = any(marker in lowered for marker in DAILY_LIMIT_MARKERS)
    insufficient_funds = any(marker in lowered for marker in INSUFFICIENT_FUNDS_MARKERS)
    return UpstreamError(
        message,
        rate_limited=rate_limited or daily,
        daily=daily,
        insufficient_funds=insufficient_funds,
        status_code=status_code,
    )


def upstream_error_message(payload: Any, default: str = "Upstream error") -> str:
    """Pull a human readable message out of a ``{success: false}`` envelope."""
    if not isinstance(payload, dict):
        return default
    error = payload.get("error")
    if isinstance(error, dict):
        message = error.get("message") or error.get("code")
        if isinstance(message, str) and message.strip():
            return message.strip()
    if isinstance(error, str) and error.strip():
        return error.strip()
    message = payload.get("message")
    if isinstance(message, str) and message.strip():
        return message.strip()
    return default


def error_from_envelope(payload: Any) -> UpstreamError | None:
    if not isinstance(payload, dict) or payload.get("success") is not False:
        return None
    return classify_upstream_error(upstream_error_message(payload))


def _default_error_type(status_code: int) -> str:
    if status_code in (401, 403):
        return "authentication_error" if status_code == 401 else "permission_error"
    if status_code == 402:
        return "insufficient_quota"
    if 400 <= status_code < 500:
        return "invalid_request_error"
    return "api_error"
