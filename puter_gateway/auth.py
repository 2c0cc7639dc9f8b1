from __future__ import annotations

from dataclasses import dataclass

from starlette.datastructures import Headers


@dataclass(slots=True, frozen=True)
class RequestCredentials:
    api_key: str | None
    direct_token: str | None


def _strip_bearer(value: str) -> str:
    scheme, _, token = value.strip().partition(" ")
    if scheme.lower() == "bearer":
        return token.strip()
    return value.strip()


def extract_api_key(headers: Headers) -> str | None:
    """Gateway key from ``Authorization: Bearer`` or ``X-API-Key``."""
    authorization = headers.get("authorization", "")
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    api_key = _strip_bearer(headers.get("x-api-key", ""))
    return api_key or None


def extract_request_credentials(headers: Headers) -> RequestCredentials:
    direct_token = _strip_bearer(headers.get("x-puter-token", ""))
    return RequestCredentials(
        api_key=extract_api_key(headers),
        direct_token=direct_token or None,
    )
