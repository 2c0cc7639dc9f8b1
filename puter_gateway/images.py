from __future__ import annotations

import logging
import re
import time
from typing import Any

import httpx
from fastapi.responses import JSONResponse, Response

from puter_gateway.errors import GatewayError, UpstreamError
from puter_gateway.executor import BaseExecutor, CredentialsExhaustedError, TenantAccess
from puter_gateway.model_router import (
    DRIVER_OPENROUTER,
    IMAGE_DRIVER_GEMINI,
    IMAGE_DRIVER_TOGETHER,
    ImageRoute,
)
from puter_gateway.responses import TokenUsage
from puter_gateway.stores import UsageRecord

DATA_URL_PATTERN = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)
INSUFFICIENT_CREDITS_MESSAGE = (
    "Insufficient credits for both native and OpenRouter image generation. "
    "Try flux-schnell-free or add new Puter API keys."
)

logger = logging.getLogger("uvicorn.error")


def parse_data_url(value: str) -> tuple[str, str] | None:
    match = DATA_URL_PATTERN.match(value)
    if match is None:
        return None
    return match.group(2), match.group(1)


def openrouter_images(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """Images returned by a chat model in ``result.message.images``."""
    result = payload.get("result")
    message = result.get("message") if isinstance(result, dict) else None
    images = message.get("images") if isinstance(message, dict) else None
    items: list[dict[str, Any]] = []
    for image in images if isinstance(images, list) else []:
        if not isinstance(image, dict):
            continue
        image_url = image.get("image_url")
        url = image_url.get("url") if isinstance(image_url, dict) else None
        url = url or image.get("url") or ""
        if not isinstance(url, str) or not url:
            continue
        parsed = parse_data_url(url)
        if parsed is not None:
            items.append({"b64_json": parsed[0], "mime_type": parsed[1]})
        else:
            items.append({"url": url})
    return items


class ImageExecutor(BaseExecutor):
    async def execute(
        self,
        payload: dict[str, Any],
        *,
        api_key: str | None,
        request_id: str,
    ) -> Response:
        tenant = await self.authenticate(api_key)

        prompt = payload.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            raise GatewayError(400, "prompt is required")

        route = self.router.resolve_image(payload.get("model"))
        image = payload.get("image")
        kind = "img2img" if image else "txt2img"
        access = await self.tenant_access(
            tenant,
            model=route.requested_model,
            provider=route.driver,
            kind=kind,
            request_id=request_id,
        )
        options = self._options(payload)
        if isinstance(image, str) and image:
            options.update(await self._input_image(image))

        logger.info(
            (
                "image_request request_id=%s tenant=%s model=%s normalized=%s driver=%s "
                "via_openrouter=%s kind=%s"
            ),
            request_id,
            access.tenant_id,
            route.requested_model,
            route.model,
            route.driver,
            route.via_openrouter,
            kind,
        )

        async def native_attempt(credential: str) -> list[dict[str, Any]]:
            return await self.upstream.generate_image(
                credential, route.driver, self._native_args(route, prompt, options)
            )

        async def openrouter_attempt(credential: str) -> list[dict[str, Any]]:
            data = await self.upstream.complete(
                credential,
                DRIVER_OPENROUTER,
                self._openrouter_args(route, prompt, options),
            )
            items = openrouter_images(data)
            if not items:
                raise UpstreamError("Model did not return any images")
            return items

        model_label = route.requested_model
        try:
            items, key_type = await self.invoke(
                access,
                openrouter_attempt if route.via_openrouter else native_attempt,
                request_id=request_id,
                retry_fatal=True,
            )
        except CredentialsExhaustedError as exc:
            if not exc.insufficient_funds or route.via_openrouter:
                message = exc.last_error.message if exc.last_error else exc.message
                await self._record(access, route, kind, error=message)
                raise GatewayError(500, message) from exc
            logger.info(
                "image_openrouter_fallback request_id=%s model=%s",
                request_id,
                route.requested_model,
            )
            model_label = f"{route.requested_model} (openrouter)"
            try:
                items, key_type = await self.invoke(
                    access,
                    openrouter_attempt,
                    request_id=request_id,
                    retry_fatal=True,
                )
            except CredentialsExhaustedError as fallback_exc:
                await self._record(
                    access,
                    route,
                    kind,
                    model=model_label,
                    error=INSUFFICIENT_CREDITS_MESSAGE,
                )
                raise GatewayError(
                    402, INSUFFICIENT_CREDITS_MESSAGE, code="INSUFFICIENT_CREDITS"
                ) from fallback_exc
        except GatewayError as exc:
            await self._record(access, route, kind, error=exc.message)
            raise

        await self._record(
            access, route, kind, model=model_label, key_type=key_type, success=True
        )
        await self.add_lifetime_usage(access, TokenUsage(), images=max(1, len(items)))
        return JSONResponse(
            content={
                "created": int(time.time()),
                "data": self._format_items(
                    items, prompt, url_format=payload.get("response_format") == "url"
                ),
            }
        )

    @staticmethod
    def _options(payload: dict[str, Any]) -> dict[str, Any]:
        return {
            key: payload[key]
            for key in ("size", "quality", "n", "style")
            if payload.get(key)
        }

    async def _input_image(self, image: str) -> dict[str, str]:
        if image.startswith("data:"):
            parsed = parse_data_url(image)
            if parsed is None:
                raise GatewayError(400, "image must be a base64 data URL, an HTTP URL or raw base64")
            data, mime_type = parsed
        elif image.startswith("http"):
            try:
                data, mime_type = await self.upstream.fetch_image(image)
            except httpx.HTTPError as exc:
                raise GatewayError(400, f"Could not fetch input image: {exc}") from exc
        else:
            data, mime_type = image, "image/png"
        return {"input_image": data, "input_image_mime_type": mime_type}

    @staticmethod
    def _native_args(
        route: ImageRoute, prompt: str, options: dict[str, Any]
    ) -> dict[str, Any]:
        args: dict[str, Any] = {"prompt": prompt, "model": route.model}
        for key, value in options.items():
            if key == "size" and route.driver == IMAGE_DRIVER_GEMINI:
                continue
            args[key] = value
        if route.driver == IMAGE_DRIVER_TOGETHER:
            args["disable_safety_checker"] = True
        return args

    @staticmethod
    def _openrouter_args(
        route: ImageRoute, prompt: str, options: dict[str, Any]
    ) -> dict[str, Any]:
        content: Any = prompt
        if options.get("input_image"):
            mime_type = options.get("input_image_mime_type") or "image/png"
            content = [
                {"type": "text", "text": prompt},
                {
                    "type": "image_url",
                    "image_url": {
                        "url": f"data:{mime_type};base64,{options['input_image']}"
                    },
                },
            ]
        return {
            "model": route.openrouter_model,
            "messages": [{"role": "user", "content": content}],
        }

    @staticmethod
    def _format_items(
        items: list[dict[str, Any]], prompt: str, *, url_format: bool
    ) -> list[dict[str, Any]]:
        formatted: list[dict[str, Any]] = []
        for item in items:
            entry = dict(item)
            entry.setdefault("revised_prompt", prompt)
            if url_format and entry.get("b64_json"):
                mime_type = entry.pop("mime_type", None) or "image/png"
                entry = {
                    "url": f"data:{mime_type};base64,{entry.pop('b64_json')}",
                    "revised_prompt": entry["revised_prompt"],
                }
            formatted.append(entry)
        return formatted

    async def _record(
        self,
        access: TenantAccess,
        route: ImageRoute,
        kind: str,
        *,
        model: str | None = None,
        key_type: str | None = None,
        success: bool = False,
        error: str | None = None,
    ) -> None:
        await self.record_usage(
            UsageRecord(
                tenant_id=access.tenant_id,
                model=model or route.requested_model,
                provider=route.driver,
                success=success,
                key_type=key_type or access.key_type,
                kind=kind,
                error=error,
            )
        )
