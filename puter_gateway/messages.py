from __future__ import annotations

from typing import Any

from puter_gateway.model_router import RouteDecision
from puter_gateway.responses import normalize_tool_calls

EMPTY_TOOL_RESULT = "(empty result)"
MEDIA_PART_TYPES = frozenset({"image_url", "image", "file"})
THINKING_MAX_TOKENS_HEADROOM = 4096


def flatten_content(content: Any) -> str:
    """Collapse string-or-parts content into newline-joined text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        content = [content]
    if not isinstance(content, list):
        return str(content)
    texts: list[str] = []
    for part in content:
        if isinstance(part, str):
            texts.append(part)
            continue
        if not isinstance(part, dict):
            continue
        part_type = part.get("type")
        if part_type == "tool_use" or part_type in MEDIA_PART_TYPES:
            continue
        if part_type == "tool_result":
            texts.append(flatten_content(part.get("content")))
            continue
        text = part.get("text")
        if isinstance(text, str):
            texts.append(text)
    return "\n".join(texts)


def has_media_parts(content: Any) -> bool:
    return isinstance(content, list) and any(
        isinstance(part, dict) and part.get("type") in MEDIA_PART_TYPES
        for part in content
    )


def _image_part_url(part: dict[str, Any]) -> str | None:
    source = part.get("source")
    if isinstance(source, dict):
        data = source.get("data")
        if isinstance(data, str) and data:
            media_type = source.get("media_type") or "image/png"
            return f"data:{media_type};base64,{data}"
        url = source.get("url")
        if isinstance(url, str) and url:
            return url
    image_url = part.get("image_url")
    if isinstance(image_url, dict):
        image_url = image_url.get("url")
    if isinstance(image_url, str) and image_url:
        return image_url
    url = part.get("url")
    if isinstance(url, str) and url:
        return url
    return None


def _multimodal_parts(content: list[Any]) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = []
    for part in content:
        if isinstance(part, str):
            parts.append({"type": "text", "text": part})
            continue
        if not isinstance(part, dict):
            continue
        part_type = part.get("type")
        if part_type == "tool_use":
            continue
        if part_type == "image":
            url = _image_part_url(part)
            if url:
                parts.append({"type": "image_url", "image_url": {"url": url}})
            continue
        if part_type == "tool_result":
            parts.append({"type": "text", "text": flatten_content(part.get("content"))})
            continue
        parts.append(part)
    return parts


def _is_empty(content: Any) -> bool:
    if content is None:
        return True
    if isinstance(content, str):
        return not content.strip()
    if isinstance(content, list):
        return len(content) == 0
    return False


def normalize_messages(
    messages: Any, *, multimodal: bool = False
) -> list[dict[str, Any]]:
    if not isinstance(messages, list):
        return []
    normalized: list[dict[str, Any]] = []
    for raw in messages:
        if not isinstance(raw, dict):
            continue
        role = str(raw.get("role") or "user")
        content = raw.get("content")

        if role == "tool":
            text = flatten_content(content)
            message: dict[str, Any] = {
                "role": "tool",
                "content": text if text.strip() else EMPTY_TOOL_RESULT,
            }
            if raw.get("tool_call_id"):
                message["tool_call_id"] = raw["tool_call_id"]
            if raw.get("name"):
                message["name"] = raw["name"]
            normalized.append(message)
            continue

        tool_calls = normalize_tool_calls(raw.get("tool_calls"))
        if role == "assistant" and tool_calls:
            text = flatten_content(content)
            normalized.append(
                {
                    "role": "assistant",
                    "content": text if text.strip() else None,
                    "tool_calls": tool_calls,
                }
            )
            continue

        value: Any
        if multimodal and has_media_parts(content):
            value = _multimodal_parts(content)
        else:
            value = flatten_content(content)
        if _is_empty(value):
            continue
        message = {"role": role, "content": value}
        if isinstance(raw.get("name"), str) and raw["name"]:
            message["name"] = raw["name"]
        normalized.append(message)
    return normalized


def prompt_text(messages: list[dict[str, Any]]) -> str:
    return "\n".join(flatten_content(message.get("content")) for message in messages)


def build_chat_args(
    payload: dict[str, Any],
    route: RouteDecision,
    messages: list[dict[str, Any]],
    *,
    stream: bool = False,
) -> dict[str, Any]:
    if route.system_prelude:
        messages = [{"role": "system", "content": route.system_prelude}, *messages]
    args: dict[str, Any] = {"messages": messages, "model": route.upstream_model}

    max_tokens = payload.get("max_tokens")
    if isinstance(max_tokens, int) and not isinstance(max_tokens, bool):
        args["max_tokens"] = max_tokens
    temperature = payload.get("temperature")
    if isinstance(temperature, (int, float)) and not isinstance(temperature, bool):
        args["temperature"] = temperature
    tools = payload.get("tools")
    if isinstance(tools, list) and tools:
        args["tools"] = tools
    if payload.get("tool_choice") is not None:
        args["tool_choice"] = payload["tool_choice"]
    if stream:
        args["stream"] = True
    if route.include_reasoning:
        args["include_reasoning"] = True
    if route.thinking:
        args["thinking"] = dict(route.thinking)
        budget = int(route.thinking.get("budget_tokens", 0))
        if int(args.get("max_tokens") or 0) <= budget:
            args["max_tokens"] = budget + THINKING_MAX_TOKENS_HEADROOM
    return args
