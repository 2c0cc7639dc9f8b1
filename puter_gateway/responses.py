from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from puter_gateway.think_tags import split_think_tags

__all__ = [
    "TokenUsage",
    "build_chat_completion",
    "completion_from_upstream",
    "estimate_tokens",
    "extract_content",
    "extract_reasoning",
    "extract_tool_calls",
    "extract_usage",
    "normalize_tool_calls",
    "split_think_tags",
    "tool_arguments_json",
]


@dataclass(slots=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


def estimate_tokens(text: str | None) -> int:
    if not text:
        return 0
    return (len(text) + 3) // 4


def _result_of(payload: Any) -> Any:
    if isinstance(payload, dict) and "result" in payload:
        return payload["result"]
    return payload


def _message_of(result: Any) -> dict[str, Any] | None:
    if not isinstance(result, dict):
        return None
    message = result.get("message")
    if isinstance(message, dict):
        return message
    choices = result.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        choice_message = choices[0].get("message")
        if isinstance(choice_message, dict):
            return choice_message
    return None


def _text_of_content(content: Any) -> str | None:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            part["text"]
            for part in content
            if isinstance(part, dict)
            and isinstance(part.get("text"), str)
            and part.get("type", "text") == "text"
        ]
        return "".join(texts) if texts else None
    return None


def extract_content(payload: Any) -> str | None:
    result = _result_of(payload)
    if isinstance(result, str):
        return result
    if not isinstance(result, dict):
        return None
    message = result.get("message")
    if isinstance(message, dict):
        text = _text_of_content(message.get("content"))
        if text is not None:
            return text
    choices = result.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        choice_message = choices[0].get("message")
        if isinstance(choice_message, dict):
            text = _text_of_content(choice_message.get("content"))
            if text is not None:
                return text
    if isinstance(result.get("text"), str):
        return result["text"]
    return None


def extract_reasoning(message: Any) -> str | None:
    if not isinstance(message, dict):
        return None
    for key in ("reasoning", "reasoning_content"):
        value = message.get(key)
        if isinstance(value, str) and value:
            return value
    details = message.get("reasoning_details")
    if isinstance(details, list):
        texts = [
            item["text"]
            for item in details
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        ]
        if texts:
            return "".join(texts)
    return None


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return max(0, int(value))
    return 0


def _usage_candidates(payload: Any) -> list[Any]:
    candidates: list[Any] = []
    if isinstance(payload, dict):
        candidates.append(payload.get("usage"))
    result = _result_of(payload)
    if isinstance(result, dict) and result is not payload:
        candidates.append(result.get("usage"))
    message = _message_of(result)
    if message is not None:
        candidates.append(message.get("usage"))
    return [candidate for candidate in candidates if candidate]


def extract_usage(payload: Any) -> TokenUsage | None:
    for raw in _usage_candidates(payload):
        if isinstance(raw, list):
            prompt = sum(
                _as_int(item.get("amount"))
                for item in raw
                if isinstance(item, dict) and item.get("type") == "prompt"
            )
            completion = sum(
                _as_int(item.get("amount"))
                for item in raw
                if isinstance(item, dict) and item.get("type") == "completion"
            )
            return TokenUsage(prompt, completion, prompt + completion)
        if not isinstance(raw, dict):
            continue
        if "input_tokens" in raw or "output_tokens" in raw:
            prompt = _as_int(raw.get("input_tokens"))
            completion = _as_int(raw.get("output_tokens"))
            return TokenUsage(prompt, completion, prompt + completion)
        if "prompt_tokens" in raw or "completion_tokens" in raw:
            prompt = _as_int(raw.get("prompt_tokens"))
            completion = _as_int(raw.get("completion_tokens"))
            total = _as_int(raw.get("total_tokens")) or prompt + completion
            return TokenUsage(prompt, completion, total)
    return None


def tool_arguments_json(arguments: Any) -> str:
    if isinstance(arguments, str):
        return arguments
    if arguments is None:
        return "{}"
    return json.dumps(arguments, separators=(",", ":"))


def normalize_tool_calls(raw_calls: Any) -> list[dict[str, Any]]:
    if not isinstance(raw_calls, list):
        return []
    calls: list[dict[str, Any]] = []
    for raw in raw_calls:
        if not isinstance(raw, dict):
            continue
        function = raw.get("function")
        if not isinstance(function, dict):
            function = {}
        name = function.get("name") or raw.get("name")
        if not isinstance(name, str) or not name:
            continue
        if "arguments" in function:
            arguments = function.get("arguments")
        elif "input" in raw:
            arguments = raw.get("input")
        else:
            arguments = raw.get("arguments")
        call_id = raw.get("id")
        if not isinstance(call_id, str) or not call_id:
            call_id = f"call_{uuid4().hex[:24]}"
        calls.append(
            {
                "id": call_id,
                "type": "function",
                "function": {"name": name, "arguments": tool_arguments_json(arguments)},
            }
        )
    return calls


def extract_tool_calls(payload: Any) -> list[dict[str, Any]]:
    message = _message_of(_result_of(payload))
    if message is None:
        return []
    calls = normalize_tool_calls(message.get("tool_calls"))
    content = message.get("content")
    if isinstance(content, list):
        calls.extend(
            normalize_tool_calls(
                [
                    part
                    for part in content
                    if isinstance(part, dict) and part.get("type") == "tool_use"
                ]
            )
        )
    return calls


def build_chat_completion(
    *,
    completion_id: str,
    created: int,
    model: str,
    content: str | None,
    reasoning: str | None,
    tool_calls: list[dict[str, Any]],
    usage: TokenUsage,
) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if reasoning:
        message["reasoning_content"] = reasoning
    if tool_calls:
        message["tool_calls"] = tool_calls
    elif content is None:
        message["content"] = ""
    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": "tool_calls" if tool_calls else "stop",
            }
        ],
        "usage": usage.to_dict(),
    }


def completion_from_upstream(
    payload: Any,
    *,
    completion_id: str,
    created: int,
    model: str,
    prompt_tokens_estimate: int = 0,
) -> tuple[dict[str, Any], TokenUsage]:
    raw_content = extract_content(payload)
    reasoning = extract_reasoning(_message_of(_result_of(payload)))
    content = raw_content
    if raw_content:
        content, inline_reasoning = split_think_tags(raw_content)
        if inline_reasoning:
            reasoning = f"{reasoning}{inline_reasoning}" if reasoning else inline_reasoning
    tool_calls = extract_tool_calls(payload)
    if tool_calls and not content:
        content = None

    usage = extract_usage(payload)
    if usage is None:
        completion_tokens = estimate_tokens(content) + estimate_tokens(reasoning)
        usage = TokenUsage(
            prompt_tokens_estimate,
            completion_tokens,
            prompt_tokens_estimate + completion_tokens,
        )
    completion = build_chat_completion(
        completion_id=completion_id,
        created=created,
        model=model,
        content=content,
        reasoning=reasoning,
        tool_calls=tool_calls,
        usage=usage,
    )
    return completion, usage
