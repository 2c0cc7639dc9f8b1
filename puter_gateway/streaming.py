from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterable, AsyncIterator

from puter_gateway.errors import error_from_envelope
from puter_gateway.responses import (
    TokenUsage,
    estimate_tokens,
    extract_content,
    extract_reasoning,
    extract_tool_calls,
    extract_usage,
    tool_arguments_json,
)
from puter_gateway.think_tags import ThinkTagSplitter

SSE_DONE = b"data: [DONE]\n\n"
STREAM_END_SENTINEL = "%"

logger = logging.getLogger("uvicorn.error")


async def iter_ndjson(chunks: AsyncIterable[bytes]) -> AsyncIterator[dict[str, Any]]:
    """Yield one JSON object per newline-terminated line of the body."""
    buffer = b""
    async for chunk in chunks:
        if not chunk:
            continue
        buffer += chunk
        while True:
            newline_at = buffer.find(b"\n")
            if newline_at < 0:
                break
            line = buffer[:newline_at]
            buffer = buffer[newline_at + 1 :]
            event = _parse_line(line)
            if event is not None:
                yield event
    event = _parse_line(buffer)
    if event is not None:
        yield event


def _parse_line(raw: bytes) -> dict[str, Any] | None:
    line = raw.decode("utf-8", errors="replace").strip()
    if not line or line == STREAM_END_SENTINEL:
        return None
    try:
        parsed = json.loads(line)
    except ValueError:
        logger.debug("upstream_stream_unparsed_line length=%d", len(line))
        return None
    return parsed if isinstance(parsed, dict) else None


def chat_completion_chunk(
    completion_id: str,
    created: int,
    model: str,
    delta: dict[str, Any],
    finish_reason: str | None = None,
    usage: dict[str, int] | None = None,
) -> bytes:
    chunk: dict[str, Any] = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "delta": delta,
                "finish_reason": finish_reason,
            }
        ],
    }
    if usage is not None:
        chunk["usage"] = usage
    return f"data: {json.dumps(chunk, separators=(',', ':'))}\n\n".encode("utf-8")


def chat_completion_tool_call_chunk(
    completion_id: str,
    created: int,
    model: str,
    *,
    index: int,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> bytes:
    function_delta: dict[str, Any] = {}
    if name is not None:
        function_delta["name"] = name
    if arguments is not None:
        function_delta["arguments"] = arguments

    tool_call_delta: dict[str, Any] = {
        "index": index,
        "function": function_delta,
    }
    if call_id is not None:
        tool_call_delta["id"] = call_id
        tool_call_delta["type"] = "function"

    return chat_completion_chunk(
        completion_id=completion_id,
        created=created,
        model=model,
        delta={"tool_calls": [tool_call_delta]},
        finish_reason=None,
    )


def sse_error(message: str, *, error_type: str = "api_error") -> bytes:
    payload = {"error": {"message": message, "type": error_type}}
    return f"data: {json.dumps(payload, separators=(',', ':'))}\n\n".encode("utf-8")


class ChatStreamTranslator:
    """Turns upstream stream events into ``chat.completion.chunk`` frames."""

    def __init__(
        self,
        *,
        completion_id: str,
        created: int,
        model: str,
        prompt_tokens_estimate: int = 0,
    ) -> None:
        self.completion_id = completion_id
        self.created = created
        self.model = model
        self._prompt_tokens_estimate = prompt_tokens_estimate
        self._splitter = ThinkTagSplitter()
        self._content_parts: list[str] = []
        self._reasoning_parts: list[str] = []
        self._tool_call_count = 0
        self._upstream_usage: TokenUsage | None = None
        self._finished = False

    @property
    def content(self) -> str:
        return "".join(self._content_parts)

    @property
    def reasoning(self) -> str:
        return "".join(self._reasoning_parts)

    @property
    def saw_tool_calls(self) -> bool:
        return self._tool_call_count > 0

    def _chunk(self, delta: dict[str, Any], **kwargs: Any) -> bytes:
        return chat_completion_chunk(
            self.completion_id, self.created, self.model, delta, **kwargs
        )

    def role_chunk(self) -> bytes:
        return self._chunk({"role": "assistant"})

    def feed(self, event: dict[str, Any]) -> list[bytes]:
        error = error_from_envelope(event)
        if error is not None:
            raise error
        usage = extract_usage(event)
        if usage is not None:
            self._upstream_usage = usage

        event_type = event.get("type")
        if event_type == "text":
            text = event.get("text")
            return self._text_frames(text) if isinstance(text, str) else []
        if event_type == "reasoning":
            text = event.get("text") or event.get("reasoning")
            return self._reasoning_frames(text) if isinstance(text, str) else []
        if event_type == "tool_use":
            return self._tool_use_frames(event)
        if "message" in event or "result" in event or "choices" in event:
            return self._message_frames(event)
        return []

    def _text_frames(self, text: str) -> list[bytes]:
        frames: list[bytes] = []
        for kind, part in self._splitter.feed(text):
            if kind == "reasoning":
                frames.extend(self._reasoning_frames(part))
            else:
                self._content_parts.append(part)
                frames.append(self._chunk({"content": part}))
        return frames

    def _reasoning_frames(self, text: str) -> list[bytes]:
        if not text:
            return []
        self._reasoning_parts.append(text)
        return [self._chunk({"reasoning_content": text})]

    def _tool_use_frames(self, event: dict[str, Any]) -> list[bytes]:
        name = event.get("name")
        if not isinstance(name, str) or not name:
            return []
        call_id = event.get("id")
        if not isinstance(call_id, str) or not call_id:
            call_id = f"call_{self.completion_id}_{self._tool_call_count}"
        arguments = event.get("input", event.get("arguments"))
        return self._tool_call_frames(call_id, name, tool_arguments_json(arguments))

    def _tool_call_frames(self, call_id: str, name: str, arguments: str) -> list[bytes]:
        index = self._tool_call_count
        self._tool_call_count += 1
        return [
            chat_completion_tool_call_chunk(
                self.completion_id,
                self.created,
                self.model,
                index=index,
                call_id=call_id,
                name=name,
                arguments="",
            ),
            chat_completion_tool_call_chunk(
                self.completion_id,
                self.created,
                self.model,
                index=index,
                arguments=arguments,
            ),
        ]

    def _message_frames(self, event: dict[str, Any]) -> list[bytes]:
        frames: list[bytes] = []
        message = event.get("message")
        if not isinstance(message, dict) and isinstance(event.get("result"), dict):
            message = event["result"].get("message")
        reasoning = extract_reasoning(message)
        if reasoning:
            frames.extend(self._reasoning_frames(reasoning))
        content = extract_content(event)
        if content:
            frames.extend(self._text_frames(content))
        for call in extract_tool_calls(event):
            function = call["function"]
            frames.extend(
                self._tool_call_frames(call["id"], function["name"], function["arguments"])
            )
        return frames

    def usage(self) -> TokenUsage:
        if self._upstream_usage is not None:
            return self._upstream_usage
        completion_tokens = estimate_tokens(self.content) + estimate_tokens(self.reasoning)
        return TokenUsage(
            self._prompt_tokens_estimate,
            completion_tokens,
            self._prompt_tokens_estimate + completion_tokens,
        )

    def finish(self) -> list[bytes]:
        if self._finished:
            return []
        self._finished = True
        frames: list[bytes] = []
        for kind, part in self._splitter.flush():
            if kind == "reasoning":
                frames.extend(self._reasoning_frames(part))
            else:
                self._content_parts.append(part)
                frames.append(self._chunk({"content": part}))
        finish_reason = "tool_calls" if self.saw_tool_calls else "stop"
        frames.append(
            self._chunk({}, finish_reason=finish_reason, usage=self.usage().to_dict())
        )
        frames.append(SSE_DONE)
        return frames
