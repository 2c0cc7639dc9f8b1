import asyncio
import json
from typing import Any

import httpx
import pytest
from fastapi.responses import Response

from puter_gateway.errors import GatewayError
from puter_gateway.key_pool import hash_credential
from puter_gateway.stores import TenantRecord, utc_today
from tests.gateway_test_utils import (
    build_chat_executor,
    build_store,
    ndjson_response,
    parse_sse,
    request_body,
    request_credential,
    upstream_failure,
    upstream_success,
)

HELLO_RESULT = {
    "message": {"content": "hello"},
    "usage": {"input_tokens": 1, "output_tokens": 2},
}


def _hello_response() -> httpx.Response:
    return httpx.Response(200, json={"success": True, "result": HELLO_RESULT})


async def _body(response: Response) -> bytes:
    if hasattr(response, "body_iterator"):
        chunks = [chunk async for chunk in response.body_iterator]
        return b"".join(
            chunk if isinstance(chunk, bytes) else chunk.encode("utf-8") for chunk in chunks
        )
    return bytes(response.body)


def _chat(model: str = "gpt-4o-mini", **extra: Any) -> dict[str, Any]:
    return {"model": model, "messages": [{"role": "user", "content": "hi"}], **extra}


def test_free_tier_request_counts_usage_and_returns_plain_message() -> None:
    store = build_store(
        tenants=[TenantRecord(tenant_id="T", api_key="sk-A")],
        system_credentials=["K1"],
    )
    seen: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request_body(request))
        return _hello_response()

    executor = build_chat_executor(handler, store)

    async def scenario() -> dict[str, Any]:
        response = await executor.execute(_chat(), api_key="sk-A", request_id="r1")
        await executor.drain()
        return json.loads(await _body(response))

    body = asyncio.run(scenario())

    assert body["id"] == "chatcmpl-r1"
    assert body["choices"][0]["message"] == {"role": "assistant", "content": "hello"}
    assert body["choices"][0]["finish_reason"] == "stop"
    assert body["usage"]["total_tokens"] == 3
    assert seen[0]["interface"] == "puter-chat-completion"
    assert seen[0]["driver"] == "openai-completion"
    assert seen[0]["method"] == "complete"
    assert seen[0]["args"]["model"] == "gpt-4o-mini"

    tenant = store.tenant("T")
    assert tenant is not None
    assert tenant.daily_requests_used == 1
    assert tenant.last_request_date == utc_today()
    record = store.usage_records[-1]
    assert record.success is True
    assert record.key_type == "system"
    assert record.total_tokens == 3
    assert store.lifetime_usage("T")["total_tokens"] == 3


def test_daily_limit_rejects_before_upstream_call() -> None:
    store = build_store(
        tenants=[
            TenantRecord(
                tenant_id="T",
                api_key="sk-A",
                daily_requests_used=15,
                last_request_date=utc_today(),
            )
        ],
        system_credentials=["K1"],
    )
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return _hello_response()

    executor = build_chat_executor(handler, store)

    with pytest.raises(GatewayError) as exc_info:
        asyncio.run(executor.execute(_chat(), api_key="sk-A", request_id="r1"))

    error = exc_info.value
    assert error.status_code == 403
    assert error.code == "DAILY_LIMIT_EXCEEDED"
    assert error.extra == {"dailyUsed": 15, "dailyLimit": 15}
    assert calls == []
    assert store.tenant("T").daily_requests_used == 15
    assert store.usage_records[-1].success is False


def test_stale_daily_counter_resets_on_new_day() -> None:
    store = build_store(
        tenants=[
            TenantRecord(
                tenant_id="T",
                api_key="sk-A",
                daily_requests_used=15,
                last_request_date="2000-01-01",
            )
        ],
        system_credentials=["K1"],
    )
    executor = build_chat_executor(lambda request: _hello_response(), store)

    asyncio.run(executor.execute(_chat(), api_key="sk-A", request_id="r1"))

    assert store.tenant("T").daily_requests_used == 1


def test_concurrent_requests_cannot_overrun_daily_limit() -> None:
    store = build_store(
        tenants=[
            TenantRecord(
                tenant_id="T",
                api_key="sk-A",
                daily_requests_used=14,
                last_request_date=utc_today(),
            )
        ],
        system_credentials=["K1"],
    )
    executor = build_chat_executor(lambda request: _hello_response(), store)

    async def scenario() -> list[Any]:
        first = await executor.authenticate("sk-A")
        second = await executor.authenticate("sk-A")
        return list(
            await asyncio.gather(
                executor.tenant_access(
                    first, model="gpt-4o-mini", provider="openai", kind="chat", request_id="r1"
                ),
                executor.tenant_access(
                    second, model="gpt-4o-mini", provider="openai", kind="chat", request_id="r2"
                ),
                return_exceptions=True,
            )
        )

    allowed, rejected = asyncio.run(scenario())

    assert allowed.free_tier is True
    assert isinstance(rejected, GatewayError)
    assert rejected.status_code == 403
    assert rejected.code == "DAILY_LIMIT_EXCEEDED"
    assert rejected.extra == {"dailyUsed": 15, "dailyLimit": 15}
    assert store.usage_records[-1].error == "Daily limit exceeded"


def test_tenant_credentials_skip_quota_and_rotate_past_usage_limited_key() -> None:
    store = build_store(tenants=[TenantRecord(tenant_id="T", api_key="sk-A", credentials=["Ka", "Kb"])])
    used: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        credential = request_credential(request)
        used.append(credential)
        if credential == "Ka":
            return upstream_failure("usage-limited")
        return _hello_response()

    executor = build_chat_executor(handler, store)

    async def scenario() -> dict[str, Any]:
        response = await executor.execute(_chat(), api_key="sk-A", request_id="r1")
        await executor.drain()
        return json.loads(await _body(response))

    body = asyncio.run(scenario())

    assert body["choices"][0]["message"]["content"] == "hello"
    assert used == ["Ka", "Kb"]
    assert executor.key_pool.is_available("Ka") is False
    assert executor.key_pool.is_available("Kb") is True
    snapshot = executor.key_pool.snapshot()
    assert snapshot["daily_blocked"] == 1
    assert snapshot["short_blocked"] == 1
    assert store.add_blocked_calls == [(utc_today(), hash_credential("Ka"), "usage-limited")]
    assert store.usage_records[-1].key_type == "tenant"
    assert store.tenant("T").daily_requests_used == 0


def test_every_credential_rate_limited_is_tried_once() -> None:
    store = build_store(tenants=[TenantRecord(tenant_id="T", api_key="sk-A", credentials=["K1", "K2", "K3"])])
    used: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        used.append(request_credential(request))
        return upstream_failure("Too many requests", status_code=429)

    executor = build_chat_executor(handler, store)

    with pytest.raises(GatewayError) as exc_info:
        asyncio.run(executor.execute(_chat(), api_key="sk-A", request_id="r1"))

    assert exc_info.value.status_code == 500
    assert exc_info.value.message == "All keys unavailable"
    assert sorted(used) == ["K1", "K2", "K3"]
    assert store.usage_records[-1].error == "All keys unavailable"


def test_fatal_upstream_error_is_not_retried() -> None:
    store = build_store(tenants=[TenantRecord(tenant_id="T", api_key="sk-A", credentials=["K1", "K2"])])
    used: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        used.append(request_credential(request))
        return upstream_failure("model not found")

    executor = build_chat_executor(handler, store)

    with pytest.raises(GatewayError) as exc_info:
        asyncio.run(executor.execute(_chat(), api_key="sk-A", request_id="r1"))

    assert exc_info.value.status_code == 500
    assert exc_info.value.message == "model not found"
    assert used == ["K1"]
    assert executor.key_pool.is_available("K1") is True


def test_tool_call_response_has_string_arguments() -> None:
    store = build_store(tenants=[TenantRecord(tenant_id="T", api_key="sk-A", credentials=["K1"])])

    def handler(request: httpx.Request) -> httpx.Response:
        return upstream_success(
            {
                "message": {
                    "content": "",
                    "tool_calls": [
                        {"id": "call_9", "type": "function", "function": {"name": "f", "arguments": {"x": 1}}}
                    ],
                }
            }
        )

    executor = build_chat_executor(handler, store)
    tools = [{"type": "function", "function": {"name": "f", "parameters": {}}}]

    async def scenario() -> dict[str, Any]:
        response = await executor.execute(
            _chat("gpt-4o", tools=tools), api_key="sk-A", request_id="r1"
        )
        return json.loads(await _body(response))

    body = asyncio.run(scenario())

    choice = body["choices"][0]
    assert choice["finish_reason"] == "tool_calls"
    assert choice["message"]["content"] is None
    assert choice["message"]["tool_calls"][0]["function"] == {"name": "f", "arguments": '{"x":1}'}


def test_direct_token_falls_back_to_system_credentials() -> None:
    store = build_store(system_credentials=["S0"])
    used: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        credential = request_credential(request)
        used.append(credential)
        if credential == "T0":
            return upstream_failure("invalid token")
        return _hello_response()

    executor = build_chat_executor(handler, store)

    async def scenario() -> dict[str, Any]:
        response = await executor.execute(
            _chat(), api_key=None, direct_token="T0", request_id="r1"
        )
        await executor.drain()
        return json.loads(await _body(response))

    body = asyncio.run(scenario())

    assert body["choices"][0]["message"]["content"] == "hello"
    assert used == ["T0", "S0"]
    record = store.usage_records[-1]
    assert record.key_type == "system-fallback"
    assert record.tenant_id is None


def test_missing_api_key_is_rejected() -> None:
    executor = build_chat_executor(lambda request: _hello_response(), build_store())

    with pytest.raises(GatewayError) as exc_info:
        asyncio.run(executor.execute(_chat(), api_key=None, request_id="r1"))
    assert exc_info.value.status_code == 401
    assert exc_info.value.message == "API key required"

    with pytest.raises(GatewayError) as exc_info:
        asyncio.run(executor.execute(_chat(), api_key="sk-unknown", request_id="r1"))
    assert exc_info.value.message == "Invalid API key"


def test_missing_messages_is_bad_request() -> None:
    store = build_store(tenants=[TenantRecord(tenant_id="T", api_key="sk-A", credentials=["K1"])])
    executor = build_chat_executor(lambda request: _hello_response(), store)

    with pytest.raises(GatewayError) as exc_info:
        asyncio.run(executor.execute({"model": "gpt-4o"}, api_key="sk-A", request_id="r1"))

    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "messages is required"


def test_no_system_credentials_configured() -> None:
    store = build_store(tenants=[TenantRecord(tenant_id="T", api_key="sk-A")])
    executor = build_chat_executor(lambda request: _hello_response(), store)

    with pytest.raises(GatewayError) as exc_info:
        asyncio.run(executor.execute(_chat(), api_key="sk-A", request_id="r1"))

    assert exc_info.value.status_code == 500
    assert exc_info.value.message == "No credential configured"


def test_settings_fallback_credential_is_used_when_store_has_none() -> None:
    store = build_store(tenants=[TenantRecord(tenant_id="T", api_key="sk-A")])
    used: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        used.append(request_credential(request))
        return _hello_response()

    executor = build_chat_executor(handler, store, puter_api_key="env-key")
    asyncio.run(executor.execute(_chat(), api_key="sk-A", request_id="r1"))

    assert used == ["env-key"]


def test_upstream_timeout_becomes_server_error() -> None:
    store = build_store(tenants=[TenantRecord(tenant_id="T", api_key="sk-A", credentials=["K1"])])

    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return _hello_response()

    executor = build_chat_executor(handler, store)
    executor.upstream.timeout_seconds = 0.05

    with pytest.raises(GatewayError) as exc_info:
        asyncio.run(executor.execute(_chat(), api_key="sk-A", request_id="r1"))

    assert exc_info.value.status_code == 500
    assert "timed out" in exc_info.value.message


def test_upstream_connection_error_names_error_type() -> None:
    store = build_store(tenants=[TenantRecord(tenant_id="T", api_key="sk-A", credentials=["K1", "K2"])])
    used: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        used.append(request_credential(request))
        raise httpx.ConnectError("connection refused", request=request)

    executor = build_chat_executor(handler, store)

    with pytest.raises(GatewayError) as exc_info:
        asyncio.run(executor.execute(_chat(), api_key="sk-A", request_id="r1"))

    assert exc_info.value.status_code == 500
    assert exc_info.value.message == "Upstream connection failed: ConnectError: connection refused"
    assert used == ["K1"]


def test_stream_splits_think_tags_across_events() -> None:
    store = build_store(tenants=[TenantRecord(tenant_id="T", api_key="sk-A", credentials=["K1"])])
    seen: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request_body(request))
        return ndjson_response(
            [
                {"type": "text", "text": "<thi"},
                {"type": "text", "text": "nk>reasoning here</think>answer"},
            ]
        )

    executor = build_chat_executor(handler, store)

    async def scenario() -> bytes:
        response = await executor.execute(
            _chat("claude-3.7-sonnet", stream=True, thinking_budget=5000),
            api_key="sk-A",
            request_id="r1",
        )
        body = await _body(response)
        await executor.drain()
        return body

    frames = parse_sse(asyncio.run(scenario()))

    assert seen[0]["driver"] == "openrouter"
    assert not any("<think" in json.dumps(frame) or "</think>" in json.dumps(frame) for frame in frames)
    assert seen[0]["args"]["model"] == "openrouter:anthropic/claude-3.7-sonnet:thinking"
    assert seen[0]["args"]["stream"] is True
    deltas = [frame["choices"][0]["delta"] for frame in frames[:-1]]
    assert deltas == [
        {"role": "assistant"},
        {"reasoning_content": "reasoning here"},
        {"content": "answer"},
        {},
    ]
    assert frames[-2]["choices"][0]["finish_reason"] == "stop"
    assert frames[-1] == "[DONE]"
    assert store.usage_records[-1].success is True


def test_stream_rotates_when_first_event_is_rate_limit() -> None:
    store = build_store(tenants=[TenantRecord(tenant_id="T", api_key="sk-A", credentials=["K1", "K2"])])

    def handler(request: httpx.Request) -> httpx.Response:
        if request_credential(request) == "K1":
            return ndjson_response([{"success": False, "error": {"message": "rate limit"}}])
        return ndjson_response([{"type": "text", "text": "ok"}])

    executor = build_chat_executor(handler, store)

    async def scenario() -> bytes:
        response = await executor.execute(
            _chat(stream=True), api_key="sk-A", request_id="r1"
        )
        return await _body(response)

    frames = parse_sse(asyncio.run(scenario()))

    assert frames[1]["choices"][0]["delta"] == {"content": "ok"}
    assert frames[-1] == "[DONE]"
    assert executor.key_pool.is_available("K1") is False


def test_stream_direct_token_falls_back_when_first_event_fails() -> None:
    store = build_store(system_credentials=["S0"])
    used: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        credential = request_credential(request)
        used.append(credential)
        if credential == "T0":
            return ndjson_response([{"success": False, "error": {"message": "invalid token"}}])
        return ndjson_response([{"type": "text", "text": "ok"}])

    executor = build_chat_executor(handler, store)

    async def scenario() -> bytes:
        response = await executor.execute(
            _chat(stream=True), api_key=None, direct_token="T0", request_id="r1"
        )
        body = await _body(response)
        await executor.drain()
        return body

    frames = parse_sse(asyncio.run(scenario()))

    assert used == ["T0", "S0"]
    assert frames[1]["choices"][0]["delta"] == {"content": "ok"}
    assert frames[-1] == "[DONE]"
    record = store.usage_records[-1]
    assert record.success is True
    assert record.key_type == "system-fallback"
    assert record.tenant_id is None


class _TrackedStream(httpx.AsyncByteStream):
    def __init__(self, events: list[dict[str, Any]]) -> None:
        self.events = events
        self.closed = False

    async def __aiter__(self) -> Any:
        for event in self.events:
            yield (json.dumps(event) + "\n").encode("utf-8")

    async def aclose(self) -> None:
        self.closed = True


def test_client_disconnect_closes_upstream_and_records_interruption() -> None:
    store = build_store(tenants=[TenantRecord(tenant_id="T", api_key="sk-A", credentials=["K1"])])
    upstream_body = _TrackedStream(
        [
            {"type": "text", "text": "first"},
            {"type": "text", "text": "second"},
            {"type": "text", "text": "third"},
        ]
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, headers={"content-type": "application/x-ndjson"}, stream=upstream_body
        )

    executor = build_chat_executor(handler, store)

    async def scenario() -> list[Any]:
        response = await executor.execute(
            _chat(stream=True), api_key="sk-A", request_id="r1"
        )
        iterator = response.body_iterator
        received = [await iterator.__anext__(), await iterator.__anext__()]
        await iterator.aclose()
        await executor.drain()
        return received

    received = asyncio.run(scenario())

    frames = parse_sse(b"".join(received))
    assert frames[0]["choices"][0]["delta"] == {"role": "assistant"}
    assert frames[1]["choices"][0]["delta"] == {"content": "first"}
    assert upstream_body.closed is True
    assert executor.key_pool.is_available("K1") is True
    record = store.usage_records[-1]
    assert record.success is False
    assert record.error == "stream interrupted"
    assert record.key_type == "tenant"


def test_stream_error_after_first_event_emits_error_frame_without_done() -> None:
    store = build_store(tenants=[TenantRecord(tenant_id="T", api_key="sk-A", credentials=["K1"])])

    def handler(request: httpx.Request) -> httpx.Response:
        return ndjson_response(
            [
                {"type": "text", "text": "hello"},
                {"success": False, "error": {"message": "boom"}},
            ]
        )

    executor = build_chat_executor(handler, store)

    async def scenario() -> bytes:
        response = await executor.execute(
            _chat(stream=True), api_key="sk-A", request_id="r1"
        )
        body = await _body(response)
        await executor.drain()
        return body

    frames = parse_sse(asyncio.run(scenario()))

    assert frames[0]["choices"][0]["delta"] == {"role": "assistant"}
    assert frames[1]["choices"][0]["delta"] == {"content": "hello"}
    assert frames[2] == {"error": {"message": "boom", "type": "api_error"}}
    assert "[DONE]" not in frames
    record = store.usage_records[-1]
    assert record.success is False
    assert record.error == "boom"


def test_stream_request_answered_with_json_is_replayed() -> None:
    store = build_store(tenants=[TenantRecord(tenant_id="T", api_key="sk-A", credentials=["K1"])])
    executor = build_chat_executor(lambda request: _hello_response(), store)

    async def scenario() -> bytes:
        response = await executor.execute(
            _chat(stream=True), api_key="sk-A", request_id="r1"
        )
        return await _body(response)

    frames = parse_sse(asyncio.run(scenario()))

    assert frames[1]["choices"][0]["delta"] == {"content": "hello"}
    assert frames[2]["usage"]["total_tokens"] == 3
    assert frames[-1] == "[DONE]"


def test_stream_html_response_is_fatal() -> None:
    store = build_store(tenants=[TenantRecord(tenant_id="T", api_key="sk-A", credentials=["K1", "K2"])])
    used: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        used.append(request_credential(request))
        return httpx.Response(200, headers={"content-type": "text/html"}, content=b"<html></html>")

    executor = build_chat_executor(handler, store)

    with pytest.raises(GatewayError) as exc_info:
        asyncio.run(
            executor.execute(_chat(stream=True), api_key="sk-A", request_id="r1")
        )

    assert exc_info.value.message == "Upstream returned an HTML page (HTTP 200)"
    assert used == ["K1"]
