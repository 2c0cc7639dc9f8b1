import asyncio
import json
from pathlib import Path
from typing import Any

import yaml

from puter_gateway.persistence import YamlDocument
from puter_gateway.settings import Settings
from puter_gateway.stores import (
    InMemoryGatewayStore,
    JsonlUsageLog,
    RedisPoolStore,
    UsageRecord,
    YamlGatewayStore,
    build_stores,
    coerce_credentials,
)
from puter_gateway.stores.redis_pool import BLOCKED_TTL_SECONDS, build_pool_store


def _write_yaml(path: Path, payload: dict[str, Any]) -> None:
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")


class _FakeRedis:
    def __init__(self) -> None:
        self.hashes: dict[str, dict[bytes, bytes]] = {}
        self.expiries: dict[str, int] = {}
        self.closed = False

    async def hgetall(self, key: str) -> dict[bytes, bytes]:
        return dict(self.hashes.get(key, {}))

    async def hset(self, key: str, field: str, value: str) -> int:
        self.hashes.setdefault(key, {})[field.encode("utf-8")] = value.encode("utf-8")
        return 1

    async def expire(self, key: str, seconds: int) -> bool:
        self.expiries[key] = seconds
        return True

    async def aclose(self) -> None:
        self.closed = True


def test_yaml_document_update_is_atomic_and_returns_result(tmp_path: Path) -> None:
    document = YamlDocument(tmp_path / "nested" / "doc.yaml")

    assert document.load() == {}
    result = document.update(lambda payload: payload.setdefault("count", 3))

    assert result == 3
    assert document.load() == {"count": 3}
    assert list((tmp_path / "nested").iterdir()) == [tmp_path / "nested" / "doc.yaml"]


def test_yaml_store_tenant_lifecycle(tmp_path: Path) -> None:
    path = tmp_path / "gateway.yaml"
    _write_yaml(
        path,
        {
            "system": {"system_credentials": ["S1", {"key": "S2"}], "daily_free_limit": 5},
            "tenants": {
                "t1": {
                    "api_key": "sk-1",
                    "credentials": [{"key": "own"}],
                    "daily_requests_used": 4,
                    "last_request_date": "2025-01-01",
                }
            },
        },
    )
    store = YamlGatewayStore(path)

    async def scenario() -> Any:
        tenant = await store.get_by_api_key("sk-1")
        missing = await store.get_by_api_key("sk-404")
        config = await store.get_system_config()
        first = await store.increment_daily_usage("t1", "2025-01-02")
        second = await store.increment_daily_usage("t1", "2025-01-02")
        await store.add_lifetime_usage(
            "t1", prompt_tokens=2, completion_tokens=3, total_tokens=5, images=1
        )
        await store.reset_daily_usage("t1", "2025-01-03")
        return tenant, missing, config, first, second

    tenant, missing, config, first, second = asyncio.run(scenario())

    assert tenant.tenant_id == "t1"
    assert tenant.credentials == ["own"]
    assert tenant.daily_requests_used == 4
    assert missing is None
    assert config.system_credentials == ["S1", "S2"]
    assert config.daily_free_limit == 5
    assert (first, second) == (1, 2)

    saved = yaml.safe_load(path.read_text(encoding="utf-8"))["tenants"]["t1"]
    assert saved["daily_requests_used"] == 0
    assert saved["last_request_date"] == "2025-01-03"
    assert saved["total_tokens"] == 5
    assert saved["total_image_generations"] == 1
    assert saved["total_requests"] == 1


def test_yaml_store_counts_usage_for_numeric_tenant_ids(tmp_path: Path) -> None:
    path = tmp_path / "gateway.yaml"
    path.write_text(
        "tenants:\n"
        "  12345:\n"
        "    api_key: sk-A\n"
        "    daily_requests_used: 0\n",
        encoding="utf-8",
    )
    store = YamlGatewayStore(path)

    async def scenario() -> Any:
        tenant = await store.get_by_api_key("sk-A")
        used = await store.increment_daily_usage(tenant.tenant_id, "2025-03-01")
        after_increment = yaml.safe_load(path.read_text(encoding="utf-8"))
        await store.reset_daily_usage(tenant.tenant_id, "2025-03-02")
        return tenant, used, after_increment

    tenant, used, after_increment = asyncio.run(scenario())

    assert tenant.tenant_id == "12345"
    assert used == 1
    assert after_increment["tenants"][12345]["daily_requests_used"] == 1
    saved = yaml.safe_load(path.read_text(encoding="utf-8"))["tenants"][12345]
    assert saved["daily_requests_used"] == 0
    assert saved["last_request_date"] == "2025-03-02"


def test_yaml_store_blocked_documents_keep_only_current_days(tmp_path: Path) -> None:
    path = tmp_path / "gateway.yaml"
    _write_yaml(
        path,
        {"blocked_credentials": {"2025-01-01": {"old": {"reason": "usage-limited"}}}},
    )
    store = YamlGatewayStore(path)

    async def scenario() -> Any:
        await store.add_blocked(
            "2025-01-02", "abc", reason="usage-limited", failed_at="2025-01-02T10:00:00+00:00"
        )
        return await store.load_blocked("2025-01-02"), await store.load_blocked("2025-01-01")

    today, yesterday = asyncio.run(scenario())

    assert today == {"abc": {"failed_at": "2025-01-02T10:00:00+00:00", "reason": "usage-limited"}}
    assert yesterday == {}


def test_yaml_store_without_file_has_empty_config(tmp_path: Path) -> None:
    store = YamlGatewayStore(tmp_path / "absent.yaml")

    config = asyncio.run(store.get_system_config())

    assert config.system_credentials == []
    assert config.daily_free_limit is None


def test_jsonl_usage_log_writes_one_line_per_record(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "usage.jsonl"
    usage_log = JsonlUsageLog(path=path)

    async def scenario() -> None:
        await usage_log.append(
            UsageRecord(tenant_id="t1", model="gpt-4o", provider="openai", success=True)
        )
        await usage_log.append(
            UsageRecord(
                tenant_id=None,
                model="flux",
                provider="together-image-generation",
                success=False,
                kind="txt2img",
                error="boom",
            )
        )

    asyncio.run(scenario())
    usage_log.close()

    lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [line["model"] for line in lines] == ["gpt-4o", "flux"]
    assert lines[1]["error"] == "boom"
    assert lines[0]["date"] == lines[0]["timestamp"][:10]


def test_jsonl_usage_log_keeps_order_across_batches(tmp_path: Path) -> None:
    path = tmp_path / "usage.jsonl"
    usage_log = JsonlUsageLog(path=path)

    for index in range(600):
        usage_log.write(
            UsageRecord(tenant_id=f"t{index}", model="gpt-4o", provider="openai", success=True)
        )
    usage_log.close()
    usage_log.close()

    tenants = [json.loads(line)["tenant_id"] for line in path.read_text(encoding="utf-8").splitlines()]
    assert tenants == [f"t{index}" for index in range(600)]
    assert usage_log.dropped_records == 0


def test_disabled_usage_log_creates_nothing(tmp_path: Path) -> None:
    path = tmp_path / "usage.jsonl"
    usage_log = JsonlUsageLog(path=path, enabled=False)

    usage_log.write(UsageRecord(tenant_id="t", model="m", provider="p", success=True))
    usage_log.close()

    assert not path.exists()


def test_redis_pool_store_round_trip() -> None:
    redis = _FakeRedis()
    store = RedisPoolStore(redis, key_prefix="gw:")

    async def scenario() -> dict[str, Any]:
        await store.add_blocked(
            "2025-02-02", "hash1", reason="usage-limited", failed_at="2025-02-02T00:00:00+00:00"
        )
        loaded = await store.load_blocked("2025-02-02")
        await store.close()
        return loaded

    loaded = asyncio.run(scenario())

    assert loaded == {"hash1": {"failed_at": "2025-02-02T00:00:00+00:00", "reason": "usage-limited"}}
    assert redis.expiries == {"gw:blocked:2025-02-02": BLOCKED_TTL_SECONDS}
    assert redis.closed is True


def test_pool_store_falls_back_without_redis_url() -> None:
    fallback = InMemoryGatewayStore()

    assert build_pool_store(redis_url=None, key_prefix="gw", fallback=fallback) is fallback


def test_build_stores_memory_backend_shares_one_store() -> None:
    stores = build_stores(Settings(store_backend="memory", redis_url=None))

    assert isinstance(stores.tenants, InMemoryGatewayStore)
    assert stores.tenants is stores.system is stores.usage is stores.pool


def test_build_stores_yaml_backend(tmp_path: Path) -> None:
    stores = build_stores(
        Settings(
            store_backend="yaml",
            store_path=str(tmp_path / "gateway.yaml"),
            usage_log_enabled=False,
            usage_log_path=str(tmp_path / "usage.jsonl"),
            redis_url=None,
        )
    )

    assert isinstance(stores.tenants, YamlGatewayStore)
    assert isinstance(stores.usage, JsonlUsageLog)
    assert stores.pool is stores.tenants


def test_coerce_credentials_accepts_strings_and_mappings() -> None:
    assert coerce_credentials(["a", {"key": " b "}, {"key": ""}, 3, " "]) == ["a", "b"]
    assert coerce_credentials("not-a-list") == []
