"""Redis 幂等存储实现"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

from redis import asyncio as aioredis

from core.config import settings
from core.logging_config import get_logger
from domain.transaction.idempotency import Duplicate, FirstSeen, IdempotencyStore, Outcome, idempotency_key


logger = get_logger(__name__)

# 进行中请求的占位值；已完成请求保存结果 JSON
IN_FLIGHT_MARKER = "__in_flight__"


def _json_dumps(value: Any) -> str:
    """将任意对象序列化为JSON字符串"""
    return json.dumps(value, default=str)


def _json_loads(value: Optional[str]) -> Any:
    """将JSON字符串反序列化为对象"""
    if value is None:
        return None
    return json.loads(value)


class RedisIdempotencyStore(IdempotencyStore):
    """基于 Redis SET NX 的幂等守卫，可在多进程间共享"""

    def __init__(
        self,
        client: aioredis.Redis,
        namespace: str = "",
        *,
        ttl: Optional[int] = None,
        in_flight_ttl: Optional[int] = None,
    ) -> None:
        self._client = client
        self._namespace = namespace.strip(":")
        self._ttl = settings.redis.idempotency_ttl if ttl is None else ttl
        self._in_flight_ttl = settings.redis.in_flight_ttl if in_flight_ttl is None else in_flight_ttl

    def _format_key(self, ref_no: str, operation_kind: str, request_fingerprint: str) -> str:
        key = "idem:" + idempotency_key(ref_no, operation_kind, request_fingerprint)
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    async def check_and_record(self, ref_no: str, operation_kind: str, request_fingerprint: str) -> Outcome:
        key = self._format_key(ref_no, operation_kind, request_fingerprint)
        # 两次尝试：占位值可能恰好在 SET 与 GET 之间过期
        for _ in range(2):
            if await self._client.set(key, IN_FLIGHT_MARKER, nx=True, ex=self._in_flight_ttl):
                return FirstSeen()
            value = await self._client.get(key)
            if value is None:
                continue
            if value == IN_FLIGHT_MARKER:
                return Duplicate(None)
            logger.info("idempotency_cache_hit", ref_no=ref_no, operation=operation_kind, source="redis")
            return Duplicate(_json_loads(value))
        return Duplicate(None)

    async def complete(
        self,
        ref_no: str,
        operation_kind: str,
        request_fingerprint: str,
        result: dict[str, Any],
    ) -> None:
        key = self._format_key(ref_no, operation_kind, request_fingerprint)
        payload = _json_dumps(result)
        if self._ttl and self._ttl > 0:
            await self._client.set(key, payload, ex=self._ttl)
        else:
            await self._client.set(key, payload)

    async def release(self, ref_no: str, operation_kind: str, request_fingerprint: str) -> None:
        await self._client.delete(self._format_key(ref_no, operation_kind, request_fingerprint))


_redis_client: Optional[aioredis.Redis] = None
_store_instance: Optional[RedisIdempotencyStore] = None
_lock = asyncio.Lock()


async def init_redis_idempotency_store(namespace: Optional[str] = None) -> RedisIdempotencyStore:
    """初始化Redis幂等存储实例"""
    global _redis_client, _store_instance

    if _store_instance is not None:
        return _store_instance

    async with _lock:
        if _store_instance is not None:
            return _store_instance

        if not settings.redis.url:
            raise RuntimeError("REDIS__URL 未配置，无法初始化Redis幂等存储")

        client = aioredis.from_url(
            settings.redis.url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis.max_connections,
        )

        _redis_client = client
        _store_instance = RedisIdempotencyStore(
            client=client,
            namespace=namespace or settings.redis.namespace,
        )
        return _store_instance


async def shutdown_redis_idempotency_store() -> None:
    """关闭Redis连接"""
    global _redis_client, _store_instance

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        _store_instance = None
