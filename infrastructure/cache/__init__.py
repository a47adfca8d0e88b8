"""幂等存储对外暴露的接口"""
from .memory import InMemoryIdempotencyStore
from .redis_cache import (
    RedisIdempotencyStore,
    init_redis_idempotency_store,
    shutdown_redis_idempotency_store,
)

__all__ = [
    "InMemoryIdempotencyStore",
    "RedisIdempotencyStore",
    "init_redis_idempotency_store",
    "shutdown_redis_idempotency_store",
]
