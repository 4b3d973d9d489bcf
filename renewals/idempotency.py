"""Inbound MessageSid de-duplication (Redis with in-process fallback)."""

from __future__ import annotations

from typing import Optional

import redis

from renewals.config import settings
from renewals.runtime import get_logger

logger = get_logger("idempotency")

TTL_SECONDS = 24 * 60 * 60


class IdempotencyStore:
    """Redis idempotency with local fallback for message deduplication."""

    def __init__(self, redis_url: Optional[str] = None, *, tls: Optional[bool] = None, max_mem_size: int = 10000):
        self.r = None
        url = redis_url if redis_url is not None else settings().REDIS_URL
        if url:
            use_tls = settings().REDIS_TLS if tls is None else tls
            try:
                if use_tls and url.startswith("rediss://"):
                    self.r = redis.from_url(url, decode_responses=True)
                elif use_tls:
                    self.r = redis.from_url(url, ssl=True, decode_responses=True)
                else:
                    self.r = redis.from_url(url, decode_responses=True)
            except (redis.RedisError, ValueError):
                logger.warning("Redis unavailable, using in-process idempotency", exc_info=True)
        self._mem: dict[str, None] = {}
        self._max_mem_size = max_mem_size

    def seen(self, msg_id: Optional[str]) -> bool:
        """True when ``msg_id`` was already processed; marks it otherwise."""
        if not msg_id:
            return False
        key = f"renewals:inbound:{msg_id}"

        if self.r is not None:
            try:
                ok = self.r.set(key, "1", nx=True, ex=TTL_SECONDS)
                return not bool(ok)
            except redis.RedisError as exc:
                logger.warning("Redis SET failed, falling back to memory: %s", exc)

        if key in self._mem:
            return True
        if len(self._mem) >= self._max_mem_size:
            # drop the oldest 20% (dicts keep insertion order)
            for old_key in list(self._mem)[: self._max_mem_size // 5]:
                self._mem.pop(old_key, None)
        self._mem[key] = None
        return False

    def clear(self) -> None:
        self._mem.clear()


_STORE: Optional[IdempotencyStore] = None


def get_store() -> IdempotencyStore:
    global _STORE
    if _STORE is None:
        _STORE = IdempotencyStore()
    return _STORE


def reset_store() -> None:
    global _STORE
    _STORE = None
