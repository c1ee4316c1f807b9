"""Tenant-scoped cache of flag evaluation results.

Correctness never depends on a hit: a cold cache recomputes the same
decision because bucketing is a pure function of subject and flag key.
"""
import json
import re
import threading
import time
from typing import Callable, Dict, Optional

import redis
import structlog

from flaglab.services.evaluation_result import EvaluationResult

logger = structlog.get_logger()

DEFAULT_TTL_SECONDS = 24 * 60 * 60


def cache_key(tenant_id: str, flag_key: str, context_type: str, context_id: str) -> str:
    """Build the `tenant:flag:context_type:context_id` key."""
    return f"{tenant_id}:{flag_key}:{context_type}:{context_id}"


def _escape_glob(value: str) -> str:
    """Escape Redis MATCH metacharacters so a tenant id matches literally."""
    return re.sub(r"([*?\[\]\\])", r"\\\1", value)


class _CacheEntry:
    __slots__ = ("value", "expires_at")

    def __init__(self, value: EvaluationResult, expires_at: float):
        self.value = value
        self.expires_at = expires_at


class EvaluationCache:
    """In-process TTL map, safe for concurrent request threads."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()
        self._next_sweep = clock() + ttl_seconds

    def get(self, key: str) -> Optional[EvaluationResult]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                return None
            return entry.value

    def put(self, key: str, result: EvaluationResult) -> None:
        with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._sweep(now)
            self._entries[key] = _CacheEntry(result, now + self.ttl_seconds)

    def _sweep(self, now: float) -> None:
        # At most once per TTL; caller holds the lock.
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            del self._entries[key]
        self._next_sweep = now + self.ttl_seconds

    def clear_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def clear_for_tenant(self, tenant_id: str) -> int:
        """Drop every entry for a tenant. Returns the number removed."""
        prefix = f"{tenant_id}:"
        with self._lock:
            stale = [key for key in self._entries if key.startswith(prefix)]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)


class RedisEvaluationCache:
    """Redis-backed cache sharing evaluation results across worker processes."""

    def __init__(
        self,
        redis_client: redis.Redis,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        namespace: str = "flag_eval"
    ):
        self.redis = redis_client
        self.ttl_seconds = int(ttl_seconds)
        self.namespace = namespace

    def _redis_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def get(self, key: str) -> Optional[EvaluationResult]:
        try:
            raw = self.redis.get(self._redis_key(key))
        except redis.RedisError as e:
            logger.warning("evaluation_cache_get_failed", key=key, error=str(e))
            return None
        if raw is None:
            return None
        return EvaluationResult.from_dict(json.loads(raw))

    def put(self, key: str, result: EvaluationResult) -> None:
        try:
            self.redis.setex(self._redis_key(key), self.ttl_seconds, json.dumps(result.to_dict()))
        except redis.RedisError as e:
            logger.warning("evaluation_cache_put_failed", key=key, error=str(e))

    def _delete_matching(self, pattern: str) -> int:
        removed = 0
        try:
            for redis_key in self.redis.scan_iter(match=pattern):
                self.redis.delete(redis_key)
                removed += 1
        except redis.RedisError as e:
            logger.warning(
                "evaluation_cache_clear_failed",
                pattern=pattern,
                removed=removed,
                error=str(e)
            )
        return removed

    def clear_all(self) -> None:
        self._delete_matching(f"{self.namespace}:*")

    def clear_for_tenant(self, tenant_id: str) -> int:
        return self._delete_matching(f"{self.namespace}:{_escape_glob(tenant_id)}:*")


def build_evaluation_cache(settings):
    """Construct the configured cache backend once at process start."""
    if settings.evaluation_cache_backend == "redis":
        return RedisEvaluationCache(
            redis.from_url(settings.redis_url),
            ttl_seconds=settings.evaluation_cache_ttl_seconds
        )
    return EvaluationCache(ttl_seconds=settings.evaluation_cache_ttl_seconds)
