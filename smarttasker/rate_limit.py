from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock

import redis
from fastapi import HTTPException, status

from smarttasker.config import settings


@dataclass
class _Bucket:
  reset_at: float
  count: int


class RateLimiter:
  """
  Fixed-window rate limiter for login attempts and chat turns.

  Uses Redis when REDIS_URL is configured so limits hold across replicas;
  otherwise buckets live in process memory.
  """

  def __init__(self, redis_url: str | None = None) -> None:
    self._lock = Lock()
    self._buckets: dict[str, _Bucket] = {}
    self._redis = None
    if redis_url:
      try:
        self._redis = redis.Redis.from_url(redis_url, decode_responses=True)
      except (redis.RedisError, ValueError):
        self._redis = None

  def hit(self, key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
    """
    Returns (allowed, retry_after_seconds).
    """
    if self._redis is not None:
      try:
        rk = f"rl:{key}"
        pipe = self._redis.pipeline()
        pipe.incr(rk, 1)
        pipe.ttl(rk)
        count, ttl = pipe.execute()
        if int(count) == 1:
          self._redis.expire(rk, int(window_seconds))
          ttl = int(window_seconds)
        retry = max(1, int(ttl)) if int(ttl) > 0 else int(window_seconds)
        if int(count) > int(limit):
          return False, retry
        return True, 0
      except redis.RedisError:
        # Redis unavailable; fall through to the in-memory buckets.
        pass

    now = time.time()
    with self._lock:
      for k in [k for k, v in self._buckets.items() if now >= v.reset_at]:
        del self._buckets[k]
      b = self._buckets.get(key)
      if b is None or now >= b.reset_at:
        self._buckets[key] = _Bucket(reset_at=now + window_seconds, count=1)
        return True, 0
      if b.count >= limit:
        retry = max(1, int(b.reset_at - now))
        return False, retry
      b.count += 1
      return True, 0

  def reset_prefix(self, prefix: str) -> None:
    with self._lock:
      for k in list(self._buckets.keys()):
        if k.startswith(prefix):
          del self._buckets[k]


limiter = RateLimiter(settings.redis_url)


def rate_limit_or_429(*, key: str, limit: int, window_seconds: int = 60) -> None:
  allowed, retry_after = limiter.hit(key, limit=limit, window_seconds=window_seconds)
  if allowed:
    return
  raise HTTPException(
    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
    detail={"code": "rate_limited", "message": "Too many requests", "retryAfterSeconds": retry_after},
    headers={"Retry-After": str(retry_after)},
  )
