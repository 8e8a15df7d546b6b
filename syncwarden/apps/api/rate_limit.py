from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import math
import time
from typing import Awaitable, Callable, Protocol

from fastapi import HTTPException, Request, Response, status
from redis.asyncio import Redis

from syncwarden.core.config import get_settings
from syncwarden.core.errors import RateLimitedError
from syncwarden.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

RATE_LIMIT_BACKEND_MEMORY = "memory"
RATE_LIMIT_BACKEND_REDIS = "redis"

# Sweep idle in-memory partitions every N admissions.
_EVICTION_INTERVAL = 256


class PrincipalLike(Protocol):
    # Minimal principal shape needed for partitioning.
    user_id: str | None


@dataclass(frozen=True)
class BucketConfig:
    # Bucket capacity plus replenishment of tokens_per_period every replenish_period_s.
    token_limit: int
    tokens_per_period: int
    replenish_period_s: float

    @property
    def rate(self) -> float:
        # Sustained refill in tokens per second.
        if self.replenish_period_s <= 0:
            return 0.0
        return self.tokens_per_period / self.replenish_period_s


@dataclass(frozen=True)
class RateLimitDecision:
    # Capture the outcome and retry hints for a rate-limited request.
    allowed: bool
    partition: str
    retry_after_ms: int
    remaining: float | None = None
    queued: bool = False
    degraded: bool = False

    @property
    def retry_after_s(self) -> int:
        return int(math.ceil(self.retry_after_ms / 1000.0))


@dataclass
class _PartitionState:
    tokens: float
    last_ms: int
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiters: int = 0


_TOKEN_BUCKET_LUA = r"""
local now_ms = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local burst = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

local data = redis.call("HMGET", KEYS[1], "tokens", "ts")
local tokens = tonumber(data[1])
local ts = tonumber(data[2])
if tokens == nil then
  tokens = burst
  ts = now_ms
end
if now_ms < ts then
  ts = now_ms
end
tokens = math.min(burst, tokens + ((now_ms - ts) / 1000.0) * rate)

local retry = 0
if tokens < cost then
  if rate <= 0 then
    retry = 1000
  else
    retry = math.ceil(((cost - tokens) / rate) * 1000)
  end
end

local allowed = tokens >= cost
if allowed then
  tokens = tokens - cost
end

redis.call("HMSET", KEYS[1], "tokens", tokens, "ts", now_ms)
redis.call("EXPIRE", KEYS[1], ttl)

return {allowed and 1 or 0, tostring(tokens), retry}
"""


def _calculate_tokens(
    *,
    tokens: float | None,
    last_ms: int | None,
    now_ms: int,
    rate: float,
    burst: int,
) -> float:
    # Refill tokens based on elapsed time while enforcing burst capacity.
    if tokens is None:
        tokens = float(burst)
    if last_ms is None:
        last_ms = now_ms
    if now_ms < last_ms:
        last_ms = now_ms
    delta_s = (now_ms - last_ms) / 1000.0
    tokens = min(float(burst), tokens + (delta_s * rate))
    return tokens


def _retry_after_ms(tokens: float, *, rate: float, cost: int) -> int:
    # Compute retry-after using the token deficit and sustained rate.
    if tokens >= cost:
        return 0
    if rate <= 0:
        return 1000
    needed = cost - tokens
    return int(math.ceil((needed / rate) * 1000))


def _ttl_seconds(rate: float, burst: int) -> int:
    # Expire idle buckets after a conservative refill window.
    if rate <= 0:
        return max(1, burst)
    return max(1, int(math.ceil((burst / rate) * 2)))


def partition_key(request: Request, principal: PrincipalLike | None) -> str:
    # Authenticated callers share one bucket per user; everyone else is keyed by address.
    user_id = getattr(principal, "user_id", None) if principal is not None else None
    if user_id:
        return f"user:{user_id}"
    client_host = request.client.host if request.client else None
    return f"ip:{client_host or 'unknown'}"


def is_exempt_path(path: str) -> bool:
    # Health checks bypass admission control entirely.
    normalized = path.rstrip("/") or "/"
    return normalized in {p.rstrip("/") or "/" for p in get_settings().rl_exempt_paths}


class InMemoryRateLimiter:
    def __init__(
        self,
        *,
        time_provider: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        # Allow injecting time and sleep for deterministic tests.
        self._time_provider = time_provider or time.time
        self._sleep = sleep or asyncio.sleep
        self._partitions: dict[str, _PartitionState] = {}
        self._admissions = 0

    def _now_ms(self) -> int:
        return int(self._time_provider() * 1000)

    def _state(self, partition: str, config: BucketConfig) -> _PartitionState:
        state = self._partitions.get(partition)
        if state is None:
            state = _PartitionState(tokens=float(config.token_limit), last_ms=self._now_ms())
            self._partitions[partition] = state
        return state

    def _evict_idle(self, config: BucketConfig) -> None:
        # Drop partitions idle long enough to have refilled completely.
        ttl_ms = _ttl_seconds(config.rate, config.token_limit) * 1000
        now_ms = self._now_ms()
        idle = [
            key
            for key, state in self._partitions.items()
            if now_ms - state.last_ms > ttl_ms and state.waiters == 0 and not state.lock.locked()
        ]
        for key in idle:
            self._partitions.pop(key, None)

    async def _take(self, state: _PartitionState, config: BucketConfig, cost: int) -> tuple[bool, float, int]:
        async with state.lock:
            now_ms = self._now_ms()
            tokens = _calculate_tokens(
                tokens=state.tokens,
                last_ms=state.last_ms,
                now_ms=now_ms,
                rate=config.rate,
                burst=config.token_limit,
            )
            retry_ms = _retry_after_ms(tokens, rate=config.rate, cost=cost)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            state.tokens = tokens
            state.last_ms = now_ms
            return allowed, tokens, retry_ms

    async def check(
        self,
        *,
        partition: str,
        config: BucketConfig,
        cost: int = 1,
        queue_limit: int = 0,
    ) -> RateLimitDecision:
        self._admissions += 1
        if self._admissions % _EVICTION_INTERVAL == 0:
            self._evict_idle(config)
        state = self._state(partition, config)
        allowed, tokens, retry_ms = await self._take(state, config, cost)
        if allowed:
            return RateLimitDecision(allowed=True, partition=partition, retry_after_ms=0, remaining=tokens)

        # Queue a bounded number of callers until the next token instead of rejecting them.
        if queue_limit > 0 and state.waiters < queue_limit and config.rate > 0:
            state.waiters += 1
            try:
                await self._sleep(retry_ms / 1000.0)
                allowed, tokens, retry_ms = await self._take(state, config, cost)
            finally:
                state.waiters -= 1
            if allowed:
                return RateLimitDecision(
                    allowed=True,
                    partition=partition,
                    retry_after_ms=0,
                    remaining=tokens,
                    queued=True,
                )
        return RateLimitDecision(allowed=False, partition=partition, retry_after_ms=retry_ms, remaining=tokens)

class RedisRateLimiter:
    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        self._time_provider = time_provider or time.time
        self._redis: Redis | None = None
        self._redis_loop: asyncio.AbstractEventLoop | None = None

    async def _get_redis(self) -> Redis:
        # Cache Redis connections per event loop to avoid reconnecting per request.
        current_loop = asyncio.get_running_loop()
        if self._redis is None or self._redis_loop != current_loop:
            self._redis = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
            self._redis_loop = current_loop
        return self._redis

    async def check(
        self,
        *,
        partition: str,
        config: BucketConfig,
        cost: int = 1,
        queue_limit: int = 0,
    ) -> RateLimitDecision:
        # Evaluate the shared bucket atomically in Redis; queueing is a per-process concern.
        settings = get_settings()
        redis = await self._get_redis()
        result = await redis.eval(
            _TOKEN_BUCKET_LUA,
            1,
            f"{settings.rl_redis_prefix}:{partition}",
            int(self._time_provider() * 1000),
            config.rate,
            config.token_limit,
            cost,
            _ttl_seconds(config.rate, config.token_limit),
        )
        allowed = int(result[0]) == 1
        return RateLimitDecision(
            allowed=allowed,
            partition=partition,
            retry_after_ms=0 if allowed else int(float(result[2])),
            remaining=float(result[1]),
        )


RateLimiter = InMemoryRateLimiter | RedisRateLimiter

_rate_limiter: RateLimiter | None = None


def _get_rate_limiter() -> RateLimiter:
    # Cache the limiter so requests share buckets and connections.
    global _rate_limiter
    if _rate_limiter is None:
        backend = get_settings().rl_backend.lower()
        if backend == RATE_LIMIT_BACKEND_REDIS:
            _rate_limiter = RedisRateLimiter()
        else:
            _rate_limiter = InMemoryRateLimiter()
    return _rate_limiter


def set_rate_limiter(limiter: RateLimiter | None) -> None:
    global _rate_limiter
    _rate_limiter = limiter


def reset_rate_limiter_state() -> None:
    # Reset cached buckets and connections for deterministic test setup.
    set_rate_limiter(None)


def bucket_config() -> BucketConfig:
    settings = get_settings()
    return BucketConfig(
        token_limit=settings.rl_token_limit,
        tokens_per_period=settings.rl_tokens_per_period,
        replenish_period_s=settings.rl_replenish_period_seconds,
    )


def _unavailable_exception() -> HTTPException:
    # Return a stable 503 when rate limit storage is unavailable and fail-closed.
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "RATE_LIMIT_UNAVAILABLE", "message": "Rate limiting unavailable"},
    )


async def enforce_rate_limit(
    *,
    request: Request,
    response: Response,
    principal: PrincipalLike | None,
) -> RateLimitDecision | None:
    # Admit or reject one API request; health paths never reach the limiter.
    settings = get_settings()
    if not settings.rate_limit_enabled or is_exempt_path(request.url.path):
        return None

    partition = partition_key(request, principal)
    limiter = _get_rate_limiter()
    try:
        decision = await limiter.check(
            partition=partition,
            config=bucket_config(),
            cost=1,
            queue_limit=settings.rl_queue_limit,
        )
    except Exception as exc:  # noqa: BLE001 - guard against Redis connectivity failures
        if settings.rl_fail_mode.lower() == "closed":
            raise _unavailable_exception() from exc
        response.headers["X-RateLimit-Status"] = "degraded"
        logger.warning("rate_limit_degraded path=%s", request.url.path)
        return None

    if decision.remaining is not None:
        response.headers["X-RateLimit-Remaining"] = str(int(decision.remaining))
    if decision.allowed:
        return decision

    increment_counter("rate_limit.rejected")
    logger.info(
        "rate_limited partition=%s path=%s retry_after_ms=%s",
        partition,
        request.url.path,
        decision.retry_after_ms,
    )
    raise RateLimitedError(
        decision.partition,
        decision.retry_after_s,
        retry_after_ms=decision.retry_after_ms,
    )
