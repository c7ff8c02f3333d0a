"""Traffic admission: classify inbound requests into throttling tiers.

Classification is stateless. Counting uses fixed windows keyed by
``(tier, key, window_start)`` on an atomically incremented counter, either
in process memory or in Redis.
"""

import logging
import re
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Protocol

import redis

from booking_engine.core import config
from booking_engine.core.errors import RateLimited

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateTier:
    name: str
    limit: int
    window_seconds: int = 60


AUTH = RateTier('auth', 5)
BATCH = RateTier('batch', 10)
STANDARD = RateTier('standard', 60)
GUEST = RateTier('guest', 20)
PASSWORD_RESET = RateTier('password-reset', 5)
VERIFICATION = RateTier('verification', 3)

FLOW_TIERS = {
    PASSWORD_RESET.name: PASSWORD_RESET,
    VERIFICATION.name: VERIFICATION,
}

AUTH_PATH_PATTERNS = (
    re.compile(r'^/(api/)?auth(/|$)'),
    re.compile(r'^/(api/)?(login|register)/?$'),
)
BATCH_PATH_PATTERN = re.compile(r'^/(api/)?[^/]+(/.*)?/(batch|bulk)(/|$)')


@dataclass(frozen=True)
class TierAssignment:
    tier: RateTier
    key: str
    method: str | None = None


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    tier: str
    limit: int
    remaining: int
    retry_after: int


def _normalize_path(path: str) -> str:
    normalized = '/' + (path or '').strip().lstrip('/')
    return normalized.lower()


def is_auth_path(path: str) -> bool:
    normalized = _normalize_path(path)
    return any(pattern.match(normalized) for pattern in AUTH_PATH_PATTERNS)


def is_batch_path(path: str) -> bool:
    return BATCH_PATH_PATTERN.match(_normalize_path(path)) is not None


def classify_request(path: str, method: str | None, ip: str, user_id: int | str | None = None) -> TierAssignment:
    if is_auth_path(path):
        return TierAssignment(AUTH, f'ip:{ip}', method)

    if is_batch_path(path):
        key = f'user:{user_id}' if user_id is not None else f'ip:{ip}'
        return TierAssignment(BATCH, key, method)

    if user_id is not None:
        return TierAssignment(STANDARD, f'user:{user_id}', method)

    return TierAssignment(GUEST, f'ip:{ip}', method)


def classify_flow(flow: str, key: str) -> TierAssignment:
    """Assign one of the narrow tiers (password-reset by email, verification by IP)."""
    try:
        tier = FLOW_TIERS[flow]
    except KeyError as exc:
        raise ValueError(f'Unknown rate limit flow: {flow}') from exc

    normalized_key = key.strip().lower()
    prefix = 'email' if tier is PASSWORD_RESET else 'ip'
    return TierAssignment(tier, f'{prefix}:{normalized_key}')


class RateCounter(Protocol):
    def increment(self, key: str, ttl_seconds: int) -> int:
        ...


class InMemoryRateCounter:
    CLEANUP_INTERVAL_SECONDS = 60

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._counts: dict[str, tuple[int, float]] = {}
        self._lock = Lock()
        self._last_cleanup = 0.0

    def _cleanup(self, now: float) -> None:
        if now - self._last_cleanup < self.CLEANUP_INTERVAL_SECONDS:
            return
        expired = [key for key, (_count, expires_at) in self._counts.items() if expires_at <= now]
        for key in expired:
            del self._counts[key]
        if expired:
            logger.debug('Cleaned up %s expired rate limit windows', len(expired))
        self._last_cleanup = now

    def increment(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            self._cleanup(now)
            count, expires_at = self._counts.get(key, (0, now + ttl_seconds))
            if expires_at <= now:
                count, expires_at = 0, now + ttl_seconds
            count += 1
            self._counts[key] = (count, expires_at)
            return count


class RedisRateCounter:
    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> 'RedisRateCounter':
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        return cls(client)

    def increment(self, key: str, ttl_seconds: int) -> int:
        pipe = self._client.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, ttl_seconds)
        count, _expire_set = pipe.execute()
        return int(count)


class RateLimiter:
    def __init__(self, counter: RateCounter, clock: Callable[[], float] = time.time) -> None:
        self._counter = counter
        self._clock = clock

    def hit(self, assignment: TierAssignment) -> RateDecision:
        tier = assignment.tier
        now = int(self._clock())
        window_start = now - (now % tier.window_seconds)
        retry_after = max(1, window_start + tier.window_seconds - now)

        counter_key = f'rate:{tier.name}:{assignment.key}:{window_start}'
        count = self._counter.increment(counter_key, tier.window_seconds)

        allowed = count <= tier.limit
        if not allowed:
            logger.info('Rate limit exceeded for %s (%s): %s/%s', tier.name, assignment.key, count, tier.limit)

        return RateDecision(
            allowed=allowed,
            tier=tier.name,
            limit=tier.limit,
            remaining=max(0, tier.limit - count),
            retry_after=retry_after,
        )

    def check(self, assignment: TierAssignment) -> RateDecision:
        decision = self.hit(assignment)
        if not decision.allowed:
            raise RateLimited(
                'Too many requests. Please try again later.',
                tier=decision.tier,
                retry_after=decision.retry_after,
            )
        return decision


def build_rate_limiter() -> RateLimiter:
    if config.RATE_LIMIT_STORAGE == 'redis':
        logger.info('Using Redis rate limit storage')
        return RateLimiter(RedisRateCounter.from_url(config.REDIS_URL))
    return RateLimiter(InMemoryRateCounter())
