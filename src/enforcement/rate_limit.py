"""
Rate Limiter

Two-tier admission gate consulted before any cost is estimated or charged:

- LocalRateLimitBackend: fixed-window counter in process memory. Cheap, but
  only counts what this instance saw.
- DurableRateLimitBackend: fixed-window counter in the ledger store, shared
  by every instance.

A request is admitted only when both backends admit it. Neither backend
touches ledger or run state.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple
import math
import threading
import time
import structlog

from persistence.database import Database, get_database
from persistence.repository import RateLimitRepository

logger = structlog.get_logger()

# Expired windows are swept at most this often
CLEANUP_INTERVAL_SECONDS = 60.0


@dataclass(frozen=True)
class RateLimitConfig:
    """Requests allowed per fixed window."""
    max_requests: int
    window_seconds: float = 60.0


class RateLimitPreset:
    """Standard limits per endpoint class."""
    AI_API = RateLimitConfig(max_requests=20)
    AUTH = RateLimitConfig(max_requests=10)
    GENERAL = RateLimitConfig(max_requests=60)
    WEBHOOK = RateLimitConfig(max_requests=100)
    FORM_SUBMIT = RateLimitConfig(max_requests=5)


@dataclass(frozen=True)
class RateLimitDecision:
    """Admission decision for one request."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # unix seconds
    retry_after_ms: int = 0

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(math.ceil(self.retry_after_ms / 1000))
        return headers


def create_rate_limit_key(endpoint: str, user_id: Optional[str] = None, ip: Optional[str] = None) -> str:
    """Key a counter by endpoint and the best caller identity available."""
    return f"{endpoint}:{user_id or ip or 'anonymous'}"


def _decide(count: int, config: RateLimitConfig, reset_at: float, now: float) -> RateLimitDecision:
    allowed = count <= config.max_requests
    return RateLimitDecision(
        allowed=allowed,
        limit=config.max_requests,
        remaining=max(config.max_requests - count, 0),
        reset_at=reset_at,
        retry_after_ms=0 if allowed else max(math.ceil((reset_at - now) * 1000), 0),
    )


class RateLimitBackend(Protocol):
    """Counts one hit for a key and decides against a config."""

    def hit(self, key: str, config: RateLimitConfig, now: float) -> RateLimitDecision:
        ...


class LocalRateLimitBackend:
    """Process-local fixed-window counter. Reset on restart."""

    def __init__(self):
        self._windows: Dict[str, Tuple[int, float]] = {}  # key -> (count, reset_at)
        self._lock = threading.Lock()
        self._last_cleanup = 0.0

    def hit(self, key: str, config: RateLimitConfig, now: float) -> RateLimitDecision:
        with self._lock:
            self._cleanup(now)
            count, reset_at = self._windows.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + config.window_seconds
            count += 1
            self._windows[key] = (count, reset_at)
        return _decide(count, config, reset_at, now)

    def _cleanup(self, now: float) -> None:
        if now - self._last_cleanup < CLEANUP_INTERVAL_SECONDS:
            return
        self._last_cleanup = now
        expired = [k for k, (_, reset_at) in self._windows.items() if now >= reset_at]
        for key in expired:
            del self._windows[key]

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


class DurableRateLimitBackend:
    """Store-backed fixed-window counter shared across instances."""

    def __init__(self, repository: Optional[RateLimitRepository] = None, db: Optional[Database] = None):
        self.repository = repository or RateLimitRepository(db or get_database())
        self._last_cleanup = 0.0

    def hit(self, key: str, config: RateLimitConfig, now: float) -> RateLimitDecision:
        window_index = int(now // config.window_seconds)
        reset_at = (window_index + 1) * config.window_seconds
        count = self.repository.increment(f"{key}:{window_index}", expires_at=reset_at)

        if now - self._last_cleanup >= CLEANUP_INTERVAL_SECONDS:
            self._last_cleanup = now
            purged = self.repository.purge_expired(now)
            if purged:
                logger.debug("rate_limit_buckets_purged", count=purged)

        return _decide(count, config, reset_at, now)


class RateLimiter:
    """
    Admission gate over a local and a durable backend.

    The local check runs first so a burst on one instance is rejected
    without a store round trip.
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        local: Optional[RateLimitBackend] = None,
        durable: Optional[RateLimitBackend] = None,
        limits: Optional[Dict[str, RateLimitConfig]] = None,
        default: RateLimitConfig = RateLimitPreset.GENERAL,
        clock: Callable[[], float] = time.time,
    ):
        self.local = local or LocalRateLimitBackend()
        self.durable = durable or DurableRateLimitBackend(db=db)
        self.limits = limits or {}
        self.default = default
        self.clock = clock

    def config_for(self, endpoint: str) -> RateLimitConfig:
        return self.limits.get(endpoint, self.default)

    def check(self, user_id: Optional[str], endpoint: str, ip: Optional[str] = None) -> RateLimitDecision:
        """Count this request and decide whether to admit it."""
        config = self.config_for(endpoint)
        key = create_rate_limit_key(endpoint, user_id, ip)
        now = self.clock()

        local = self.local.hit(key, config, now)
        if not local.allowed:
            logger.warning("rate_limited", key=key, tier="local", retry_after_ms=local.retry_after_ms)
            return local

        durable = self.durable.hit(key, config, now)
        if not durable.allowed:
            logger.warning("rate_limited", key=key, tier="durable", retry_after_ms=durable.retry_after_ms)
            return durable

        return RateLimitDecision(
            allowed=True,
            limit=config.max_requests,
            remaining=min(local.remaining, durable.remaining),
            reset_at=max(local.reset_at, durable.reset_at),
        )
