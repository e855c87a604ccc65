"""Rate limiting utilities using throttled-py"""
import math
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional

from throttled import RateLimiterType, Throttled, rate_limiter, store

from core.config import Settings, logger


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: int = 0

    def headers(self) -> dict:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def _build_store(redis_url: Optional[str]):
    """Redis for multi-worker deployments, MemoryStore otherwise"""
    try:
        if redis_url:
            logger.info("[rate_limit] Using Redis for rate limiting")
            return store.RedisStore(server=redis_url)
    except Exception as ex:
        logger.warning(f"[rate_limit] Redis connection failed, using in-memory storage: {ex}")
    return store.MemoryStore()


class SignupRateLimiter:
    """Fixed window limiter keyed by client IP."""

    def __init__(self, settings: Settings):
        self.window_ms = settings.rate_limit_window_ms
        self.max_requests = settings.rate_limit_max_requests
        self._throttle = Throttled(
            using=RateLimiterType.FIXED_WINDOW.value,
            quota=rate_limiter.per_duration(timedelta(milliseconds=self.window_ms), limit=self.max_requests),
            store=_build_store(settings.redis_url),
        )

    def check(self, ip: str) -> RateLimitDecision:
        now = time.time()
        reset_at = math.ceil(now + self.window_ms / 1000)
        try:
            result = self._throttle.limit(f"signup_api:{ip}", cost=1)
        except Exception as ex:
            # Fail open - a broken limiter store must not take the API down
            logger.warning(f"[rate_limit] Rate limit check failed: {ex}")
            return RateLimitDecision(True, self.max_requests, self.max_requests, reset_at)

        state = result.state
        remaining = max(int(state.remaining), 0)
        if result.limited:
            retry_after = max(math.ceil(state.reset_after), 1)
            return RateLimitDecision(False, self.max_requests, 0, math.ceil(now + retry_after), retry_after)
        return RateLimitDecision(True, self.max_requests, remaining, reset_at)


def get_client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """
    Resolve the client IP behind common proxies.
    CF-Connecting-IP wins, then the first X-Forwarded-For hop, then X-Real-IP.
    """
    cf_ip = (headers.get("cf-connecting-ip") or "").strip()
    if cf_ip:
        return cf_ip
    forwarded = (headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return peer or "unknown"
