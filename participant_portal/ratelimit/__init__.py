"""
Módulo de rate limiting do login do portal.
Suporta tanto InMemoryRateLimiter quanto RedisRateLimiter.
"""

from .redis_rate_limiter import RedisRateLimiter
from ..core.rate_limiter import InMemoryRateLimiter, RateLimitDecision, build_attempt_key

__all__ = ["RedisRateLimiter", "InMemoryRateLimiter", "RateLimitDecision", "build_attempt_key"]
