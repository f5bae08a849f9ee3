"""
Rate limiting for third-party actions, partitioned by entity (feed/account).
"""
from rate_limit.limiter import RateLimiter, limits_from_settings, next_day_start, next_hour_start

__all__ = ["RateLimiter", "limits_from_settings", "next_day_start", "next_hour_start"]
