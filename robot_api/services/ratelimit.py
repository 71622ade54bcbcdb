import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .. import config
from .cache import cache


@dataclass
class RateLimitState:
    limit: int
    remaining: int
    reset: int  # epoch seconds when the window rolls over
    allowed: bool

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset),
        }


def limit_for(tier: Optional[str]) -> int:
    return config.RATE_LIMIT_ANON if tier in (None, "anonymous") else config.RATE_LIMIT_AUTH


def check_limit(identity: str, limit: int, now: Optional[float] = None) -> RateLimitState:
    """Fixed-window counter per identity (key id or client address)"""
    window_seconds = config.RATE_LIMIT_WINDOW_SECONDS
    now = time.time() if now is None else now
    window = int(now // window_seconds)
    count = cache.incr_with_ttl(f"rl:{identity}:{window}", window_seconds, now=now)
    return RateLimitState(
        limit=limit,
        remaining=max(0, limit - count),
        reset=(window + 1) * window_seconds,
        allowed=count <= limit,
    )


def consume_anonymous_quota(client_id: str, now: Optional[float] = None) -> Tuple[bool, int]:
    """
    Count one anonymous extraction against today's (UTC) quota

    Returns:
        Tuple of (allowed, remaining)
    """
    now = time.time() if now is None else now
    day = int(now // 86400)
    ttl = (day + 1) * 86400 - int(now)
    used = cache.incr_with_ttl(f"anon:{client_id}:{day}", max(ttl, 1), now=now)
    return used <= config.ANON_DAILY_LIMIT, max(0, config.ANON_DAILY_LIMIT - used)
