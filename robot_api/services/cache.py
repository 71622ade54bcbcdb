import time
from threading import Lock
from typing import Dict, Optional

from .. import config


class Cache:
    """Counters with expiry: Redis when REDIS_URL is set, process memory otherwise"""

    def __init__(self, url: Optional[str] = None):
        self.r = None
        self._counts: Dict[str, int] = {}
        self._expires: Dict[str, float] = {}
        self._lock = Lock()
        if url:
            import redis  # type: ignore
            self.r = redis.Redis.from_url(url, decode_responses=True)

    def incr_with_ttl(self, key: str, ttl: int, now: Optional[float] = None) -> int:
        if not self.r:
            # in-memory fallback (single process only)
            now = time.time() if now is None else now
            with self._lock:
                if key not in self._expires:
                    self._sweep(now)
                if key not in self._expires or self._expires[key] <= now:
                    self._expires[key] = now + ttl
                    self._counts[key] = 0
                self._counts[key] += 1
                return self._counts[key]
        p = self.r.pipeline()
        p.incr(key)
        p.expire(key, ttl)
        return int(p.execute()[0])

    def _sweep(self, now: float) -> None:
        for stale in [k for k, expires in self._expires.items() if expires <= now]:
            del self._expires[stale]
            del self._counts[stale]

    def clear(self) -> None:
        with self._lock:
            self._counts.clear()
            self._expires.clear()


cache = Cache(config.REDIS_URL)
