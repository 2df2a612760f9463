import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, NamedTuple, Optional, Tuple

from fastapi import HTTPException, Request


class Limit(NamedTuple):
    requests: int
    window_seconds: int


LIMITS: Dict[str, Limit] = {
    'default': Limit(100, 60),
    'write': Limit(60, 60),            # log_*, goals, settings, food values
    'connect_issue': Limit(5, 60),     # minting keys, per signed-in user
    'connect_verify': Limit(30, 60),   # per client IP, slows down key guessing
}

CLEANUP_INTERVAL = 300


def client_ip(request: Request) -> str:
    """Caller address, preferring the proxy headers set by the hosting platform"""
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimiter:
    """In-memory sliding-window rate limiter, one bucket per (limit type, caller)"""

    def __init__(self, limits: Optional[Dict[str, Limit]] = None, clock: Callable[[], float] = time.time):
        self.limits = limits or LIMITS
        self.clock = clock
        self.buckets: Dict[str, Deque[float]] = defaultdict(deque)
        self.last_cleanup = clock()

    def identify(self, request: Request, user_id: Optional[str] = None) -> str:
        return f"user:{user_id}" if user_id else f"ip:{client_ip(request)}"

    def limit_for(self, limit_type: str) -> Limit:
        return self.limits.get(limit_type, self.limits['default'])

    def hit(self, identifier: str, limit_type: str = 'default') -> Tuple[bool, Dict]:
        """Record one request; returns (allowed, info) where info feeds the 429 headers"""
        now = self.clock()
        if now - self.last_cleanup > CLEANUP_INTERVAL:
            self.cleanup(now)

        limit = self.limit_for(limit_type)
        bucket = self.buckets[f"{limit_type}:{identifier}"]
        self._expire(bucket, now - limit.window_seconds)

        if len(bucket) >= limit.requests:
            reset_time = bucket[0] + limit.window_seconds
            return False, {
                'limit': limit.requests,
                'window': limit.window_seconds,
                'current': len(bucket),
                'retry_after': max(int(reset_time - now), 1),
                'reset_time': reset_time
            }

        bucket.append(now)
        return True, {
            'limit': limit.requests,
            'window': limit.window_seconds,
            'current': len(bucket),
            'remaining': limit.requests - len(bucket),
            'reset_time': now + limit.window_seconds
        }

    @staticmethod
    def _expire(bucket: Deque[float], cutoff: float):
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()

    def cleanup(self, now: float):
        """Drop expired timestamps and idle buckets"""
        cutoff = now - max(limit.window_seconds for limit in self.limits.values())
        for key in list(self.buckets):
            self._expire(self.buckets[key], cutoff)
            if not self.buckets[key]:
                del self.buckets[key]
        self.last_cleanup = now

    def reset(self):
        self.buckets.clear()


rate_limiter = RateLimiter()


def enforce_rate_limit(request: Request, limit_type: str = 'default', user_id: Optional[str] = None) -> Dict:
    """Raise 429 with Retry-After when the caller is over its ``limit_type`` budget"""
    allowed, info = rate_limiter.hit(rate_limiter.identify(request, user_id), limit_type)
    if allowed:
        return info

    raise HTTPException(
        status_code=429,
        detail={
            "error": "RATE_LIMIT_EXCEEDED",
            "message": f"Too many requests. Try again in {info['retry_after']} seconds.",
            "limit": info['limit'],
            "window_seconds": info['window'],
            "retry_after": info['retry_after']
        },
        headers={
            "Retry-After": str(info['retry_after']),
            "X-RateLimit-Limit": str(info['limit']),
            "X-RateLimit-Window": str(info['window']),
            "X-RateLimit-Remaining": "0"
        }
    )
