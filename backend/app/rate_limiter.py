import time
from dataclasses import dataclass
from typing import Dict, Tuple, Optional
from collections import defaultdict, deque
from fastapi import HTTPException, Request

@dataclass(frozen=True)
class LimitRule:
    max_requests: int
    window_seconds: int

# Per-user budgets; dose taps and medication edits share the 'write' bucket
LIMITS: Dict[str, LimitRule] = {
    'default': LimitRule(100, 60),
    'write': LimitRule(30, 60),
    'auth': LimitRule(10, 60),
}

class RateLimiter:
    """Sliding-window limiter keyed by caller and limit type, held in memory"""

    def __init__(self, limits: Optional[Dict[str, LimitRule]] = None, sweep_every: int = 300):
        self.limits = dict(limits or LIMITS)
        self.sweep_every = sweep_every
        self.hits: Dict[str, deque] = defaultdict(deque)
        self.last_sweep = time.time()

    def rule(self, limit_type: str) -> LimitRule:
        return self.limits.get(limit_type, self.limits['default'])

    def get_identifier(self, request: Request, user_id: str = None) -> str:
        """Authenticated callers are limited per user, anonymous ones per client address"""
        if user_id:
            return f"user:{user_id}"

        address = request.headers.get("X-Real-IP")
        if not address:
            forwarded = request.headers.get("X-Forwarded-For", "")
            address = forwarded.split(",")[0].strip() or (request.client.host if request.client else "unknown")
        return f"ip:{address}"

    def hit(self, identifier: str, limit_type: str = 'default') -> Tuple[bool, Dict]:
        """Record one request; returns (allowed, window info)"""
        now = time.time()
        if now - self.last_sweep > self.sweep_every:
            self.sweep(now)

        rule = self.rule(limit_type)
        window = self.hits[f"{identifier}:{limit_type}"]
        while window and window[0] < now - rule.window_seconds:
            window.popleft()

        info = {'limit': rule.max_requests, 'window': rule.window_seconds}
        if len(window) >= rule.max_requests:
            info['retry_after'] = max(int(window[0] + rule.window_seconds - now), 1)
            return False, info

        window.append(now)
        info['remaining'] = rule.max_requests - len(window)
        return True, info

    def sweep(self, now: float):
        """Drop timestamps older than the longest window and any emptied keys"""
        horizon = now - max(r.window_seconds for r in self.limits.values())
        for key in list(self.hits):
            window = self.hits[key]
            while window and window[0] < horizon:
                window.popleft()
            if not window:
                del self.hits[key]
        self.last_sweep = now

    def reset(self):
        self.hits.clear()

# Global rate limiter instance
rate_limiter = RateLimiter()

def check_rate_limit(request: Request, user_id: str = None, limit_type: str = 'default') -> Dict:
    """Raise 429 when the caller is over its limit"""
    allowed, info = rate_limiter.hit(rate_limiter.get_identifier(request, user_id), limit_type)
    if allowed:
        return info

    raise HTTPException(
        status_code=429,
        detail={
            "error": "RATE_LIMIT_EXCEEDED",
            "message": f"Rate limit exceeded. Try again in {info['retry_after']} seconds.",
            "limit": info['limit'],
            "window_seconds": info['window'],
            "retry_after": info['retry_after']
        },
        headers={
            "Retry-After": str(info['retry_after']),
            "X-RateLimit-Limit": str(info['limit']),
            "X-RateLimit-Remaining": "0"
        }
    )
