"""Caller identity, ownership checks and request rate limiting."""

import math
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, NamedTuple, Optional

from database import parse_object_id


@dataclass
class Identity:
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    is_admin: bool = False


class RequestInfo(NamedTuple):
    ip_address: str
    user_agent: Optional[str]

    @classmethod
    def from_headers(cls, headers: Any, client_host: Optional[str] = None) -> "RequestInfo":
        forwarded = headers.get("x-forwarded-for")
        ip = None
        if forwarded:
            ip = forwarded.split(",")[0].strip()
        ip = ip or headers.get("x-real-ip") or client_host or "unknown"
        return cls(ip_address=ip, user_agent=headers.get("user-agent"))


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def resolve_identity(store: Any, token: Optional[str]) -> Optional[Identity]:
    """Look up a session token; None means the caller is a guest."""
    if not token:
        return None
    session = store.find_one("session", {"sessionToken": token})
    if not session:
        return None
    expires = session.get("expires")
    if isinstance(expires, datetime):
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        if expires <= datetime.now(timezone.utc):
            return None
    user_id = parse_object_id(session.get("userId"))
    if user_id is None:
        return None
    user = store.find_by_id("user", user_id)
    if not user:
        return None
    return Identity(
        user_id=str(user["_id"]),
        email=user.get("email"),
        name=user.get("name"),
        is_admin=bool(user.get("isAdmin", False)),
    )


def verify_ownership(identity: Identity, user_id: Optional[str]) -> bool:
    return identity.is_admin or str(user_id) == identity.user_id


def rate_limit_key(info: RequestInfo, user_id: Optional[str] = None) -> str:
    if user_id:
        return f"ratelimit:user:{user_id}"
    return f"ratelimit:ip:{info.ip_address}"


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    def retry_after(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(1, math.ceil(self.reset_at - now))


class RateLimiter:
    """Sliding-window request counter kept in process memory.

    Keys whose newest hit has left the window are swept at most once per
    window, so the table only holds callers seen recently.
    """

    def __init__(self, max_requests: int, window_seconds: float, clock: Callable[[], float] = time.time):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._next_sweep = 0.0

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def _sweep(self, window_start: float) -> None:
        expired = [key for key, hits in self._hits.items() if not hits or hits[-1] <= window_start]
        for key in expired:
            del self._hits[key]

    def check(self, key: str) -> RateLimitDecision:
        now = self.clock()
        window_start = now - self.window_seconds
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(window_start)
                self._next_sweep = now + self.window_seconds
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= window_start:
                hits.popleft()
            if len(hits) >= self.max_requests:
                return RateLimitDecision(False, self.max_requests, 0, hits[0] + self.window_seconds)
            hits.append(now)
            return RateLimitDecision(True, self.max_requests, self.max_requests - len(hits), now + self.window_seconds)


def order_rate_limiter() -> RateLimiter:
    return RateLimiter(
        max_requests=int(os.getenv("ORDER_RATE_LIMIT", "30")),
        window_seconds=float(os.getenv("ORDER_RATE_WINDOW_SECONDS", "3600")),
    )
