"""
In-memory sliding-window rate limiter (single process).

Each limiter tracks attempt timestamps per identifier (usually client IP) and, once the
window fills, blocks the identifier for ``block_seconds``.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import Request

PRUNE_INTERVAL = timedelta(minutes=5)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in: int  # seconds
    blocked: bool


@dataclass
class _Entry:
    timestamps: list[datetime] = field(default_factory=list)
    blocked_until: datetime | None = None


class RateLimiter:
    def __init__(self, *, window_seconds: int, max_attempts: int, block_seconds: int | None = None) -> None:
        self.window = timedelta(seconds=window_seconds)
        self.max_attempts = max_attempts
        self.block = timedelta(seconds=block_seconds) if block_seconds else None
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._last_prune: datetime | None = None
        self.enabled = True

    def _prune(self, now: datetime) -> None:
        """Drop identifiers with nothing recent and no active block. Caller holds the lock."""
        if self._last_prune is not None and now - self._last_prune < PRUNE_INTERVAL:
            return
        self._last_prune = now
        cutoff = now - 2 * self.window
        stale = [
            key
            for key, entry in self._entries.items()
            if not any(t > cutoff for t in entry.timestamps)
            and (entry.blocked_until is None or entry.blocked_until <= now)
        ]
        for key in stale:
            del self._entries[key]

    def check(self, identifier: str, *, now: datetime | None = None) -> RateLimitResult:
        """Record an attempt and report whether it is allowed."""
        now = now or datetime.utcnow()
        if not self.enabled:
            return RateLimitResult(allowed=True, remaining=self.max_attempts, reset_in=0, blocked=False)
        with self._lock:
            self._prune(now)
            entry = self._entries.setdefault(identifier, _Entry())
            if entry.blocked_until and entry.blocked_until > now:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_in=int((entry.blocked_until - now).total_seconds()),
                    blocked=True,
                )
            if entry.blocked_until:
                # A served block starts a fresh window.
                entry.blocked_until = None
                entry.timestamps = []
            cutoff = now - self.window
            entry.timestamps = [t for t in entry.timestamps if t > cutoff]
            if len(entry.timestamps) >= self.max_attempts:
                if self.block:
                    entry.blocked_until = now + self.block
                reset_at = entry.blocked_until or (entry.timestamps[0] + self.window)
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_in=int((reset_at - now).total_seconds()),
                    blocked=bool(self.block),
                )
            entry.timestamps.append(now)
            return RateLimitResult(
                allowed=True,
                remaining=self.max_attempts - len(entry.timestamps),
                reset_in=int(self.window.total_seconds()),
                blocked=False,
            )

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._entries.pop(identifier, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


login_limiter = RateLimiter(window_seconds=15 * 60, max_attempts=5, block_seconds=60 * 60)
register_limiter = RateLimiter(window_seconds=60 * 60, max_attempts=3, block_seconds=24 * 60 * 60)
api_limiter = RateLimiter(window_seconds=60, max_attempts=100)


def client_ip(req: Request) -> str:
    forwarded = req.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    for header in ("CF-Connecting-IP", "X-Real-IP"):
        value = req.headers.get(header)
        if value:
            return value.strip()
    return req.remote_addr or "unknown"


def format_wait(seconds: int) -> str:
    if seconds >= 3600:
        hours = -(-seconds // 3600)
        return f"{hours} hour" + ("s" if hours != 1 else "")
    minutes = max(1, -(-seconds // 60))
    return f"{minutes} minute" + ("s" if minutes != 1 else "")
