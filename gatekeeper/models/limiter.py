"""
Gatekeeper Rate & Volume Limiter

Counting primitives keyed by arbitrary strings (usually
"<action>:<identity>"). Every primitive resets lazily on access and is
swept by the state store; none of them decide anything on their own.

- FixedWindowLimiter: N events per window, hard reset at window end
- TokenBucketLimiter: proportional refill, capped at capacity
- BanList: timed bans with lazy expiry
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateDecision:
    """Outcome of one limiter check."""
    allowed: bool
    remaining: int
    retry_after_ms: Optional[float] = None


# =============================================================================
# Fixed Window
# =============================================================================

@dataclass
class FixedWindow:
    window_start: float
    count: int = 0
    window_ms: float = 0.0


class FixedWindowLimiter:
    """
    Fixed-window counter.

    A window opens on the first event for a key and resets once
    `window_ms` has elapsed since it opened. Blocked attempts do not
    consume quota.
    """

    def __init__(self) -> None:
        self._windows: Dict[str, FixedWindow] = {}
        self._lock = threading.Lock()

    def allow(
        self,
        key: str,
        limit: int,
        window_ms: float,
        now: Optional[float] = None
    ) -> RateDecision:
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")
        if window_ms <= 0:
            raise ValueError(f"window_ms must be positive, got {window_ms}")

        now = time.time() * 1000.0 if now is None else now

        with self._lock:
            window = self._windows.get(key)
            if window is None or now - window.window_start >= window.window_ms:
                window = FixedWindow(window_start=now, window_ms=window_ms)
                self._windows[key] = window
            else:
                # Rule changes (adaptive limits) apply to the live window
                window.window_ms = window_ms

            if window.count < limit:
                window.count += 1
                return RateDecision(allowed=True, remaining=limit - window.count)

            retry_after = max(1.0, window.window_start + window.window_ms - now)
            return RateDecision(allowed=False, remaining=0, retry_after_ms=retry_after)

    def count(self, key: str) -> int:
        window = self._windows.get(key)
        return 0 if window is None else window.count

    def sweep(self, now: Optional[float] = None) -> int:
        now = time.time() * 1000.0 if now is None else now
        with self._lock:
            expired = [
                k for k, w in self._windows.items()
                if now - w.window_start >= w.window_ms
            ]
            for key in expired:
                del self._windows[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)


# =============================================================================
# Token Bucket
# =============================================================================

@dataclass
class TokenBucket:
    tokens: float
    last_refill: float


class TokenBucketLimiter:
    """
    Token bucket with lazy refill.

    `refill_rate` is tokens per second. A new key starts with a full bucket.
    """

    def __init__(self, capacity: float, refill_rate: float) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        if refill_rate <= 0:
            raise ValueError(f"refill_rate must be positive, got {refill_rate}")
        self.capacity = float(capacity)
        self.refill_rate = float(refill_rate)
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def consume(
        self,
        key: str,
        cost: float = 1,
        now: Optional[float] = None
    ) -> RateDecision:
        if cost < 0:
            raise ValueError(f"cost must be >= 0, got {cost}")

        now = time.time() * 1000.0 if now is None else now

        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = TokenBucket(tokens=self.capacity, last_refill=now)
                self._buckets[key] = bucket
            else:
                self._refill(bucket, now)

            if bucket.tokens >= cost:
                bucket.tokens -= cost
                return RateDecision(allowed=True, remaining=int(bucket.tokens))

            deficit = cost - bucket.tokens
            retry_after = math.ceil(deficit / self.refill_rate * 1000.0)
            return RateDecision(
                allowed=False,
                remaining=int(bucket.tokens),
                retry_after_ms=float(retry_after),
            )

    def tokens(self, key: str, now: Optional[float] = None) -> float:
        """Current balance for a key (a full bucket if unseen)."""
        now = time.time() * 1000.0 if now is None else now
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return self.capacity
            self._refill(bucket, now)
            return bucket.tokens

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop buckets that have refilled completely."""
        now = time.time() * 1000.0 if now is None else now
        with self._lock:
            full = []
            for key, bucket in self._buckets.items():
                self._refill(bucket, now)
                if bucket.tokens >= self.capacity:
                    full.append(key)
            for key in full:
                del self._buckets[key]
        return len(full)

    def _refill(self, bucket: TokenBucket, now: float) -> None:
        elapsed = max(0.0, now - bucket.last_refill) / 1000.0
        bucket.tokens = min(self.capacity, bucket.tokens + elapsed * self.refill_rate)
        bucket.last_refill = max(bucket.last_refill, now)

    def __len__(self) -> int:
        return len(self._buckets)


# =============================================================================
# Ban List
# =============================================================================

@dataclass(frozen=True)
class BanRecord:
    identity: str
    banned_until: float  # ms
    reason: str


class BanList:
    """Timed bans. Expired records read as absent before the sweep removes them."""

    def __init__(self) -> None:
        self._bans: Dict[str, BanRecord] = {}
        self._lock = threading.Lock()

    def ban(
        self,
        identity: str,
        duration_ms: float,
        reason: str,
        now: Optional[float] = None
    ) -> BanRecord:
        """Ban an identity. An existing longer ban is kept."""
        if duration_ms <= 0:
            raise ValueError(f"duration_ms must be positive, got {duration_ms}")

        now = time.time() * 1000.0 if now is None else now
        record = BanRecord(identity=identity, banned_until=now + duration_ms, reason=reason)

        with self._lock:
            existing = self._bans.get(identity)
            if existing is not None and existing.banned_until >= record.banned_until:
                return existing
            self._bans[identity] = record

        logger.info(f"Ban issued for {duration_ms / 1000.0:.0f}s ({reason})")
        return record

    def get(self, identity: str, now: Optional[float] = None) -> Optional[BanRecord]:
        now = time.time() * 1000.0 if now is None else now
        with self._lock:
            record = self._bans.get(identity)
            if record is None:
                return None
            if now >= record.banned_until:
                del self._bans[identity]
                return None
            return record

    def is_banned(self, identity: str, now: Optional[float] = None) -> bool:
        return self.get(identity, now) is not None

    def remaining_ms(self, identity: str, now: Optional[float] = None) -> float:
        now = time.time() * 1000.0 if now is None else now
        record = self.get(identity, now)
        if record is None:
            return 0.0
        return record.banned_until - now

    def unban(self, identity: str) -> bool:
        with self._lock:
            return self._bans.pop(identity, None) is not None

    def sweep(self, now: Optional[float] = None) -> int:
        now = time.time() * 1000.0 if now is None else now
        with self._lock:
            expired = [k for k, r in self._bans.items() if now >= r.banned_until]
            for identity in expired:
                del self._bans[identity]
        return len(expired)

    def __len__(self) -> int:
        return len(self._bans)
