"""
Gatekeeper Security Event Log

Bounded in-memory buffer of recent security events for operator
inspection. Identities are stored hashed and detail strings truncated,
so the buffer never holds raw payloads.
"""

import threading
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Deque, Dict, List, Optional

from gatekeeper.processors.identity import hash_identity


MAX_DETAIL_LENGTH = 100


@dataclass(frozen=True)
class SecurityEvent:
    timestamp: float  # ms
    event: str
    identity_hash: str
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SecurityEventLog:
    """Ring buffer of SecurityEvents; the oldest entry is dropped when full."""

    def __init__(self, max_entries: int = 1000) -> None:
        if max_entries <= 0:
            raise ValueError(f"max_entries must be positive, got {max_entries}")
        self._events: Deque[SecurityEvent] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def log(
        self,
        event: str,
        identity: str,
        detail: str = "",
        now: Optional[float] = None
    ) -> SecurityEvent:
        now = time.time() * 1000.0 if now is None else now
        entry = SecurityEvent(
            timestamp=now,
            event=event,
            identity_hash=hash_identity(identity),
            detail=str(detail)[:MAX_DETAIL_LENGTH],
        )
        with self._lock:
            self._events.append(entry)
        return entry

    def events(self, event: Optional[str] = None, limit: Optional[int] = None) -> List[SecurityEvent]:
        """Events oldest-first, optionally filtered by name and capped to the newest `limit`."""
        with self._lock:
            selected = [e for e in self._events if event is None or e.event == event]
        if limit is not None:
            selected = selected[-limit:] if limit > 0 else []
        return selected

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        return len(self._events)
