"""
Gatekeeper Request Checks

Structural checks that do not need a profile:
- RequestShapeValidator: method, path, body nesting, URL-rewrite headers
- HoneyPot: decoy paths that no legitimate client ever requests
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from gatekeeper.schemas.inputs import RequestDescriptor


logger = logging.getLogger(__name__)


# =============================================================================
# Request Shape
# =============================================================================

# Headers that let a client rewrite the routed URL behind some proxies
REWRITE_HEADERS: Tuple[str, ...] = ("x-forwarded-host", "x-original-url", "x-rewrite-url")


@dataclass(frozen=True)
class ShapeCheck:
    valid: bool
    issues: Tuple[str, ...] = ()


def nesting_depth(value: Any, limit: int) -> int:
    """
    Depth of nested dicts/lists, counting the top-level container as 0.

    Stops descending once `limit` is exceeded, so the return value is at
    most `limit + 1`.
    """
    deepest = 0
    stack: List[Tuple[Any, int]] = [(value, 0)]
    while stack:
        current, depth = stack.pop()
        if depth > deepest:
            deepest = depth
        if deepest > limit:
            break
        if isinstance(current, dict):
            children: Iterable[Any] = current.values()
        elif isinstance(current, (list, tuple)):
            children = current
        else:
            continue
        for child in children:
            if isinstance(child, (dict, list, tuple)):
                stack.append((child, depth + 1))
    return deepest


class RequestShapeValidator:
    """Rejects requests whose structure no legitimate client produces."""

    def __init__(
        self,
        allowed_methods: FrozenSet[str],
        max_path_length: int = 2048,
        max_body_depth: int = 10
    ) -> None:
        self.allowed_methods = frozenset(m.upper() for m in allowed_methods)
        self.max_path_length = max_path_length
        self.max_body_depth = max_body_depth

    def validate(self, request: RequestDescriptor) -> ShapeCheck:
        issues: List[str] = []

        if request.method not in self.allowed_methods:
            issues.append("method_not_allowed")

        if len(request.path) > self.max_path_length:
            issues.append("path_too_long")

        if "\x00" in request.path:
            issues.append("null_byte")

        for header in REWRITE_HEADERS:
            if header in request.headers:
                issues.append(f"rewrite_header:{header}")

        if request.body_too_deep or (
            request.body is not None
            and nesting_depth(request.body, self.max_body_depth) > self.max_body_depth
        ):
            issues.append("body_too_deep")

        return ShapeCheck(valid=not issues, issues=tuple(issues))


# =============================================================================
# Honeypot
# =============================================================================

@dataclass(frozen=True)
class HoneypotResult:
    hit: bool
    trap: Optional[str] = None
    previously_trapped: bool = False


class HoneyPot:
    """
    Decoy path matcher.

    An identity that requests a trap path is remembered as trapped for
    `trap_duration_ms`; every later request from it is treated as a hit.
    Matching is a case-insensitive substring test against the path.
    """

    def __init__(self, paths: Iterable[str], trap_duration_ms: float) -> None:
        self.paths: Tuple[str, ...] = tuple(p.lower() for p in paths)
        self.trap_duration_ms = trap_duration_ms
        self._trapped: Dict[str, float] = {}
        self._lock = threading.Lock()

    def match(self, path: str) -> Optional[str]:
        lowered = path.lower()
        for trap in self.paths:
            if trap in lowered:
                return trap
        return None

    def inspect(self, identity: str, path: str, now: Optional[float] = None) -> HoneypotResult:
        now = time.time() * 1000.0 if now is None else now

        trap = self.match(path)
        if trap is not None:
            with self._lock:
                self._trapped[identity] = now + self.trap_duration_ms
            logger.info(f"Honeypot path {trap} requested")
            return HoneypotResult(hit=True, trap=trap)

        if self.is_trapped(identity, now):
            return HoneypotResult(hit=True, previously_trapped=True)

        return HoneypotResult(hit=False)

    def is_trapped(self, identity: str, now: Optional[float] = None) -> bool:
        now = time.time() * 1000.0 if now is None else now
        with self._lock:
            until = self._trapped.get(identity)
            if until is None:
                return False
            if now >= until:
                del self._trapped[identity]
                return False
            return True

    def release(self, identity: str) -> bool:
        with self._lock:
            return self._trapped.pop(identity, None) is not None

    def sweep(self, now: Optional[float] = None) -> int:
        now = time.time() * 1000.0 if now is None else now
        with self._lock:
            expired = [k for k, until in self._trapped.items() if now >= until]
            for identity in expired:
                del self._trapped[identity]
        return len(expired)

    def __len__(self) -> int:
        return len(self._trapped)
