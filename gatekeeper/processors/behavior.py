"""
Gatekeeper Behavioral Profiler

Stateful per-identity request history with a fixed battery of behavioral
predicates. Implements a ring buffer of the most recent requests and
evaluates recency-sensitive predicates over a trailing time slice.

Predicates:
- scan_breadth: many distinct paths in a short burst
- method_diversity: more HTTP verbs than any browser client uses
- credential_probing: repeated login/register hits
- header_anomaly: first request lacked accept or accept-language
- timing_regularity: scripted, sub-100ms pacing

This is a heuristic: legitimate bulk API clients can trip it.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Callable, Deque, List, Optional, Sequence, Tuple

import numpy as np

from gatekeeper.config import ProfilerConfig
from gatekeeper.schemas.inputs import RequestDescriptor


logger = logging.getLogger(__name__)


# =============================================================================
# Data Structures
# =============================================================================

@dataclass(frozen=True)
class RequestRecord:
    """Minimal snapshot of one request."""
    timestamp: float  # ms
    path: str
    method: str


@dataclass
class IdentityProfile:
    """
    Per-identity aggregate.

    Header flags are captured from the first request only.
    """
    identity: str
    requests: Deque[RequestRecord]
    user_agent: str = ""
    has_accept: bool = False
    has_accept_language: bool = False
    first_seen: float = 0.0
    last_seen: float = 0.0
    last_score: int = 0
    last_assessment: Optional["ProfileAssessment"] = None


@dataclass(frozen=True)
class ProfileAssessment:
    """Output of one evaluation."""
    suspicious: bool
    score: int
    triggered: Tuple[str, ...] = ()
    recent_requests: int = 0


Predicate = Callable[[IdentityProfile, Sequence[RequestRecord]], bool]


# =============================================================================
# Behavioral Profiler
# =============================================================================

class BehavioralProfiler:
    """
    Maintains IdentityProfiles and scores them.

    The profile map is an LRU capped at `max_profiles`; profiles idle
    longer than `profile_ttl_ms` are removed by `sweep()`.
    """

    def __init__(self, config: Optional[ProfilerConfig] = None) -> None:
        self.config = config or ProfilerConfig()
        self._profiles: "OrderedDict[str, IdentityProfile]" = OrderedDict()
        self._lock = threading.Lock()

        self._predicates: Tuple[Tuple[str, Predicate], ...] = (
            ("scan_breadth", self._scan_breadth),
            ("method_diversity", self._method_diversity),
            ("credential_probing", self._credential_probing),
            ("header_anomaly", self._header_anomaly),
            ("timing_regularity", self._timing_regularity),
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def observe(
        self,
        identity: str,
        request: RequestDescriptor,
        now: Optional[float] = None
    ) -> ProfileAssessment:
        """Record the request and evaluate the identity's profile."""
        now = time.time() * 1000.0 if now is None else now
        profile = self.record(identity, request, now)
        return self.evaluate(profile, now)

    def record(
        self,
        identity: str,
        request: RequestDescriptor,
        now: Optional[float] = None
    ) -> IdentityProfile:
        """Fetch-or-create the profile and append a RequestRecord."""
        now = time.time() * 1000.0 if now is None else now

        with self._lock:
            profile = self._profiles.get(identity)
            if profile is None:
                profile = IdentityProfile(
                    identity=identity,
                    requests=deque(maxlen=self.config.capacity),
                    user_agent=request.user_agent,
                    has_accept=bool(request.header("accept")),
                    has_accept_language=bool(request.header("accept-language")),
                    first_seen=now,
                )
                self._profiles[identity] = profile
                self._evict_overflow()
            else:
                self._profiles.move_to_end(identity)

            profile.requests.append(RequestRecord(
                timestamp=now,
                path=request.path,
                method=request.method,
            ))
            profile.last_seen = now

        return profile

    def evaluate(
        self,
        profile: IdentityProfile,
        now: Optional[float] = None
    ) -> ProfileAssessment:
        """Run the predicate battery and cache the score on the profile."""
        now = profile.last_seen if now is None else now
        recent = self._recent(profile, now)

        triggered = tuple(
            name for name, predicate in self._predicates
            if predicate(profile, recent)
        )
        score = len(triggered)

        assessment = ProfileAssessment(
            suspicious=score >= self.config.suspicious_threshold,
            score=score,
            triggered=triggered,
            recent_requests=len(recent),
        )
        profile.last_score = score
        profile.last_assessment = assessment
        return assessment

    def get_profile(self, identity: str) -> Optional[IdentityProfile]:
        return self._profiles.get(identity)

    def history(self, identity: str) -> List[RequestRecord]:
        """Chronological request history for an identity."""
        profile = self._profiles.get(identity)
        if profile is None:
            return []
        return list(profile.requests)

    def sweep(self, now: Optional[float] = None) -> int:
        """Remove profiles idle past the TTL. Returns the count removed."""
        now = time.time() * 1000.0 if now is None else now
        ttl = self.config.profile_ttl_ms

        with self._lock:
            stale = [k for k, p in self._profiles.items() if now - p.last_seen > ttl]
            for identity in stale:
                del self._profiles[identity]

        if stale:
            logger.debug(f"Profiler sweep removed {len(stale)} idle profiles")
        return len(stale)

    def __len__(self) -> int:
        return len(self._profiles)

    # -------------------------------------------------------------------------
    # Predicates
    # -------------------------------------------------------------------------

    def _scan_breadth(self, profile: IdentityProfile, recent: Sequence[RequestRecord]) -> bool:
        distinct_paths = {r.path for r in recent}
        return (
            len(distinct_paths) >= self.config.scan_min_distinct_paths
            and len(recent) > self.config.scan_min_requests
        )

    def _method_diversity(self, profile: IdentityProfile, recent: Sequence[RequestRecord]) -> bool:
        methods = {r.method for r in profile.requests}
        return len(methods) > self.config.max_methods

    def _credential_probing(self, profile: IdentityProfile, recent: Sequence[RequestRecord]) -> bool:
        markers = self.config.auth_path_markers
        auth_hits = sum(
            1 for r in recent
            if any(marker in r.path.lower().split("/") for marker in markers)
        )
        return auth_hits > self.config.max_auth_requests

    def _header_anomaly(self, profile: IdentityProfile, recent: Sequence[RequestRecord]) -> bool:
        return not profile.has_accept or not profile.has_accept_language

    def _timing_regularity(self, profile: IdentityProfile, recent: Sequence[RequestRecord]) -> bool:
        if len(recent) < self.config.min_timing_samples:
            return False
        timestamps = np.array([r.timestamp for r in recent], dtype=np.float64)
        mean_interval = float(np.diff(timestamps).mean())
        return mean_interval < self.config.min_mean_interval_ms

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _recent(self, profile: IdentityProfile, now: float) -> List[RequestRecord]:
        cutoff = now - self.config.recent_window_ms
        return [r for r in profile.requests if r.timestamp >= cutoff]

    def _evict_overflow(self) -> None:
        while len(self._profiles) > self.config.max_profiles:
            self._profiles.popitem(last=False)
            logger.debug(f"Profile map at {self.config.max_profiles}, evicted least recently seen")
