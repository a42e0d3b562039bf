"""
Gatekeeper State Manager

Thread-safe, in-memory "hot storage" for every per-identity map the
pipeline keeps. Each component guards its own map; this module groups
them so they can be swept and inspected together.

Usage:
    store = SecurityStateStore.from_config(PipelineConfig(), threat_state)
    report = store.sweep()

State is process-local. Multiple workers do not share it.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from gatekeeper.config import PipelineConfig
from gatekeeper.models.limiter import BanList, FixedWindowLimiter, TokenBucketLimiter
from gatekeeper.models.threat import ThreatAggregator, ThreatState
from gatekeeper.processors.behavior import BehavioralProfiler
from gatekeeper.processors.geo import GeoAnalyzer
from gatekeeper.processors.payload import PayloadScanner
from gatekeeper.processors.request_checks import HoneyPot


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepReport:
    """Entries removed by one sweep."""
    profiles: int = 0
    windows: int = 0
    buckets: int = 0
    bans: int = 0
    trapped: int = 0
    geo: int = 0
    scan_cache: int = 0
    scores: int = 0

    @property
    def total(self) -> int:
        return sum(asdict(self).values())


class SecurityStateStore:
    """
    Owns all mutable per-identity state.

    Attributes:
        profiler: Request history and behavioral predicates
        windows: Fixed-window counters (action classes and volume)
        buckets: Bandwidth token buckets
        bans: Timed ban list
        honeypot: Trapped identities
        geo: Country sightings
        scanner: Payload scan cache
        aggregator: Cumulative threat scores
    """

    def __init__(
        self,
        profiler: BehavioralProfiler,
        windows: FixedWindowLimiter,
        buckets: TokenBucketLimiter,
        bans: BanList,
        honeypot: HoneyPot,
        geo: GeoAnalyzer,
        scanner: PayloadScanner,
        aggregator: ThreatAggregator
    ) -> None:
        self.profiler = profiler
        self.windows = windows
        self.buckets = buckets
        self.bans = bans
        self.honeypot = honeypot
        self.geo = geo
        self.scanner = scanner
        self.aggregator = aggregator
        self._sweep_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        threat_state: ThreatState,
        geo: Optional[GeoAnalyzer] = None
    ) -> "SecurityStateStore":
        return cls(
            profiler=BehavioralProfiler(config.profiler),
            windows=FixedWindowLimiter(),
            buckets=TokenBucketLimiter(
                capacity=config.bandwidth.capacity_bytes,
                refill_rate=config.bandwidth.refill_bytes_per_second,
            ),
            bans=BanList(),
            honeypot=HoneyPot(config.honeypot_paths, trap_duration_ms=config.bans.default_ms),
            geo=geo or GeoAnalyzer(
                max_identities=config.profiler.max_profiles,
                ttl_ms=config.profiler.profile_ttl_ms,
            ),
            scanner=PayloadScanner(
                ttl_ms=config.scanner.cache_ttl_ms,
                max_entries=config.scanner.cache_max_entries,
            ),
            aggregator=ThreatAggregator(config.aggregator, threat_state),
        )

    def sweep(self, now: Optional[float] = None) -> SweepReport:
        """Expire idle and stale entries in every map and decay threat scores."""
        now = time.time() * 1000.0 if now is None else now

        with self._sweep_lock:
            report = SweepReport(
                profiles=self.profiler.sweep(now),
                windows=self.windows.sweep(now),
                buckets=self.buckets.sweep(now),
                bans=self.bans.sweep(now),
                trapped=self.honeypot.sweep(now),
                geo=self.geo.sweep(now),
                scan_cache=self.scanner.purge_expired(now),
                scores=self.aggregator.decay(),
            )

        if report.total:
            logger.info(f"State sweep removed {report.total} entries: {asdict(report)}")
        return report

    def forget(self, identity: str) -> None:
        """Drop an identity's ban, trap and score."""
        self.bans.unban(identity)
        self.honeypot.release(identity)
        self.aggregator.forget(identity)

    def stats(self) -> Dict[str, Any]:
        return {
            "profiles": len(self.profiler),
            "rate_windows": len(self.windows),
            "bandwidth_buckets": len(self.buckets),
            "bans": len(self.bans),
            "trapped": len(self.honeypot),
            "geo_tracked": len(self.geo),
            "scan_cache": self.scanner.cache_size(),
            "scored_identities": len(self.aggregator),
        }
