"""
Gatekeeper Geo & Proxy Heuristics

Derives location signals from edge-provided country headers (Vercel,
Cloudflare) or, when configured, a local GeoIP2 database.

Anomalies:
- location_hopping: more than 3 countries among the last 5 sightings
- impossible_travel: country changed within an hour

ProxyDetector is stateless and counts forwarding indicators.
"""

import ipaddress
import logging
import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple

import geoip2.database

from gatekeeper.schemas.inputs import RequestDescriptor


logger = logging.getLogger(__name__)


UNKNOWN_COUNTRY = "unknown"

COUNTRY_HEADERS: Tuple[str, ...] = ("x-vercel-ip-country", "cf-ipcountry")


# =============================================================================
# Geo Analyzer
# =============================================================================

@dataclass(frozen=True)
class Sighting:
    country: str
    timestamp: float  # ms


@dataclass(frozen=True)
class GeoAssessment:
    country: str
    suspicious: bool
    anomalies: Tuple[str, ...] = ()


class GeoAnalyzer:
    """
    Tracks where each identity has been seen from.

    Sightings with no resolvable country are not recorded, so a missing
    edge header never reads as a country change.
    """

    HISTORY_SIZE: int = 10
    HOPPING_WINDOW: int = 5
    HOPPING_MAX_COUNTRIES: int = 3
    TRAVEL_WINDOW_MS: float = 60 * 60 * 1000

    def __init__(
        self,
        reader: Optional[Any] = None,
        max_identities: int = 50_000,
        ttl_ms: float = 60 * 60 * 1000
    ) -> None:
        self.reader = reader
        self.max_identities = max_identities
        self.ttl_ms = ttl_ms
        self._history: "OrderedDict[str, Deque[Sighting]]" = OrderedDict()
        self._lock = threading.Lock()

    @classmethod
    def from_database(cls, path: Optional[str], **kwargs: Any) -> "GeoAnalyzer":
        """Open a GeoIP2 database; fail open to header-only lookups."""
        reader = None
        if path:
            try:
                reader = geoip2.database.Reader(path)
            except Exception as e:
                logger.warning(f"GeoIP database unavailable, using headers only: {e}")
        return cls(reader=reader, **kwargs)

    def close(self) -> None:
        if self.reader is not None:
            self.reader.close()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def resolve_country(self, identity: str, request: RequestDescriptor) -> str:
        for header in COUNTRY_HEADERS:
            value = request.header(header).strip()
            if value:
                return value.upper()

        if self.reader is None or self._is_private_ip(identity):
            return UNKNOWN_COUNTRY

        try:
            response = self.reader.city(identity)
            return response.country.iso_code or UNKNOWN_COUNTRY
        except Exception as e:
            logger.debug(f"GeoIP lookup failed: {e}")
            return UNKNOWN_COUNTRY

    def analyze(
        self,
        identity: str,
        request: RequestDescriptor,
        now: Optional[float] = None
    ) -> GeoAssessment:
        now = time.time() * 1000.0 if now is None else now
        country = self.resolve_country(identity, request)

        if country == UNKNOWN_COUNTRY:
            return GeoAssessment(country=country, suspicious=False)

        with self._lock:
            sightings = self._history.get(identity)
            if sightings is None:
                sightings = deque(maxlen=self.HISTORY_SIZE)
                self._history[identity] = sightings
                while len(self._history) > self.max_identities:
                    self._history.popitem(last=False)
            else:
                self._history.move_to_end(identity)
            sightings.append(Sighting(country=country, timestamp=now))
            anomalies = self._detect(list(sightings))

        return GeoAssessment(
            country=country,
            suspicious=bool(anomalies),
            anomalies=tuple(anomalies),
        )

    def sweep(self, now: Optional[float] = None) -> int:
        now = time.time() * 1000.0 if now is None else now
        with self._lock:
            stale = [
                k for k, s in self._history.items()
                if not s or now - s[-1].timestamp > self.ttl_ms
            ]
            for identity in stale:
                del self._history[identity]
        return len(stale)

    def __len__(self) -> int:
        return len(self._history)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _detect(self, sightings: List[Sighting]) -> List[str]:
        anomalies: List[str] = []
        if len(sightings) < 2:
            return anomalies

        recent = sightings[-self.HOPPING_WINDOW:]
        if len({s.country for s in recent}) > self.HOPPING_MAX_COUNTRIES:
            anomalies.append("location_hopping")

        previous, latest = recent[-2], recent[-1]
        if (
            latest.country != previous.country
            and latest.timestamp - previous.timestamp < self.TRAVEL_WINDOW_MS
        ):
            anomalies.append("impossible_travel")

        return anomalies

    @staticmethod
    def _is_private_ip(value: str) -> bool:
        try:
            address = ipaddress.ip_address(value)
        except ValueError:
            return True
        return address.is_private or address.is_loopback or address.is_link_local


# =============================================================================
# Proxy Detector
# =============================================================================

PROXY_HEADERS: Tuple[str, ...] = (
    "via",
    "x-forwarded-for",
    "x-forwarded-host",
    "x-forwarded-proto",
    "forwarded",
    "x-real-ip",
    "x-proxy-id",
    "x-proxy-connection",
)

PROXY_PORTS = frozenset({8080, 3128, 8888, 1080, 9050})


@dataclass(frozen=True)
class ProxyCheck:
    is_proxy: bool
    score: int
    indicators: Dict[str, bool] = field(default_factory=dict)

    @property
    def blocking(self) -> bool:
        return self.score >= ProxyDetector.BLOCK_SCORE


class ProxyDetector:
    """Counts forwarding indicators; two or more reads as a proxy."""

    MAX_PROXY_HEADERS: int = 3
    MAX_CHAIN_LENGTH: int = 3
    PROXY_SCORE: int = 2
    BLOCK_SCORE: int = 3

    @classmethod
    def detect(cls, request: RequestDescriptor) -> ProxyCheck:
        indicators = {
            "proxy_headers": cls._count_proxy_headers(request) > cls.MAX_PROXY_HEADERS,
            "long_forwarding_chain": cls._chain_length(request) > cls.MAX_CHAIN_LENGTH,
            "proxy_port": request.connection_info.remote_port in PROXY_PORTS,
        }
        score = sum(1 for hit in indicators.values() if hit)
        return ProxyCheck(
            is_proxy=score >= cls.PROXY_SCORE,
            score=score,
            indicators=indicators,
        )

    @staticmethod
    def _count_proxy_headers(request: RequestDescriptor) -> int:
        return sum(1 for h in PROXY_HEADERS if request.header(h))

    @staticmethod
    def _chain_length(request: RequestDescriptor) -> int:
        forwarded = request.header("x-forwarded-for")
        if not forwarded:
            return 0
        return len(forwarded.split(","))
