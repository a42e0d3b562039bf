"""
Gatekeeper Threat Aggregation

ThreatState:
    Process-wide threat level (0-10) driven by the ratio of blocked and
    suspicious traffic since the last tick. Feeds the adaptive volume cap.

ThreatAggregator:
    Weighted sum of the signals a request triggered, accumulated per
    identity. Cumulative scores grow on requests and only shrink when the
    sweep decays them.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from gatekeeper.config import AggregatorConfig
from gatekeeper.schemas.outputs import BlockKind


logger = logging.getLogger(__name__)


# =============================================================================
# Threat State
# =============================================================================

class Outcome(str, Enum):
    NORMAL = "normal"
    SUSPICIOUS = "suspicious"
    BLOCKED = "blocked"


class ProtectionLevel(str, Enum):
    NORMAL = "normal"
    MEDIUM = "medium"
    HIGH = "high"
    MAXIMUM = "maximum"


@dataclass(frozen=True)
class AdjustedLimits:
    requests: int
    window_ms: float


ADJUSTED_LIMITS: Dict[ProtectionLevel, AdjustedLimits] = {
    ProtectionLevel.NORMAL: AdjustedLimits(requests=100, window_ms=60_000),
    ProtectionLevel.MEDIUM: AdjustedLimits(requests=50, window_ms=60_000),
    ProtectionLevel.HIGH: AdjustedLimits(requests=30, window_ms=60_000),
    ProtectionLevel.MAXIMUM: AdjustedLimits(requests=10, window_ms=60_000),
}


@dataclass
class Tally:
    total: int = 0
    blocked: int = 0
    suspicious: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"total": self.total, "blocked": self.blocked, "suspicious": self.suspicious}


class ThreatState:
    """
    Injected service holding the threat level and the current tally.

    Only `record()` touches the tally and only `tick()` moves the level.
    """

    MIN_LEVEL: int = 0
    MAX_LEVEL: int = 10

    # Escalate when either rate is above these
    ESCALATE_BLOCK_RATE: float = 0.1
    ESCALATE_SUSPICIOUS_RATE: float = 0.2

    # De-escalate when both rates are below these
    CALM_BLOCK_RATE: float = 0.01
    CALM_SUSPICIOUS_RATE: float = 0.05

    def __init__(self) -> None:
        self._level = self.MIN_LEVEL
        self._tally = Tally()
        self._lock = threading.Lock()

    @property
    def level(self) -> int:
        return self._level

    def record(self, outcome: Outcome) -> None:
        outcome = Outcome(outcome)
        with self._lock:
            self._tally.total += 1
            if outcome is Outcome.BLOCKED:
                self._tally.blocked += 1
            elif outcome is Outcome.SUSPICIOUS:
                self._tally.suspicious += 1

    def tick(self) -> int:
        """Adjust the level from the tally, then reset the tally."""
        with self._lock:
            tally = self._tally
            if tally.total == 0:
                return self._level

            block_rate = tally.blocked / tally.total
            suspicious_rate = tally.suspicious / tally.total
            previous = self._level

            if block_rate > self.ESCALATE_BLOCK_RATE or suspicious_rate > self.ESCALATE_SUSPICIOUS_RATE:
                self._level = min(self.MAX_LEVEL, self._level + 1)
            elif block_rate < self.CALM_BLOCK_RATE and suspicious_rate < self.CALM_SUSPICIOUS_RATE:
                self._level = max(self.MIN_LEVEL, self._level - 1)

            self._tally = Tally()
            level = self._level

        if level != previous:
            logger.info(
                f"Threat level {previous} -> {level} "
                f"(block_rate={block_rate:.3f}, suspicious_rate={suspicious_rate:.3f})"
            )
        return level

    def get_protection_level(self) -> ProtectionLevel:
        level = self._level
        if level >= 8:
            return ProtectionLevel.MAXIMUM
        if level >= 5:
            return ProtectionLevel.HIGH
        if level >= 3:
            return ProtectionLevel.MEDIUM
        return ProtectionLevel.NORMAL

    def get_adjusted_limits(self) -> AdjustedLimits:
        return ADJUSTED_LIMITS[self.get_protection_level()]

    def tally(self) -> Dict[str, int]:
        with self._lock:
            return self._tally.to_dict()


# =============================================================================
# Threat Aggregator
# =============================================================================

@dataclass(frozen=True)
class ThreatSignal:
    """One triggered detection. `hard_block` short-circuits the score threshold."""
    name: str
    detail: str = ""
    hard_block: Optional[BlockKind] = None


@dataclass(frozen=True)
class ThreatAssessment:
    score: float
    reasons: Tuple[str, ...]
    blocked: bool
    cumulative_score: float
    block_kind: BlockKind = BlockKind.NONE
    signals: Tuple[ThreatSignal, ...] = field(default=(), repr=False)


# Most specific first: a banned attacker probing a trap is still "banned"
BLOCK_PRIORITY: Tuple[BlockKind, ...] = (
    BlockKind.BANNED,
    BlockKind.DECOY,
    BlockKind.INVALID_REQUEST,
    BlockKind.INVALID_INPUT,
    BlockKind.RATE_LIMITED,
    BlockKind.THREAT,
)


class ThreatAggregator:
    """Turns triggered signals into a block decision."""

    def __init__(
        self,
        config: Optional[AggregatorConfig] = None,
        threat_state: Optional[ThreatState] = None
    ) -> None:
        self.config = config or AggregatorConfig()
        self.threat_state = threat_state or ThreatState()
        self._cumulative: Dict[str, float] = {}
        self._lock = threading.Lock()

    def weight(self, name: str) -> float:
        return self.config.weights.get(name, self.config.default_weight)

    def assess(
        self,
        identity: str,
        signals: Iterable[ThreatSignal],
        now: Optional[float] = None
    ) -> ThreatAssessment:
        signals = tuple(signals)

        # A signal name counts once per request
        reasons: List[str] = []
        for signal in signals:
            if signal.name not in reasons:
                reasons.append(signal.name)
        score = sum(self.weight(name) for name in reasons)

        with self._lock:
            cumulative = self._cumulative.get(identity, 0.0) + score
            if cumulative > 0:
                self._cumulative[identity] = cumulative

        hard_kinds = {s.hard_block for s in signals if s.hard_block is not None}
        block_kind = BlockKind.NONE
        for kind in BLOCK_PRIORITY:
            if kind in hard_kinds:
                block_kind = kind
                break
        if block_kind is BlockKind.NONE and cumulative > self.config.block_threshold:
            block_kind = BlockKind.THREAT

        blocked = block_kind is not BlockKind.NONE

        if blocked:
            self.threat_state.record(Outcome.BLOCKED)
        elif score > 0:
            self.threat_state.record(Outcome.SUSPICIOUS)
        else:
            self.threat_state.record(Outcome.NORMAL)

        return ThreatAssessment(
            score=score,
            reasons=tuple(reasons),
            blocked=blocked,
            cumulative_score=cumulative,
            block_kind=block_kind,
            signals=signals,
        )

    def cumulative_score(self, identity: str) -> float:
        return self._cumulative.get(identity, 0.0)

    def forget(self, identity: str) -> None:
        with self._lock:
            self._cumulative.pop(identity, None)

    def decay(self, factor: Optional[float] = None) -> int:
        """Multiply every cumulative score by `factor`; drop those below 1."""
        factor = self.config.decay_factor if factor is None else factor
        with self._lock:
            dropped = []
            for identity, value in self._cumulative.items():
                value *= factor
                if value < 1.0:
                    dropped.append(identity)
                else:
                    self._cumulative[identity] = value
            for identity in dropped:
                del self._cumulative[identity]
        return len(dropped)

    def __len__(self) -> int:
        return len(self._cumulative)
