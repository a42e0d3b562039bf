"""
Gatekeeper Models

Stateful counting primitives and threat aggregation.
"""

from gatekeeper.models.limiter import BanList, FixedWindowLimiter, RateDecision, TokenBucketLimiter
from gatekeeper.models.threat import ThreatAggregator, ThreatAssessment, ThreatSignal, ThreatState

__all__ = [
    "BanList",
    "FixedWindowLimiter",
    "RateDecision",
    "TokenBucketLimiter",
    "ThreatAggregator",
    "ThreatAssessment",
    "ThreatSignal",
    "ThreatState",
]
