"""
Gatekeeper Classifiers

Adapters that turn detector output into ThreatSignals. Every classifier
implements the same capability:

    classify(request, profile) -> PartialSignal

`profile` is the caller's IdentityProfile after the current request was
recorded, so `profile.identity` is the client key and `profile.last_seen`
is the request time in milliseconds.

Classifiers never decide. Hard blocks, bans and retry hints are requests
to the pipeline, which owns the ban list and the final verdict.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Protocol, Tuple

from gatekeeper.config import BanPolicy, PipelineConfig
from gatekeeper.models.limiter import FixedWindowLimiter, TokenBucketLimiter
from gatekeeper.models.threat import ThreatSignal, ThreatState
from gatekeeper.processors.behavior import BehavioralProfiler, IdentityProfile
from gatekeeper.processors.geo import GeoAnalyzer, ProxyDetector
from gatekeeper.processors.payload import EncodingDetector, FuzzDetector, PayloadScanner
from gatekeeper.processors.request_checks import HoneyPot, RequestShapeValidator, nesting_depth
from gatekeeper.processors.signatures import (
    check_browser_fingerprint,
    is_parser_flagged_bot,
    match_automation_tool,
    match_bot_user_agent,
    match_malicious_tool,
)
from gatekeeper.schemas.inputs import RequestDescriptor
from gatekeeper.schemas.outputs import BlockKind


logger = logging.getLogger(__name__)


# =============================================================================
# Interface
# =============================================================================

@dataclass(frozen=True)
class PartialSignal:
    """One classifier's contribution to a verdict."""
    classifier: str
    signals: Tuple[ThreatSignal, ...] = ()
    ban_ms: Optional[float] = None
    ban_reason: str = ""
    retry_after_ms: Optional[float] = None
    rate_limit_remaining: Optional[int] = None

    @property
    def triggered(self) -> bool:
        return bool(self.signals)


class Classifier(Protocol):
    name: str

    def classify(self, request: RequestDescriptor, profile: IdentityProfile) -> PartialSignal:
        ...


# =============================================================================
# Structural
# =============================================================================

class RequestShapeClassifier:
    """Method, path, nesting, rewrite headers and declared body size."""

    name = "request_shape"

    def __init__(self, validator: RequestShapeValidator, max_body_bytes: int) -> None:
        self.validator = validator
        self.max_body_bytes = max_body_bytes

    def classify(self, request: RequestDescriptor, profile: IdentityProfile) -> PartialSignal:
        issues = list(self.validator.validate(request).issues)
        if request.content_length is not None and request.content_length > self.max_body_bytes:
            issues.append("body_too_large")

        if not issues:
            return PartialSignal(self.name)

        return PartialSignal(
            self.name,
            signals=(ThreatSignal(
                "invalid_request",
                detail=",".join(issues),
                hard_block=BlockKind.INVALID_REQUEST,
            ),),
        )


class HoneypotClassifier:
    name = "honeypot"

    def __init__(self, honeypot: HoneyPot) -> None:
        self.honeypot = honeypot

    def classify(self, request: RequestDescriptor, profile: IdentityProfile) -> PartialSignal:
        result = self.honeypot.inspect(profile.identity, request.path, profile.last_seen)
        if not result.hit:
            return PartialSignal(self.name)
        detail = result.trap or "trapped"
        return PartialSignal(
            self.name,
            signals=(ThreatSignal("honeypot", detail=detail, hard_block=BlockKind.DECOY),),
        )


# =============================================================================
# Signatures
# =============================================================================

class SignatureClassifier:
    """User-Agent catalogues and the browser header fingerprint."""

    name = "signatures"

    def __init__(self, bans: BanPolicy) -> None:
        self.bans = bans

    def classify(self, request: RequestDescriptor, profile: IdentityProfile) -> PartialSignal:
        ua = request.user_agent
        signals: List[ThreatSignal] = []
        ban_ms = None
        ban_reason = ""

        tools = match_malicious_tool(ua)
        if tools:
            signals.append(ThreatSignal(
                "malicious_tool",
                detail=",".join(tools),
                hard_block=BlockKind.BANNED,
            ))
            ban_ms = self.bans.escalated_ms
            ban_reason = f"malicious_tool:{','.join(tools)}"

        if match_bot_user_agent(ua) or is_parser_flagged_bot(ua):
            signals.append(ThreatSignal("bot_user_agent"))

        automation = match_automation_tool(ua)
        if automation.automated:
            signals.append(ThreatSignal("automation_tool", detail=",".join(automation.tools)))

        fingerprint = check_browser_fingerprint(request.headers)
        if not fingerprint.legitimate:
            signals.append(ThreatSignal("weak_fingerprint", detail=f"score={fingerprint.score}"))

        return PartialSignal(self.name, signals=tuple(signals), ban_ms=ban_ms, ban_reason=ban_reason)


class PayloadClassifier:
    """
    Injection, encoding and fuzzing checks over every top-level input value.

    Values come from query, params and body (each value of an object body,
    or the body itself otherwise). Only high-confidence scans hard-block.
    Values nested deeper than `max_depth` are skipped; RequestShapeClassifier
    rejects those requests.
    """

    name = "payload"

    def __init__(
        self,
        scanner: PayloadScanner,
        block_confidence: float = 0.6,
        max_depth: int = 10
    ) -> None:
        self.scanner = scanner
        self.block_confidence = block_confidence
        self.max_depth = max_depth

    def classify(self, request: RequestDescriptor, profile: IdentityProfile) -> PartialSignal:
        now = profile.last_seen
        signals: List[ThreatSignal] = []

        traversal = self.scanner.scan(request.path, categories=["traversal"], now=now)
        if traversal.malicious:
            signals.append(ThreatSignal("path_traversal", hard_block=BlockKind.INVALID_INPUT))

        for value in self._inputs(request):
            if nesting_depth(value, self.max_depth) > self.max_depth:
                continue
            result = self.scanner.scan(value, now=now)

            if isinstance(value, str):
                decoded = EncodingDetector.decode(value)
                if decoded.iterations and decoded.decoded != value:
                    # Re-scan the unwrapped text; the higher confidence wins
                    unwrapped = self.scanner.scan(decoded.decoded, now=now)
                    if unwrapped.confidence > result.confidence:
                        result = unwrapped
                if decoded.suspicious or EncodingDetector.detect(value).suspicious:
                    signals.append(ThreatSignal("suspicious_encoding"))

                fuzz = FuzzDetector.detect(value)
                if fuzz:
                    signals.append(ThreatSignal("fuzzing", detail=",".join(fuzz)))

            if result.malicious and result.confidence > self.block_confidence:
                signals.append(ThreatSignal(
                    "payload_injection",
                    detail=",".join(result.categories),
                    hard_block=BlockKind.INVALID_INPUT,
                ))
            elif result.malicious:
                signals.append(ThreatSignal("payload_suspect", detail=",".join(result.categories)))

        return PartialSignal(self.name, signals=tuple(signals))

    @staticmethod
    def _inputs(request: RequestDescriptor) -> Iterator[Any]:
        yield from request.query.values()
        yield from request.params.values()
        body = request.body
        if isinstance(body, dict):
            yield from body.values()
        elif body is not None:
            yield body


class GeoClassifier:
    name = "geo"

    def __init__(self, analyzer: GeoAnalyzer) -> None:
        self.analyzer = analyzer

    def classify(self, request: RequestDescriptor, profile: IdentityProfile) -> PartialSignal:
        signals: List[ThreatSignal] = []

        geo = self.analyzer.analyze(profile.identity, request, profile.last_seen)
        if geo.suspicious:
            signals.append(ThreatSignal("geo_anomaly", detail=",".join(geo.anomalies)))

        proxy = ProxyDetector.detect(request)
        if proxy.blocking:
            hits = [name for name, hit in proxy.indicators.items() if hit]
            signals.append(ThreatSignal("proxy_indicators", detail=",".join(hits)))

        return PartialSignal(self.name, signals=tuple(signals))


# =============================================================================
# Behavior
# =============================================================================

class BehaviorClassifier:
    """Contributes the profiler's predicates once the profile is suspicious."""

    name = "behavior"

    def __init__(self, profiler: BehavioralProfiler) -> None:
        self.profiler = profiler

    def classify(self, request: RequestDescriptor, profile: IdentityProfile) -> PartialSignal:
        assessment = self.profiler.evaluate(profile, profile.last_seen)
        if not assessment.suspicious:
            return PartialSignal(self.name)
        return PartialSignal(
            self.name,
            signals=tuple(ThreatSignal(name) for name in assessment.triggered),
        )


# =============================================================================
# Rate & Volume
# =============================================================================

class RateLimitClassifier:
    """
    Per-action fixed windows plus the adaptive per-identity volume cap.

    The volume window's size is read from ThreatState on every call, so a
    rising threat level tightens it immediately.
    """

    name = "rate_limit"

    VOLUME_ACTION = "volume"

    def __init__(
        self,
        config: PipelineConfig,
        limiter: FixedWindowLimiter,
        threat_state: ThreatState
    ) -> None:
        self.config = config
        self.limiter = limiter
        self.threat_state = threat_state

    def classify(self, request: RequestDescriptor, profile: IdentityProfile) -> PartialSignal:
        identity = profile.identity
        now = profile.last_seen
        signals: List[ThreatSignal] = []
        retry_after: Optional[float] = None
        remaining: Optional[int] = None
        ban_ms = None
        ban_reason = ""

        action = request.action_class or self.config.resolve_action(request.method, request.path)
        rule = self.config.rate_limits.get(action) if action else None
        if action and rule is None:
            logger.debug(f"No rate rule for action class {action!r}")

        if rule is not None:
            decision = self.limiter.allow(f"{action}:{identity}", rule.limit, rule.window_ms, now)
            remaining = decision.remaining
            if not decision.allowed:
                signals.append(ThreatSignal(
                    "rate_limited",
                    detail=action,
                    hard_block=BlockKind.RATE_LIMITED,
                ))
                retry_after = decision.retry_after_ms
                if rule.escalate_to_ban:
                    ban_ms = self.config.bans.default_ms
                    ban_reason = f"rate_limit:{action}"

        limits = self.threat_state.get_adjusted_limits()
        volume = self.limiter.allow(
            f"{self.VOLUME_ACTION}:{identity}", limits.requests, limits.window_ms, now
        )
        if not volume.allowed:
            signals.append(ThreatSignal(
                "volume_exceeded",
                detail=f"{limits.requests}/{limits.window_ms:.0f}ms",
                hard_block=BlockKind.RATE_LIMITED,
            ))
            retry_after = max(retry_after or 0.0, volume.retry_after_ms or 0.0)

        return PartialSignal(
            self.name,
            signals=tuple(signals),
            ban_ms=ban_ms,
            ban_reason=ban_reason,
            retry_after_ms=retry_after,
            rate_limit_remaining=remaining,
        )


class BandwidthClassifier:
    """
    Charges the declared body size against a per-identity token bucket.

    A single body larger than the bucket drains it completely instead of
    being refused forever.
    """

    name = "bandwidth"

    def __init__(self, bucket: TokenBucketLimiter) -> None:
        self.bucket = bucket

    def classify(self, request: RequestDescriptor, profile: IdentityProfile) -> PartialSignal:
        size = request.content_length
        if not size:
            return PartialSignal(self.name)

        cost = min(float(size), self.bucket.capacity)
        decision = self.bucket.consume(f"bandwidth:{profile.identity}", cost, profile.last_seen)
        if decision.allowed:
            return PartialSignal(self.name)

        return PartialSignal(
            self.name,
            signals=(ThreatSignal(
                "bandwidth_exceeded",
                detail=f"{size}B",
                hard_block=BlockKind.RATE_LIMITED,
            ),),
            retry_after_ms=decision.retry_after_ms,
        )
