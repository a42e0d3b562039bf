"""
Gatekeeper Defense Pipeline

Composes the detectors into a single allow/challenge/block decision.

Pipeline:
    Identity → Allowlist → Ban check → Profile record →
    Classifiers → Threat aggregation → Verdict

Every classifier runs on every request that reaches it; there is no early
exit between them, so the profiler and counters see all traffic.

Housekeeping (state sweep, threat-level tick) runs on a Scheduler started
by `start_background_tasks()`.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Dict, List, Optional, Sequence

from gatekeeper.classifiers import (
    BandwidthClassifier,
    BehaviorClassifier,
    Classifier,
    GeoClassifier,
    HoneypotClassifier,
    PartialSignal,
    PayloadClassifier,
    RateLimitClassifier,
    RequestShapeClassifier,
    SignatureClassifier,
)
from gatekeeper.config import PipelineConfig
from gatekeeper.event_log import SecurityEventLog
from gatekeeper.models.threat import Outcome, ThreatAssessment, ThreatState
from gatekeeper.processors.geo import GeoAnalyzer
from gatekeeper.processors.identity import extract_identity, hash_identity
from gatekeeper.processors.request_checks import RequestShapeValidator
from gatekeeper.scheduler import Scheduler
from gatekeeper.schemas.inputs import RequestDescriptor
from gatekeeper.schemas.outputs import BlockKind, Decision, Verdict
from gatekeeper.state_manager import SecurityStateStore, SweepReport


logger = logging.getLogger(__name__)


# =============================================================================
# Pipeline
# =============================================================================

class DefensePipeline:
    """
    In-process request defense.

    Owns the state store and the ThreatState; everything else is built
    from the PipelineConfig. Custom classifiers may be passed to replace
    the default battery.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        threat_state: Optional[ThreatState] = None,
        geo: Optional[GeoAnalyzer] = None,
        classifiers: Optional[Sequence[Classifier]] = None,
        event_log: Optional[SecurityEventLog] = None
    ) -> None:
        self.config = config or PipelineConfig()
        self.threat_state = threat_state or ThreatState()
        self.state = SecurityStateStore.from_config(self.config, self.threat_state, geo=geo)
        self.event_log = event_log or SecurityEventLog(self.config.max_event_log_entries)

        if classifiers is None:
            classifiers = self._default_classifiers()
        self.classifiers: List[Classifier] = list(classifiers)

        self.scheduler = Scheduler()
        self.scheduler.add("sweep", self.config.schedule.sweep_interval_seconds, self.sweep)
        self.scheduler.add("threat_tick", self.config.schedule.tick_interval_seconds, self.tick)

        logger.info(
            f"DefensePipeline initialized ({len(self.classifiers)} classifiers: "
            f"{', '.join(c.name for c in self.classifiers)})"
        )

    def _default_classifiers(self) -> List[Classifier]:
        config = self.config
        state = self.state
        return [
            RequestShapeClassifier(
                RequestShapeValidator(
                    config.allowed_methods,
                    max_path_length=config.max_path_length,
                    max_body_depth=config.max_body_depth,
                ),
                max_body_bytes=config.bandwidth.max_body_bytes,
            ),
            HoneypotClassifier(state.honeypot),
            SignatureClassifier(config.bans),
            PayloadClassifier(
                state.scanner,
                block_confidence=config.scanner.block_confidence,
                max_depth=config.max_body_depth,
            ),
            GeoClassifier(state.geo),
            BehaviorClassifier(state.profiler),
            RateLimitClassifier(config, state.windows, self.threat_state),
            BandwidthClassifier(state.buckets),
        ]

    # -------------------------------------------------------------------------
    # Request Path
    # -------------------------------------------------------------------------

    def evaluate(self, request: RequestDescriptor, now: Optional[float] = None) -> Verdict:
        """
        Decide whether a request may proceed.

        Args:
            request: Request snapshot built by the enclosing HTTP layer
            now: Clock override in milliseconds

        Returns:
            Verdict. Malicious traffic is a normal outcome, never an exception.
        """
        now = time.time() * 1000.0 if now is None else now
        identity = extract_identity(request)

        if identity in self.config.allowlist:
            return Verdict(allow=True, decision=Decision.ALLOW)

        ban = self.state.bans.get(identity, now)
        if ban is not None:
            self.threat_state.record(Outcome.BLOCKED)
            retry_after = self._seconds(ban.banned_until - now)
            self._log_block(identity, BlockKind.BANNED, [f"banned:{ban.reason}"], now)
            return Verdict(
                allow=False,
                decision=Decision.BLOCK,
                block_kind=BlockKind.BANNED,
                reasons=["banned"],
                retry_after_seconds=retry_after,
                banned=True,
            )

        profile = self.state.profiler.record(identity, request, now)
        partials = [c.classify(request, profile) for c in self.classifiers]

        signals = [s for p in partials for s in p.signals]
        assessment = self.state.aggregator.assess(identity, signals, now)

        banned = self._apply_bans(identity, partials, now)
        return self._build_verdict(identity, assessment, partials, banned, now)

    def _apply_bans(self, identity: str, partials: List[PartialSignal], now: float) -> bool:
        banned = False
        for partial in partials:
            if partial.ban_ms is None:
                continue
            record = self.state.bans.ban(identity, partial.ban_ms, partial.ban_reason, now)
            self.event_log.log("ban", identity, record.reason, now)
            logger.warning(
                f"Identity {hash_identity(identity)} banned until {record.banned_until:.0f} "
                f"({record.reason})"
            )
            banned = True
        return banned

    def _build_verdict(
        self,
        identity: str,
        assessment: ThreatAssessment,
        partials: List[PartialSignal],
        banned: bool,
        now: float
    ) -> Verdict:
        remaining = None
        retry_after_ms = None
        for partial in partials:
            if partial.rate_limit_remaining is not None:
                remaining = partial.rate_limit_remaining
            if partial.retry_after_ms is not None:
                retry_after_ms = max(retry_after_ms or 0.0, partial.retry_after_ms)

        if not assessment.blocked:
            decision = Decision.CHALLENGE if assessment.score > 0 else Decision.ALLOW
            if decision is Decision.CHALLENGE:
                self.event_log.log("suspicious", identity, ",".join(assessment.reasons), now)
            return Verdict(
                allow=True,
                decision=decision,
                reasons=list(assessment.reasons),
                risk_score=assessment.score,
                rate_limit_remaining=remaining,
            )

        block_kind = assessment.block_kind
        if banned:
            remaining_ms = self.state.bans.remaining_ms(identity, now)
            retry_after_ms = max(retry_after_ms or 0.0, remaining_ms)

        self._log_block(identity, block_kind, list(assessment.reasons), now)
        return Verdict(
            allow=False,
            decision=Decision.BLOCK,
            block_kind=block_kind,
            reasons=list(assessment.reasons),
            retry_after_seconds=self._seconds(retry_after_ms) if retry_after_ms else None,
            banned=banned,
            risk_score=assessment.score,
            rate_limit_remaining=remaining,
        )

    def _log_block(self, identity: str, kind: BlockKind, reasons: List[str], now: float) -> None:
        detail = f"{kind.value}:{','.join(reasons)}"
        self.event_log.log("blocked", identity, detail, now)
        logger.warning(f"Blocked request from {hash_identity(identity)}: {detail}")

    @staticmethod
    def _seconds(ms: float) -> int:
        return max(1, int(math.ceil(ms / 1000.0)))

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def sweep(self, now: Optional[float] = None) -> SweepReport:
        return self.state.sweep(now)

    def tick(self) -> int:
        return self.threat_state.tick()

    def start_background_tasks(self) -> None:
        self.scheduler.start()

    def shutdown(self) -> None:
        self.scheduler.stop()
        self.state.geo.close()
        logger.info("DefensePipeline shut down")

    # -------------------------------------------------------------------------
    # Operator API
    # -------------------------------------------------------------------------

    def unban(self, identity: str, now: Optional[float] = None) -> bool:
        """Lift a ban and clear the identity's trap and accumulated score."""
        lifted = self.state.bans.is_banned(identity, now)
        self.state.forget(identity)
        if lifted:
            self.event_log.log("unban", identity, now=now)
            logger.info(f"Identity {hash_identity(identity)} unbanned by operator")
        return lifted

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self.state.stats())
        stats.update({
            "threat_level": self.threat_state.level,
            "protection_level": self.threat_state.get_protection_level().value,
            "tally": self.threat_state.tally(),
            "events": len(self.event_log),
        })
        return stats
