"""
Classifier Tests

Each classifier in isolation: which signals it emits, which are hard
blocks, and which ban/retry hints it hands to the pipeline.
"""

import pytest

from gatekeeper.classifiers import (
    BandwidthClassifier,
    BehaviorClassifier,
    GeoClassifier,
    HoneypotClassifier,
    PayloadClassifier,
    RateLimitClassifier,
    RequestShapeClassifier,
    SignatureClassifier,
)
from gatekeeper.config import BanPolicy, PipelineConfig
from gatekeeper.models.limiter import FixedWindowLimiter, TokenBucketLimiter
from gatekeeper.models.threat import Outcome, ThreatState
from gatekeeper.processors.behavior import BehavioralProfiler
from gatekeeper.processors.geo import GeoAnalyzer
from gatekeeper.processors.payload import PayloadScanner
from gatekeeper.processors.request_checks import HoneyPot, RequestShapeValidator
from gatekeeper.schemas.outputs import BlockKind


IDENTITY = "203.0.113.9"


@pytest.fixture
def profiler():
    return BehavioralProfiler()


@pytest.fixture
def classify(profiler):
    """Record the request for IDENTITY and run one classifier on it."""
    def _run(classifier, request, now):
        profile = profiler.record(IDENTITY, request, now)
        return classifier.classify(request, profile)
    return _run


def names(partial):
    return [s.name for s in partial.signals]


def hard_blocks(partial):
    return {s.hard_block for s in partial.signals if s.hard_block is not None}


# =============================================================================
# Structural
# =============================================================================

class TestRequestShapeClassifier:

    @pytest.fixture
    def classifier(self):
        validator = RequestShapeValidator({"GET", "POST"}, max_path_length=100, max_body_depth=5)
        return RequestShapeClassifier(validator, max_body_bytes=1000)

    def test_valid_request(self, classifier, classify, make_request, t0):
        assert not classify(classifier, make_request(), t0).triggered

    def test_bad_method_is_invalid_request(self, classifier, classify, make_request, t0):
        partial = classify(classifier, make_request(method="TRACE"), t0)
        assert names(partial) == ["invalid_request"]
        assert hard_blocks(partial) == {BlockKind.INVALID_REQUEST}

    def test_oversized_body(self, classifier, classify, make_request, t0):
        partial = classify(classifier, make_request(method="POST", content_length=1001), t0)
        assert "body_too_large" in partial.signals[0].detail


class TestHoneypotClassifier:

    def test_trap_path_is_decoy(self, classify, make_request, t0):
        classifier = HoneypotClassifier(HoneyPot(["/.env"], trap_duration_ms=60_000))
        partial = classify(classifier, make_request(path="/.env"), t0)
        assert names(partial) == ["honeypot"]
        assert hard_blocks(partial) == {BlockKind.DECOY}

        follow_up = classify(classifier, make_request(path="/"), t0 + 1000)
        assert follow_up.signals[0].detail == "trapped"


# =============================================================================
# Signatures
# =============================================================================

class TestSignatureClassifier:

    @pytest.fixture
    def classifier(self):
        return SignatureClassifier(BanPolicy())

    def test_browser_is_clean(self, classifier, classify, make_request, t0):
        assert not classify(classifier, make_request(), t0).triggered

    def test_attack_tool_requests_long_ban(self, classifier, classify, make_request, t0):
        req = make_request(headers={"user-agent": "sqlmap/1.7.2#stable (https://sqlmap.org)"})
        partial = classify(classifier, req, t0)
        assert "malicious_tool" in names(partial)
        assert BlockKind.BANNED in hard_blocks(partial)
        assert partial.ban_ms == BanPolicy().escalated_ms
        assert partial.ban_reason == "malicious_tool:sqlmap"

    def test_scripted_client(self, classifier, classify, make_request, t0):
        req = make_request(browser=False, headers={"user-agent": "curl/8.4.0"})
        partial = classify(classifier, req, t0)
        assert "bot_user_agent" in names(partial)
        assert "weak_fingerprint" in names(partial)
        assert partial.ban_ms is None
        assert hard_blocks(partial) == set()

    def test_headless_browser(self, classifier, classify, make_request, t0):
        req = make_request(headers={
            "user-agent": "Mozilla/5.0 (X11; Linux x86_64) HeadlessChrome/120.0.0.0 Safari/537.36",
        })
        partial = classify(classifier, req, t0)
        assert "automation_tool" in names(partial)


# =============================================================================
# Payload
# =============================================================================

SQL_ATTACK = "1 UNION SELECT password FROM users WHERE 1=1 OR 1=1"


class TestPayloadClassifier:

    @pytest.fixture
    def classifier(self):
        return PayloadClassifier(PayloadScanner(), block_confidence=0.6)

    def test_clean_inputs(self, classifier, classify, make_request, t0):
        req = make_request(method="POST", query={"page": "2"}, body={"text": "see you tomorrow"})
        assert not classify(classifier, req, t0).triggered

    def test_path_traversal(self, classifier, classify, make_request, t0):
        partial = classify(classifier, make_request(path="/files/../../etc/passwd"), t0)
        assert "path_traversal" in names(partial)
        assert BlockKind.INVALID_INPUT in hard_blocks(partial)

    def test_high_confidence_query_blocks(self, classifier, classify, make_request, t0):
        partial = classify(classifier, make_request(query={"q": SQL_ATTACK}), t0)
        assert "payload_injection" in names(partial)
        assert BlockKind.INVALID_INPUT in hard_blocks(partial)

    def test_low_confidence_is_weighted_only(self, classifier, classify, make_request, t0):
        partial = classify(classifier, make_request(method="POST", body={"html": "<iframe src=x>"}), t0)
        assert names(partial) == ["payload_suspect"]
        assert hard_blocks(partial) == set()

    def test_non_object_body_is_scanned(self, classifier, classify, make_request, t0):
        partial = classify(classifier, make_request(method="POST", body=[SQL_ATTACK]), t0)
        assert "payload_injection" in names(partial)

    def test_route_params_are_scanned(self, classifier, classify, make_request, t0):
        partial = classify(classifier, make_request(params={"id": SQL_ATTACK}), t0)
        assert "payload_injection" in names(partial)

    def test_double_encoded_attack_is_unwrapped(self, classifier, classify, make_request, t0):
        encoded = SQL_ATTACK.replace(" ", "%2520").replace("=", "%253D")
        partial = classify(classifier, make_request(query={"q": encoded}), t0)
        assert "payload_injection" in names(partial)

    def test_fuzzing_input(self, classifier, classify, make_request, t0):
        partial = classify(classifier, make_request(query={"id": "2147483647"}), t0)
        assert names(partial) == ["fuzzing"]

    def test_over_deep_values_are_left_to_shape_check(self, classify, make_request, t0):
        classifier = PayloadClassifier(PayloadScanner(), max_depth=2)
        body = {"note": [[[[SQL_ATTACK]]]], "text": SQL_ATTACK}
        partial = classify(classifier, make_request(method="POST", body=body), t0)
        assert names(partial).count("payload_injection") == 1


# =============================================================================
# Geo
# =============================================================================

class TestGeoClassifier:

    def test_impossible_travel(self, classify, make_request, t0):
        classifier = GeoClassifier(GeoAnalyzer())
        classify(classifier, make_request(headers={"cf-ipcountry": "US"}), t0)
        partial = classify(classifier, make_request(headers={"cf-ipcountry": "JP"}), t0 + 60_000)
        assert names(partial) == ["geo_anomaly"]
        assert hard_blocks(partial) == set()

    def test_proxy_indicators(self, classify, make_request, t0):
        classifier = GeoClassifier(GeoAnalyzer())
        req = make_request(
            headers={
                "via": "1.1 squid",
                "x-forwarded-for": "1.1.1.1, 2.2.2.2, 3.3.3.3, 4.4.4.4",
                "forwarded": "for=1.1.1.1",
                "x-proxy-id": "abc",
            },
            remote_port=3128,
        )
        partial = classify(classifier, req, t0)
        assert names(partial) == ["proxy_indicators"]


# =============================================================================
# Behavior
# =============================================================================

class TestBehaviorClassifier:

    def test_silent_until_suspicious(self, profiler, classify, make_request, t0):
        classifier = BehaviorClassifier(profiler)
        partial = classify(classifier, make_request(headers={"accept-language": ""}), t0)
        assert not partial.triggered

    def test_emits_each_predicate(self, profiler, classify, make_request, t0):
        classifier = BehaviorClassifier(profiler)
        partial = None
        for i, method in enumerate(["GET", "POST", "PUT", "DELETE", "PATCH"]):
            req = make_request(method=method, headers={"accept-language": ""})
            partial = classify(classifier, req, t0 + i * 1000)
        assert sorted(names(partial)) == ["header_anomaly", "method_diversity"]
        assert hard_blocks(partial) == set()


# =============================================================================
# Rate & Volume
# =============================================================================

class TestRateLimitClassifier:

    @pytest.fixture
    def threat_state(self):
        return ThreatState()

    @pytest.fixture
    def classifier(self, threat_state):
        return RateLimitClassifier(PipelineConfig(), FixedWindowLimiter(), threat_state)

    def test_remaining_is_reported(self, classifier, classify, make_request, t0):
        partial = classify(classifier, make_request(path="/api/messages"), t0)
        assert partial.rate_limit_remaining == 99
        assert not partial.triggered

    def test_login_limit_escalates_to_ban(self, classifier, classify, make_request, t0):
        for i in range(5):
            assert not classify(classifier, make_request(path="/api/login", method="POST"), t0 + i).triggered
        partial = classify(classifier, make_request(path="/api/login", method="POST"), t0 + 10)
        assert names(partial) == ["rate_limited"]
        assert hard_blocks(partial) == {BlockKind.RATE_LIMITED}
        assert partial.ban_ms == PipelineConfig().bans.default_ms
        assert partial.ban_reason == "rate_limit:login"
        assert partial.retry_after_ms == pytest.approx(15 * 60 * 1000 - 10)

    def test_explicit_action_class(self, classifier, classify, make_request, t0):
        partial = classify(classifier, make_request(path="/graphql", action_class="message"), t0)
        assert partial.rate_limit_remaining == 29

    def test_volume_cap_follows_threat_level(self, classifier, threat_state, classify, make_request, t0):
        for _ in range(8):
            threat_state.record(Outcome.BLOCKED)
            threat_state.tick()
        for i in range(10):
            assert not classify(classifier, make_request(), t0 + i).triggered
        partial = classify(classifier, make_request(), t0 + 20)
        assert names(partial) == ["volume_exceeded"]
        assert partial.ban_ms is None
        assert partial.retry_after_ms == pytest.approx(60_000 - 20)


class TestBandwidthClassifier:

    def test_bucket_drains(self, classify, make_request, t0):
        classifier = BandwidthClassifier(TokenBucketLimiter(capacity=1000, refill_rate=100))
        assert not classify(classifier, make_request(method="POST", content_length=5000), t0).triggered
        partial = classify(classifier, make_request(method="POST", content_length=200), t0)
        assert names(partial) == ["bandwidth_exceeded"]
        assert hard_blocks(partial) == {BlockKind.RATE_LIMITED}
        assert partial.retry_after_ms == 2000

    def test_bodyless_request_is_free(self, classify, make_request, t0):
        classifier = BandwidthClassifier(TokenBucketLimiter(capacity=1, refill_rate=1))
        for i in range(5):
            assert not classify(classifier, make_request(), t0 + i).triggered
