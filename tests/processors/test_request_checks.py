"""
Request Check Tests

Request shape validation and honeypot trap paths.
"""

import pytest

from gatekeeper.processors.request_checks import HoneyPot, RequestShapeValidator, nesting_depth


ALLOWED = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"})


@pytest.fixture
def validator():
    return RequestShapeValidator(ALLOWED, max_path_length=2048, max_body_depth=10)


def nested(depth):
    value = {"leaf": 1}
    for _ in range(depth):
        value = {"child": value}
    return value


# =============================================================================
# Request Shape
# =============================================================================

class TestRequestShape:
    """Structural validation."""

    def test_ordinary_request_is_valid(self, validator, make_request):
        check = validator.validate(make_request(path="/api/messages", method="POST", body={"text": "hi"}))
        assert check.valid
        assert check.issues == ()

    def test_unknown_method(self, validator, make_request):
        check = validator.validate(make_request(method="TRACE"))
        assert not check.valid
        assert "method_not_allowed" in check.issues

    def test_path_too_long(self, validator, make_request):
        check = validator.validate(make_request(path="/" + "a" * 2048))
        assert "path_too_long" in check.issues

    def test_null_byte(self, validator, make_request):
        check = validator.validate(make_request(path="/files/a.txt\x00.png"))
        assert "null_byte" in check.issues

    def test_rewrite_headers(self, validator, make_request):
        check = validator.validate(make_request(headers={"X-Original-URL": "/admin"}))
        assert "rewrite_header:x-original-url" in check.issues

    def test_body_depth_limit(self, validator, make_request):
        assert validator.validate(make_request(body=nested(9))).valid
        check = validator.validate(make_request(body=nested(11)))
        assert "body_too_deep" in check.issues

    def test_unparseable_depth_flag(self, validator, make_request):
        check = validator.validate(make_request(method="POST", body_too_deep=True))
        assert check.issues == ("body_too_deep",)

    def test_issues_accumulate(self, validator, make_request):
        check = validator.validate(make_request(method="TRACE", path="/x\x00"))
        assert set(check.issues) == {"method_not_allowed", "null_byte"}


class TestNestingDepth:
    """Depth counting for JSON-like values."""

    def test_scalars_and_flat_containers(self):
        assert nesting_depth("x", 10) == 0
        assert nesting_depth({"a": 1}, 10) == 0
        assert nesting_depth([1, 2, 3], 10) == 0

    def test_nested_lists_and_dicts(self):
        assert nesting_depth({"a": [{"b": [1]}]}, 10) == 3

    def test_stops_past_limit(self):
        assert nesting_depth(nested(500), 10) == 11


# =============================================================================
# Honeypot
# =============================================================================

class TestHoneyPot:
    """Decoy paths and trapped identities."""

    @pytest.fixture
    def honeypot(self):
        return HoneyPot(["/.env", "/.git", "/wp-admin", "/phpMyAdmin"], trap_duration_ms=60_000)

    def test_trap_path_hits(self, honeypot, t0):
        result = honeypot.inspect("a", "/.env", now=t0)
        assert result.hit
        assert result.trap == "/.env"

    def test_match_is_case_insensitive_substring(self, honeypot):
        assert honeypot.match("/PHPMYADMIN/index.php") == "/phpmyadmin"
        assert honeypot.match("/blog/wp-admin/setup") == "/wp-admin"

    def test_normal_path_misses(self, honeypot, t0):
        assert not honeypot.inspect("a", "/api/messages", now=t0).hit

    def test_trapped_identity_stays_trapped(self, honeypot, t0):
        honeypot.inspect("a", "/.git/config", now=t0)
        later = honeypot.inspect("a", "/api/messages", now=t0 + 30_000)
        assert later.hit
        assert later.previously_trapped
        assert not honeypot.inspect("b", "/api/messages", now=t0 + 30_000).hit

    def test_trap_expires(self, honeypot, t0):
        honeypot.inspect("a", "/.env", now=t0)
        assert not honeypot.is_trapped("a", now=t0 + 60_000)
        assert len(honeypot) == 0

    def test_release_and_sweep(self, honeypot, t0):
        honeypot.inspect("a", "/.env", now=t0)
        honeypot.inspect("b", "/.env", now=t0 + 30_000)
        assert honeypot.release("a")
        assert not honeypot.release("a")
        assert honeypot.sweep(now=t0 + 90_000) == 1
        assert len(honeypot) == 0
