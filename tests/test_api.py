"""
API Endpoint Tests

Tests for the FastAPI enforcer using TestClient with the real pipeline.
Background tasks, the decoy delay and the audit sink are disabled via
environment variables; each test uses its own forwarded address so
identities do not share state.
"""

import pytest
from unittest.mock import MagicMock
from fastapi.testclient import TestClient

import main
from main import app, state


CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

ADMIN_TOKEN = "test-admin-token"


def browser(ip: str, **extra: str) -> dict:
    """Browser-like headers for a given client address."""
    headers = {
        "user-agent": CHROME_UA,
        "accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "accept-language": "en-US,en;q=0.9",
        "accept-encoding": "gzip, deflate, br",
        "x-forwarded-for": ip,
    }
    headers.update(extra)
    return headers


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(scope="module")
def client():
    """TestClient for FastAPI app with lifespan context."""
    with pytest.MonkeyPatch.context() as mp:
        mp.setenv("GATEKEEPER_BACKGROUND_TASKS", "false")
        mp.setenv("GATEKEEPER_DECOY_DELAY_SECONDS", "0")
        mp.setenv("GATEKEEPER_ADMIN_TOKEN", ADMIN_TOKEN)
        mp.delenv("SUPABASE_URL", raising=False)
        mp.delenv("SUPABASE_KEY", raising=False)
        with TestClient(app, raise_server_exceptions=False) as client:
            state.challenge_delay_ms = (0, 0)
            yield client


# =============================================================================
# Health Check Tests
# =============================================================================

class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_returns_200(self, client):
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data

    def test_health_bypasses_pipeline(self, client):
        response = client.get("/health", headers={"user-agent": "sqlmap/1.7"})
        assert response.status_code == 200


# =============================================================================
# Enforcement Tests
# =============================================================================

class TestEnforcement:
    """Verdicts mapped to HTTP responses."""

    def test_allowed_request_passes_through(self, client):
        response = client.get("/api/messages", headers=browser("20.0.0.1"))
        # No such route: the app's own 404, not the decoy
        assert response.status_code == 404
        assert response.json() == {"detail": "Not Found"}
        assert response.headers["X-RateLimit-Remaining"] == "99"

    def test_challenged_request_passes_through(self, client):
        headers = browser("20.0.0.2", **{"user-agent": "python-requests/2.31"})
        response = client.get("/api/messages", headers=headers)
        assert response.json() == {"detail": "Not Found"}

    def test_attack_tool_is_forbidden(self, client):
        headers = browser("20.0.0.3", **{"user-agent": "sqlmap/1.7.2#stable (https://sqlmap.org)"})
        response = client.get("/", headers=headers)
        assert response.status_code == 403
        assert response.json() == {"error": "Access denied"}
        assert int(response.headers["Retry-After"]) == 24 * 60 * 60

    def test_bad_method_is_400(self, client):
        response = client.request("TRACE", "/api/messages", headers=browser("20.0.0.4"))
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid request"}

    def test_injection_is_400_without_details(self, client):
        response = client.get(
            "/api/search",
            params={"q": "1 UNION SELECT password FROM users WHERE 1=1 OR 1=1"},
            headers=browser("20.0.0.5"),
        )
        assert response.status_code == 400
        assert "UNION" not in response.text
        assert "payload" not in response.text

    def test_honeypot_is_decoy_404(self, client):
        response = client.get("/.env", headers=browser("20.0.0.6"))
        assert response.status_code == 404
        assert response.json() == {"error": "Not found"}

    def test_login_brute_force_is_429(self, client):
        headers = browser("20.0.0.7")
        statuses = [client.post("/api/login", json={"u": "a", "p": str(i)}, headers=headers).status_code
                    for i in range(6)]
        assert statuses[:5] == [404] * 5  # no login route in this app
        assert statuses[5] == 429

        blocked = client.post("/api/login", json={}, headers=headers)
        assert blocked.status_code == 403  # banned now
        assert 3500 <= int(blocked.headers["Retry-After"]) <= 3600

    def test_pipeline_error_fails_open(self, client, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("detector crashed")

        monkeypatch.setattr(state.pipeline, "evaluate", broken)
        response = client.get("/api/messages", headers=browser("20.0.0.8"))
        assert response.json() == {"detail": "Not Found"}

    def test_ban_holds_when_pipeline_fails(self, client, monkeypatch):
        attack = browser("20.0.0.11", **{"user-agent": "sqlmap/1.7.2#stable (https://sqlmap.org)"})
        assert client.get("/", headers=attack).status_code == 403

        def broken(*args, **kwargs):
            raise RuntimeError("detector crashed")

        monkeypatch.setattr(state.pipeline, "evaluate", broken)
        response = client.get("/api/messages", headers=browser("20.0.0.11"))
        assert response.status_code == 403
        assert response.json() == {"error": "Access denied"}

    def test_blocked_requests_are_audited(self, client, monkeypatch):
        audit = MagicMock()
        audit.enabled = True
        monkeypatch.setattr(state, "audit", audit)

        client.request("TRACE", "/x", headers=browser("20.0.0.9"))
        client.get("/ok", headers=browser("20.0.0.10"))

        assert audit.log.call_count == 1
        identity, descriptor, verdict = audit.log.call_args[0]
        assert identity == "20.0.0.9"
        assert descriptor.method == "TRACE"
        assert not verdict.allow


# =============================================================================
# Malformed Body Tests
# =============================================================================

class TestDeepJson:
    """Bodies nested past the parser's recursion limit."""

    DEEP_BODY = "[" * 100_000 + "]" * 100_000

    def post_deep(self, client, ip):
        headers = browser(ip, **{"content-type": "application/json"})
        return client.post("/api/messages", content=self.DEEP_BODY, headers=headers)

    def test_deep_body_is_400(self, client):
        response = self.post_deep(client, "20.2.0.1")
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid request"}

    def test_deep_body_does_not_bypass_ban(self, client):
        attack = browser("20.2.0.2", **{"user-agent": "sqlmap/1.7.2#stable (https://sqlmap.org)"})
        assert client.get("/", headers=attack).status_code == 403
        assert client.get("/", headers=browser("20.2.0.2")).status_code == 403

        assert self.post_deep(client, "20.2.0.2").status_code == 403


# =============================================================================
# Operator Endpoint Tests
# =============================================================================

class TestOperatorEndpoints:
    """Token-guarded status and unban."""

    def test_status_requires_token(self, client):
        response = client.get("/security/status", headers=browser("20.1.0.1"))
        assert response.status_code == 403

    def test_status_with_token(self, client):
        headers = browser("20.1.0.2", **{"x-admin-token": ADMIN_TOKEN})
        response = client.get("/security/status", params={"limit": 5}, headers=headers)
        assert response.status_code == 200

        data = response.json()
        assert "threat_level" in data["stats"]
        assert len(data["events"]) <= 5

    def test_operator_api_disabled_without_token(self, client, monkeypatch):
        monkeypatch.setattr(state, "admin_token", None)
        headers = browser("20.1.0.3", **{"x-admin-token": ADMIN_TOKEN})
        assert client.get("/security/status", headers=headers).status_code == 404

    def test_unban(self, client):
        banned_ip = "20.1.0.4"
        attack = browser(banned_ip, **{"user-agent": "nikto/2.5"})
        assert client.get("/", headers=attack).status_code == 403

        response = client.post(
            "/security/unban",
            json={"identity": banned_ip},
            headers=browser("20.1.0.5", **{"x-admin-token": ADMIN_TOKEN}),
        )
        assert response.status_code == 200
        assert response.json() == {"identity": banned_ip, "unbanned": True}

        assert client.get("/", headers=browser(banned_ip)).status_code == 404

    def test_unban_validates_body(self, client):
        response = client.post(
            "/security/unban",
            json={"identity": ""},
            headers=browser("20.1.0.6", **{"x-admin-token": ADMIN_TOKEN}),
        )
        assert response.status_code == 422


def test_build_config_from_env(monkeypatch):
    monkeypatch.setenv("GATEKEEPER_ALLOWLIST", "10.0.0.1, 10.0.0.2")
    monkeypatch.setenv("GATEKEEPER_BLOCK_THRESHOLD", "25")
    config = main.build_config_from_env()
    assert config.allowlist == frozenset({"10.0.0.1", "10.0.0.2"})
    assert config.aggregator.block_threshold == 25.0
