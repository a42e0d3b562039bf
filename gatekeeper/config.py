"""
Gatekeeper Configuration

Constructor-time configuration for the defense pipeline. All values are
plain numbers/durations; nothing here reads the environment (main.py
resolves env vars and builds a PipelineConfig).

Durations are milliseconds unless the field name says otherwise.
"""

from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator


# =============================================================================
# Exceptions
# =============================================================================

class ConfigurationError(ValueError):
    """Raised when the pipeline cannot start with the given configuration."""
    pass


# =============================================================================
# Rate Limits
# =============================================================================

class RateLimitRule(BaseModel):
    """Fixed-window limit for one action class."""
    limit: int = Field(..., gt=0, description="Requests allowed per window")
    window_ms: float = Field(..., gt=0, description="Window length in milliseconds")
    escalate_to_ban: bool = Field(
        False,
        description="Exceeding this limit bans the identity"
    )


class ActionRoute(BaseModel):
    """Maps a path prefix (segment-aware) to an action class."""
    prefix: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    methods: Optional[FrozenSet[str]] = Field(
        None,
        description="Restrict the route to these methods; None matches all"
    )

    @field_validator("methods", mode="before")
    @classmethod
    def _upper_methods(cls, value):
        if value is None:
            return value
        return frozenset(m.upper() for m in value)

    def matches(self, method: str, path: str) -> bool:
        if self.methods is not None and method not in self.methods:
            return False
        prefix = self.prefix.rstrip("/") or "/"
        return path == prefix or path.startswith(prefix + "/") or prefix == "/"


DEFAULT_RATE_LIMITS: Dict[str, RateLimitRule] = {
    "api": RateLimitRule(limit=100, window_ms=15 * 60 * 1000),
    "login": RateLimitRule(limit=5, window_ms=15 * 60 * 1000, escalate_to_ban=True),
    "register": RateLimitRule(limit=3, window_ms=60 * 60 * 1000, escalate_to_ban=True),
    "message": RateLimitRule(limit=30, window_ms=60 * 1000),
    "upload": RateLimitRule(limit=20, window_ms=15 * 60 * 1000),
    "admin": RateLimitRule(limit=50, window_ms=15 * 60 * 1000),
}

# First match wins, so specific prefixes come before general ones
DEFAULT_ACTION_ROUTES: List[ActionRoute] = [
    ActionRoute(prefix="/api/admin/login", action="login"),
    ActionRoute(prefix="/api/login", action="login"),
    ActionRoute(prefix="/api/register", action="register"),
    ActionRoute(prefix="/api/pusher/send-message", action="message", methods={"POST"}),
    ActionRoute(prefix="/api/upload", action="upload"),
    ActionRoute(prefix="/api/admin", action="admin"),
    ActionRoute(prefix="/api", action="api"),
]


# =============================================================================
# Component Configs
# =============================================================================

class BanPolicy(BaseModel):
    """Ban durations, independent of any rate window."""
    default_ms: float = Field(60 * 60 * 1000, gt=0, description="Ban after rate-limit escalation")
    escalated_ms: float = Field(
        24 * 60 * 60 * 1000,
        gt=0,
        description="Ban after a confirmed attack-tool signature"
    )


class ProfilerConfig(BaseModel):
    """Behavioral profiler thresholds."""
    capacity: int = Field(100, gt=0, description="Request records kept per identity")
    recent_window_ms: float = Field(60 * 1000, gt=0)
    scan_min_distinct_paths: int = Field(20, gt=0)
    scan_min_requests: int = Field(30, gt=0, description="Recent requests must exceed this")
    max_methods: int = Field(4, gt=0, description="Distinct methods must exceed this")
    max_auth_requests: int = Field(5, ge=0, description="Recent auth requests must exceed this")
    auth_path_markers: Tuple[str, ...] = ("login", "register")
    min_timing_samples: int = Field(5, ge=2)
    min_mean_interval_ms: float = Field(100.0, gt=0)
    suspicious_threshold: int = Field(2, gt=0)
    profile_ttl_ms: float = Field(60 * 60 * 1000, gt=0, description="Inactivity before eviction")
    max_profiles: int = Field(50_000, gt=0)


class ScannerConfig(BaseModel):
    """Payload scanner cache and blocking settings."""
    cache_ttl_ms: float = Field(5 * 60 * 1000, gt=0)
    cache_max_entries: int = Field(10_000, gt=0)
    block_confidence: float = Field(0.6, ge=0.0, le=1.0, description="Hard block above this")


class BandwidthConfig(BaseModel):
    """Token-bucket traffic shaping on declared body size."""
    capacity_bytes: float = Field(1024 * 1024, gt=0)
    refill_bytes_per_second: float = Field(1024 * 1024, gt=0)
    max_body_bytes: int = Field(50 * 1024 * 1024, gt=0)


DEFAULT_WEIGHTS: Dict[str, float] = {
    "malicious_tool": 12.0,
    "honeypot": 10.0,
    "credential_probing": 8.0,
    "scan_breadth": 7.0,
    "automation_tool": 6.0,
    "payload_injection": 6.0,
    "path_traversal": 6.0,
    "rate_limited": 5.0,
    "volume_exceeded": 5.0,
    "timing_regularity": 5.0,
    "suspicious_encoding": 4.0,
    "fuzzing": 4.0,
    "geo_anomaly": 4.0,
    "bot_user_agent": 3.0,
    "header_anomaly": 3.0,
    "proxy_indicators": 3.0,
    "invalid_request": 3.0,
    "bandwidth_exceeded": 3.0,
    "method_diversity": 2.0,
    "weak_fingerprint": 2.0,
    "payload_suspect": 2.0,
}


class AggregatorConfig(BaseModel):
    """Threat aggregator scoring."""
    block_threshold: float = Field(10.0, gt=0, description="Cumulative score must exceed this")
    weights: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    default_weight: float = Field(1.0, ge=0)
    decay_factor: float = Field(
        0.5,
        gt=0.0,
        lt=1.0,
        description="Multiplier applied to cumulative scores on every sweep"
    )

    @field_validator("weights")
    @classmethod
    def _non_negative_weights(cls, value: Dict[str, float]) -> Dict[str, float]:
        for name, weight in value.items():
            if weight < 0:
                raise ValueError(f"weight for {name!r} must be >= 0")
        return value


class ScheduleConfig(BaseModel):
    """Background task intervals (seconds)."""
    sweep_interval_seconds: float = Field(300.0, gt=0)
    tick_interval_seconds: float = Field(60.0, gt=0)


# =============================================================================
# Pipeline Config (Root Model)
# =============================================================================

DEFAULT_HONEYPOT_PATHS: Tuple[str, ...] = (
    "/.env",
    "/config",
    "/backup",
    "/.git",
    "/phpmyadmin",
    "/wp-admin",
    "/administrator",
    "/.aws",
    "/api/config",
    "/api/debug",
    "/api/test",
    "/.htaccess",
    "/web.config",
)


class PipelineConfig(BaseModel):
    """Everything the pipeline needs at construction time."""
    rate_limits: Dict[str, RateLimitRule] = Field(
        default_factory=lambda: dict(DEFAULT_RATE_LIMITS)
    )
    action_routes: List[ActionRoute] = Field(
        default_factory=lambda: list(DEFAULT_ACTION_ROUTES)
    )
    bans: BanPolicy = Field(default_factory=BanPolicy)
    profiler: ProfilerConfig = Field(default_factory=ProfilerConfig)
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    bandwidth: BandwidthConfig = Field(default_factory=BandwidthConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)

    allowlist: FrozenSet[str] = Field(default_factory=frozenset)
    honeypot_paths: Tuple[str, ...] = DEFAULT_HONEYPOT_PATHS
    allowed_methods: FrozenSet[str] = Field(
        default_factory=lambda: frozenset({"GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"})
    )
    max_path_length: int = Field(2048, gt=0)
    max_body_depth: int = Field(10, gt=0)
    max_event_log_entries: int = Field(1000, gt=0)

    @field_validator("allowed_methods", mode="before")
    @classmethod
    def _upper_allowed(cls, value):
        return frozenset(m.upper() for m in value)

    @field_validator("honeypot_paths", mode="before")
    @classmethod
    def _lower_traps(cls, value):
        return tuple(p.lower() for p in value)

    @model_validator(mode="after")
    def _routes_have_rules(self) -> "PipelineConfig":
        missing = {r.action for r in self.action_routes} - set(self.rate_limits)
        if missing:
            raise ValueError(f"action routes reference unknown action classes: {sorted(missing)}")
        return self

    def resolve_action(self, method: str, path: str) -> Optional[str]:
        """Map a request to its action class via the route table."""
        for route in self.action_routes:
            if route.matches(method, path):
                return route.action
        return None
