"""
Gatekeeper Enforcer API

FastAPI application that runs every inbound request through the
DefensePipeline and maps the Verdict to an HTTP response:
- RATE_LIMITED → 429 + Retry-After
- BANNED / THREAT → 403 (+ Retry-After when banned)
- INVALID_INPUT / INVALID_REQUEST → 400
- DECOY → delayed 404
- CHALLENGE → short random delay, then pass

Response bodies are generic; reasons go to logs and the audit sink only.

Operator endpoints (require X-Admin-Token):
- GET /security/status
- POST /security/unban
"""

from contextlib import asynccontextmanager
import asyncio
import json
import logging
import math
import os
import random
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from gatekeeper.config import AggregatorConfig, PipelineConfig, ScheduleConfig
from gatekeeper.orchestrator import DefensePipeline
from gatekeeper.processors.geo import GeoAnalyzer
from gatekeeper.processors.identity import extract_identity
from gatekeeper.schemas.inputs import ConnectionInfo, RequestDescriptor
from gatekeeper.schemas.outputs import BlockKind, Decision, Verdict
from persistence.audit_logger import AuditLogger


load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


# =============================================================================
# Settings
# =============================================================================

# Paths served without running the pipeline
EXEMPT_PATHS = frozenset({"/health"})


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return float(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def build_config_from_env() -> PipelineConfig:
    """Map GATEKEEPER_* environment variables onto a PipelineConfig."""
    return PipelineConfig(
        allowlist=frozenset(_env_list("GATEKEEPER_ALLOWLIST")),
        aggregator=AggregatorConfig(
            block_threshold=_env_float("GATEKEEPER_BLOCK_THRESHOLD", 10.0),
        ),
        schedule=ScheduleConfig(
            sweep_interval_seconds=_env_float("GATEKEEPER_SWEEP_INTERVAL", 300.0),
            tick_interval_seconds=_env_float("GATEKEEPER_TICK_INTERVAL", 60.0),
        ),
    )


# =============================================================================
# Application State
# =============================================================================

class AppState:
    """Application state container."""
    pipeline: Optional[DefensePipeline] = None
    audit: Optional[AuditLogger] = None
    admin_token: Optional[str] = None
    decoy_delay_seconds: float = 3.0
    challenge_delay_ms: tuple = (100, 500)


state = AppState()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting Gatekeeper enforcer...")
    config = build_config_from_env()
    geo = GeoAnalyzer.from_database(
        os.getenv("GEOIP_DB_PATH"),
        max_identities=config.profiler.max_profiles,
        ttl_ms=config.profiler.profile_ttl_ms,
    )
    state.pipeline = DefensePipeline(config=config, geo=geo)
    state.audit = AuditLogger()
    state.admin_token = os.getenv("GATEKEEPER_ADMIN_TOKEN") or None
    state.decoy_delay_seconds = _env_float("GATEKEEPER_DECOY_DELAY_SECONDS", 3.0)

    if _env_bool("GATEKEEPER_BACKGROUND_TASKS", True):
        state.pipeline.start_background_tasks()
    logger.info("Gatekeeper enforcer ready")

    yield

    # Shutdown
    logger.info("Shutting down Gatekeeper enforcer...")
    state.pipeline.shutdown()


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Gatekeeper",
    description="Request-defense enforcer for realtime chat services",
    version="1.0.0",
    lifespan=lifespan,
)


# =============================================================================
# Request Translation
# =============================================================================

def _connection_info(request: Request) -> ConnectionInfo:
    client = request.client
    return ConnectionInfo(
        remote_address=client.host if client else None,
        remote_port=client.port if client else None,
    )


async def build_descriptor(request: Request) -> RequestDescriptor:
    """Snapshot a Starlette request. Malformed pieces become neutral values."""
    raw_body = await request.body()

    body: Any = None
    body_too_deep = False
    content_type = request.headers.get("content-type", "")
    if raw_body and "json" in content_type:
        try:
            body = json.loads(raw_body)
        except RecursionError:
            body_too_deep = True
        except ValueError:
            body = None

    content_length: Optional[int] = None
    declared = request.headers.get("content-length")
    if declared and declared.isdigit():
        content_length = int(declared)
    elif raw_body:
        content_length = len(raw_body)

    return RequestDescriptor(
        method=request.method,
        path=request.url.path,
        headers=dict(request.headers),
        query=dict(request.query_params),
        body=body,
        body_too_deep=body_too_deep,
        params=dict(request.path_params),
        connection_info=_connection_info(request),
        content_length=content_length,
    )


def _error(status_code: int, message: str, retry_after: Optional[int] = None) -> JSONResponse:
    headers = {"Retry-After": str(retry_after)} if retry_after else None
    return JSONResponse(status_code=status_code, content={"error": message}, headers=headers)


async def verdict_response(verdict: Verdict) -> Optional[JSONResponse]:
    """Map a blocking Verdict to a response; None means pass through."""
    if verdict.allow:
        return None

    kind = verdict.block_kind
    if kind is BlockKind.RATE_LIMITED:
        return _error(status.HTTP_429_TOO_MANY_REQUESTS, "Too many requests", verdict.retry_after_seconds)
    if kind in (BlockKind.INVALID_INPUT, BlockKind.INVALID_REQUEST):
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid request")
    if kind is BlockKind.DECOY:
        await asyncio.sleep(state.decoy_delay_seconds)
        return _error(status.HTTP_404_NOT_FOUND, "Not found")
    return _error(status.HTTP_403_FORBIDDEN, "Access denied", verdict.retry_after_seconds)


def ban_response(request: Request) -> Optional[JSONResponse]:
    """403 for a banned identity, from headers and peer address alone."""
    snapshot = RequestDescriptor(
        headers=dict(request.headers),
        connection_info=_connection_info(request),
    )
    remaining_ms = state.pipeline.state.bans.remaining_ms(extract_identity(snapshot))
    if remaining_ms <= 0:
        return None
    return _error(status.HTTP_403_FORBIDDEN, "Access denied", math.ceil(remaining_ms / 1000.0))


# =============================================================================
# Enforcement Middleware
# =============================================================================

@app.middleware("http")
async def enforce(request: Request, call_next):
    if state.pipeline is None or request.url.path in EXEMPT_PATHS:
        return await call_next(request)

    try:
        descriptor = await build_descriptor(request)
        verdict = state.pipeline.evaluate(descriptor)
    except Exception:
        # Fail open, except for identities already banned
        logger.exception("Defense pipeline error, passing request")
        banned = ban_response(request)
        if banned is not None:
            return banned
        return await call_next(request)

    blocked = await verdict_response(verdict)
    if blocked is not None:
        if state.audit is not None and state.audit.enabled:
            await run_in_threadpool(state.audit.log, extract_identity(descriptor), descriptor, verdict)
        return blocked

    if verdict.decision is Decision.CHALLENGE:
        low, high = state.challenge_delay_ms
        await asyncio.sleep(random.randint(low, high) / 1000.0)

    response = await call_next(request)
    if verdict.rate_limit_remaining is not None:
        response.headers["X-RateLimit-Remaining"] = str(verdict.rate_limit_remaining)
    return response


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# =============================================================================
# Operator Endpoints
# =============================================================================

class UnbanRequest(BaseModel):
    identity: str = Field(..., min_length=1, description="Client identity to release")


def _require_admin(token: Optional[str]) -> None:
    if state.admin_token is None:
        # Operator API disabled without a configured token
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    if token != state.admin_token:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")


@app.get("/security/status")
async def security_status(
    limit: int = 50,
    x_admin_token: Optional[str] = Header(None)
) -> Dict[str, Any]:
    """Pipeline stats and the most recent security events."""
    _require_admin(x_admin_token)
    return {
        "stats": state.pipeline.get_stats(),
        "events": [e.to_dict() for e in state.pipeline.event_log.events(limit=limit)],
    }


@app.post("/security/unban")
async def security_unban(
    payload: UnbanRequest,
    x_admin_token: Optional[str] = Header(None)
) -> Dict[str, Any]:
    """Lift a ban and reset the identity's accumulated threat score."""
    _require_admin(x_admin_token)
    lifted = state.pipeline.unban(payload.identity)
    return {"identity": payload.identity, "unbanned": lifted}


# =============================================================================
# Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
