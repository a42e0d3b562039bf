"""
Gatekeeper Test Suite - Shared Pytest Fixtures

This conftest.py provides fixtures for all test categories including:
- RequestDescriptor factories with browser-like and scripted headers
- A deterministic millisecond clock
- Pipeline and component instances
- GeoIP reader mocking

Usage:
    pytest tests/ -v -s
"""

import pytest
from typing import Any, Dict, Optional
from unittest.mock import MagicMock

from gatekeeper.config import PipelineConfig
from gatekeeper.models.threat import ThreatState
from gatekeeper.orchestrator import DefensePipeline
from gatekeeper.schemas.inputs import ConnectionInfo, RequestDescriptor


# =============================================================================
# Header Sets
# =============================================================================

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

BROWSER_HEADERS: Dict[str, str] = {
    "host": "chat.example.com",
    "user-agent": CHROME_UA,
    "accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "accept-language": "en-US,en;q=0.9",
    "accept-encoding": "gzip, deflate, br",
}

# Fixed epoch for deterministic clocks (ms)
T0 = 1_700_000_000_000.0


# =============================================================================
# Request Factories
# =============================================================================

@pytest.fixture
def browser_headers() -> Dict[str, str]:
    """Fresh copy of a full browser header set."""
    return dict(BROWSER_HEADERS)


@pytest.fixture
def make_request():
    """
    Factory for RequestDescriptors.

    Usage:
        req = make_request(path="/api/messages", ip="1.2.3.4")
    """
    def _make(
        path: str = "/",
        method: str = "GET",
        ip: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        browser: bool = True,
        remote_address: Optional[str] = "10.0.0.1",
        remote_port: Optional[int] = 52144,
        **kwargs: Any
    ) -> RequestDescriptor:
        merged: Dict[str, str] = dict(BROWSER_HEADERS) if browser else {}
        if ip is not None:
            merged["x-forwarded-for"] = ip
        merged.update(headers or {})
        return RequestDescriptor(
            method=method,
            path=path,
            headers=merged,
            connection_info=ConnectionInfo(
                remote_address=remote_address,
                remote_port=remote_port,
            ),
            **kwargs,
        )

    return _make


# =============================================================================
# Clock
# =============================================================================

@pytest.fixture
def t0() -> float:
    """Fixed start time in milliseconds."""
    return T0


# =============================================================================
# Pipeline Fixtures
# =============================================================================

@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """Default configuration."""
    return PipelineConfig()


@pytest.fixture
def threat_state() -> ThreatState:
    """Fresh ThreatState at level 0."""
    return ThreatState()


@pytest.fixture
def pipeline(pipeline_config, threat_state):
    """DefensePipeline with default classifiers and no background tasks."""
    p = DefensePipeline(config=pipeline_config, threat_state=threat_state)
    yield p
    p.shutdown()


# =============================================================================
# GeoIP Mocking
# =============================================================================

@pytest.fixture
def mock_geoip_reader():
    """
    Factory for a MagicMock GeoIP2 reader.

    Usage:
        reader = mock_geoip_reader({"8.8.8.8": "US"})
    """
    def _make(countries: Dict[str, str]) -> MagicMock:
        def city(ip: str):
            if ip not in countries:
                raise Exception(f"IP {ip} not in mock database")
            response = MagicMock()
            response.country.iso_code = countries[ip]
            return response

        reader = MagicMock()
        reader.city.side_effect = city
        return reader

    return _make
