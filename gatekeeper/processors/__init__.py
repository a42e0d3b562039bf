"""
Gatekeeper Processors

Detection building blocks. Each module derives facts about a request;
none of them make the final decision.
"""

from gatekeeper.processors.behavior import BehavioralProfiler
from gatekeeper.processors.geo import GeoAnalyzer, ProxyDetector
from gatekeeper.processors.identity import extract_identity
from gatekeeper.processors.payload import EncodingDetector, FuzzDetector, PayloadScanner
from gatekeeper.processors.request_checks import HoneyPot, RequestShapeValidator

__all__ = [
    "BehavioralProfiler",
    "EncodingDetector",
    "FuzzDetector",
    "GeoAnalyzer",
    "HoneyPot",
    "PayloadScanner",
    "ProxyDetector",
    "RequestShapeValidator",
    "extract_identity",
]
