"""
Gatekeeper

In-process request-defense pipeline: bot and threat detection, rate
limiting and input inspection, merged into one verdict per request.
"""

from gatekeeper.config import PipelineConfig
from gatekeeper.orchestrator import DefensePipeline
from gatekeeper.schemas import RequestDescriptor, Verdict

__all__ = [
    "DefensePipeline",
    "PipelineConfig",
    "RequestDescriptor",
    "Verdict",
]
