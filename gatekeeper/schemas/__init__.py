"""
Gatekeeper Schemas

Public exports for input and output Pydantic models.
"""

# Input schemas
from gatekeeper.schemas.inputs import (
    ConnectionInfo,
    RequestDescriptor,
)

# Output schemas
from gatekeeper.schemas.outputs import (
    BlockKind,
    Decision,
    Verdict,
)

__all__ = [
    # Input
    "ConnectionInfo",
    "RequestDescriptor",
    # Output
    "BlockKind",
    "Decision",
    "Verdict",
]
