"""
Gatekeeper Output Schemas

This module defines the Pydantic V2 models for the pipeline's sole output,
the Verdict. Reasons are for operators only and must never be echoed to
the client.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Enums
# =============================================================================

class Decision(str, Enum):
    """Pipeline decision."""
    ALLOW = "ALLOW"
    CHALLENGE = "CHALLENGE"
    BLOCK = "BLOCK"


class BlockKind(str, Enum):
    """Why a request was blocked, used by the enforcer to pick a response."""
    NONE = "NONE"
    BANNED = "BANNED"
    RATE_LIMITED = "RATE_LIMITED"
    THREAT = "THREAT"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_REQUEST = "INVALID_REQUEST"
    DECOY = "DECOY"


# =============================================================================
# Verdict (Root Model)
# =============================================================================

class Verdict(BaseModel):
    """
    Allow/block decision for one request.

    - allow: False means the enforcer must not pass the request on
    - decision: ALLOW, CHALLENGE (allowed but suspicious), or BLOCK
    - block_kind: response family for blocked requests
    """
    allow: bool = Field(..., description="Whether the request may proceed")
    decision: Decision = Field(..., description="ALLOW, CHALLENGE or BLOCK")
    block_kind: BlockKind = Field(BlockKind.NONE, description="Category of the block")
    reasons: List[str] = Field(
        default_factory=list,
        description="Triggered signals (operator-only)"
    )
    retry_after_seconds: Optional[int] = Field(
        None,
        ge=0,
        description="Seconds until the client may retry"
    )
    banned: bool = Field(False, description="Identity is under a temporary ban")
    risk_score: float = Field(0.0, ge=0.0, description="Per-request weighted threat score")
    rate_limit_remaining: Optional[int] = Field(
        None,
        ge=0,
        description="Remaining requests in the action-class window"
    )
