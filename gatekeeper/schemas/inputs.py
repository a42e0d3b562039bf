"""
Gatekeeper Input Schemas

Pydantic V2 models describing what the enclosing HTTP layer hands to the
defense pipeline. The pipeline never parses raw HTTP; building a
RequestDescriptor is the caller's job.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Connection Info
# =============================================================================

class ConnectionInfo(BaseModel):
    """Transport-level peer information."""
    remote_address: Optional[str] = Field(None, description="Peer address of the socket")
    remote_port: Optional[int] = Field(None, description="Peer port of the socket")


# =============================================================================
# Request Descriptor (Root Model)
# =============================================================================

class RequestDescriptor(BaseModel):
    """
    Minimal snapshot of one inbound request.

    Header names are normalized to lower case so lookups match regardless
    of how the caller spelled them.
    """
    method: str = Field("GET", description="HTTP method")
    path: str = Field("/", description="Request path without query string")
    headers: Dict[str, str] = Field(default_factory=dict, description="Request headers")
    query: Dict[str, Any] = Field(default_factory=dict, description="Parsed query parameters")
    body: Any = Field(None, description="Parsed request body (JSON object, array or scalar)")
    body_too_deep: bool = Field(
        False,
        description="Body was nested too deeply to parse; `body` is then None"
    )
    params: Dict[str, Any] = Field(default_factory=dict, description="Route parameters")
    connection_info: ConnectionInfo = Field(
        default_factory=ConnectionInfo,
        description="Transport peer info"
    )
    action_class: Optional[str] = Field(
        None,
        description="Rate-limit action class (api, login, register, ...); derived from path when absent"
    )
    content_length: Optional[int] = Field(
        None,
        ge=0,
        description="Declared body size in bytes"
    )

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return value.upper()

    @field_validator("headers", mode="before")
    @classmethod
    def _lower_headers(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k).lower(): str(v) for k, v in value.items() if v is not None}
        return value

    def header(self, name: str) -> str:
        """Return a header value, or an empty string when absent."""
        return self.headers.get(name.lower(), "")

    @property
    def user_agent(self) -> str:
        return self.header("user-agent")
