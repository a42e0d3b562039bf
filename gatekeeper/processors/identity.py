"""
Gatekeeper Identity Extractor

Derives a best-effort correlation key for a request from proxy-aware
headers. The key is NOT a verified principal: every header consulted here
is client-controlled and trivially spoofable. Spoofed values still group
an attacker's requests together, which the behavioral checks rely on, so
no syntax validation or proxy allowlist is applied.
"""

import hashlib

from gatekeeper.schemas.inputs import RequestDescriptor


UNKNOWN_IDENTITY = "unknown"


def extract_identity(request: RequestDescriptor) -> str:
    """
    Resolve the client identity.

    Precedence (first non-empty wins):
        1. First entry of x-forwarded-for (trimmed)
        2. x-real-ip
        3. Transport peer address
        4. "unknown"
    """
    forwarded = request.header("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.header("x-real-ip").strip()
    if real_ip:
        return real_ip

    remote = request.connection_info.remote_address
    if remote:
        return remote

    return UNKNOWN_IDENTITY


def hash_identity(identity: str) -> str:
    """Short, non-reversible tag for logs."""
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()[:16]
