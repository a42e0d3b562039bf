"""
Gatekeeper Persistence Layer

Public exports for the Supabase audit sink.
"""

from .audit_logger import AuditLogger

__all__ = [
    "AuditLogger",
]
