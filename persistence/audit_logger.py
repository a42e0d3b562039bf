"""
Gatekeeper Audit Logger

Fire-and-forget writer that inserts one structured entry into the
Supabase `security_audit` table for every blocked request.

Schema:
    security_audit (
        event_id TEXT PRIMARY KEY,
        payload  JSONB,
        created_at TIMESTAMPTZ DEFAULT now()
    )

Identities are stored hashed, the same way the application logs show them.
"""

from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from supabase import create_client, Client

from gatekeeper.processors.identity import hash_identity
from gatekeeper.schemas.inputs import RequestDescriptor
from gatekeeper.schemas.outputs import Verdict

logger = logging.getLogger(__name__)


MAX_FIELD_LENGTH = 256


class AuditLogger:
    """
    Builds and inserts audit entries into Supabase.

    All writes are best-effort: errors are logged but never raised so the
    enforcer's response is never held up by the audit sink.
    """

    TABLE = "security_audit"

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        client: Optional[Client] = None,
        environment: Optional[str] = None
    ) -> None:
        self.environment = environment or os.getenv("GATEKEEPER_ENV", "production")

        if client is not None:
            self._client: Optional[Client] = client
            return

        url = url or os.getenv("SUPABASE_URL")
        key = key or os.getenv("SUPABASE_KEY")
        if not url or not key:
            logger.warning("Supabase credentials missing, audit logging disabled")
            self._client = None
            return
        self._client = create_client(url, key)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def log(self, identity: str, request: RequestDescriptor, verdict: Verdict) -> Optional[str]:
        """
        Insert an audit entry.

        Returns:
            The event id, or None when disabled or the insert failed.
        """
        if self._client is None:
            return None

        try:
            entry = self.build_entry(identity, request, verdict)
            self._client.table(self.TABLE).insert({
                "event_id": entry["event_id"],
                "payload": entry,
            }).execute()
            logger.debug(f"Audit entry inserted: {entry['event_id']}")
            return entry["event_id"]
        except Exception as e:
            logger.error(f"Audit insert failed: {e}")
            return None

    # ------------------------------------------------------------------
    # Payload Builder
    # ------------------------------------------------------------------

    def build_entry(
        self,
        identity: str,
        request: RequestDescriptor,
        verdict: Verdict
    ) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)

        return {
            "event_id": f"evt_{uuid.uuid4()}",
            "timestamp": now.isoformat(),
            "environment": self.environment,

            "client": {
                "identity_hash": hash_identity(identity),
                "user_agent": request.user_agent[:MAX_FIELD_LENGTH],
                "country": (
                    request.header("x-vercel-ip-country")
                    or request.header("cf-ipcountry")
                    or "unknown"
                ),
            },

            "request": {
                "method": request.method,
                "path": request.path[:MAX_FIELD_LENGTH],
                "action_class": request.action_class,
                "content_length": request.content_length,
            },

            "verdict": {
                "decision": verdict.decision.value,
                "block_kind": verdict.block_kind.value,
                "reasons": list(verdict.reasons),
                "risk_score": verdict.risk_score,
                "banned": verdict.banned,
                "retry_after_seconds": verdict.retry_after_seconds,
            },
        }
