"""
PulseCheck - Audit Logging
Traceability for every ledger write and reminder dispatch.
The spreadsheet has no room for an audit table, so events go to the
pulsecheck.audit logger as single JSON lines.
"""
import json
import uuid
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger("pulsecheck.audit")


def gen_request_id() -> str:
    """Generate a unique request ID for tracing across a request or sweep."""
    return f"req-{uuid.uuid4().hex[:12]}"


def audit(
    event: str,
    survey: Optional[str] = None,
    user: Optional[str] = None,
    actor: str = "system",
    request_id: Optional[str] = None,
    payload: Optional[dict] = None,
) -> dict:
    """
    Write an audit log entry.

    Events follow this convention:
      survey_created, survey_orphaned, recipients_saved, response_recorded,
      reminder_sent, reminder_failed, reminder_window_closed,
      group_created, group_deleted
    """
    entry = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id or gen_request_id(),
        "event": event,
        "survey": survey,
        "user": user,
        "actor": actor,
        "payload": payload or {},
    }
    logger.info(json.dumps(entry, default=str))
    return entry
