import logging
import uuid
from datetime import datetime
from typing import Any

from matchengine.domain import MatchingAuditEntry

logger = logging.getLogger(__name__)


def log_matching_event(
    tx,
    *,
    run_id: str,
    event_id: str,
    actor_id: str | None,
    action: str,
    before_state: dict[str, Any] | None = None,
    after_state: dict[str, Any] | None = None,
    at: datetime,
) -> MatchingAuditEntry:
    entry = MatchingAuditEntry(
        id=str(uuid.uuid4()),
        run_id=run_id,
        event_id=event_id,
        actor_id=actor_id,
        action=action,
        before_state=before_state or {},
        after_state=after_state or {},
        timestamp=at,
    )
    tx.append_audit(entry)
    logger.info("[AUDIT] event=%s run=%s action=%s actor=%s", event_id, run_id, action, actor_id)
    return entry
