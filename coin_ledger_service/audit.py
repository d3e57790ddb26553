import logging
from typing import Any, Dict, Optional
from sqlalchemy.orm import Session

from common.kafka import TOPIC_LEDGER_EVENTS
from common.schemas import LedgerEvent
from common.tracing import get_current_trace_id
from coin_ledger_service.models import AdminAction, Outbox

logger = logging.getLogger(__name__)

def enqueue_event(db: Session, event: LedgerEvent) -> Outbox:
    """Stage an event in the outbox; it ships only if the caller commits."""
    if event.trace_id is None:
        event.trace_id = get_current_trace_id()
    row = Outbox(topic=TOPIC_LEDGER_EVENTS, payload=event.model_dump_json())
    db.add(row)
    return row

def record_admin_action(db: Session, admin_id: str, action: str, target_type: str,
                        target_id: Optional[str], reason: str,
                        details: Optional[Dict[str, Any]] = None) -> AdminAction:
    entry = AdminAction(
        admin_id=admin_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        reason=reason,
        details=details or {},
    )
    db.add(entry)
    logger.info(f"📝 Admin {admin_id} {action} on {target_type} {target_id}: {reason}")
    return entry
