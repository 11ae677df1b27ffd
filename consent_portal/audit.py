# consent_portal/audit.py
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from consent_portal import models
from consent_portal.app_logger import get_logger

log = get_logger("audit")

CONSENT_ENTITY = "core.person_consents"
REQUEST_ENTITY = "core.person_consent_requests"
GRANT_ENTITY = "core.person_access_grants"
CONTACT_ENTITY = "core.person_consent_contacts"


def build_entity_ref(table: str, id: Any, schema: str = "core") -> str:
    return f"{schema}.{table}:{id}"


def log_audit_event(db: Session, actor_profile_id: Optional[str], action: str, entity_type: str,
                    entity_ref: str, meta: Optional[Dict[str, Any]] = None) -> models.AuditEvent:
    """Append an audit row in the caller's transaction."""
    event = models.AuditEvent(
        actor_profile_id=actor_profile_id,
        action=action,
        entity_type=entity_type,
        entity_ref=entity_ref,
        meta=meta or {},
    )
    db.add(event)
    log.debug("audit %s %s by %s", action, entity_ref, actor_profile_id)
    return event
