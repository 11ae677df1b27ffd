# consent_portal/consent_requests.py
"""
Partner requests for visibility into a client's record.

pending -> approved | denied, and nothing after that. A partner who wants
access again files a new request.
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from consent_portal import audit, consents, models
from consent_portal.access import PortalAccess
from consent_portal.app_logger import get_logger
from consent_portal.errors import AlreadyResolvedError, NotFoundError
from consent_portal.utils import utcnow

log = get_logger("consent_requests")

REQUEST_STATUSES = (models.REQUEST_PENDING, models.REQUEST_APPROVED, models.REQUEST_DENIED)


@dataclass
class ApprovalResult:
    request: models.ConsentRequest
    save: consents.SaveResult


def get_request(db: Session, request_id: str) -> models.ConsentRequest:
    request = db.get(models.ConsentRequest, request_id)
    if request is None:
        raise NotFoundError("Consent request not found.")
    return request


def ensure_pending(request: models.ConsentRequest) -> None:
    if request.status != models.REQUEST_PENDING:
        raise AlreadyResolvedError()


def list_requests(db: Session, status: Optional[str] = models.REQUEST_PENDING,
                  person_id: Optional[int] = None) -> List[models.ConsentRequest]:
    query = db.query(models.ConsentRequest)
    if status:
        query = query.filter(models.ConsentRequest.status == status)
    if person_id:
        query = query.filter(models.ConsentRequest.person_id == person_id)
    return query.order_by(models.ConsentRequest.requested_at.desc()).all()


def find_pending_request(db: Session, person_id: int, org_id: int) -> Optional[models.ConsentRequest]:
    return (
        db.query(models.ConsentRequest)
        .filter(models.ConsentRequest.person_id == person_id)
        .filter(models.ConsentRequest.requesting_org_id == org_id)
        .filter(models.ConsentRequest.status == models.REQUEST_PENDING)
        .order_by(models.ConsentRequest.requested_at.desc())
        .first()
    )


def request_consent(db: Session, access: PortalAccess, *, person_id: int, org_id: int, purpose: str,
                    note: Optional[str] = None,
                    requested_scopes: Optional[Iterable[str]] = None) -> Tuple[models.ConsentRequest, bool]:
    """Returns (request, created). An open request from the same org is reused."""
    existing = find_pending_request(db, person_id, org_id)
    if existing is not None:
        return existing, False

    request = models.ConsentRequest(
        person_id=person_id,
        requesting_org_id=org_id,
        purpose=purpose,
        note=note,
        requested_scopes=list(requested_scopes or ["view", "update_contact"]),
        status=models.REQUEST_PENDING,
        requested_at=utcnow(),
        requested_by=access.profile_id,
    )
    db.add(request)
    db.flush()
    audit.log_audit_event(
        db,
        access.profile_id,
        "consent_request_created",
        audit.REQUEST_ENTITY,
        audit.build_entity_ref("person_consent_requests", request.id),
        {"person_id": person_id, "requesting_org_id": org_id, "purpose": purpose},
    )
    log.info("consent request %s from org %s for person %s", request.id, org_id, person_id)
    return request, True


def log_consent_contact(db: Session, access: PortalAccess, *, person_id: int, org_id: int,
                        summary: str) -> models.ConsentContactLog:
    entry = models.ConsentContactLog(
        person_id=person_id,
        organization_id=org_id,
        summary=summary,
        logged_by=access.profile_id,
        logged_at=utcnow(),
    )
    db.add(entry)
    db.flush()
    audit.log_audit_event(
        db,
        access.profile_id,
        "consent_contact_logged",
        audit.CONTACT_ENTITY,
        audit.build_entity_ref("person_consent_contacts", entry.id),
        {"person_id": person_id, "organization_id": org_id},
    )
    return entry


def _resolve(request: models.ConsentRequest, status: str, access: PortalAccess, reason: Optional[str]) -> None:
    request.status = status
    request.decision_at = utcnow()
    request.decision_by = access.profile_id
    request.decision_reason = reason


def mark_request_approved(db: Session, access: PortalAccess, request: models.ConsentRequest,
                          reason: Optional[str] = None) -> models.ConsentRequest:
    ensure_pending(request)
    _resolve(request, models.REQUEST_APPROVED, access, reason)
    db.flush()
    audit.log_audit_event(
        db,
        access.profile_id,
        "consent_request_approved",
        audit.REQUEST_ENTITY,
        audit.build_entity_ref("person_consent_requests", request.id),
        {"person_id": request.person_id, "requesting_org_id": request.requesting_org_id},
    )
    log.info("consent request %s approved by %s", request.id, access.profile_id)
    return request


def approve_request(db: Session, access: PortalAccess, *, request_id: str, scope: str,
                    explicit_allowed_org_ids: Iterable[int] = (), method: str = "verbal",
                    notes: Optional[str] = None, decision_reason: Optional[str] = None,
                    policy_version: Optional[str] = None) -> ApprovalResult:
    request = get_request(db, request_id)
    ensure_pending(request)

    # the approver's own selection wins; the requesting org is only the fallback
    explicit = list(explicit_allowed_org_ids) or [request.requesting_org_id]
    saved = consents.save_consent(
        db,
        access,
        person_id=request.person_id,
        scope=scope,
        explicit_allowed_org_ids=explicit,
        method=method,
        captured_org_id=access.organization_id,
        notes=notes,
        policy_version=policy_version,
        meta={"approved_from_request": request.id},
    )
    mark_request_approved(db, access, request, decision_reason)
    return ApprovalResult(request, saved)


def deny_request(db: Session, access: PortalAccess, *, request_id: str,
                 decision_reason: Optional[str] = None) -> models.ConsentRequest:
    request = get_request(db, request_id)
    ensure_pending(request)
    _resolve(request, models.REQUEST_DENIED, access, decision_reason)
    db.flush()
    audit.log_audit_event(
        db,
        access.profile_id,
        "consent_request_denied",
        audit.REQUEST_ENTITY,
        audit.build_entity_ref("person_consent_requests", request.id),
        {"person_id": request.person_id, "requesting_org_id": request.requesting_org_id},
    )
    log.info("consent request %s denied by %s", request.id, access.profile_id)
    return request
