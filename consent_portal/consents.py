# consent_portal/consents.py
"""
Consent record store and the mutations on it.

Every mutation follows the same path: evaluate the scope against the current
roster, write the consent row, upsert one selection row per participating
org, bring the org grants in line, append an audit event. Nothing here
commits; the caller wraps the whole operation in `db.transaction`.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from consent_portal import audit, grants, models, policy, roster
from consent_portal.access import PortalAccess
from consent_portal.app_logger import get_logger
from consent_portal.config import settings
from consent_portal.errors import NotFoundError, ValidationError
from consent_portal.utils import utcnow

log = get_logger("consents")


@dataclass
class EffectiveConsent:
    consent: Optional[models.Consent]
    scope: Optional[str]
    status: Optional[str]
    effective_status: Optional[str]
    expires_at: Optional[datetime]
    is_expired: bool


@dataclass
class SaveResult:
    consent: models.Consent
    previous: Optional[models.Consent]
    resolution: policy.ScopeResolution
    previous_resolution: Optional[policy.ScopeResolution] = None

    @property
    def action(self) -> str:
        return "consent_updated" if self.previous else "consent_created"


@dataclass
class RenewResult:
    consent: models.Consent
    resolution: policy.ScopeResolution
    previous_expires_at: Optional[datetime]


# ---- reads ----

def get_latest_consent(db: Session, person_id: int) -> Optional[models.Consent]:
    return (
        db.query(models.Consent)
        .filter(models.Consent.person_id == person_id)
        .filter(models.Consent.consent_type == models.CONSENT_TYPE)
        # active first: a superseded row can share created_at with its successor
        .order_by((models.Consent.status == models.STATUS_ACTIVE).desc(), models.Consent.created_at.desc())
        .first()
    )


def get_active_consent(db: Session, person_id: int) -> Optional[models.Consent]:
    return (
        db.query(models.Consent)
        .filter(models.Consent.person_id == person_id)
        .filter(models.Consent.consent_type == models.CONSENT_TYPE)
        .filter(models.Consent.status == models.STATUS_ACTIVE)
        .order_by(models.Consent.created_at.desc())
        .first()
    )


def get_effective_consent(db: Session, person_id: int, now: Optional[datetime] = None) -> EffectiveConsent:
    now = now or utcnow()
    consent = get_latest_consent(db, person_id)
    if consent is None:
        return EffectiveConsent(None, None, None, None, None, False)
    return EffectiveConsent(
        consent=consent,
        scope=consent.scope,
        status=consent.status,
        effective_status=policy.effective_status(consent, now),
        expires_at=consent.expires_at,
        is_expired=policy.is_expired(consent, now),
    )


def list_consent_orgs(db: Session, consent_id: str) -> List[models.ConsentOrgSelection]:
    return (
        db.query(models.ConsentOrgSelection)
        .filter(models.ConsentOrgSelection.consent_id == consent_id)
        .order_by(models.ConsentOrgSelection.organization_id)
        .all()
    )


def resolve_for_consent(db: Session, consent: Optional[models.Consent],
                        participating_org_ids: Iterable[int]) -> policy.ScopeResolution:
    if consent is None:
        return policy.resolve_consent_org_selections(None, participating_org_ids, [])
    return policy.resolve_consent_org_selections(
        policy.normalize_scope(consent.scope), participating_org_ids, list_consent_orgs(db, consent.id)
    )


def consent_allows_org(db: Session, person_id: int, org_id: Optional[int],
                       exclude_org_id: Optional[int] = None, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    consent = get_latest_consent(db, person_id)
    participating = roster.participating_org_ids(db, exclude_org_id=exclude_org_id)
    resolution = resolve_for_consent(db, consent, participating)
    ok, reason = policy.evaluate_org_access(consent, resolution.allowed_org_ids, org_id, now)
    log.debug("org %s access to person %s: %s", org_id, person_id, reason)
    return ok


# ---- writes ----

def consent_expiry(now: datetime) -> datetime:
    return now + timedelta(days=settings.CONSENT_EXPIRY_DAYS)


def upsert_consent_org(db: Session, consent_id: str, organization_id: int, allowed: bool,
                       actor_profile_id: str, reason: Optional[str] = None,
                       now: Optional[datetime] = None) -> models.ConsentOrgSelection:
    row = (
        db.query(models.ConsentOrgSelection)
        .filter(models.ConsentOrgSelection.consent_id == consent_id)
        .filter(models.ConsentOrgSelection.organization_id == organization_id)
        .first()
    )
    if row is None:
        row = models.ConsentOrgSelection(consent_id=consent_id, organization_id=organization_id)
        db.add(row)
    row.allowed = allowed
    row.set_by = actor_profile_id
    row.set_at = now or utcnow()
    row.reason = reason
    return row


def write_org_selections(db: Session, consent: models.Consent, resolution: policy.ScopeResolution,
                         actor_profile_id: str, reason: Optional[str] = None) -> None:
    now = utcnow()
    for org_id in sorted(resolution.allowed_org_ids):
        upsert_consent_org(db, consent.id, org_id, True, actor_profile_id, reason, now)
    for org_id in sorted(resolution.blocked_org_ids):
        upsert_consent_org(db, consent.id, org_id, False, actor_profile_id, reason, now)
    db.flush()


def _supersede(consent: models.Consent, actor_profile_id: str, now: datetime) -> None:
    consent.status = models.STATUS_REVOKED
    consent.revoked_at = now
    consent.revoked_by = actor_profile_id
    consent.updated_at = now


def save_consent(db: Session, access: PortalAccess, *, person_id: int, scope: str,
                 explicit_allowed_org_ids: Iterable[int], method: str,
                 captured_org_id: Optional[int] = None, attested_by_staff: bool = False,
                 attested_by_client: bool = False, notes: Optional[str] = None,
                 policy_version: Optional[str] = None, restrictions: Optional[Dict[str, Any]] = None,
                 actor_role: str = "staff", meta: Optional[Dict[str, Any]] = None) -> SaveResult:
    participating = roster.participating_org_ids(db, exclude_org_id=access.operating_org_id)
    resolution = policy.evaluate_scope(scope, explicit_allowed_org_ids, participating)

    previous = get_latest_consent(db, person_id)
    previous_resolution = resolve_for_consent(db, previous, participating) if previous else None
    now = utcnow()
    if previous is not None and previous.status == models.STATUS_ACTIVE:
        _supersede(previous, access.profile_id, now)

    consent = models.Consent(
        person_id=person_id,
        consent_type=models.CONSENT_TYPE,
        scope=scope,
        status=models.STATUS_ACTIVE,
        captured_by=access.profile_id,
        captured_method=method,
        captured_org_id=captured_org_id,
        attested_by_staff=attested_by_staff,
        attested_by_client=attested_by_client,
        attested_at=now if (attested_by_staff or attested_by_client) else None,
        notes=notes,
        policy_version=policy_version,
        restrictions=restrictions,
        created_at=now,
        updated_at=now,
        expires_at=consent_expiry(now),
    )
    db.add(consent)
    db.flush()

    write_org_selections(db, consent, resolution, access.profile_id, notes)
    grants.sync_consent_grants(
        db, person_id, resolution.allowed_org_ids, access.profile_id,
        exclude_org_ids=[access.operating_org_id] if access.operating_org_id else [],
    )

    result = SaveResult(consent, previous, resolution, previous_resolution)
    audit.log_audit_event(
        db,
        access.profile_id,
        result.action,
        audit.CONSENT_ENTITY,
        audit.build_entity_ref("person_consents", consent.id),
        {
            "person_id": person_id,
            "scope": scope,
            "previous_scope": previous.scope if previous else None,
            "method": method,
            "captured_org_id": captured_org_id,
            "attested_by_staff": attested_by_staff,
            "attested_by_client": attested_by_client,
            "actor_role": actor_role,
            **resolution.as_meta(),
            **(meta or {}),
        },
    )
    log.info("%s %s for person %s (scope=%s)", result.action, consent.id, person_id, scope)
    return result


def renew_consent(db: Session, access: PortalAccess, *, consent_id: str, person_id: int,
                  method: Optional[str] = None, scope: Optional[str] = None,
                  explicit_allowed_org_ids: Iterable[int] = (), attested_by_staff: bool = False,
                  attested_by_client: bool = False, captured_org_id: Optional[int] = None,
                  policy_version: Optional[str] = None, actor_role: str = "staff") -> RenewResult:
    consent = db.get(models.Consent, consent_id)
    if consent is None or consent.person_id != person_id:
        raise NotFoundError("Consent record not found.")
    if consent.status == models.STATUS_REVOKED:
        raise ValidationError("This consent was revoked. Record a new consent instead.")

    participating = roster.participating_org_ids(db, exclude_org_id=access.operating_org_id)
    stored = resolve_for_consent(db, consent, participating)
    target_scope = scope or consent.scope
    explicit = list(explicit_allowed_org_ids) or stored.allowed_org_ids
    resolution = policy.evaluate_scope(target_scope, explicit, participating)

    now = utcnow()
    previous_scope = consent.scope
    previous_expires_at = consent.expires_at
    renewed_until = consent_expiry(now)
    if previous_expires_at is not None and previous_expires_at > renewed_until:
        renewed_until = previous_expires_at

    consent.scope = target_scope
    consent.expires_at = renewed_until
    consent.captured_method = method or consent.captured_method
    consent.attested_by_staff = attested_by_staff
    consent.attested_by_client = attested_by_client
    consent.attested_at = now
    consent.policy_version = policy_version or consent.policy_version
    if captured_org_id:
        consent.captured_org_id = captured_org_id
    consent.updated_at = now
    db.flush()

    write_org_selections(db, consent, resolution, access.profile_id, "renewed")
    grants.sync_consent_grants(
        db, person_id, resolution.allowed_org_ids, access.profile_id,
        exclude_org_ids=[access.operating_org_id] if access.operating_org_id else [],
    )

    audit.log_audit_event(
        db,
        access.profile_id,
        "consent_renewed",
        audit.CONSENT_ENTITY,
        audit.build_entity_ref("person_consents", consent.id),
        {
            "person_id": person_id,
            "scope": target_scope,
            "previous_scope": previous_scope,
            "method": consent.captured_method,
            "captured_org_id": consent.captured_org_id,
            "attested_by_staff": attested_by_staff,
            "attested_by_client": attested_by_client,
            "previous_expires_at": previous_expires_at.isoformat() if previous_expires_at else None,
            "expires_at": renewed_until.isoformat(),
            "actor_role": actor_role,
            **resolution.as_meta(),
        },
    )
    log.info("consent_renewed %s for person %s until %s", consent.id, person_id, renewed_until.isoformat())
    return RenewResult(consent, resolution, previous_expires_at)


def revoke_consent(db: Session, access: PortalAccess, *, person_id: int, consent_id: Optional[str] = None,
                   reason: Optional[str] = None, admin: bool = False) -> models.Consent:
    consent = get_active_consent(db, person_id)
    if consent is None or (consent_id and consent.id != consent_id):
        raise NotFoundError("No active consent found for this client.")

    now = utcnow()
    consent.status = models.STATUS_REVOKED
    consent.revoked_at = now
    consent.revoked_by = access.profile_id
    if reason:
        consent.notes = reason
    consent.updated_at = now
    db.flush()

    grants.sync_consent_grants(db, person_id, [], access.profile_id)

    action = "consent_revoked_admin" if admin else "consent_revoked"
    audit.log_audit_event(
        db,
        access.profile_id,
        action,
        audit.CONSENT_ENTITY,
        audit.build_entity_ref("person_consents", consent.id),
        {
            "person_id": person_id,
            "reason": reason,
            "revoked_by_admin": admin,
            "actor_role": "staff" if admin else "client",
        },
    )
    log.info("%s %s for person %s", action, consent.id, person_id)
    return consent
