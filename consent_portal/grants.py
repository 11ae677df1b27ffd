# consent_portal/grants.py
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from consent_portal import models
from consent_portal.app_logger import get_logger
from consent_portal.config import settings
from consent_portal.utils import utcnow

log = get_logger("grants")


def managed_scopes() -> List[str]:
    return list(settings.GRANT_SCOPES)


def list_active_grants(db: Session, person_id: int, scopes: Optional[Iterable[str]] = None) -> List[models.PersonAccessGrant]:
    query = (
        db.query(models.PersonAccessGrant)
        .filter(models.PersonAccessGrant.person_id == person_id)
        .filter(models.PersonAccessGrant.revoked_at.is_(None))
    )
    if scopes is not None:
        query = query.filter(models.PersonAccessGrant.scope.in_(list(scopes)))
    return query.order_by(models.PersonAccessGrant.granted_at).all()


def create_person_grant(db: Session, person_id: int, scope: str, actor_profile_id: str,
                        grantee_org_id: Optional[int] = None,
                        grantee_user_id: Optional[str] = None) -> models.PersonAccessGrant:
    grant = models.PersonAccessGrant(
        person_id=person_id,
        scope=scope,
        grantee_org_id=grantee_org_id,
        grantee_user_id=grantee_user_id,
        granted_by=actor_profile_id,
        granted_at=utcnow(),
    )
    db.add(grant)
    return grant


def revoke_person_grant(db: Session, grant: models.PersonAccessGrant, actor_profile_id: str) -> None:
    grant.revoked_at = utcnow()
    grant.revoked_by = actor_profile_id


def sync_consent_grants(db: Session, person_id: int, allowed_org_ids: Iterable[int], actor_profile_id: str,
                        exclude_org_ids: Iterable[int] = ()) -> None:
    """Make the person's active org grants in the managed scopes match allowed_org_ids exactly."""
    scopes = managed_scopes()
    excluded = {org_id for org_id in exclude_org_ids if org_id}
    allowed = {org_id for org_id in allowed_org_ids if org_id and org_id not in excluded}

    existing = set()
    revoked = 0
    for grant in list_active_grants(db, person_id, scopes):
        if grant.grantee_org_id is None:
            continue
        if grant.grantee_org_id in allowed:
            existing.add((grant.grantee_org_id, grant.scope))
        else:
            revoke_person_grant(db, grant, actor_profile_id)
            revoked += 1

    created = 0
    for org_id in sorted(allowed):
        for scope in scopes:
            if (org_id, scope) in existing:
                continue
            create_person_grant(db, person_id, scope, actor_profile_id, grantee_org_id=org_id)
            created += 1

    db.flush()
    log.info("synced grants for person %s: %d created, %d revoked", person_id, created, revoked)
