# consent_portal/access.py
"""
Caller context. The bearer token carries who is acting and with which
capabilities; it is decoded once per request into a PortalAccess that is
passed explicitly into every operation.
"""
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from sqlalchemy.orm import Session

from consent_portal import models, roster, utils
from consent_portal.app_logger import get_logger
from consent_portal.errors import NotFoundError, PermissionDeniedError

log = get_logger("access")

CAN_MANAGE_CONSENTS = "canManageConsents"
CAN_ACCESS_OPS_FRONTLINE = "canAccessOpsFrontline"
CAN_ACCESS_OPS_ORG = "canAccessOpsOrg"
CAN_ACCESS_OPS_ADMIN = "canAccessOpsAdmin"

CONSENT_REQUEST_CAPS = frozenset(
    {CAN_ACCESS_OPS_FRONTLINE, CAN_ACCESS_OPS_ORG, CAN_ACCESS_OPS_ADMIN, CAN_MANAGE_CONSENTS}
)


@dataclass(frozen=True)
class PortalAccess:
    user_id: str
    profile_id: str
    organization_id: Optional[int] = None
    operating_org_id: Optional[int] = None
    capabilities: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def can_manage_consents(self) -> bool:
        return CAN_MANAGE_CONSENTS in self.capabilities

    @property
    def can_request_consent(self) -> bool:
        return bool(self.capabilities & CONSENT_REQUEST_CAPS)


def access_from_claims(claims: dict, operating_org_id: Optional[int] = None) -> Optional[PortalAccess]:
    user_id = claims.get("sub")
    profile_id = claims.get("profile_id")
    if not user_id or not profile_id:
        return None
    org_id = claims.get("org_id")
    try:
        org_id = int(org_id) if org_id is not None else None
    except (TypeError, ValueError):
        org_id = None
    caps = claims.get("caps")
    if not isinstance(caps, list):
        caps = []
    return PortalAccess(
        user_id=str(user_id),
        profile_id=str(profile_id),
        organization_id=org_id,
        operating_org_id=operating_org_id,
        capabilities=frozenset(cap for cap in caps if isinstance(cap, str)),
    )


def load_portal_access(db: Session, token: Optional[str]) -> Optional[PortalAccess]:
    if not token:
        return None
    claims = utils.verify_token(token)
    if not claims:
        log.info("rejected access token")
        return None
    return access_from_claims(claims, operating_org_id=roster.get_operating_org_id(db))


def require_access(access: Optional[PortalAccess], action: str) -> PortalAccess:
    if access is None:
        log.info("denied %s: not signed in", action)
        raise PermissionDeniedError("not_signed_in")
    return access


def require_manage_consents(access: Optional[PortalAccess], action: str) -> PortalAccess:
    access = require_access(access, action)
    if not access.can_manage_consents:
        log.info("denied %s for profile %s: missing %s", action, access.profile_id, CAN_MANAGE_CONSENTS)
        raise PermissionDeniedError("missing_capability")
    return access


def require_request_access(access: Optional[PortalAccess], action: str) -> PortalAccess:
    access = require_access(access, action)
    if not access.can_request_consent:
        log.info("denied %s for profile %s: no ops capability", action, access.profile_id)
        raise PermissionDeniedError("missing_capability")
    return access


def assert_organization_selected(access: PortalAccess, action: str) -> int:
    if not access.organization_id:
        log.info("denied %s for profile %s: no acting organization", action, access.profile_id)
        raise PermissionDeniedError("organization_not_selected")
    return access.organization_id


def require_person_for_user(db: Session, access: PortalAccess) -> models.Person:
    person = db.query(models.Person).filter(models.Person.user_id == access.user_id).first()
    if not person:
        raise NotFoundError("Client record not found.")
    return person


def require_person(db: Session, person_id: int) -> models.Person:
    person = db.get(models.Person, person_id)
    if not person:
        raise NotFoundError("Client record not found.")
    return person
