# consent_portal/policy.py
"""
Pure consent decisions. Nothing here touches the database:

 - evaluate_scope: scope + explicit allow-list + roster -> allowed/blocked org ids
 - resolve_consent_org_selections: rebuild allowed/blocked from stored selection rows
 - effective_status / evaluate_org_access: what a stored consent means right now
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Tuple

from consent_portal.errors import ValidationError
from consent_portal.models import (
    CONSENT_SCOPES,
    SCOPE_ALL_ORGS,
    SCOPE_NONE,
    SCOPE_SELECTED_ORGS,
    STATUS_ACTIVE,
    STATUS_EXPIRED,
    STATUS_REVOKED,
)

SELECT_AT_LEAST_ONE = "Select at least one organization to share with."


@dataclass(frozen=True)
class ScopeResolution:
    allowed_org_ids: frozenset
    blocked_org_ids: frozenset

    def as_meta(self) -> dict:
        return {
            "allowed_org_ids": sorted(self.allowed_org_ids),
            "blocked_org_ids": sorted(self.blocked_org_ids),
        }


def evaluate_scope(scope: str, explicit_allowed_org_ids: Iterable[int],
                   participating_org_ids: Iterable[int]) -> ScopeResolution:
    participating = frozenset(participating_org_ids)
    explicit = frozenset(org_id for org_id in explicit_allowed_org_ids if org_id in participating)

    if scope == SCOPE_ALL_ORGS:
        return ScopeResolution(participating, frozenset())
    if scope == SCOPE_SELECTED_ORGS:
        if not explicit:
            raise ValidationError(SELECT_AT_LEAST_ONE, {"org_allowed_ids": SELECT_AT_LEAST_ONE})
        return ScopeResolution(explicit, participating - explicit)
    if scope == SCOPE_NONE:
        return ScopeResolution(frozenset(), participating)
    raise ValidationError("Choose a valid sharing option.", {"consent_scope": f"Unknown scope {scope!r}."})


def resolve_consent_org_selections(scope: Optional[str], participating_org_ids: Iterable[int],
                                   selections: Iterable) -> ScopeResolution:
    """
    selections are ConsentOrgSelection-like rows (organization_id, allowed).
    Orgs that joined after the consent was saved have no row: they follow the
    scope default (allowed under all_orgs, blocked otherwise).
    """
    explicit = {row.organization_id: row.allowed for row in selections}
    allowed, blocked = set(), set()
    for org_id in participating_org_ids:
        flag = explicit.get(org_id)
        if scope == SCOPE_ALL_ORGS:
            is_allowed = flag is not False
        elif scope == SCOPE_SELECTED_ORGS:
            is_allowed = flag is True
        else:
            is_allowed = False
        (allowed if is_allowed else blocked).add(org_id)
    return ScopeResolution(frozenset(allowed), frozenset(blocked))


def is_expired(consent, now: datetime) -> bool:
    return consent.expires_at is None or consent.expires_at <= now


def effective_status(consent, now: datetime) -> Optional[str]:
    if consent is None:
        return None
    if consent.status == STATUS_ACTIVE and is_expired(consent, now):
        return STATUS_EXPIRED
    return consent.status


def evaluate_org_access(consent, allowed_org_ids: Iterable[int], org_id: Optional[int],
                        now: datetime) -> Tuple[bool, str]:
    """Simple PDP for a single org looking at a person's record."""
    if consent is None or not org_id:
        return False, "no_consent"
    status = effective_status(consent, now)
    if status == STATUS_REVOKED:
        return False, "consent_revoked"
    if status == STATUS_EXPIRED:
        return False, "consent_expired"
    if org_id not in set(allowed_org_ids):
        return False, "org_not_allowed"
    return True, "ok"


def normalize_scope(scope: Optional[str], fallback: str = SCOPE_NONE) -> str:
    return scope if scope in CONSENT_SCOPES else fallback
