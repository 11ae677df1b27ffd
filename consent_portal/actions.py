# consent_portal/actions.py
"""
Form actions. Each one checks the caller, parses its form, and runs the
whole mutation in one transaction. Errors raised here are ConsentError
subclasses; the HTTP layer turns them into user-facing messages.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from consent_portal import audit, consent_requests, consents, forms, grants, models
from consent_portal import revalidation as pages
from consent_portal.access import (
    PortalAccess,
    assert_organization_selected,
    require_access,
    require_manage_consents,
    require_person,
    require_person_for_user,
    require_request_access,
)
from consent_portal.config import settings
from consent_portal.db import transaction
from consent_portal.errors import NotFoundError, ValidationError
from consent_portal.schemas import ConsentOut, ConsentRequestOut, GrantOut


@dataclass
class ActionResult:
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    revalidate: List[str] = field(default_factory=list)


BOTH_ATTESTATIONS = "Both staff and client attestations are required."


def _require_attestations(form) -> None:
    if not form.attested_by_staff or not form.attested_by_client:
        raise ValidationError(BOTH_ATTESTATIONS, {"attested_by_staff": BOTH_ATTESTATIONS})


def _require_person_id(person_id: Optional[int]) -> int:
    if not person_id:
        raise ValidationError("Invalid person id.", {"person_id": "Invalid person id."})
    return person_id


def _consent_data(consent: models.Consent, resolution=None) -> Dict[str, Any]:
    data = {"consent": ConsentOut.model_validate(consent).model_dump(mode="json")}
    if resolution is not None:
        data.update(resolution.as_meta())
    return data


# ---- consent mutations ----

def save_client_consent(db: Session, access: Optional[PortalAccess], form: Mapping) -> ActionResult:
    access = require_access(access, "save consent")
    parsed = forms.parse_form(forms.ClientConsentForm, form).unwrap()
    if not parsed.consent_confirm:
        message = "Confirm your sharing choice before saving."
        raise ValidationError(message, {"consent_confirm": message})
    person = require_person_for_user(db, access)

    restrictions = {
        key: value
        for key, value in (
            ("privacy_restrictions", parsed.privacy_restrictions),
            ("preferred_contact", parsed.preferred_contact),
        )
        if value
    } or None

    with transaction(db):
        result = consents.save_consent(
            db,
            access,
            person_id=person.id,
            scope=parsed.consent_scope,
            explicit_allowed_org_ids=parsed.org_allowed_ids,
            method="portal",
            attested_by_client=True,
            policy_version=parsed.policy_version,
            restrictions=restrictions,
            actor_role="client",
        )
        before = result.previous_resolution
        if before is not None and before != result.resolution:
            audit.log_audit_event(
                db,
                access.profile_id,
                "consent_org_updated",
                audit.CONSENT_ENTITY,
                audit.build_entity_ref("person_consents", result.consent.id),
                {
                    "person_id": person.id,
                    "previous_allowed_org_ids": sorted(before.allowed_org_ids),
                    "previous_blocked_org_ids": sorted(before.blocked_org_ids),
                    **result.resolution.as_meta(),
                    "actor_role": "client",
                },
            )

    return ActionResult(
        "Your sharing choices were saved.",
        _consent_data(result.consent, result.resolution),
        pages.consent_pages(person.id, pages.PROFILE_CONSENTS),
    )


def record_staff_consent(db: Session, access: Optional[PortalAccess], form: Mapping) -> ActionResult:
    access = require_manage_consents(access, "record consent")
    org_id = assert_organization_selected(access, "record consent")
    parsed = forms.parse_form(forms.StaffConsentForm, form).unwrap()
    _require_attestations(parsed)
    require_person(db, parsed.person_id)

    approved_request = None
    with transaction(db):
        result = consents.save_consent(
            db,
            access,
            person_id=parsed.person_id,
            scope=parsed.consent_scope,
            explicit_allowed_org_ids=parsed.org_allowed_ids,
            method=parsed.consent_method,
            captured_org_id=org_id,
            attested_by_staff=True,
            attested_by_client=True,
            notes=parsed.consent_notes,
            policy_version=parsed.policy_version,
        )
        pending = consent_requests.find_pending_request(db, parsed.person_id, org_id)
        if pending is not None:
            approved_request = consent_requests.mark_request_approved(
                db, access, pending, parsed.consent_notes or "Approved in person with client present."
            )

    data = _consent_data(result.consent, result.resolution)
    if approved_request is not None:
        data["approved_request_id"] = approved_request.id
    return ActionResult(
        "Consent recorded.",
        data,
        pages.consent_pages(parsed.person_id, pages.OPS_CONSENT_RECORD, pages.OPS_CONSENTS),
    )


def override_consent(db: Session, access: Optional[PortalAccess], form: Mapping) -> ActionResult:
    access = require_manage_consents(access, "override consent")
    parsed = forms.parse_form(forms.OverrideConsentForm, form).unwrap()
    if not parsed.consent_confirm:
        message = "Confirm the consent override before saving."
        raise ValidationError(message, {"consent_confirm": message})
    require_person(db, parsed.person_id)

    with transaction(db):
        result = consents.save_consent(
            db,
            access,
            person_id=parsed.person_id,
            scope=parsed.consent_scope,
            explicit_allowed_org_ids=parsed.org_allowed_ids,
            method=parsed.consent_method,
            captured_org_id=access.organization_id or access.operating_org_id,
            attested_by_staff=parsed.attested_by_staff,
            attested_by_client=parsed.attested_by_client,
            notes=parsed.consent_notes,
            policy_version=parsed.policy_version,
            meta={"override": True},
        )

    return ActionResult(
        "Consent updated.",
        _consent_data(result.consent, result.resolution),
        pages.consent_pages(parsed.person_id, pages.ADMIN_CONSENTS),
    )


def renew_client_consent(db: Session, access: Optional[PortalAccess], form: Mapping) -> ActionResult:
    access = require_access(access, "renew consent")
    parsed = forms.parse_form(forms.RenewConsentForm, form).unwrap()
    person = require_person_for_user(db, access)

    with transaction(db):
        result = consents.renew_consent(
            db,
            access,
            consent_id=parsed.consent_id,
            person_id=person.id,
            method="portal",
            scope=parsed.consent_scope,
            explicit_allowed_org_ids=parsed.org_allowed_ids,
            attested_by_client=True,
            policy_version=parsed.policy_version,
            actor_role="client",
        )

    return ActionResult(
        "Consent renewed.",
        _consent_data(result.consent, result.resolution),
        pages.consent_pages(person.id, pages.PROFILE_CONSENTS),
    )


def renew_consent_as_admin(db: Session, access: Optional[PortalAccess], form: Mapping) -> ActionResult:
    access = require_manage_consents(access, "renew consent")
    parsed = forms.parse_form(forms.RenewConsentForm, form).unwrap()
    person_id = _require_person_id(parsed.person_id)
    _require_attestations(parsed)

    with transaction(db):
        result = consents.renew_consent(
            db,
            access,
            consent_id=parsed.consent_id,
            person_id=person_id,
            method=parsed.consent_method or "documented",
            scope=parsed.consent_scope,
            explicit_allowed_org_ids=parsed.org_allowed_ids,
            attested_by_staff=True,
            attested_by_client=True,
            captured_org_id=access.organization_id or access.operating_org_id,
            policy_version=parsed.policy_version,
        )

    return ActionResult(
        "Consent renewed.",
        _consent_data(result.consent, result.resolution),
        pages.consent_pages(person_id, pages.ADMIN_CONSENTS),
    )


def revoke_client_consent(db: Session, access: Optional[PortalAccess], form: Mapping) -> ActionResult:
    access = require_access(access, "revoke consent")
    parsed = forms.parse_form(forms.RevokeConsentForm, form).unwrap()
    if not parsed.revoke_confirm:
        message = "Confirm consent withdrawal before continuing."
        raise ValidationError(message, {"revoke_confirm": message})
    person = require_person_for_user(db, access)

    with transaction(db):
        consent = consents.revoke_consent(
            db, access, person_id=person.id, consent_id=parsed.consent_id, reason="Client revoked consent."
        )

    return ActionResult(
        "Consent withdrawn. Partner organizations can no longer see your record.",
        _consent_data(consent),
        pages.consent_pages(person.id, pages.PROFILE_CONSENTS),
    )


def revoke_consent_as_admin(db: Session, access: Optional[PortalAccess], form: Mapping) -> ActionResult:
    access = require_manage_consents(access, "revoke consent")
    parsed = forms.parse_form(forms.RevokeConsentForm, form).unwrap()
    person_id = _require_person_id(parsed.person_id)

    with transaction(db):
        consent = consents.revoke_consent(
            db, access, person_id=person_id, consent_id=parsed.consent_id, reason=parsed.consent_notes, admin=True
        )

    return ActionResult(
        "Consent revoked.",
        _consent_data(consent),
        pages.consent_pages(person_id, pages.ADMIN_CONSENTS),
    )


# ---- request workflow ----

def request_consent(db: Session, access: Optional[PortalAccess], form: Mapping) -> ActionResult:
    access = require_request_access(access, "request consent")
    org_id = assert_organization_selected(access, "request consent")
    parsed = forms.parse_form(forms.ConsentRequestForm, form).unwrap()
    require_person(db, parsed.person_id)

    with transaction(db):
        request, created = consent_requests.request_consent(
            db, access, person_id=parsed.person_id, org_id=org_id, purpose=parsed.purpose, note=parsed.request_note
        )

    message = "Consent requested." if created else "A consent request is already pending."
    return ActionResult(
        message,
        {"request": ConsentRequestOut.model_validate(request).model_dump(mode="json"), "created": created},
        [pages.OPS_CONSENTS],
    )


def log_consent_contact(db: Session, access: Optional[PortalAccess], form: Mapping) -> ActionResult:
    access = require_request_access(access, "log consent contact")
    org_id = assert_organization_selected(access, "log consent contact")
    parsed = forms.parse_form(forms.ContactLogForm, form).unwrap()
    require_person(db, parsed.person_id)

    with transaction(db):
        entry = consent_requests.log_consent_contact(
            db, access, person_id=parsed.person_id, org_id=org_id, summary=parsed.contact_summary
        )

    return ActionResult("Contact attempt logged.", {"contact_id": entry.id}, [pages.OPS_CONSENTS])


def approve_consent_request(db: Session, access: Optional[PortalAccess], form: Mapping) -> ActionResult:
    access = require_manage_consents(access, "approve consent request")
    parsed = forms.parse_form(forms.ApproveRequestForm, form).unwrap()

    with transaction(db):
        result = consent_requests.approve_request(
            db,
            access,
            request_id=parsed.request_id,
            scope=parsed.consent_scope,
            explicit_allowed_org_ids=parsed.org_allowed_ids,
            method=parsed.consent_method,
            notes=parsed.consent_notes,
            decision_reason=parsed.decision_reason,
            policy_version=parsed.policy_version,
        )

    data = _consent_data(result.save.consent, result.save.resolution)
    data["request"] = ConsentRequestOut.model_validate(result.request).model_dump(mode="json")
    return ActionResult(
        "Consent request approved.",
        data,
        pages.consent_pages(result.request.person_id, pages.ADMIN_CONSENTS, pages.OPS_CONSENTS),
    )


def deny_consent_request(db: Session, access: Optional[PortalAccess], form: Mapping) -> ActionResult:
    access = require_manage_consents(access, "deny consent request")
    parsed = forms.parse_form(forms.DenyRequestForm, form).unwrap()

    with transaction(db):
        request = consent_requests.deny_request(
            db, access, request_id=parsed.request_id, decision_reason=parsed.decision_reason
        )

    return ActionResult(
        "Consent request denied.",
        {"request": ConsentRequestOut.model_validate(request).model_dump(mode="json")},
        [pages.ADMIN_CONSENTS, pages.OPS_CONSENTS],
    )


# ---- manual grants ----

def create_grant(db: Session, access: Optional[PortalAccess], form: Mapping) -> ActionResult:
    access = require_manage_consents(access, "create grant")
    parsed = forms.parse_form(forms.GrantForm, form).unwrap()
    if parsed.scope not in settings.GRANT_SCOPES:
        raise ValidationError("Invalid scope.", {"scope": "Invalid scope."})
    if not parsed.grantee_user_id and not parsed.grantee_org_id:
        message = "Select a user or organization."
        raise ValidationError(message, {"grantee_org_id": message})
    if parsed.grantee_org_id and db.get(models.Organization, parsed.grantee_org_id) is None:
        raise ValidationError("Unknown organization.", {"grantee_org_id": "Unknown organization."})
    require_person(db, parsed.person_id)

    with transaction(db):
        grant = grants.create_person_grant(
            db,
            parsed.person_id,
            parsed.scope,
            access.profile_id,
            grantee_org_id=parsed.grantee_org_id,
            grantee_user_id=parsed.grantee_user_id,
        )
        db.flush()
        audit.log_audit_event(
            db,
            access.profile_id,
            "grant_created",
            audit.GRANT_ENTITY,
            audit.build_entity_ref("person_access_grants", grant.id),
            {
                "person_id": parsed.person_id,
                "scope": parsed.scope,
                "grantee_org_id": parsed.grantee_org_id,
                "grantee_user_id": parsed.grantee_user_id,
            },
        )

    return ActionResult(
        "Access granted.",
        {"grant": GrantOut.model_validate(grant).model_dump(mode="json")},
        pages.consent_pages(parsed.person_id, pages.OPS_CLIENTS),
    )


def revoke_grant(db: Session, access: Optional[PortalAccess], form: Mapping) -> ActionResult:
    access = require_manage_consents(access, "revoke grant")
    parsed = forms.parse_form(forms.RevokeGrantForm, form).unwrap()
    grant = db.get(models.PersonAccessGrant, parsed.grant_id)
    if grant is None or grant.revoked_at is not None:
        raise NotFoundError("Grant not found.")

    with transaction(db):
        grants.revoke_person_grant(db, grant, access.profile_id)
        audit.log_audit_event(
            db,
            access.profile_id,
            "grant_revoked",
            audit.GRANT_ENTITY,
            audit.build_entity_ref("person_access_grants", grant.id),
            {"person_id": grant.person_id, "scope": grant.scope},
        )

    return ActionResult(
        "Access revoked.",
        {"grant": GrantOut.model_validate(grant).model_dump(mode="json")},
        pages.consent_pages(grant.person_id, pages.OPS_CLIENTS),
    )
