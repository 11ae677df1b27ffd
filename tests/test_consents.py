# tests/test_consents.py
from datetime import timedelta

import pytest

from consent_portal import actions, consents, grants, models
from consent_portal.access import CAN_MANAGE_CONSENTS, PortalAccess
from consent_portal.errors import GENERIC_DENIAL, NotFoundError, PermissionDeniedError, ValidationError
from consent_portal.utils import utcnow
from tests.conftest import CLIENT_PERSON_ID, OPERATING_ORG_ID, OTHER_PERSON_ID, PARTNER_ORG_IDS


def _actions(db):
    return [e.action for e in db.query(models.AuditEvent).order_by(models.AuditEvent.created_at).all()]


def _active_grant_orgs(db, person_id):
    return {g.grantee_org_id for g in grants.list_active_grants(db, person_id) if g.grantee_org_id}


def _staff_record(db, access, person_id=CLIENT_PERSON_ID, **fields):
    form = {
        "person_id": str(person_id),
        "attested_by_staff": "on",
        "attested_by_client": "on",
        **fields,
    }
    return actions.record_staff_consent(db, access, form)


def test_client_save_all_orgs_grants_every_partner(db, client_access):
    result = actions.save_client_consent(db, client_access, {"consent_scope": "all_orgs", "consent_confirm": "on"})

    consent = consents.get_active_consent(db, CLIENT_PERSON_ID)
    assert consent is not None
    assert consent.scope == "all_orgs"
    assert consent.captured_method == "portal"
    assert consent.attested_by_client is True
    assert set(result.data["allowed_org_ids"]) == PARTNER_ORG_IDS
    assert result.data["blocked_org_ids"] == []
    assert _active_grant_orgs(db, CLIENT_PERSON_ID) == PARTNER_ORG_IDS
    assert OPERATING_ORG_ID not in _active_grant_orgs(db, CLIENT_PERSON_ID)
    assert len(grants.list_active_grants(db, CLIENT_PERSON_ID)) == len(PARTNER_ORG_IDS) * 2
    assert "/profile/consents" in result.revalidate
    assert _actions(db) == ["consent_created"]


def test_client_save_requires_confirmation(db, client_access):
    with pytest.raises(ValidationError) as exc:
        actions.save_client_consent(db, client_access, {"consent_scope": "none"})
    assert "consent_confirm" in exc.value.field_errors
    assert db.query(models.Consent).count() == 0


def test_client_save_stores_restrictions(db, client_access):
    actions.save_client_consent(db, client_access, {
        "consent_scope": "none",
        "consent_confirm": "on",
        "privacy_restrictions": "No contact at work",
        "preferred_contact": "phone",
    })
    consent = consents.get_active_consent(db, CLIENT_PERSON_ID)
    assert consent.restrictions == {"privacy_restrictions": "No contact at work", "preferred_contact": "phone"}


def test_saving_again_supersedes_previous_consent(db, client_access):
    actions.save_client_consent(db, client_access, {"consent_scope": "all_orgs", "consent_confirm": "on"})
    first = consents.get_active_consent(db, CLIENT_PERSON_ID)

    actions.save_client_consent(db, client_access, {
        "consent_scope": "selected_orgs",
        "consent_confirm": "on",
        "org_allowed_ids": ["3", "99"],
    })

    active = (
        db.query(models.Consent)
        .filter(models.Consent.person_id == CLIENT_PERSON_ID, models.Consent.status == "active")
        .all()
    )
    assert len(active) == 1
    assert active[0].scope == "selected_orgs"
    db.refresh(first)
    assert first.status == "revoked"
    assert first.revoked_by == client_access.profile_id
    assert db.query(models.Consent).count() == 2
    assert _active_grant_orgs(db, CLIENT_PERSON_ID) == {3}

    selections = {row.organization_id: row.allowed for row in consents.list_consent_orgs(db, active[0].id)}
    assert selections == {3: True, 5: False, 7: False, 8: False}
    assert sorted(_actions(db)) == ["consent_created", "consent_org_updated", "consent_updated"]


def test_selected_orgs_with_no_valid_org_writes_nothing(db, client_access):
    with pytest.raises(ValidationError) as exc:
        actions.save_client_consent(db, client_access, {
            "consent_scope": "selected_orgs",
            "consent_confirm": "on",
            "org_allowed_ids": ["99", str(OPERATING_ORG_ID)],
        })
    assert exc.value.message == "Select at least one organization to share with."
    assert db.query(models.Consent).count() == 0
    assert db.query(models.PersonAccessGrant).count() == 0


def test_staff_record_requires_both_attestations(db, staff_access):
    with pytest.raises(ValidationError) as exc:
        actions.record_staff_consent(db, staff_access, {"person_id": str(CLIENT_PERSON_ID), "attested_by_staff": "on"})
    assert exc.value.message == "Both staff and client attestations are required."


def test_staff_record_needs_capability_and_gives_generic_denial(db, partner_access):
    with pytest.raises(PermissionDeniedError) as exc:
        _staff_record(db, partner_access)
    assert exc.value.message == GENERIC_DENIAL
    assert CAN_MANAGE_CONSENTS not in exc.value.message


def test_staff_record_needs_acting_organization(db):
    no_org = PortalAccess(
        user_id="u", profile_id="p", operating_org_id=OPERATING_ORG_ID,
        capabilities=frozenset({CAN_MANAGE_CONSENTS}),
    )
    with pytest.raises(PermissionDeniedError) as exc:
        _staff_record(db, no_org)
    assert exc.value.message == GENERIC_DENIAL


def test_staff_record_unknown_person(db, staff_access):
    with pytest.raises(NotFoundError):
        _staff_record(db, staff_access, person_id=404)


def test_staff_record_keeps_method_and_captured_org(db, staff_access):
    _staff_record(db, staff_access, consent_scope="selected_orgs", org_allowed_ids=["7", "8"], consent_method="verbal")
    consent = consents.get_active_consent(db, CLIENT_PERSON_ID)
    assert consent.captured_method == "verbal"
    assert consent.captured_org_id == OPERATING_ORG_ID
    assert consent.attested_by_staff and consent.attested_by_client
    assert consent.attested_at is not None
    assert _active_grant_orgs(db, CLIENT_PERSON_ID) == {7, 8}


def test_override_requires_confirmation(db, staff_access):
    with pytest.raises(ValidationError):
        actions.override_consent(db, staff_access, {"person_id": str(CLIENT_PERSON_ID), "consent_scope": "none"})

    result = actions.override_consent(db, staff_access, {
        "person_id": str(CLIENT_PERSON_ID),
        "consent_scope": "none",
        "consent_confirm": "on",
    })
    assert result.data["allowed_org_ids"] == []
    event = db.query(models.AuditEvent).one()
    assert event.action == "consent_created"
    assert event.meta["override"] is True
    assert event.meta["method"] == "documented"


def test_revoke_removes_all_partner_visibility(db, client_access, staff_access):
    _staff_record(db, staff_access, consent_scope="selected_orgs", org_allowed_ids=["3", "7"])
    assert consents.consent_allows_org(db, CLIENT_PERSON_ID, 3)

    result = actions.revoke_client_consent(db, client_access, {"revoke_confirm": "on"})

    consent = db.get(models.Consent, result.data["consent"]["id"])
    assert consent.status == "revoked"
    assert consent.revoked_at is not None
    assert _active_grant_orgs(db, CLIENT_PERSON_ID) == set()
    for org_id in (3, 7):
        assert not consents.consent_allows_org(db, CLIENT_PERSON_ID, org_id)
    assert _actions(db)[-1] == "consent_revoked"


def test_client_revoke_requires_confirmation(db, client_access):
    actions.save_client_consent(db, client_access, {"consent_scope": "all_orgs", "consent_confirm": "on"})
    with pytest.raises(ValidationError):
        actions.revoke_client_consent(db, client_access, {})
    assert consents.get_active_consent(db, CLIENT_PERSON_ID) is not None


def test_admin_revoke_without_active_consent_is_not_found(db, staff_access):
    with pytest.raises(NotFoundError):
        actions.revoke_consent_as_admin(db, staff_access, {"person_id": str(OTHER_PERSON_ID)})


def test_admin_revoke_pinned_to_other_consent_is_not_found(db, staff_access):
    _staff_record(db, staff_access)
    with pytest.raises(NotFoundError):
        actions.revoke_consent_as_admin(db, staff_access, {"person_id": str(CLIENT_PERSON_ID), "consent_id": "nope"})
    assert consents.get_active_consent(db, CLIENT_PERSON_ID) is not None


def test_admin_revoke_writes_admin_audit(db, staff_access):
    _staff_record(db, staff_access)
    actions.revoke_consent_as_admin(db, staff_access, {
        "person_id": str(CLIENT_PERSON_ID),
        "consent_notes": "Client asked by phone",
    })
    event = db.query(models.AuditEvent).filter(models.AuditEvent.action == "consent_revoked_admin").one()
    assert event.meta["reason"] == "Client asked by phone"


def test_renew_keeps_scope_and_extends_expiry(db, client_access, staff_access):
    _staff_record(db, staff_access, consent_scope="selected_orgs", org_allowed_ids=["5"])
    consent = consents.get_active_consent(db, CLIENT_PERSON_ID)
    consent.expires_at = utcnow() - timedelta(days=2)
    db.commit()
    assert consents.get_effective_consent(db, CLIENT_PERSON_ID).effective_status == "expired"

    before = utcnow()
    result = actions.renew_client_consent(db, client_access, {"consent_id": consent.id})

    db.refresh(consent)
    assert consent.scope == "selected_orgs"
    assert consent.expires_at > before
    assert consent.captured_method == "portal"
    assert result.data["allowed_org_ids"] == [5]
    assert _active_grant_orgs(db, CLIENT_PERSON_ID) == {5}
    assert consents.get_effective_consent(db, CLIENT_PERSON_ID).effective_status == "active"
    assert _actions(db)[-1] == "consent_renewed"


def test_renew_never_shortens_expiry(db, staff_access):
    _staff_record(db, staff_access)
    consent = consents.get_active_consent(db, CLIENT_PERSON_ID)
    far = utcnow() + timedelta(days=5000)
    consent.expires_at = far
    db.commit()

    actions.renew_consent_as_admin(db, staff_access, {
        "consent_id": consent.id,
        "person_id": str(CLIENT_PERSON_ID),
        "attested_by_staff": "on",
        "attested_by_client": "on",
    })
    db.refresh(consent)
    assert consent.expires_at == far


def test_renew_can_change_scope_explicitly(db, staff_access):
    _staff_record(db, staff_access, consent_scope="all_orgs")
    consent = consents.get_active_consent(db, CLIENT_PERSON_ID)

    actions.renew_consent_as_admin(db, staff_access, {
        "consent_id": consent.id,
        "person_id": str(CLIENT_PERSON_ID),
        "consent_scope": "selected_orgs",
        "org_allowed_ids": ["8"],
        "attested_by_staff": "on",
        "attested_by_client": "on",
    })
    db.refresh(consent)
    assert consent.scope == "selected_orgs"
    assert _active_grant_orgs(db, CLIENT_PERSON_ID) == {8}


def test_renew_other_persons_consent_is_not_found(db, staff_access):
    _staff_record(db, staff_access, person_id=OTHER_PERSON_ID)
    consent = consents.get_active_consent(db, OTHER_PERSON_ID)
    with pytest.raises(NotFoundError):
        actions.renew_consent_as_admin(db, staff_access, {
            "consent_id": consent.id,
            "person_id": str(CLIENT_PERSON_ID),
            "attested_by_staff": "on",
            "attested_by_client": "on",
        })


def test_revoked_consent_cannot_be_renewed(db, client_access):
    actions.save_client_consent(db, client_access, {"consent_scope": "all_orgs", "consent_confirm": "on"})
    consent = consents.get_active_consent(db, CLIENT_PERSON_ID)
    actions.revoke_client_consent(db, client_access, {"revoke_confirm": "on"})
    with pytest.raises(ValidationError):
        actions.renew_client_consent(db, client_access, {"consent_id": consent.id})


def test_expired_consent_does_not_allow_access(db, staff_access):
    _staff_record(db, staff_access)
    consent = consents.get_active_consent(db, CLIENT_PERSON_ID)
    consent.expires_at = utcnow() - timedelta(minutes=1)
    db.commit()
    assert not consents.consent_allows_org(db, CLIENT_PERSON_ID, 3)


def test_manual_grants(db, staff_access):
    with pytest.raises(ValidationError):
        actions.create_grant(db, staff_access, {"person_id": str(CLIENT_PERSON_ID), "scope": "delete_everything",
                                                "grantee_org_id": "3"})
    with pytest.raises(ValidationError):
        actions.create_grant(db, staff_access, {"person_id": str(CLIENT_PERSON_ID), "scope": "view"})

    result = actions.create_grant(db, staff_access, {
        "person_id": str(CLIENT_PERSON_ID), "scope": "view", "grantee_user_id": "user-caseworker",
    })
    grant_id = result.data["grant"]["id"]
    assert [g.grantee_user_id for g in grants.list_active_grants(db, CLIENT_PERSON_ID)] == ["user-caseworker"]

    actions.revoke_grant(db, staff_access, {"grant_id": grant_id})
    assert grants.list_active_grants(db, CLIENT_PERSON_ID) == []
    with pytest.raises(NotFoundError):
        actions.revoke_grant(db, staff_access, {"grant_id": grant_id})


def test_same_instant_resave_reads_the_new_consent(db, client_access, monkeypatch):
    frozen = utcnow()
    monkeypatch.setattr(consents, "utcnow", lambda: frozen)

    actions.save_client_consent(db, client_access, {"consent_scope": "none", "consent_confirm": "on"})
    actions.save_client_consent(db, client_access, {"consent_scope": "all_orgs", "consent_confirm": "on"})

    latest = consents.get_latest_consent(db, CLIENT_PERSON_ID)
    assert latest.scope == "all_orgs"
    assert latest.status == "active"
    effective = consents.get_effective_consent(db, CLIENT_PERSON_ID, now=frozen)
    assert effective.effective_status == "active"
    for org_id in PARTNER_ORG_IDS:
        assert consents.consent_allows_org(db, CLIENT_PERSON_ID, org_id, now=frozen)
    assert _active_grant_orgs(db, CLIENT_PERSON_ID) == PARTNER_ORG_IDS
