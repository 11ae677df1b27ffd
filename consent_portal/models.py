# consent_portal/models.py
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from consent_portal.db import Base
from consent_portal.utils import utcnow

CONSENT_TYPE = "data_sharing"

SCOPE_ALL_ORGS = "all_orgs"
SCOPE_SELECTED_ORGS = "selected_orgs"
SCOPE_NONE = "none"
CONSENT_SCOPES = (SCOPE_ALL_ORGS, SCOPE_SELECTED_ORGS, SCOPE_NONE)

CONSENT_METHODS = ("portal", "staff_assisted", "verbal", "documented", "migration")

STATUS_ACTIVE = "active"
STATUS_EXPIRED = "expired"
STATUS_REVOKED = "revoked"

REQUEST_PENDING = "pending"
REQUEST_APPROVED = "approved"
REQUEST_DENIED = "denied"


def gen_uuid():
    return str(uuid.uuid4())


class Organization(Base):
    __tablename__ = "organizations"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    organization_type = Column(String, nullable=True)
    partnership_type = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_operating_agency = Column(Boolean, default=False, nullable=False)
    shares_data = Column(Boolean, default=True, nullable=False)


class Person(Base):
    __tablename__ = "people"
    id = Column(Integer, primary_key=True)
    display_name = Column(String, nullable=False)
    user_id = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime, default=utcnow)


class Consent(Base):
    __tablename__ = "person_consents"
    id = Column(String, primary_key=True, default=gen_uuid)
    person_id = Column(Integer, ForeignKey("people.id"), nullable=False, index=True)
    consent_type = Column(String, nullable=False, default=CONSENT_TYPE)
    scope = Column(String, nullable=False)
    status = Column(String, nullable=False, default=STATUS_ACTIVE)
    captured_by = Column(String, nullable=True)
    captured_method = Column(String, nullable=False)
    captured_org_id = Column(Integer, ForeignKey("organizations.id"), nullable=True)
    attested_by_staff = Column(Boolean, default=False, nullable=False)
    attested_by_client = Column(Boolean, default=False, nullable=False)
    attested_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    policy_version = Column(String, nullable=True)
    restrictions = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    expires_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    revoked_by = Column(String, nullable=True)


class ConsentOrgSelection(Base):
    __tablename__ = "person_consent_orgs"
    __table_args__ = (UniqueConstraint("consent_id", "organization_id"),)
    id = Column(String, primary_key=True, default=gen_uuid)
    consent_id = Column(String, ForeignKey("person_consents.id"), nullable=False, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    allowed = Column(Boolean, nullable=False)
    set_by = Column(String, nullable=True)
    set_at = Column(DateTime, default=utcnow)
    reason = Column(Text, nullable=True)


class PersonAccessGrant(Base):
    __tablename__ = "person_access_grants"
    id = Column(String, primary_key=True, default=gen_uuid)
    person_id = Column(Integer, ForeignKey("people.id"), nullable=False, index=True)
    scope = Column(String, nullable=False)
    grantee_org_id = Column(Integer, ForeignKey("organizations.id"), nullable=True)
    grantee_user_id = Column(String, nullable=True)
    granted_by = Column(String, nullable=True)
    granted_at = Column(DateTime, default=utcnow)
    revoked_at = Column(DateTime, nullable=True)
    revoked_by = Column(String, nullable=True)


class ConsentRequest(Base):
    __tablename__ = "person_consent_requests"
    id = Column(String, primary_key=True, default=gen_uuid)
    person_id = Column(Integer, ForeignKey("people.id"), nullable=False, index=True)
    requesting_org_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    purpose = Column(String, nullable=False)
    requested_scopes = Column(JSON, default=list)
    note = Column(Text, nullable=True)
    status = Column(String, nullable=False, default=REQUEST_PENDING)
    requested_at = Column(DateTime, default=utcnow)
    requested_by = Column(String, nullable=True)
    decision_at = Column(DateTime, nullable=True)
    decision_by = Column(String, nullable=True)
    decision_reason = Column(Text, nullable=True)


class ConsentContactLog(Base):
    __tablename__ = "person_consent_contacts"
    id = Column(String, primary_key=True, default=gen_uuid)
    person_id = Column(Integer, ForeignKey("people.id"), nullable=False, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    summary = Column(Text, nullable=False)
    logged_by = Column(String, nullable=True)
    logged_at = Column(DateTime, default=utcnow)


class AuditEvent(Base):
    __tablename__ = "audit_events"
    id = Column(String, primary_key=True, default=gen_uuid)
    actor_profile_id = Column(String, nullable=True)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_ref = Column(String, nullable=False)
    meta = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)
