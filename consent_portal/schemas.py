# consent_portal/schemas.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class _ORM(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class OrganizationOut(_ORM):
    id: int
    name: str
    organization_type: Optional[str] = None
    partnership_type: Optional[str] = None


class ConsentOut(_ORM):
    id: str
    person_id: int
    scope: str
    status: str
    captured_by: Optional[str] = None
    captured_method: str
    captured_org_id: Optional[int] = None
    attested_by_staff: bool
    attested_by_client: bool
    policy_version: Optional[str] = None
    notes: Optional[str] = None
    restrictions: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None


class OrgSelectionOut(BaseModel):
    id: int
    name: Optional[str] = None
    organization_type: Optional[str] = None
    partnership_type: Optional[str] = None
    allowed: bool


class EffectiveConsentOut(BaseModel):
    person_id: int
    consent: Optional[ConsentOut] = None
    scope: Optional[str] = None
    status: Optional[str] = None
    effective_status: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_expired: bool = False
    allowed_org_ids: List[int] = []
    blocked_org_ids: List[int] = []
    selections: List[OrgSelectionOut] = []


class ConsentRequestOut(_ORM):
    id: str
    person_id: int
    requesting_org_id: int
    purpose: str
    requested_scopes: List[str] = []
    note: Optional[str] = None
    status: str
    requested_at: Optional[datetime] = None
    decision_at: Optional[datetime] = None
    decision_by: Optional[str] = None
    decision_reason: Optional[str] = None


class GrantOut(_ORM):
    id: str
    person_id: int
    scope: str
    grantee_org_id: Optional[int] = None
    grantee_user_id: Optional[str] = None
    granted_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None


class OrgAccessOut(BaseModel):
    person_id: int
    org_id: int
    allowed: bool


class ActionOut(BaseModel):
    ok: bool = True
    message: Optional[str] = None
    data: Dict[str, Any] = {}


class ActionErrorOut(BaseModel):
    ok: bool = False
    error: str
    field_errors: Dict[str, str] = {}
