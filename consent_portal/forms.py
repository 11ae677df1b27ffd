# consent_portal/forms.py
"""
Typed form inputs. Each action has one pydantic model; `parse_form` turns the
raw string-keyed form into that model or a set of field errors.

Parsing is forgiving where a sensible default exists (missing scope, unknown
method, junk in the org id list) and strict only for ids and required text.
"""
import typing
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import ValidationError as PydanticValidationError

from consent_portal.errors import ValidationError
from consent_portal.models import (
    CONSENT_METHODS,
    CONSENT_SCOPES,
    SCOPE_ALL_ORGS,
    SCOPE_SELECTED_ORGS,
)

STAFF_CONSENT_METHODS = ("staff_assisted", "verbal", "documented")
APPROVAL_SCOPES = (SCOPE_ALL_ORGS, SCOPE_SELECTED_ORGS)
CHECKBOX_ON = {"on", "true", "1", "yes"}

F = TypeVar("F", bound=BaseModel)
MAX_ID = 2 ** 63 - 1


# ---- field parsers ----

def _clean(raw) -> str:
    return str(raw if raw is not None else "").strip()


def parse_positive_int(raw) -> Optional[int]:
    try:
        value = int(_clean(raw))
    except ValueError:
        return None
    return value if 0 < value <= MAX_ID else None


def parse_org_ids(raw) -> List[int]:
    values = raw if isinstance(raw, (list, tuple)) else [raw]
    ids = []
    for value in values:
        parsed = parse_positive_int(value)
        if parsed is not None and parsed not in ids:
            ids.append(parsed)
    return ids


def parse_checkbox(raw) -> bool:
    if isinstance(raw, bool):
        return raw
    return _clean(raw).lower() in CHECKBOX_ON


def parse_choice(raw, choices, fallback):
    value = _clean(raw)
    return value if value in choices else fallback


def parse_optional_text(raw, max_length: int) -> Optional[str]:
    value = _clean(raw)
    if not value:
        return None
    return value[:max_length]


def parse_required_text(raw, label: str, max_length: int = 240) -> str:
    value = _clean(raw)
    if not value:
        raise ValueError(f"{label} is required.")
    if len(value) > max_length:
        raise ValueError(f"{label} must be {max_length} characters or fewer.")
    return value


def parse_required_id(raw, message: str) -> int:
    value = parse_positive_int(raw)
    if value is None:
        raise ValueError(message)
    return value


# ---- result ----

@dataclass
class FormResult(typing.Generic[F]):
    value: Optional[F] = None
    field_errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.value is not None and not self.field_errors

    def unwrap(self) -> F:
        if self.ok:
            return self.value
        first = next(iter(self.field_errors.values()), None)
        raise ValidationError(first, self.field_errors)


def _is_list_field(annotation) -> bool:
    return typing.get_origin(annotation) in (list, List)


def form_to_dict(model: Type[BaseModel], form: Mapping) -> dict:
    """Pull every declared field out of the form, so parsers also see missing keys as None."""
    data = {}
    for name, info in model.model_fields.items():
        if _is_list_field(info.annotation):
            if hasattr(form, "getlist"):
                data[name] = list(form.getlist(name))
            else:
                raw = form.get(name)
                data[name] = [] if raw is None else raw
        else:
            data[name] = form.get(name)
    return data


def parse_form(model: Type[F], form: Mapping) -> FormResult[F]:
    try:
        return FormResult(value=model.model_validate(form_to_dict(model, form)))
    except PydanticValidationError as exc:
        errors = {}
        for err in exc.errors():
            key = ".".join(str(part) for part in err["loc"]) or "__all__"
            if err["type"] == "value_error":
                errors[key] = str(err["ctx"]["error"])
            else:
                errors[key] = err["msg"]
        return FormResult(field_errors=errors)


# ---- forms ----

class _Form(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ClientConsentForm(_Form):
    consent_scope: str = SCOPE_ALL_ORGS
    consent_confirm: bool = False
    org_allowed_ids: List[int] = []
    policy_version: Optional[str] = None
    privacy_restrictions: Optional[str] = None
    preferred_contact: Optional[str] = None

    @field_validator("consent_scope", mode="before")
    @classmethod
    def clean_scope(cls, v):
        return parse_choice(v, CONSENT_SCOPES, SCOPE_ALL_ORGS)

    @field_validator("consent_confirm", mode="before")
    @classmethod
    def clean_confirm(cls, v):
        return parse_checkbox(v)

    @field_validator("org_allowed_ids", mode="before")
    @classmethod
    def clean_orgs(cls, v):
        return parse_org_ids(v)

    @field_validator("policy_version", mode="before")
    @classmethod
    def clean_policy(cls, v):
        return parse_optional_text(v, 120)

    @field_validator("privacy_restrictions", mode="before")
    @classmethod
    def clean_restrictions(cls, v):
        return parse_optional_text(v, 500)

    @field_validator("preferred_contact", mode="before")
    @classmethod
    def clean_contact(cls, v):
        return parse_optional_text(v, 60)


class StaffConsentForm(_Form):
    person_id: int
    consent_scope: str = SCOPE_ALL_ORGS
    consent_method: str = "staff_assisted"
    consent_notes: Optional[str] = None
    policy_version: Optional[str] = None
    attested_by_staff: bool = False
    attested_by_client: bool = False
    org_allowed_ids: List[int] = []

    @field_validator("person_id", mode="before")
    @classmethod
    def clean_person(cls, v):
        return parse_required_id(v, "Invalid person id.")

    @field_validator("consent_scope", mode="before")
    @classmethod
    def clean_scope(cls, v):
        return parse_choice(v, CONSENT_SCOPES, SCOPE_ALL_ORGS)

    @field_validator("consent_method", mode="before")
    @classmethod
    def clean_method(cls, v):
        return parse_choice(v, STAFF_CONSENT_METHODS, "staff_assisted")

    @field_validator("consent_notes", mode="before")
    @classmethod
    def clean_notes(cls, v):
        return parse_optional_text(v, 500)

    @field_validator("policy_version", mode="before")
    @classmethod
    def clean_policy(cls, v):
        return parse_optional_text(v, 120)

    @field_validator("attested_by_staff", "attested_by_client", mode="before")
    @classmethod
    def clean_attest(cls, v):
        return parse_checkbox(v)

    @field_validator("org_allowed_ids", mode="before")
    @classmethod
    def clean_orgs(cls, v):
        return parse_org_ids(v)


class OverrideConsentForm(StaffConsentForm):
    consent_method: str = "documented"
    consent_confirm: bool = False

    @field_validator("consent_method", mode="before")
    @classmethod
    def clean_method(cls, v):
        return parse_choice(v, CONSENT_METHODS, "documented")

    @field_validator("consent_confirm", mode="before")
    @classmethod
    def clean_confirm(cls, v):
        return parse_checkbox(v)


class RenewConsentForm(_Form):
    consent_id: str
    person_id: Optional[int] = None
    consent_method: Optional[str] = None
    # None keeps the stored scope
    consent_scope: Optional[str] = None
    org_allowed_ids: List[int] = []
    policy_version: Optional[str] = None
    attested_by_staff: bool = False
    attested_by_client: bool = False

    @field_validator("consent_id", mode="before")
    @classmethod
    def clean_consent(cls, v):
        return parse_required_text(v, "Consent id")

    @field_validator("person_id", mode="before")
    @classmethod
    def clean_person(cls, v):
        return parse_positive_int(v)

    @field_validator("consent_method", mode="before")
    @classmethod
    def clean_method(cls, v):
        return parse_choice(v, CONSENT_METHODS, None)

    @field_validator("consent_scope", mode="before")
    @classmethod
    def clean_scope(cls, v):
        return parse_choice(v, CONSENT_SCOPES, None)

    @field_validator("org_allowed_ids", mode="before")
    @classmethod
    def clean_orgs(cls, v):
        return parse_org_ids(v)

    @field_validator("policy_version", mode="before")
    @classmethod
    def clean_policy(cls, v):
        return parse_optional_text(v, 120)

    @field_validator("attested_by_staff", "attested_by_client", mode="before")
    @classmethod
    def clean_attest(cls, v):
        return parse_checkbox(v)


class RevokeConsentForm(_Form):
    consent_id: Optional[str] = None
    person_id: Optional[int] = None
    revoke_confirm: bool = False
    consent_notes: Optional[str] = None

    @field_validator("consent_id", mode="before")
    @classmethod
    def clean_consent(cls, v):
        return parse_optional_text(v, 64)

    @field_validator("person_id", mode="before")
    @classmethod
    def clean_person(cls, v):
        return parse_positive_int(v)

    @field_validator("revoke_confirm", mode="before")
    @classmethod
    def clean_confirm(cls, v):
        return parse_checkbox(v)

    @field_validator("consent_notes", mode="before")
    @classmethod
    def clean_notes(cls, v):
        return parse_optional_text(v, 500)


class ConsentRequestForm(_Form):
    person_id: int
    purpose: str
    request_note: Optional[str] = None

    @field_validator("person_id", mode="before")
    @classmethod
    def clean_person(cls, v):
        return parse_required_id(v, "Invalid person id.")

    @field_validator("purpose", mode="before")
    @classmethod
    def clean_purpose(cls, v):
        return parse_required_text(v, "Purpose")

    @field_validator("request_note", mode="before")
    @classmethod
    def clean_note(cls, v):
        return parse_optional_text(v, 240)


class ContactLogForm(_Form):
    person_id: int
    contact_summary: str

    @field_validator("person_id", mode="before")
    @classmethod
    def clean_person(cls, v):
        return parse_required_id(v, "Invalid person id.")

    @field_validator("contact_summary", mode="before")
    @classmethod
    def clean_summary(cls, v):
        return parse_required_text(v, "Summary")


class ApproveRequestForm(_Form):
    request_id: str
    consent_scope: str = SCOPE_SELECTED_ORGS
    consent_method: str = "verbal"
    consent_notes: Optional[str] = None
    decision_reason: Optional[str] = None
    policy_version: Optional[str] = None
    org_allowed_ids: List[int] = []

    @field_validator("request_id", mode="before")
    @classmethod
    def clean_request(cls, v):
        return parse_required_text(v, "Request id")

    @field_validator("consent_scope", mode="before")
    @classmethod
    def clean_scope(cls, v):
        return parse_choice(v, APPROVAL_SCOPES, SCOPE_SELECTED_ORGS)

    @field_validator("consent_method", mode="before")
    @classmethod
    def clean_method(cls, v):
        return parse_choice(v, CONSENT_METHODS, "verbal")

    @field_validator("consent_notes", mode="before")
    @classmethod
    def clean_notes(cls, v):
        return parse_optional_text(v, 500)

    @field_validator("decision_reason", mode="before")
    @classmethod
    def clean_reason(cls, v):
        return parse_optional_text(v, 240)

    @field_validator("policy_version", mode="before")
    @classmethod
    def clean_policy(cls, v):
        return parse_optional_text(v, 120)

    @field_validator("org_allowed_ids", mode="before")
    @classmethod
    def clean_orgs(cls, v):
        return parse_org_ids(v)


class DenyRequestForm(_Form):
    request_id: str
    decision_reason: Optional[str] = None

    @field_validator("request_id", mode="before")
    @classmethod
    def clean_request(cls, v):
        return parse_required_text(v, "Request id")

    @field_validator("decision_reason", mode="before")
    @classmethod
    def clean_reason(cls, v):
        return parse_optional_text(v, 240)


class GrantForm(_Form):
    person_id: int
    scope: str
    grantee_user_id: Optional[str] = None
    grantee_org_id: Optional[int] = None

    @field_validator("person_id", mode="before")
    @classmethod
    def clean_person(cls, v):
        return parse_required_id(v, "Invalid person id.")

    @field_validator("scope", mode="before")
    @classmethod
    def clean_scope(cls, v):
        return parse_required_text(v, "Scope", 60)

    @field_validator("grantee_user_id", mode="before")
    @classmethod
    def clean_user(cls, v):
        return parse_optional_text(v, 64)

    @field_validator("grantee_org_id", mode="before")
    @classmethod
    def clean_org(cls, v):
        return parse_positive_int(v)


class RevokeGrantForm(_Form):
    grant_id: str

    @field_validator("grant_id", mode="before")
    @classmethod
    def clean_grant(cls, v):
        return parse_required_text(v, "Grant id", 64)
