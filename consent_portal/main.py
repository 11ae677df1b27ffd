# consent_portal/main.py
from typing import Callable, List, Optional

from fastapi import Depends, FastAPI, Header, Path, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from consent_portal import actions, consent_requests, consents, grants, models, roster, schemas
from consent_portal.access import (
    PortalAccess,
    load_portal_access,
    require_access,
    require_manage_consents,
    require_person,
    require_person_for_user,
    require_request_access,
)
from consent_portal.app_logger import get_logger
from consent_portal.config import settings
from consent_portal.db import SessionLocal, init_db
from consent_portal.errors import ConsentError, StoreError, ValidationError
from consent_portal.forms import MAX_ID
from consent_portal.revalidation import revalidate_paths

log = get_logger("api")

app = FastAPI(title=settings.APP_NAME)

# Initialize DB
init_db()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_access(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)) -> Optional[PortalAccess]:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    return load_portal_access(db, authorization.split(" ", 1)[1].strip())


async def get_form(request: Request):
    return await request.form()


# --- Error boundary
@app.exception_handler(ConsentError)
def consent_error_handler(request: Request, exc: ConsentError):
    body = schemas.ActionErrorOut(error=exc.message)
    if isinstance(exc, ValidationError):
        body.field_errors = exc.field_errors
    return JSONResponse(body.model_dump(), status_code=exc.status_code)


@app.exception_handler(SQLAlchemyError)
def store_error_handler(request: Request, exc: SQLAlchemyError):
    log.error("store failure on %s %s", request.method, request.url.path, exc_info=exc)
    failure = StoreError()
    return JSONResponse(schemas.ActionErrorOut(error=failure.message).model_dump(), status_code=failure.status_code)


def run_action(action: Callable, db: Session, access: Optional[PortalAccess], form) -> JSONResponse:
    result = action(db, access, form)
    response = JSONResponse(schemas.ActionOut(message=result.message, data=result.data).model_dump(mode="json"))
    revalidate_paths(response, result.revalidate)
    return response


def effective_consent_out(db: Session, person_id: int, exclude_org_id: Optional[int]) -> schemas.EffectiveConsentOut:
    effective = consents.get_effective_consent(db, person_id)
    orgs = roster.list_participating_organizations(db, exclude_org_id=exclude_org_id)
    resolution = consents.resolve_for_consent(db, effective.consent, [org.id for org in orgs])
    return schemas.EffectiveConsentOut(
        person_id=person_id,
        consent=schemas.ConsentOut.model_validate(effective.consent) if effective.consent else None,
        scope=effective.scope,
        status=effective.status,
        effective_status=effective.effective_status,
        expires_at=effective.expires_at,
        is_expired=effective.is_expired,
        selections=[
            schemas.OrgSelectionOut(
                id=org.id,
                name=org.name,
                organization_type=org.organization_type,
                partnership_type=org.partnership_type,
                allowed=org.id in resolution.allowed_org_ids,
            )
            for org in orgs
        ],
        **resolution.as_meta(),
    )


# --- Health
@app.get("/healthz")
def healthz():
    return {"status": "ok"}


# --- Reads
@app.get("/organizations/participating", response_model=List[schemas.OrganizationOut])
def participating_organizations(db: Session = Depends(get_db), access: Optional[PortalAccess] = Depends(get_access)):
    access = require_access(access, "list organizations")
    return roster.list_participating_organizations(db, exclude_org_id=access.operating_org_id)


@app.get("/profile/consent", response_model=schemas.EffectiveConsentOut)
def my_consent(db: Session = Depends(get_db), access: Optional[PortalAccess] = Depends(get_access)):
    access = require_access(access, "view own consent")
    person = require_person_for_user(db, access)
    return effective_consent_out(db, person.id, access.operating_org_id)


@app.get("/persons/{person_id}/consent", response_model=schemas.EffectiveConsentOut)
def person_consent(person_id: int = Path(gt=0, le=MAX_ID), db: Session = Depends(get_db),
                   access: Optional[PortalAccess] = Depends(get_access)):
    access = require_manage_consents(access, "view consent")
    require_person(db, person_id)
    return effective_consent_out(db, person_id, access.operating_org_id)


@app.get("/persons/{person_id}/consent/orgs/{org_id}", response_model=schemas.OrgAccessOut)
def person_consent_allows_org(person_id: int = Path(gt=0, le=MAX_ID), org_id: int = Path(gt=0, le=MAX_ID),
                              db: Session = Depends(get_db),
                              access: Optional[PortalAccess] = Depends(get_access)):
    access = require_request_access(access, "check consent")
    require_person(db, person_id)
    allowed = consents.consent_allows_org(db, person_id, org_id, exclude_org_id=access.operating_org_id)
    return schemas.OrgAccessOut(person_id=person_id, org_id=org_id, allowed=allowed)


@app.get("/persons/{person_id}/grants", response_model=List[schemas.GrantOut])
def person_grants(person_id: int = Path(gt=0, le=MAX_ID), db: Session = Depends(get_db),
                  access: Optional[PortalAccess] = Depends(get_access)):
    require_manage_consents(access, "list grants")
    require_person(db, person_id)
    return grants.list_active_grants(db, person_id)


@app.get("/app-admin/consent-requests", response_model=List[schemas.ConsentRequestOut])
def consent_request_queue(status: Optional[str] = Query(models.REQUEST_PENDING),
                          person_id: Optional[int] = Query(None, gt=0, le=MAX_ID),
                          db: Session = Depends(get_db), access: Optional[PortalAccess] = Depends(get_access)):
    require_manage_consents(access, "list consent requests")
    if status and status not in consent_requests.REQUEST_STATUSES:
        raise ValidationError("Unknown request status.", {"status": "Unknown request status."})
    return consent_requests.list_requests(db, status=status, person_id=person_id)


# --- Client self-service
@app.post("/profile/consents")
def update_consents(form=Depends(get_form), db: Session = Depends(get_db),
                    access: Optional[PortalAccess] = Depends(get_access)):
    return run_action(actions.save_client_consent, db, access, form)


@app.post("/profile/consents/renew")
def renew_my_consent(form=Depends(get_form), db: Session = Depends(get_db),
                     access: Optional[PortalAccess] = Depends(get_access)):
    return run_action(actions.renew_client_consent, db, access, form)


@app.post("/profile/consents/revoke")
def revoke_my_consent(form=Depends(get_form), db: Session = Depends(get_db),
                      access: Optional[PortalAccess] = Depends(get_access)):
    return run_action(actions.revoke_client_consent, db, access, form)


# --- Ops: partner requests and staff-recorded consent
@app.post("/ops/consents/request")
def request_consent(form=Depends(get_form), db: Session = Depends(get_db),
                    access: Optional[PortalAccess] = Depends(get_access)):
    return run_action(actions.request_consent, db, access, form)


@app.post("/ops/consents/contact")
def log_consent_contact(form=Depends(get_form), db: Session = Depends(get_db),
                        access: Optional[PortalAccess] = Depends(get_access)):
    return run_action(actions.log_consent_contact, db, access, form)


@app.post("/ops/consents/record")
def record_staff_consent(form=Depends(get_form), db: Session = Depends(get_db),
                         access: Optional[PortalAccess] = Depends(get_access)):
    return run_action(actions.record_staff_consent, db, access, form)


# --- Admin
@app.post("/app-admin/consents/override")
def override_consent(form=Depends(get_form), db: Session = Depends(get_db),
                     access: Optional[PortalAccess] = Depends(get_access)):
    return run_action(actions.override_consent, db, access, form)


@app.post("/app-admin/consents/renew")
def admin_renew_consent(form=Depends(get_form), db: Session = Depends(get_db),
                        access: Optional[PortalAccess] = Depends(get_access)):
    return run_action(actions.renew_consent_as_admin, db, access, form)


@app.post("/app-admin/consents/revoke")
def admin_revoke_consent(form=Depends(get_form), db: Session = Depends(get_db),
                         access: Optional[PortalAccess] = Depends(get_access)):
    return run_action(actions.revoke_consent_as_admin, db, access, form)


@app.post("/app-admin/consent-requests/approve")
def approve_consent_request(form=Depends(get_form), db: Session = Depends(get_db),
                            access: Optional[PortalAccess] = Depends(get_access)):
    return run_action(actions.approve_consent_request, db, access, form)


@app.post("/app-admin/consent-requests/deny")
def deny_consent_request(form=Depends(get_form), db: Session = Depends(get_db),
                         access: Optional[PortalAccess] = Depends(get_access)):
    return run_action(actions.deny_consent_request, db, access, form)


@app.post("/app-admin/grants")
def create_grant(form=Depends(get_form), db: Session = Depends(get_db),
                 access: Optional[PortalAccess] = Depends(get_access)):
    return run_action(actions.create_grant, db, access, form)


@app.post("/app-admin/grants/revoke")
def revoke_grant(form=Depends(get_form), db: Session = Depends(get_db),
                 access: Optional[PortalAccess] = Depends(get_access)):
    return run_action(actions.revoke_grant, db, access, form)
