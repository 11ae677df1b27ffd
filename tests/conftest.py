# tests/conftest.py
from __future__ import annotations

import logging
import os
import sys

# must be set before consent_portal is imported
os.environ.setdefault("CONSENT_PORTAL_DATABASE_URL", "sqlite://")
os.environ.setdefault("CONSENT_PORTAL_SIGN_KEY", "test-sign-key")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from consent_portal import models
from consent_portal.access import (
    CAN_ACCESS_OPS_FRONTLINE,
    CAN_MANAGE_CONSENTS,
    PortalAccess,
)
from consent_portal.db import init_db
from consent_portal.main import app, get_db
from consent_portal.utils import sign_token

OPERATING_ORG_ID = 1
PARTNER_ORG_IDS = {3, 5, 7, 8}
INACTIVE_ORG_ID = 9
CLIENT_PERSON_ID = 10
OTHER_PERSON_ID = 11
CLIENT_USER_ID = "user-client"


@pytest.fixture(scope="session", autouse=True)
def _tests_log_to_stdout():
    root = logging.getLogger()
    if not any(getattr(h, "stream", None) is sys.stdout for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        root.addHandler(handler)
    root.setLevel(os.getenv("TEST_LOG_LEVEL", "INFO").upper())


def _seed(session):
    session.add_all([
        models.Organization(id=OPERATING_ORG_ID, name="Operating Agency", is_operating_agency=True),
        models.Organization(id=3, name="Alpha Shelter", organization_type="shelter"),
        models.Organization(id=5, name="Eastside Outreach", organization_type="outreach"),
        models.Organization(id=7, name="Beta Health", organization_type="health"),
        models.Organization(id=8, name="Gamma Housing", organization_type="housing"),
        models.Organization(id=INACTIVE_ORG_ID, name="Delta Closed", is_active=False),
        models.Person(id=CLIENT_PERSON_ID, display_name="Client A", user_id=CLIENT_USER_ID),
        models.Person(id=OTHER_PERSON_ID, display_name="Client B"),
    ])
    session.commit()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    _seed(session)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def staff_access():
    return PortalAccess(
        user_id="user-staff",
        profile_id="profile-staff",
        organization_id=OPERATING_ORG_ID,
        operating_org_id=OPERATING_ORG_ID,
        capabilities=frozenset({CAN_MANAGE_CONSENTS}),
    )


@pytest.fixture
def partner_access():
    return PortalAccess(
        user_id="user-partner",
        profile_id="profile-partner",
        organization_id=5,
        operating_org_id=OPERATING_ORG_ID,
        capabilities=frozenset({CAN_ACCESS_OPS_FRONTLINE}),
    )


@pytest.fixture
def client_access():
    return PortalAccess(
        user_id=CLIENT_USER_ID,
        profile_id="profile-client",
        operating_org_id=OPERATING_ORG_ID,
    )


def bearer(access: PortalAccess) -> dict:
    token = sign_token({
        "sub": access.user_id,
        "profile_id": access.profile_id,
        "org_id": access.organization_id,
        "caps": sorted(access.capabilities),
    })
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(db):
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
