# consent_portal/roster.py
from typing import List, Optional

from sqlalchemy.orm import Session

from consent_portal import models


def list_participating_organizations(db: Session, exclude_org_id: Optional[int] = None) -> List[models.Organization]:
    """Partner orgs that currently take part in data sharing, by name. The operating agency is never a partner."""
    query = (
        db.query(models.Organization)
        .filter(models.Organization.is_active.is_(True))
        .filter(models.Organization.shares_data.is_(True))
        .filter(models.Organization.is_operating_agency.is_(False))
    )
    if exclude_org_id:
        query = query.filter(models.Organization.id != exclude_org_id)
    return query.order_by(models.Organization.name).all()


def participating_org_ids(db: Session, exclude_org_id: Optional[int] = None) -> List[int]:
    return [org.id for org in list_participating_organizations(db, exclude_org_id=exclude_org_id)]


def get_operating_org_id(db: Session) -> Optional[int]:
    org = (
        db.query(models.Organization)
        .filter(models.Organization.is_operating_agency.is_(True))
        .order_by(models.Organization.id)
        .first()
    )
    return org.id if org else None
