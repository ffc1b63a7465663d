"""
Public routes.
Unauthenticated lookups used by embeddable widgets.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from receptionist.db.crud import get_active_organization_by_slug
from receptionist.db.database import get_db
from receptionist.models.schemas import OrganizationLookupResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/public", tags=["public"])


@router.get("/org-lookup", response_model=OrganizationLookupResponse, response_model_by_alias=True)
async def org_lookup(slug: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    """Resolve a routing slug to its active organization."""
    organization = get_active_organization_by_slug(db, slug.strip().lower())
    if organization is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    return OrganizationLookupResponse(
        organization_id=str(organization.id),
        name=organization.name,
        slug=organization.slug
    )
