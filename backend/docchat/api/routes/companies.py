"""
Company (brand) validation route.

Lets the client confirm that the brand it is about to work with exists
and is active before any brand-scoped call.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from docchat.api.schemas.companies import BrandValidationResponse, CompanyDetails
from docchat.auth.interceptor import AuthContext, Role, with_auth
from docchat.database.session import get_db_session
from docchat.platform.errors import ValidationError
from docchat.services.brand_resolver import BrandResolver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/companies", tags=["companies"])


@router.get("/validate", response_model=BrandValidationResponse)
@with_auth([Role.USER])
async def validate_brand(
    request: Request,
    auth: AuthContext,
    brand: Optional[str] = Query(None, description="Brand code to validate"),
    db: Session = Depends(get_db_session),
):
    """Validate a brand code from ?brand= or the X-Brand-Code header."""
    brand_code = brand or request.headers.get("X-Brand-Code")
    if not brand_code:
        raise ValidationError("Brand code is required")

    resolver = BrandResolver(db)
    company = await resolver.require(brand_code)
    stats = await resolver.get_with_stats(company.brand_code)

    return BrandValidationResponse(
        company=CompanyDetails(
            id=company.id,
            code=company.code,
            name=company.name,
            description=company.description,
            brand_code=company.brand_code,
            settings_count=stats.settings_count if stats else 0,
        ),
        is_valid=True,
    )
