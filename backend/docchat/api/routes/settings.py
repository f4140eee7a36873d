"""
Brand settings API routes.

Handles:
- GET: masked settings for a brand (any user with dm_user)
- PUT: upsert one setting (dm_editor or dm_admin)
- DELETE: remove one setting (dm_editor or dm_admin)

Security:
- Brand must exist and be active (BRAND_NOT_SUPPORTED otherwise)
- Secret values are never returned, not even encrypted
- The modifier recorded is always the caller's subject
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from docchat.api.schemas.settings import (
    BrandSettingsResponse,
    CompanySummary,
    SettingResponse,
    SettingUpdateRequest,
    SettingUpdateResponse,
)
from docchat.auth.interceptor import AuthContext, Role, with_auth
from docchat.database.session import get_db_session
from docchat.platform.errors import NotFoundError
from docchat.services.brand_resolver import BrandResolver
from docchat.services.settings_service import SettingsRepository, parse_setting_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("/{brand_code}", response_model=BrandSettingsResponse)
@with_auth([Role.USER])
async def get_brand_settings(
    request: Request,
    brand_code: str,
    auth: AuthContext,
    db: Session = Depends(get_db_session),
):
    """Settings for a brand with secrets masked."""
    company = await BrandResolver(db).require(brand_code)
    settings = await SettingsRepository(db).get_for_ui(company.brand_code)

    return BrandSettingsResponse(
        company=CompanySummary.model_validate(company),
        settings=[SettingResponse.model_validate(s) for s in settings],
    )


@router.put("/{brand_code}", response_model=SettingUpdateResponse)
@with_auth([Role.EDITOR, Role.ADMIN])
async def update_brand_setting(
    request: Request,
    brand_code: str,
    body: SettingUpdateRequest,
    auth: AuthContext,
    db: Session = Depends(get_db_session),
):
    """Create or update one setting for a brand."""
    setting_key = parse_setting_key(body.setting_key)
    company = await BrandResolver(db).require(brand_code)

    setting = await SettingsRepository(db).upsert(
        company.brand_code,
        setting_key,
        body.value,
        modified_by=auth.subject,
    )

    return SettingUpdateResponse(
        message="Setting updated successfully",
        setting_key=setting.setting_key,
        is_encrypted=setting.is_encrypted,
        updated_at=setting.updated_at,
    )


@router.delete("/{brand_code}/{setting_key}")
@with_auth([Role.EDITOR, Role.ADMIN])
async def delete_brand_setting(
    request: Request,
    brand_code: str,
    setting_key: str,
    auth: AuthContext,
    db: Session = Depends(get_db_session),
):
    key = parse_setting_key(setting_key)
    company = await BrandResolver(db).require(brand_code)

    deleted = await SettingsRepository(db).delete_setting(company.brand_code, key)
    if not deleted:
        raise NotFoundError("Setting", key.value)

    logger.info(
        "Setting removed via API",
        extra={"brand_code": brand_code, "setting_key": key.value, "subject": auth.subject},
    )
    return {"deleted": True, "setting_key": key.value}
