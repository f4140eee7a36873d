"""
Brand settings request/response schemas.

Secret values never appear in responses; see SettingResponse.value.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from docchat.models.setting import SettingKey


class CompanySummary(BaseModel):
    """Tenant fields safe to show to any authenticated user."""
    id: int
    name: str
    description: Optional[str] = None
    brand_code: str

    model_config = ConfigDict(from_attributes=True)


class SettingResponse(BaseModel):
    """One setting as shown in the admin UI. Secrets are always masked."""
    setting_key: SettingKey
    value: Optional[str] = None
    is_encrypted: bool
    has_value: bool
    updated_at: Optional[datetime] = None
    last_modified_by: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class BrandSettingsResponse(BaseModel):
    company: CompanySummary
    settings: List[SettingResponse] = Field(default_factory=list)


class SettingUpdateRequest(BaseModel):
    setting_key: str = Field(..., min_length=1, description="Setting identifier")
    value: str = Field(..., min_length=1, description="New value (encrypted server-side for secrets)")


class SettingUpdateResponse(BaseModel):
    message: str
    setting_key: SettingKey
    is_encrypted: bool
    updated_at: Optional[datetime] = None
