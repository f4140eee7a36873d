"""Domain services for brands and brand settings."""

from docchat.services.brand_resolver import BrandResolver
from docchat.services.settings_service import (
    MASKED_VALUE,
    SETTING_CLASSIFICATION,
    BrandSettings,
    SettingsRepository,
)

__all__ = [
    "BrandResolver",
    "MASKED_VALUE",
    "SETTING_CLASSIFICATION",
    "BrandSettings",
    "SettingsRepository",
]
