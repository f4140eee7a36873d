"""
Company validation schemas.
"""

from typing import Optional

from pydantic import BaseModel


class CompanyDetails(BaseModel):
    id: int
    code: str
    name: str
    description: Optional[str] = None
    brand_code: str
    settings_count: int = 0


class BrandValidationResponse(BaseModel):
    company: CompanyDetails
    is_valid: bool = True
