"""
Brand resolver - gates brand-scoped operations behind an active tenant.

SECURITY REQUIREMENTS:
- NEVER trust a brand code from the client without a database lookup
- Inactive brands are indistinguishable from unknown ones
- A missing brand is "not supported", never an authorization failure
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from docchat.models.company import Company
from docchat.models.setting import Setting
from docchat.platform.errors import BrandNotSupportedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompanyStats:
    company: Company
    settings_count: int


class BrandResolver:
    """Maps brand codes to active Company records."""

    def __init__(self, session: Session):
        self.session = session

    def _lookup(self, brand_code: Optional[str]) -> Optional[Company]:
        if not brand_code or not brand_code.strip():
            return None
        return self.session.query(Company).filter(
            Company.brand_code == brand_code.strip(),
        ).first()

    async def resolve(self, brand_code: Optional[str]) -> Optional[Company]:
        """
        Return the active Company for a brand code.

        Returns None (not an error) when the brand is unknown or inactive.
        """
        company = self._lookup(brand_code)
        if company is None:
            logger.info("Unknown brand code", extra={"brand_code": brand_code})
            return None
        if not company.is_active:
            logger.info("Inactive brand code", extra={"brand_code": brand_code})
            return None
        return company

    async def require(self, brand_code: Optional[str]) -> Company:
        """
        Like resolve() but raises for unsupported brands.

        Raises:
            BrandNotSupportedError: If the brand is unknown or inactive
        """
        company = await self.resolve(brand_code)
        if company is None:
            raise BrandNotSupportedError(brand_code)
        return company

    async def list_active(self) -> List[Company]:
        """All active companies ordered by name."""
        return self.session.query(Company).filter(
            Company.is_active == True,  # noqa: E712
        ).order_by(Company.name.asc()).all()

    async def get_with_stats(self, brand_code: str) -> Optional[CompanyStats]:
        """Company (active or not) with its configured settings count."""
        company = self._lookup(brand_code)
        if company is None:
            return None

        settings_count = self.session.query(func.count(Setting.id)).filter(
            Setting.brand_code == company.brand_code,
        ).scalar() or 0

        return CompanyStats(company=company, settings_count=settings_count)
