"""
Company model - tenant (brand) records.

Brands are provisioned out-of-band (seed script or admin) and are
read-only from the request path. Only active brands gate settings and
collection operations.
"""

from sqlalchemy import Column, Integer, String, Text, Boolean, Index
from sqlalchemy.orm import relationship

from docchat.db_base import Base
from docchat.models.base import TimestampMixin


class Company(Base, TimestampMixin):
    """
    Tenant record keyed externally by brand code.

    brand_code is the external-facing tenant identifier (e.g. "2_20") and
    is unique across all companies.
    """

    __tablename__ = "companies"

    id = Column(
        Integer,
        primary_key=True,
        autoincrement=True,
        comment="Internal company id"
    )
    code = Column(
        String(50),
        unique=True,
        nullable=False,
        comment="Internal company code"
    )
    name = Column(
        String(255),
        nullable=False,
        comment="Human readable company name"
    )
    description = Column(
        Text,
        nullable=True,
        comment="Free text description"
    )
    brand_code = Column(
        String(50),
        unique=True,
        nullable=False,
        comment="External tenant identifier used in URLs and settings"
    )
    is_active = Column(
        Boolean,
        default=True,
        nullable=False,
        comment="Inactive brands are treated as not supported"
    )

    settings = relationship(
        "Setting",
        back_populates="company",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_companies_brand_active", "brand_code", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<Company(id={self.id}, brand_code={self.brand_code}, "
            f"name={self.name}, is_active={self.is_active})>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "brand_code": self.brand_code,
            "is_active": self.is_active,
        }
