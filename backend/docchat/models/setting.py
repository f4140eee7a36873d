"""
Setting model - per-brand configuration values.

SECURITY REQUIREMENTS:
- Secret keys (API keys) are stored ONLY in encrypted_value
- Plain keys (flow identifiers) are stored ONLY in plain_value
- Which column is used depends on the key, never on the caller
- encrypted_value is never returned to clients, not even as ciphertext
"""

import enum

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, Enum, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship

from docchat.db_base import Base
from docchat.models.base import TimestampMixin


class SettingKey(str, enum.Enum):
    """Configurable per-brand settings."""
    OPENAI_API_KEY = "OPENAI_API_KEY"
    LANGFLOW_API_KEY = "LANGFLOW_API_KEY"
    LANGFLOW_FLOW_CHAT_ID = "LANGFLOW_FLOW_CHAT_ID"
    LANGFLOW_FLOW_EMBEDDINGS_ID = "LANGFLOW_FLOW_EMBEDDINGS_ID"


class Setting(Base, TimestampMixin):
    """One row per (brand_code, setting_key)."""

    __tablename__ = "settings"

    id = Column(
        Integer,
        primary_key=True,
        autoincrement=True,
        comment="Internal setting id"
    )
    brand_code = Column(
        String(50),
        ForeignKey("companies.brand_code", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Owning brand"
    )
    setting_key = Column(
        Enum(SettingKey),
        nullable=False,
        comment="Setting identifier"
    )

    # Encrypted secret - NEVER log or return
    encrypted_value = Column(
        Text,
        nullable=True,
        comment="iv_hex:ciphertext_hex payload for secret keys"
    )
    plain_value = Column(
        Text,
        nullable=True,
        comment="Plain value for non-secret keys"
    )
    is_encrypted = Column(
        Boolean,
        default=False,
        nullable=False,
        comment="True when the value lives in encrypted_value"
    )

    # Audit trail
    created_by = Column(
        String(255),
        nullable=True,
        comment="Subject that first configured the setting"
    )
    last_modified_by = Column(
        String(255),
        nullable=True,
        comment="Subject of the most recent update"
    )

    company = relationship("Company", back_populates="settings")

    __table_args__ = (
        UniqueConstraint(
            "brand_code", "setting_key",
            name="uq_settings_brand_key"
        ),
    )

    @property
    def has_value(self) -> bool:
        """True if a stored value is present, regardless of decryptability."""
        if self.is_encrypted:
            return bool(self.encrypted_value)
        return bool(self.plain_value)

    def __repr__(self) -> str:
        return (
            f"<Setting(id={self.id}, brand_code={self.brand_code}, "
            f"setting_key={self.setting_key}, is_encrypted={self.is_encrypted})>"
        )
