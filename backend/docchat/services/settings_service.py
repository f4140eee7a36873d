"""
Brand-scoped settings repository with selective at-rest encryption.

Handles:
- Upserting per-brand settings keyed on (brand_code, setting_key)
- UI-safe projections (secrets always masked)
- Internal decrypted reads for server-side integrations
- Re-encrypting every secret when SERVER_KEY is rotated, and encrypting
  secret rows that were written in plaintext before classification

SECURITY REQUIREMENTS:
- Whether a key is secret comes ONLY from SETTING_CLASSIFICATION
- Secrets are encrypted before they are written; plain_value stays NULL
- Decrypted values never leave the server process
- Undecryptable secrets degrade to "not configured" and are logged with
  brand, key and a truncated ciphertext prefix only
- ConfigurationError (missing SERVER_KEY) is never swallowed
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from docchat.models.base import utcnow
from docchat.models.setting import Setting, SettingKey
from docchat.platform.errors import ValidationError
from docchat.platform.redaction import truncate_for_log
from docchat.utils.encryption import (
    DecryptionError,
    MalformedPayloadError,
    SecretEncryptor,
)

logger = logging.getLogger(__name__)

MASKED_VALUE = "••••••••"


class SettingClassification(str, Enum):
    SECRET = "secret"
    PLAIN = "plain"


# Every SettingKey MUST appear here; checked at import time below.
SETTING_CLASSIFICATION: dict[SettingKey, SettingClassification] = {
    SettingKey.OPENAI_API_KEY: SettingClassification.SECRET,
    SettingKey.LANGFLOW_API_KEY: SettingClassification.SECRET,
    SettingKey.LANGFLOW_FLOW_CHAT_ID: SettingClassification.PLAIN,
    SettingKey.LANGFLOW_FLOW_EMBEDDINGS_ID: SettingClassification.PLAIN,
}

_unclassified = [key.value for key in SettingKey if key not in SETTING_CLASSIFICATION]
if _unclassified:
    raise RuntimeError(f"Setting keys missing a classification: {_unclassified}")


def is_secret(key: SettingKey) -> bool:
    return SETTING_CLASSIFICATION[key] is SettingClassification.SECRET


def parse_setting_key(raw: Union[str, SettingKey]) -> SettingKey:
    """
    Coerce a client-supplied key into a SettingKey.

    Raises:
        ValidationError: If the key is not a known setting
    """
    if isinstance(raw, SettingKey):
        return raw
    try:
        return SettingKey(raw)
    except ValueError:
        raise ValidationError(
            f"Unknown setting key: {raw}",
            details={"allowed": [k.value for k in SettingKey]},
        )


@dataclass(frozen=True)
class SettingView:
    """UI projection of a setting. Never carries a secret or its ciphertext."""
    setting_key: SettingKey
    value: Optional[str]
    is_encrypted: bool
    has_value: bool
    updated_at: Optional[datetime]
    last_modified_by: Optional[str]


@dataclass
class BrandSettings:
    """Decrypted settings bundle for internal consumers."""
    brand_code: str
    openai_api_key: Optional[str] = None
    langflow_api_key: Optional[str] = None
    chat_flow_id: Optional[str] = None
    embeddings_flow_id: Optional[str] = None


BRAND_SETTINGS_FIELDS: dict[SettingKey, str] = {
    SettingKey.OPENAI_API_KEY: "openai_api_key",
    SettingKey.LANGFLOW_API_KEY: "langflow_api_key",
    SettingKey.LANGFLOW_FLOW_CHAT_ID: "chat_flow_id",
    SettingKey.LANGFLOW_FLOW_EMBEDDINGS_ID: "embeddings_flow_id",
}


@dataclass
class ReencryptionReport:
    """Outcome of a key-rotation pass."""
    total: int = 0
    reencrypted: int = 0
    migrated: int = 0
    failed: List[tuple[str, str]] = field(default_factory=list)
    dry_run: bool = False


class SettingsRepository:
    """
    Persistence for brand settings.

    The encryptor is created from SERVER_KEY on first use; pass one in
    explicitly for tests or key rotation.
    """

    def __init__(self, session: Session, encryptor: Optional[SecretEncryptor] = None):
        self.session = session
        self._encryptor = encryptor

    @property
    def encryptor(self) -> SecretEncryptor:
        # Raises ConfigurationError when SERVER_KEY is unusable
        if self._encryptor is None:
            self._encryptor = SecretEncryptor.from_env()
        return self._encryptor

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_setting(
        self,
        brand_code: str,
        setting_key: Union[str, SettingKey],
    ) -> Optional[Setting]:
        key = parse_setting_key(setting_key)
        return self.session.query(Setting).filter(
            Setting.brand_code == brand_code,
            Setting.setting_key == key,
        ).first()

    def _settings_for_brand(self, brand_code: str) -> List[Setting]:
        settings = self.session.query(Setting).filter(
            Setting.brand_code == brand_code,
        ).all()
        return sorted(settings, key=lambda s: s.setting_key.value)

    async def get_for_ui(self, brand_code: str) -> List[SettingView]:
        """
        All settings for a brand, safe to send to a client.

        has_value reflects stored data, not decryptability, so a corrupted
        secret still shows as configured.
        """
        return [
            SettingView(
                setting_key=setting.setting_key,
                value=MASKED_VALUE if is_secret(setting.setting_key) else setting.plain_value,
                is_encrypted=is_secret(setting.setting_key),
                has_value=setting.has_value,
                updated_at=setting.updated_at,
                last_modified_by=setting.last_modified_by,
            )
            for setting in self._settings_for_brand(brand_code)
        ]

    def _read_value(self, setting: Setting) -> Optional[str]:
        if not is_secret(setting.setting_key):
            return setting.plain_value
        if not setting.encrypted_value:
            if setting.plain_value:
                logger.warning(
                    "Secret stored without encryption; run key rotation to encrypt it",
                    extra={
                        "brand_code": setting.brand_code,
                        "setting_key": setting.setting_key.value,
                    },
                )
            return setting.plain_value

        try:
            return self.encryptor.decrypt(setting.encrypted_value)
        except (MalformedPayloadError, DecryptionError) as e:
            logger.error(
                "Stored secret could not be decrypted; treating as not configured",
                extra={
                    "brand_code": setting.brand_code,
                    "setting_key": setting.setting_key.value,
                    "error_type": type(e).__name__,
                    "payload_prefix": truncate_for_log(setting.encrypted_value),
                },
            )
            return None

    async def get_decrypted_value(
        self,
        brand_code: str,
        setting_key: Union[str, SettingKey],
    ) -> Optional[str]:
        """
        Internal-only accessor for a setting's real value.

        Returns None when the setting is missing or cannot be decrypted.
        """
        setting = await self.get_setting(brand_code, setting_key)
        if setting is None:
            return None
        return self._read_value(setting)

    async def get_brand_settings(self, brand_code: str) -> BrandSettings:
        """
        Known settings for a brand as named fields.

        A field that fails to decrypt is left as None without affecting
        the others.
        """
        bundle = BrandSettings(brand_code=brand_code)
        for setting in self._settings_for_brand(brand_code):
            attribute = BRAND_SETTINGS_FIELDS.get(setting.setting_key)
            if attribute is None:
                continue
            setattr(bundle, attribute, self._read_value(setting))
        return bundle

    async def validate_setting_exists(
        self,
        brand_code: str,
        setting_key: Union[str, SettingKey],
    ) -> bool:
        setting = await self.get_setting(brand_code, setting_key)
        return setting is not None and setting.has_value

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(
        self,
        brand_code: str,
        setting_key: Union[str, SettingKey],
        value: str,
        modified_by: str,
    ) -> Setting:
        """
        Create or update a setting.

        Secret keys are encrypted before anything is written.

        Raises:
            ValidationError: Unknown key or empty value
            ConfigurationError: SERVER_KEY unusable while storing a secret
        """
        key = parse_setting_key(setting_key)
        if value is None or not str(value).strip():
            raise ValidationError(
                "Setting value must not be empty",
                details={"setting_key": key.value},
            )

        secret = is_secret(key)
        encrypted_value = self.encryptor.encrypt(value) if secret else None
        plain_value = None if secret else value

        for attempt in range(2):
            setting = await self.get_setting(brand_code, key)
            if setting is None:
                setting = Setting(
                    brand_code=brand_code,
                    setting_key=key,
                    created_by=modified_by,
                )
                self.session.add(setting)

            setting.encrypted_value = encrypted_value
            setting.plain_value = plain_value
            setting.is_encrypted = secret
            setting.last_modified_by = modified_by
            setting.updated_at = utcnow()

            try:
                self.session.commit()
                break
            except IntegrityError:
                # Concurrent insert of the same (brand, key); retry as update
                self.session.rollback()
                if attempt:
                    raise

        logger.info(
            "Setting saved",
            extra={
                "brand_code": brand_code,
                "setting_key": key.value,
                "is_encrypted": secret,
                "modified_by": modified_by,
            },
        )
        return setting

    async def delete_setting(
        self,
        brand_code: str,
        setting_key: Union[str, SettingKey],
    ) -> bool:
        """Delete a setting. Returns False if there was nothing to delete."""
        setting = await self.get_setting(brand_code, setting_key)
        if setting is None:
            return False

        self.session.delete(setting)
        self.session.commit()
        logger.info(
            "Setting deleted",
            extra={"brand_code": brand_code, "setting_key": setting.setting_key.value},
        )
        return True

    async def reencrypt_all(
        self,
        old_encryptor: SecretEncryptor,
        new_encryptor: SecretEncryptor,
        dry_run: bool = False,
    ) -> ReencryptionReport:
        """
        Re-encrypt every stored secret from the old key to the new one.

        Secret rows still holding plaintext are encrypted with the new key
        and counted in ReencryptionReport.migrated. Values that the old key
        cannot decrypt are left untouched and reported in
        ReencryptionReport.failed.
        """
        report = ReencryptionReport(dry_run=dry_run)
        secret_keys = [key for key in SettingKey if is_secret(key)]
        settings = self.session.query(Setting).filter(
            Setting.setting_key.in_(secret_keys),
        ).all()

        for setting in settings:
            if not setting.encrypted_value:
                if setting.plain_value:
                    if not dry_run:
                        setting.encrypted_value = new_encryptor.encrypt(setting.plain_value)
                        setting.plain_value = None
                        setting.is_encrypted = True
                    report.migrated += 1
                continue

            report.total += 1
            try:
                plaintext = old_encryptor.decrypt(setting.encrypted_value)
            except (MalformedPayloadError, DecryptionError) as e:
                logger.error(
                    "Secret not decryptable with previous key; manual re-entry required",
                    extra={
                        "brand_code": setting.brand_code,
                        "setting_key": setting.setting_key.value,
                        "error_type": type(e).__name__,
                        "payload_prefix": truncate_for_log(setting.encrypted_value),
                    },
                )
                report.failed.append((setting.brand_code, setting.setting_key.value))
                continue

            if not dry_run:
                setting.encrypted_value = new_encryptor.encrypt(plaintext)
            report.reencrypted += 1

        if not dry_run:
            self.session.commit()

        logger.info(
            "Key rotation pass finished",
            extra={
                "total": report.total,
                "reencrypted": report.reencrypted,
                "migrated": report.migrated,
                "failed": len(report.failed),
                "dry_run": dry_run,
            },
        )
        return report
