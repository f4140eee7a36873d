"""
Tests for the brand settings repository.

Verifies:
- Every setting key has a classification
- Secrets are encrypted at rest and masked for the UI
- Plain values are stored and shown as-is
- Undecryptable secrets degrade to "not configured" without affecting siblings
- Missing SERVER_KEY fails loudly on secret writes
- Key rotation re-encrypts what it can and reports the rest
- Secret-ness follows the classification even for rows stored in plaintext
"""

import logging

import pytest

from docchat.models import Setting, SettingKey
from docchat.platform.errors import ValidationError
from docchat.services.settings_service import (
    MASKED_VALUE,
    SETTING_CLASSIFICATION,
    SettingClassification,
    SettingsRepository,
    is_secret,
    parse_setting_key,
)
from docchat.utils.encryption import ConfigurationError, SecretEncryptor


@pytest.fixture
def repository(db_session, companies):
    return SettingsRepository(db_session)


def stored_row(db_session, brand_code, key):
    return db_session.query(Setting).filter(
        Setting.brand_code == brand_code,
        Setting.setting_key == key,
    ).one()


# ============================================================================
# CLASSIFICATION
# ============================================================================

class TestClassification:

    def test_every_key_classified(self):
        assert set(SETTING_CLASSIFICATION) == set(SettingKey)

    def test_api_keys_are_secret(self):
        assert is_secret(SettingKey.OPENAI_API_KEY) is True
        assert is_secret(SettingKey.LANGFLOW_API_KEY) is True
        assert SETTING_CLASSIFICATION[SettingKey.LANGFLOW_FLOW_CHAT_ID] is SettingClassification.PLAIN
        assert is_secret(SettingKey.LANGFLOW_FLOW_EMBEDDINGS_ID) is False

    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationError):
            parse_setting_key("NOT_A_SETTING")


# ============================================================================
# LIFECYCLE
# ============================================================================

class TestSettingLifecycle:

    @pytest.mark.asyncio
    async def test_secret_round_trip(self, repository, db_session):
        await repository.upsert("2_20", "OPENAI_API_KEY", "sk-test-123", modified_by="alice")

        row = stored_row(db_session, "2_20", SettingKey.OPENAI_API_KEY)
        assert row.is_encrypted is True
        assert row.plain_value is None
        assert "sk-test-123" not in row.encrypted_value
        assert row.created_by == "alice"
        assert row.last_modified_by == "alice"

        views = await repository.get_for_ui("2_20")
        assert len(views) == 1
        assert views[0].value == MASKED_VALUE
        assert views[0].has_value is True
        assert views[0].is_encrypted is True

        assert await repository.get_decrypted_value("2_20", "OPENAI_API_KEY") == "sk-test-123"

    @pytest.mark.asyncio
    async def test_plain_value_shown(self, repository, db_session):
        await repository.upsert("2_20", SettingKey.LANGFLOW_FLOW_CHAT_ID, "flow-abc", modified_by="bob")

        row = stored_row(db_session, "2_20", SettingKey.LANGFLOW_FLOW_CHAT_ID)
        assert row.is_encrypted is False
        assert row.encrypted_value is None

        views = await repository.get_for_ui("2_20")
        assert views[0].value == "flow-abc"

    @pytest.mark.asyncio
    async def test_update_keeps_creator(self, repository, db_session):
        await repository.upsert("2_20", "OPENAI_API_KEY", "sk-first", modified_by="alice")
        await repository.upsert("2_20", "OPENAI_API_KEY", "sk-second", modified_by="bob")

        row = stored_row(db_session, "2_20", SettingKey.OPENAI_API_KEY)
        assert row.created_by == "alice"
        assert row.last_modified_by == "bob"
        assert db_session.query(Setting).count() == 1
        assert await repository.get_decrypted_value("2_20", "OPENAI_API_KEY") == "sk-second"

    @pytest.mark.asyncio
    async def test_brands_are_isolated(self, repository):
        await repository.upsert("2_20", "OPENAI_API_KEY", "sk-diesel", modified_by="alice")

        assert await repository.get_for_ui("1_10") == []
        assert await repository.get_decrypted_value("1_10", "OPENAI_API_KEY") is None

    @pytest.mark.asyncio
    async def test_empty_value_rejected(self, repository):
        with pytest.raises(ValidationError):
            await repository.upsert("2_20", "OPENAI_API_KEY", "  ", modified_by="alice")

    @pytest.mark.asyncio
    async def test_missing_server_key_blocks_secret_write(self, repository, db_session, monkeypatch):
        monkeypatch.delenv("SERVER_KEY")

        with pytest.raises(ConfigurationError):
            await repository.upsert("2_20", "OPENAI_API_KEY", "sk-test-123", modified_by="alice")
        assert db_session.query(Setting).count() == 0

    @pytest.mark.asyncio
    async def test_delete_setting(self, repository):
        await repository.upsert("2_20", "LANGFLOW_API_KEY", "lf-key", modified_by="alice")

        assert await repository.delete_setting("2_20", "LANGFLOW_API_KEY") is True
        assert await repository.delete_setting("2_20", "LANGFLOW_API_KEY") is False
        assert await repository.validate_setting_exists("2_20", "LANGFLOW_API_KEY") is False

    @pytest.mark.asyncio
    async def test_validate_setting_exists(self, repository):
        await repository.upsert("2_20", "LANGFLOW_FLOW_CHAT_ID", "flow-abc", modified_by="bob")

        assert await repository.validate_setting_exists("2_20", "LANGFLOW_FLOW_CHAT_ID") is True
        assert await repository.validate_setting_exists("1_10", "LANGFLOW_FLOW_CHAT_ID") is False
        with pytest.raises(ValidationError):
            await repository.validate_setting_exists("2_20", "NOT_A_KEY")


# ============================================================================
# DEGRADATION
# ============================================================================

class TestUndecryptableSecrets:

    @pytest.mark.asyncio
    async def test_corrupted_secret_reads_as_absent(self, repository, db_session, caplog):
        await repository.upsert("2_20", "OPENAI_API_KEY", "sk-test-123", modified_by="alice")
        await repository.upsert("2_20", "LANGFLOW_API_KEY", "lf-key", modified_by="alice")
        await repository.upsert("2_20", "LANGFLOW_FLOW_CHAT_ID", "flow-abc", modified_by="alice")

        row = stored_row(db_session, "2_20", SettingKey.OPENAI_API_KEY)
        row.encrypted_value = "invalid-format"
        db_session.commit()

        with caplog.at_level(logging.ERROR):
            value = await repository.get_decrypted_value("2_20", "OPENAI_API_KEY")

        assert value is None
        assert any(
            getattr(r, "payload_prefix", None) == "invalid-format" for r in caplog.records
        )

        bundle = await repository.get_brand_settings("2_20")
        assert bundle.openai_api_key is None
        assert bundle.langflow_api_key == "lf-key"
        assert bundle.chat_flow_id == "flow-abc"

        views = {v.setting_key: v for v in await repository.get_for_ui("2_20")}
        assert views[SettingKey.OPENAI_API_KEY].has_value is True
        assert views[SettingKey.OPENAI_API_KEY].value == MASKED_VALUE

    @pytest.mark.asyncio
    async def test_rotated_key_reads_as_absent(self, db_session, companies, monkeypatch):
        writer = SettingsRepository(db_session, encryptor=SecretEncryptor("old-secret"))
        await writer.upsert("2_20", "OPENAI_API_KEY", "sk-test-123", modified_by="alice")

        reader = SettingsRepository(db_session, encryptor=SecretEncryptor("new-secret"))

        assert await reader.get_decrypted_value("2_20", "OPENAI_API_KEY") is None


# ============================================================================
# KEY ROTATION
# ============================================================================

class TestReencryptAll:

    @pytest.mark.asyncio
    async def test_reencrypts_to_new_key(self, db_session, companies):
        old = SecretEncryptor("old-secret")
        new = SecretEncryptor("new-secret")
        repository = SettingsRepository(db_session, encryptor=old)
        await repository.upsert("2_20", "OPENAI_API_KEY", "sk-diesel", modified_by="alice")
        await repository.upsert("1_10", "LANGFLOW_API_KEY", "lf-documinds", modified_by="alice")
        await repository.upsert("1_10", "LANGFLOW_FLOW_CHAT_ID", "flow-1", modified_by="alice")

        report = await repository.reencrypt_all(old, new)

        assert report.total == 2
        assert report.reencrypted == 2
        assert report.failed == []

        rotated = SettingsRepository(db_session, encryptor=new)
        assert await rotated.get_decrypted_value("2_20", "OPENAI_API_KEY") == "sk-diesel"
        assert await rotated.get_decrypted_value("1_10", "LANGFLOW_API_KEY") == "lf-documinds"
        assert await rotated.get_decrypted_value("1_10", "LANGFLOW_FLOW_CHAT_ID") == "flow-1"

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, db_session, companies):
        old = SecretEncryptor("old-secret")
        repository = SettingsRepository(db_session, encryptor=old)
        await repository.upsert("2_20", "OPENAI_API_KEY", "sk-diesel", modified_by="alice")
        before = stored_row(db_session, "2_20", SettingKey.OPENAI_API_KEY).encrypted_value

        report = await repository.reencrypt_all(old, SecretEncryptor("new-secret"), dry_run=True)

        assert report.dry_run is True
        assert report.reencrypted == 1
        assert stored_row(db_session, "2_20", SettingKey.OPENAI_API_KEY).encrypted_value == before

    @pytest.mark.asyncio
    async def test_undecryptable_values_reported(self, db_session, companies):
        old = SecretEncryptor("old-secret")
        repository = SettingsRepository(db_session, encryptor=SecretEncryptor("other-secret"))
        await repository.upsert("2_20", "OPENAI_API_KEY", "sk-diesel", modified_by="alice")

        report = await repository.reencrypt_all(old, SecretEncryptor("new-secret"))

        assert report.reencrypted == 0
        assert report.failed == [("2_20", "OPENAI_API_KEY")]


# ============================================================================
# PLAINTEXT SECRET ROWS
# ============================================================================

def insert_plaintext_secret(db_session, brand_code="2_20", value="sk-legacy"):
    row = Setting(
        brand_code=brand_code,
        setting_key=SettingKey.OPENAI_API_KEY,
        plain_value=value,
        is_encrypted=False,
        created_by="import",
        last_modified_by="import",
    )
    db_session.add(row)
    db_session.commit()
    return row


class TestPlaintextSecretRows:

    @pytest.mark.asyncio
    async def test_masked_for_ui(self, repository, db_session):
        insert_plaintext_secret(db_session)

        views = await repository.get_for_ui("2_20")

        assert views[0].value == MASKED_VALUE
        assert views[0].is_encrypted is True
        assert views[0].has_value is True

    @pytest.mark.asyncio
    async def test_internal_read_warns(self, repository, db_session, caplog):
        insert_plaintext_secret(db_session)

        with caplog.at_level(logging.WARNING):
            value = await repository.get_decrypted_value("2_20", "OPENAI_API_KEY")

        assert value == "sk-legacy"
        assert "Secret stored without encryption" in caplog.text
        assert "sk-legacy" not in caplog.text

    @pytest.mark.asyncio
    async def test_key_rotation_encrypts_them(self, db_session, companies):
        insert_plaintext_secret(db_session)
        new = SecretEncryptor("new-secret")
        repository = SettingsRepository(db_session, encryptor=SecretEncryptor("old-secret"))

        report = await repository.reencrypt_all(SecretEncryptor("old-secret"), new)

        assert report.migrated == 1
        assert report.total == 0
        row = stored_row(db_session, "2_20", SettingKey.OPENAI_API_KEY)
        assert row.is_encrypted is True
        assert row.plain_value is None
        assert new.decrypt(row.encrypted_value) == "sk-legacy"

    @pytest.mark.asyncio
    async def test_dry_run_leaves_them(self, db_session, companies):
        insert_plaintext_secret(db_session)
        repository = SettingsRepository(db_session)

        report = await repository.reencrypt_all(
            SecretEncryptor("old-secret"), SecretEncryptor("new-secret"), dry_run=True,
        )

        assert report.migrated == 1
        assert stored_row(db_session, "2_20", SettingKey.OPENAI_API_KEY).plain_value == "sk-legacy"
