"""
Tests for the brand resolver.
"""

import pytest

from docchat.platform.errors import BrandNotSupportedError
from docchat.services.brand_resolver import BrandResolver
from docchat.services.settings_service import SettingsRepository


@pytest.fixture
def resolver(db_session, companies):
    return BrandResolver(db_session)


class TestResolve:

    @pytest.mark.asyncio
    async def test_active_brand(self, resolver):
        company = await resolver.resolve("2_20")
        assert company.name == "DIESEL"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("brand_code", ["9_99", "0_00", "", None, "   "])
    async def test_unsupported_brand_is_none(self, resolver, brand_code):
        assert await resolver.resolve(brand_code) is None

    @pytest.mark.asyncio
    async def test_require_raises_brand_not_supported(self, resolver):
        with pytest.raises(BrandNotSupportedError) as exc_info:
            await resolver.require("9_99")

        assert exc_info.value.status_code == 404
        assert exc_info.value.code == "BRAND_NOT_SUPPORTED"


class TestListing:

    @pytest.mark.asyncio
    async def test_list_active_ordered_by_name(self, resolver):
        companies = await resolver.list_active()
        assert [c.name for c in companies] == ["DIESEL", "Documinds"]

    @pytest.mark.asyncio
    async def test_stats_count_settings(self, resolver, db_session):
        repository = SettingsRepository(db_session)
        await repository.upsert("2_20", "OPENAI_API_KEY", "sk-diesel", modified_by="alice")
        await repository.upsert("2_20", "LANGFLOW_FLOW_CHAT_ID", "flow-1", modified_by="alice")

        stats = await resolver.get_with_stats("2_20")

        assert stats.company.brand_code == "2_20"
        assert stats.settings_count == 2

    @pytest.mark.asyncio
    async def test_stats_unknown_brand(self, resolver):
        assert await resolver.get_with_stats("0_00") is None
