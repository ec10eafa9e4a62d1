"""Tests for medminder.core.llm — provider routing and reply decoding.

No provider SDK is called; provider functions are replaced with mocks.
"""

from unittest.mock import AsyncMock, patch

import pytest

from medminder.core import llm


@pytest.fixture(autouse=True)
def fresh_provider():
    llm.reset_provider()
    yield
    llm.reset_provider()


# ---------------------------------------------------------------------------
# Tests for provider selection
# ---------------------------------------------------------------------------


class TestComplete:
    @pytest.mark.asyncio
    async def test_provider_selected_once(self):
        provider = AsyncMock(return_value="hello")
        with patch.object(llm, "_select_provider", return_value=(provider, "m", "k")) as select:
            assert await llm.complete("sys", "one") == "hello"
            assert await llm.complete("sys", "two", max_tokens=64) == "hello"

        select.assert_called_once()
        provider.assert_awaited_with("k", "m", "sys", "two", 64)

    @pytest.mark.asyncio
    async def test_reset_reselects(self):
        provider = AsyncMock(return_value="")
        with patch.object(llm, "_select_provider", return_value=(provider, "m", "k")) as select:
            await llm.complete("sys", "one")
            llm.reset_provider()
            await llm.complete("sys", "two")
        assert select.call_count == 2

    @pytest.mark.asyncio
    async def test_missing_key_raises_and_is_not_cached(self):
        # conftest leaves LLM_API_KEY empty
        with pytest.raises(llm.LLMUnavailable):
            await llm.complete("sys", "hi")
        assert llm._selected is None

    def test_unknown_provider_rejected(self):
        from medminder.config import settings

        with patch.object(settings, "LLM_PROVIDER", "cohere"):
            with pytest.raises(ValueError):
                llm._select_provider()


# ---------------------------------------------------------------------------
# Tests for extract_json
# ---------------------------------------------------------------------------


class TestExtractJson:
    def test_plain_object(self):
        assert llm.extract_json('{"a": 1}') == {"a": 1}

    def test_fenced_and_wrapped(self):
        raw = 'Here you go:\n```json\n{"intent": "take"}\n```\nAnything else?'
        assert llm.extract_json(raw) == {"intent": "take"}

    def test_array(self):
        assert llm.extract_json('[{"a": 1}]') == [{"a": 1}]

    def test_no_json_raises(self):
        with pytest.raises(ValueError):
            llm.extract_json("I cannot help with that.")
        with pytest.raises(ValueError):
            llm.extract_json('{"a": ')
