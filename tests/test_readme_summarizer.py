"""
Tests for the Gemini-backed README summarizer.
"""

from unittest.mock import AsyncMock

import pytest

from services.readme_summarizer import (
    ReadmeSummarizer,
    SummarizerConfig,
    strip_code_fences,
)
from tests.helpers import make_gemini_client
from utils.rate_limiter import AsyncRateLimiter


class TestParseResponse:
    """Parsing model output."""

    def test_plain_json(self):
        result = ReadmeSummarizer.parse_response("app", '{"summary": " A shop. ", "techStack": ["React", "Node"]}')
        assert result.summary == "A shop."
        assert result.tech_stack == ["React", "Node"]

    def test_fenced_json(self):
        text = '```json\n{"summary": "A CLI."}\n```'
        assert strip_code_fences(text) == '{"summary": "A CLI."}'
        assert ReadmeSummarizer.parse_response("app", text).summary == "A CLI."

    @pytest.mark.parametrize("text", ["not json", "[]", '{"techStack": []}', '{"summary": ""}'])
    def test_unusable_output(self, text):
        assert ReadmeSummarizer.parse_response("app", text) is None


class TestSummarize:
    """API calls through the async client."""

    @pytest.mark.asyncio
    async def test_success(self, summarizer, gemini_client):
        result = await summarizer.summarize("app", "# App\nA demo app")
        assert result.summary == "A demo app."
        assert summarizer.calls == 1

        kwargs = gemini_client.aio.models.generate_content.call_args.kwargs
        assert kwargs["model"] == "gemini-2.0-flash"
        assert '"app"' in kwargs["contents"]
        assert kwargs["config"].response_mime_type == "application/json"

    @pytest.mark.asyncio
    async def test_readme_truncated_in_prompt(self, gemini_client):
        summarizer = ReadmeSummarizer(
            SummarizerConfig(max_readme_chars=10), client=gemini_client, rate_limiter=AsyncRateLimiter()
        )
        await summarizer.summarize("app", "0123456789ABCDEFGHIJ")
        prompt = gemini_client.aio.models.generate_content.call_args.kwargs["contents"]
        assert "0123456789" in prompt
        assert "ABCDEFGHIJ" not in prompt

    @pytest.mark.asyncio
    async def test_api_error_yields_none(self, gemini_client, summarizer):
        gemini_client.aio.models.generate_content = AsyncMock(side_effect=RuntimeError("quota"))
        assert await summarizer.summarize("app", "# App") is None

    @pytest.mark.asyncio
    async def test_disabled_without_key(self):
        summarizer = ReadmeSummarizer(SummarizerConfig(api_key=None), rate_limiter=AsyncRateLimiter())
        assert summarizer.enabled is False
        assert await summarizer.summarize("app", "# App") is None
        assert summarizer.calls == 0

    @pytest.mark.asyncio
    async def test_blank_readme_skipped(self, summarizer):
        assert await summarizer.summarize("app", "   \n") is None
        assert summarizer.calls == 0

    def test_config_from_env(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
        monkeypatch.setenv("GEMINI_API_KEY", "g-key")
        monkeypatch.setenv("SUMMARIZER_MAX_README_CHARS", "500")
        config = SummarizerConfig.from_env()
        assert config.api_key == "g-key"
        assert config.max_readme_chars == 500

    def test_injected_client_enables(self):
        summarizer = ReadmeSummarizer(client=make_gemini_client(), rate_limiter=AsyncRateLimiter())
        assert summarizer.enabled is True
