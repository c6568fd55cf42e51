"""
README summarizer backed by Gemini.

Turns a repository README into a one-sentence summary and a tech-stack
list. The README is truncated before prompting to bound token cost.
Any API or parse failure yields None; callers continue without a summary.

Usage:
    summarizer = ReadmeSummarizer(SummarizerConfig.from_env())
    result = await summarizer.summarize("hello-world", readme_text)
    if result:
        print(result.summary, result.tech_stack)
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, List, Optional

from google import genai
from google.genai import types

from utils.rate_limiter import AsyncRateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)


@dataclass
class SummarizerConfig:
    """Configuration for ReadmeSummarizer."""
    api_key: Optional[str] = None
    model: str = "gemini-2.0-flash"
    temperature: float = 0.0
    max_tokens: int = 200
    max_readme_chars: int = 2400

    @classmethod
    def from_env(cls) -> SummarizerConfig:
        return cls(
            api_key=os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY"),
            model=os.getenv("SUMMARIZER_MODEL", "gemini-2.0-flash"),
            max_tokens=int(os.getenv("SUMMARIZER_MAX_OUTPUT_TOKENS", "200")),
            max_readme_chars=int(os.getenv("SUMMARIZER_MAX_README_CHARS", "2400")),
        )


@dataclass
class ReadmeSummary:
    summary: str
    tech_stack: List[str] = field(default_factory=list)


def strip_code_fences(text: str) -> str:
    """Remove a ```json ... ``` wrapper if the model added one."""
    text = text.strip()
    if text.startswith("```"):
        text = text.split("```")[1]
        if text.lower().startswith("json"):
            text = text[4:]
    return text.strip()


class ReadmeSummarizer:
    """
    Completion-service wrapper. Without an API key (or injected client)
    every call returns None and enrichment is effectively off.
    """

    PROMPT_TEMPLATE = """Analyze this README for the GitHub project "{repo_name}". Extract:
1) A one-sentence project summary
2) Tech stack used

README:
{readme}

Respond with ONLY valid JSON (no markdown, no code blocks):
{{"summary": "string", "techStack": ["string"]}}
"""

    def __init__(
        self,
        config: Optional[SummarizerConfig] = None,
        client: Optional[Any] = None,
        rate_limiter: Optional[AsyncRateLimiter] = None,
    ):
        self.config = config or SummarizerConfig()
        self.rate_limiter = rate_limiter or get_rate_limiter("summarizer")
        if client is not None:
            self._client = client
        elif self.config.api_key:
            self._client = genai.Client(api_key=self.config.api_key)
        else:
            self._client = None
            logger.info("GOOGLE_API_KEY not set; README summaries disabled")
        self.calls = 0

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def build_prompt(self, repo_name: str, readme_text: str) -> str:
        return self.PROMPT_TEMPLATE.format(
            repo_name=repo_name,
            readme=readme_text[: self.config.max_readme_chars],
        )

    async def summarize(self, repo_name: str, readme_text: str) -> Optional[ReadmeSummary]:
        if not self.enabled or not readme_text.strip():
            return None

        await self.rate_limiter.acquire()
        self.calls += 1
        try:
            response = await self._client.aio.models.generate_content(
                model=self.config.model,
                contents=self.build_prompt(repo_name, readme_text),
                config=types.GenerateContentConfig(
                    temperature=self.config.temperature,
                    max_output_tokens=self.config.max_tokens,
                    response_mime_type="application/json",
                ),
            )
            response_text = response.text or ""
        except Exception as e:
            logger.warning(f"Gemini API error summarizing {repo_name}: {e}")
            return None

        return self.parse_response(repo_name, response_text)

    @staticmethod
    def parse_response(repo_name: str, response_text: str) -> Optional[ReadmeSummary]:
        try:
            data = json.loads(strip_code_fences(response_text))
        except json.JSONDecodeError as e:
            logger.warning(f"Unparseable summary for {repo_name}: {e}; response: {response_text[:200]}")
            return None

        summary = data.get("summary") if isinstance(data, dict) else None
        if not isinstance(summary, str) or not summary.strip():
            logger.warning(f"Summary for {repo_name} missing 'summary' field")
            return None

        stack = data.get("techStack") or data.get("tech_stack") or []
        return ReadmeSummary(
            summary=summary.strip(),
            tech_stack=[str(item) for item in stack] if isinstance(stack, list) else [],
        )
