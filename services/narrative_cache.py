"""
Narrative cache: README content SHA -> one-sentence summary.

The cache is keyed by content hash only, never by user, so identical
README content is summarized once for everyone. Concurrent misses for the
same SHA share a single summarizer call.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from services.readme_summarizer import ReadmeSummarizer
from storage.skill_store import SkillStore

logger = logging.getLogger(__name__)


class NarrativeCache:
    def __init__(self, store: SkillStore, summarizer: ReadmeSummarizer):
        self.store = store
        self.summarizer = summarizer
        self._inflight: Dict[str, asyncio.Future] = {}
        self.hits = 0
        self.misses = 0

    async def get(self, readme_sha: str) -> Optional[str]:
        return await self.store.get_narrative(readme_sha)

    async def put(self, readme_sha: str, summary: str) -> None:
        await self.store.put_narrative(readme_sha, summary)

    async def get_or_summarize(self, readme_sha: str, repo_name: str, readme_text: str) -> Optional[str]:
        """Cached summary for the SHA, generating and storing one on a miss."""
        cached = await self.get(readme_sha)
        if cached is not None:
            self.hits += 1
            logger.debug(f"Narrative cache hit for {repo_name} ({readme_sha[:8]})")
            return cached

        pending = self._inflight.get(readme_sha)
        if pending is not None:
            return await asyncio.shield(pending)

        self.misses += 1
        task = asyncio.ensure_future(self._summarize(readme_sha, repo_name, readme_text))
        self._inflight[readme_sha] = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done():
                self._inflight.pop(readme_sha, None)
            else:
                task.add_done_callback(lambda _: self._inflight.pop(readme_sha, None))

    async def _summarize(self, readme_sha: str, repo_name: str, readme_text: str) -> Optional[str]:
        result = await self.summarizer.summarize(repo_name, readme_text)
        if result is None:
            return None
        try:
            await self.put(readme_sha, result.summary)
        except Exception as e:
            logger.warning(f"Could not store narrative for {repo_name}: {e}")
        return result.summary
