"""
Skill Aggregator

Groups per-repository facts into one evidence bundle per skill. A skill is
a language from a repo's byte-count map or a detected framework; a repo
contributes to every skill it exhibits, once.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from collectors.repo_analyzer import RepoFacts


@dataclass
class StrongestRepo:
    """Summary of the repo that best backs a skill"""
    name: str
    stars: int
    commits: int
    has_readme: bool
    has_live_demo: bool
    description: Optional[str] = None
    live_url: Optional[str] = None
    owner: Optional[str] = None


@dataclass
class SkillEvidence:
    """Aggregated evidence for one skill across a user's repositories"""
    skill_name: str
    repo_count: int
    total_commits: int
    stars_on_skill_repos: int
    has_production_project: bool
    languages_percentage: int
    last_used: Optional[str]  # YYYY-MM
    strongest_repo: StrongestRepo
    has_readme_mention: bool = False
    has_tests: bool = False
    readme_sha: Optional[str] = None
    narrative: Optional[str] = None

    def __post_init__(self):
        if self.repo_count < 1:
            raise ValueError(f"Evidence for {self.skill_name} needs at least one repo")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SkillEvidence:
        fields = dict(data)
        fields["strongest_repo"] = StrongestRepo(**fields["strongest_repo"])
        return cls(**fields)


class SkillAggregator:
    """Turns a list of RepoFacts into per-skill evidence."""

    def aggregate(self, repos: List[RepoFacts]) -> Dict[str, SkillEvidence]:
        """
        Evidence keyed by skill name, in first-seen order.

        Language percentage is measured against the bytes of *all* analyzed
        repos, not only the ones contributing to the skill.
        """
        grand_total_bytes = sum(repo.total_bytes for repo in repos)

        by_skill: Dict[str, List[RepoFacts]] = {}
        for repo in repos:
            for skill in repo.skills:
                by_skill.setdefault(skill, []).append(repo)

        return {
            skill: self._build(skill, contributing, grand_total_bytes)
            for skill, contributing in by_skill.items()
        }

    def _build(self, skill: str, repos: List[RepoFacts], grand_total_bytes: int) -> SkillEvidence:
        strongest = repos[0]
        for repo in repos[1:]:
            if repo.stars + repo.user_commits > strongest.stars + strongest.user_commits:
                strongest = repo

        pushed = [repo.last_pushed_at for repo in repos if repo.last_pushed_at]
        last_used = max(pushed)[:7] if pushed else None

        skill_bytes = sum(repo.languages.get(skill, 0) for repo in repos)
        percentage = _round_half_up(skill_bytes * 100 / grand_total_bytes) if grand_total_bytes else 0

        needle = skill.lower()
        mentioned = any(repo.readme_text and needle in repo.readme_text.lower() for repo in repos)

        return SkillEvidence(
            skill_name=skill,
            repo_count=len(repos),
            total_commits=sum(repo.user_commits for repo in repos),
            stars_on_skill_repos=sum(repo.stars for repo in repos),
            has_production_project=any(repo.has_deployment or repo.live_url for repo in repos),
            languages_percentage=percentage,
            last_used=last_used,
            strongest_repo=StrongestRepo(
                name=strongest.repo_name,
                stars=strongest.stars,
                commits=strongest.user_commits,
                has_readme=strongest.has_readme,
                has_live_demo=strongest.live_url is not None,
                description=strongest.description,
                live_url=strongest.live_url,
                owner=strongest.owner,
            ),
            has_readme_mention=mentioned,
            has_tests=any(repo.has_tests for repo in repos),
            readme_sha=strongest.readme_sha,
        )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))
