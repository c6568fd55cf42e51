"""
Confidence Scorer

Pure scoring of a skill evidence bundle. No I/O.

Rubric (additive, total clamped to 0-100):
    base presence                 +10
    each extra repo               +8   (max +40)
    each 50 commits               +5   (max +25)
    stars >=200 / >=50 / >=10     +15 / +10 / +5
    production project            +10
    README mentions the skill     +3
    tests present                 +5
    used within 3 / 12 months     +5 / +2

A skill is verified at 30 or above.

Usage:
    scored = score_skill(evidence)
    scored.score, scored.verified, scored.label
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from verification.skill_aggregator import SkillEvidence

# =============================================================================
# CONFIGURATION
# =============================================================================

VERIFIED_THRESHOLD = 30
TIPS_BELOW_SCORE = 80

BASE_POINTS = 10
EXTRA_REPO_POINTS = 8
EXTRA_REPO_CAP = 40
COMMITS_PER_STEP = 50
COMMIT_STEP_POINTS = 5
COMMIT_CAP = 25
STAR_BUCKETS = ((200, 15), (50, 10), (10, 5))
PRODUCTION_POINTS = 10
README_MENTION_POINTS = 3
TESTS_POINTS = 5
RECENCY_BUCKETS = ((3, 5), (12, 2))  # (months, points)


@dataclass
class ScoredSkill:
    """Evidence with its score and display label"""
    evidence: SkillEvidence
    score: int
    verified: bool
    label: str

    @property
    def skill_name(self) -> str:
        return self.evidence.skill_name


def months_since(year_month: str, now: datetime) -> int:
    year, month = (int(part) for part in year_month.split("-")[:2])
    return (now.year - year) * 12 + (now.month - month)


def calculate_confidence_score(evidence: SkillEvidence, now: Optional[datetime] = None) -> int:
    """Score 0-100 for an evidence bundle. Deterministic for a fixed ``now``."""
    now = now or datetime.now(timezone.utc)
    score = 0

    if evidence.repo_count >= 1:
        score += BASE_POINTS
    score += min(EXTRA_REPO_POINTS * max(evidence.repo_count - 1, 0), EXTRA_REPO_CAP)
    score += min(COMMIT_STEP_POINTS * (max(evidence.total_commits, 0) // COMMITS_PER_STEP), COMMIT_CAP)

    for minimum, points in STAR_BUCKETS:
        if evidence.stars_on_skill_repos >= minimum:
            score += points
            break

    if evidence.has_production_project:
        score += PRODUCTION_POINTS
    if evidence.has_readme_mention:
        score += README_MENTION_POINTS
    if evidence.has_tests:
        score += TESTS_POINTS

    if evidence.last_used:
        try:
            age = months_since(evidence.last_used, now)
        except ValueError:
            age = None
        if age is not None:
            for months, points in RECENCY_BUCKETS:
                if age <= months:
                    score += points
                    break

    return max(0, min(score, 100))


def is_verified(score: int) -> bool:
    return score >= VERIFIED_THRESHOLD


def _commit_text(commits: int) -> str:
    if commits >= 1000:
        return f"{commits // 100 * 100}+ commits"
    if commits >= 100:
        return f"{commits // 10 * 10}+ commits"
    return f"{commits} commits"


def generate_display_label(evidence: SkillEvidence, score: int) -> str:
    """e.g. ``React — verified via 2 repos, 120+ commits, last used 2026-09 (62/100)``"""
    clauses: List[str] = []

    if evidence.repo_count > 0:
        clauses.append(f"{evidence.repo_count} repo{'s' if evidence.repo_count != 1 else ''}")
    if evidence.total_commits > 0:
        clauses.append(_commit_text(evidence.total_commits))
    if evidence.has_production_project:
        stars = evidence.stars_on_skill_repos
        clauses.append(f"production project with {stars} stars" if stars > 0 else "production project")
    if evidence.last_used:
        clauses.append(f"last used {evidence.last_used}")

    if not clauses:
        return f"{evidence.skill_name} ({score}/100)"
    return f"{evidence.skill_name} — verified via {', '.join(clauses)} ({score}/100)"


def generate_improvement_tips(evidence: SkillEvidence, score: int) -> List[str]:
    """Suggestions for raising a score; empty at 80 and above."""
    if score >= TIPS_BELOW_SCORE:
        return []

    skill = evidence.skill_name
    tips: List[str] = []
    if not evidence.has_production_project:
        tips.append(f"Add a live demo URL to your strongest {skill} repo to gain +{PRODUCTION_POINTS} points")
    if evidence.total_commits < COMMITS_PER_STEP:
        tips.append(f"Increase your commit count in {skill} projects to show sustained usage")
    if evidence.stars_on_skill_repos < 10 and evidence.repo_count < 3:
        tips.append(f"Add more projects that use {skill} to strengthen evidence")
    if not evidence.strongest_repo.has_readme:
        tips.append(f"Add a detailed README to your {skill} projects to demonstrate project quality")
    return tips


def score_skill(evidence: SkillEvidence, now: Optional[datetime] = None) -> ScoredSkill:
    score = calculate_confidence_score(evidence, now)
    return ScoredSkill(
        evidence=evidence,
        score=score,
        verified=is_verified(score),
        label=generate_display_label(evidence, score),
    )


def score_all(evidence: List[SkillEvidence], now: Optional[datetime] = None) -> List[ScoredSkill]:
    """Scored skills, highest score first (stable for ties)."""
    now = now or datetime.now(timezone.utc)
    scored = [score_skill(item, now) for item in evidence]
    return sorted(scored, key=lambda s: s.score, reverse=True)
