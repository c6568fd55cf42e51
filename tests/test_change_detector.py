"""
Tests for diffing fresh scores against persisted claims.
"""

from datetime import datetime, timezone

from storage.skill_store import StoredClaim
from verification.change_detector import STRENGTHEN_MARGIN, diff_skills
from verification.confidence_scorer import ScoredSkill
from verification.skill_aggregator import SkillEvidence, StrongestRepo


def scored(skill: str, score: int) -> ScoredSkill:
    evidence = SkillEvidence(
        skill_name=skill,
        repo_count=1,
        total_commits=0,
        stars_on_skill_repos=0,
        has_production_project=False,
        languages_percentage=0,
        last_used=None,
        strongest_repo=StrongestRepo("app", 0, 0, False, False),
    )
    return ScoredSkill(evidence=evidence, score=score, verified=score >= 30, label=skill)


class TestDiffSkills:
    """Added and strengthened classification."""

    def test_new_skill_is_added(self):
        diff = diff_skills({}, [scored("React", 40)])
        assert diff.added == ["React"]
        assert diff.strengthened == []
        assert not diff.is_empty

    def test_margin_is_exclusive(self):
        assert STRENGTHEN_MARGIN == 3
        assert diff_skills({"Go": 50}, [scored("Go", 53)]).is_empty
        diff = diff_skills({"Go": 50}, [scored("Go", 54)])
        assert [(s.skill, s.from_score, s.to_score) for s in diff.strengthened] == [("Go", 50, 54)]

    def test_decrease_is_not_a_change(self):
        assert diff_skills({"Go": 50}, [scored("Go", 20)]).is_empty

    def test_missing_skills_are_not_reported(self):
        assert diff_skills({"Go": 50, "Rust": 40}, [scored("Go", 50)]).is_empty

    def test_to_dict(self):
        diff = diff_skills({"Go": 30}, [scored("Go", 45), scored("Vue.js", 12)])
        assert diff.to_dict() == {
            "skills_added": ["Vue.js"],
            "skills_strengthened": [{"skill": "Go", "from": 30, "to": 45}],
        }

    def test_accepts_stored_claims(self):
        claim = StoredClaim(
            user_id="u1",
            skill_name="Go",
            verified=False,
            confidence_score=10,
            display_label="Go (10/100)",
            source="github",
            active=True,
            verified_at=None,
            last_updated=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )
        diff = diff_skills({"Go": claim}, [scored("Go", 14)])
        assert diff.strengthened[0].from_score == 10
