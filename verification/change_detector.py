"""
Change detection between the persisted claim set and a fresh run.

A skill is "added" when there is no prior claim for it, and "strengthened"
when its new score beats the prior one by more than STRENGTHEN_MARGIN.
Nothing else counts as a change.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Union

from storage.skill_store import StoredClaim
from verification.confidence_scorer import ScoredSkill

STRENGTHEN_MARGIN = 3


@dataclass
class StrengthenedSkill:
    skill: str
    from_score: int
    to_score: int

    def to_dict(self) -> Dict[str, Any]:
        return {"skill": self.skill, "from": self.from_score, "to": self.to_score}


@dataclass
class SkillDiff:
    added: List[str] = field(default_factory=list)
    strengthened: List[StrengthenedSkill] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.strengthened

    def to_dict(self) -> Dict[str, Any]:
        return {
            "skills_added": list(self.added),
            "skills_strengthened": [s.to_dict() for s in self.strengthened],
        }


def _prior_score(claim: Union[StoredClaim, int]) -> int:
    return claim if isinstance(claim, int) else claim.confidence_score


def diff_skills(
    previous: Mapping[str, Union[StoredClaim, int]],
    current: List[ScoredSkill],
) -> SkillDiff:
    """Classify a fresh result against prior claims (or prior scores) keyed by skill."""
    result = SkillDiff()
    for scored in current:
        prior = previous.get(scored.skill_name)
        if prior is None:
            result.added.append(scored.skill_name)
            continue
        before = _prior_score(prior)
        if scored.score > before + STRENGTHEN_MARGIN:
            result.strengthened.append(StrengthenedSkill(scored.skill_name, before, scored.score))
    return result
