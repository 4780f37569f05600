"""Skill invocation: `/skill_name` anywhere in a query expands to the skill prompt."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from lens.agent.models import Skill

logger = logging.getLogger(__name__)

_SKILL_RE = re.compile(r"/([a-z0-9_-]+)", re.IGNORECASE)


@dataclass
class SkillMatch:
    skill: Skill
    modified_query: str


class SkillParser:
    """Looks up tenant skills by case-insensitive name."""

    def __init__(self, skills: list[Skill] | None = None) -> None:
        self._skills: list[Skill] = list(skills or [])

    def set_skills(self, skills: list[Skill]) -> None:
        self._skills = list(skills)
        logger.debug("Loaded skills: %s", [s.name for s in self._skills])

    def get_skill(self, name: str) -> Skill | None:
        lowered = name.lower()
        for skill in self._skills:
            if skill.name.lower() == lowered:
                return skill
        return None

    def parse(self, query: str) -> SkillMatch | None:
        """Expand the first /name token if it names a known skill.

        Only the first token is considered; an unknown name leaves the
        query untouched.
        """
        match = _SKILL_RE.search(query)
        if not match:
            return None

        token = match.group(1)
        skill = self.get_skill(token)
        if skill is None:
            logger.warning("Skill not found: %s", token)
            return None

        modified = query[: match.start()] + skill.prompt + query[match.end():]
        return SkillMatch(skill=skill, modified_query=modified)
