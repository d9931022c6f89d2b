"""Explicit skill registry: built-ins plus YAML skills loaded from disk."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml
from pydantic import ValidationError

from integration.logger import get_logger

from .builtin import builtin_skills
from .schema import Skill, UnknownSkill

_logger = get_logger(__name__)

_YAML_SUFFIXES = (".yaml", ".yml")


class SkillRegistry:
    """Skill definitions keyed by id.

    Constructed explicitly and passed to whoever needs it; there is no
    process-wide registry.

    Args:
        include_builtins: Register the built-in skills on construction.
    """

    def __init__(self, include_builtins: bool = True) -> None:
        self._skills: Dict[str, Skill] = {}
        self._lock = threading.Lock()
        if include_builtins:
            for skill in builtin_skills():
                self.register(skill)

    def register(self, skill: Skill) -> None:
        """Add or replace *skill*."""
        with self._lock:
            if skill.id in self._skills:
                _logger.info("Replacing skill definition", skill_id=skill.id)
            self._skills[skill.id] = skill

    def load(self, directory: str | Path) -> int:
        """Load every ``*.yaml`` / ``*.yml`` skill under *directory*.

        Files that fail to parse or validate are logged and skipped; a
        missing directory loads nothing.

        Returns:
            Number of skills registered.
        """
        root = Path(directory)
        if not root.is_dir():
            _logger.debug("Skill directory not found", path=str(root))
            return 0

        loaded = 0
        for path in sorted(p for p in root.iterdir() if p.suffix in _YAML_SUFFIXES):
            try:
                with path.open("r", encoding="utf-8") as fh:
                    raw = yaml.safe_load(fh)
                skill = Skill.model_validate(raw)
            except (yaml.YAMLError, ValidationError, OSError) as exc:
                _logger.warning("Skipping invalid skill file", path=str(path), error=str(exc))
                continue
            self.register(skill)
            loaded += 1

        _logger.info("Skills loaded", path=str(root), count=loaded)
        return loaded

    def get(self, skill_id: str) -> Skill:
        """Return the skill registered as *skill_id*.

        Raises:
            UnknownSkill: If no such skill exists.
        """
        with self._lock:
            skill = self._skills.get(skill_id)
        if skill is None:
            raise UnknownSkill(skill_id)
        return skill

    def find(self, skill_id: str) -> Optional[Skill]:
        with self._lock:
            return self._skills.get(skill_id)

    def all(self) -> List[Skill]:
        with self._lock:
            return sorted(self._skills.values(), key=lambda s: s.id)

    def by_tag(self, tag: str) -> List[Skill]:
        return [s for s in self.all() if tag in s.tags]

    def for_service(self, service: str) -> List[Skill]:
        """Skills applicable to *service*; skills without a restriction always match."""
        return [
            s for s in self.all()
            if s.applicable_services is None or service in s.applicable_services
        ]

    def summaries(self) -> List[Dict[str, object]]:
        return [
            {
                "id": s.id,
                "name": s.name,
                "description": s.description,
                "risk_level": s.risk_level.value,
                "steps": len(s.steps),
                "tags": list(s.tags),
            }
            for s in self.all()
        ]

    def ids(self) -> Iterable[str]:
        with self._lock:
            return sorted(self._skills)

    def __len__(self) -> int:
        with self._lock:
            return len(self._skills)

    def __contains__(self, skill_id: object) -> bool:
        with self._lock:
            return skill_id in self._skills
