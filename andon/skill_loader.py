"""
Workflow instruction files.

A project may override the built-in instruction of any workflow by shipping
``.claude/skills/<workflow>/SKILL.md``. The file can open with a YAML
frontmatter block between ``---`` fences; only a mapping is kept as metadata.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

FENCE = "---"


class SkillNotFoundError(Exception):
    """No SKILL.md exists for the requested workflow."""

    def __init__(self, skill_name: str, path: Optional[Path] = None) -> None:
        self.skill_name = skill_name
        self.path = path
        where = f" at {path}" if path else ""
        super().__init__(f"Skill '{skill_name}' not found{where}")


@dataclass
class SkillDefinition:
    name: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    path: Optional[Path] = None

    @property
    def builtin(self) -> bool:
        """True when the content came from andon itself rather than a file."""
        return self.path is None


def split_frontmatter(text: str) -> tuple[str, dict[str, Any]]:
    """Return ``(body, metadata)``; unreadable frontmatter yields no metadata."""
    if not text.startswith(FENCE):
        return text, {}
    closing = text.find(FENCE, len(FENCE))
    if closing == -1:
        return text, {}

    header = text[len(FENCE):closing].strip()
    body = text[closing + len(FENCE):].lstrip()
    if not header:
        return body, {}

    try:
        parsed = yaml.safe_load(header)
    except yaml.YAMLError:
        return body, {}
    return body, parsed if isinstance(parsed, dict) else {}


class SkillLoader:

    def __init__(self, skills_dir: Path) -> None:
        self.skills_dir = Path(skills_dir)

    def path_for(self, skill_name: str) -> Path:
        return self.skills_dir / skill_name / "SKILL.md"

    def load_skill(self, skill_name: str) -> SkillDefinition:
        """
        Read and parse the SKILL.md for skill_name.

        Raises:
            SkillNotFoundError: If the file doesn't exist.
        """
        path = self.path_for(skill_name)
        if not path.is_file():
            raise SkillNotFoundError(skill_name, path)
        body, metadata = split_frontmatter(path.read_text())
        return SkillDefinition(name=skill_name, content=body, metadata=metadata, path=path)

    def load_or_default(self, skill_name: str, default_content: str) -> SkillDefinition:
        if self.path_for(skill_name).is_file():
            return self.load_skill(skill_name)
        return SkillDefinition(name=skill_name, content=default_content)
