"""
Skill discovery - SKILL.md files injected into the system prompt.

A skill is a markdown file named SKILL.md with a frontmatter block giving
its ``name`` and ``description``; the body holds the instructions. Skills
are looked up under a few conventional directories of each base directory.
Later base directories override earlier ones by skill name.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

SKILL_FILENAME = "SKILL.md"
SKILL_SUBDIRS = (
    Path(".agents") / "skills",
    Path("skills"),
    Path(".agent") / "skills",
    Path(".claude") / "skills",
)
MAX_SEARCH_DEPTH = 3
MAX_SKILLS_PROMPT_CHARS = 30_000


@dataclass
class Skill:
    name: str
    description: str
    instructions: str
    source: Path


def parse_skill(path: Path, content: str) -> Skill | None:
    """Parse a SKILL.md file; None when it has no frontmatter or no name."""
    if not content.startswith("---"):
        return None
    parts = content.split("---", 2)
    if len(parts) < 3:
        return None

    meta: dict[str, str] = {}
    for line in parts[1].strip().splitlines():
        key, sep, value = line.partition(":")
        if sep:
            meta[key.strip()] = value.strip()

    name = meta.get("name", "")
    if not name:
        return None
    return Skill(
        name=name,
        description=meta.get("description", ""),
        instructions=parts[2].strip(),
        source=path,
    )


def _find_skill_files(directory: Path, depth: int = 0) -> list[Path]:
    if depth > MAX_SEARCH_DEPTH or not directory.is_dir():
        return []
    found: list[Path] = []
    try:
        children = sorted(directory.iterdir())
    except OSError as e:
        logger.warning(f"Cannot list skill directory {directory}: {e}")
        return []
    for child in children:
        if child.is_dir():
            found.extend(_find_skill_files(child, depth + 1))
        elif child.is_file() and child.name.upper() == SKILL_FILENAME.upper():
            found.append(child)
    return found


def load_skills(base_dirs: list[Path]) -> list[Skill]:
    """Discover skills under ``base_dirs``, deduplicated by name."""
    seen_files: set[Path] = set()
    by_name: dict[str, Skill] = {}

    for base in base_dirs:
        for subdir in SKILL_SUBDIRS:
            for path in _find_skill_files(Path(base) / subdir):
                resolved = path.resolve()
                if resolved in seen_files:
                    continue
                seen_files.add(resolved)
                try:
                    skill = parse_skill(path, path.read_text(encoding="utf-8"))
                except OSError as e:
                    logger.warning(f"Failed to read skill file {path}: {e}")
                    continue
                if skill:
                    by_name[skill.name] = skill
                    logger.debug(f"Loaded skill '{skill.name}' from {path}")

    return list(by_name.values())


def build_skills_prompt(base_dirs: list[Path]) -> str:
    """System prompt section describing every discovered skill."""
    skills = load_skills(base_dirs)
    if not skills:
        return ""

    lines = [
        "## Enhanced Action Skills",
        "You have the following specialized skills available to you. "
        "Follow these instructions when you recognize a relevant task:",
        "",
    ]
    total = 0
    for skill in skills:
        block = f"### Skill: {skill.name}\n"
        if skill.description:
            block += f"**Description:** {skill.description}\n\n"
        block += f"**Instructions:**\n{skill.instructions}\n\n---\n"
        if total + len(block) > MAX_SKILLS_PROMPT_CHARS:
            lines.append("(... more skills truncated)")
            break
        lines.append(block)
        total += len(block)

    return "\n".join(lines).strip()
