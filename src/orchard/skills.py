from __future__ import annotations

import logging
import tomllib
from collections.abc import Iterable
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import TYPE_CHECKING

import yaml

from orchard.agents.registry import Agent, CommandClass, SkillFormat, known_agents, resolve_agent
from orchard.errors import SkillLoadError
from orchard.models import Phase

if TYPE_CHECKING:
    from orchard.plugins import WorkflowPlugin

logger = logging.getLogger(__name__)

SKILL_FILE = "SKILL.md"
CANONICAL_SKILL_DIR = Path(".orchard") / "skills"

_PHASE_SKILLS = {
    Phase.RESEARCH: "orchard-research",
    Phase.PLANNING: "orchard-plan",
    Phase.RUNNING: "orchard-execute",
    Phase.REVIEW: "orchard-review",
}


@dataclass(slots=True, frozen=True)
class Skill:
    name: str
    description: str
    body: str
    text: str
    source: str | None = None

    @property
    def namespace(self) -> str:
        return self.name.split("-", 1)[0]

    @property
    def command(self) -> str:
        return self.name.split("-", 1)[1]

    @property
    def canonical_command(self) -> str:
        return skill_name_to_command(self.name)


def skill_name_to_command(name: str) -> str:
    """``orchard-plan`` becomes ``/orchard:plan``; only the first hyphen is a separator."""
    return "/" + name.replace("-", ":", 1)


def phase_skill(phase: Phase) -> str | None:
    return _PHASE_SKILLS.get(phase)


def translate_command(canonical: str, agent: Agent | str) -> str:
    if isinstance(agent, str):
        agent = resolve_agent(agent)
    command_class = agent.command_class
    if command_class is CommandClass.COLON_PRESERVING:
        return canonical
    if command_class is CommandClass.HYPHENATED_SLASH:
        return canonical.replace(":", "-", 1)
    if command_class is CommandClass.DOLLAR_PREFIXED:
        transformed = canonical.replace(":", "-", 1)
        if transformed.startswith("/"):
            return "$" + transformed[1:]
        return transformed
    return ""


def _split_frontmatter(text: str) -> tuple[str | None, str]:
    if not text.startswith("---"):
        return None, text
    end = text.find("\n---", 3)
    if end == -1:
        raise SkillLoadError("Skill frontmatter is not terminated by '---'")
    header = text[3:end]
    body = text[end + 4 :]
    return header, body.lstrip("\n")


def strip_frontmatter(text: str) -> str:
    _, body = _split_frontmatter(text)
    return body


def parse_skill(text: str, *, source: str | None = None) -> Skill:
    header, body = _split_frontmatter(text)
    if header is None:
        raise SkillLoadError(f"Skill {source or '<inline>'} has no frontmatter header")
    try:
        meta = yaml.safe_load(header)
    except yaml.YAMLError as exc:
        raise SkillLoadError(f"Invalid skill frontmatter in {source or '<inline>'}: {exc}") from exc
    if not isinstance(meta, dict):
        raise SkillLoadError(f"Skill frontmatter in {source or '<inline>'} must be a mapping")

    name = meta.get("name")
    if not isinstance(name, str) or "-" not in name.strip("-"):
        raise SkillLoadError(
            f"Skill {source or '<inline>'} needs a 'name' of the form <namespace>-<command>"
        )
    description = meta.get("description", "")
    if not isinstance(description, str):
        raise SkillLoadError(f"Skill {name} has a non-string description")
    return Skill(
        name=name.strip(),
        description=description.strip(),
        body=body,
        text=text,
        source=source,
    )


def _gemini_toml(skill: Skill) -> str:
    escaped = skill.body.replace("\\", "\\\\").replace('"""', '\\"\\"\\"')
    description = skill.description.replace("\\", "\\\\").replace('"', '\\"')
    return f'description = "{description}"\n\nprompt = """\n{escaped}\n"""\n'


def render_skill(skill: Skill, agent: Agent | str) -> tuple[str, str]:
    if isinstance(agent, str):
        agent = resolve_agent(agent)
    relative_path = agent.skill_path(skill.namespace, skill.command)
    if agent.skill_format is SkillFormat.TOML:
        return relative_path, _gemini_toml(skill)
    if agent.skill_format is SkillFormat.MARKDOWN_BARE:
        return relative_path, skill.body
    return relative_path, skill.text


def fold_into_prompt(skill: Skill, prompt: str) -> str:
    body = skill.body.strip()
    if not prompt:
        return body
    return f"{body}\n\n{prompt}"


def deploy_skills(
    worktree: Path,
    skills: Iterable[Skill],
    agents: Iterable[Agent] | None = None,
) -> list[Path]:
    """Write each skill into every agent's discovery directory plus a canonical copy."""
    targets = list(agents) if agents is not None else known_agents()
    written: list[Path] = []
    for skill in skills:
        canonical = worktree / CANONICAL_SKILL_DIR / skill.name / SKILL_FILE
        canonical.parent.mkdir(parents=True, exist_ok=True)
        canonical.write_text(skill.text, encoding="utf-8")
        written.append(canonical)
        for agent in targets:
            relative_path, content = render_skill(skill, agent)
            destination = worktree / relative_path
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_text(content, encoding="utf-8")
            written.append(destination)
    logger.debug("Deployed %d skill files into %s", len(written), worktree)
    return written


def _load_skill_dir(root: Traversable | Path) -> dict[str, Skill]:
    loaded: dict[str, Skill] = {}
    if not root.is_dir():
        return loaded
    for entry in sorted(root.iterdir(), key=lambda item: item.name):
        skill_file = entry.joinpath(SKILL_FILE)
        if not entry.is_dir() or not skill_file.is_file():
            continue
        skill = parse_skill(skill_file.read_text(encoding="utf-8"), source=str(skill_file))
        loaded[skill.name] = skill
    return loaded


def bundled_skills() -> dict[str, Skill]:
    return _load_skill_dir(resources.files("orchard.bundled").joinpath("skills"))


def resolve_skills(plugin: WorkflowPlugin | None, project_path: Path) -> dict[str, Skill]:
    """Merge skills by name: plugin-local beats project-local beats bundled."""
    skills = bundled_skills()
    skills.update(_load_skill_dir(project_path / CANONICAL_SKILL_DIR))
    if plugin is not None and plugin.source_dir is not None:
        skills.update(_load_skill_dir(plugin.source_dir / "skills"))
    return skills


def _description_from_markdown(path: Path) -> str | None:
    try:
        header, _ = _split_frontmatter(path.read_text(encoding="utf-8"))
        meta = yaml.safe_load(header) if header else None
    except (SkillLoadError, yaml.YAMLError, OSError):
        return None
    if isinstance(meta, dict) and isinstance(meta.get("description"), str):
        return meta["description"].strip()
    return None


def _description_from_toml(path: Path) -> str | None:
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (tomllib.TOMLDecodeError, OSError):
        return None
    description = data.get("description")
    if isinstance(description, str) and description.strip():
        return description.strip()
    return None


def scan_agent_skills(agent: Agent | str, root: Path) -> list[tuple[str, str]]:
    """List ``(invocation, description)`` pairs already deployed for an agent."""
    if isinstance(agent, str):
        agent = resolve_agent(agent)
    results: list[tuple[str, str]] = []
    if agent.name == "codex":
        base = root / ".codex" / "skills"
        if base.is_dir():
            for entry in base.iterdir():
                skill_file = entry / SKILL_FILE
                if skill_file.is_file():
                    description = _description_from_markdown(skill_file)
                    results.append((f"${entry.name}", description or entry.name.replace("-", " ")))
    elif agent.name == "opencode":
        base = root / ".opencode" / "commands"
        if base.is_dir():
            for path in base.glob("*.md"):
                results.append((f"/{path.stem}", path.stem.replace("-", " ")))
    else:
        base = root / Path(agent.skill_path_template).parent.parent
        suffix = ".toml" if agent.skill_format is SkillFormat.TOML else ".md"
        if base.is_dir():
            for namespace in base.iterdir():
                if not namespace.is_dir():
                    continue
                for path in namespace.glob(f"*{suffix}"):
                    if suffix == ".toml":
                        description = _description_from_toml(path)
                    else:
                        description = _description_from_markdown(path)
                    results.append(
                        (
                            f"/{namespace.name}:{path.stem}",
                            description or path.stem.replace("-", " "),
                        )
                    )
    return sorted(results)
