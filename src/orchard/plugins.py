from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

from orchard.config import PROJECT_DIR_NAME, global_config_dir
from orchard.errors import PluginLoadError, UnsupportedAgentError
from orchard.models import Phase

logger = logging.getLogger(__name__)

PLUGIN_FILE = "plugin.toml"
DEFAULT_PLUGIN = "orchard"
PLANNING_WITH_RESEARCH = "planning_with_research"

DEFAULT_PROMPTS: dict[str, str] = {
    Phase.RESEARCH.value: "Task: {task}\n\nWrite your findings to .orchard/research.md",
    Phase.PLANNING.value: "Task: {task}",
    PLANNING_WITH_RESEARCH: (
        "Task: {task}\n\nResearch findings are available in .orchard/research.md. "
        "Use them as context."
    ),
    Phase.RUNNING.value: "Plan approved. Implement the changes described in .orchard/plan.md",
    Phase.REVIEW.value: "Implementation complete. Review the changes.",
}

DEFAULT_ARTIFACTS: dict[str, str] = {
    Phase.RESEARCH.value: ".orchard/research.md",
    Phase.PLANNING.value: ".orchard/plan.md",
    Phase.RUNNING.value: ".orchard/summary.md",
    Phase.REVIEW.value: ".orchard/review.md",
}

_PHASE_KEYS = frozenset(phase.value for phase in Phase if phase.is_active)
_TABLES = ("commands", "prompts", "artifacts", "prompt_triggers")


@dataclass(slots=True)
class WorkflowPlugin:
    """A named workflow definition.

    Per-phase tables keep ``None`` for omitted entries (use the built-in
    default) and ``""`` for explicitly empty ones (send nothing).
    """

    name: str
    description: str = ""
    init_script: str | None = None
    supported_agents: list[str] = field(default_factory=list)
    copy_dirs: list[str] = field(default_factory=list)
    commands: dict[str, str] = field(default_factory=dict)
    prompts: dict[str, str] = field(default_factory=dict)
    artifacts: dict[str, str] = field(default_factory=dict)
    prompt_triggers: dict[str, str] = field(default_factory=dict)
    source_dir: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, source_dir: Path | None = None) -> WorkflowPlugin:
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise PluginLoadError("Plugin definition needs a non-empty 'name'")
        for key in ("description", "init_script"):
            if key in data and not isinstance(data[key], str):
                raise PluginLoadError(f"Plugin '{name}': '{key}' must be a string")
        for key in ("supported_agents", "copy_dirs"):
            value = data.get(key, [])
            if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                raise PluginLoadError(f"Plugin '{name}': '{key}' must be a list of strings")

        tables: dict[str, dict[str, str]] = {}
        for table in _TABLES:
            raw = data.get(table, {})
            if not isinstance(raw, dict):
                raise PluginLoadError(f"Plugin '{name}': [{table}] must be a table")
            allowed = _PHASE_KEYS | ({PLANNING_WITH_RESEARCH} if table == "prompts" else set())
            for key, value in raw.items():
                if key not in allowed:
                    raise PluginLoadError(f"Plugin '{name}': unknown phase '{key}' in [{table}]")
                if not isinstance(value, str):
                    raise PluginLoadError(f"Plugin '{name}': {table}.{key} must be a string")
            tables[table] = dict(raw)

        return cls(
            name=name.strip(),
            description=data.get("description", ""),
            init_script=data.get("init_script"),
            supported_agents=list(data.get("supported_agents", [])),
            copy_dirs=list(data.get("copy_dirs", [])),
            source_dir=source_dir,
            **tables,
        )

    @classmethod
    def load(cls, path: Path) -> WorkflowPlugin:
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise PluginLoadError(f"Failed to parse {path}: {exc}") from exc
        except OSError as exc:
            raise PluginLoadError(f"Failed to read {path}: {exc}") from exc
        return cls.from_dict(data, source_dir=path.parent)

    def supports_agent(self, agent: str) -> bool:
        return not self.supported_agents or agent in self.supported_agents

    def require_agent(self, agent: str) -> None:
        if not self.supports_agent(agent):
            raise UnsupportedAgentError(agent, self.name)

    def command_for(self, phase: Phase) -> str | None:
        """Canonical command template, or ``None`` when the built-in skill applies."""
        return self.commands.get(phase.value)

    def prompt_for(self, phase: Phase, *, after_research: bool = False) -> str:
        if phase is Phase.PLANNING and after_research:
            if PLANNING_WITH_RESEARCH in self.prompts:
                return self.prompts[PLANNING_WITH_RESEARCH]
            if phase.value not in self.prompts:
                return DEFAULT_PROMPTS[PLANNING_WITH_RESEARCH]
        if phase.value in self.prompts:
            return self.prompts[phase.value]
        return DEFAULT_PROMPTS.get(phase.value, "")

    def artifact_for(self, phase: Phase) -> str | None:
        pattern = self.artifacts.get(phase.value, DEFAULT_ARTIFACTS.get(phase.value))
        return pattern or None

    def trigger_for(self, phase: Phase) -> str | None:
        return self.prompt_triggers.get(phase.value) or None

    def render_init_script(self, agent: str) -> str | None:
        if not self.init_script:
            return None
        return self.init_script.replace("{agent}", agent)


def plugin_search_path(project_path: Path | None) -> list[Path]:
    """Directories searched in order: project-local, user-global, bundled."""
    paths: list[Path] = []
    if project_path is not None:
        paths.append(project_path / PROJECT_DIR_NAME / "plugins")
    paths.append(global_config_dir() / "plugins")
    paths.append(Path(str(resources.files("orchard.bundled").joinpath("plugins"))))
    return paths


def find_plugin(name: str, project_path: Path | None) -> Path | None:
    for directory in plugin_search_path(project_path):
        candidate = directory / name / PLUGIN_FILE
        if candidate.is_file():
            return candidate
    return None


def load_plugin(name: str | None, project_path: Path | None) -> WorkflowPlugin:
    plugin_name = name or DEFAULT_PLUGIN
    path = find_plugin(plugin_name, project_path)
    if path is None:
        raise PluginLoadError(f"Workflow plugin not found: {plugin_name}")
    plugin = WorkflowPlugin.load(path)
    logger.debug("Loaded plugin %s from %s", plugin.name, path.parent)
    return plugin


def available_plugins(project_path: Path | None) -> list[WorkflowPlugin]:
    """Every resolvable plugin, first match per name wins."""
    seen: dict[str, WorkflowPlugin] = {}
    for directory in plugin_search_path(project_path):
        if not directory.is_dir():
            continue
        for entry in sorted(directory.iterdir()):
            plugin_file = entry / PLUGIN_FILE
            if entry.name in seen or not plugin_file.is_file():
                continue
            seen[entry.name] = WorkflowPlugin.load(plugin_file)
    return list(seen.values())


class PluginResolver:
    """Resolves each task's bound plugin once and caches it for the task's lifetime."""

    def __init__(self, project_path: Path) -> None:
        self.project_path = project_path
        self._bound: dict[str, WorkflowPlugin] = {}

    def for_task(self, task_id: str, plugin_name: str) -> WorkflowPlugin:
        plugin = self._bound.get(task_id)
        if plugin is None:
            plugin = load_plugin(plugin_name, self.project_path)
            self._bound[task_id] = plugin
        return plugin

    def peek(self, task_id: str) -> WorkflowPlugin | None:
        return self._bound.get(task_id)

    def forget(self, task_id: str) -> None:
        self._bound.pop(task_id, None)
