from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from orchard.errors import ConfigurationError
from orchard.models import Phase

CONFIG_DIR_ENV = "ORCHARD_CONFIG_DIR"
PROJECT_DIR_NAME = ".orchard"
HOOK_SKIP = "skip"


def global_config_dir() -> Path:
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "orchard"


def project_config_path(project_path: Path) -> Path:
    return project_path / PROJECT_DIR_NAME / "config.toml"


@dataclass(slots=True)
class PhaseAgentsConfig:
    research: str | None = None
    planning: str | None = None
    running: str | None = None
    review: str | None = None

    def get(self, phase: Phase) -> str | None:
        if phase.is_active:
            return getattr(self, phase.value)
        return None


@dataclass(slots=True)
class WorktreeConfig:
    enabled: bool = True
    auto_cleanup: bool = True
    base_branch: str = "main"


@dataclass(slots=True)
class SessionConfig:
    server_name: str = "orchard"
    startup_delay_seconds: float = 1.0
    trigger_poll_interval_seconds: float = 0.5
    trigger_timeout_seconds: float = 300.0


@dataclass(slots=True)
class StatusConfig:
    poll_interval_seconds: float = 0.1
    cache_ttl_seconds: float = 2.0


@dataclass(slots=True)
class GlobalConfig:
    default_agent: str = "claude"
    agents: PhaseAgentsConfig = field(default_factory=PhaseAgentsConfig)
    worktree: WorktreeConfig = field(default_factory=WorktreeConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    status: StatusConfig = field(default_factory=StatusConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GlobalConfig:
        return cls(
            default_agent=str(data.get("default_agent", "claude")),
            agents=_section(PhaseAgentsConfig, data, "agents"),
            worktree=_section(WorktreeConfig, data, "worktree"),
            session=_section(SessionConfig, data, "session"),
            status=_section(StatusConfig, data, "status"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "default_agent": self.default_agent,
            "agents": _as_dict(self.agents),
            "worktree": _as_dict(self.worktree),
            "session": _as_dict(self.session),
            "status": _as_dict(self.status),
        }

    @staticmethod
    def path() -> Path:
        return global_config_dir() / "config.toml"

    @classmethod
    def load(cls, path: Path | None = None) -> GlobalConfig:
        data = _read_toml(path or cls.path())
        return cls.from_dict(data) if data else cls()

    def save(self, path: Path | None = None) -> None:
        _write_toml(path or self.path(), self.to_dict())


@dataclass(slots=True)
class ProjectConfig:
    default_agent: str | None = None
    agents: PhaseAgentsConfig = field(default_factory=PhaseAgentsConfig)
    base_branch: str | None = None
    copy_files: str | None = None
    init_script: str | None = None
    workflow_plugin: str | None = None
    review_hook: str | None = None
    done_hook: str | None = None
    allow_return_to_backlog: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectConfig:
        scalars = {key: value for key, value in data.items() if key != "agents"}
        unknown = set(scalars) - {item.name for item in fields(cls)}
        if unknown:
            raise ConfigurationError(
                "Unknown project config keys: " + ", ".join(sorted(unknown))
            )
        return cls(agents=_section(PhaseAgentsConfig, data, "agents"), **scalars)

    def to_dict(self) -> dict[str, Any]:
        payload = _as_dict(self)
        payload["agents"] = _as_dict(self.agents)
        return payload

    @classmethod
    def load(cls, project_path: Path) -> ProjectConfig:
        data = _read_toml(project_config_path(project_path))
        return cls.from_dict(data) if data else cls()

    def save(self, project_path: Path) -> None:
        _write_toml(project_config_path(project_path), self.to_dict())


@dataclass(slots=True)
class MergedConfig:
    default_agent: str
    phase_agents: PhaseAgentsConfig
    worktree_enabled: bool
    auto_cleanup: bool
    base_branch: str
    session: SessionConfig
    status: StatusConfig
    copy_files: str | None = None
    init_script: str | None = None
    workflow_plugin: str | None = None
    review_hook: str | None = None
    done_hook: str | None = None
    allow_return_to_backlog: bool = False

    @classmethod
    def merge(cls, global_config: GlobalConfig, project: ProjectConfig) -> MergedConfig:
        project_agents = project.agents
        global_agents = global_config.agents
        return cls(
            default_agent=project.default_agent or global_config.default_agent,
            phase_agents=PhaseAgentsConfig(
                research=project_agents.research or global_agents.research,
                planning=project_agents.planning or global_agents.planning,
                running=project_agents.running or global_agents.running,
                review=project_agents.review or global_agents.review,
            ),
            worktree_enabled=global_config.worktree.enabled,
            auto_cleanup=global_config.worktree.auto_cleanup,
            base_branch=project.base_branch or global_config.worktree.base_branch,
            session=global_config.session,
            status=global_config.status,
            copy_files=project.copy_files,
            init_script=project.init_script,
            workflow_plugin=project.workflow_plugin,
            review_hook=project.review_hook,
            done_hook=project.done_hook,
            allow_return_to_backlog=project.allow_return_to_backlog,
        )

    @classmethod
    def load(cls, project_path: Path) -> MergedConfig:
        return cls.merge(GlobalConfig.load(), ProjectConfig.load(project_path))

    def explicit_agent_for_phase(self, phase: Phase) -> str | None:
        return self.phase_agents.get(phase)

    def agent_for_phase(self, phase: Phase) -> str:
        return self.explicit_agent_for_phase(phase) or self.default_agent

    def copy_file_list(self) -> list[str]:
        if not self.copy_files:
            return []
        return [item.strip() for item in self.copy_files.split(",") if item.strip()]

    def hook_for(self, phase: Phase) -> str | None:
        if phase is Phase.REVIEW:
            return self.review_hook
        if phase is Phase.DONE:
            return self.done_hook
        return None


def _section(cls: type, data: dict[str, Any], name: str) -> Any:
    raw = data.get(name, {})
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config section [{name}] must be a table")
    try:
        return cls(**raw)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid keys in config section [{name}]: {exc}") from exc


def _as_dict(instance: Any) -> dict[str, Any]:
    return {
        item.name: getattr(instance, item.name)
        for item in fields(instance)
        if not isinstance(getattr(instance, item.name), PhaseAgentsConfig)
    }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return f"{rendered}0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(data: dict[str, Any]) -> str:
    lines: list[str] = []
    tables: list[tuple[str, dict[str, Any]]] = []
    for key, value in data.items():
        if isinstance(value, dict):
            tables.append((key, value))
        elif value is not None:
            lines.append(f"{key} = {_toml_value(value)}")
    if lines:
        lines.append("")
    for section, values in tables:
        present = {key: value for key, value in values.items() if value is not None}
        if not present:
            continue
        lines.append(f"[{section}]")
        for key, value in present.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def _read_toml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Failed to parse {path}: {exc}") from exc


def _write_toml(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(data), encoding="utf-8")
