from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class Phase(StrEnum):
    BACKLOG = "backlog"
    RESEARCH = "research"
    PLANNING = "planning"
    RUNNING = "running"
    REVIEW = "review"
    DONE = "done"

    @property
    def is_active(self) -> bool:
        """Active phases own a worktree and a hosting window."""
        return self in ACTIVE_PHASES

    @classmethod
    def parse(cls, value: str) -> Phase:
        normalized = value.strip().lower()
        if normalized == "explore":
            return cls.RESEARCH
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ValueError(f"Unknown phase: {value!r}") from exc


ACTIVE_PHASES = frozenset({Phase.RESEARCH, Phase.PLANNING, Phase.RUNNING, Phase.REVIEW})
PHASE_ORDER = (
    Phase.BACKLOG,
    Phase.RESEARCH,
    Phase.PLANNING,
    Phase.RUNNING,
    Phase.REVIEW,
    Phase.DONE,
)


class PhaseStatus(StrEnum):
    WORKING = "working"
    READY = "ready"
    EXITED = "exited"

    @property
    def indicator(self) -> str:
        return {"working": "●", "ready": "✓", "exited": "✗"}[self.value]


_SLUG_PATTERN = re.compile(r"[^A-Za-z0-9_-]+")


@dataclass(slots=True)
class Task:
    id: str
    title: str
    project_id: str
    plugin: str
    agent: str
    description: str = ""
    phase: Phase = Phase.BACKLOG
    branch_name: str | None = None
    worktree_path: str | None = None
    # agent whose conversation is bound to the task id
    session_agent: str | None = None
    pr_number: int | None = None
    pr_url: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def new(
        cls,
        title: str,
        *,
        project_id: str,
        plugin: str,
        agent: str,
        description: str = "",
    ) -> Task:
        return cls(
            id=uuid4().hex,
            title=title.strip(),
            description=description.strip(),
            project_id=project_id,
            plugin=plugin,
            agent=agent,
        )

    @property
    def content(self) -> str:
        """Title plus description, the text substituted for ``{task}``."""
        if self.description:
            return f"{self.title}\n\n{self.description}"
        return self.title

    @property
    def slug(self) -> str:
        title_slug = _SLUG_PATTERN.sub("-", self.title)[:30].strip("-").lower()
        prefix = self.id[:8]
        return f"{prefix}-{title_slug}" if title_slug else prefix

    @property
    def window_name(self) -> str:
        return f"task-{self.slug}"

    def touch(self) -> None:
        self.updated_at = utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["phase"] = self.phase.value
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        known = set(cls.__dataclass_fields__)
        payload = {key: value for key, value in data.items() if key in known}
        payload["phase"] = Phase.parse(str(payload.get("phase", Phase.BACKLOG.value)))
        return cls(**payload)


@dataclass(slots=True)
class Project:
    id: str
    name: str
    path: str
    plugin: str | None = None
    default_agent: str | None = None
    last_opened: str = field(default_factory=utcnow_iso)

    @classmethod
    def new(cls, name: str, path: str, *, plugin: str | None = None) -> Project:
        return cls(id=uuid4().hex, name=name, path=path, plugin=plugin)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Project:
        known = set(cls.__dataclass_fields__)
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass(slots=True, frozen=True)
class SessionHandle:
    """Stable tmux identifiers of the window hosting a task."""

    session_id: str
    window_id: str

    @property
    def target(self) -> str:
        return self.window_id
