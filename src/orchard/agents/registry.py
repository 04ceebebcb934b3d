from __future__ import annotations

import shlex
import shutil
from dataclasses import dataclass
from enum import StrEnum
from uuid import NAMESPACE_OID, UUID, uuid5

from orchard.errors import UnknownAgentError


class CommandClass(StrEnum):
    COLON_PRESERVING = "colon-preserving"
    HYPHENATED_SLASH = "hyphenated-slash"
    DOLLAR_PREFIXED = "dollar-prefixed"
    PROMPT_ONLY = "prompt-only"


class SkillFormat(StrEnum):
    MARKDOWN = "markdown"
    MARKDOWN_BARE = "markdown-bare"
    TOML = "toml"


def agent_session_id(task_id: str) -> str:
    """Conversation id an agent session is bound to, derived from the task id."""
    try:
        return str(UUID(task_id))
    except ValueError:
        return str(uuid5(NAMESPACE_OID, task_id))


@dataclass(slots=True, frozen=True)
class Agent:
    name: str
    binary: str
    description: str
    command_class: CommandClass
    interactive_template: str
    print_args: tuple[str, ...]
    skill_path_template: str
    skill_format: SkillFormat
    co_author: str
    session_template: str | None = None
    resume_template: str | None = None

    @property
    def supports_resume(self) -> bool:
        return self.resume_template is not None

    @property
    def supports_skills(self) -> bool:
        return self.command_class is not CommandClass.PROMPT_ONLY

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    def interactive_command(self, task_id: str | None = None) -> str:
        """Fresh launch; agents with resume support bind the session to ``task_id``."""
        if self.session_template is None or task_id is None:
            return self.interactive_template
        return self.session_template.format(session_id=shlex.quote(agent_session_id(task_id)))

    def resume_command(self, task_id: str) -> str:
        if self.resume_template is None:
            return self.interactive_command()
        return self.resume_template.format(session_id=shlex.quote(agent_session_id(task_id)))

    def print_command(self, prompt: str) -> list[str]:
        return [self.binary, *self.print_args, prompt]

    def skill_path(self, namespace: str, command: str) -> str:
        return self.skill_path_template.format(ns=namespace, cmd=command)


_AGENTS: tuple[Agent, ...] = (
    Agent(
        name="claude",
        binary="claude",
        description="Anthropic's Claude Code CLI",
        command_class=CommandClass.COLON_PRESERVING,
        interactive_template="claude --dangerously-skip-permissions",
        session_template="claude --dangerously-skip-permissions --session-id {session_id}",
        resume_template="claude --dangerously-skip-permissions --resume {session_id}",
        print_args=("--print",),
        skill_path_template=".claude/commands/{ns}/{cmd}.md",
        skill_format=SkillFormat.MARKDOWN,
        co_author="Claude <noreply@anthropic.com>",
    ),
    Agent(
        name="codex",
        binary="codex",
        description="OpenAI's Codex CLI",
        command_class=CommandClass.DOLLAR_PREFIXED,
        interactive_template="codex --full-auto",
        print_args=("exec",),
        skill_path_template=".codex/skills/{ns}-{cmd}/SKILL.md",
        skill_format=SkillFormat.MARKDOWN,
        co_author="Codex <noreply@openai.com>",
    ),
    Agent(
        name="copilot",
        binary="copilot",
        description="GitHub Copilot CLI",
        command_class=CommandClass.PROMPT_ONLY,
        interactive_template="copilot --allow-all-tools",
        print_args=("--allow-all-tools", "-p"),
        skill_path_template=".github/agents/{ns}/{cmd}.md",
        skill_format=SkillFormat.MARKDOWN,
        co_author="GitHub Copilot <noreply@github.com>",
    ),
    Agent(
        name="gemini",
        binary="gemini",
        description="Google Gemini CLI",
        command_class=CommandClass.COLON_PRESERVING,
        interactive_template="gemini --approval-mode yolo",
        print_args=("-p",),
        skill_path_template=".gemini/commands/{ns}/{cmd}.toml",
        skill_format=SkillFormat.TOML,
        co_author="Gemini <noreply@google.com>",
    ),
    Agent(
        name="opencode",
        binary="opencode",
        description="AI-powered coding assistant",
        command_class=CommandClass.HYPHENATED_SLASH,
        interactive_template="opencode",
        print_args=("run",),
        skill_path_template=".opencode/commands/{ns}-{cmd}.md",
        skill_format=SkillFormat.MARKDOWN_BARE,
        co_author="OpenCode <noreply@opencode.ai>",
    ),
)

AGENT_NAMES: tuple[str, ...] = tuple(agent.name for agent in _AGENTS)


@dataclass(slots=True, frozen=True)
class AgentStatus:
    agent: Agent
    available: bool


def known_agents() -> list[Agent]:
    return list(_AGENTS)


def resolve_agent(name: str) -> Agent:
    normalized = name.strip().lower()
    for agent in _AGENTS:
        if agent.name == normalized:
            return agent
    raise UnknownAgentError(name)


def detect_available() -> list[Agent]:
    return [agent for agent in _AGENTS if agent.is_available()]


def all_agent_status() -> list[AgentStatus]:
    return [AgentStatus(agent=agent, available=agent.is_available()) for agent in _AGENTS]
