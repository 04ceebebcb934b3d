from __future__ import annotations


class OrchardError(RuntimeError):
    """Base class for orchestration failures."""


class ConfigurationError(OrchardError):
    """Raised when configuration, plugin or skill definitions are invalid."""


class UnknownAgentError(ConfigurationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown agent: {name!r}")
        self.name = name


class UnsupportedAgentError(ConfigurationError):
    def __init__(self, agent: str, plugin: str) -> None:
        super().__init__(f"Plugin '{plugin}' does not support agent '{agent}'")
        self.agent = agent
        self.plugin = plugin


class PluginLoadError(ConfigurationError):
    """Raised when a plugin cannot be found or parsed."""


class SkillLoadError(ConfigurationError):
    """Raised when a skill file has a malformed header."""


class TransitionBlockedError(OrchardError):
    """Raised when a phase transition is aborted and the task keeps its phase."""

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id


class InvalidTransitionError(TransitionBlockedError):
    pass


class WorktreeError(TransitionBlockedError):
    pass


class MultiplexerError(OrchardError):
    """Raised when a tmux command fails."""

    def __init__(self, message: str, *, command: list[str] | None = None) -> None:
        super().__init__(message)
        self.command = command


class StoreError(OrchardError):
    """Raised when the task store cannot be read or written."""


class BackgroundBusyError(OrchardError):
    def __init__(self, task_id: str, pending: str) -> None:
        super().__init__(f"Task {task_id} already has a background operation in flight: {pending}")
        self.task_id = task_id
        self.pending = pending


class AgentExecutionError(OrchardError):
    """Raised when a non-interactive agent invocation fails."""

    def __init__(
        self,
        message: str,
        *,
        agent: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.agent = agent
        self.exit_code = exit_code
        self.retriable = retriable


class AgentTimeoutError(AgentExecutionError):
    """Raised when agent text generation exceeds the configured timeout."""


class ProviderError(OrchardError):
    """Raised when the pull-request provider rejects an operation."""
