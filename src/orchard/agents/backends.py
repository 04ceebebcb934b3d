from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from orchard.agents.registry import Agent, resolve_agent
from orchard.errors import AgentExecutionError, AgentTimeoutError

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


class TextBackend(ABC):
    @abstractmethod
    async def generate(self, prompt: str, *, cwd: Path) -> str:
        """Run a one-shot prompt and return the agent's text output."""


class AgentCliBackend(TextBackend):
    """Runs an agent CLI in its non-interactive print mode."""

    def __init__(self, agent: Agent) -> None:
        self.agent = agent

    def build_command(self, prompt: str) -> list[str]:
        return self.agent.print_command(prompt)

    async def generate(self, prompt: str, *, cwd: Path) -> str:
        command = self.build_command(prompt)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AgentExecutionError(
                f"{self.agent.name} binary not found: {self.agent.binary}",
                agent=self.agent.name,
                retriable=False,
            ) from exc

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            stderr_output = stderr.decode("utf-8", errors="replace").strip()
            raise AgentExecutionError(
                f"{self.agent.name} failed with exit code {process.returncode}: {stderr_output}",
                agent=self.agent.name,
                exit_code=process.returncode,
                retriable=True,
            )
        return stdout.decode("utf-8", errors="replace").strip()


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 120.0


class ResilientBackend(TextBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover."""

    def __init__(
        self,
        primary_name: str,
        primary_backend: TextBackend,
        fallback_name: str,
        fallback_backend: TextBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _attempt(self, backend: TextBackend, prompt: str, cwd: Path) -> str:
        try:
            return await asyncio.wait_for(
                backend.generate(prompt, cwd=cwd),
                timeout=self.retry_policy.timeout_seconds,
            )
        except TimeoutError as exc:
            raise AgentTimeoutError(
                f"Agent request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def generate(self, prompt: str, *, cwd: Path) -> str:
        attempts: list[tuple[str, TextBackend]] = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_backend))

        errors: list[str] = []
        for backend_name, backend in attempts:
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "agent_retry",
                            "agent": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    text = await self._attempt(backend, prompt, cwd)
                except AgentExecutionError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    logger.warning("Agent %s attempt %d failed: %s", backend_name, attempt, exc)
                    self._emit(
                        {
                            "event": "agent_attempt_failed",
                            "agent": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                if backend_name != self.primary_name:
                    self._emit(
                        {
                            "event": "agent_fallback_success",
                            "agent": backend_name,
                            "attempt": attempt,
                        }
                    )
                return text

        summary = "; ".join(errors[-6:])
        raise AgentExecutionError(
            f"All agent attempts failed. {summary}",
            agent=self.primary_name,
            retriable=False,
        )


def build_text_backend(
    agent_name: str,
    *,
    fallback_agent: str | None = None,
    retry_policy: RetryPolicy | None = None,
    event_hook: BackendEventHook | None = None,
) -> TextBackend:
    primary = AgentCliBackend(resolve_agent(agent_name))
    fallback_name = fallback_agent or agent_name
    fallback = AgentCliBackend(resolve_agent(fallback_name)) if fallback_agent else primary
    return ResilientBackend(
        primary_name=agent_name,
        primary_backend=primary,
        fallback_name=fallback_name,
        fallback_backend=fallback,
        retry_policy=retry_policy or RetryPolicy(),
        event_hook=event_hook,
    )
