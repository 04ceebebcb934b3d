from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from pathlib import Path
from typing import Any

from orchard.agents.backends import TextBackend, build_text_backend
from orchard.agents.registry import resolve_agent
from orchard.engine import Engine
from orchard.errors import OrchardError, PluginLoadError
from orchard.executor import (
    BackgroundExecutor,
    BackgroundResult,
    PullRequestInfo,
    create_pull_request,
    generate_pr_description,
    push_to_existing_pr,
)
from orchard.models import ACTIVE_PHASES, PhaseStatus, Task
from orchard.plugins import load_plugin
from orchard.status import PollTarget, StatusPoller

logger = logging.getLogger(__name__)

BackendFactory = Callable[[str], TextBackend]
TickCallback = Callable[[dict[str, PhaseStatus], list[BackgroundResult]], None]


class ControlLoop:
    """Single writer of task state: applies background results and reads poller snapshots."""

    def __init__(
        self,
        engine: Engine,
        *,
        poller: StatusPoller | None = None,
        executor: BackgroundExecutor | None = None,
        backend_factory: BackendFactory | None = None,
        max_events: int = 200,
    ) -> None:
        self.engine = engine
        self.events: deque[dict[str, Any]] = deque(maxlen=max_events)
        if engine.event_hook is None:
            engine.event_hook = self.record_event
        status_config = engine.config.status
        self.poller = poller or StatusPoller(
            engine.sessions,
            interval_seconds=status_config.poll_interval_seconds,
            ttl_seconds=status_config.cache_ttl_seconds,
        )
        self.executor = executor or BackgroundExecutor(event_hook=self.record_event)
        self.backend_factory = backend_factory or (
            lambda agent: build_text_backend(agent, event_hook=self.record_event)
        )

    def record_event(self, event: dict[str, Any]) -> None:
        self.events.append(event)

    def tasks(self) -> list[Task]:
        return self.engine.store.list_tasks(self.engine.project.id)

    def poll_targets(self) -> list[PollTarget]:
        """Read-only view of the active tasks, safe to build off the event loop."""
        tasks = [task for task in self.tasks() if task.phase in ACTIVE_PHASES]
        if not tasks:
            return []
        windows = self.engine.sessions.discover()
        return [
            PollTarget(
                task_id=task.id,
                phase=task.phase,
                worktree=Path(task.worktree_path) if task.worktree_path else None,
                artifact=self._artifact_for(task),
                handle=windows.get(task.window_name),
            )
            for task in tasks
        ]

    def _artifact_for(self, task: Task) -> str | None:
        plugin = self.engine.plugins.peek(task.id)
        if plugin is None:
            try:
                plugin = load_plugin(task.plugin, self.engine.project_path)
            except PluginLoadError as exc:
                logger.warning("Task %s: %s", task.id, exc)
                return None
        return plugin.artifact_for(task.phase)

    def statuses(self) -> dict[str, PhaseStatus]:
        return self.poller.snapshot

    def tick(self) -> list[BackgroundResult]:
        results = self.executor.drain()
        for result in results:
            self._apply(result)
        return results

    def _apply(self, result: BackgroundResult) -> None:
        if not result.ok:
            logger.warning(
                "%s failed for task %s: %s", result.operation, result.task_id, result.error
            )
            return
        if result.operation != "create_pull_request":
            return
        if not isinstance(result.value, PullRequestInfo):
            return
        task = self.engine.store.get_task(result.task_id)
        if task is None:
            return
        task.pr_number = result.value.number
        task.pr_url = result.value.url
        self.engine.store.update_task(task)
        logger.info("Task %s linked to pull request %s", task.id, task.pr_url)

    def request_pull_request(self, task: Task) -> asyncio.Future[BackgroundResult]:
        if self.engine.provider is None:
            raise OrchardError("No pull request provider configured")
        provider = self.engine.provider
        agent = resolve_agent(task.agent)
        worktrees = self.engine.worktrees

        async def _job() -> PullRequestInfo:
            draft = await generate_pr_description(
                task, backend=self.backend_factory(agent.name), worktrees=worktrees
            )
            return await create_pull_request(
                task, draft, agent=agent, worktrees=worktrees, provider=provider
            )

        return self.executor.submit(task.id, "create_pull_request", _job)

    def request_push(
        self, task: Task, message: str | None = None
    ) -> asyncio.Future[BackgroundResult]:
        agent = resolve_agent(task.agent)

        async def _job() -> bool:
            return await push_to_existing_pr(
                task, agent=agent, worktrees=self.engine.worktrees, message=message
            )

        return self.executor.submit(task.id, "push_to_existing_pr", _job)

    async def run(self, stop: asyncio.Event, on_tick: TickCallback | None = None) -> None:
        self.engine.restore_sessions(self.tasks())
        poller_task = asyncio.create_task(self.poller.run(self.poll_targets, stop))
        try:
            while not stop.is_set():
                results = self.tick()
                if on_tick is not None:
                    on_tick(self.statuses(), results)
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.poller.interval_seconds)
                except TimeoutError:
                    continue
        finally:
            stop.set()
            await poller_task
            await self.executor.wait_all()
            self.tick()
