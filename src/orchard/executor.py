from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from orchard.agents.backends import TextBackend
from orchard.agents.registry import Agent
from orchard.errors import AgentExecutionError, BackgroundBusyError, OrchardError
from orchard.models import Task
from orchard.provider import PullRequestProvider
from orchard.worktree import WorktreeManager

logger = logging.getLogger(__name__)

ExecutorEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class BackgroundResult:
    task_id: str
    operation: str
    ok: bool
    value: Any = None
    error: str | None = None


@dataclass(slots=True)
class PullRequestDraft:
    title: str
    body: str


@dataclass(slots=True)
class PullRequestInfo:
    number: int
    url: str


class BackgroundExecutor:
    """Runs slow per-task operations as asyncio tasks, at most one per task."""

    def __init__(self, event_hook: ExecutorEventHook | None = None) -> None:
        self.event_hook = event_hook
        self._pending: dict[str, tuple[str, asyncio.Future[BackgroundResult]]] = {}

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def busy(self, task_id: str) -> bool:
        """True until the task's last result has been drained."""
        return task_id in self._pending

    def submit(
        self,
        task_id: str,
        operation: str,
        job: Callable[[], Awaitable[Any]],
    ) -> asyncio.Future[BackgroundResult]:
        entry = self._pending.get(task_id)
        if entry is not None:
            raise BackgroundBusyError(task_id, entry[0])

        async def _run() -> BackgroundResult:
            try:
                value = await job()
            except (OrchardError, OSError) as exc:
                logger.warning("Background %s for task %s failed: %s", operation, task_id, exc)
                return BackgroundResult(task_id, operation, ok=False, error=str(exc))
            except Exception as exc:
                logger.exception("Background %s for task %s crashed", operation, task_id)
                return BackgroundResult(
                    task_id, operation, ok=False, error=f"{type(exc).__name__}: {exc}"
                )
            return BackgroundResult(task_id, operation, ok=True, value=value)

        future = asyncio.ensure_future(_run())
        self._pending[task_id] = (operation, future)
        self._emit({"event": "background_started", "task_id": task_id, "operation": operation})
        return future

    def drain(self) -> list[BackgroundResult]:
        """Collect finished results; each one is delivered exactly once."""
        results: list[BackgroundResult] = []
        for task_id, (operation, future) in list(self._pending.items()):
            if not future.done():
                continue
            del self._pending[task_id]
            if future.cancelled():
                result = BackgroundResult(task_id, operation, ok=False, error="cancelled")
            else:
                result = future.result()
            results.append(result)
            self._emit(
                {
                    "event": "background_finished",
                    "task_id": task_id,
                    "operation": operation,
                    "ok": result.ok,
                    "error": result.error,
                }
            )
        return results

    async def wait_all(self) -> None:
        futures = [future for _, future in self._pending.values()]
        if futures:
            await asyncio.gather(*futures, return_exceptions=True)


def default_pr_draft(task: Task, diff_stat: str) -> PullRequestDraft:
    body = task.description or task.title
    if diff_stat:
        body = f"{body}\n\n## Changes\n\n```\n{diff_stat}\n```"
    return PullRequestDraft(title=task.title, body=body)


def _parse_draft(text: str, fallback: PullRequestDraft) -> PullRequestDraft:
    lines = text.strip().splitlines()
    if not lines:
        return fallback
    title = lines[0].removeprefix("TITLE:").strip().strip("#").strip()
    body = "\n".join(lines[1:]).strip()
    body = body.removeprefix("BODY:").strip()
    return PullRequestDraft(title=title or fallback.title, body=body or fallback.body)


async def generate_pr_description(
    task: Task,
    *,
    backend: TextBackend,
    worktrees: WorktreeManager,
) -> PullRequestDraft:
    worktree = Path(task.worktree_path) if task.worktree_path else worktrees.project_path
    diff_stat = await asyncio.to_thread(worktrees.diff_stat, worktree)
    fallback = default_pr_draft(task, diff_stat)
    prompt = (
        "Write a pull request title and description for the following change.\n"
        "Reply with the title on the first line prefixed by 'TITLE:' and the "
        "markdown description after it prefixed by 'BODY:'.\n\n"
        f"Task: {task.content}\n\nChanged files:\n{diff_stat or '(none)'}"
    )
    try:
        text = await backend.generate(prompt, cwd=worktree)
    except AgentExecutionError as exc:
        logger.warning("PR description generation failed, using defaults: %s", exc)
        return fallback
    return _parse_draft(text, fallback)


def commit_message(title: str, agent: Agent) -> str:
    return f"{title}\n\nCo-Authored-By: {agent.co_author}"


async def create_pull_request(
    task: Task,
    draft: PullRequestDraft,
    *,
    agent: Agent,
    worktrees: WorktreeManager,
    provider: PullRequestProvider,
) -> PullRequestInfo:
    if not task.worktree_path or not task.branch_name:
        raise OrchardError(f"Task {task.id} has no worktree to open a pull request from")
    worktree = Path(task.worktree_path)
    await asyncio.to_thread(worktrees.commit_all, worktree, commit_message(draft.title, agent))
    await asyncio.to_thread(worktrees.push, worktree, task.branch_name)
    number, url = await asyncio.to_thread(
        provider.create_pr, worktrees.project_path, draft.title, draft.body, task.branch_name
    )
    return PullRequestInfo(number=number, url=url)


async def push_to_existing_pr(
    task: Task,
    *,
    agent: Agent,
    worktrees: WorktreeManager,
    message: str | None = None,
) -> bool:
    """Commit outstanding work and push it to the task's branch."""
    if not task.worktree_path or not task.branch_name:
        raise OrchardError(f"Task {task.id} has no worktree to push from")
    worktree = Path(task.worktree_path)
    committed = await asyncio.to_thread(
        worktrees.commit_all,
        worktree,
        commit_message(message or f"Address review for {task.title}", agent),
    )
    await asyncio.to_thread(worktrees.push, worktree, task.branch_name)
    return committed
