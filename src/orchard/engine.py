from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from orchard.agents.registry import Agent, resolve_agent
from orchard.config import HOOK_SKIP, MergedConfig
from orchard.errors import (
    InvalidTransitionError,
    MultiplexerError,
    TransitionBlockedError,
    WorktreeError,
)
from orchard.models import ACTIVE_PHASES, Phase, Project, SessionHandle, Task
from orchard.plugins import DEFAULT_PLUGIN, PluginResolver, WorkflowPlugin
from orchard.provider import PullRequestProvider, PullRequestState
from orchard.session import SessionManager
from orchard.skills import (
    deploy_skills,
    fold_into_prompt,
    phase_skill,
    resolve_skills,
    skill_name_to_command,
    translate_command,
)
from orchard.store import TaskStore
from orchard.worktree import ScriptResult, WorktreeManager, run_shell_script

logger = logging.getLogger(__name__)

EngineEventHook = Callable[[dict[str, Any]], None]
Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]

FORWARD_EDGES: dict[Phase, frozenset[Phase]] = {
    Phase.BACKLOG: frozenset({Phase.RESEARCH, Phase.PLANNING, Phase.RUNNING}),
    Phase.RESEARCH: frozenset({Phase.PLANNING, Phase.DONE}),
    Phase.PLANNING: frozenset({Phase.RUNNING, Phase.DONE}),
    Phase.RUNNING: frozenset({Phase.REVIEW, Phase.DONE}),
    Phase.REVIEW: frozenset({Phase.DONE}),
    Phase.DONE: frozenset(),
}
BACKWARD_EDGES: dict[Phase, frozenset[Phase]] = {
    Phase.REVIEW: frozenset({Phase.RUNNING}),
    Phase.RUNNING: frozenset({Phase.PLANNING}),
    Phase.PLANNING: frozenset({Phase.RESEARCH}),
}
BACKLOG_RETURN_SOURCES = frozenset({Phase.RESEARCH, Phase.PLANNING})


class TransitionKind(StrEnum):
    FORWARD = "forward"
    BACKWARD = "backward"
    RETURN_TO_BACKLOG = "return-to-backlog"


def classify_transition(
    source: Phase,
    target: Phase,
    *,
    allow_return_to_backlog: bool = False,
) -> TransitionKind:
    if target in FORWARD_EDGES[source]:
        return TransitionKind.FORWARD
    if target in BACKWARD_EDGES.get(source, frozenset()):
        return TransitionKind.BACKWARD
    if target is Phase.BACKLOG and source in BACKLOG_RETURN_SOURCES and allow_return_to_backlog:
        return TransitionKind.RETURN_TO_BACKLOG
    raise InvalidTransitionError(f"Cannot move a task from {source} to {target}")


@dataclass(slots=True)
class HookOutcome:
    phase: Phase
    kind: str
    message: str = ""
    exit_code: int | None = None


@dataclass(slots=True)
class TransitionResult:
    task_id: str
    from_phase: Phase
    to_phase: Phase
    kind: TransitionKind
    agent: str | None = None
    command: str | None = None
    prompt: str | None = None
    worktree_created: bool = False
    window_created: bool = False
    hook: HookOutcome | None = None
    warnings: list[str] = field(default_factory=list)
    follow_ups: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Dispatch:
    command: str
    prompt: str
    trigger: str | None = None


@dataclass(slots=True)
class OpenResult:
    task_id: str
    handle: SessionHandle
    respawned: bool = False
    command: str | None = None
    prompt: str | None = None
    warnings: list[str] = field(default_factory=list)


def render_template(template: str, task: Task) -> str:
    return template.replace("{task}", task.content).replace("{task_id}", task.id)


def hook_env(task: Task, project_path: Path, *, agent: str | None = None) -> dict[str, str]:
    env = {
        "TASK_ID": task.id,
        "TASK_TITLE": task.title,
        "BRANCH_NAME": task.branch_name or "",
        "WORKTREE_PATH": task.worktree_path or "",
        "PROJECT_PATH": str(project_path),
    }
    if agent is not None:
        env["AGENT"] = agent
    return env


class Engine:
    """Drives tasks through their phases for one project.

    All task and session mutations go through this object; the control loop
    is its only caller during a run.
    """

    def __init__(
        self,
        *,
        project: Project,
        config: MergedConfig,
        store: TaskStore,
        sessions: SessionManager,
        worktrees: WorktreeManager | None = None,
        plugins: PluginResolver | None = None,
        provider: PullRequestProvider | None = None,
        event_hook: EngineEventHook | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        self.project = project
        self.project_path = Path(project.path)
        self.config = config
        self.store = store
        self.sessions = sessions
        self.worktrees = worktrees or WorktreeManager(
            self.project_path, base_branch=config.base_branch
        )
        self.plugins = plugins or PluginResolver(self.project_path)
        self.provider = provider
        self.event_hook = event_hook
        self._sleep = sleep
        self._clock = clock
        self._handles: dict[str, SessionHandle] = {}

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _warn(self, result: TransitionResult | OpenResult, message: str) -> None:
        result.warnings.append(message)
        logger.warning("Task %s: %s", result.task_id, message)
        self._emit({"event": "warning", "task_id": result.task_id, "message": message})

    def _persist(self, task: Task) -> None:
        self.store.update_task(task)

    def plugin_for(self, task: Task) -> WorkflowPlugin:
        return self.plugins.for_task(task.id, task.plugin)

    def create_task(
        self,
        title: str,
        *,
        description: str = "",
        plugin: str | None = None,
    ) -> Task:
        plugin_name = plugin or self.project.plugin or self.config.workflow_plugin or DEFAULT_PLUGIN
        task = Task.new(
            title,
            description=description,
            project_id=self.project.id,
            plugin=plugin_name,
            agent=self.project.default_agent or self.config.default_agent,
        )
        self.plugin_for(task)
        self.store.create_task(task)
        self._emit({"event": "task_created", "task_id": task.id, "plugin": plugin_name})
        return task

    def restore_sessions(self, tasks: list[Task]) -> dict[str, SessionHandle]:
        """Rebuild the task to window map from the live tmux server."""
        windows = self.sessions.discover()
        for task in tasks:
            handle = windows.get(task.window_name)
            if handle is not None:
                self._handles[task.id] = handle
        return dict(self._handles)

    def handle_for(self, task: Task) -> SessionHandle | None:
        handle = self._handles.get(task.id)
        if handle is not None and self.sessions.window_exists(handle):
            return handle
        self._handles.pop(task.id, None)
        handle = self.sessions.discover().get(task.window_name)
        if handle is not None:
            self._handles[task.id] = handle
        return handle

    def _task_cwd(self, task: Task) -> Path:
        return Path(task.worktree_path) if task.worktree_path else self.project_path

    def _effective_agent(self, task: Task, phase: Phase, handle: SessionHandle | None) -> Agent:
        running = self.sessions.window_agent(handle) if handle is not None else None
        name = self.config.explicit_agent_for_phase(phase) or running or self.config.default_agent
        agent = resolve_agent(name)
        self.plugin_for(task).require_agent(agent.name)
        return agent

    async def transition(self, task: Task, target: Phase) -> TransitionResult:
        source = task.phase
        kind = classify_transition(
            source, target, allow_return_to_backlog=self.config.allow_return_to_backlog
        )
        result = TransitionResult(task_id=task.id, from_phase=source, to_phase=target, kind=kind)
        if kind is TransitionKind.BACKWARD:
            task.phase = target
            self._persist(task)
        elif kind is TransitionKind.RETURN_TO_BACKLOG:
            self._teardown(task, delete_branch=False)
            task.phase = target
            self._persist(task)
        elif target is Phase.DONE:
            await self._enter_done(task, result)
        else:
            await self._enter_active(task, target, result)
        logger.info("Task %s moved %s -> %s", task.id, source, target)
        self._emit(
            {
                "event": "transition",
                "task_id": task.id,
                "from": source.value,
                "to": target.value,
                "kind": kind.value,
                "warnings": list(result.warnings),
            }
        )
        return result

    async def _prepare_worktree(self, task: Task, agent: Agent, result: TransitionResult) -> Path:
        plugin = self.plugin_for(task)
        previous = (task.worktree_path, task.branch_name)
        try:
            path = self.worktrees.create(task.slug)
        except WorktreeError as exc:
            raise TransitionBlockedError(
                f"Could not create worktree for task {task.id}: {exc}", task_id=task.id
            ) from exc
        task.worktree_path = str(path)
        task.branch_name = self.worktrees.branch_name(task.slug)
        result.worktree_created = previous[0] != task.worktree_path

        for warning in self.worktrees.initialize(
            path,
            copy_files=self.config.copy_file_list(),
            copy_dirs=plugin.copy_dirs,
        ):
            self._warn(result, warning)
        try:
            deploy_skills(path, resolve_skills(plugin, self.project_path).values())
        except OSError as exc:
            self._warn(result, f"skill deployment failed: {exc}")

        env = hook_env(task, self.project_path, agent=agent.name)
        scripts = [self.config.init_script, plugin.render_init_script(agent.name)]
        for script in scripts:
            if not script:
                continue
            outcome = await self._run_script(script, cwd=path, env=env)
            if outcome is None or not outcome.ok:
                status = "not started" if outcome is None else f"exit status {outcome.exit_code}"
                self._warn(result, f"init script {script!r} failed ({status})")
        return path

    async def _run_script(self, script: str, *, cwd: Path, env: dict[str, str]) -> ScriptResult | None:
        try:
            return await run_shell_script(script, cwd=cwd, env=env)
        except OSError as exc:
            logger.warning("Could not start %r: %s", script, exc)
            return None

    def _rollback_worktree(self, task: Task, previous: tuple[str | None, str | None]) -> None:
        self.worktrees.remove(task.slug)
        if task.branch_name:
            self.worktrees.delete_branch(task.branch_name)
        task.worktree_path, task.branch_name = previous

    async def _enter_active(self, task: Task, target: Phase, result: TransitionResult) -> None:
        handle = self.handle_for(task)
        agent = self._effective_agent(task, target, handle)
        result.agent = agent.name
        previous = (task.worktree_path, task.branch_name)

        if self.config.worktree_enabled and not (
            task.worktree_path and Path(task.worktree_path).exists()
        ):
            await self._prepare_worktree(task, agent, result)
        cwd = self._task_cwd(task)

        try:
            handle, created = await self._ensure_agent_window(task, agent, cwd, handle)
        except MultiplexerError as exc:
            if result.worktree_created:
                self._rollback_worktree(task, previous)
            raise TransitionBlockedError(
                f"Could not open a window for task {task.id}: {exc}", task_id=task.id
            ) from exc
        result.window_created = created
        task.agent = agent.name

        dispatch = self.resolve_dispatch(
            task, target, agent, after_research=result.from_phase is Phase.RESEARCH
        )
        await self._send_dispatch(handle, dispatch, result)

        task.phase = target
        self._persist(task)
        if target is Phase.REVIEW:
            result.hook = await self._run_hook(task, target, result)

    def _launch_command(self, task: Task, agent: Agent) -> str:
        if agent.supports_resume and task.session_agent == agent.name:
            return agent.resume_command(task.id)
        return agent.interactive_command(task.id)

    async def _ensure_agent_window(
        self,
        task: Task,
        agent: Agent,
        cwd: Path,
        handle: SessionHandle | None,
        *,
        command: str | None = None,
    ) -> tuple[SessionHandle, bool]:
        launch = command or self._launch_command(task, agent)
        created = False
        if handle is None:
            session_id = self.sessions.ensure_session(self.project.name, self.project_path)
            handle = self.sessions.find_window(session_id, task.window_name)
            if handle is None:
                handle = self.sessions.ensure_window(
                    session_id, task.window_name, cwd, launch, agent=agent.name
                )
                created = True
        if not created and self.sessions.window_agent(handle) != agent.name:
            self.sessions.respawn(handle, launch, cwd=cwd, agent=agent.name)
            created = True
        self._handles[task.id] = handle
        if created and agent.supports_resume:
            task.session_agent = agent.name
        if created and self.config.session.startup_delay_seconds > 0:
            await self._sleep(self.config.session.startup_delay_seconds)
        return handle, created

    def resolve_dispatch(
        self,
        task: Task,
        phase: Phase,
        agent: Agent,
        *,
        after_research: bool = False,
    ) -> Dispatch:
        plugin = self.plugin_for(task)
        prompt = render_template(plugin.prompt_for(phase, after_research=after_research), task)
        template = plugin.command_for(phase)
        if template is not None:
            command = translate_command(render_template(template, task), agent)
            return Dispatch(command=command, prompt=prompt, trigger=plugin.trigger_for(phase))

        skill_name = phase_skill(phase)
        if skill_name is None:
            return Dispatch(command="", prompt=prompt)
        skill = resolve_skills(plugin, self.project_path).get(skill_name)
        if agent.supports_skills:
            canonical = skill.canonical_command if skill else skill_name_to_command(skill_name)
            command = translate_command(canonical, agent)
        else:
            command = ""
            if skill is not None:
                prompt = fold_into_prompt(skill, prompt)
        return Dispatch(command=command, prompt=prompt, trigger=plugin.trigger_for(phase))

    async def _wait_for_trigger(self, handle: SessionHandle, trigger: str, *, seen: int) -> bool:
        """Wait until ``trigger`` appears more often than the ``seen`` occurrences before."""
        session_config = self.config.session
        deadline = self._clock() + session_config.trigger_timeout_seconds
        while True:
            if self.sessions.read_pane(handle).count(trigger) > seen:
                return True
            if self._clock() >= deadline:
                return False
            await self._sleep(session_config.trigger_poll_interval_seconds)

    async def _send_dispatch(
        self,
        handle: SessionHandle,
        dispatch: Dispatch,
        result: TransitionResult | OpenResult,
    ) -> None:
        try:
            seen = 0
            if dispatch.trigger and dispatch.prompt:
                seen = self.sessions.read_pane(handle).count(dispatch.trigger)
            if dispatch.command:
                self.sessions.send_keys(handle, dispatch.command)
                result.command = dispatch.command
            if not dispatch.prompt:
                return
            if dispatch.trigger and not await self._wait_for_trigger(
                handle, dispatch.trigger, seen=seen
            ):
                timeout = self.config.session.trigger_timeout_seconds
                self._warn(
                    result,
                    f"prompt trigger {dispatch.trigger!r} not seen after {timeout:.0f}s; "
                    "sending prompt anyway",
                )
            self.sessions.send_keys(handle, dispatch.prompt)
            result.prompt = dispatch.prompt
        except MultiplexerError as exc:
            self._warn(result, f"failed to send input to window {handle.window_id}: {exc}")

    async def _run_hook(self, task: Task, phase: Phase, result: TransitionResult) -> HookOutcome:
        hook = self.config.hook_for(phase)
        if hook == HOOK_SKIP:
            return HookOutcome(phase=phase, kind="skip")
        if hook:
            outcome = await self._run_script(
                hook, cwd=self._task_cwd(task), env=hook_env(task, self.project_path)
            )
            if outcome is None:
                self._warn(result, f"{phase} hook could not be started")
                return HookOutcome(phase=phase, kind="script", message="not started")
            if not outcome.ok:
                self._warn(result, f"{phase} hook exited with status {outcome.exit_code}")
            return HookOutcome(
                phase=phase, kind="script", message=outcome.output, exit_code=outcome.exit_code
            )
        return await self._default_hook(task, phase, result)

    async def _default_hook(self, task: Task, phase: Phase, result: TransitionResult) -> HookOutcome:
        if phase is Phase.REVIEW:
            if task.pr_number:
                message = f"Push the review changes to pull request #{task.pr_number}"
            else:
                message = f"Create a pull request with `orchard pr {task.id[:8]}`"
            result.follow_ups.append(message)
            return HookOutcome(phase=phase, kind="default", message=message)

        if not task.pr_number or self.provider is None:
            return HookOutcome(phase=phase, kind="default")
        state = await asyncio.to_thread(self.provider.pr_state, self.project_path, task.pr_number)
        message = f"Pull request #{task.pr_number} is {state}"
        if state is PullRequestState.OPEN:
            result.follow_ups.append(f"Pull request #{task.pr_number} is still open")
        return HookOutcome(phase=phase, kind="default", message=message)

    async def _enter_done(self, task: Task, result: TransitionResult) -> None:
        result.hook = await self._run_hook(task, Phase.DONE, result)
        if self.config.auto_cleanup:
            self._teardown(task, delete_branch=False)
        else:
            self._kill_window(task)
        task.phase = Phase.DONE
        self._persist(task)

    def _kill_window(self, task: Task) -> None:
        handle = self._handles.pop(task.id, None)
        if handle is None and task.phase is not Phase.BACKLOG:
            handle = self.sessions.discover().get(task.window_name)
        if handle is not None:
            self.sessions.kill_window(handle)

    def _teardown(self, task: Task, *, delete_branch: bool) -> None:
        self._kill_window(task)
        if task.worktree_path:
            self.worktrees.remove(task.slug)
            task.worktree_path = None
        if delete_branch and task.branch_name:
            self.worktrees.delete_branch(task.branch_name)
            task.branch_name = None

    def reopen(self, task: Task) -> Task:
        if task.phase is not Phase.DONE:
            raise InvalidTransitionError(f"Only done tasks can be reopened, task is {task.phase}")
        if task.worktree_path:
            self._teardown(task, delete_branch=False)
        task.phase = Phase.BACKLOG
        self._persist(task)
        self._emit({"event": "task_reopened", "task_id": task.id})
        return task

    async def open_task(self, task: Task) -> OpenResult:
        """Return the task's window, respawning the agent when the window is gone."""
        if task.phase not in ACTIVE_PHASES:
            raise InvalidTransitionError(f"Task {task.id} has no session in phase {task.phase}")
        handle = self.handle_for(task)
        if handle is not None:
            return OpenResult(task_id=task.id, handle=handle)

        agent = resolve_agent(task.agent)
        cwd = self._task_cwd(task)
        resumed = agent.supports_resume and task.session_agent == agent.name
        launch = self._launch_command(task, agent)
        try:
            handle, _ = await self._ensure_agent_window(task, agent, cwd, None, command=launch)
        except MultiplexerError as exc:
            raise TransitionBlockedError(
                f"Could not respawn window for task {task.id}: {exc}", task_id=task.id
            ) from exc
        result = OpenResult(task_id=task.id, handle=handle, respawned=True, command=launch)
        if not resumed:
            dispatch = self.resolve_dispatch(task, task.phase, agent)
            await self._send_dispatch(handle, Dispatch(command="", prompt=dispatch.prompt), result)
        self._persist(task)
        self._emit({"event": "task_respawned", "task_id": task.id, "agent": agent.name})
        return result

    def delete_task(self, task: Task) -> None:
        self._teardown(task, delete_branch=True)
        self.store.delete_task(task.id)
        self.plugins.forget(task.id)
        self._emit({"event": "task_deleted", "task_id": task.id})

    def task_diff(self, task: Task) -> str:
        if not task.worktree_path or not Path(task.worktree_path).exists():
            return "(no worktree)"
        return self.worktrees.diff(Path(task.worktree_path))
