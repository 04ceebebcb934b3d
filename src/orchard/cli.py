from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from orchard import __version__
from orchard.agents.registry import AGENT_NAMES, all_agent_status, resolve_agent
from orchard.config import MergedConfig, ProjectConfig, project_config_path
from orchard.engine import Engine, TransitionResult
from orchard.errors import OrchardError
from orchard.executor import BackgroundResult, PullRequestInfo
from orchard.loop import ControlLoop
from orchard.models import Phase, PhaseStatus, Project, Task
from orchard.plugins import DEFAULT_PLUGIN, available_plugins
from orchard.provider import GitHubCliProvider
from orchard.session import SessionManager, TmuxServer
from orchard.skills import resolve_skills, scan_agent_skills, translate_command
from orchard.store import JsonTaskStore

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]

T = TypeVar("T")


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config: MergedConfig
    store: JsonTaskStore
    project: Project
    engine: Engine
    loop: ControlLoop


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.WARNING), format=LOG_FORMAT)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except OrchardError as exc:
        raise click.ClickException(str(exc)) from exc


def _load_runtime(project_root: Path) -> Runtime:
    try:
        config = MergedConfig.load(project_root)
        store = JsonTaskStore(project_root)
        project = store.project_for_path(project_root)
    except OrchardError as exc:
        raise click.ClickException(str(exc)) from exc
    if project is None:
        raise click.ClickException(f"{project_root} is not an orchard project; run `orchard init`")

    server = TmuxServer(config.session.server_name)
    engine = Engine(
        project=project,
        config=config,
        store=store,
        sessions=SessionManager(server),
        provider=GitHubCliProvider(),
    )
    return Runtime(
        project_root=project_root,
        config=config,
        store=store,
        project=project,
        engine=engine,
        loop=ControlLoop(engine),
    )


def _find_task(runtime: Runtime, task_ref: str) -> Task:
    try:
        return runtime.store.find_task(task_ref)
    except OrchardError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_transition(result: TransitionResult) -> None:
    click.echo(f"Task {result.task_id[:8]}: {result.from_phase} -> {result.to_phase}")
    if result.agent:
        click.echo(f"Agent: {result.agent}")
    if result.command:
        click.echo(f"Sent command: {result.command}")
    if result.prompt:
        click.echo(f"Sent prompt: {result.prompt.splitlines()[0]}")
    if result.hook and result.hook.message:
        click.echo(f"{result.hook.phase} hook: {result.hook.message}")
    for warning in result.warnings:
        click.echo(f"Warning: {warning}", err=True)
    for follow_up in result.follow_ups:
        click.echo(f"Next: {follow_up}")


def _echo_statuses(runtime: Runtime, statuses: dict[str, PhaseStatus]) -> None:
    tasks = {task.id: task for task in runtime.loop.tasks()}
    if not statuses:
        click.echo("No active tasks.")
    for task_id, status in statuses.items():
        task = tasks.get(task_id)
        if task is None:
            continue
        click.echo(f"{status.indicator} {task.id[:8]}  {task.phase:<9} {status:<8} {task.title}")


@click.group()
@click.version_option(__version__, prog_name="orchard")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Orchard CLI."""
    configure_logging(log_level)


@cli.command("init")
@click.option("--plugin", "plugin_name", default=None)
@click.option("--agent", "agent_name", type=click.Choice(list(AGENT_NAMES)), default=None)
def init_command(plugin_name: str | None, agent_name: str | None) -> None:
    project_root = Path.cwd().resolve()
    config_path = project_config_path(project_root)
    try:
        project_config = ProjectConfig.load(project_root)
        if plugin_name:
            project_config.workflow_plugin = plugin_name
        if agent_name:
            project_config.default_agent = agent_name
        if plugin_name or agent_name or not config_path.exists():
            project_config.save(project_root)

        store = JsonTaskStore(project_root)
        project = store.project_for_path(project_root) or Project.new(
            project_root.name, str(project_root)
        )
        project.plugin = project_config.workflow_plugin
        project.default_agent = project_config.default_agent
        store.upsert_project(project)
    except OrchardError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Initialized orchard in {project_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Plugin: {project.plugin or DEFAULT_PLUGIN}")


@cli.command("add")
@click.argument("title")
@click.option("-d", "--description", default="")
@click.option("--plugin", "plugin_name", default=None)
def add_command(title: str, description: str, plugin_name: str | None) -> None:
    runtime = _load_runtime(Path.cwd().resolve())
    try:
        task = runtime.engine.create_task(title, description=description, plugin=plugin_name)
    except OrchardError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created task {task.id[:8]} ({task.plugin}): {task.title}")


@cli.command("list")
@click.option("--phase", "phase_name", default=None)
def list_command(phase_name: str | None) -> None:
    runtime = _load_runtime(Path.cwd().resolve())
    tasks = runtime.loop.tasks()
    if phase_name:
        try:
            phase = Phase.parse(phase_name)
        except ValueError as exc:
            raise click.ClickException(str(exc)) from exc
        tasks = [task for task in tasks if task.phase is phase]
    if not tasks:
        click.echo("No tasks.")
        return
    for task in tasks:
        pr = f" PR #{task.pr_number}" if task.pr_number else ""
        click.echo(
            f"{task.id[:8]}  {task.phase:<9} {task.plugin:<9} {task.agent:<8} {task.title}{pr}"
        )


@cli.command("move")
@click.argument("task_ref")
@click.argument("phase_name")
def move_command(task_ref: str, phase_name: str) -> None:
    runtime = _load_runtime(Path.cwd().resolve())
    task = _find_task(runtime, task_ref)
    try:
        phase = Phase.parse(phase_name)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_transition(_run(runtime.engine.transition(task, phase)))


@cli.command("open")
@click.argument("task_ref")
def open_command(task_ref: str) -> None:
    runtime = _load_runtime(Path.cwd().resolve())
    task = _find_task(runtime, task_ref)
    result = _run(runtime.engine.open_task(task))
    if result.respawned:
        click.echo(f"Respawned {task.agent} for task {task.id[:8]}: {result.command}")
    for warning in result.warnings:
        click.echo(f"Warning: {warning}", err=True)
    server = runtime.config.session.server_name
    click.echo(f"Attach with: tmux -L {server} attach-session -t {result.handle.window_id}")


@cli.command("reopen")
@click.argument("task_ref")
def reopen_command(task_ref: str) -> None:
    runtime = _load_runtime(Path.cwd().resolve())
    task = _find_task(runtime, task_ref)
    try:
        runtime.engine.reopen(task)
    except OrchardError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Task {task.id[:8]} moved back to backlog")


@cli.command("delete")
@click.argument("task_ref")
@click.option("--yes", is_flag=True, default=False)
def delete_command(task_ref: str, yes: bool) -> None:
    runtime = _load_runtime(Path.cwd().resolve())
    task = _find_task(runtime, task_ref)
    if not yes:
        click.confirm(f"Delete task {task.id[:8]} ({task.title}) and its branch?", abort=True)
    try:
        runtime.engine.delete_task(task)
    except OrchardError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Deleted task {task.id[:8]}")


@cli.command("diff")
@click.argument("task_ref")
def diff_command(task_ref: str) -> None:
    runtime = _load_runtime(Path.cwd().resolve())
    task = _find_task(runtime, task_ref)
    click.echo(runtime.engine.task_diff(task))


@cli.command("status")
@click.option("--watch", is_flag=True, default=False)
def status_command(watch: bool) -> None:
    runtime = _load_runtime(Path.cwd().resolve())
    loop = runtime.loop
    if not watch:
        try:
            statuses = loop.poller.poll_once(loop.poll_targets())
        except OrchardError as exc:
            raise click.ClickException(str(exc)) from exc
        _echo_statuses(runtime, statuses)
        return

    last: dict[str, PhaseStatus] = {}

    def _on_tick(statuses: dict[str, PhaseStatus], results: list[BackgroundResult]) -> None:
        nonlocal last
        if statuses != last:
            click.echo("-" * 40)
            _echo_statuses(runtime, statuses)
            last = statuses
        for result in results:
            outcome = "done" if result.ok else f"failed: {result.error}"
            click.echo(f"{result.operation} for {result.task_id[:8]} {outcome}")

    stop = asyncio.Event()
    try:
        _run(loop.run(stop, on_tick=_on_tick))
    except KeyboardInterrupt:
        click.echo("Stopped.")


@cli.command("pr")
@click.argument("task_ref")
def pr_command(task_ref: str) -> None:
    runtime = _load_runtime(Path.cwd().resolve())
    task = _find_task(runtime, task_ref)
    loop = runtime.loop

    async def _submit_and_wait() -> list[BackgroundResult]:
        if task.pr_number:
            loop.request_push(task)
        else:
            loop.request_pull_request(task)
        await loop.executor.wait_all()
        return loop.tick()

    for result in _run(_submit_and_wait()):
        if not result.ok:
            raise click.ClickException(f"{result.operation} failed: {result.error}")
        if isinstance(result.value, PullRequestInfo):
            click.echo(f"Opened pull request #{result.value.number}: {result.value.url}")
        else:
            click.echo(f"Pushed {task.branch_name} to pull request #{task.pr_number}")


@cli.command("agents")
def agents_command() -> None:
    for status in all_agent_status():
        marker = "available" if status.available else "not installed"
        agent = status.agent
        resume = "resume" if agent.supports_resume else "no resume"
        click.echo(
            f"{agent.name:<9} {marker:<13} {agent.command_class:<16} {resume:<9} "
            f"{agent.description}"
        )


@cli.command("plugins")
def plugins_command() -> None:
    try:
        plugins = available_plugins(Path.cwd().resolve())
    except OrchardError as exc:
        raise click.ClickException(str(exc)) from exc
    for plugin in plugins:
        agents = ", ".join(plugin.supported_agents) or "all agents"
        click.echo(f"{plugin.name:<10} {plugin.description} [{agents}]")


@cli.command("skills")
@click.option("--agent", "agent_name", type=click.Choice(list(AGENT_NAMES)), default="claude")
@click.option("--deployed", is_flag=True, default=False)
def skills_command(agent_name: str, deployed: bool) -> None:
    project_root = Path.cwd().resolve()
    agent = resolve_agent(agent_name)
    if deployed:
        for command, description in scan_agent_skills(agent, project_root):
            click.echo(f"{command:<28} {description}")
        return
    try:
        skills = resolve_skills(None, project_root)
    except OrchardError as exc:
        raise click.ClickException(str(exc)) from exc
    for skill in skills.values():
        invocation = translate_command(skill.canonical_command, agent) or "(folded into prompt)"
        click.echo(f"{skill.name:<18} {invocation:<22} {skill.description}")
