from pathlib import Path

import pytest

from orchard.errors import PluginLoadError, UnsupportedAgentError
from orchard.models import Phase
from orchard.plugins import (
    DEFAULT_PROMPTS,
    PluginResolver,
    WorkflowPlugin,
    available_plugins,
    load_plugin,
)


def _write_plugin(root: Path, name: str, body: str) -> Path:
    plugin_dir = root / name
    plugin_dir.mkdir(parents=True)
    (plugin_dir / "plugin.toml").write_text(f'name = "{name}"\n{body}', encoding="utf-8")
    return plugin_dir


@pytest.fixture(autouse=True)
def isolated_config_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    config_dir = tmp_path / "global"
    monkeypatch.setenv("ORCHARD_CONFIG_DIR", str(config_dir))
    return config_dir


def test_bundled_plugins_are_available(tmp_path: Path) -> None:
    names = {plugin.name for plugin in available_plugins(tmp_path)}

    assert {"orchard", "void", "gsd", "spec-kit"} <= names


def test_default_plugin_uses_builtin_prompts(tmp_path: Path) -> None:
    plugin = load_plugin(None, tmp_path)

    assert plugin.name == "orchard"
    assert plugin.command_for(Phase.PLANNING) is None
    assert plugin.prompt_for(Phase.PLANNING) == DEFAULT_PROMPTS["planning"]
    assert plugin.prompt_for(Phase.PLANNING, after_research=True) == (
        DEFAULT_PROMPTS["planning_with_research"]
    )
    assert plugin.artifact_for(Phase.RUNNING) == ".orchard/summary.md"


def test_void_plugin_sends_nothing(tmp_path: Path) -> None:
    plugin = load_plugin("void", tmp_path)

    for phase in (Phase.RESEARCH, Phase.PLANNING, Phase.RUNNING, Phase.REVIEW):
        assert plugin.command_for(phase) == ""
        assert plugin.prompt_for(phase) == ""
        assert plugin.prompt_for(phase, after_research=True) == ""


def test_gsd_plugin_declares_agents_and_triggers(tmp_path: Path) -> None:
    plugin = load_plugin("gsd", tmp_path)

    assert plugin.supports_agent("claude")
    assert not plugin.supports_agent("copilot")
    with pytest.raises(UnsupportedAgentError):
        plugin.require_agent("copilot")
    assert plugin.trigger_for(Phase.RESEARCH) == "What do you want to build?"
    assert plugin.trigger_for(Phase.PLANNING) is None
    assert plugin.render_init_script("codex") == "npx --yes get-shit-done-cc --codex --local"


def test_project_plugins_shadow_global_and_bundled(
    tmp_path: Path, isolated_config_dir: Path
) -> None:
    project = tmp_path / "project"
    _write_plugin(isolated_config_dir / "plugins", "void", 'description = "global void"\n')
    _write_plugin(project / ".orchard" / "plugins", "void", 'description = "project void"\n')

    assert load_plugin("void", project).description == "project void"
    assert load_plugin("void", tmp_path / "elsewhere").description == "global void"


def test_missing_plugin_raises(tmp_path: Path) -> None:
    with pytest.raises(PluginLoadError):
        load_plugin("does-not-exist", tmp_path)


@pytest.mark.parametrize(
    "data",
    [
        {"description": "no name"},
        {"name": "bad", "supported_agents": "claude"},
        {"name": "bad", "commands": {"deploy": "/x:y"}},
        {"name": "bad", "prompts": {"planning": 3}},
        {"name": "bad", "artifacts": "nope"},
    ],
)
def test_invalid_plugin_definitions(data: dict[str, object]) -> None:
    with pytest.raises(PluginLoadError):
        WorkflowPlugin.from_dict(data)


def test_malformed_plugin_file(tmp_path: Path) -> None:
    plugin_dir = tmp_path / "broken"
    plugin_dir.mkdir()
    (plugin_dir / "plugin.toml").write_text("name = [\n", encoding="utf-8")

    with pytest.raises(PluginLoadError):
        WorkflowPlugin.load(plugin_dir / "plugin.toml")


def test_explicit_planning_prompt_wins_after_research() -> None:
    plugin = WorkflowPlugin.from_dict({"name": "custom", "prompts": {"planning": "Go: {task}"}})

    assert plugin.prompt_for(Phase.PLANNING, after_research=True) == "Go: {task}"
    assert plugin.prompt_for(Phase.REVIEW) == DEFAULT_PROMPTS["review"]


def test_resolver_binds_plugin_per_task(tmp_path: Path) -> None:
    project = tmp_path / "project"
    plugin_dir = _write_plugin(project / ".orchard" / "plugins", "flow", 'description = "v1"\n')
    resolver = PluginResolver(project)

    first = resolver.for_task("task-1", "flow")
    (plugin_dir / "plugin.toml").write_text('name = "flow"\ndescription = "v2"\n', encoding="utf-8")

    assert resolver.for_task("task-1", "flow") is first
    assert resolver.for_task("task-2", "flow").description == "v2"
    resolver.forget("task-1")
    assert resolver.for_task("task-1", "flow").description == "v2"
