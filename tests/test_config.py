import tomllib
from pathlib import Path

import pytest

from orchard import __version__
from orchard.config import (
    GlobalConfig,
    MergedConfig,
    PhaseAgentsConfig,
    ProjectConfig,
    dumps_toml,
    global_config_dir,
    project_config_path,
)
from orchard.errors import ConfigurationError
from orchard.models import Phase


def test_global_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config = GlobalConfig()
    config.default_agent = "codex"
    config.agents.planning = "claude"
    config.worktree.auto_cleanup = False
    config.worktree.base_branch = "develop"
    config.session.server_name = "orchard-test"
    config.session.trigger_timeout_seconds = 60.0
    config.status.cache_ttl_seconds = 0.5

    config.save(config_path)
    loaded = GlobalConfig.load(config_path)

    assert loaded.default_agent == "codex"
    assert loaded.agents.planning == "claude"
    assert loaded.agents.running is None
    assert loaded.worktree.auto_cleanup is False
    assert loaded.worktree.base_branch == "develop"
    assert loaded.session.server_name == "orchard-test"
    assert loaded.session.trigger_timeout_seconds == 60.0
    assert loaded.status.cache_ttl_seconds == 0.5


def test_project_config_roundtrip(tmp_path: Path) -> None:
    config = ProjectConfig(
        default_agent="gemini",
        copy_files=".env, config/local.toml",
        init_script="make setup",
        workflow_plugin="gsd",
        review_hook="skip",
        allow_return_to_backlog=True,
    )
    config.agents.review = "claude"

    config.save(tmp_path)
    loaded = ProjectConfig.load(tmp_path)

    assert project_config_path(tmp_path).exists()
    assert loaded.default_agent == "gemini"
    assert loaded.copy_files == ".env, config/local.toml"
    assert loaded.init_script == "make setup"
    assert loaded.workflow_plugin == "gsd"
    assert loaded.review_hook == "skip"
    assert loaded.done_hook is None
    assert loaded.allow_return_to_backlog is True
    assert loaded.agents.review == "claude"


def test_missing_files_give_defaults(tmp_path: Path) -> None:
    assert GlobalConfig.load(tmp_path / "nope.toml") == GlobalConfig()
    assert ProjectConfig.load(tmp_path) == ProjectConfig()


def test_malformed_config_raises_configuration_error(tmp_path: Path) -> None:
    path = project_config_path(tmp_path)
    path.parent.mkdir(parents=True)
    path.write_text("default_agent = [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        ProjectConfig.load(tmp_path)


def test_unknown_project_keys_are_rejected() -> None:
    with pytest.raises(ConfigurationError):
        ProjectConfig.from_dict({"workflow": "gsd"})
    with pytest.raises(ConfigurationError):
        GlobalConfig.from_dict({"worktree": {"enabled": True, "colour": "red"}})


def test_merge_prefers_project_values() -> None:
    global_config = GlobalConfig(default_agent="claude")
    global_config.agents = PhaseAgentsConfig(research="gemini", running="codex")
    project = ProjectConfig(default_agent="opencode", base_branch="trunk")
    project.agents.running = "claude"

    merged = MergedConfig.merge(global_config, project)

    assert merged.default_agent == "opencode"
    assert merged.base_branch == "trunk"
    assert merged.agent_for_phase(Phase.RESEARCH) == "gemini"
    assert merged.agent_for_phase(Phase.RUNNING) == "claude"
    assert merged.agent_for_phase(Phase.PLANNING) == "opencode"
    assert merged.explicit_agent_for_phase(Phase.PLANNING) is None
    assert merged.explicit_agent_for_phase(Phase.BACKLOG) is None


def test_copy_file_list_splits_commas() -> None:
    merged = MergedConfig.merge(GlobalConfig(), ProjectConfig(copy_files=" .env ,, a/b.txt"))

    assert merged.copy_file_list() == [".env", "a/b.txt"]


def test_config_dir_honours_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ORCHARD_CONFIG_DIR", str(tmp_path / "cfg"))

    assert global_config_dir() == tmp_path / "cfg"
    assert GlobalConfig.path() == tmp_path / "cfg" / "config.toml"


def test_toml_dump_omits_unset_values() -> None:
    rendered = dumps_toml(ProjectConfig(workflow_plugin="void").to_dict())

    assert 'workflow_plugin = "void"' in rendered
    assert "allow_return_to_backlog = false" in rendered
    assert "init_script" not in rendered
    assert "[agents]" not in rendered


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
