import tomllib
from pathlib import Path

import pytest

from orchard.agents import known_agents, resolve_agent
from orchard.errors import SkillLoadError
from orchard.models import Phase
from orchard.plugins import WorkflowPlugin
from orchard.skills import (
    bundled_skills,
    deploy_skills,
    fold_into_prompt,
    parse_skill,
    phase_skill,
    render_skill,
    resolve_skills,
    scan_agent_skills,
    skill_name_to_command,
    strip_frontmatter,
    translate_command,
)

SKILL_TEXT = """---
name: acme-deploy
description: Ship the "current" branch
---

# Deploy

Run the release checklist.
"""


def _write_skill(root: Path, name: str, description: str) -> None:
    skill_dir = root / name
    skill_dir.mkdir(parents=True)
    (skill_dir / "SKILL.md").write_text(
        f"---\nname: {name}\ndescription: {description}\n---\n\nbody of {description}\n",
        encoding="utf-8",
    )


def test_translate_command_per_class() -> None:
    canonical = "/gsd:plan-phase 1"

    assert translate_command(canonical, "claude") == "/gsd:plan-phase 1"
    assert translate_command(canonical, "gemini") == "/gsd:plan-phase 1"
    assert translate_command(canonical, "opencode") == "/gsd-plan-phase 1"
    assert translate_command(canonical, "codex") == "$gsd-plan-phase 1"
    assert translate_command(canonical, "copilot") == ""


def test_translate_command_only_replaces_first_colon() -> None:
    assert translate_command("/a:b:c", "opencode") == "/a-b:c"
    assert translate_command("/speckit.plan", "codex") == "$speckit.plan"


def test_skill_name_to_command_uses_first_hyphen() -> None:
    assert skill_name_to_command("orchard-plan") == "/orchard:plan"
    assert skill_name_to_command("gsd-plan-phase") == "/gsd:plan-phase"


def test_phase_skill_mapping() -> None:
    assert phase_skill(Phase.RESEARCH) == "orchard-research"
    assert phase_skill(Phase.PLANNING) == "orchard-plan"
    assert phase_skill(Phase.RUNNING) == "orchard-execute"
    assert phase_skill(Phase.REVIEW) == "orchard-review"
    assert phase_skill(Phase.BACKLOG) is None


def test_parse_skill_reads_frontmatter() -> None:
    skill = parse_skill(SKILL_TEXT)

    assert skill.name == "acme-deploy"
    assert skill.namespace == "acme"
    assert skill.command == "deploy"
    assert skill.description == 'Ship the "current" branch'
    assert skill.body.startswith("# Deploy")
    assert strip_frontmatter(SKILL_TEXT) == skill.body


@pytest.mark.parametrize(
    "text",
    [
        "# no header\n",
        "---\nname: acme-deploy\n",
        "---\n- just\n- a list\n---\nbody\n",
        "---\nname: nohyphen\n---\nbody\n",
        "---\nname: [unclosed\n---\nbody\n",
    ],
)
def test_parse_skill_rejects_malformed_headers(text: str) -> None:
    with pytest.raises(SkillLoadError):
        parse_skill(text)


def test_render_skill_layouts() -> None:
    skill = parse_skill(SKILL_TEXT)

    path, content = render_skill(skill, "claude")
    assert path == ".claude/commands/acme/deploy.md"
    assert content == SKILL_TEXT

    path, content = render_skill(skill, "opencode")
    assert path == ".opencode/commands/acme-deploy.md"
    assert not content.startswith("---")

    path, content = render_skill(skill, "codex")
    assert path == ".codex/skills/acme-deploy/SKILL.md"
    assert content.startswith("---")

    path, content = render_skill(skill, "copilot")
    assert path == ".github/agents/acme/deploy.md"

    path, content = render_skill(skill, "gemini")
    assert path == ".gemini/commands/acme/deploy.toml"
    parsed = tomllib.loads(content)
    assert parsed["description"] == 'Ship the "current" branch'
    assert "Run the release checklist." in parsed["prompt"]


def test_deploy_skills_writes_every_agent_layout(tmp_path: Path) -> None:
    skill = parse_skill(SKILL_TEXT)

    written = deploy_skills(tmp_path, [skill])

    assert (tmp_path / ".orchard" / "skills" / "acme-deploy" / "SKILL.md").exists()
    for agent in known_agents():
        relative_path, _ = render_skill(skill, agent)
        assert (tmp_path / relative_path).exists()
    assert len(written) == len(known_agents()) + 1


def test_bundled_skills_cover_every_phase() -> None:
    skills = bundled_skills()

    assert set(skills) == {"orchard-research", "orchard-plan", "orchard-execute", "orchard-review"}
    assert all(skill.description for skill in skills.values())


def test_resolve_skills_override_order(tmp_path: Path) -> None:
    project = tmp_path / "project"
    _write_skill(project / ".orchard" / "skills", "orchard-plan", "project plan")
    _write_skill(project / ".orchard" / "skills", "orchard-review", "project review")
    plugin_dir = tmp_path / "plugin"
    _write_skill(plugin_dir / "skills", "orchard-plan", "plugin plan")
    plugin = WorkflowPlugin(name="custom", source_dir=plugin_dir)

    skills = resolve_skills(plugin, project)

    assert skills["orchard-plan"].description == "plugin plan"
    assert skills["orchard-review"].description == "project review"
    assert skills["orchard-execute"].description == bundled_skills()["orchard-execute"].description


def test_fold_into_prompt_prepends_body() -> None:
    skill = parse_skill(SKILL_TEXT)

    folded = fold_into_prompt(skill, "Task: fix it")

    assert folded.startswith("# Deploy")
    assert folded.endswith("Task: fix it")
    assert fold_into_prompt(skill, "") == skill.body.strip()


def test_scan_agent_skills_lists_deployed_commands(tmp_path: Path) -> None:
    deploy_skills(tmp_path, [parse_skill(SKILL_TEXT)])

    assert scan_agent_skills("claude", tmp_path) == [
        ("/acme:deploy", 'Ship the "current" branch')
    ]
    assert scan_agent_skills(resolve_agent("gemini"), tmp_path) == [
        ("/acme:deploy", 'Ship the "current" branch')
    ]
    assert scan_agent_skills("codex", tmp_path) == [("$acme-deploy", 'Ship the "current" branch')]
    assert scan_agent_skills("opencode", tmp_path) == [("/acme-deploy", "acme deploy")]
