import json
from pathlib import Path

import pytest

from orchard.errors import StoreError
from orchard.models import Phase, Project, Task
from orchard.store import JsonTaskStore


def _task(title: str, *, project_id: str = "proj") -> Task:
    return Task.new(title, project_id=project_id, plugin="orchard", agent="claude")


def test_task_roundtrip_and_envelope(tmp_path: Path) -> None:
    store = JsonTaskStore(tmp_path)
    task = _task("Fix login", project_id="p1")
    task.description = "Users get logged out"

    store.create_task(task)
    task.phase = Phase.PLANNING
    task.branch_name = "task/x"
    store.update_task(task)

    loaded = store.get_task(task.id)
    assert loaded is not None
    assert loaded.phase is Phase.PLANNING
    assert loaded.branch_name == "task/x"
    assert loaded.content == "Fix login\n\nUsers get logged out"

    on_disk = json.loads((tmp_path / ".orchard" / "state" / "tasks.json").read_text("utf-8"))
    assert on_disk["schema_version"] == JsonTaskStore.SCHEMA_VERSION
    assert on_disk["revision"] == 2
    assert on_disk["data"][task.id]["phase"] == "planning"


def test_duplicate_and_unknown_tasks_are_rejected(tmp_path: Path) -> None:
    store = JsonTaskStore(tmp_path)
    task = _task("One")
    store.create_task(task)

    with pytest.raises(StoreError):
        store.create_task(task)
    with pytest.raises(StoreError):
        store.update_task(_task("Never created"))


def test_list_tasks_filters_by_project(tmp_path: Path) -> None:
    store = JsonTaskStore(tmp_path)
    first = _task("First", project_id="a")
    second = _task("Second", project_id="b")
    store.create_task(first)
    store.create_task(second)

    assert [task.id for task in store.list_tasks("a")] == [first.id]
    assert {task.id for task in store.list_tasks()} == {first.id, second.id}

    store.delete_task(first.id)
    store.delete_task(first.id)
    assert store.get_task(first.id) is None


def test_find_task_by_prefix(tmp_path: Path) -> None:
    store = JsonTaskStore(tmp_path)
    first = _task("First")
    first.id = "abc111"
    second = _task("Second")
    second.id = "abc222"
    store.create_task(first)
    store.create_task(second)

    assert store.find_task("abc1").title == "First"
    with pytest.raises(StoreError):
        store.find_task("abc")
    with pytest.raises(StoreError):
        store.find_task("zzz")


def test_legacy_explore_phase_reads_as_research(tmp_path: Path) -> None:
    store = JsonTaskStore(tmp_path)
    task = _task("Legacy")
    store.create_task(task)
    path = tmp_path / ".orchard" / "state" / "tasks.json"
    envelope = json.loads(path.read_text("utf-8"))
    envelope["data"][task.id]["phase"] = "explore"
    path.write_text(json.dumps(envelope), encoding="utf-8")

    loaded = store.get_task(task.id)
    assert loaded is not None
    assert loaded.phase is Phase.RESEARCH


def test_find_task_rejects_empty_record(tmp_path: Path) -> None:
    store = JsonTaskStore(tmp_path)
    task = _task("Broken")
    store.create_task(task)
    path = tmp_path / ".orchard" / "state" / "tasks.json"
    envelope = json.loads(path.read_text("utf-8"))
    envelope["data"][task.id] = {}
    path.write_text(json.dumps(envelope), encoding="utf-8")

    with pytest.raises(StoreError, match="Corrupt task record"):
        store.find_task(task.id[:8])


def test_corrupt_state_raises_store_error(tmp_path: Path) -> None:
    store = JsonTaskStore(tmp_path)
    (tmp_path / ".orchard" / "state" / "tasks.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(StoreError):
        store.list_tasks()


def test_projects_are_upserted_and_found_by_path(tmp_path: Path) -> None:
    store = JsonTaskStore(tmp_path)
    project = Project.new("demo", str(tmp_path.resolve()), plugin="gsd")
    store.upsert_project(project)
    project.default_agent = "codex"
    store.upsert_project(project)

    assert len(store.list_projects()) == 1
    found = store.project_for_path(tmp_path)
    assert found is not None
    assert found.default_agent == "codex"
    assert store.get_project(project.id) == found
    assert store.project_for_path(tmp_path / "other") is None


def test_stale_lock_times_out(tmp_path: Path) -> None:
    store = JsonTaskStore(tmp_path)
    store.lock_file.write_text("12345", encoding="utf-8")

    with pytest.raises(StoreError):
        with store._state_lock(timeout_seconds=0.05):
            pass
