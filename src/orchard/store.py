from __future__ import annotations

import json
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Protocol

from orchard.config import PROJECT_DIR_NAME
from orchard.errors import StoreError
from orchard.models import Project, Task, utcnow_iso


class TaskStore(Protocol):
    def create_task(self, task: Task) -> None: ...

    def update_task(self, task: Task) -> None: ...

    def delete_task(self, task_id: str) -> None: ...

    def get_task(self, task_id: str) -> Task | None: ...

    def list_tasks(self, project_id: str | None = None) -> list[Task]: ...

    def upsert_project(self, project: Project) -> None: ...

    def get_project(self, project_id: str) -> Project | None: ...

    def list_projects(self) -> list[Project]: ...


class JsonTaskStore:
    """Task and project records kept in versioned JSON envelopes under ``.orchard/state``."""

    SCHEMA_VERSION = 1
    NAMESPACES = {"tasks", "projects"}

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self.state_dir = self.root / PROJECT_DIR_NAME / "state"
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    def _file(self, namespace: str) -> Path:
        if namespace not in self.NAMESPACES:
            raise StoreError(f"Unsupported namespace: {namespace}")
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def get_envelope(self, namespace: str) -> dict[str, Any]:
        path = self._file(namespace)
        if not path.exists():
            return {
                "schema_version": self.SCHEMA_VERSION,
                "revision": 0,
                "updated_at": utcnow_iso(),
                "data": {},
            }
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StoreError(f"Corrupt state file {path}: {exc}") from exc
        if not isinstance(raw, dict) or not isinstance(raw.get("data"), dict):
            raise StoreError(f"Unexpected state layout in {path}")
        return {
            "schema_version": int(raw.get("schema_version") or self.SCHEMA_VERSION),
            "revision": int(raw.get("revision") or 0),
            "updated_at": raw.get("updated_at") or utcnow_iso(),
            "data": raw["data"],
        }

    def _write(self, namespace: str, data: dict[str, Any], revision: int) -> None:
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": utcnow_iso(),
            "data": data,
        }
        path = self._file(namespace)
        temp_path = path.with_suffix(".json.tmp")
        temp_path.write_text(
            json.dumps(envelope, ensure_ascii=False, indent=2, sort_keys=True),
            encoding="utf-8",
        )
        os.replace(temp_path, path)

    def update(
        self,
        namespace: str,
        updater: Callable[[dict[str, Any]], dict[str, Any]],
    ) -> dict[str, Any]:
        with self._state_lock():
            current = self.get_envelope(namespace)
            updated = updater(dict(current["data"]))
            self._write(namespace, updated, int(current["revision"]) + 1)
            return updated

    def _records(self, namespace: str) -> dict[str, Any]:
        return self.get_envelope(namespace)["data"]

    def create_task(self, task: Task) -> None:
        def _updater(data: dict[str, Any]) -> dict[str, Any]:
            if task.id in data:
                raise StoreError(f"Task already exists: {task.id}")
            data[task.id] = task.to_dict()
            return data

        self.update("tasks", _updater)

    def update_task(self, task: Task) -> None:
        task.touch()

        def _updater(data: dict[str, Any]) -> dict[str, Any]:
            if task.id not in data:
                raise StoreError(f"Unknown task: {task.id}")
            data[task.id] = task.to_dict()
            return data

        self.update("tasks", _updater)

    def delete_task(self, task_id: str) -> None:
        def _updater(data: dict[str, Any]) -> dict[str, Any]:
            data.pop(task_id, None)
            return data

        self.update("tasks", _updater)

    def get_task(self, task_id: str) -> Task | None:
        raw = self._records("tasks").get(task_id)
        return Task.from_dict(raw) if raw else None

    def find_task(self, prefix: str) -> Task:
        """Look a task up by id or unambiguous id prefix."""
        records = self._records("tasks")
        matches = [key for key in records if key.startswith(prefix)]
        if not matches:
            raise StoreError(f"No task matches {prefix!r}")
        if len(matches) > 1:
            raise StoreError(f"Task id prefix {prefix!r} is ambiguous")
        raw = records[matches[0]]
        if not isinstance(raw, dict) or not raw:
            raise StoreError(f"Corrupt task record {matches[0]!r}")
        return Task.from_dict(raw)

    def list_tasks(self, project_id: str | None = None) -> list[Task]:
        tasks = [Task.from_dict(raw) for raw in self._records("tasks").values()]
        if project_id is not None:
            tasks = [task for task in tasks if task.project_id == project_id]
        return sorted(tasks, key=lambda task: (task.created_at, task.id))

    def upsert_project(self, project: Project) -> None:
        def _updater(data: dict[str, Any]) -> dict[str, Any]:
            data[project.id] = project.to_dict()
            return data

        self.update("projects", _updater)

    def get_project(self, project_id: str) -> Project | None:
        raw = self._records("projects").get(project_id)
        return Project.from_dict(raw) if raw else None

    def project_for_path(self, path: Path) -> Project | None:
        resolved = str(path.resolve())
        for raw in self._records("projects").values():
            if raw.get("path") == resolved:
                return Project.from_dict(raw)
        return None

    def list_projects(self) -> list[Project]:
        return [Project.from_dict(raw) for raw in self._records("projects").values()]
