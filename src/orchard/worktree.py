from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from orchard.config import PROJECT_DIR_NAME
from orchard.errors import WorktreeError

logger = logging.getLogger(__name__)

WORKTREES_DIR = "worktrees"
BRANCH_PREFIX = "task/"
EXCLUDE_PATTERN = f"/{PROJECT_DIR_NAME}/"


def _run_git(
    cwd: Path,
    args: list[str],
    *,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    proc = subprocess.run(
        ["git", "--no-pager", *args],
        cwd=cwd,
        text=True,
        capture_output=True,
    )
    if check and proc.returncode != 0:
        raise WorktreeError(proc.stderr.strip() or proc.stdout.strip() or f"git {args[0]} failed")
    return proc


@dataclass(slots=True)
class ScriptResult:
    command: str
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


async def run_shell_script(command: str, *, cwd: Path, env: dict[str, str]) -> ScriptResult:
    """Run ``command`` with ``sh -c`` semantics. No timeout is applied."""
    process = await asyncio.create_subprocess_shell(
        command,
        cwd=str(cwd),
        env={**os.environ, **env},
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    stdout, _ = await process.communicate()
    result = ScriptResult(
        command=command,
        exit_code=process.returncode if process.returncode is not None else -1,
        output=stdout.decode("utf-8", errors="replace").strip(),
    )
    logger.info("Script %r exited with status %d", command, result.exit_code)
    return result


class WorktreeManager:
    def __init__(self, project_path: Path, *, base_branch: str | None = None) -> None:
        self.project_path = project_path.resolve()
        self.base_branch = base_branch

    def worktree_path(self, slug: str) -> Path:
        return self.project_path / PROJECT_DIR_NAME / WORKTREES_DIR / slug

    @staticmethod
    def branch_name(slug: str) -> str:
        return f"{BRANCH_PREFIX}{slug}"

    def exists(self, slug: str) -> bool:
        return (self.worktree_path(slug) / ".git").exists()

    def is_git_repo(self) -> bool:
        proc = _run_git(self.project_path, ["rev-parse", "--is-inside-work-tree"], check=False)
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _branch_exists(self, branch: str) -> bool:
        proc = _run_git(self.project_path, ["rev-parse", "--verify", "--quiet", branch], check=False)
        return proc.returncode == 0

    def detect_base_branch(self) -> str:
        candidates = [self.base_branch] if self.base_branch else []
        candidates.extend(["main", "master"])
        for candidate in candidates:
            if candidate and self._branch_exists(candidate):
                return candidate
        proc = _run_git(self.project_path, ["rev-parse", "--abbrev-ref", "HEAD"])
        return proc.stdout.strip()

    def _ensure_excluded(self) -> None:
        proc = _run_git(self.project_path, ["rev-parse", "--git-common-dir"])
        common_dir = Path(proc.stdout.strip())
        if not common_dir.is_absolute():
            common_dir = self.project_path / common_dir
        exclude = common_dir / "info" / "exclude"
        existing = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
        if EXCLUDE_PATTERN in existing.splitlines():
            return
        exclude.parent.mkdir(parents=True, exist_ok=True)
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        exclude.write_text(f"{existing}{prefix}{EXCLUDE_PATTERN}\n", encoding="utf-8")

    def create(self, slug: str) -> Path:
        path = self.worktree_path(slug)
        if self.exists(slug):
            return path
        if not self.is_git_repo():
            raise WorktreeError(f"{self.project_path} is not a git repository")

        self._ensure_excluded()
        path.parent.mkdir(parents=True, exist_ok=True)
        branch = self.branch_name(slug)
        if self._branch_exists(branch):
            args = ["worktree", "add", str(path), branch]
        else:
            args = ["worktree", "add", str(path), "-b", branch, self.detect_base_branch()]
        _run_git(self.project_path, args)
        logger.info("Created worktree %s on branch %s", path, branch)
        return path

    def initialize(
        self,
        worktree: Path,
        *,
        copy_files: list[str],
        copy_dirs: list[str],
    ) -> list[str]:
        """Copy project files into the worktree; returns warnings for entries that failed."""
        warnings: list[str] = []
        for relative in [*copy_files, *copy_dirs]:
            source = self.project_path / relative
            destination = worktree / relative
            if not source.exists():
                warnings.append(f"copy source not found: {relative}")
                continue
            try:
                destination.parent.mkdir(parents=True, exist_ok=True)
                if source.is_dir():
                    shutil.copytree(source, destination, dirs_exist_ok=True)
                else:
                    shutil.copy2(source, destination)
            except OSError as exc:
                warnings.append(f"failed to copy {relative}: {exc}")
        for warning in warnings:
            logger.warning("Worktree init %s: %s", worktree.name, warning)
        return warnings

    def remove(self, slug: str) -> None:
        path = self.worktree_path(slug)
        proc = _run_git(self.project_path, ["worktree", "remove", str(path), "--force"], check=False)
        if proc.returncode != 0:
            logger.warning("git worktree remove failed for %s: %s", path, proc.stderr.strip())
            if path.exists():
                shutil.rmtree(path)
            _run_git(self.project_path, ["worktree", "prune"], check=False)
        logger.info("Removed worktree %s", path)

    def delete_branch(self, branch: str) -> None:
        _run_git(self.project_path, ["branch", "-D", branch], check=False)

    def diff(self, worktree: Path) -> str:
        sections: list[str] = []
        unstaged = _run_git(worktree, ["diff"], check=False).stdout
        if unstaged.strip():
            sections.append(f"=== Unstaged Changes ===\n\n{unstaged}")
        staged = _run_git(worktree, ["diff", "--cached"], check=False).stdout
        if staged.strip():
            sections.append(f"=== Staged Changes ===\n\n{staged}")
        untracked = _run_git(
            worktree, ["ls-files", "--others", "--exclude-standard"], check=False
        ).stdout
        files = [line for line in untracked.splitlines() if line.strip()]
        if files:
            parts = ["=== Untracked Files ==="]
            for name in files:
                file_diff = _run_git(
                    worktree, ["diff", "--no-index", "--", "/dev/null", name], check=False
                ).stdout
                parts.append(file_diff.rstrip() if file_diff.strip() else f"+++ new file: {name}")
            sections.append("\n".join(parts))
        if not sections:
            return f"(no changes)\n\nWorktree: {worktree}"
        return "\n\n".join(sections)

    def diff_stat(self, worktree: Path, base: str | None = None) -> str:
        base_ref = base or self.detect_base_branch()
        proc = _run_git(worktree, ["diff", "--stat", f"{base_ref}...HEAD"], check=False)
        working = _run_git(worktree, ["diff", "--stat", "HEAD"], check=False)
        return "\n".join(part for part in (proc.stdout.strip(), working.stdout.strip()) if part)

    def has_changes(self, worktree: Path) -> bool:
        proc = _run_git(worktree, ["status", "--porcelain"])
        return bool(proc.stdout.strip())

    def commit_all(self, worktree: Path, message: str) -> bool:
        """Stage everything and commit; returns False when there was nothing to commit."""
        _run_git(worktree, ["add", "-A"])
        if not _run_git(worktree, ["diff", "--cached", "--name-only"]).stdout.strip():
            return False
        _run_git(worktree, ["commit", "-m", message])
        return True

    def push(self, worktree: Path, branch: str) -> None:
        _run_git(worktree, ["push", "-u", "origin", branch])
