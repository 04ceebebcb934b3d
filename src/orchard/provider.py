from __future__ import annotations

import json
import logging
import subprocess
from enum import StrEnum
from pathlib import Path
from typing import Protocol

from orchard.errors import ProviderError

logger = logging.getLogger(__name__)


class PullRequestState(StrEnum):
    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"
    UNKNOWN = "unknown"


class PullRequestProvider(Protocol):
    def create_pr(
        self, project_path: Path, title: str, body: str, head_branch: str
    ) -> tuple[int, str]: ...

    def pr_state(self, project_path: Path, number: int) -> PullRequestState: ...


def parse_pr_number(url: str) -> int:
    tail = url.rstrip("/").rsplit("/", 1)[-1]
    return int(tail) if tail.isdigit() else 0


class GitHubCliProvider:
    """Pull requests through the ``gh`` command line tool."""

    def __init__(self, binary: str = "gh") -> None:
        self.binary = binary

    def _run(self, project_path: Path, args: list[str]) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(
                [self.binary, *args],
                cwd=project_path,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise ProviderError(f"{self.binary} binary not found") from exc

    def create_pr(
        self, project_path: Path, title: str, body: str, head_branch: str
    ) -> tuple[int, str]:
        proc = self._run(
            project_path,
            ["pr", "create", "--title", title, "--body", body, "--head", head_branch],
        )
        if proc.returncode != 0:
            raise ProviderError(f"Failed to create PR: {proc.stderr.strip()}")
        url = proc.stdout.strip().splitlines()[-1] if proc.stdout.strip() else ""
        logger.info("Created pull request %s", url)
        return parse_pr_number(url), url

    def pr_state(self, project_path: Path, number: int) -> PullRequestState:
        proc = self._run(project_path, ["pr", "view", str(number), "--json", "state"])
        if proc.returncode != 0:
            return PullRequestState.UNKNOWN
        try:
            state = str(json.loads(proc.stdout).get("state", "")).lower()
        except (json.JSONDecodeError, AttributeError):
            return PullRequestState.UNKNOWN
        try:
            return PullRequestState(state)
        except ValueError:
            return PullRequestState.UNKNOWN
