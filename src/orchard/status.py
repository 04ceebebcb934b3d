from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from orchard.errors import OrchardError
from orchard.models import Phase, PhaseStatus, SessionHandle
from orchard.session import SessionManager

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(slots=True, frozen=True)
class PollTarget:
    task_id: str
    phase: Phase
    worktree: Path | None
    artifact: str | None
    handle: SessionHandle | None


@dataclass(slots=True, frozen=True)
class ArtifactEntry:
    phase: Phase
    present: bool
    checked_at: float


def artifact_exists(worktree: Path, pattern: str, *, task_id: str = "") -> bool:
    """Check a phase artifact; one ``*`` directory segment is expanded."""
    relative = pattern.replace("{task_id}", task_id)
    if "*" not in relative:
        return (worktree / relative).exists()
    parts = Path(relative).parts
    wildcard = next(index for index, part in enumerate(parts) if "*" in part)
    base = worktree.joinpath(*parts[:wildcard])
    rest = parts[wildcard + 1 :]
    if not base.is_dir():
        return False
    for candidate in base.glob(parts[wildcard]):
        if not rest:
            return True
        if candidate.is_dir() and candidate.joinpath(*rest).exists():
            return True
    return False


class StatusPoller:
    """Derives a PhaseStatus per task from window liveness and artifact presence.

    Only the artifact check is cached; entries are replaced, never mutated,
    and ``snapshot`` swaps in a fresh dict on every poll.
    """

    def __init__(
        self,
        sessions: SessionManager,
        *,
        interval_seconds: float = 0.1,
        ttl_seconds: float = 2.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self.sessions = sessions
        self.interval_seconds = interval_seconds
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: dict[str, ArtifactEntry] = {}
        self._snapshot: dict[str, PhaseStatus] = {}

    @property
    def snapshot(self) -> dict[str, PhaseStatus]:
        return self._snapshot

    def _artifact_present(self, target: PollTarget) -> bool:
        if target.worktree is None or not target.artifact:
            return False
        now = self._clock()
        entry = self._cache.get(target.task_id)
        if (
            entry is not None
            and entry.phase is target.phase
            and now - entry.checked_at < self.ttl_seconds
        ):
            return entry.present
        present = artifact_exists(target.worktree, target.artifact, task_id=target.task_id)
        self._cache[target.task_id] = ArtifactEntry(
            phase=target.phase, present=present, checked_at=now
        )
        return present

    def check(self, target: PollTarget) -> PhaseStatus:
        if self._artifact_present(target):
            return PhaseStatus.READY
        if target.handle is not None and self.sessions.window_exists(target.handle):
            return PhaseStatus.WORKING
        return PhaseStatus.EXITED

    def poll_once(self, targets: list[PollTarget]) -> dict[str, PhaseStatus]:
        statuses = {target.task_id: self.check(target) for target in targets}
        live = {target.task_id for target in targets}
        self._cache = {key: entry for key, entry in self._cache.items() if key in live}
        self._snapshot = statuses
        return statuses

    def _poll(self, targets: Callable[[], list[PollTarget]]) -> dict[str, PhaseStatus]:
        return self.poll_once(targets())

    async def run(
        self,
        targets: Callable[[], list[PollTarget]],
        stop: asyncio.Event,
    ) -> None:
        """Poll until ``stop`` is set; ``targets`` is called on a worker thread."""
        while not stop.is_set():
            try:
                await asyncio.to_thread(self._poll, targets)
            except OrchardError as exc:
                logger.warning("Status poll failed: %s", exc)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                continue
        logger.debug("Status poller stopped")
