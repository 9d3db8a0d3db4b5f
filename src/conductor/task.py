from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path


def utcnow() -> datetime:
    return datetime.now(UTC)


class TaskPhase(StrEnum):
    PENDING = "pending"
    ANALYSIS = "analysis"
    RUNNING = "running"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({TaskPhase.COMPLETED, TaskPhase.FAILED})


@dataclass(slots=True)
class Task:
    item_id: int
    title: str
    branch: str
    workspace: Path
    session_id: str = ""
    phase: TaskPhase = TaskPhase.PENDING
    started_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    error_handled: bool = False
    # set once supervision of this record has stopped
    settled: bool = False
    last_notification: str | None = None
    share_url: str | None = None

    @property
    def active(self) -> bool:
        return self.phase not in TERMINAL_PHASES

    def claim_recovery(self) -> bool:
        """Flip the error-handled flag; only the first caller gets ``True``."""
        if self.error_handled:
            return False
        self.error_handled = True
        return True
