from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

CheckState = Literal["success", "failure", "pending"]


class TrackerError(RuntimeError):
    """Raised when the issue tracker rejects or fails a request."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retriable = retriable


@dataclass(slots=True, frozen=True)
class Comment:
    id: int
    author: str
    body: str
    created_at: datetime


@dataclass(slots=True)
class Issue:
    number: int
    title: str
    body: str
    labels: list[str] = field(default_factory=list)
    author: str = ""
    created_at: datetime | None = None
    comments: list[Comment] = field(default_factory=list)

    def has_label(self, label: str) -> bool:
        return label in self.labels


@dataclass(slots=True, frozen=True)
class PullRequest:
    number: int
    url: str
    head: str
    base: str


class IssueTracker(ABC):
    """Operations the orchestrator needs from an issue tracker."""

    @property
    @abstractmethod
    def username(self) -> str:
        """Identity the orchestrator acts as; its comments are not human input."""

    @abstractmethod
    async def list_issues(self, label: str, exclude_labels: tuple[str, ...] = ()) -> list[Issue]:
        """Open issues carrying ``label`` and none of ``exclude_labels``, oldest first."""

    @abstractmethod
    async def list_comments(self, number: int) -> list[Comment]:
        """All comments of an issue in chronological order."""

    @abstractmethod
    async def add_label(self, number: int, label: str) -> None: ...

    @abstractmethod
    async def remove_label(self, number: int, label: str) -> None: ...

    @abstractmethod
    async def post_comment(self, number: int, body: str) -> None: ...

    @abstractmethod
    async def create_pull_request(self, title: str, body: str, head: str, base: str) -> PullRequest:
        ...

    @abstractmethod
    async def check_status(self, ref: str) -> CheckState:
        """Aggregate CI state for a git ref."""

    async def wait_for_checks(
        self, ref: str, *, timeout_seconds: float = 1800.0, interval_seconds: float = 30.0
    ) -> CheckState:
        """Poll :meth:`check_status` until it settles or the timeout elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        while True:
            state = await self.check_status(ref)
            if state != "pending" or loop.time() >= deadline:
                return state
            await asyncio.sleep(interval_seconds)
