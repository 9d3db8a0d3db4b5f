from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from conductor.locks import KeyedLocks
from conductor.runtime.base import (
    RuntimeClientError,
    SessionClient,
    SessionInfo,
    SessionNotFoundError,
    SessionStatus,
)
from conductor.runtime.events import SessionEvent
from conductor.tracker.base import CheckState, Comment, Issue, IssueTracker, PullRequest
from conductor.workspace.manager import WorkspaceManager

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeTracker(IssueTracker):
    def __init__(self, issues: dict[str, list[Issue]] | None = None) -> None:
        self.issues = issues or {}
        self.labels_added: list[tuple[int, str]] = []
        self.labels_removed: list[tuple[int, str]] = []
        self.comments: list[tuple[int, str]] = []
        self.fail_comments = False
        self.pull_requests: list[PullRequest] = []
        self.checks: dict[str, CheckState] = {}

    @property
    def username(self) -> str:
        return "conductor-bot"

    async def list_issues(self, label: str, exclude_labels: tuple[str, ...] = ()) -> list[Issue]:
        return [
            issue
            for issue in self.issues.get(label, [])
            if not any(issue.has_label(excluded) for excluded in exclude_labels)
        ]

    async def list_comments(self, number: int) -> list[Comment]:
        _ = number
        return []

    async def add_label(self, number: int, label: str) -> None:
        self.labels_added.append((number, label))

    async def remove_label(self, number: int, label: str) -> None:
        self.labels_removed.append((number, label))

    async def post_comment(self, number: int, body: str) -> None:
        if self.fail_comments:
            raise RuntimeError("comment rejected")
        self.comments.append((number, body))

    async def create_pull_request(self, title: str, body: str, head: str, base: str) -> PullRequest:
        _ = title, body
        number = 100 + len(self.pull_requests)
        pull = PullRequest(number=number, url=f"https://pulls.test/{number}", head=head, base=base)
        self.pull_requests.append(pull)
        return pull

    async def check_status(self, ref: str) -> CheckState:
        return self.checks.get(ref, "pending")


class FakeSessionClient(SessionClient):
    """In-memory runtime; events pushed with :meth:`push` reach every subscriber."""

    def __init__(self) -> None:
        self.sessions: dict[str, SessionInfo] = {}
        self.prompts: list[tuple[str, str]] = []
        self.aborted: list[str] = []
        self.statuses: dict[str, SessionStatus] = {}
        self.fail_prompt = False
        self.fail_abort = False
        self.lookup_error: RuntimeClientError | None = None
        self._queues: list[asyncio.Queue[SessionEvent]] = []
        self._counter = 0

    async def create_session(
        self,
        title: str,
        *,
        parent_id: str | None = None,
        directory: Path | None = None,
    ) -> SessionInfo:
        _ = directory
        self._counter += 1
        info = SessionInfo(id=f"ses_{self._counter}", title=title, parent_id=parent_id)
        self.sessions[info.id] = info
        return info

    async def get_session(self, session_id: str) -> SessionInfo:
        if self.lookup_error is not None:
            raise self.lookup_error
        if session_id not in self.sessions:
            raise SessionNotFoundError(f"{session_id} not found", status_code=404)
        return self.sessions[session_id]

    async def send_prompt_async(
        self, session_id: str, text: str, *, model: str | None = None
    ) -> None:
        _ = model
        if self.fail_prompt:
            raise RuntimeClientError("prompt rejected", status_code=500)
        self.prompts.append((session_id, text))

    async def subscribe_events(self) -> AsyncIterator[SessionEvent]:
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._queues.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.remove(queue)

    def push(self, event: SessionEvent) -> None:
        for queue in list(self._queues):
            queue.put_nowait(event)

    @property
    def subscribers(self) -> int:
        return len(self._queues)

    async def get_aggregate_status(self) -> dict[str, SessionStatus]:
        return dict(self.statuses)

    async def abort_session(self, session_id: str) -> None:
        if self.fail_abort:
            raise RuntimeClientError("abort rejected")
        self.aborted.append(session_id)

    async def share_session(self, session_id: str) -> str | None:
        return f"https://share.test/{session_id}"

    async def list_agents(self) -> list[dict[str, Any]]:
        return []


class FakeWorkspaces(WorkspaceManager):
    """Workspace manager that creates plain directories instead of worktrees."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.retention_days = 7
        self._locks = KeyedLocks()
        self.provisioned: list[tuple[int, str]] = []
        self.branches: dict[int, str] = {}
        self.fail_provision = False

    async def provision(self, item_id: int, branch: str) -> Path:
        if self.fail_provision:
            raise RuntimeError("git exploded")
        path = self.path_for(item_id)
        if not path.is_dir():
            path.mkdir(parents=True)
            self.provisioned.append((item_id, branch))
            self.branches[item_id] = branch
        return path

    async def current_branch(self, item_id: int) -> str | None:
        if not self.path_for(item_id).is_dir():
            return None
        return self.branches.get(item_id)


def make_issue(
    number: int,
    *,
    labels: list[str] | None = None,
    minutes: int = 0,
    author: str = "alice",
    comments: list[Comment] | None = None,
) -> Issue:
    return Issue(
        number=number,
        title=f"Issue {number}",
        body="Please fix it.",
        labels=list(labels if labels is not None else ["ai-task"]),
        author=author,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        comments=list(comments or []),
    )


def make_comment(comment_id: int, author: str, at: datetime, body: str = "go ahead") -> Comment:
    return Comment(id=comment_id, author=author, body=body, created_at=at)


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)
