import asyncio
from datetime import timedelta
from pathlib import Path

from fakes import (
    BASE_TIME,
    FakeClock,
    FakeSessionClient,
    FakeTracker,
    FakeWorkspaces,
    make_comment,
    make_issue,
)

from conductor.config import SupervisionConfig
from conductor.coordinator import LifecycleCoordinator
from conductor.scheduler import CycleReport, Poller
from conductor.tracker import labels
from conductor.tracker.base import Issue


class SelectiveFailureWorkspaces(FakeWorkspaces):
    def __init__(self, root: Path, failing: set[int]) -> None:
        super().__init__(root)
        self.failing = failing

    async def provision(self, item_id: int, branch: str) -> Path:
        if item_id in self.failing:
            raise RuntimeError(f"cannot provision {item_id}")
        return await super().provision(item_id, branch)


class BrokenTracker(FakeTracker):
    async def list_issues(self, label: str, exclude_labels: tuple[str, ...] = ()) -> list[Issue]:
        _ = label, exclude_labels
        raise RuntimeError("tracker unavailable")


class AnonymousTracker(FakeTracker):
    @property
    def username(self) -> str:
        return ""


def _poller(
    tmp_path: Path,
    tracker: FakeTracker,
    *,
    max_concurrent: int = 2,
    allowed_users: list[str] | None = None,
    workspaces: FakeWorkspaces | None = None,
) -> tuple[Poller, LifecycleCoordinator, FakeSessionClient]:
    client = FakeSessionClient()
    coordinator = LifecycleCoordinator(
        tracker=tracker,
        client=client,
        workspaces=workspaces or FakeWorkspaces(tmp_path / ".worktrees"),
        repo="acme/widgets",
        max_concurrent=max_concurrent,
        supervision=SupervisionConfig(status_poll_interval_seconds=3600),
        share_sessions=False,
        clock=FakeClock(),
    )
    poller = Poller(tracker, coordinator, interval_seconds=60, allowed_users=allowed_users)
    return poller, coordinator, client


def test_discovery_admits_in_priority_order_up_to_cap(tmp_path: Path) -> None:
    tracker = FakeTracker(
        {
            labels.READY: [
                make_issue(1, labels=[labels.READY, labels.PRIORITY_HIGH], minutes=10),
                make_issue(2, labels=[labels.READY], minutes=0),
                make_issue(3, labels=[labels.READY, labels.PRIORITY_MEDIUM], minutes=5),
            ]
        }
    )
    poller, coordinator, client = _poller(tmp_path, tracker)

    async def _scenario() -> CycleReport:
        report = await poller.run_cycle()
        await coordinator.shutdown()
        return report

    report = asyncio.run(_scenario())

    assert report.admitted == [1, 3]
    assert report.deferred == [2]
    assert [info.title for info in client.sessions.values()] == ["#1: Issue 1", "#3: Issue 3"]


def test_back_to_back_cycles_admit_nothing_once_full(tmp_path: Path) -> None:
    tracker = FakeTracker({labels.READY: [make_issue(n, minutes=n) for n in (1, 2, 3)]})
    poller, coordinator, client = _poller(tmp_path, tracker)

    async def _scenario() -> tuple[CycleReport, CycleReport]:
        first = await poller.run_cycle()
        second = await poller.run_cycle()
        await coordinator.shutdown()
        return first, second

    first, second = asyncio.run(_scenario())

    assert first.admitted == [1, 2]
    assert second.admitted == []
    assert second.deferred == [3]
    assert len(client.sessions) == 2


def test_discovery_skips_in_progress_and_disallowed_items(tmp_path: Path) -> None:
    tracker = FakeTracker(
        {
            labels.READY: [
                make_issue(1, labels=[labels.READY, labels.IN_PROGRESS]),
                make_issue(2, author="mallory", minutes=1),
                make_issue(3, author="mallory", labels=[labels.READY, labels.APPROVED], minutes=2),
                make_issue(4, author="alice", minutes=3),
            ]
        }
    )
    poller, coordinator, _ = _poller(
        tmp_path, tracker, max_concurrent=5, allowed_users=["alice"]
    )

    async def _scenario() -> CycleReport:
        report = await poller.run_cycle()
        await coordinator.shutdown()
        return report

    report = asyncio.run(_scenario())

    assert report.admitted == [3, 4]


def test_start_failure_does_not_block_other_items(tmp_path: Path) -> None:
    tracker = FakeTracker({labels.READY: [make_issue(n, minutes=n) for n in (1, 2)]})
    workspaces = SelectiveFailureWorkspaces(tmp_path / ".worktrees", failing={1})
    poller, coordinator, _ = _poller(tmp_path, tracker, workspaces=workspaces)

    async def _scenario() -> CycleReport:
        report = await poller.run_cycle()
        await coordinator.shutdown()
        return report

    report = asyncio.run(_scenario())

    assert report.admitted == [2]
    assert "cannot provision 1" in report.failed[1]


def test_resume_scan_continues_only_items_with_new_human_input(tmp_path: Path) -> None:
    hour = timedelta(hours=1)
    answered = make_issue(
        10,
        labels=[labels.BLOCKED],
        comments=[
            make_comment(1, "conductor-bot", BASE_TIME + hour, body="Which API version?"),
            make_comment(2, "alice", BASE_TIME + 2 * hour, body="v2 please"),
        ],
    )
    waiting = make_issue(
        11,
        labels=[labels.BLOCKED],
        comments=[
            make_comment(3, "alice", BASE_TIME + hour),
            make_comment(4, "conductor-bot", BASE_TIME + 2 * hour, body="Still need input"),
        ],
    )
    silent = make_issue(12, labels=[labels.BLOCKED])
    tracker = FakeTracker({labels.BLOCKED: [answered, waiting, silent]})
    poller, coordinator, client = _poller(tmp_path, tracker)

    async def _scenario() -> CycleReport:
        report = await poller.run_cycle()
        await coordinator.shutdown()
        return report

    report = asyncio.run(_scenario())

    assert report.resumed == [10]
    assert [info.title for info in client.sessions.values()] == ["#10: Issue 10"]


def test_resume_scan_uses_task_start_for_in_memory_items(tmp_path: Path) -> None:
    issue = make_issue(20)
    tracker = FakeTracker()
    poller, coordinator, client = _poller(tmp_path, tracker)

    async def _scenario() -> CycleReport:
        task = await coordinator.start(issue)
        blocked = make_issue(
            20,
            labels=[labels.BLOCKED],
            comments=[
                make_comment(1, "alice", task.started_at - timedelta(minutes=1)),
            ],
        )
        tracker.issues[labels.BLOCKED] = [blocked]
        stale = await poller.run_cycle()
        blocked.comments.append(make_comment(2, "alice", task.started_at + timedelta(minutes=1)))
        fresh = await poller.run_cycle()
        await coordinator.shutdown()
        assert stale.resumed == []
        return fresh

    report = asyncio.run(_scenario())

    assert report.resumed == [20]
    assert len(client.sessions) == 1
    assert len(client.prompts) == 2


def test_resume_scan_needs_own_identity(tmp_path: Path) -> None:
    question = make_comment(1, "conductor-bot", BASE_TIME, body="Which API version?")
    tracker = AnonymousTracker(
        {labels.BLOCKED: [make_issue(9, labels=[labels.BLOCKED], comments=[question])]}
    )
    poller, coordinator, client = _poller(tmp_path, tracker)

    async def _scenario() -> list[CycleReport]:
        reports = [await poller.run_cycle() for _ in range(3)]
        await coordinator.shutdown()
        return reports

    reports = asyncio.run(_scenario())

    assert [report.resumed for report in reports] == [[], [], []]
    assert client.sessions == {}


def test_scan_errors_are_recorded_not_raised(tmp_path: Path) -> None:
    poller, coordinator, _ = _poller(tmp_path, BrokenTracker())

    report = asyncio.run(poller.run_cycle())

    assert report.admitted == []
    assert report.errors == ["discovery: tracker unavailable", "resume: tracker unavailable"]
    assert coordinator.active_count() == 0


def test_run_forever_stops_when_requested(tmp_path: Path) -> None:
    poller, coordinator, _ = _poller(tmp_path, FakeTracker())

    async def _scenario() -> None:
        runner = asyncio.create_task(poller.run_forever())
        await asyncio.sleep(0)
        poller.stop()
        await asyncio.wait_for(runner, timeout=5)
        await coordinator.shutdown()

    asyncio.run(_scenario())

    assert poller.stopped is True
