from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from conductor.coordinator import AdmissionRefusedError, LifecycleCoordinator
from conductor.tracker import labels
from conductor.tracker.base import Issue, IssueTracker
from conductor.workspace.manager import WorkspaceManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CycleReport:
    admitted: list[int] = field(default_factory=list)
    resumed: list[int] = field(default_factory=list)
    deferred: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)
    reclaimed: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class Poller:
    """Periodically turns tracker state into coordinator calls."""

    def __init__(
        self,
        tracker: IssueTracker,
        coordinator: LifecycleCoordinator,
        *,
        workspaces: WorkspaceManager | None = None,
        interval_seconds: float = 300.0,
        allowed_users: list[str] | None = None,
        auto_clean: bool = False,
    ) -> None:
        self.tracker = tracker
        self.coordinator = coordinator
        self.workspaces = workspaces
        self.interval_seconds = interval_seconds
        self.allowed_users = list(allowed_users or [])
        self.auto_clean = auto_clean
        self._stop = asyncio.Event()
        self._cycle_lock = asyncio.Lock()

    async def candidates(self) -> list[Issue]:
        """Ready issues the allow-list admits, in admission order."""
        issues = await self.tracker.list_issues(labels.READY, exclude_labels=(labels.IN_PROGRESS,))
        eligible = [
            issue
            for issue in issues
            if labels.is_ready_for_pickup(issue) and labels.is_allowed(issue, self.allowed_users)
        ]
        return labels.sort_by_priority(eligible)

    async def discovery_scan(self, report: CycleReport) -> None:
        for issue in await self.candidates():
            if self.coordinator.get_task(issue.number) is not None:
                continue
            if not self.coordinator.can_admit():
                report.deferred.append(issue.number)
                break
            try:
                await self.coordinator.start(issue)
            except AdmissionRefusedError:
                report.deferred.append(issue.number)
                break
            except Exception as exc:
                logger.error("Could not start #%s: %s", issue.number, exc)
                report.failed[issue.number] = str(exc)
                continue
            report.admitted.append(issue.number)

    async def resume_scan(self, report: CycleReport) -> None:
        username = self.tracker.username
        if not username:
            logger.warning("Tracker username is not set; skipping the resume scan")
            return
        for issue in await self.tracker.list_issues(labels.BLOCKED):
            latest = labels.latest_human_comment(issue, username)
            if latest is None:
                continue
            task = self.coordinator.get_task(issue.number)
            since = task.started_at if task else labels.block_reference(issue, username)
            if latest.created_at <= since:
                continue
            logger.info("#%s has a new comment from %s, continuing", issue.number, latest.author)
            try:
                await self.coordinator.continue_task(issue, latest)
            except AdmissionRefusedError:
                report.deferred.append(issue.number)
                continue
            except Exception as exc:
                logger.error("Could not continue #%s: %s", issue.number, exc)
                report.failed[issue.number] = str(exc)
                continue
            report.resumed.append(issue.number)

    async def run_cycle(self) -> CycleReport:
        """One poll cycle. Errors are logged and recorded, never raised."""
        report = CycleReport()
        async with self._cycle_lock:
            for name, scan in (("discovery", self.discovery_scan), ("resume", self.resume_scan)):
                try:
                    await scan(report)
                except Exception as exc:
                    logger.exception("%s scan failed", name.capitalize())
                    report.errors.append(f"{name}: {exc}")
            if self.workspaces is not None:
                try:
                    removed = await self.workspaces.reclaim(
                        confirm=self.auto_clean, protected=self.coordinator.active_ids()
                    )
                    report.reclaimed.extend(candidate.item_id for candidate in removed)
                except Exception as exc:
                    logger.exception("Workspace reclaim failed")
                    report.errors.append(f"reclaim: {exc}")
        logger.info(
            "Poll cycle: %s admitted, %s resumed, %s deferred, %s/%s active",
            len(report.admitted),
            len(report.resumed),
            len(report.deferred),
            self.coordinator.active_count(),
            self.coordinator.max_concurrent,
        )
        return report

    async def run_forever(self) -> None:
        self._stop.clear()
        while not self._stop.is_set():
            await self.run_cycle()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                continue

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()
