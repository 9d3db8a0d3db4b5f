from __future__ import annotations

import logging

from conductor.config import SupervisionConfig
from conductor.locks import KeyedLocks
from conductor.prompts import build_continuation_prompt, build_start_prompt
from conductor.runtime.base import SessionClient, SessionNotFoundError
from conductor.supervisor import Clock, IdleOutcome, SessionSupervisor, TextSink
from conductor.task import Task, TaskPhase, utcnow
from conductor.tracker.base import Comment, Issue, IssueTracker
from conductor.tracker.comments import render_verification_comment
from conductor.verification import VerificationRunner
from conductor.workspace.manager import WorkspaceManager, branch_name, recovery_branch_name

logger = logging.getLogger(__name__)


class AdmissionRefusedError(RuntimeError):
    """Raised when a new task would exceed the concurrency cap."""


class LifecycleCoordinator:
    """Owns the active task map and drives each task from admission to completion."""

    def __init__(
        self,
        *,
        tracker: IssueTracker,
        client: SessionClient,
        workspaces: WorkspaceManager,
        repo: str,
        max_concurrent: int = 2,
        branch_prefix: str = "ai/issue",
        model: str | None = None,
        supervision: SupervisionConfig | None = None,
        share_sessions: bool = True,
        verifier: VerificationRunner | None = None,
        text_sink: TextSink | None = None,
        clock: Clock = utcnow,
        tasks: dict[int, Task] | None = None,
    ) -> None:
        self.tracker = tracker
        self.client = client
        self.workspaces = workspaces
        self.repo = repo
        self.max_concurrent = max_concurrent
        self.branch_prefix = branch_prefix
        self.model = model or None
        self.verifier = verifier
        self.tasks: dict[int, Task] = {} if tasks is None else tasks
        self._clock = clock
        self._locks = KeyedLocks()
        self.supervisor = SessionSupervisor(
            client,
            tracker,
            supervision,
            on_terminal=self.complete,
            share_sessions=share_sessions,
            text_sink=text_sink,
            clock=clock,
        )

    def active_count(self) -> int:
        return sum(1 for task in self.tasks.values() if task.active)

    def can_admit(self) -> bool:
        return self.active_count() < self.max_concurrent

    def get_task(self, item_id: int) -> Task | None:
        return self.tasks.get(item_id)

    def active_ids(self) -> set[int]:
        return {item_id for item_id, task in self.tasks.items() if task.active}

    async def start(self, issue: Issue) -> Task:
        """Admit ``issue``; returns the existing task when one is already active."""
        async with self._locks.hold(issue.number):
            existing = self.tasks.get(issue.number)
            if existing is not None and existing.active:
                return existing
            if not self.can_admit():
                raise AdmissionRefusedError(
                    f"Cannot start #{issue.number}: {self.active_count()}/"
                    f"{self.max_concurrent} tasks already active"
                )
            branch = branch_name(issue.number, issue.title, self.branch_prefix)
            return await self._launch(issue, branch)

    async def _launch(self, issue: Issue, branch: str) -> Task:
        number = issue.number
        now = self._clock()
        task = Task(
            item_id=number,
            title=issue.title,
            branch=branch,
            workspace=self.workspaces.path_for(number),
            started_at=now,
            last_activity=now,
        )
        # the slot is held while provisioning so concurrent admissions see it
        self.tasks[number] = task
        try:
            task.workspace = await self.workspaces.provision(number, branch)
            task.branch = await self.workspaces.current_branch(number) or branch
            session = await self.client.create_session(
                f"#{number}: {issue.title}", directory=task.workspace
            )
            task.session_id = session.id
            task.share_url = session.share_url
            prompt = build_start_prompt(
                issue, repo=self.repo, workspace=task.workspace, branch=task.branch
            )
            task.started_at = task.last_activity = self._clock()
            await self.client.send_prompt_async(session.id, prompt, model=self.model)
        except Exception:
            if self.tasks.get(number) is task:
                del self.tasks[number]
            if task.session_id:
                await self._abort_quietly(task.session_id)
            raise

        task.phase = TaskPhase.ANALYSIS
        self.supervisor.watch(task)
        logger.info(
            "Started #%s on %s (session %s, %s/%s slots)",
            number,
            task.branch,
            task.session_id,
            self.active_count(),
            self.max_concurrent,
        )
        return task

    async def continue_task(self, issue: Issue, comment: Comment) -> Task:
        """Hand a new human comment to the item's session.

        When the previous session is unknown or the runtime reports it gone, a
        new session is started instead, reusing the item's workspace. Any other
        runtime error propagates and the live task is left untouched.
        """
        number = issue.number
        async with self._locks.hold(number):
            task = self.tasks.get(number)
            branch = await self.workspaces.current_branch(number)
            if branch is None and task is not None:
                branch = task.branch
            if (
                task is not None
                and branch is not None
                and task.session_id
                and await self._session_resolves(task.session_id)
            ):
                return await self._resume(task, issue, comment, branch)

            logger.info("#%s has no resumable session, starting a new one", number)
            if task is not None:
                if self.tasks.get(number) is task:
                    del self.tasks[number]
                await self.supervisor.cancel(task, abort_remote=False)
            if not self.can_admit():
                raise AdmissionRefusedError(
                    f"Cannot continue #{number}: {self.active_count()}/"
                    f"{self.max_concurrent} tasks already active"
                )
            return await self._launch(
                issue, branch or recovery_branch_name(number, self.branch_prefix)
            )

    async def _resume(self, task: Task, issue: Issue, comment: Comment, branch: str) -> Task:
        await self.supervisor.cancel(task, abort_remote=False)
        task.phase = TaskPhase.BLOCKED
        prompt = build_continuation_prompt(
            issue, comment, repo=self.repo, workspace=task.workspace, branch=branch
        )
        now = self._clock()
        await self.client.send_prompt_async(task.session_id, prompt, model=self.model)

        resumed = Task(
            item_id=task.item_id,
            title=issue.title,
            branch=branch,
            workspace=task.workspace,
            session_id=task.session_id,
            phase=TaskPhase.RUNNING,
            started_at=now,
            last_activity=now,
            share_url=task.share_url,
        )
        self.tasks[task.item_id] = resumed
        self.supervisor.watch(resumed)
        logger.info("Resumed #%s in session %s", task.item_id, task.session_id)
        return resumed

    async def _session_resolves(self, session_id: str) -> bool:
        try:
            await self.client.get_session(session_id)
        except SessionNotFoundError as exc:
            logger.info("Session %s does not resolve: %s", session_id, exc)
            return False
        return True

    async def complete(self, task: Task, outcome: IdleOutcome) -> None:
        """Terminal callback from the supervisor; frees the task's slot."""
        task.phase = TaskPhase.FAILED if outcome.failed else TaskPhase.COMPLETED
        if self.tasks.get(task.item_id) is task:
            del self.tasks[task.item_id]
        logger.info(
            "#%s finished: %s (%s/%s slots in use)",
            task.item_id,
            outcome.value,
            self.active_count(),
            self.max_concurrent,
        )
        if outcome is IdleOutcome.SUCCESS and self.verifier is not None:
            await self._verify(task, self.verifier)

    async def _verify(self, task: Task, verifier: VerificationRunner) -> None:
        try:
            results = await verifier.run_all(task.workspace)
            if verifier.all_required_passed(task.workspace, results):
                logger.info("#%s passed verification", task.item_id)
                return
            logger.warning("#%s failed verification", task.item_id)
            await self.tracker.post_comment(
                task.item_id, render_verification_comment(task.branch, results)
            )
        except Exception:
            logger.exception("Verification of #%s could not be completed", task.item_id)

    async def _abort_quietly(self, session_id: str) -> None:
        try:
            await self.client.abort_session(session_id)
        except Exception as exc:
            logger.warning("Abort of session %s failed: %s", session_id, exc)

    async def kill(self, item_id: int) -> bool:
        task = self.tasks.pop(item_id, None)
        if task is None:
            return False
        task.phase = TaskPhase.FAILED
        await self.supervisor.cancel(task, abort_remote=True)
        logger.info("Killed #%s", item_id)
        return True

    async def shutdown(self) -> None:
        for item_id in list(self.tasks):
            await self.kill(item_id)
        await self.supervisor.close()
