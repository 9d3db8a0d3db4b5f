from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path

from conductor.config import ConductorConfig
from conductor.coordinator import LifecycleCoordinator
from conductor.diagnostics import check_configuration
from conductor.runtime.base import RetryPolicy
from conductor.runtime.opencode import OpenCodeClient
from conductor.runtime.server import OpenCodeServer
from conductor.scheduler import CycleReport, Poller
from conductor.supervisor import TextSink
from conductor.tracker.github import GitHubTracker
from conductor.verification import VerificationRunner
from conductor.workspace.git import GitRunner
from conductor.workspace.manager import WorkspaceManager

logger = logging.getLogger(__name__)


def build_tracker(config: ConductorConfig) -> GitHubTracker:
    return GitHubTracker(
        config.tracker.repo,
        config.tracker.token(),
        username=config.tracker.username,
        api_url=config.tracker.api_url,
        page_size=config.tracker.page_size,
        timeout_seconds=config.tracker.request_timeout_seconds,
    )


class OrchestratorService:
    """Owns every long-lived component and their start/stop order."""

    def __init__(
        self,
        config: ConductorConfig,
        *,
        tracker: GitHubTracker,
        client: OpenCodeClient,
        server: OpenCodeServer | None,
        workspaces: WorkspaceManager,
        coordinator: LifecycleCoordinator,
        poller: Poller,
    ) -> None:
        self.config = config
        self.tracker = tracker
        self.client = client
        self.server = server
        self.workspaces = workspaces
        self.coordinator = coordinator
        self.poller = poller

    @classmethod
    def build(
        cls,
        config: ConductorConfig,
        *,
        project_root: Path,
        text_sink: TextSink | None = None,
    ) -> OrchestratorService:
        tracker = build_tracker(config)
        client = OpenCodeClient(
            config.runtime.server_url,
            retry_policy=RetryPolicy(
                max_retries=config.runtime.max_retries,
                backoff_seconds=config.runtime.retry_backoff_seconds,
                timeout_seconds=config.runtime.request_timeout_seconds,
            ),
            event_hook=lambda event: logger.debug("runtime event: %s", event),
        )
        server = None
        if config.runtime.manage_server:
            server = OpenCodeServer(
                client,
                project_root,
                binary=config.runtime.binary,
                startup_timeout_seconds=config.runtime.startup_timeout_seconds,
            )
        workspaces = WorkspaceManager(
            GitRunner(project_root, timeout_seconds=config.workspace.git_timeout_seconds),
            worktree_dir=config.workspace.worktree_dir,
            retention_days=config.workspace.retention_days,
        )
        verifier = None
        if config.verification.run_on_success:
            verifier = VerificationRunner(config.verification.gate_timeout_seconds)
        coordinator = LifecycleCoordinator(
            tracker=tracker,
            client=client,
            workspaces=workspaces,
            repo=config.tracker.repo,
            max_concurrent=config.scheduler.max_concurrent_tasks,
            branch_prefix=config.workspace.branch_prefix,
            model=config.runtime.model,
            supervision=config.supervision,
            share_sessions=config.runtime.share_sessions,
            verifier=verifier,
            text_sink=text_sink,
        )
        poller = Poller(
            tracker,
            coordinator,
            workspaces=workspaces,
            interval_seconds=config.scheduler.poll_interval_seconds,
            allowed_users=config.tracker.allowed_users,
            auto_clean=config.workspace.auto_clean,
        )
        return cls(
            config,
            tracker=tracker,
            client=client,
            server=server,
            workspaces=workspaces,
            coordinator=coordinator,
            poller=poller,
        )

    async def startup(self) -> None:
        if self.server is not None:
            await self.server.start()
        elif not await self.client.check_health():
            logger.warning("Runtime at %s is not answering", self.client.base_url)
        await check_configuration(self.client)

    def request_stop(self) -> None:
        logger.info("Stop requested")
        self.poller.stop()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_stop)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handler for %s not supported here", signum)

    async def run(self) -> None:
        try:
            await self.startup()
            self._install_signal_handlers()
            logger.info(
                "Polling %s every %.0fs (max %s concurrent)",
                self.config.tracker.repo,
                self.config.scheduler.poll_interval_seconds,
                self.config.scheduler.max_concurrent_tasks,
            )
            await self.poller.run_forever()
        finally:
            await self.shutdown()

    async def run_once(self, *, drain_interval_seconds: float = 1.0) -> CycleReport:
        """Run a single poll cycle and supervise what it started until it finishes."""
        try:
            await self.startup()
            self._install_signal_handlers()
            report = await self.poller.run_cycle()
            while self.coordinator.active_count() and not self.poller.stopped:
                await asyncio.sleep(drain_interval_seconds)
            return report
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        await self.coordinator.shutdown()
        if self.server is not None:
            await self.server.stop()
        await self.client.aclose()
        await self.tracker.aclose()
        logger.info("Shut down")
