from __future__ import annotations

import logging
import re
import time
from collections.abc import Collection
from dataclasses import dataclass
from pathlib import Path

from conductor.locks import KeyedLocks
from conductor.workspace.git import GitCommandError, GitRunner, WorktreeEntry

logger = logging.getLogger(__name__)

SLUG_MAX_LENGTH = 50
SECONDS_PER_DAY = 24 * 60 * 60


def slugify(title: str) -> str:
    slug = title.lower()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    slug = slug.strip("-")[:SLUG_MAX_LENGTH].rstrip("-")
    return slug or "task"


def branch_name(item_id: int, title: str, prefix: str = "ai/issue") -> str:
    return f"{prefix}-{item_id}-{slugify(title)}"


def recovery_branch_name(item_id: int, prefix: str = "ai/issue") -> str:
    return f"{prefix}-{item_id}-recovery"


@dataclass(slots=True)
class ReclaimCandidate:
    item_id: int
    path: Path
    age_days: float


class WorkspaceManager:
    """One git worktree per work item under ``<project>/<worktree_dir>/issue-<id>``."""

    def __init__(
        self,
        git: GitRunner,
        *,
        worktree_dir: str = ".worktrees",
        retention_days: int = 7,
    ) -> None:
        self.git = git
        self.root = git.repo_root / worktree_dir
        self.retention_days = retention_days
        self._locks = KeyedLocks()

    def path_for(self, item_id: int) -> Path:
        return self.root / f"issue-{item_id}"

    def exists(self, item_id: int) -> bool:
        return self.path_for(item_id).is_dir()

    async def provision(self, item_id: int, branch: str) -> Path:
        """Return the item's workspace, creating it on first use.

        An existing directory is returned untouched. Otherwise the default
        branch is fetched and the worktree is attached to ``branch`` if it
        exists locally, or created with ``branch`` seeded from the remote
        default. Any git failure propagates and nothing is left registered.
        """
        path = self.path_for(item_id)
        async with self._locks.hold(item_id):
            if path.is_dir():
                logger.info("Reusing workspace for #%s at %s", item_id, path)
                return path

            self.root.mkdir(parents=True, exist_ok=True)
            default_branch = await self.git.resolve_default_branch()
            await self.git.fetch(default_branch)
            if await self.git.branch_exists(branch):
                logger.info("Attaching workspace for #%s to existing branch %s", item_id, branch)
                await self.git.create_worktree(path, branch)
            else:
                from_ref = f"{self.git.remote}/{default_branch}"
                logger.info("Creating branch %s from %s for #%s", branch, from_ref, item_id)
                await self.git.create_worktree(path, branch, from_ref)
            return path

    async def push(self, item_id: int, branch: str) -> None:
        await self.git.push(self.path_for(item_id), branch)

    async def current_branch(self, item_id: int) -> str | None:
        path = self.path_for(item_id)
        if not path.is_dir():
            return None
        try:
            return await self.git.current_branch(path)
        except GitCommandError as exc:
            logger.warning("Could not read branch of workspace %s: %s", path, exc)
            return None

    async def list_worktrees(self) -> list[WorktreeEntry]:
        return await self.git.list_worktrees()

    def expired(self, *, now: float | None = None) -> list[ReclaimCandidate]:
        if not self.root.is_dir():
            return []
        current = time.time() if now is None else now
        limit = self.retention_days * SECONDS_PER_DAY
        candidates: list[ReclaimCandidate] = []
        for entry in sorted(self.root.iterdir()):
            if not entry.is_dir() or not entry.name.startswith("issue-"):
                continue
            try:
                item_id = int(entry.name.removeprefix("issue-"))
            except ValueError:
                continue
            age = current - entry.stat().st_mtime
            if age > limit:
                candidates.append(
                    ReclaimCandidate(item_id=item_id, path=entry, age_days=age / SECONDS_PER_DAY)
                )
        return candidates

    async def reclaim(
        self,
        *,
        confirm: bool = False,
        protected: Collection[int] = (),
        now: float | None = None,
    ) -> list[ReclaimCandidate]:
        """Force-remove workspaces older than the retention window.

        Uncommitted work in those directories is lost, so nothing happens
        unless ``confirm`` is true. Items in ``protected`` are never touched.
        """
        candidates = [c for c in self.expired(now=now) if c.item_id not in protected]
        if not confirm:
            if candidates:
                logger.info(
                    "%s expired workspace(s) kept; reclaim was not confirmed", len(candidates)
                )
            return []

        removed: list[ReclaimCandidate] = []
        for candidate in candidates:
            async with self._locks.hold(candidate.item_id):
                try:
                    await self.git.remove_worktree(candidate.path, force=True)
                except GitCommandError as exc:
                    logger.warning("Failed to remove workspace %s: %s", candidate.path, exc)
                    continue
            logger.info(
                "Removed workspace %s (%.0f days old)", candidate.path, candidate.age_days
            )
            removed.append(candidate)
        return removed
