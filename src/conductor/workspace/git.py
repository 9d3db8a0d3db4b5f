from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_BRANCH_CANDIDATES = ("main", "master")


class GitCommandError(RuntimeError):
    """Raised when a git subcommand fails or exceeds its timeout."""

    def __init__(
        self,
        message: str,
        *,
        args: tuple[str, ...] = (),
        exit_code: int | None = None,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message)
        self.git_args = args
        self.exit_code = exit_code
        self.timed_out = timed_out


@dataclass(slots=True)
class GitResult:
    returncode: int
    stdout: str
    stderr: str


@dataclass(slots=True)
class WorktreeEntry:
    path: Path
    head: str | None = None
    branch: str | None = None
    bare: bool = False
    detached: bool = False


class GitRunner:
    """Async wrapper over the git CLI with captured output and bounded runtime."""

    def __init__(
        self, repo_root: Path, *, timeout_seconds: float = 120.0, remote: str = "origin"
    ) -> None:
        self.repo_root = repo_root
        self.timeout_seconds = timeout_seconds
        self.remote = remote

    async def _run_git(
        self, args: list[str], *, cwd: Path | None = None, check: bool = True
    ) -> GitResult:
        command = ("git", "--no-pager", *args)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd or self.repo_root),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, NotADirectoryError) as exc:
            raise GitCommandError(f"Unable to run git: {exc}", args=tuple(args)) from exc
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise GitCommandError(
                f"git {' '.join(args)} timed out after {self.timeout_seconds:.0f}s",
                args=tuple(args),
                timed_out=True,
            ) from exc

        result = GitResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if check and result.returncode != 0:
            raise GitCommandError(
                result.stderr.strip() or result.stdout.strip() or f"git {args[0]} failed",
                args=tuple(args),
                exit_code=result.returncode,
            )
        return result

    async def resolve_default_branch(
        self, candidates: tuple[str, ...] = DEFAULT_BRANCH_CANDIDATES
    ) -> str:
        head_ref = f"refs/remotes/{self.remote}/HEAD"
        result = await self._run_git(["symbolic-ref", head_ref], check=False)
        prefix = f"refs/remotes/{self.remote}/"
        resolved = result.stdout.strip()
        if result.returncode == 0 and resolved.startswith(prefix):
            return resolved[len(prefix) :]

        for candidate in candidates:
            lookup = await self._run_git(
                ["show-ref", "--verify", "--quiet", f"{prefix}{candidate}"], check=False
            )
            if lookup.returncode == 0:
                return candidate
        logger.debug("No remote default branch found, assuming %s", candidates[-1])
        return candidates[-1]

    async def fetch(self, branch: str) -> None:
        await self._run_git(["fetch", self.remote, branch])

    async def branch_exists(self, name: str) -> bool:
        result = await self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{name}"], check=False
        )
        return result.returncode == 0

    async def create_worktree(self, path: Path, branch: str, from_ref: str | None = None) -> None:
        if from_ref is None:
            await self._run_git(["worktree", "add", str(path), branch])
        else:
            await self._run_git(["worktree", "add", str(path), "-b", branch, from_ref])

    async def remove_worktree(self, path: Path, *, force: bool = False) -> None:
        args = ["worktree", "remove", str(path)]
        if force:
            args.append("--force")
        await self._run_git(args)

    async def push(self, path: Path, branch: str) -> None:
        await self._run_git(["push", "-u", self.remote, branch], cwd=path)

    async def current_branch(self, path: Path) -> str:
        result = await self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=path)
        return result.stdout.strip()

    async def list_worktrees(self) -> list[WorktreeEntry]:
        result = await self._run_git(["worktree", "list", "--porcelain"])
        return parse_worktree_porcelain(result.stdout)


def parse_worktree_porcelain(output: str) -> list[WorktreeEntry]:
    entries: list[WorktreeEntry] = []
    current: WorktreeEntry | None = None
    for line in output.splitlines():
        if line.startswith("worktree "):
            current = WorktreeEntry(path=Path(line[len("worktree ") :]))
            entries.append(current)
        elif current is None:
            continue
        elif line.startswith("HEAD "):
            current.head = line[len("HEAD ") :]
        elif line.startswith("branch "):
            current.branch = line[len("branch ") :].removeprefix("refs/heads/")
        elif line == "bare":
            current.bare = True
        elif line == "detached":
            current.detached = True
    return entries
