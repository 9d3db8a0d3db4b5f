from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path

import click

from conductor.config import ConductorConfig, ConfigError, load_config, save_config
from conductor.service import OrchestratorService, build_tracker
from conductor.tracker import labels
from conductor.tracker.base import TrackerError
from conductor.verification import VerificationRunner, summarize
from conductor.workspace.git import GitCommandError, GitRunner
from conductor.workspace.manager import WorkspaceManager

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    logging.getLogger("httpx").setLevel(logging.WARNING)


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config_path: Path
    config: ConductorConfig


def _resolve_config_path(base: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = base / config_path
    return config_path.resolve()


def _load_runtime(config_value: str, *, require_tracker: bool = False) -> Runtime:
    config_path = _resolve_config_path(Path.cwd(), config_value)
    try:
        config = load_config(config_path)
    except (ConfigError, ValueError, TypeError) as exc:
        raise click.ClickException(f"Invalid configuration in {config_path}: {exc}") from exc
    if require_tracker:
        if not config.tracker.repo:
            raise click.ClickException("tracker.repo (or GITHUB_REPO) must be set")
        if not config.tracker.username:
            raise click.ClickException("tracker.username (or GITHUB_USERNAME) must be set")
        if not config.tracker.token():
            raise click.ClickException(f"{config.tracker.token_env} is not set")
    project_root = Path(config.workspace.project_path)
    if not project_root.is_absolute():
        project_root = config_path.parent / project_root
    configure_logging(config.logging.level)
    return Runtime(project_root=project_root.resolve(), config_path=config_path, config=config)


def _workspace_manager(runtime: Runtime) -> WorkspaceManager:
    git = GitRunner(
        runtime.project_root, timeout_seconds=runtime.config.workspace.git_timeout_seconds
    )
    return WorkspaceManager(
        git,
        worktree_dir=runtime.config.workspace.worktree_dir,
        retention_days=runtime.config.workspace.retention_days,
    )


@click.group()
def cli() -> None:
    """Conductor CLI."""


@cli.command("init")
@click.option("--repo", default=None, help="Tracker repository as owner/name.")
@click.option("--username", default=None, help="Account the orchestrator comments as.")
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def init_command(repo: str | None, username: str | None, config_value: str) -> None:
    config_path = _resolve_config_path(Path.cwd(), config_value)
    try:
        config = load_config(config_path, use_env=False)
    except (ConfigError, ValueError, TypeError) as exc:
        raise click.ClickException(str(exc)) from exc
    if repo:
        config.tracker.repo = repo
    if username:
        config.tracker.username = username
    try:
        config.validate()
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    save_config(config_path, config)
    click.echo(f"Config: {config_path}")
    click.echo(f"Repository: {config.tracker.repo or '(set GITHUB_REPO)'}")
    click.echo(f"Username: {config.tracker.username or '(set GITHUB_USERNAME)'}")
    click.echo(f"Token variable: {config.tracker.token_env}")


@cli.command("run")
@click.option("--once", is_flag=True, default=False, help="Run a single poll cycle.")
@click.option("--stream", is_flag=True, default=False, help="Echo streamed agent text.")
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def run_command(once: bool, stream: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value, require_tracker=True)
    text_sink = (lambda _item_id, text: click.echo(text, nl=False)) if stream else None
    service = OrchestratorService.build(
        runtime.config, project_root=runtime.project_root, text_sink=text_sink
    )
    try:
        if once:
            report = asyncio.run(service.run_once())
            click.echo(f"Admitted: {report.admitted}")
            click.echo(f"Resumed: {report.resumed}")
            if report.errors:
                click.echo(f"Errors: {report.errors}")
        else:
            asyncio.run(service.run())
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("queue")
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def queue_command(config_value: str) -> None:
    """Show ready issues in the order they would be admitted."""
    runtime = _load_runtime(config_value, require_tracker=True)
    service = OrchestratorService.build(runtime.config, project_root=runtime.project_root)

    async def _candidates():
        try:
            return await service.poller.candidates()
        finally:
            await service.tracker.aclose()
            await service.client.aclose()

    try:
        issues = asyncio.run(_candidates())
    except TrackerError as exc:
        raise click.ClickException(str(exc)) from exc
    if not issues:
        click.echo("No eligible issues.")
        return
    for issue in issues:
        click.echo(f"{labels.priority_of(issue):<6} #{issue.number} {issue.title}")


@cli.command("checks")
@click.argument("ref")
@click.option("--wait", is_flag=True, default=False, help="Poll until the checks settle.")
@click.option("--timeout", "timeout_seconds", type=float, default=1800.0, show_default=True)
@click.option("--interval", "interval_seconds", type=float, default=30.0, show_default=True)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def checks_command(
    ref: str, wait: bool, timeout_seconds: float, interval_seconds: float, config_value: str
) -> None:
    """Show the aggregate CI state of a branch or commit."""
    runtime = _load_runtime(config_value, require_tracker=True)
    tracker = build_tracker(runtime.config)

    async def _state() -> str:
        try:
            if wait:
                return await tracker.wait_for_checks(
                    ref, timeout_seconds=timeout_seconds, interval_seconds=interval_seconds
                )
            return await tracker.check_status(ref)
        finally:
            await tracker.aclose()

    try:
        state = asyncio.run(_state())
    except TrackerError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{ref}: {state}")
    if state == "failure":
        raise click.ClickException(f"Checks failed for {ref}")


@cli.command("gates")
@click.argument("path", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--run", "run_gates", is_flag=True, default=False)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def gates_command(path: Path, run_gates: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    runner = VerificationRunner(runtime.config.verification.gate_timeout_seconds)
    gates = runner.detect(path)
    if not gates:
        click.echo("No gates detected.")
        return
    for gate in gates:
        flag = "required" if gate.required else "optional"
        click.echo(f"{gate.name} ({flag}): {' '.join(gate.command)}")
    if not run_gates:
        return
    results = asyncio.run(runner.run_all(path))
    click.echo(summarize(results))
    if not runner.all_required_passed(path, results):
        raise click.ClickException("Required verification gates failed.")


@cli.command("workspaces")
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def workspaces_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    manager = _workspace_manager(runtime)
    try:
        entries = asyncio.run(manager.list_worktrees())
    except GitCommandError as exc:
        raise click.ClickException(str(exc)) from exc
    payload = [
        {"path": str(entry.path), "branch": entry.branch, "head": entry.head}
        for entry in entries
    ]
    click.echo(json.dumps(payload, indent=2))


@cli.command("reclaim")
@click.option("--confirm", is_flag=True, default=False, help="Actually delete expired workspaces.")
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def reclaim_command(confirm: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    manager = _workspace_manager(runtime)
    expired = manager.expired()
    if not expired:
        click.echo("No expired workspaces.")
        return
    if not confirm:
        for candidate in expired:
            click.echo(f"would remove {candidate.path} ({candidate.age_days:.0f} days old)")
        click.echo("Re-run with --confirm to delete them; uncommitted work will be lost.")
        return
    removed = asyncio.run(manager.reclaim(confirm=True))
    for candidate in removed:
        click.echo(f"removed {candidate.path}")
