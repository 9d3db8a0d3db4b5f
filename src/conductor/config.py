from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path


class ConfigError(ValueError):
    """Raised when configuration values fall outside their supported bounds."""


@dataclass(slots=True)
class TrackerConfig:
    repo: str = ""
    username: str = ""
    token_env: str = "GITHUB_TOKEN"
    api_url: str = "https://api.github.com"
    allowed_users: list[str] = field(default_factory=list)
    page_size: int = 20
    request_timeout_seconds: float = 30.0

    def token(self, environ: Mapping[str, str] | None = None) -> str:
        env = os.environ if environ is None else environ
        return env.get(self.token_env, "")


@dataclass(slots=True)
class SchedulerConfig:
    poll_interval_seconds: float = 300.0
    max_concurrent_tasks: int = 2


@dataclass(slots=True)
class RuntimeConfig:
    server_url: str = "http://localhost:4096"
    binary: str = "opencode"
    manage_server: bool = True
    model: str = ""
    request_timeout_seconds: float = 30.0
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    share_sessions: bool = True
    startup_timeout_seconds: float = 30.0


@dataclass(slots=True)
class WorkspaceConfig:
    project_path: str = "."
    worktree_dir: str = ".worktrees"
    branch_prefix: str = "ai/issue"
    git_timeout_seconds: float = 120.0
    retention_days: int = 7
    auto_clean: bool = False


@dataclass(slots=True)
class VerificationConfig:
    gate_timeout_seconds: float = 300.0
    run_on_success: bool = False


@dataclass(slots=True)
class SupervisionConfig:
    status_poll_interval_seconds: float = 10.0
    immediate_failure_seconds: float = 1.0
    min_viable_seconds: float = 60.0
    idle_warning_seconds: float = 300.0
    reconnect_delay_seconds: float = 2.0
    error_excerpt_chars: int = 1000


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class ConductorConfig:
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    supervision: SupervisionConfig = field(default_factory=SupervisionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        return cls(
            tracker=TrackerConfig(**data.get("tracker", {})),
            scheduler=SchedulerConfig(**data.get("scheduler", {})),
            runtime=RuntimeConfig(**data.get("runtime", {})),
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            verification=VerificationConfig(**data.get("verification", {})),
            supervision=SupervisionConfig(**data.get("supervision", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "tracker": {
                "repo": self.tracker.repo,
                "username": self.tracker.username,
                "token_env": self.tracker.token_env,
                "api_url": self.tracker.api_url,
                "allowed_users": list(self.tracker.allowed_users),
                "page_size": self.tracker.page_size,
                "request_timeout_seconds": self.tracker.request_timeout_seconds,
            },
            "scheduler": {
                "poll_interval_seconds": self.scheduler.poll_interval_seconds,
                "max_concurrent_tasks": self.scheduler.max_concurrent_tasks,
            },
            "runtime": {
                "server_url": self.runtime.server_url,
                "binary": self.runtime.binary,
                "manage_server": self.runtime.manage_server,
                "model": self.runtime.model,
                "request_timeout_seconds": self.runtime.request_timeout_seconds,
                "max_retries": self.runtime.max_retries,
                "retry_backoff_seconds": self.runtime.retry_backoff_seconds,
                "share_sessions": self.runtime.share_sessions,
                "startup_timeout_seconds": self.runtime.startup_timeout_seconds,
            },
            "workspace": {
                "project_path": self.workspace.project_path,
                "worktree_dir": self.workspace.worktree_dir,
                "branch_prefix": self.workspace.branch_prefix,
                "git_timeout_seconds": self.workspace.git_timeout_seconds,
                "retention_days": self.workspace.retention_days,
                "auto_clean": self.workspace.auto_clean,
            },
            "verification": {
                "gate_timeout_seconds": self.verification.gate_timeout_seconds,
                "run_on_success": self.verification.run_on_success,
            },
            "supervision": {
                "status_poll_interval_seconds": self.supervision.status_poll_interval_seconds,
                "immediate_failure_seconds": self.supervision.immediate_failure_seconds,
                "min_viable_seconds": self.supervision.min_viable_seconds,
                "idle_warning_seconds": self.supervision.idle_warning_seconds,
                "reconnect_delay_seconds": self.supervision.reconnect_delay_seconds,
                "error_excerpt_chars": self.supervision.error_excerpt_chars,
            },
            "logging": {
                "level": self.logging.level,
            },
        }

    def validate(self) -> ConductorConfig:
        problems: list[str] = []
        if self.tracker.repo and self.tracker.repo.count("/") != 1:
            problems.append(f"tracker.repo must look like owner/name, got {self.tracker.repo!r}")
        if not 1 <= self.tracker.page_size <= 100:
            problems.append("tracker.page_size must be between 1 and 100")
        if self.scheduler.poll_interval_seconds < 10:
            problems.append("scheduler.poll_interval_seconds must be at least 10")
        if not 1 <= self.scheduler.max_concurrent_tasks <= 10:
            problems.append("scheduler.max_concurrent_tasks must be between 1 and 10")
        if not 1 <= self.workspace.retention_days <= 90:
            problems.append("workspace.retention_days must be between 1 and 90")
        if self.runtime.max_retries < 0:
            problems.append("runtime.max_retries must not be negative")
        if self.supervision.immediate_failure_seconds > self.supervision.min_viable_seconds:
            problems.append(
                "supervision.immediate_failure_seconds must not exceed min_viable_seconds"
            )
        if self.logging.level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            problems.append(f"logging.level is not a known level: {self.logging.level!r}")
        if problems:
            raise ConfigError("; ".join(problems))
        return self


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def apply_env_overrides(
    config: ConductorConfig, environ: Mapping[str, str] | None = None
) -> ConductorConfig:
    env = os.environ if environ is None else environ
    if env.get("GITHUB_REPO"):
        config.tracker.repo = env["GITHUB_REPO"]
    if env.get("GITHUB_USERNAME"):
        config.tracker.username = env["GITHUB_USERNAME"]
    if env.get("ALLOWED_USERS"):
        config.tracker.allowed_users = [
            user.strip() for user in env["ALLOWED_USERS"].split(",") if user.strip()
        ]
    try:
        if env.get("POLL_INTERVAL_SECONDS"):
            config.scheduler.poll_interval_seconds = float(env["POLL_INTERVAL_SECONDS"])
        if env.get("MAX_CONCURRENT_TASKS"):
            config.scheduler.max_concurrent_tasks = int(env["MAX_CONCURRENT_TASKS"])
        if env.get("WORKTREE_RETENTION_DAYS"):
            config.workspace.retention_days = int(env["WORKTREE_RETENTION_DAYS"])
    except ValueError as exc:
        raise ConfigError(f"Invalid numeric environment override: {exc}") from exc
    if env.get("OPENCODE_SERVER_URL"):
        config.runtime.server_url = env["OPENCODE_SERVER_URL"]
    if env.get("PROJECT_PATH"):
        config.workspace.project_path = env["PROJECT_PATH"]
    if env.get("WORKTREE_DIR"):
        config.workspace.worktree_dir = env["WORKTREE_DIR"]
    if env.get("AUTO_CLEAN_WORKTREES"):
        config.workspace.auto_clean = _parse_bool(env["AUTO_CLEAN_WORKTREES"])
    if env.get("LOG_LEVEL"):
        config.logging.level = env["LOG_LEVEL"].upper()
    return config


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "tracker",
        "scheduler",
        "runtime",
        "workspace",
        "verification",
        "supervision",
        "logging",
    ]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(
    path: Path, *, environ: Mapping[str, str] | None = None, use_env: bool = True
) -> ConductorConfig:
    if path.exists():
        config = ConductorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))
    else:
        config = ConductorConfig.default()
    if use_env:
        apply_env_overrides(config, environ)
    return config.validate()


def save_config(path: Path, config: ConductorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
