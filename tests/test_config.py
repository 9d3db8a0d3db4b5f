import tomllib
from pathlib import Path

import pytest

from conductor import __version__
from conductor.config import (
    ConductorConfig,
    ConfigError,
    apply_env_overrides,
    dumps_toml,
    load_config,
    save_config,
)


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "conductor.toml"
    config = ConductorConfig.default()
    config.tracker.repo = "acme/widgets"
    config.tracker.allowed_users = ["alice", "bob"]
    config.scheduler.max_concurrent_tasks = 3
    config.runtime.model = "anthropic/claude-sonnet"
    config.workspace.branch_prefix = "bot/issue"
    config.workspace.auto_clean = True
    config.supervision.min_viable_seconds = 90.0

    save_config(config_path, config)
    loaded = load_config(config_path, use_env=False)

    assert loaded.tracker.repo == "acme/widgets"
    assert loaded.tracker.allowed_users == ["alice", "bob"]
    assert loaded.scheduler.max_concurrent_tasks == 3
    assert loaded.scheduler.poll_interval_seconds == 300.0
    assert loaded.runtime.model == "anthropic/claude-sonnet"
    assert loaded.workspace.branch_prefix == "bot/issue"
    assert loaded.workspace.auto_clean is True
    assert loaded.supervision.min_viable_seconds == 90.0


def test_dumps_toml_is_valid_toml_with_float_defaults() -> None:
    rendered = dumps_toml(ConductorConfig.default())
    parsed = tomllib.loads(rendered)

    assert list(parsed) == [
        "tracker",
        "scheduler",
        "runtime",
        "workspace",
        "verification",
        "supervision",
        "logging",
    ]
    assert "poll_interval_seconds = 300.0" in rendered
    assert isinstance(parsed["scheduler"]["poll_interval_seconds"], float)
    assert parsed["runtime"]["retry_backoff_seconds"] == 0.5


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml", use_env=False)

    assert loaded.scheduler.max_concurrent_tasks == 2
    assert loaded.workspace.worktree_dir == ".worktrees"
    assert loaded.runtime.server_url == "http://localhost:4096"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    config_path = tmp_path / "conductor.toml"
    save_config(config_path, ConductorConfig.default())

    loaded = load_config(
        config_path,
        environ={
            "GITHUB_REPO": "acme/tools",
            "ALLOWED_USERS": "alice, bob ,,",
            "MAX_CONCURRENT_TASKS": "4",
            "POLL_INTERVAL_SECONDS": "60",
            "AUTO_CLEAN_WORKTREES": "yes",
            "LOG_LEVEL": "debug",
        },
    )

    assert loaded.tracker.repo == "acme/tools"
    assert loaded.tracker.allowed_users == ["alice", "bob"]
    assert loaded.scheduler.max_concurrent_tasks == 4
    assert loaded.scheduler.poll_interval_seconds == 60.0
    assert loaded.workspace.auto_clean is True
    assert loaded.logging.level == "DEBUG"


def test_invalid_numeric_env_raises() -> None:
    with pytest.raises(ConfigError):
        apply_env_overrides(ConductorConfig.default(), {"MAX_CONCURRENT_TASKS": "many"})


@pytest.mark.parametrize(
    ("section", "key", "value"),
    [
        ("scheduler", "max_concurrent_tasks", 0),
        ("scheduler", "max_concurrent_tasks", 11),
        ("scheduler", "poll_interval_seconds", 5.0),
        ("workspace", "retention_days", 91),
        ("tracker", "page_size", 0),
        ("tracker", "repo", "not-a-repo"),
        ("logging", "level", "CHATTY"),
    ],
)
def test_validate_rejects_out_of_range(section: str, key: str, value: object) -> None:
    config = ConductorConfig.default()
    setattr(getattr(config, section), key, value)

    with pytest.raises(ConfigError):
        config.validate()


def test_token_is_read_from_named_variable() -> None:
    config = ConductorConfig.default()
    config.tracker.token_env = "CONDUCTOR_TOKEN"

    assert config.tracker.token({"CONDUCTOR_TOKEN": "secret"}) == "secret"
    assert config.tracker.token({}) == ""


def test_version_present() -> None:
    assert __version__
