"""Issue-driven orchestration of remote coding-agent sessions."""

__version__ = "0.1.0"
