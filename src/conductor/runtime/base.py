from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from conductor.runtime.events import ErrorPayload, SessionEvent


class RuntimeClientError(RuntimeError):
    """Raised when the remote agent runtime fails a request."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retriable = retriable


class SessionNotFoundError(RuntimeClientError):
    """Raised when a session id no longer resolves on the runtime."""


class ServerStartError(RuntimeClientError):
    """Raised when a managed runtime server cannot be brought up."""


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class SessionInfo:
    id: str
    title: str = ""
    parent_id: str | None = None
    share_url: str | None = None


@dataclass(slots=True)
class SessionStatus:
    state: str
    error: ErrorPayload | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_failure(self) -> bool:
        return self.error is not None or self.state in {"error", "blocked"}


class SessionClient(ABC):
    """Contract of the remote agent runtime."""

    @abstractmethod
    async def create_session(
        self,
        title: str,
        *,
        parent_id: str | None = None,
        directory: Path | None = None,
    ) -> SessionInfo: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> SessionInfo:
        """Resolve a session; raises :class:`SessionNotFoundError` when it is gone."""

    @abstractmethod
    async def send_prompt_async(
        self, session_id: str, text: str, *, model: str | None = None
    ) -> None:
        """Submit a prompt; responses only arrive on the event stream."""

    @abstractmethod
    def subscribe_events(self) -> AsyncIterator[SessionEvent]:
        """Shared stream of events for every session on the runtime."""

    @abstractmethod
    async def get_aggregate_status(self) -> dict[str, SessionStatus]: ...

    @abstractmethod
    async def abort_session(self, session_id: str) -> None: ...

    @abstractmethod
    async def share_session(self, session_id: str) -> str | None: ...

    async def list_agents(self) -> list[dict[str, Any]]:
        return []

    async def list_providers(self) -> list[dict[str, Any]]:
        return []

    async def aclose(self) -> None:
        return None
