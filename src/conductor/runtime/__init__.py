from conductor.runtime.base import (
    RetryPolicy,
    RuntimeClientError,
    ServerStartError,
    SessionClient,
    SessionInfo,
    SessionNotFoundError,
    SessionStatus,
)
from conductor.runtime.opencode import OpenCodeClient
from conductor.runtime.server import OpenCodeServer

__all__ = [
    "OpenCodeClient",
    "OpenCodeServer",
    "RetryPolicy",
    "RuntimeClientError",
    "ServerStartError",
    "SessionClient",
    "SessionInfo",
    "SessionNotFoundError",
    "SessionStatus",
]
