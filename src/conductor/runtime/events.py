"""Decoding of the runtime's shared event stream into a closed set of variants.

This is the only module that looks at raw payload fields. Everything
downstream dispatches on the variant type.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

TOOL_PART_TYPES = frozenset({"tool", "tool_use", "tool_call"})
STEP_FINISH_PART_TYPES = frozenset({"step_finish", "step-finish"})
FAILURE_STATES = frozenset({"error", "blocked"})


@dataclass(slots=True, frozen=True)
class ErrorPayload:
    name: str
    message: str
    raw: Any = None

    @classmethod
    def from_raw(cls, raw: Any) -> ErrorPayload:
        if isinstance(raw, str):
            return cls(name="Error", message=raw, raw=raw)
        if not isinstance(raw, dict):
            return cls(name="UnknownError", message=json.dumps(raw, default=str), raw=raw)
        data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
        message = data.get("message") or raw.get("message")
        if not isinstance(message, str) or not message:
            message = json.dumps(raw, default=str)
        return cls(name=str(raw.get("name") or "UnknownError"), message=message, raw=raw)


@dataclass(slots=True, frozen=True)
class FileChange:
    path: str
    additions: int = 0
    deletions: int = 0


@dataclass(slots=True, frozen=True)
class TodoItem:
    content: str
    status: str


@dataclass(slots=True, frozen=True)
class MessageUpdated:
    session_id: str | None
    agent: str | None = None
    has_model: bool = False
    provider_id: str | None = None
    model_id: str | None = None
    file_changes: tuple[FileChange, ...] = ()
    share_url: str | None = None


@dataclass(slots=True, frozen=True)
class TextDelta:
    session_id: str | None
    text: str
    share_url: str | None = None


@dataclass(slots=True, frozen=True)
class TextSnapshot:
    session_id: str | None
    text: str
    share_url: str | None = None


@dataclass(slots=True, frozen=True)
class ToolInvoked:
    session_id: str | None
    tool: str
    share_url: str | None = None


@dataclass(slots=True, frozen=True)
class StepFinished:
    session_id: str | None
    cost: float | None = None
    share_url: str | None = None


@dataclass(slots=True, frozen=True)
class SessionErrorEvent:
    session_id: str | None
    source: str
    state: str | None = None
    error: ErrorPayload | None = None
    share_url: str | None = None


@dataclass(slots=True, frozen=True)
class StatusNotice:
    session_id: str | None
    source: str
    title: str = ""
    message: str = ""
    variant: str = "info"
    state: str | None = None
    share_url: str | None = None


@dataclass(slots=True, frozen=True)
class TodoUpdated:
    session_id: str | None
    todos: tuple[TodoItem, ...] = ()
    share_url: str | None = None

    def count(self, *statuses: str) -> int:
        return sum(1 for todo in self.todos if todo.status in statuses)


@dataclass(slots=True, frozen=True)
class SessionIdle:
    session_id: str | None
    error: ErrorPayload | None = None
    share_url: str | None = None


@dataclass(slots=True, frozen=True)
class Unrecognized:
    session_id: str | None
    type: str
    raw: dict[str, Any] = field(default_factory=dict)
    share_url: str | None = None


SessionEvent = (
    MessageUpdated
    | TextDelta
    | TextSnapshot
    | ToolInvoked
    | StepFinished
    | SessionErrorEvent
    | StatusNotice
    | TodoUpdated
    | SessionIdle
    | Unrecognized
)


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def event_session_id(raw: dict[str, Any]) -> str | None:
    properties = _as_dict(raw.get("properties"))
    candidates = (
        raw.get("sessionID"),
        properties.get("sessionID"),
        _as_dict(properties.get("part")).get("sessionID"),
        _as_dict(properties.get("message")).get("sessionID"),
        _as_dict(properties.get("info")).get("sessionID"),
    )
    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


def _share_url(raw: dict[str, Any]) -> str | None:
    properties = _as_dict(raw.get("properties"))
    for source in (raw, properties):
        for key in ("shareLink", "shareURL"):
            value = _str_or_none(source.get(key))
            if value:
                return value
        value = _str_or_none(_as_dict(source.get("share")).get("url"))
        if value:
            return value
    return None


def _status_state(payload: dict[str, Any]) -> str | None:
    state = payload.get("state", payload.get("status"))
    if isinstance(state, dict):
        state = state.get("type")
    return _str_or_none(state)


def _error_of(*candidates: Any) -> ErrorPayload | None:
    for candidate in candidates:
        if candidate:
            return ErrorPayload.from_raw(candidate)
    return None


def _file_changes(info: dict[str, Any]) -> tuple[FileChange, ...]:
    summary = _as_dict(info.get("summary"))
    diffs = summary.get("diffs")
    if not isinstance(diffs, list):
        return ()
    changes: list[FileChange] = []
    for diff in diffs:
        diff = _as_dict(diff)
        path = _str_or_none(diff.get("file")) or _str_or_none(diff.get("path"))
        if path is None:
            continue
        changes.append(
            FileChange(
                path=path,
                additions=int(diff.get("additions") or 0),
                deletions=int(diff.get("deletions") or 0),
            )
        )
    return tuple(changes)


def _message_updated(
    raw: dict[str, Any], session_id: str | None, share: str | None
) -> MessageUpdated:
    properties = _as_dict(raw.get("properties"))
    info = _as_dict(properties.get("info") or raw.get("info"))
    model = info.get("model")
    provider_id: str | None = None
    model_id: str | None = None
    if isinstance(model, dict):
        provider_id = _str_or_none(model.get("providerID")) or _str_or_none(model.get("provider"))
        model_id = model.get("modelID", model.get("model"))
        model_id = model_id if isinstance(model_id, str) else None
    elif "modelID" in info or "providerID" in info:
        # flat layout used by assistant messages
        provider_id = _str_or_none(info.get("providerID"))
        model_id = info.get("modelID") if isinstance(info.get("modelID"), str) else None
        model = info
    return MessageUpdated(
        session_id=session_id,
        agent=_str_or_none(info.get("agent")) or _str_or_none(info.get("mode")),
        has_model=isinstance(model, dict),
        provider_id=provider_id,
        model_id=model_id,
        file_changes=_file_changes(info),
        share_url=share,
    )


def _message_part(
    event_type: str, raw: dict[str, Any], session_id: str | None, share: str | None
) -> SessionEvent:
    properties = _as_dict(raw.get("properties"))
    part = _as_dict(properties.get("part") or raw.get("part"))
    part_type = part.get("type")
    if part_type == "text" and isinstance(part.get("text"), str) and part.get("text"):
        if event_type == "message.chunk":
            return TextDelta(session_id=session_id, text=part["text"], share_url=share)
        return TextSnapshot(session_id=session_id, text=part["text"], share_url=share)
    if part_type in TOOL_PART_TYPES:
        tool = _str_or_none(part.get("name")) or _str_or_none(part.get("tool")) or "unknown"
        return ToolInvoked(session_id=session_id, tool=tool, share_url=share)
    if part_type in STEP_FINISH_PART_TYPES:
        cost = part.get("cost")
        return StepFinished(
            session_id=session_id,
            cost=float(cost) if isinstance(cost, int | float) else None,
            share_url=share,
        )
    return Unrecognized(session_id=session_id, type=event_type, raw=raw, share_url=share)


def parse_event(raw: dict[str, Any]) -> SessionEvent:
    """Classify one decoded stream record into its variant."""
    event_type = str(raw.get("type") or "")
    session_id = event_session_id(raw)
    share = _share_url(raw)
    properties = _as_dict(raw.get("properties"))

    if event_type == "message.updated":
        return _message_updated(raw, session_id, share)
    if event_type in {"message.part.updated", "message.chunk"}:
        return _message_part(event_type, raw, session_id, share)
    if event_type == "error":
        error = _error_of(raw.get("error"), properties.get("error")) or ErrorPayload.from_raw(raw)
        return SessionErrorEvent(
            session_id=session_id, source=event_type, error=error, share_url=share
        )
    if event_type in {"session.status", "session.error", "session.blocked"}:
        state = _status_state(properties) or _status_state(raw)
        error = _error_of(properties.get("error"), raw.get("error"))
        if event_type == "session.blocked" and state is None:
            state = "blocked"
        if error is not None or state in FAILURE_STATES or event_type == "session.error":
            return SessionErrorEvent(
                session_id=session_id,
                source=event_type,
                state=state,
                error=error,
                share_url=share,
            )
        return StatusNotice(session_id=session_id, source=event_type, state=state, share_url=share)
    if event_type.startswith("tui."):
        return StatusNotice(
            session_id=session_id,
            source=event_type,
            title=str(properties.get("title") or ""),
            message=str(properties.get("message") or ""),
            variant=str(properties.get("variant") or "info"),
            share_url=share,
        )
    if event_type == "todo.updated":
        todos_raw = properties.get("todos", raw.get("todos"))
        todos = tuple(
            TodoItem(
                content=str(_as_dict(todo).get("content") or ""),
                status=str(_as_dict(todo).get("status") or "pending"),
            )
            for todo in (todos_raw if isinstance(todos_raw, list) else [])
        )
        return TodoUpdated(session_id=session_id, todos=todos, share_url=share)
    if event_type == "session.idle":
        error = _error_of(raw.get("error"), properties.get("error"))
        return SessionIdle(session_id=session_id, error=error, share_url=share)
    return Unrecognized(session_id=session_id, type=event_type, raw=raw, share_url=share)
