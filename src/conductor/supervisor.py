"""Supervision of remote agent sessions.

Each active task gets a subscription to the runtime's shared event stream
(filtered to the task's session) and an independent status poll. Both
channels feed :meth:`SessionSupervisor.report_failure`, which runs the
compensating recovery at most once per task.

A session going idle is the only completion signal the runtime offers.
:func:`classify_idle` turns it into an outcome from the elapsed session
time and any attached error. The duration thresholds are a heuristic: a
legitimately fast session can be misread as incomplete.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from conductor.config import SupervisionConfig
from conductor.diagnostics import inspect_message_model
from conductor.runtime.base import RuntimeClientError, SessionClient
from conductor.runtime.events import (
    ErrorPayload,
    MessageUpdated,
    SessionErrorEvent,
    SessionEvent,
    SessionIdle,
    StatusNotice,
    StepFinished,
    TextDelta,
    TextSnapshot,
    TodoUpdated,
    ToolInvoked,
    Unrecognized,
)
from conductor.task import Task, utcnow
from conductor.tracker import labels
from conductor.tracker.base import IssueTracker
from conductor.tracker.comments import render_recovery_comment

logger = logging.getLogger(__name__)


class IdleOutcome(StrEnum):
    CONFIGURATION_FAILURE = "configuration_failure"
    SUSPICIOUS_INCOMPLETE = "suspicious_incomplete"
    SUCCESS = "success"
    FAILURE = "failure"

    @property
    def failed(self) -> bool:
        return self in (IdleOutcome.CONFIGURATION_FAILURE, IdleOutcome.FAILURE)


def classify_idle(
    duration_seconds: float,
    has_error: bool,
    *,
    immediate_failure_seconds: float = 1.0,
    min_viable_seconds: float = 60.0,
) -> IdleOutcome:
    if has_error:
        return IdleOutcome.FAILURE
    if duration_seconds < immediate_failure_seconds:
        return IdleOutcome.CONFIGURATION_FAILURE
    if duration_seconds < min_viable_seconds:
        return IdleOutcome.SUSPICIOUS_INCOMPLETE
    return IdleOutcome.SUCCESS


@dataclass(slots=True, frozen=True)
class FailureSignal:
    category: str
    source: str
    error: ErrorPayload | None = None


class TextBuffer:
    """Reassembles streamed text delivered as deltas, snapshots, or both."""

    def __init__(self) -> None:
        self.text = ""

    def append(self, delta: str) -> str:
        self.text += delta
        return delta

    def replace(self, snapshot: str) -> str:
        fresh = snapshot[len(self.text) :] if len(snapshot) > len(self.text) else ""
        self.text = snapshot
        return fresh

    def flush(self) -> str:
        text, self.text = self.text, ""
        return text


_BULLETS = "·•▪▫"
_EDGE_NOISE = re.compile(rf"^[{_BULLETS}\s]+|[{_BULLETS}\s]+$")


def notification_fingerprint(title: str, message: str) -> str:
    parts = [_EDGE_NOISE.sub("", part) for part in (title, message)]
    return re.sub(r"\s+", " ", " ".join(part for part in parts if part)).strip().lower()


TerminalCallback = Callable[[Task, IdleOutcome], Awaitable[None]]
TextSink = Callable[[int, str], None]
Clock = Callable[[], datetime]


@dataclass(slots=True)
class _Watch:
    task: Task
    buffer: TextBuffer = field(default_factory=TextBuffer)
    stream: asyncio.Task[None] | None = None
    poll: asyncio.Task[None] | None = None
    finished: bool = False
    saw_activity: bool = False


class SessionSupervisor:
    def __init__(
        self,
        client: SessionClient,
        tracker: IssueTracker,
        config: SupervisionConfig | None = None,
        *,
        on_terminal: TerminalCallback | None = None,
        share_sessions: bool = True,
        text_sink: TextSink | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.client = client
        self.tracker = tracker
        self.config = config or SupervisionConfig()
        self.on_terminal = on_terminal
        self.share_sessions = share_sessions
        self.text_sink = text_sink
        self._clock = clock
        self._watches: dict[int, _Watch] = {}

    def _state(self, task: Task) -> _Watch:
        watch = self._watches.get(task.item_id)
        if watch is not None and watch.task is task:
            return watch
        watch = _Watch(task=task, finished=task.settled)
        if not task.settled:
            self._watches[task.item_id] = watch
        return watch

    def is_watching(self, item_id: int) -> bool:
        watch = self._watches.get(item_id)
        return watch is not None and not watch.finished

    def watch(self, task: Task) -> None:
        """Start the event subscription and the status poll for ``task``."""
        watch = self._state(task)
        if watch.stream is not None:
            return
        watch.stream = asyncio.create_task(
            self._stream_loop(task), name=f"conductor-stream-{task.item_id}"
        )
        watch.poll = asyncio.create_task(
            self._poll_loop(task), name=f"conductor-poll-{task.item_id}"
        )

    # event stream

    async def _stream_loop(self, task: Task) -> None:
        watch = self._state(task)
        if self.share_sessions:
            await self._ensure_share_url(task)
        while not watch.finished:
            try:
                async with aclosing(self.client.subscribe_events()) as events:
                    async for event in events:
                        if event.session_id is not None and event.session_id != task.session_id:
                            continue
                        await self.handle_event(task, event)
                        if watch.finished:
                            return
                logger.info("Event stream for #%s closed, reconnecting", task.item_id)
            except RuntimeClientError as exc:
                logger.warning("Event stream for #%s failed: %s", task.item_id, exc)
            except Exception:
                logger.exception("Event stream for #%s crashed", task.item_id)
            if not watch.finished:
                await asyncio.sleep(self.config.reconnect_delay_seconds)

    async def handle_event(self, task: Task, event: SessionEvent) -> None:
        """Apply one event to ``task``. Never raises."""
        try:
            await self._dispatch(task, event)
        except Exception:
            logger.exception("Failed to handle %s for #%s", type(event).__name__, task.item_id)

    async def _dispatch(self, task: Task, event: SessionEvent) -> None:
        watch = self._state(task)
        own = event.session_id == task.session_id
        if own:
            task.last_activity = self._clock()
            watch.saw_activity = True
        if own and event.share_url and not task.share_url:
            task.share_url = event.share_url
            logger.info("Session transcript for #%s: %s", task.item_id, event.share_url)

        if isinstance(event, TextDelta):
            self._emit_text(task, watch.buffer.append(event.text))
        elif isinstance(event, TextSnapshot):
            self._emit_text(task, watch.buffer.replace(event.text))
        elif isinstance(event, StepFinished):
            self._flush(task, watch)
            logger.info("#%s step finished (cost=%s)", task.item_id, event.cost)
        elif isinstance(event, ToolInvoked):
            logger.info("#%s tool: %s", task.item_id, event.tool)
        elif isinstance(event, MessageUpdated):
            self._inspect_message(task, event)
        elif isinstance(event, TodoUpdated):
            done = event.count("completed", "done")
            logger.info("#%s todos: %s/%s completed", task.item_id, done, len(event.todos))
        elif isinstance(event, StatusNotice):
            self._notice(task, event)
        elif isinstance(event, SessionErrorEvent):
            if not own:
                logger.warning("Runtime error not tied to a session: %s", event.error)
                return
            category = "session_blocked" if event.state == "blocked" else "session_error"
            await self.report_failure(task, FailureSignal(category, event.source, event.error))
        elif isinstance(event, SessionIdle):
            if not own:
                return
            duration = (self._clock() - task.started_at).total_seconds()
            await self._finish(task, duration, event.error)
        elif isinstance(event, Unrecognized):
            logger.debug("#%s unrecognized event %s", task.item_id, event.type)

    def _emit_text(self, task: Task, text: str) -> None:
        if text and self.text_sink is not None:
            self.text_sink(task.item_id, text)

    def _flush(self, task: Task, watch: _Watch) -> None:
        text = watch.buffer.flush()
        if text:
            logger.debug("#%s message: %s", task.item_id, text)

    def _inspect_message(self, task: Task, event: MessageUpdated) -> None:
        diagnostic = inspect_message_model(event)
        if diagnostic is not None:
            logger.error("#%s model misconfiguration: %s", task.item_id, diagnostic.describe())
        if event.file_changes:
            added = sum(change.additions for change in event.file_changes)
            removed = sum(change.deletions for change in event.file_changes)
            logger.info(
                "#%s changes: %s file(s) +%s -%s",
                task.item_id,
                len(event.file_changes),
                added,
                removed,
            )

    def _notice(self, task: Task, event: StatusNotice) -> None:
        if not event.source.startswith("tui."):
            logger.debug("#%s status %s", task.item_id, event.state)
            return
        fingerprint = notification_fingerprint(event.title, event.message)
        if not fingerprint or fingerprint == task.last_notification:
            return
        task.last_notification = fingerprint
        level = logging.WARNING if event.variant in {"warning", "error"} else logging.INFO
        logger.log(level, "#%s %s %s", task.item_id, event.title, event.message)

    # status poll

    async def _poll_loop(self, task: Task) -> None:
        watch = self._state(task)
        while not watch.finished:
            await asyncio.sleep(self.config.status_poll_interval_seconds)
            try:
                await self.poll_status(task)
            except Exception:
                logger.exception("Status poll for #%s failed", task.item_id)

    async def poll_status(self, task: Task) -> None:
        try:
            statuses = await self.client.get_aggregate_status()
        except RuntimeClientError as exc:
            logger.debug("Status poll for #%s failed: %s", task.item_id, exc)
            return
        status = statuses.get(task.session_id)
        if status is None:
            return
        if status.is_failure:
            category = "session_blocked" if status.state == "blocked" else "session_error"
            await self.report_failure(task, FailureSignal(category, "status_poll", status.error))
            return
        if status.state != "idle":
            return
        quiet = (self._clock() - task.last_activity).total_seconds()
        if quiet < self.config.idle_warning_seconds:
            return
        logger.warning("#%s has been idle for %.0fs and may be stuck", task.item_id, quiet)
        watch = self._state(task)
        if watch.saw_activity:
            # the push channel missed the idle transition
            duration = (self._clock() - task.started_at).total_seconds()
            await self._finish(task, duration, None)

    # outcomes

    async def report_failure(self, task: Task, signal: FailureSignal) -> bool:
        """Shared failure decision for both channels; recovers at most once."""
        if not task.claim_recovery():
            logger.debug(
                "#%s failure from %s ignored, already handled", task.item_id, signal.source
            )
            return False
        logger.error(
            "#%s session %s failed (%s via %s): %s",
            task.item_id,
            task.session_id,
            signal.category,
            signal.source,
            signal.error.message if signal.error else "no details",
        )
        await self.recover(task, signal)
        return True

    async def recover(self, task: Task, signal: FailureSignal) -> None:
        """Return the item to the queue and explain why. Never raises."""
        share_url = task.share_url
        if share_url is None and self.share_sessions:
            share_url = await self._ensure_share_url(task)
        error = signal.error
        body = render_recovery_comment(
            category=signal.category,
            error_name=error.name if error else "UnknownError",
            error_message=error.message if error else "The runtime reported no error details.",
            share_url=share_url,
            excerpt_chars=self.config.error_excerpt_chars,
        )
        number = task.item_id
        steps: list[tuple[str, Callable[[], Awaitable[None]]]] = [
            (
                "remove in-progress label",
                lambda: self.tracker.remove_label(number, labels.IN_PROGRESS),
            ),
            ("restore ready label", lambda: self.tracker.add_label(number, labels.READY)),
            ("post failure comment", lambda: self.tracker.post_comment(number, body)),
        ]
        for description, step in steps:
            try:
                await step()
            except Exception as exc:
                logger.error("Recovery for #%s could not %s: %s", number, description, exc)
        logger.info("#%s returned to the queue after %s", number, signal.category)

    async def _finish(self, task: Task, duration: float, error: ErrorPayload | None) -> None:
        watch = self._state(task)
        if watch.finished:
            return
        watch.finished = True
        self._flush(task, watch)

        outcome = classify_idle(
            duration,
            error is not None,
            immediate_failure_seconds=self.config.immediate_failure_seconds,
            min_viable_seconds=self.config.min_viable_seconds,
        )
        if outcome is IdleOutcome.FAILURE:
            await self.report_failure(task, FailureSignal("session_error", "idle", error))
        elif outcome is IdleOutcome.CONFIGURATION_FAILURE:
            immediate = ErrorPayload(
                name="ImmediateFailure",
                message=(
                    f"Session went idle {duration:.2f}s after start, "
                    "likely a model or configuration validation error"
                ),
            )
            await self.report_failure(
                task, FailureSignal("configuration_failure", "idle", immediate)
            )
        elif outcome is IdleOutcome.SUSPICIOUS_INCOMPLETE:
            logger.warning(
                "#%s went idle after only %.0fs; the work may be incomplete",
                task.item_id,
                duration,
            )
        else:
            logger.info("#%s session idle after %.0fs, task complete", task.item_id, duration)

        await self._stop(task.item_id, watch)
        if self.on_terminal is not None:
            try:
                await self.on_terminal(task, outcome)
            except Exception:
                logger.exception("Completion callback for #%s failed", task.item_id)

    async def _ensure_share_url(self, task: Task) -> str | None:
        if task.share_url or not task.session_id:
            return task.share_url
        try:
            task.share_url = await self.client.share_session(task.session_id)
        except RuntimeClientError as exc:
            logger.debug("Could not share session for #%s: %s", task.item_id, exc)
        return task.share_url

    # teardown

    async def _stop(self, item_id: int, watch: _Watch) -> None:
        watch.finished = True
        watch.task.settled = True
        current = asyncio.current_task()
        pending = [
            job for job in (watch.stream, watch.poll) if job is not None and job is not current
        ]
        for job in pending:
            job.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if self._watches.get(item_id) is watch:
            del self._watches[item_id]

    async def cancel(self, task: Task, *, abort_remote: bool = True) -> None:
        """Stop supervising ``task`` and ask the runtime to abort its session.

        Each step is independent: an abort failure is logged and does not
        prevent the local teardown.
        """
        watch = self._watches.get(task.item_id)
        if watch is not None and watch.task is task:
            await self._stop(task.item_id, watch)
        if abort_remote and task.session_id:
            try:
                await self.client.abort_session(task.session_id)
            except Exception as exc:
                logger.warning("Abort of session %s failed: %s", task.session_id, exc)

    async def close(self) -> None:
        for item_id, watch in list(self._watches.items()):
            await self._stop(item_id, watch)
