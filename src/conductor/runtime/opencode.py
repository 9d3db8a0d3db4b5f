from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import httpx

from conductor.runtime.base import (
    RetryPolicy,
    RuntimeClientError,
    SessionClient,
    SessionInfo,
    SessionNotFoundError,
    SessionStatus,
)
from conductor.runtime.events import ErrorPayload, SessionEvent, parse_event

logger = logging.getLogger(__name__)

RuntimeEventHook = Callable[[dict[str, Any]], None]


def _session_info(payload: dict[str, Any]) -> SessionInfo:
    share = payload.get("share") if isinstance(payload.get("share"), dict) else {}
    return SessionInfo(
        id=str(payload["id"]),
        title=str(payload.get("title") or ""),
        parent_id=payload.get("parentID"),
        share_url=payload.get("shareURL") or share.get("url"),
    )


def sse_record_data(lines: list[str]) -> str | None:
    """Join the ``data:`` lines of one server-sent-event record."""
    data = [line[5:].lstrip() if line.startswith("data:") else None for line in lines]
    chunks = [chunk for chunk in data if chunk is not None]
    return "\n".join(chunks) if chunks else None


class OpenCodeClient(SessionClient):
    """HTTP client for an ``opencode serve`` instance."""

    def __init__(
        self,
        base_url: str,
        *,
        retry_policy: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
        event_hook: RuntimeEventHook | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_hook = event_hook
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.retry_policy.timeout_seconds,
        )
        self._owns_client = client is None

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, json=json_body, headers=headers)
        except httpx.HTTPError as exc:
            raise RuntimeClientError(f"{method} {path} failed: {exc}") from exc
        if response.status_code == 404:
            raise SessionNotFoundError(
                f"{method} {path} returned 404", status_code=404, retriable=False
            )
        if response.status_code >= 400:
            raise RuntimeClientError(
                f"{method} {path} returned {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
                retriable=response.status_code >= 500,
            )
        return response

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
        retry: bool = False,
    ) -> httpx.Response:
        attempts = self.retry_policy.max_retries + 1 if retry else 1
        last_error: RuntimeClientError | None = None
        for attempt in range(attempts):
            if attempt > 0:
                delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                self._emit(
                    {
                        "event": "runtime_retry",
                        "call": f"{method} {path}",
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await asyncio.sleep(delay)
            try:
                return await self._send(method, path, json_body=json_body, headers=headers)
            except RuntimeClientError as exc:
                last_error = exc
                if not exc.retriable:
                    break
        raise last_error or RuntimeClientError(f"{method} {path} was not attempted")

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise RuntimeClientError(f"Runtime returned invalid JSON: {exc}") from exc

    async def check_health(self) -> bool:
        try:
            await self._send("GET", "/global/health")
        except RuntimeClientError:
            return False
        return True

    async def create_session(
        self,
        title: str,
        *,
        parent_id: str | None = None,
        directory: Path | None = None,
    ) -> SessionInfo:
        body: dict[str, Any] = {"title": title}
        if parent_id:
            body["parentID"] = parent_id
        headers = {"x-opencode-directory": str(directory)} if directory else None
        response = await self._request("POST", "/session", json_body=body, headers=headers)
        payload = self._json(response)
        if not isinstance(payload, dict) or "id" not in payload:
            raise RuntimeClientError("Session creation returned no id", retriable=False)
        return _session_info(payload)

    async def get_session(self, session_id: str) -> SessionInfo:
        response = await self._request("GET", f"/session/{session_id}", retry=True)
        payload = self._json(response)
        if not isinstance(payload, dict) or "id" not in payload:
            raise SessionNotFoundError(f"Session {session_id} did not resolve", retriable=False)
        return _session_info(payload)

    async def send_prompt_async(
        self, session_id: str, text: str, *, model: str | None = None
    ) -> None:
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        if model and "/" in model:
            provider_id, model_id = model.split("/", 1)
            body["model"] = {"providerID": provider_id, "modelID": model_id}
        await self._request("POST", f"/session/{session_id}/prompt_async", json_body=body)

    async def get_aggregate_status(self) -> dict[str, SessionStatus]:
        response = await self._request("GET", "/session/status", retry=True)
        payload = self._json(response)
        statuses: dict[str, SessionStatus] = {}
        if not isinstance(payload, dict):
            return statuses
        for session_id, raw in payload.items():
            if isinstance(raw, str):
                statuses[session_id] = SessionStatus(state=raw, raw={"state": raw})
                continue
            if not isinstance(raw, dict):
                continue
            state = raw.get("state") or raw.get("status") or raw.get("type") or "unknown"
            if isinstance(state, dict):
                state = state.get("type") or "unknown"
            error = raw.get("error")
            statuses[session_id] = SessionStatus(
                state=str(state),
                error=ErrorPayload.from_raw(error) if error else None,
                raw=raw,
            )
        return statuses

    async def abort_session(self, session_id: str) -> None:
        await self._request("POST", f"/session/{session_id}/abort")

    async def share_session(self, session_id: str) -> str | None:
        response = await self._request("POST", f"/session/{session_id}/share")
        payload = self._json(response)
        if not isinstance(payload, dict):
            return None
        share = payload.get("share") if isinstance(payload.get("share"), dict) else {}
        url = payload.get("shareURL") or share.get("url") or payload.get("url")
        return url if isinstance(url, str) and url else None

    async def list_agents(self) -> list[dict[str, Any]]:
        payload = self._json(await self._request("GET", "/agent", retry=True))
        return [item for item in payload or [] if isinstance(item, dict)]

    async def list_providers(self) -> list[dict[str, Any]]:
        payload = self._json(await self._request("GET", "/config/providers", retry=True))
        if isinstance(payload, dict):
            payload = payload.get("providers", [])
        return [item for item in payload or [] if isinstance(item, dict)]

    async def subscribe_events(self) -> AsyncIterator[SessionEvent]:
        """Stream decoded events until the server closes the connection."""
        timeout = httpx.Timeout(self.retry_policy.timeout_seconds, read=None)
        try:
            async with self._client.stream(
                "GET",
                "/event",
                headers={"Accept": "text/event-stream"},
                timeout=timeout,
            ) as response:
                if response.status_code >= 400:
                    raise RuntimeClientError(
                        f"Event stream returned {response.status_code}",
                        status_code=response.status_code,
                    )
                record: list[str] = []
                async for line in response.aiter_lines():
                    if line:
                        record.append(line)
                        continue
                    data = sse_record_data(record)
                    record = []
                    if not data:
                        continue
                    try:
                        raw = json.loads(data)
                    except json.JSONDecodeError:
                        logger.warning("Skipping undecodable event record: %s", data[:200])
                        continue
                    if isinstance(raw, dict):
                        yield parse_event(raw)
        except httpx.HTTPError as exc:
            raise RuntimeClientError(f"Event stream failed: {exc}") from exc
