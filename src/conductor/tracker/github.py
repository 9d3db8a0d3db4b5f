from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

import httpx

from conductor.tracker.base import (
    CheckState,
    Comment,
    Issue,
    IssueTracker,
    PullRequest,
    TrackerError,
)

logger = logging.getLogger(__name__)

COMMENTS_PER_PAGE = 100
RETRIED_METHODS = frozenset({"GET", "DELETE"})


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _login(payload: Any) -> str:
    if isinstance(payload, dict):
        return str(payload.get("login") or "")
    return ""


class GitHubTracker(IssueTracker):
    """GitHub REST v3 implementation of :class:`IssueTracker`."""

    def __init__(
        self,
        repo: str,
        token: str,
        *,
        username: str = "",
        api_url: str = "https://api.github.com",
        page_size: int = 20,
        timeout_seconds: float = 30.0,
        max_retries: int = 2,
        backoff_seconds: float = 0.5,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if repo.count("/") != 1:
            raise TrackerError(f"Repository must be owner/name, got {repo!r}", retriable=False)
        self.repo = repo
        self.page_size = page_size
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._username = username
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers=headers,
            timeout=timeout_seconds,
        )
        self._owns_client = client is None

    @property
    def username(self) -> str:
        return self._username

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        allow_not_found: bool = False,
    ) -> Any:
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.HTTPError as exc:
            raise TrackerError(f"{method} {path} failed: {exc}") from exc
        if allow_not_found and response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise TrackerError(
                f"{method} {path} returned {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
                retriable=response.status_code >= 500 or response.status_code == 429,
            )
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        allow_not_found: bool = False,
    ) -> Any:
        """Send one request, retrying reads and deletes on retriable failures."""
        attempts = self.max_retries + 1 if method in RETRIED_METHODS else 1
        last_error: TrackerError | None = None
        for attempt in range(attempts):
            if attempt > 0:
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.debug("Retrying %s %s in %.1fs: %s", method, path, delay, last_error)
                await asyncio.sleep(delay)
            try:
                return await self._send(
                    method, path, params=params, json=json, allow_not_found=allow_not_found
                )
            except TrackerError as exc:
                last_error = exc
                if not exc.retriable:
                    break
        raise last_error or TrackerError(f"{method} {path} was not attempted")

    async def list_issues(self, label: str, exclude_labels: tuple[str, ...] = ()) -> list[Issue]:
        payload = await self._request(
            "GET",
            f"/repos/{self.repo}/issues",
            params={
                "state": "open",
                "labels": label,
                "sort": "created",
                "direction": "asc",
                "per_page": self.page_size,
            },
        )
        issues: list[Issue] = []
        for raw in payload or []:
            if "pull_request" in raw:
                continue
            labels = [str(item.get("name", "")) for item in raw.get("labels", [])]
            if any(excluded in labels for excluded in exclude_labels):
                continue
            issue = Issue(
                number=int(raw["number"]),
                title=str(raw.get("title") or ""),
                body=str(raw.get("body") or ""),
                labels=labels,
                author=_login(raw.get("user")),
                created_at=_parse_timestamp(raw.get("created_at")),
            )
            issue.comments = await self.list_comments(issue.number)
            issues.append(issue)
        return issues

    async def list_comments(self, number: int) -> list[Comment]:
        comments: list[Comment] = []
        page = 1
        while True:
            payload = await self._request(
                "GET",
                f"/repos/{self.repo}/issues/{number}/comments",
                params={"per_page": COMMENTS_PER_PAGE, "page": page},
            )
            batch = payload or []
            for raw in batch:
                created_at = _parse_timestamp(raw.get("created_at"))
                if created_at is None:
                    continue
                comments.append(
                    Comment(
                        id=int(raw["id"]),
                        author=_login(raw.get("user")),
                        body=str(raw.get("body") or ""),
                        created_at=created_at,
                    )
                )
            if len(batch) < COMMENTS_PER_PAGE:
                break
            page += 1
        comments.sort(key=lambda comment: comment.created_at)
        return comments

    async def add_label(self, number: int, label: str) -> None:
        await self._request(
            "POST",
            f"/repos/{self.repo}/issues/{number}/labels",
            json={"labels": [label]},
        )
        logger.debug("Added label %s to #%s", label, number)

    async def remove_label(self, number: int, label: str) -> None:
        await self._request(
            "DELETE",
            f"/repos/{self.repo}/issues/{number}/labels/{label}",
            allow_not_found=True,
        )
        logger.debug("Removed label %s from #%s", label, number)

    async def post_comment(self, number: int, body: str) -> None:
        await self._request(
            "POST",
            f"/repos/{self.repo}/issues/{number}/comments",
            json={"body": body},
        )

    async def create_pull_request(self, title: str, body: str, head: str, base: str) -> PullRequest:
        payload = await self._request(
            "POST",
            f"/repos/{self.repo}/pulls",
            json={"title": title, "body": body, "head": head, "base": base},
        )
        return PullRequest(
            number=int(payload["number"]),
            url=str(payload.get("html_url") or ""),
            head=head,
            base=base,
        )

    async def check_status(self, ref: str) -> CheckState:
        payload = await self._request("GET", f"/repos/{self.repo}/commits/{ref}/check-runs")
        runs = (payload or {}).get("check_runs", [])
        if not runs:
            return "pending"
        if any(run.get("status") != "completed" for run in runs):
            return "pending"
        passing = {"success", "skipped", "neutral"}
        if all(run.get("conclusion") in passing for run in runs):
            return "success"
        return "failure"
