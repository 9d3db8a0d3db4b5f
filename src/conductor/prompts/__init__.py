from __future__ import annotations

from importlib import resources
from pathlib import Path
from string import Template

from conductor.tracker.base import Comment, Issue

FALLBACK_PROMPTS = {
    "start.md": "Work on issue #$number ($title) in $workspace on branch $branch.\n\n$body",
    "continue.md": "Continue issue #$number in $workspace on branch $branch.\n\n$comment",
}


def load_template(name: str) -> Template:
    try:
        text = resources.files("conductor.prompts").joinpath(name).read_text(encoding="utf-8")
    except (FileNotFoundError, ModuleNotFoundError):
        text = FALLBACK_PROMPTS[name]
    return Template(text)


def _issue_url(repo: str, number: int) -> str:
    return f"https://github.com/{repo}/issues/{number}"


def _format_comments(comments: list[Comment]) -> str:
    if not comments:
        return "_No comments yet._"
    ordered = sorted(comments, key=lambda comment: comment.created_at)
    return "\n\n---\n\n".join(
        f"**{comment.author}** ({comment.created_at.isoformat()}):\n{comment.body}"
        for comment in ordered
    )


def build_start_prompt(issue: Issue, *, repo: str, workspace: Path, branch: str) -> str:
    return load_template("start.md").safe_substitute(
        number=issue.number,
        title=issue.title,
        repo=repo,
        issue_url=_issue_url(repo, issue.number),
        workspace=str(workspace),
        branch=branch,
        body=issue.body.strip() or "_No description provided._",
        comments=_format_comments(issue.comments),
    ).strip()


def build_continuation_prompt(
    issue: Issue, comment: Comment, *, repo: str, workspace: Path, branch: str
) -> str:
    return load_template("continue.md").safe_substitute(
        number=issue.number,
        title=issue.title,
        repo=repo,
        issue_url=_issue_url(repo, issue.number),
        workspace=str(workspace),
        branch=branch,
        comment_author=comment.author,
        comment=comment.body.strip(),
    ).strip()
