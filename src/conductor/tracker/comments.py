from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from conductor.verification import GateResult


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n... (truncated)"


def render_recovery_comment(
    *,
    category: str,
    error_name: str,
    error_message: str,
    share_url: str | None,
    excerpt_chars: int = 1000,
) -> str:
    lines = [
        "## Automated run failed",
        "",
        f"**Category:** {category}",
        f"**Error type:** `{error_name}`",
        "",
        "```",
        truncate(error_message or "(no error message)", excerpt_chars),
        "```",
        "",
    ]
    if share_url:
        lines.append(f"Session transcript: {share_url}")
        lines.append("")
    lines.append(
        "The issue has been returned to the queue and will be picked up again "
        "on the next poll. The workspace was left in place for inspection."
    )
    return "\n".join(lines)


def render_verification_comment(branch: str, results: Sequence[GateResult]) -> str:
    lines = [f"## Verification report for `{branch}`", ""]
    for result in results:
        mark = "pass" if result.passed else "FAIL"
        suffix = "" if result.gate.required else " (optional)"
        lines.append(f"- **{result.gate.name}**{suffix}: {mark} ({result.duration_seconds:.1f}s)")
    failed = [result for result in results if not result.passed]
    for result in failed:
        detail = result.error or result.output
        lines.extend(["", f"### {result.gate.name}", "", "```", truncate(detail, 1000), "```"])
    return "\n".join(lines)
