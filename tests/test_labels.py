from datetime import UTC, datetime, timedelta

from fakes import BASE_TIME, make_comment, make_issue

from conductor.tracker import labels
from conductor.tracker.comments import render_recovery_comment, truncate


def test_sort_by_priority_then_creation_time() -> None:
    issues = [
        make_issue(1, labels=[labels.READY], minutes=0),
        make_issue(2, labels=[labels.READY, labels.PRIORITY_LOW], minutes=1),
        make_issue(3, labels=[labels.READY, labels.PRIORITY_HIGH], minutes=9),
        make_issue(4, labels=[labels.READY, labels.PRIORITY_HIGH], minutes=2),
        make_issue(5, labels=[labels.READY, labels.PRIORITY_MEDIUM], minutes=3),
    ]

    ordered = labels.sort_by_priority(issues)

    assert [issue.number for issue in ordered] == [4, 3, 5, 2, 1]


def test_highest_priority_label_wins() -> None:
    issue = make_issue(1, labels=[labels.READY, labels.PRIORITY_LOW, labels.PRIORITY_HIGH])

    assert labels.priority_of(issue) == "high"
    assert labels.priority_of(make_issue(2)) == "none"


def test_pickup_requires_ready_without_in_progress() -> None:
    claimed = make_issue(2, labels=[labels.READY, labels.IN_PROGRESS])

    assert labels.is_ready_for_pickup(make_issue(1)) is True
    assert labels.is_ready_for_pickup(claimed) is False
    assert labels.is_ready_for_pickup(make_issue(3, labels=[labels.BLOCKED])) is False


def test_allow_list_accepts_owner_or_approval() -> None:
    outsider = make_issue(1, author="mallory")
    approved = make_issue(2, author="mallory", labels=[labels.READY, labels.APPROVED])

    assert labels.is_allowed(outsider, []) is True
    assert labels.is_allowed(outsider, ["alice"]) is False
    assert labels.is_allowed(approved, ["alice"]) is True
    assert labels.is_allowed(make_issue(3, author="alice"), ["alice"]) is True


def test_latest_comments_split_by_author() -> None:
    issue = make_issue(
        1,
        comments=[
            make_comment(1, "alice", BASE_TIME),
            make_comment(2, "conductor-bot", BASE_TIME + timedelta(minutes=1)),
            make_comment(3, "bob", BASE_TIME + timedelta(minutes=2)),
        ],
    )

    human = labels.latest_human_comment(issue, "conductor-bot")
    own = labels.latest_self_comment(issue, "conductor-bot")

    assert human is not None and human.id == 3
    assert own is not None and own.id == 2
    assert labels.block_reference(issue, "conductor-bot") == own.created_at


def test_block_reference_without_own_comment_is_epoch() -> None:
    issue = make_issue(1, comments=[make_comment(1, "alice", BASE_TIME)])

    assert labels.block_reference(issue, "conductor-bot") == datetime(1970, 1, 1, tzinfo=UTC)
    assert labels.block_reference(issue, "") == datetime(1970, 1, 1, tzinfo=UTC)


def test_recovery_comment_truncates_long_errors() -> None:
    body = render_recovery_comment(
        category="session_error",
        error_name="APIError",
        error_message="x" * 50,
        share_url="https://share.test/ses_1",
        excerpt_chars=10,
    )

    assert body.startswith("## Automated run failed")
    assert "**Category:** session_error" in body
    assert "x" * 10 + "\n... (truncated)" in body
    assert "x" * 11 not in body
    assert "Session transcript: https://share.test/ses_1" in body


def test_truncate_keeps_short_text() -> None:
    assert truncate("short", 10) == "short"
