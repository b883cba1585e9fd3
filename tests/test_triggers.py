from __future__ import annotations

from datetime import datetime

from matrixci import triggers
from matrixci.cron import CronExpression
from matrixci.model import (
    PullRequestEvent,
    PullRequestTrigger,
    PushEvent,
    PushTrigger,
    ScheduledEvent,
    ScheduleTick,
    ScheduleTrigger,
)

DECLARED = (
    PullRequestTrigger(),
    PushTrigger(branches=("master",)),
    ScheduleTrigger(cron=CronExpression.parse("00 01 * * *")),
)


def test_push_matches_declared_branch_only() -> None:
    assert triggers.matches(PushEvent(branch="master"), DECLARED)
    assert not triggers.matches(PushEvent(branch="feature/x"), DECLARED)
    assert not triggers.matches(PushEvent(branch="master-old"), DECLARED)


def test_push_branch_patterns() -> None:
    declared = (PushTrigger(branches=("release/*",)),)
    assert triggers.matches(PushEvent(branch="release/1.0"), declared)
    assert not triggers.matches(PushEvent(branch="main"), declared)


def test_pull_request_matches_any_branch_when_unfiltered() -> None:
    assert triggers.matches(PullRequestEvent(branch="anything", number=7), DECLARED)


def test_pull_request_branch_filter() -> None:
    declared = (PullRequestTrigger(branches=("main",)),)
    assert triggers.matches(PullRequestEvent(branch="main"), declared)
    assert not triggers.matches(PullRequestEvent(branch="dev"), declared)


def test_pull_request_without_pr_trigger_is_skipped() -> None:
    declared = (PushTrigger(branches=("master",)),)
    assert not triggers.matches(PullRequestEvent(branch="master"), declared)


def test_schedule_event_matches_only_at_due_time() -> None:
    assert triggers.matches(ScheduledEvent(due=datetime(2026, 10, 19, 1, 0), cron="00 01 * * *"), DECLARED)
    assert not triggers.matches(ScheduledEvent(due=datetime(2026, 10, 19, 1, 5), cron="00 01 * * *"), DECLARED)


def test_tick_matches_when_window_contains_due_time() -> None:
    hit = ScheduleTick(since=datetime(2026, 10, 19, 0, 30), until=datetime(2026, 10, 19, 1, 30))
    miss = ScheduleTick(since=datetime(2026, 10, 19, 1, 30), until=datetime(2026, 10, 19, 2, 30))
    assert triggers.matches(hit, DECLARED)
    assert not triggers.matches(miss, DECLARED)


def test_due_runs_are_not_coalesced() -> None:
    declared = (ScheduleTrigger(cron=CronExpression.parse("*/30 * * * *")),)
    tick = ScheduleTick(since=datetime(2026, 10, 19, 0, 0), until=datetime(2026, 10, 19, 1, 0))
    due = triggers.due_runs(tick, declared)
    assert [e.due for e in due] == [datetime(2026, 10, 19, 0, 30), datetime(2026, 10, 19, 1, 0)]


def test_due_runs_one_per_trigger_per_due_time() -> None:
    declared = (
        ScheduleTrigger(cron=CronExpression.parse("0 1 * * *")),
        ScheduleTrigger(cron=CronExpression.parse("0 * * * *")),
    )
    tick = ScheduleTick(since=datetime(2026, 10, 19, 0, 30), until=datetime(2026, 10, 19, 1, 30))
    due = triggers.due_runs(tick, declared)
    assert len(due) == 2
    assert {e.cron for e in due} == {"0 1 * * *", "0 * * * *"}


def test_next_due() -> None:
    trigger = DECLARED[2]
    assert triggers.next_due(trigger, datetime(2026, 10, 19, 1, 0)) == datetime(2026, 10, 20, 1, 0)
