# triggers.py
from __future__ import annotations

from datetime import datetime, timedelta
from fnmatch import fnmatchcase
from typing import Iterable, List

from .model import (
    Event,
    PullRequestEvent,
    PullRequestTrigger,
    PushEvent,
    PushTrigger,
    ScheduledEvent,
    ScheduleTick,
    ScheduleTrigger,
    Trigger,
)


def _branch_matches(branch: str, patterns: Iterable[str]) -> bool:
    return any(fnmatchcase(branch, p) for p in patterns)


def trigger_matches(event: Event, trigger: Trigger) -> bool:
    if isinstance(event, PushEvent):
        return isinstance(trigger, PushTrigger) and _branch_matches(event.branch, trigger.branches)

    if isinstance(event, PullRequestEvent):
        if not isinstance(trigger, PullRequestTrigger):
            return False
        return not trigger.branches or _branch_matches(event.branch, trigger.branches)

    if isinstance(event, ScheduledEvent):
        return (
            isinstance(trigger, ScheduleTrigger)
            and trigger.cron.text == event.cron
            and trigger.cron.matches(event.due)
        )

    if isinstance(event, ScheduleTick):
        return isinstance(trigger, ScheduleTrigger) and bool(
            trigger.cron.due_times(event.since, event.until)
        )

    return False


def matches(event: Event, triggers: Iterable[Trigger]) -> bool:
    """
    True iff `event` matches at least one declared trigger.

    A mismatch is a normal skip, not an error.
    """
    return any(trigger_matches(event, t) for t in triggers)


def due_runs(tick: ScheduleTick, triggers: Iterable[Trigger]) -> List[ScheduledEvent]:
    """
    One ScheduledEvent per due time of every schedule trigger in the tick window.

    Due times are never coalesced: two due times inside one tick yield two runs.
    """
    events: List[ScheduledEvent] = []
    for t in triggers:
        if not isinstance(t, ScheduleTrigger):
            continue
        for due in t.cron.iter_due(tick.since, tick.until):
            events.append(ScheduledEvent(due=due, cron=t.cron.text))
    events.sort(key=lambda e: (e.due, e.cron))
    return events


def describe(trigger: Trigger) -> str:
    if isinstance(trigger, PushTrigger):
        return f"push ({', '.join(trigger.branches)})"
    if isinstance(trigger, PullRequestTrigger):
        if trigger.branches:
            return f"pull_request ({', '.join(trigger.branches)})"
        return "pull_request"
    return f"schedule ({trigger.cron.text})"


def next_due(trigger: ScheduleTrigger, after: datetime, horizon_days: int = 366) -> datetime | None:
    """First due time strictly after `after`, searching up to `horizon_days` ahead."""
    return next(iter(trigger.cron.iter_due(after, after + timedelta(days=horizon_days))), None)
