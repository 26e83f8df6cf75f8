#!/usr/bin/env python3
"""
Decide which domains should be blocked right now.

Everything here is a pure function of the current UTC time, the task
snapshot and the configured block list, so it can be tested without a
hosts file or a running task source.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
from typing import FrozenSet, Iterable, Mapping, Optional, Sequence

from habit_blocker.utils.domains import expand_www_variants, normalize_domains

RESOLVED_STATUSES = frozenset({"completed", "skipped"})


def utc_weekday(moment: dt.datetime) -> int:
    """Weekday with 0=Sunday ... 6=Saturday, matching the habit API's activeDays"""
    return (moment.weekday() + 1) % 7


@dataclasses.dataclass(frozen=True)
class Task:
    id: str
    name: str = ""
    deadline: Optional[dt.time] = None
    active_days: Optional[FrozenSet[int]] = None
    statuses: Mapping[dt.date, str] = dataclasses.field(default_factory=dict)

    def is_active_on(self, moment):
        if self.active_days is None:
            return True
        return utc_weekday(moment) in self.active_days

    def is_resolved_on(self, day):
        # Lookup is by date only: completing late still counts for the day
        return self.statuses.get(day) in RESOLVED_STATUSES

    def is_overdue(self, now):
        if self.deadline is None:
            return False
        if not self.is_active_on(now):
            return False
        if self.is_resolved_on(now.date()):
            return False
        return self.deadline <= now.time().replace(tzinfo=None)


@dataclasses.dataclass(frozen=True)
class BlockingState:
    blocked_domains: FrozenSet[str] = frozenset()
    active_task_ids: FrozenSet[str] = frozenset()
    last_evaluated: Optional[dt.datetime] = None

    @classmethod
    def empty(cls, at=None):
        return cls(frozenset(), frozenset(), at)

    @property
    def is_blocking(self):
        return bool(self.blocked_domains)

    def to_dict(self):
        return {
            "blockedDomains": sorted(self.blocked_domains),
            "activeHabits": sorted(self.active_task_ids),
            "lastCheck": self.last_evaluated.isoformat() if self.last_evaluated else None,
        }


@dataclasses.dataclass(frozen=True)
class BlockingDiff:
    to_block: FrozenSet[str] = frozenset()
    to_unblock: FrozenSet[str] = frozenset()

    @property
    def needs_write(self):
        return bool(self.to_block or self.to_unblock)


def as_utc(now: dt.datetime) -> dt.datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=dt.timezone.utc)
    return now.astimezone(dt.timezone.utc)


def overdue_tasks(now: dt.datetime, tasks: Iterable[Task]) -> Sequence[Task]:
    now = as_utc(now)
    return [task for task in tasks if task.is_overdue(now)]


def evaluate(now: dt.datetime, tasks: Iterable[Task], configured_domains: Iterable[str]) -> BlockingState:
    """Compute the desired blocking state.

    Blocking is all-or-nothing: the whole configured list is blocked as
    soon as one task is overdue, and nothing is blocked otherwise.
    """
    now = as_utc(now)
    overdue_ids = frozenset(task.id for task in overdue_tasks(now, tasks))
    if not overdue_ids:
        return BlockingState.empty(now)
    return BlockingState(
        blocked_domains=frozenset(normalize_domains(configured_domains)),
        active_task_ids=overdue_ids,
        last_evaluated=now,
    )


def compute_diff(desired: BlockingState, current_hosts: Iterable[str]) -> BlockingDiff:
    """Compare desired domains (with www. variants) against the hosts in the managed block"""
    wanted = frozenset(expand_www_variants(desired.blocked_domains))
    present = frozenset(current_hosts)
    return BlockingDiff(to_block=wanted - present, to_unblock=present - wanted)
