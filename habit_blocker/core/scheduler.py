#!/usr/bin/env python3
from __future__ import annotations

import datetime as dt
import logging
import threading
from typing import Iterable, Optional, Tuple

from habit_blocker.core.evaluator import Task, as_utc


def next_day_boundary(now: dt.datetime, tz: Optional[dt.tzinfo] = None) -> dt.datetime:
    """The earlier of the next local midnight and the next UTC midnight.

    Completion records are dated in UTC while active-day masks follow the
    user's calendar, so both boundaries start a new evaluation day.
    """
    now = as_utc(now)
    utc_midnight = dt.datetime.combine(now.date() + dt.timedelta(days=1), dt.time(0), tzinfo=dt.timezone.utc)

    local_now = now.astimezone(tz) if tz is not None else now.astimezone()
    local_midnight = dt.datetime.combine(local_now.date() + dt.timedelta(days=1), dt.time(0))
    local_midnight = local_midnight.replace(tzinfo=local_now.tzinfo)

    return min(utc_midnight, local_midnight.astimezone(dt.timezone.utc))


def next_wake_time(tasks: Iterable[Task], now: dt.datetime,
                   tz: Optional[dt.tzinfo] = None) -> Tuple[dt.datetime, str]:
    """Return the next instant an evaluation is due, with a short reason.

    Only tasks active today, unresolved, and whose deadline is still ahead
    need a timer. Already overdue tasks are covered by the current block.
    """
    now = as_utc(now)
    upcoming = []
    for task in tasks:
        if task.deadline is None or not task.is_active_on(now) or task.is_resolved_on(now.date()):
            continue
        at = dt.datetime.combine(now.date(), task.deadline, tzinfo=dt.timezone.utc)
        if at > now:
            upcoming.append((at, task))

    if upcoming:
        at, task = min(upcoming, key=lambda item: item[0])
        return at, f"deadline of {task.name or task.id}"
    return next_day_boundary(now, tz), "day boundary"


class DeadlineScheduler:
    """Keeps exactly one one-shot timer armed for the next wake time"""

    def __init__(self, callback, tz=None, clock=None):
        self.callback = callback
        self.tz = tz
        self.clock = clock or (lambda: dt.datetime.now(dt.timezone.utc))
        self._lock = threading.Lock()
        self._timer = None
        self.next_wake = None

    def reschedule(self, tasks, now=None):
        now = as_utc(now or self.clock())
        wake_at, reason = next_wake_time(tasks, now, self.tz)
        delay = max(0.0, (wake_at - now).total_seconds())

        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(delay, self._fire)
            timer.daemon = True
            self._timer = timer
            self.next_wake = wake_at
            timer.start()

        logging.info(f"Next evaluation at {wake_at.isoformat()} ({reason}, in {delay:.0f}s)")
        return wake_at

    def _fire(self):
        with self._lock:
            self._timer = None
        logging.debug("Deadline timer fired")
        self.callback("timer")

    def cancel(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self.next_wake = None


class PollTicker:
    """Fallback poll that fires every `interval` seconds on its own thread"""

    def __init__(self, interval, callback):
        self.interval = interval
        self.callback = callback
        self._stopped = threading.Event()
        self._wakeup = threading.Event()
        self._thread = None

    def start(self):
        self._thread = threading.Thread(target=self._run, name="poll-ticker", daemon=True)
        self._thread.start()

    def _run(self):
        while not self._stopped.is_set():
            if self._wakeup.wait(self.interval):
                # Interval restarted or ticker stopped
                self._wakeup.clear()
                continue
            if self._stopped.is_set():
                break
            self.callback("poll")

    def reset(self):
        """Restart the interval from now"""
        self._wakeup.set()

    def stop(self):
        self._stopped.set()
        self._wakeup.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
