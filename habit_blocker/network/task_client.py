#!/usr/bin/env python3
"""
Read-only client for the habit API.

The daemon never writes habit data. A snapshot is fetched at the start of
every evaluation cycle and thrown away afterwards. Any failure (timeout,
refused connection, bad status, unusable JSON) is a TransientFetchError:
the caller keeps its previous blocking state and tries again on the next
trigger, so the session is mounted without automatic retries.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
from typing import Any, Dict, List, Optional, Sequence

import requests
from requests.adapters import HTTPAdapter

from habit_blocker.core.evaluator import Task
from habit_blocker.utils.errors import TransientFetchError


@dataclasses.dataclass(frozen=True)
class TaskSnapshot:
    tasks: Sequence[Task]
    blocked_domains: Sequence[str]
    fetched_at: dt.datetime


def create_session() -> requests.Session:
    """Create a requests.Session with a small connection pool and no retries."""
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=1, pool_maxsize=2, max_retries=0)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def parse_deadline(value: Optional[str]) -> Optional[dt.time]:
    """Parse an "HH:MM" UTC deadline; None or blank means no deadline"""
    if value is None or not str(value).strip():
        return None
    try:
        hours, minutes = str(value).strip().split(":")[:2]
        return dt.time(int(hours), int(minutes))
    except ValueError as e:
        raise TransientFetchError(f"Invalid deadline {value!r}") from e


def parse_active_days(value: Any):
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(d, int) and 0 <= d <= 6 for d in value):
        raise TransientFetchError(f"Invalid activeDays {value!r}")
    return frozenset(value)


def task_from_json(habit: Dict[str, Any], logs: Sequence[Dict[str, Any]], today: dt.date) -> Task:
    if "id" not in habit:
        raise TransientFetchError("Habit without id in task source response")
    statuses = {}
    for entry in logs:
        if entry.get("date") == today.isoformat() and entry.get("status"):
            statuses[today] = entry["status"]
            if entry["status"] in ("completed", "skipped"):
                break
    return Task(
        id=str(habit["id"]),
        name=habit.get("name") or "",
        deadline=parse_deadline(habit.get("deadlineUtc")),
        active_days=parse_active_days(habit.get("activeDays")),
        statuses=statuses,
    )


class TaskSourceClient:
    def __init__(self, base_url="http://localhost:3000", timeout=5.0, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or create_session()

    def _get(self, path: str) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.Timeout as e:
            raise TransientFetchError(f"Timed out fetching {url}") from e
        except requests.RequestException as e:
            raise TransientFetchError(f"Failed to fetch {url}: {e}") from e
        except ValueError as e:
            raise TransientFetchError(f"Invalid JSON from {url}") from e

        if not isinstance(payload, dict) or not payload.get("success"):
            error = payload.get("error") if isinstance(payload, dict) else None
            raise TransientFetchError(f"Task source rejected {url}: {error or 'unsuccessful response'}")
        return payload.get("data")

    def fetch_blocked_domains(self) -> List[str]:
        data = self._get("/api/settings") or {}
        websites = data.get("blockedWebsites", []) if isinstance(data, dict) else None
        if not isinstance(websites, list):
            raise TransientFetchError("Settings response has no blockedWebsites list")
        return [w for w in websites if isinstance(w, str)]

    def fetch_tasks(self, today: dt.date) -> List[Task]:
        habits = self._get("/api/habits") or []
        if not isinstance(habits, list):
            raise TransientFetchError("Habits response is not a list")

        tasks = []
        for habit in habits:
            if not isinstance(habit, dict) or habit.get("isActive", True) is False:
                continue
            logs = []
            # Logs only matter for habits that can become overdue
            if habit.get("deadlineUtc"):
                logs = self._get(f"/api/habits/{habit.get('id')}/logs") or []
                if not isinstance(logs, list):
                    raise TransientFetchError(f"Logs response for habit {habit.get('id')} is not a list")
            tasks.append(task_from_json(habit, logs, today))
        return tasks

    def fetch_snapshot(self, now: Optional[dt.datetime] = None) -> TaskSnapshot:
        now = now or dt.datetime.now(dt.timezone.utc)
        today = now.astimezone(dt.timezone.utc).date()
        tasks = self.fetch_tasks(today)
        domains = self.fetch_blocked_domains()
        logging.debug(f"Fetched {len(tasks)} tasks and {len(domains)} blocked websites")
        return TaskSnapshot(tasks=tasks, blocked_domains=domains, fetched_at=now)

    def close(self):
        self.session.close()
