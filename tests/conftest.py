import datetime as dt
import shutil
import tempfile

import pytest

from habit_blocker.core.evaluator import Task

HOSTS_CONTENT = (
    "##\n"
    "# Host Database\n"
    "##\n"
    "127.0.0.1\tlocalhost\n"
    "255.255.255.255\tbroadcasthost\n"
    "::1             localhost\n"
)


def utc(hour, minute=0, day=15):
    # 2024-01-15 is a Monday
    return dt.datetime(2024, 1, day, hour, minute, tzinfo=dt.timezone.utc)


def make_task(task_id="exercise", deadline="13:00", active_days=None, status=None, day=None, name=None):
    hours, minutes = deadline.split(":") if deadline else (None, None)
    statuses = {}
    if status:
        statuses[day or utc(0).date()] = status
    return Task(
        id=task_id,
        name=name or task_id.title(),
        deadline=dt.time(int(hours), int(minutes)) if deadline else None,
        active_days=frozenset(active_days) if active_days is not None else None,
        statuses=statuses,
    )


@pytest.fixture
def hosts_file(tmp_path):
    path = tmp_path / "hosts"
    path.write_text(HOSTS_CONTENT)
    return path


@pytest.fixture
def backup_dir(tmp_path):
    return tmp_path / "backups"


@pytest.fixture
def short_tmp():
    # Unix socket paths must stay short
    path = tempfile.mkdtemp(prefix="hb-", dir="/tmp")
    yield path
    shutil.rmtree(path, ignore_errors=True)
