import datetime as dt
from unittest.mock import MagicMock

import pytest
import requests

from habit_blocker.network.task_client import TaskSourceClient, parse_deadline
from habit_blocker.utils.errors import TransientFetchError

NOW = dt.datetime(2024, 1, 15, 13, 1, tzinfo=dt.timezone.utc)


def response(data, success=True, status=200):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = {"success": success, "data": data}
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return resp


def make_client(routes):
    session = MagicMock()

    def get(url, timeout):
        assert timeout == 2.0
        path = url.replace("http://api.test", "")
        result = routes[path]
        if isinstance(result, Exception):
            raise result
        return result

    session.get.side_effect = get
    return TaskSourceClient("http://api.test/", timeout=2.0, session=session), session


HABITS = [
    {"id": "h1", "name": "Exercise", "deadlineUtc": "13:00", "activeDays": None, "isActive": True},
    {"id": "h2", "name": "Journal", "deadlineUtc": None, "isActive": True},
    {"id": "h3", "name": "Old", "deadlineUtc": "09:00", "isActive": False},
    {"id": "h4", "name": "Read", "deadlineUtc": "20:30", "activeDays": [1, 3, 5], "isActive": True},
]


def default_routes():
    return {
        "/api/habits": response(HABITS),
        "/api/habits/h1/logs": response([
            {"date": "2024-01-14", "status": "completed"},
            {"date": "2024-01-15", "status": "missed"},
            {"date": "2024-01-15", "status": "completed"},
        ]),
        "/api/habits/h4/logs": response([]),
        "/api/settings": response({"blockedWebsites": ["reddit.com", "youtube.com"]}),
    }


def test_fetch_snapshot_parses_tasks_and_domains():
    client, session = make_client(default_routes())
    snapshot = client.fetch_snapshot(NOW)

    assert [t.id for t in snapshot.tasks] == ["h1", "h2", "h4"]
    exercise, journal, read = snapshot.tasks
    assert exercise.deadline == dt.time(13, 0)
    assert exercise.statuses == {dt.date(2024, 1, 15): "completed"}
    assert journal.deadline is None
    assert journal.statuses == {}
    assert read.active_days == frozenset({1, 3, 5})
    assert snapshot.blocked_domains == ["reddit.com", "youtube.com"]
    assert snapshot.fetched_at == NOW

    fetched = [call.args[0] for call in session.get.call_args_list]
    # inactive habits and habits without a deadline need no logs
    assert "http://api.test/api/habits/h2/logs" not in fetched
    assert "http://api.test/api/habits/h3/logs" not in fetched


@pytest.mark.parametrize("failure", [
    requests.Timeout("slow"),
    requests.ConnectionError("refused"),
])
def test_network_failures_are_transient(failure):
    routes = default_routes()
    routes["/api/habits"] = failure
    client, _ = make_client(routes)
    with pytest.raises(TransientFetchError):
        client.fetch_snapshot(NOW)


def test_http_error_is_transient():
    routes = default_routes()
    routes["/api/settings"] = response(None, status=500)
    client, _ = make_client(routes)
    with pytest.raises(TransientFetchError):
        client.fetch_snapshot(NOW)


def test_unsuccessful_envelope_is_transient():
    routes = default_routes()
    routes["/api/habits"] = response(None, success=False)
    client, _ = make_client(routes)
    with pytest.raises(TransientFetchError):
        client.fetch_snapshot(NOW)


def test_invalid_json_is_transient():
    routes = default_routes()
    bad = MagicMock()
    bad.json.side_effect = ValueError("no json")
    routes["/api/habits"] = bad
    client, _ = make_client(routes)
    with pytest.raises(TransientFetchError):
        client.fetch_snapshot(NOW)


def test_malformed_habit_fields_are_transient():
    routes = default_routes()
    routes["/api/habits"] = response([{"id": "h1", "deadlineUtc": "25:99"}])
    routes["/api/habits/h1/logs"] = response([])
    client, _ = make_client(routes)
    with pytest.raises(TransientFetchError):
        client.fetch_snapshot(NOW)


def test_settings_without_list_is_transient():
    routes = default_routes()
    routes["/api/settings"] = response({"blockedWebsites": "reddit.com"})
    client, _ = make_client(routes)
    with pytest.raises(TransientFetchError):
        client.fetch_snapshot(NOW)


def test_parse_deadline():
    assert parse_deadline("07:05") == dt.time(7, 5)
    assert parse_deadline(None) is None
    assert parse_deadline("  ") is None
    with pytest.raises(TransientFetchError):
        parse_deadline("noon")
