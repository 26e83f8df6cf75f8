import os
import socket

import pytest

from habit_blocker.network import ipc_client
from habit_blocker.network.ipc_server import IPCServer, parse_command
from habit_blocker.utils.errors import IPCProtocolError, StartupError


@pytest.fixture
def socket_path(short_tmp):
    return os.path.join(short_tmp, "daemon.sock")


@pytest.fixture
def server_factory(socket_path):
    servers = []

    def make(commands=None, **kwargs):
        commands = commands or {"ping": lambda: "pong"}
        server = IPCServer(socket_path, commands, timeout=1.0, **kwargs)
        server.start()
        servers.append(server)
        return server

    yield make
    for server in servers:
        server.stop()


def test_ping_pong(server_factory, socket_path):
    server_factory()
    assert ipc_client.ping(socket_path)
    assert ipc_client.send_command(socket_path, "ping") == "pong"


def test_unknown_command_gets_error_token(server_factory, socket_path):
    calls = []
    server_factory({"ping": lambda: "pong", "refresh": lambda: calls.append(1) or "ok"})
    assert ipc_client.send_command(socket_path, "explode") == "error: unknown command"
    assert ipc_client.send_command(socket_path, "refresh now") == "error: unknown command"
    assert calls == []


def test_each_connection_gets_one_reply(server_factory, socket_path):
    server_factory({"refresh": lambda: "ok"})
    for _ in range(3):
        assert ipc_client.notify(socket_path)


def test_handler_exception_becomes_error_token(server_factory, socket_path):
    def broken():
        raise RuntimeError("nope")

    server_factory({"reset": broken})
    assert ipc_client.send_command(socket_path, "reset") == "error: reset failed"
    assert not ipc_client.reset(socket_path)


def test_status_json(server_factory, socket_path):
    server_factory({"status": lambda: '{"phase": "idle", "blockedDomains": []}'})
    assert ipc_client.status(socket_path) == {"phase": "idle", "blockedDomains": []}


def test_silent_client_does_not_hang_listener(server_factory, socket_path):
    server_factory()
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as idle:
        idle.connect(socket_path)
        # the listener times the idle client out and moves on
        assert ipc_client.ping(socket_path, timeout=3)


def test_stale_socket_file_is_replaced(socket_path, server_factory):
    stale = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    stale.bind(socket_path)
    stale.close()
    assert os.path.exists(socket_path)

    server_factory()
    assert ipc_client.ping(socket_path)


def test_socket_permissions_and_cleanup(socket_path):
    server = IPCServer(socket_path, {"ping": lambda: "pong"})
    server.start()
    assert os.stat(socket_path).st_mode & 0o777 == 0o660
    server.stop()
    assert not os.path.exists(socket_path)


def test_regular_file_in_the_way_is_fatal(socket_path):
    with open(socket_path, "w") as f:
        f.write("not a socket")
    server = IPCServer(socket_path, {}, bind_retries=1, retry_delay=0)
    with pytest.raises(StartupError):
        server.bind()


def test_unbindable_path_fails_after_retries(short_tmp):
    path = os.path.join(short_tmp, "missing", "daemon.sock")
    server = IPCServer(path, {}, bind_retries=2, retry_delay=0)
    with pytest.raises(StartupError):
        server.bind()


def test_client_reports_unavailable_daemon(socket_path):
    assert ipc_client.send_command(socket_path, "ping") is None
    assert not ipc_client.ping(socket_path)
    assert ipc_client.status(socket_path) is None


@pytest.mark.parametrize("raw", [b"", b"\n", b"two words\n", b"\xff\xfe\n", b"x" * 2000])
def test_parse_command_rejects_malformed(raw):
    with pytest.raises(IPCProtocolError):
        parse_command(raw)


def test_parse_command_strips_newline():
    assert parse_command(b"refresh\r\n") == "refresh"
