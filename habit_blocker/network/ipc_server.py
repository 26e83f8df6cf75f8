#!/usr/bin/env python3
from __future__ import annotations

import contextlib
import logging
import os
import socket
import socketserver
import stat
import threading
import time
from typing import Callable, Dict, Optional

from habit_blocker.utils.errors import IPCProtocolError, StartupError

MAX_COMMAND_BYTES = 1024
ERROR_UNKNOWN = "error: unknown command"


def parse_command(raw: bytes) -> str:
    """Decode one command line. Raises IPCProtocolError for anything malformed."""
    if not raw:
        raise IPCProtocolError("empty command")
    if len(raw) > MAX_COMMAND_BYTES:
        raise IPCProtocolError("command too long")
    try:
        command = raw.decode("utf-8").strip()
    except UnicodeDecodeError as e:
        raise IPCProtocolError("command is not valid UTF-8") from e
    if not command or any(ch.isspace() for ch in command):
        raise IPCProtocolError(f"malformed command {command!r}")
    return command


class _CommandHandler(socketserver.StreamRequestHandler):
    """One connection, one command line, one reply line"""

    def setup(self):
        # Applies to both read and write so a stuck client cannot hang the listener
        self.timeout = self.server.ipc_timeout
        super().setup()

    def handle(self):
        try:
            raw = self.rfile.readline(MAX_COMMAND_BYTES + 1)
        except socket.timeout:
            logging.warning("IPC client timed out before sending a command")
            return

        try:
            command = parse_command(raw)
            handler = self.server.commands.get(command)
            if handler is None:
                raise IPCProtocolError(f"unknown command {command!r}")
        except IPCProtocolError as e:
            logging.warning(f"Rejected IPC command: {e}")
            reply = ERROR_UNKNOWN
        else:
            logging.info(f"Received {command} via socket")
            try:
                reply = handler()
            except Exception as e:
                logging.error(f"IPC command {command} failed: {e}", exc_info=True)
                reply = f"error: {command} failed"

        try:
            self.wfile.write((reply + "\n").encode("utf-8"))
        except (socket.timeout, OSError) as e:
            logging.warning(f"Failed to send IPC reply: {e}")


class _UnixServer(socketserver.UnixStreamServer):
    def __init__(self, path, commands, ipc_timeout):
        self.commands = commands
        self.ipc_timeout = ipc_timeout
        super().__init__(path, _CommandHandler)


class IPCServer:
    """Unix socket listener mapping command names to callables returning a reply token"""

    def __init__(self, socket_path: str, commands: Dict[str, Callable[[], str]],
                 timeout: float = 5.0, bind_retries: int = 3, retry_delay: float = 0.5):
        self.socket_path = socket_path
        self.commands = dict(commands)
        self.timeout = timeout
        self.bind_retries = bind_retries
        self.retry_delay = retry_delay
        self._server: Optional[_UnixServer] = None
        self._thread: Optional[threading.Thread] = None

    def _remove_stale_socket(self):
        try:
            mode = os.lstat(self.socket_path).st_mode
        except FileNotFoundError:
            return
        if not stat.S_ISSOCK(mode):
            raise StartupError(f"{self.socket_path} exists and is not a socket")
        os.remove(self.socket_path)
        logging.info(f"Removed stale socket {self.socket_path}")

    def bind(self):
        """Create the listening socket, retrying a few times before giving up"""
        last_error = None
        for attempt in range(1, self.bind_retries + 1):
            try:
                self._remove_stale_socket()
                self._server = _UnixServer(self.socket_path, self.commands, self.timeout)
                os.chmod(self.socket_path, 0o660)
                logging.info(f"Socket server listening on {self.socket_path}")
                return
            except StartupError:
                raise
            except OSError as e:
                last_error = e
                logging.warning(f"Failed to bind {self.socket_path} (attempt {attempt}/{self.bind_retries}): {e}")
                time.sleep(self.retry_delay)
        raise StartupError(f"Cannot bind IPC socket {self.socket_path}: {last_error}")

    def start(self):
        if self._server is None:
            self.bind()
        self._thread = threading.Thread(target=self._server.serve_forever, name="ipc-server", daemon=True)
        self._thread.start()

    def stop(self):
        if self._server is None:
            return
        if self._thread is not None:
            self._server.shutdown()
            self._thread.join(timeout=5)
            self._thread = None
        self._server.server_close()
        self._server = None
        with contextlib.suppress(FileNotFoundError):
            os.remove(self.socket_path)
        logging.info("Socket server stopped")
