#!/usr/bin/env python3
"""Client side of the daemon socket, used by the CLI and by the habit API process."""

from __future__ import annotations

import json
import logging
import socket
from typing import Optional

TIMEOUT = 1.0


def send_command(socket_path: str, command: str, timeout: Optional[float] = TIMEOUT) -> Optional[str]:
    """Send one command and return the reply line, or None if the daemon is unavailable"""
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            sock.connect(socket_path)
            sock.sendall((command + "\n").encode("utf-8"))
            chunks = []
            while True:
                chunk = sock.recv(4096)
                if not chunk:
                    break
                chunks.append(chunk)
                if chunk.endswith(b"\n"):
                    break
    except (OSError, socket.timeout) as e:
        logging.debug(f"Daemon socket {socket_path} unavailable: {e}")
        return None
    return b"".join(chunks).decode("utf-8", errors="replace").strip()


def ping(socket_path: str, timeout: float = TIMEOUT) -> bool:
    return send_command(socket_path, "ping", timeout) == "pong"


def notify(socket_path: str, timeout: float = TIMEOUT) -> bool:
    """Ask the daemon to re-evaluate now; call after completing, skipping or editing a habit"""
    return send_command(socket_path, "refresh", timeout) == "ok"


def reset(socket_path: str, timeout: float = TIMEOUT) -> bool:
    """Emergency reset: strip every managed entry from the hosts file"""
    return send_command(socket_path, "reset", timeout) == "ok"


def status(socket_path: str, timeout: float = TIMEOUT) -> Optional[dict]:
    reply = send_command(socket_path, "status", timeout)
    if reply is None or reply.startswith("error:"):
        return None
    try:
        return json.loads(reply)
    except ValueError:
        return None
