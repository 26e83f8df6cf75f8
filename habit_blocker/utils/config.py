#!/usr/bin/env python3
from __future__ import annotations

import dataclasses
import json
import logging
import os
from typing import Any, Dict, Mapping, Optional

from habit_blocker.utils.errors import StartupError

DEFAULT_DATA_DIR = os.path.join(os.path.expanduser("~"), ".habit-tracker")
ENV_PREFIX = "HABIT_BLOCKER_"


@dataclasses.dataclass
class DaemonConfig:
    hosts_path: str = "/etc/hosts"
    data_dir: str = DEFAULT_DATA_DIR
    backup_dir: Optional[str] = None
    log_dir: Optional[str] = None
    socket_path: Optional[str] = None
    pid_file: Optional[str] = None
    api_url: str = "http://localhost:3000"
    api_timeout: float = 5.0
    poll_interval: float = 60.0
    ipc_timeout: float = 5.0
    log_level: str = "INFO"

    def __post_init__(self):
        # Paths left unset live under the data directory
        if not self.backup_dir:
            self.backup_dir = os.path.join(self.data_dir, "backups")
        if not self.log_dir:
            self.log_dir = os.path.join(self.data_dir, "logs")
        if not self.socket_path:
            self.socket_path = os.path.join(self.data_dir, "daemon.sock")
        if not self.pid_file:
            self.pid_file = os.path.join(self.data_dir, "daemon.pid")
        self.api_url = self.api_url.rstrip("/")
        self.api_timeout = float(self.api_timeout)
        self.poll_interval = float(self.poll_interval)
        self.ipc_timeout = float(self.ipc_timeout)
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        self.log_level = str(self.log_level).upper()

    @property
    def log_file(self) -> str:
        return os.path.join(self.log_dir, "daemon.log")

    def required_directories(self):
        return [self.data_dir, self.backup_dir, self.log_dir, os.path.dirname(self.socket_path)]


def _field_names():
    return {f.name for f in dataclasses.fields(DaemonConfig)}


def load_config_file(path: str) -> Dict[str, Any]:
    """Load config from a JSON file. A missing or unreadable file is a startup error."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise StartupError(f"Failed to read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise StartupError(f"Config file {path} must contain a JSON object")

    known = _field_names()
    values = {}
    for key, value in data.items():
        if key not in known:
            logging.warning(f"Ignoring unknown config key: {key}")
            continue
        values[key] = value
    return values


def config_from_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    values = {}
    for name in _field_names():
        env_name = ENV_PREFIX + name.upper()
        if environ.get(env_name):
            values[name] = environ[env_name]
    return values


def load_config(path: Optional[str] = None, overrides: Optional[Mapping[str, Any]] = None,
                environ: Optional[Mapping[str, str]] = None) -> DaemonConfig:
    """Build the daemon config: CLI overrides > environment > config file > defaults"""
    values: Dict[str, Any] = {}
    if path:
        values.update(load_config_file(path))
    values.update(config_from_env(os.environ if environ is None else environ))
    if overrides:
        values.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return DaemonConfig(**values)
    except (TypeError, ValueError) as e:
        raise StartupError(f"Invalid configuration: {e}") from e
