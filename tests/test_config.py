import json
import os

import pytest

from habit_blocker.utils.config import DaemonConfig, load_config
from habit_blocker.utils.errors import StartupError


def test_defaults_derive_paths_from_data_dir(tmp_path):
    config = DaemonConfig(data_dir=str(tmp_path))
    assert config.hosts_path == "/etc/hosts"
    assert config.backup_dir == os.path.join(str(tmp_path), "backups")
    assert config.socket_path == os.path.join(str(tmp_path), "daemon.sock")
    assert config.log_file == os.path.join(str(tmp_path), "logs", "daemon.log")
    assert config.poll_interval == 60.0


def test_precedence_cli_over_env_over_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "api_url": "http://file:1/",
        "poll_interval": 30,
        "api_timeout": 9,
        "nonsense": True,
    }))
    environ = {"HABIT_BLOCKER_POLL_INTERVAL": "45", "HABIT_BLOCKER_API_TIMEOUT": "3"}

    config = load_config(str(path), {"api_timeout": 1.5, "hosts_path": None}, environ=environ)
    assert config.api_url == "http://file:1"
    assert config.poll_interval == 45.0
    assert config.api_timeout == 1.5
    assert config.hosts_path == "/etc/hosts"


def test_unreadable_file_is_startup_error(tmp_path):
    with pytest.raises(StartupError):
        load_config(str(tmp_path / "missing.json"), environ={})
    bad = tmp_path / "bad.json"
    bad.write_text("[1, 2]")
    with pytest.raises(StartupError):
        load_config(str(bad), environ={})


def test_invalid_values_are_startup_errors():
    with pytest.raises(StartupError):
        load_config(overrides={"poll_interval": 0}, environ={})
    with pytest.raises(StartupError):
        load_config(overrides={"api_timeout": "soon"}, environ={})
