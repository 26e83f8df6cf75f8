#!/usr/bin/env python3
from __future__ import annotations

import datetime as dt
import enum
import logging
import os
import re
import shutil
import tempfile
from typing import Iterable, List, Optional, Tuple

from habit_blocker.utils.domains import expand_www_variants
from habit_blocker.utils.errors import CorruptResourceError

MARKER_START = "# HABIT-TRACKER-START"
MARKER_END = "# HABIT-TRACKER-END"
LOOPBACK = "127.0.0.1"

_ENTRY_RE = re.compile(rf"^{re.escape(LOOPBACK)}\s+(\S+)\s*$")


class BlockStatus(enum.Enum):
    ABSENT = "absent"
    PRESENT = "present"
    CORRUPT = "corrupt"


def _is_marker(line: str, marker: str) -> bool:
    return line.strip() == marker


def locate_block(lines: List[str]) -> Tuple[BlockStatus, Optional[int], Optional[int]]:
    """Find the managed block in the given lines.

    Returns the status plus start/end line indexes when the block is
    well formed. Anything other than exactly one start marker followed by
    exactly one end marker is CORRUPT.
    """
    starts = [i for i, line in enumerate(lines) if _is_marker(line, MARKER_START)]
    ends = [i for i, line in enumerate(lines) if _is_marker(line, MARKER_END)]
    if not starts and not ends:
        return BlockStatus.ABSENT, None, None
    if len(starts) == 1 and len(ends) == 1 and starts[0] < ends[0]:
        return BlockStatus.PRESENT, starts[0], ends[0]
    return BlockStatus.CORRUPT, None, None


def parse_managed_block(text: str) -> List[str]:
    """Return host names listed inside the markers.

    Raises CorruptResourceError on malformed markers.
    """
    lines = text.splitlines()
    status, start, end = locate_block(lines)
    if status is BlockStatus.ABSENT:
        return []
    if status is BlockStatus.CORRUPT:
        raise CorruptResourceError("Malformed habit tracker markers in hosts file")

    hosts = []
    for line in lines[start + 1:end]:
        stripped = line.strip()
        if not stripped or stripped.startswith('#'):
            continue
        parts = stripped.split()
        if len(parts) >= 2:
            hosts.extend(parts[1:])
    return hosts


def strip_managed_block(text: str) -> str:
    """Remove every managed line from the text, tolerating malformed markers.

    Lines between a start marker and its end marker are dropped. A start
    marker with no end only takes the loopback entries that follow it, so
    unrelated content after an interrupted block survives. A block closing
    the file without a final newline also takes back the newline that was
    put in front of it.
    """
    kept: List[str] = []
    pending: List[str] = []
    in_block = False
    for line in text.splitlines(keepends=True):
        if _is_marker(line, MARKER_START):
            if in_block:
                kept.extend(l for l in pending if not _ENTRY_RE.match(l.strip()))
            pending = []
            in_block = True
            continue
        if _is_marker(line, MARKER_END):
            if not line.endswith("\n") and kept and kept[-1].endswith("\n"):
                kept[-1] = kept[-1][:-1]
            pending = []
            in_block = False
            continue
        if in_block:
            pending.append(line)
        else:
            kept.append(line)
    if in_block:
        kept.extend(l for l in pending if not _ENTRY_RE.match(l.strip()))
    return "".join(kept)


def render_block(domains: Iterable[str]) -> str:
    lines = [MARKER_START]
    for host in expand_www_variants(domains):
        lines.append(f"{LOOPBACK} {host}")
    lines.append(MARKER_END)
    return "\n".join(lines) + "\n"


def _append_block(base: str, domains: List[str]) -> str:
    if not domains:
        return base
    block = render_block(domains)
    if base and not base.endswith("\n"):
        # Last line stays unterminated, the separator belongs to the block
        return base + "\n" + block[:-1]
    return base + block


def splice_block(text: str, domains: Iterable[str]) -> str:
    """Replace (or append) the managed block, leaving other lines untouched"""
    domains = list(domains)
    lines = text.splitlines(keepends=True)
    status, start, end = locate_block(lines)

    if status is BlockStatus.PRESENT:
        before = "".join(lines[:start])
        if lines[end].endswith("\n"):
            after = "".join(lines[end + 1:])
            block = render_block(domains) if domains else ""
            return before + block + after
        if before.endswith("\n"):
            before = before[:-1]
        return _append_block(before, domains)

    base = strip_managed_block(text) if status is BlockStatus.CORRUPT else text
    return _append_block(base, domains)


class HostsFileHandler:
    def __init__(self, hosts_path="/etc/hosts", backup_dir=None):
        self.hosts_path = hosts_path
        self.backup_dir = backup_dir or os.path.join(os.path.expanduser("~"), ".habit-tracker", "backups")
        self._backup_path = None
        self._backup_day = None

    def _read(self) -> str:
        with open(self.hosts_path, 'r', encoding='utf-8') as f:
            return f.read()

    def inspect(self) -> BlockStatus:
        try:
            content = self._read()
        except FileNotFoundError:
            return BlockStatus.ABSENT
        status, _, _ = locate_block(content.splitlines())
        return status

    def read_managed_block(self) -> List[str]:
        """Read the host names currently blocked; [] when there is no block"""
        try:
            content = self._read()
        except FileNotFoundError:
            logging.warning(f"Hosts file {self.hosts_path} not found")
            return []
        try:
            return parse_managed_block(content)
        except CorruptResourceError as e:
            logging.warning(f"{e}, treating managed block as absent")
            return []

    def _atomic_write(self, content: str) -> None:
        """Write to a temp file next to the hosts file and rename it over the target"""
        directory = os.path.dirname(os.path.abspath(self.hosts_path))
        try:
            mode = os.stat(self.hosts_path).st_mode & 0o777
        except FileNotFoundError:
            mode = 0o644

        tmp = None
        try:
            with tempfile.NamedTemporaryFile('w', encoding='utf-8', dir=directory,
                                             prefix='.hosts.', suffix='.tmp', delete=False) as tf:
                tmp = tf.name
                tf.write(content)
                tf.flush()
                os.fsync(tf.fileno())
            os.chmod(tmp, mode)
            os.replace(tmp, self.hosts_path)
            tmp = None
        finally:
            if tmp and os.path.exists(tmp):
                os.remove(tmp)

    def write(self, domains) -> bool:
        """Replace the managed block with entries for the given domains.

        An empty set removes the block. Returns True when the file changed.
        PermissionError and other OSErrors propagate.
        """
        domains = sorted(set(domains))
        content = self._read()

        status, _, _ = locate_block(content.splitlines())
        if status is BlockStatus.CORRUPT:
            logging.warning("Hosts file has malformed habit tracker markers, rewriting block cleanly")

        new_content = splice_block(content, domains)
        if new_content == content:
            logging.info("Hosts file already up to date")
            return False

        self._atomic_write(new_content)
        if domains:
            logging.info(f"Blocked {len(domains)} domains in hosts file: {', '.join(domains)}")
        else:
            logging.info("Removed habit tracker block from hosts file")
        return True

    def backup(self) -> str:
        """Copy the hosts file to the backup directory once per session and day"""
        today = dt.datetime.now(dt.timezone.utc).date()
        if self._backup_path and self._backup_day == today and os.path.exists(self._backup_path):
            return self._backup_path

        os.makedirs(self.backup_dir, exist_ok=True)
        stamp = dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        backup_path = os.path.join(self.backup_dir, f"hosts_{stamp}.bak")
        shutil.copy2(self.hosts_path, backup_path)
        # Backups are never rewritten
        os.chmod(backup_path, 0o444)

        self._backup_path = backup_path
        self._backup_day = today
        logging.info(f"Backup created: {backup_path}")
        return backup_path

    def latest_backup(self) -> Optional[str]:
        try:
            names = [n for n in os.listdir(self.backup_dir) if n.startswith("hosts_") and n.endswith(".bak")]
        except FileNotFoundError:
            return None
        if not names:
            return None
        # Timestamped names sort chronologically
        return os.path.join(self.backup_dir, max(names))

    def restore(self) -> None:
        """Strip the managed block unconditionally.

        If the hosts file is gone, it is rebuilt from the latest backup.
        """
        if not os.path.exists(self.hosts_path):
            latest = self.latest_backup()
            if latest is None:
                logging.error("Hosts file missing and no backup available, cannot restore")
                raise FileNotFoundError(self.hosts_path)
            with open(latest, 'r', encoding='utf-8') as f:
                content = f.read()
            self._atomic_write(strip_managed_block(content))
            logging.info(f"Hosts file restored from backup: {latest}")
            return

        self.backup()
        content = self._read()
        new_content = strip_managed_block(content)
        if new_content != content:
            self._atomic_write(new_content)
            logging.info("Removed all habit tracker entries from hosts file")
        else:
            logging.info("No habit tracker entries found in hosts file")
