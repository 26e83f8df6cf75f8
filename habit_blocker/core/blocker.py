#!/usr/bin/env python3
from __future__ import annotations

import datetime as dt
import enum
import json
import logging
import os
import shutil
import signal
import subprocess
import sys
import threading
from typing import Callable, Optional, Tuple

from habit_blocker.core.evaluator import BlockingState, compute_diff, evaluate
from habit_blocker.core.scheduler import DeadlineScheduler, PollTicker
from habit_blocker.core.triggers import EVALUATE, RESET, TriggerQueue
from habit_blocker.file_handlers.hosts_file import BlockStatus, HostsFileHandler
from habit_blocker.network.ipc_server import IPCServer
from habit_blocker.network.task_client import TaskSourceClient
from habit_blocker.utils.config import DaemonConfig
from habit_blocker.utils.errors import StartupError, TransientFetchError


class DaemonPhase(enum.Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    APPLYING = "applying"
    DEGRADED = "degraded"
    STOPPED = "stopped"


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def flush_dns_cache():
    """Best effort: a failed flush only delays the change"""
    try:
        if sys.platform == "darwin":
            subprocess.run(["dscacheutil", "-flushcache"], check=False,
                           stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
            subprocess.run(["killall", "-HUP", "mDNSResponder"], check=False,
                           stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
            logging.info("Flushed DNS cache (macOS)")
        elif sys.platform.startswith("linux"):
            if shutil.which("resolvectl"):
                subprocess.run(["resolvectl", "flush-caches"], check=False,
                               stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
                logging.info("Flushed DNS cache (Linux)")
        return True
    except OSError as e:
        logging.error(f"Failed to flush DNS cache: {e}")
        return False


class HabitBlocker:
    def __init__(self, config: DaemonConfig, hosts_handler: Optional[HostsFileHandler] = None,
                 task_client: Optional[TaskSourceClient] = None,
                 clock: Callable[[], dt.datetime] = utc_now,
                 dns_flusher: Callable[[], bool] = flush_dns_cache):
        self.config = config
        self.clock = clock
        self.flush_dns = dns_flusher

        self.hosts_handler = hosts_handler or HostsFileHandler(config.hosts_path, config.backup_dir)
        self.task_client = task_client or TaskSourceClient(config.api_url, config.api_timeout)

        self.blocking_state = BlockingState.empty()
        self.phase = DaemonPhase.IDLE
        self.last_error: Optional[str] = None
        # habits, settings and one logs call per habit with a deadline
        self.expected_requests = 3

        self.queue = TriggerQueue({EVALUATE: self._run_evaluation, RESET: self._run_reset})
        self.scheduler = DeadlineScheduler(self.trigger, clock=clock)
        self.poller = PollTicker(config.poll_interval, self.trigger)
        self.ipc_server = IPCServer(
            config.socket_path,
            {
                "ping": lambda: "pong",
                "refresh": self.handle_refresh,
                "reset": self.handle_reset,
                "status": self.handle_status,
            },
            timeout=config.ipc_timeout,
        )
        self._stop = threading.Event()

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------
    def trigger(self, source: str = "manual") -> Optional[int]:
        return self.queue.submit(EVALUATE, source)

    @property
    def refresh_timeout(self) -> float:
        """How long an IPC refresh or reset waits for its run.

        Requests are sequential, so the budget follows the request count of
        the last fetch, plus one for a habit added since.
        """
        return self.config.api_timeout * (self.expected_requests + 1) + self.config.ipc_timeout

    def handle_refresh(self) -> str:
        ticket = self.queue.submit(EVALUATE, "ipc")
        if ticket is None:
            return "error: shutting down"
        ok = self.queue.wait(EVALUATE, ticket, timeout=self.refresh_timeout)
        return "ok" if ok else "error: refresh failed"

    def handle_reset(self) -> str:
        ticket = self.queue.submit(RESET, "ipc")
        if ticket is None:
            return "error: shutting down"
        ok = self.queue.wait(RESET, ticket, timeout=self.refresh_timeout)
        return "ok" if ok else "error: reset failed"

    def handle_status(self) -> str:
        payload = {"phase": self.phase.value, "lastError": self.last_error}
        payload.update(self.blocking_state.to_dict())
        if self.scheduler.next_wake is not None:
            payload["nextWake"] = self.scheduler.next_wake.isoformat()
        return json.dumps(payload, sort_keys=True)

    # ------------------------------------------------------------------
    # Evaluate and apply
    # ------------------------------------------------------------------
    def _degrade(self, message: str):
        self.phase = DaemonPhase.DEGRADED
        self.last_error = message
        logging.error(f"{message}; entering degraded mode")

    def evaluate_and_apply(self, previous: BlockingState) -> Tuple[BlockingState, bool]:
        """One cycle. Returns the new blocking state and whether it succeeded.

        On any failure the previous state is returned unchanged and the
        hosts file is left as it was.
        """
        recovering = self.last_error is not None
        self.phase = DaemonPhase.EVALUATING
        now = self.clock()
        try:
            snapshot = self.task_client.fetch_snapshot(now)
        except TransientFetchError as e:
            self._degrade(f"Failed to fetch task state: {e}")
            return previous, False
        self.expected_requests = 2 + sum(1 for task in snapshot.tasks if task.deadline is not None)

        desired = evaluate(now, snapshot.tasks, snapshot.blocked_domains)
        if desired.active_task_ids:
            logging.info(f"Found {len(desired.active_task_ids)} overdue habits: "
                         f"{', '.join(sorted(desired.active_task_ids))}")

        try:
            status = self.hosts_handler.inspect()
            current = self.hosts_handler.read_managed_block()
            diff = compute_diff(desired, current)

            if diff.needs_write or status is BlockStatus.CORRUPT:
                self.phase = DaemonPhase.APPLYING
                if status is BlockStatus.CORRUPT:
                    logging.warning("Managed block markers are mismatched, another writer may be editing the hosts file")
                self.hosts_handler.backup()
                if self.hosts_handler.write(desired.blocked_domains):
                    self.flush_dns()
            else:
                logging.info("No changes needed to hosts file")
        except PermissionError as e:
            self._degrade(f"Permission denied writing {self.hosts_handler.hosts_path}: {e}")
            return previous, False
        except OSError as e:
            self._degrade(f"Failed to update hosts file: {e}")
            return previous, False

        self.scheduler.reschedule(snapshot.tasks, now)
        self.poller.reset()
        if recovering:
            logging.info("Recovered from degraded mode")
        self.phase = DaemonPhase.IDLE
        self.last_error = None
        return desired, True

    def _run_evaluation(self) -> bool:
        self.blocking_state, ok = self.evaluate_and_apply(self.blocking_state)
        return ok

    def _run_reset(self) -> bool:
        """Emergency path: strip the managed block no matter what we think is blocked"""
        self.phase = DaemonPhase.APPLYING
        try:
            self.hosts_handler.restore()
        except OSError as e:
            self._degrade(f"Failed to reset hosts file: {e}")
            return False
        self.flush_dns()
        self.blocking_state = BlockingState.empty(self.clock())
        self.phase = DaemonPhase.IDLE
        self.last_error = None
        logging.info("Emergency reset completed")
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def ensure_directories(self):
        for directory in self.config.required_directories():
            try:
                os.makedirs(directory, exist_ok=True)
            except OSError as e:
                raise StartupError(f"Failed to create directory {directory}: {e}") from e

    def _signal_handler(self, signum, frame):
        sig_name = signal.Signals(signum).name
        logging.warning(f"Received signal {sig_name} ({signum}), shutting down")
        self._stop.set()

    def start(self):
        """Bring up every component. Raises StartupError before touching the hosts file."""
        self.ensure_directories()
        self.ipc_server.bind()
        self.ipc_server.start()
        self.queue.start()
        self.poller.start()
        self.trigger("startup")

    def stop(self):
        """Stop triggers, let the in-flight cycle finish, close the socket.

        The hosts file is left as is: blocking survives a restart.
        """
        self._stop.set()
        self.ipc_server.stop()
        self.poller.stop()
        self.scheduler.cancel()
        self.queue.close(timeout=self.refresh_timeout)
        self.task_client.close()
        self.phase = DaemonPhase.STOPPED
        logging.info("Daemon stopped")

    def run(self) -> int:
        """Main daemon loop"""
        logging.info("Habit blocker daemon starting")
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        try:
            self.start()
        except StartupError as e:
            logging.critical(f"Fatal startup error: {e}")
            self.ipc_server.stop()
            return 1

        logging.info("Habit blocker daemon is now running")
        try:
            while not self._stop.wait(1.0):
                pass
        finally:
            self.stop()
        return 0
