#!/usr/bin/env python3
"""
Single-consumer job queue with coalescing.

Every trigger source (IPC, deadline timer, poll ticker) calls submit().
One worker thread runs the jobs, so the hosts file only ever has one
writer. Each job kind has a pending flag rather than a queue: any number
of submits that arrive while a job is running collapse into a single
re-run.
"""

import logging
import threading

EVALUATE = "evaluate"
RESET = "reset"

# Jobs run in this order when several are pending
JOB_ORDER = (RESET, EVALUATE)


class TriggerQueue:
    def __init__(self, handlers):
        unknown = set(handlers) - set(JOB_ORDER)
        if unknown:
            raise ValueError(f"Unknown job kinds: {', '.join(sorted(unknown))}")
        self.handlers = handlers
        self._cond = threading.Condition()
        self._pending = {kind: False for kind in handlers}
        self._started = {kind: 0 for kind in handlers}
        self._finished = {kind: 0 for kind in handlers}
        self._results = {}
        self._sources = {kind: set() for kind in handlers}
        self._closed = False
        self._thread = None

    def start(self):
        self._thread = threading.Thread(target=self.run, name="evaluation-worker", daemon=True)
        self._thread.start()

    def submit(self, kind=EVALUATE, source="manual"):
        """Request a run of `kind`. Returns a ticket for wait(), or None when closed."""
        with self._cond:
            if self._closed:
                logging.debug(f"Ignoring {kind} trigger from {source}: queue closed")
                return None
            if self._pending[kind]:
                logging.debug(f"Coalescing {kind} trigger from {source}")
            self._pending[kind] = True
            self._sources[kind].add(source)
            self._cond.notify_all()
            # The next run of this kind to start will serve the trigger
            return self._started[kind] + 1

    def wait(self, kind, ticket, timeout=None):
        """Block until the run serving `ticket` finished; return its result or None on timeout"""
        with self._cond:
            done = self._cond.wait_for(
                lambda: self._finished[kind] >= ticket or (self._closed and self._started[kind] < ticket),
                timeout=timeout,
            )
            if not done or self._finished[kind] < ticket:
                return None
            return self._results.get(kind)

    def run(self):
        """Worker loop: runs pending jobs one at a time until closed"""
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._closed or any(self._pending.values()))
                if self._closed:
                    return
                kind = next(k for k in JOB_ORDER if self._pending.get(k))
                self._pending[kind] = False
                sources = ", ".join(sorted(self._sources[kind]))
                self._sources[kind].clear()
                self._started[kind] += 1
                run_number = self._started[kind]

            logging.debug(f"Running {kind} (triggered by {sources})")
            try:
                ok = bool(self.handlers[kind]())
            except Exception as e:
                logging.error(f"Unhandled error in {kind} job: {e}", exc_info=True)
                ok = False

            with self._cond:
                self._finished[kind] = run_number
                self._results[kind] = ok
                self._cond.notify_all()

    def close(self, timeout=None):
        """Drop pending jobs, let the in-flight one finish, stop the worker"""
        with self._cond:
            self._closed = True
            for kind in self._pending:
                self._pending[kind] = False
            self._cond.notify_all()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    @property
    def closed(self):
        return self._closed
