# Overview: Bounded background executor for outbound notifications.

"""
Notification Dispatcher

WHY: Publishing an event must never block or fail the operation that
triggered it. Outbound HTTP runs on a small worker pool instead of the
request thread.

BOUNDS:
- WEBHOOK_WORKERS threads
- at most WEBHOOK_QUEUE_SIZE tasks queued or running; submit() returns
  False instead of growing the queue, and the caller falls back to the
  retry sweep

Each task runs inside its own application context, so it gets its own
database session.

NOTIFIER_MODE = "inline" runs tasks synchronously in the caller (tests, CLI).
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait

from flask import Flask, current_app


EXTENSION_KEY = "vault.dispatcher"

MODE_THREAD = "thread"
MODE_INLINE = "inline"


class NotificationDispatcher:
    def __init__(self, app: Flask, *, workers: int = 4, queue_size: int = 256, mode: str = MODE_THREAD):
        if mode not in (MODE_THREAD, MODE_INLINE):
            raise ValueError(f"Unknown NOTIFIER_MODE {mode!r}")
        self._app = app
        self._workers = max(1, workers)
        self._slots = threading.BoundedSemaphore(max(1, queue_size))
        self._mode = mode
        self._lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self._inflight: set[Future] = set()
        self._closed = False

    @property
    def mode(self) -> str:
        return self._mode

    def submit(self, fn, *args) -> bool:
        """
        Schedule fn(*args). Returns False when saturated or shut down.
        Never raises for task failures; they are logged.
        """
        if self._mode == MODE_INLINE:
            self._run(fn, args)
            return True

        if not self._slots.acquire(blocking=False):
            return False

        with self._lock:
            if self._closed:
                self._slots.release()
                return False
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._workers,
                    thread_name_prefix="vault-notify",
                )
            future = self._executor.submit(self._run_in_context, fn, args)
            self._inflight.add(future)

        future.add_done_callback(self._finished)
        return True

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for queued and running tasks. True when everything finished."""
        with self._lock:
            pending = list(self._inflight)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_tasks: bool = True) -> None:
        with self._lock:
            self._closed = True
            executor = self._executor
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=wait_for_tasks)

    def _finished(self, future: Future) -> None:
        with self._lock:
            self._inflight.discard(future)

    def _run_in_context(self, fn, args) -> None:
        # Slot frees before the future resolves, so drain() implies capacity
        try:
            with self._app.app_context():
                self._run(fn, args)
        finally:
            self._slots.release()

    def _run(self, fn, args) -> None:
        try:
            fn(*args)
        except Exception:
            self._app.logger.exception("Notification task %s failed", getattr(fn, "__name__", fn))


def init_dispatcher(app: Flask) -> NotificationDispatcher:
    dispatcher = NotificationDispatcher(
        app,
        workers=app.config["WEBHOOK_WORKERS"],
        queue_size=app.config["WEBHOOK_QUEUE_SIZE"],
        mode=app.config["NOTIFIER_MODE"],
    )
    app.extensions[EXTENSION_KEY] = dispatcher
    return dispatcher


def get_dispatcher() -> NotificationDispatcher:
    return current_app.extensions[EXTENSION_KEY]
