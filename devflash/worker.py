"""
Background execution for long operations.

OperationWorker runs an agent upload or a partition batch on a dedicated
thread so the controlling layer stays responsive. BufferedSink decouples the
engine's progress callbacks from whoever consumes them: the worker never
blocks on a slow consumer, it drops stale progress events instead.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, List, Optional, Tuple

from .executor import CancelToken
from .interfaces import ProgressSink

logger = logging.getLogger(__name__)

Event = Tuple[str, Any, Any]  # ("progress", done, total) | ("log", message, severity)


class BufferedSink(ProgressSink):
    """Queues events for another thread; never blocks the producer."""

    def __init__(self, maxsize: int = 1024):
        self._queue: "queue.Queue[Event]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def _put(self, event: Event) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            # Make room by discarding the oldest event.
            try:
                self._queue.get_nowait()
                self.dropped += 1
            except queue.Empty:
                pass
            try:
                self._queue.put_nowait(event)
            except queue.Full:
                self.dropped += 1

    def on_progress(self, done: int, total: int) -> None:
        self._put(("progress", done, total))

    def on_log(self, message: str, severity: int) -> None:
        self._put(("log", message, severity))

    def drain(self, target: Optional[ProgressSink] = None) -> List[Event]:
        """Pop everything queued so far, forwarding to target if given."""
        events = []
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                break
            events.append(event)
            if target is not None:
                kind, a, b = event
                if kind == "progress":
                    target.on_progress(a, b)
                else:
                    target.on_log(a, b)
        return events


class OperationWorker:
    """
    Runs one job on a daemon thread.

    Usage:
        worker = OperationWorker(lambda cancel: executor.batch(ops), cancel=executor.cancel)
        worker.start()
        ...
        worker.cancel()
        result = worker.join()
    """

    def __init__(self, job: Callable[[CancelToken], Any], *, cancel: Optional[CancelToken] = None,
                 name: str = "devflash-worker"):
        self._job = job
        self.token = cancel or CancelToken()
        self._name = name
        self._thread: Optional[threading.Thread] = None
        self._done = threading.Event()
        self.result: Any = None
        self.error: Optional[BaseException] = None

    def start(self) -> "OperationWorker":
        if self._thread is not None:
            raise RuntimeError(f"{self._name} already started")
        self._thread = threading.Thread(target=self._run, daemon=True, name=self._name)
        self._thread.start()
        logger.debug("Worker %s started", self._name)
        return self

    def _run(self) -> None:
        try:
            self.result = self._job(self.token)
        except Exception as e:  # handed to the joining thread
            logger.debug("Worker %s failed: %s", self._name, e)
            self.error = e
        finally:
            self._done.set()

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._done.is_set()

    def cancel(self) -> None:
        self.token.cancel()

    def join(self, timeout: Optional[float] = None) -> Any:
        """Wait for the job; re-raise its exception or return its result."""
        if self._thread is None:
            raise RuntimeError(f"{self._name} was never started")
        self._thread.join(timeout)
        if not self._done.is_set():
            raise TimeoutError(f"{self._name} still running after {timeout}s")
        if self.error is not None:
            raise self.error
        return self.result
