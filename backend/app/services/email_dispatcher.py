"""Background email delivery off the request path.

A bounded queue is drained by one daemon thread. Jobs are retried with a
linear backoff; a job that still fails is logged and dropped. Nothing here
ever raises back into notification creation.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Optional
from uuid import UUID

logger = logging.getLogger(__name__)

Sender = Callable[..., bool]


@dataclass(frozen=True)
class EmailJob:
    to: str
    subject: str
    body: str
    html_body: str | None = None
    notification_id: UUID | None = None


class EmailDispatcher:
    def __init__(
        self,
        sender: Sender,
        *,
        max_size: int = 500,
        max_attempts: int = 3,
        retry_delay_seconds: float = 2.0,
        on_delivered: Optional[Callable[[EmailJob], None]] = None,
    ) -> None:
        self._sender = sender
        self._queue: queue.Queue[EmailJob | None] = queue.Queue(maxsize=max_size)
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay_seconds
        self._on_delivered = on_delivered
        self._shutdown = threading.Event()
        self._thread: threading.Thread | None = None
        self._counter_lock = threading.Lock()
        self.sent = 0
        self.failed = 0
        self.dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._shutdown.clear()
        self._thread = threading.Thread(target=self._worker_loop, name="email-dispatcher", daemon=True)
        self._thread.start()
        logger.info("Email dispatcher started")

    def stop(self, timeout: float = 5.0) -> None:
        if not self.running:
            return
        self._shutdown.set()
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass
        assert self._thread is not None
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("Email dispatcher did not stop within %.1fs (%d pending)", timeout, self.pending)
        else:
            logger.info("Email dispatcher stopped")
        self._thread = None

    def submit(self, job: EmailJob) -> bool:
        try:
            self._queue.put_nowait(job)
        except queue.Full:
            with self._counter_lock:
                self.dropped += 1
            logger.warning("Email queue full; dropping email to %s (%s)", job.to, job.subject)
            return False
        return True

    def counters(self) -> dict[str, int]:
        with self._counter_lock:
            return {"sent": self.sent, "failed": self.failed, "dropped": self.dropped, "pending": self.pending}

    def _worker_loop(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is None:
                    if self._shutdown.is_set():
                        return
                    continue
                self.deliver(job)
            finally:
                self._queue.task_done()

    def deliver(self, job: EmailJob) -> bool:
        """Send one job with retries. Runs on the worker thread."""
        for attempt in range(1, self._max_attempts + 1):
            try:
                delivered = self._sender(job.to, job.subject, job.body, html_body=job.html_body)
            except Exception:  # noqa: BLE001
                logger.exception("Email sender raised for %s (attempt %d)", job.to, attempt)
                delivered = False
            if delivered:
                with self._counter_lock:
                    self.sent += 1
                self._notify_delivered(job)
                return True
            if attempt < self._max_attempts and self._shutdown.wait(self._retry_delay * attempt):
                break
        with self._counter_lock:
            self.failed += 1
        logger.error("Email to %s failed after %d attempts: %s", job.to, self._max_attempts, job.subject)
        return False

    def _notify_delivered(self, job: EmailJob) -> None:
        if self._on_delivered is None:
            return
        try:
            self._on_delivered(job)
        except Exception:  # noqa: BLE001
            logger.exception("Email delivery callback failed for %s", job.notification_id)
