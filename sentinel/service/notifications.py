from __future__ import annotations

import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, List, Optional, Protocol

from sentinel.logging import get_logger
from sentinel.service.email import redact_email
from sentinel.storage.models import utcnow

logger = get_logger(__name__)

Transport = Callable[[str, str, str], bool]


class Notifier(Protocol):
    def send(self, address: str, subject: str, body: str) -> None:
        """Queue a message for delivery. Must not block on delivery or raise."""
        ...


@dataclass
class Notification:
    address: str
    subject: str
    body: str
    queued_at: datetime = field(default_factory=utcnow)


@dataclass
class FailedNotification:
    address: str
    subject: str
    attempts: int
    error: Optional[str]
    failed_at: datetime = field(default_factory=utcnow)


class NotificationDispatcher:
    """Bounded worker pool delivering notifications off the request path.

    Each message gets ``max_attempts`` tries with a fixed ``backoff_seconds`` pause
    between them, then it is dropped and recorded in a short failure log. A full
    queue drops the message immediately.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        workers: int = 2,
        queue_size: int = 1000,
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
        failure_log_size: int = 50,
    ) -> None:
        self.transport = transport
        self.workers = max(1, workers)
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._queue: "queue.Queue[Optional[Notification]]" = queue.Queue(maxsize=queue_size)
        self._failures: Deque[FailedNotification] = deque(maxlen=failure_log_size)
        self._failures_lock = threading.Lock()
        self._threads: List[threading.Thread] = []
        self._stopping = threading.Event()
        self._lifecycle_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        with self._lifecycle_lock:
            if self.running:
                return
            self._stopping.clear()
            self._threads = [
                threading.Thread(
                    target=self._run, name=f"notifier-{index}", daemon=True
                )
                for index in range(self.workers)
            ]
            for thread in self._threads:
                thread.start()
        logger.info("notification_dispatcher_started", workers=self.workers)

    def stop(self, timeout: float = 5.0) -> None:
        with self._lifecycle_lock:
            if not self._threads:
                return
            self._stopping.set()
            for _ in self._threads:
                try:
                    self._queue.put_nowait(None)
                except queue.Full:
                    break
            deadline = time.monotonic() + timeout
            for thread in self._threads:
                thread.join(max(0.0, deadline - time.monotonic()))
            self._threads = []
        logger.info("notification_dispatcher_stopped", pending=self._queue.qsize())

    def send(self, address: str, subject: str, body: str) -> None:
        notification = Notification(address=address, subject=subject, body=body)
        try:
            self._queue.put_nowait(notification)
        except queue.Full:
            logger.error(
                "notification_queue_full",
                to=redact_email(address),
                subject=subject,
            )
            self._record_failure(notification, attempts=0, error="queue full")

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every queued notification has been delivered or dropped."""
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def failures(self) -> List[FailedNotification]:
        with self._failures_lock:
            return list(self._failures)

    def _record_failure(
        self, notification: Notification, *, attempts: int, error: Optional[str]
    ) -> None:
        with self._failures_lock:
            self._failures.append(
                FailedNotification(
                    address=notification.address,
                    subject=notification.subject,
                    attempts=attempts,
                    error=error,
                )
            )

    def _run(self) -> None:
        while True:
            notification = self._queue.get()
            try:
                if notification is None:
                    return
                self._deliver(notification)
            finally:
                self._queue.task_done()

    def _deliver(self, notification: Notification) -> None:
        last_error: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                if self.transport(notification.address, notification.subject, notification.body):
                    return
                last_error = "transport reported failure"
            except Exception as exc:
                last_error = str(exc)
            logger.warning(
                "notification_attempt_failed",
                to=redact_email(notification.address),
                subject=notification.subject,
                attempt=attempt,
                max_attempts=self.max_attempts,
                error=last_error,
            )
            if attempt < self.max_attempts and self._stopping.wait(self.backoff_seconds):
                break
        logger.error(
            "notification_dropped",
            to=redact_email(notification.address),
            subject=notification.subject,
            error=last_error,
        )
        self._record_failure(notification, attempts=attempt, error=last_error)
