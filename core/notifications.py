"""
Outbound notification channel.

Jobs and profile executions hand notifications to a bounded queue drained by
one background worker thread. Producers never wait on delivery: when the queue
is full the notification is dropped with a warning.
"""
import logging
import queue
import threading
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Default notifier: writes notifications to the log."""

    def notify_job_success(self, job_id: int, job_name: str, details: Dict[str, Any]):
        logger.info("[NOTIFY] Job %s (%s) succeeded: %s", job_id, job_name, details)

    def notify_job_failure(self, job_id: int, job_name: str, error: str):
        logger.warning("[NOTIFY] Job %s (%s) failed: %s", job_id, job_name, error)

    def notify_execution_success(self, profile_id: int, profile_name: str, details: Dict[str, Any]):
        logger.info("[NOTIFY] Profile %s (%s) execution succeeded: %s", profile_id, profile_name, details)

    def notify_execution_failure(self, profile_id: int, profile_name: str, error: str):
        logger.warning("[NOTIFY] Profile %s (%s) execution failed: %s", profile_id, profile_name, error)


class NotificationDispatcher:
    """Bounded fire-and-forget dispatcher in front of a notifier."""

    def __init__(self, notifier=None, max_pending: int = 1000):
        self.notifier = notifier or LoggingNotifier()
        self._queue: "queue.Queue[Optional[Callable[[], None]]]" = queue.Queue(maxsize=max_pending)
        self._worker: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self.dispatched = 0
        self.dropped = 0
        self.failed = 0

    def start(self):
        with self._start_lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(target=self._run, name="notification-worker", daemon=True)
                self._worker.start()

    def stop(self, timeout: float = 5.0):
        """Drain what is queued, then stop the worker."""
        worker = self._worker
        if worker is None or not worker.is_alive():
            return
        self._queue.put(None)
        worker.join(timeout)

    def flush(self):
        """Block until every queued notification has been handled."""
        if self._worker is not None and self._worker.is_alive():
            self._queue.join()

    def _submit(self, method_name: str, *args):
        self.start()
        method = getattr(self.notifier, method_name, None)
        if method is None:
            return False
        try:
            self._queue.put_nowait(lambda: method(*args))
        except queue.Full:
            self.dropped += 1
            logger.warning("[NOTIFY] Queue full, dropping %s notification", method_name)
            return False
        return True

    def _run(self):
        logger.debug("[NOTIFY] Notification worker started")
        while True:
            item = self._queue.get()
            if item is None:
                self._queue.task_done()
                break
            try:
                item()
                self.dispatched += 1
            except Exception as e:
                self.failed += 1
                logger.error(f"[NOTIFY] Notification delivery failed: {e}")
            finally:
                self._queue.task_done()

    def notify_job_success(self, job_id: int, job_name: str, details: Dict[str, Any]) -> bool:
        return self._submit("notify_job_success", job_id, job_name, details)

    def notify_job_failure(self, job_id: int, job_name: str, error: str) -> bool:
        return self._submit("notify_job_failure", job_id, job_name, error)

    def notify_execution_success(self, profile_id: int, profile_name: str, details: Dict[str, Any]) -> bool:
        return self._submit("notify_execution_success", profile_id, profile_name, details)

    def notify_execution_failure(self, profile_id: int, profile_name: str, error: str) -> bool:
        return self._submit("notify_execution_failure", profile_id, profile_name, error)

    def snapshot(self) -> dict:
        return {
            "pending": self._queue.qsize(),
            "dispatched": self.dispatched,
            "dropped": self.dropped,
            "failed": self.failed,
            "worker_alive": bool(self._worker and self._worker.is_alive()),
        }
