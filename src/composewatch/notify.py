"""
Progress and check-result notifications toward the push transport.

notify() never blocks the caller: events go into a bounded queue drained
by a daemon thread. A full queue drops the event, a failing transport is
logged. Neither ever reaches the update or check that produced the event.
"""

import dataclasses
import logging
import queue
import threading
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

PROJECT_UPDATES_CHECKED = "ProjectUpdatesChecked"
CONTAINER_UPDATES_CHECKED = "ContainerUpdatesChecked"
UPDATE_PROGRESS = "UpdateProgress"

Publisher = Callable[[str, Dict[str, Any]], None]


def to_payload(value: Any) -> Any:
    """Dataclasses -> plain dicts with ISO timestamps and enum values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = dataclasses.asdict(value)
    if isinstance(value, dict):
        return {k: to_payload(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_payload(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class ProgressNotifier:
    """Fire-and-forget event fan-out on a background consumer thread."""

    def __init__(self, publish: Optional[Publisher] = None, max_queue_size: int = 256):
        self.publish = publish
        self._queue: "queue.Queue" = queue.Queue(maxsize=max_queue_size)
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._thread = threading.Thread(target=self._run, name="composewatch-notifier", daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass
        if self._thread is not None:
            self._thread.join(timeout)

    def notify(self, event_name: str, payload: Any) -> None:
        if self.publish is None:
            return
        if not self._running:
            self.start()
        try:
            self._queue.put_nowait((event_name, to_payload(payload)))
        except queue.Full:
            logger.warning(f"Notification queue full, dropping {event_name} event")

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every queued event has been handed to the transport."""
        if timeout is None:
            self._queue.join()
            return
        done = threading.Event()

        def _wait():
            self._queue.join()
            done.set()

        threading.Thread(target=_wait, daemon=True).start()
        done.wait(timeout)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                event_name, payload = item
                try:
                    self.publish(event_name, payload)
                except Exception as e:
                    logger.warning(f"Failed to publish {event_name} event: {e}")
            finally:
                self._queue.task_done()
