# src/engine/events.py
"""
EventPublisher: ordered, fire-and-forget delivery of scan events to the fan-out service.
"""
import logging
import queue
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List


class EventKind(str, Enum):
    PROGRESS = "scan_progress"
    CONTAINER_STATUS = "container_status"
    COMPLETE = "scan_complete"
    ERROR = "scan_error"


TERMINAL_KINDS = (EventKind.COMPLETE, EventKind.ERROR)


@dataclass
class Event:
    kind: EventKind
    scan_id: str
    user_id: str
    payload: Dict[str, Any]
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat() + "Z")

    def to_message(self) -> dict:
        return {
            "type": self.kind.value,
            "scanId": self.scan_id,
            "userId": self.user_id,
            "data": self.payload,
            "timestamp": self.timestamp,
        }


class FanOut:
    def publish(self, event: Event) -> None:
        raise NotImplementedError


class InMemoryFanOut(FanOut):
    """Delivers events to subscriber callbacks keyed by user id; '*' receives everything."""

    WILDCARD = "*"

    def __init__(self):
        self._subscribers: Dict[str, List[Callable[[Event], None]]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, user_id: str, callback: Callable[[Event], None]) -> None:
        with self._lock:
            self._subscribers[user_id].append(callback)

    def unsubscribe(self, user_id: str, callback: Callable[[Event], None]) -> None:
        with self._lock:
            callbacks = self._subscribers.get(user_id, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(user_id, None)

    def publish(self, event: Event) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(event.user_id, [])) + list(self._subscribers.get(self.WILDCARD, []))
        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logging.error(f"[scan_id={event.scan_id}] Subscriber failed on {event.kind.value}: {e}")


_STOP = object()


class EventPublisher:
    def __init__(self, fan_out: FanOut):
        self.fan_out = fan_out
        self._queue: "queue.Queue" = queue.Queue()
        self._thread = threading.Thread(target=self._dispatch, name="event-publisher", daemon=True)
        self._closed = False
        self._thread.start()

    def _dispatch(self):
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self.fan_out.publish(event)
            except Exception as e:
                logging.error(f"[scan_id={event.scan_id}] Event delivery failed: {e}")
            finally:
                self._queue.task_done()

    def _publish(self, kind: EventKind, scan_id: str, user_id: str, payload: dict) -> None:
        if self._closed:
            logging.debug(f"[scan_id={scan_id}] Publisher closed, dropping {kind.value}")
            return
        self._queue.put(Event(kind, scan_id, user_id, payload))

    def publish_progress(self, scan_id, user_id, status, progress, step, output=None):
        self._publish(EventKind.PROGRESS, scan_id, user_id, {
            "scanId": scan_id,
            "status": status,
            "progress": progress,
            "currentStep": step,
            "output": output,
        })

    def publish_container_status(self, scan_id, user_id, stats: dict):
        self._publish(EventKind.CONTAINER_STATUS, scan_id, user_id, dict(stats, scanId=scan_id))

    def publish_complete(self, scan_id, user_id, duration, exit_code, output):
        self._publish(EventKind.COMPLETE, scan_id, user_id, {
            "scanId": scan_id,
            "duration": duration,
            "exitCode": exit_code,
            "output": output,
        })

    def publish_error(self, scan_id, user_id, message, details=None):
        self._publish(EventKind.ERROR, scan_id, user_id, {
            "message": message,
            "details": details or {},
        })

    def flush(self):
        """Block until every queued event has been handed to the fan-out."""
        self._queue.join()

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._queue.put(_STOP)
        self._thread.join(timeout=5)
