from __future__ import annotations

from datetime import UTC, datetime
from queue import Empty, Queue
from threading import Lock
from typing import Any


class Subscription:
    def __init__(self, stream: LogStream, queue: Queue[dict[str, Any]]):
        self._stream = stream
        self._queue = queue
        self.closed = False

    def get(self, timeout: float | None = None) -> dict[str, Any] | None:
        try:
            return self._queue.get(timeout=timeout)
        except Empty:
            return None

    def drain(self) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except Empty:
                return events

    def close(self) -> None:
        if not self.closed:
            self._stream._unsubscribe(self._queue)
            self.closed = True

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class LogStream:
    """Fan-out of batch log lines and status changes.

    Every subscriber has its own queue and sees events in publish order.
    Nothing is buffered for subscribers that join later.
    """

    def __init__(self) -> None:
        self._queues: list[Queue[dict[str, Any]]] = []
        self._lock = Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._queues)

    def publish(self, event: dict[str, Any]) -> None:
        event.setdefault("timestamp", datetime.now(UTC).isoformat())
        with self._lock:
            for queue in self._queues:
                queue.put(event)

    def log(self, message: str, *, level: str = "info") -> None:
        self.publish({"type": "log", "level": level, "message": message})

    def status(self, status: str, *, error: str | None = None, operation: str | None = None) -> None:
        event: dict[str, Any] = {"type": "status", "status": status}
        if error:
            event["error"] = error
        if operation:
            event["operation"] = operation
        self.publish(event)

    def subscribe(self) -> Subscription:
        queue: Queue[dict[str, Any]] = Queue()
        with self._lock:
            self._queues.append(queue)
        return Subscription(self, queue)

    def _unsubscribe(self, queue: Queue[dict[str, Any]]) -> None:
        with self._lock:
            if queue in self._queues:
                self._queues.remove(queue)
