from __future__ import annotations

from threading import Event


class CancellationToken:
    """Cooperative stop flag shared between the orchestrator and one batch."""

    def __init__(self) -> None:
        self._event = Event()
        self.reason = ""

    def request_stop(self, reason: str = "stop requested") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def stop_requested(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)
