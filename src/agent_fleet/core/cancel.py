"""Cooperative cancellation shared by the scheduler, runners and retry sleeps."""

import threading


class RunCancelled(Exception):
    """Raised at a suspension point once the run has been cancelled."""


class CancelToken:
    def __init__(self):
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled(self.reason or "cancelled")

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds. Returns True if cancelled meanwhile."""
        return self._event.wait(timeout)
