"""Cooperative cancellation shared between the CLI and running workflows."""

import threading
from typing import Optional

from tandem.errors import ErrorKind, TandemError


class CancellationToken:
    """Flag set from a signal handler and polled at safe points.

    The workflow checks the token between streamed agent messages and after
    each persisted state transition, never in the middle of a write.
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Interrupted by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise TandemError(ErrorKind.CANCELLED, self.reason or "Interrupted")
