"""Cancellation token passed into every blocking call of an attempt."""

import threading
from typing import Optional

from .errors import ExportCancelledError


class CancellationToken:
    """
    Thread-safe, one-way cancellation flag.

    Collaborators call raise_if_cancelled() between files and between I/O
    chunks so a cancelled attempt stops within one chunk.
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason = None

    def cancel(self, reason: Optional[str] = None):
        if not self._event.is_set():
            self.reason = reason or "cancellation requested"
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        """
        Raises:
            ExportCancelledError: If cancel() has been called
        """
        if self._event.is_set():
            raise ExportCancelledError(f"Export cancelled: {self.reason}")

    def __call__(self) -> bool:
        return self.is_cancelled

    def __repr__(self):
        return f'<CancellationToken cancelled={self.is_cancelled}>'
