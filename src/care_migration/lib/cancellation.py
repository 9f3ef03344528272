"""
Cooperative cancellation for long-running migration, backup and restore work.
"""

import threading
from typing import Optional

from .exceptions import MigrationCancelledException


class CancellationToken:
    """Thread-safe flag checked between batches and between stages"""

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "Cancelled by operator") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self, where: str = "") -> None:
        """
        Raise if cancellation was requested

        Args:
            where: Name of the step that observed the cancellation

        Raises:
            MigrationCancelledException: If ``cancel()`` has been called
        """
        if self._event.is_set():
            raise MigrationCancelledException(
                self._reason or "Operation cancelled",
                {'step': where} if where else None
            )
