"""Application-level exception types.

Convention:
- Cycle-level errors (``AuthenticationError``, ``StorageError``, listing
  failures) escape ``SyncEngine.run`` after the run metrics are recorded. The
  scheduler catches them, logs them and keeps polling.
- Per-item errors (``SourceUnavailableError`` from a download,
  ``TargetAPIError`` from an upload) are caught inside the engine's per-item
  loop and only counted.
- ``ValueError`` is used for caller input validation (bad page numbers, unknown
  sort keys), the same way the HTTP layer maps it to a 422.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for errors raised by the sync stack."""


class AuthenticationError(SyncError):
    """Raised when the target platform rejects the current credentials."""


class SourceUnavailableError(SyncError):
    """Raised when the source platform cannot be listed or downloaded from."""


class TargetAPIError(SyncError):
    """Raised when the target platform returns an unexpected response.

    ``status_code`` is ``None`` for transport-level failures.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageError(SyncError):
    """Raised when the mapping store cannot be read or written.

    The store is local storage; the engine treats this as fatal for the cycle.
    """
