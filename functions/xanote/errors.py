"""
Error types raised by the persistence and backup layers.
"""

from __future__ import annotations


class XaNoteError(Exception):
    """Base class for service errors."""


class ConfigurationError(XaNoteError):
    """A required backend handle or credential is missing. Not retryable."""


class NotInitializedError(XaNoteError):
    """The adapter was used before ``initialize()`` or after ``close()``."""

    def __init__(self, message: str = "Database not initialized"):
        super().__init__(message)


class QueryError(XaNoteError):
    """The backend rejected a statement (malformed SQL, constraint failure)."""


class TransientIOError(XaNoteError):
    """A network or backend call failed; the operation may succeed later."""


class UploadError(TransientIOError):
    """A WebDAV upload did not complete with a success status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NotInstalledError(XaNoteError):
    """The service has not completed its install flow yet."""
