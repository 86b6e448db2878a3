"""
Exception hierarchy for async transients.

Foreground paths (get/write/invalidate) propagate these to the caller.
Background dispatch logs them and hands them to the scheduler's error hook.
"""

from __future__ import annotations


class TransientError(Exception):
    """Base class for all async transient errors."""


class ConfigurationError(TransientError, ValueError):
    """Cache is misconfigured (e.g. empty name) or used before activation."""


class StorageError(TransientError, RuntimeError):
    """A transient store operation failed."""


class RegenerationFailed(TransientError, RuntimeError):
    """The value factory raised while regenerating a cache entry."""

    def __init__(self, key: str, cause: BaseException | None = None):
        self.key = key
        self.cause = cause
        message = f"Regeneration failed for {key}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
