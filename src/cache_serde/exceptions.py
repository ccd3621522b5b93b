"""Exception hierarchy for cache_serde.

All exceptions inherit from :class:`CacheSerdeError`, which carries an
``exit_code`` attribute mapped to a constant from
:mod:`cache_serde.exit_codes`. The maintenance CLI catches
``CacheSerdeError`` and exits with the matching code; library callers
usually only ever see :class:`WrappedOperationError` and, when no result
can be produced at all, :class:`StorageError`.

Subclass hierarchy::

    CacheSerdeError (exit 1)
    +-- StorageError          (exit 4)
    +-- CorruptCacheError     (exit 4)
    +-- SerializationError    (exit 1)
    +-- KeyDerivationError    (exit 2)
    +-- InvalidKeyError       (exit 2)
    +-- ConfigError           (exit 3)
    +-- WrappedOperationError (exit 5)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from cache_serde.exit_codes import (
    EXIT_CONFIG_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_OPERATION_FAILED,
    EXIT_STORAGE_ERROR,
)

if TYPE_CHECKING:
    from cache_serde.models import FailureInfo


class CacheSerdeError(Exception):
    """Base exception for all cache_serde errors.

    Args:
        message: Human-readable error description.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class StorageError(CacheSerdeError):
    """Raised when a cache entry cannot be stat'ed, read, written or removed.

    Wraps the underlying :class:`OSError` (permission denied, disk full,
    missing path, path too long) as ``__cause__``.
    """

    exit_code = EXIT_STORAGE_ERROR


class CorruptCacheError(CacheSerdeError):
    """Raised by a codec when an entry's bytes cannot be decoded.

    The orchestrator never lets this escape: a corrupt entry is treated as
    a cache miss and overwritten by the next successful execution.
    """

    exit_code = EXIT_STORAGE_ERROR


class SerializationError(CacheSerdeError):
    """Raised when a produced value cannot be encoded for persistence."""


class KeyDerivationError(CacheSerdeError):
    """Raised when call arguments cannot be turned into a deterministic key."""

    exit_code = EXIT_INVALID_USAGE


class InvalidKeyError(CacheSerdeError):
    """Raised when a key is not a 64-character lowercase SHA-256 hex digest."""

    exit_code = EXIT_INVALID_USAGE


class ConfigError(CacheSerdeError):
    """Raised for configuration problems (invalid project file, bad env values)."""

    exit_code = EXIT_CONFIG_ERROR


class WrappedOperationError(CacheSerdeError):
    """Raised when the wrapped operation failed.

    Identical whether the failure happened just now, was replayed from a
    cached entry, or came from a call site with caching disabled: callers
    see only :attr:`failure`, never the original exception object. To
    debug a live failure, read
    :attr:`cache_serde.orchestrator.Outcome.exception` or enable DEBUG
    logging for ``cache_serde``.

    Args:
        failure: Serializable description of the original error.
    """

    exit_code = EXIT_OPERATION_FAILED

    def __init__(self, failure: FailureInfo):
        super().__init__(f"{failure.error_type}: {failure.message}")
        self.failure = failure
