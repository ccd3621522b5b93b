"""Numeric process exit codes used by the ``cache-serde`` maintenance CLI.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~cache_serde.exceptions.CacheSerdeError` subclass.
Shell wrappers can inspect the exit code to tell a broken cache directory
from a bad invocation without parsing stderr.
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or an invalid key."""

EXIT_CONFIG_ERROR = 3
"""The resolved configuration is invalid."""

EXIT_STORAGE_ERROR = 4
"""The cache root or backend could not be read or written."""

EXIT_OPERATION_FAILED = 5
"""A wrapped operation failed (live or replayed from the cache)."""
