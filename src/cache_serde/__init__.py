"""cache_serde -- disk-backed memoization for async operations.

Decorate an ``async def`` with :func:`cache_async` and its results are
stored under a cache root on disk, keyed by the function and its
arguments. Later calls within the invalidation interval are served from
disk, across process restarts, without running the function again.
Failures are cached and replayed the same way.

Modules:
    decorator: The :func:`cache_async` decorator.
    orchestrator: :class:`Memoizer`, the check/execute/persist protocol.
    store: File and diskcache storage backends.
    freshness: The time-based freshness policy.
    codec: Typed JSON encoding of cache payloads.
    keys: Deterministic key derivation.
    config: Configuration precedence resolution.
    models: Pydantic models shared across the package.
    exceptions: Exception hierarchy with exit-code mapping.
    cli: The ``cache-serde`` maintenance command.
"""

__version__ = "0.1.0"

from cache_serde.codec import Codec, JsonCodec
from cache_serde.decorator import cache_async
from cache_serde.exceptions import (
    CacheSerdeError,
    ConfigError,
    CorruptCacheError,
    InvalidKeyError,
    KeyDerivationError,
    SerializationError,
    StorageError,
    WrappedOperationError,
)
from cache_serde.freshness import FreshnessPolicy, is_fresh
from cache_serde.keys import hash_key, make_key
from cache_serde.models import CacheConfig, FailureInfo
from cache_serde.orchestrator import Memoizer, Outcome, memoize
from cache_serde.store import CacheStore, DiskcacheStore, FileStore

__all__ = [
    "CacheConfig",
    "CacheSerdeError",
    "CacheStore",
    "Codec",
    "ConfigError",
    "CorruptCacheError",
    "DiskcacheStore",
    "FailureInfo",
    "FileStore",
    "FreshnessPolicy",
    "InvalidKeyError",
    "JsonCodec",
    "KeyDerivationError",
    "Memoizer",
    "Outcome",
    "SerializationError",
    "StorageError",
    "WrappedOperationError",
    "cache_async",
    "hash_key",
    "is_fresh",
    "make_key",
    "memoize",
]
