"""Memoization orchestrator: the check, execute and persist protocol.

Every invocation of :meth:`Memoizer.execute` runs this sequence on its
own, with no in-memory state shared between calls::

    CHECK_EXISTENCE -> CHECK_FRESHNESS -> HIT
                                       -> MISS -> EXECUTE -> PERSIST

* A missing entry, an entry whose metadata cannot be read, a stale
  entry, and an entry that cannot be read or decoded are all misses.
  Corruption is logged and repaired by the next write; it never reaches
  the caller.
* A hit on a failure payload replays the stored failure without running
  the producer again.
* A failed persist is logged and the freshly computed outcome is still
  returned.

Concurrent calls for the same key are not coordinated: each may miss
and run the producer, and the last completed write wins. Stores write
atomically, so no reader ever observes a half-written entry.

The return value is an :class:`Outcome`, the inner success/failure of
the wrapped operation. The outer failure channel is ordinary exception
propagation, reserved for errors that leave no result to return.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

from cache_serde.codec import Codec, JsonCodec
from cache_serde.exceptions import (
    CorruptCacheError,
    SerializationError,
    StorageError,
    WrappedOperationError,
)
from cache_serde.freshness import FreshnessPolicy, Interval
from cache_serde.keys import validate_key
from cache_serde.models import FailureInfo, FailurePayload, Payload, SuccessPayload
from cache_serde.store import CacheStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

Producer = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of one memoized invocation.

    Exactly one of :attr:`value` (when :attr:`ok`) or :attr:`error` is
    meaningful. :attr:`from_cache` tells whether the outcome was served
    from a stored entry; it does not change how :meth:`unwrap` behaves.
    :attr:`exception` holds the original exception of a live failure, for
    debugging only; it is never persisted.
    """

    ok: bool
    value: Optional[T] = None
    error: Optional[FailureInfo] = None
    from_cache: bool = False
    exception: Optional[BaseException] = field(default=None, repr=False, compare=False)

    @classmethod
    def success(cls, value: T, from_cache: bool = False) -> Outcome[T]:
        return cls(ok=True, value=value, from_cache=from_cache)

    @classmethod
    def failure(
        cls,
        error: FailureInfo,
        from_cache: bool = False,
        exception: Optional[BaseException] = None,
    ) -> Outcome[T]:
        return cls(ok=False, error=error, from_cache=from_cache, exception=exception)

    @classmethod
    def from_payload(cls, payload: Payload, from_cache: bool = True) -> Outcome[Any]:
        if isinstance(payload, SuccessPayload):
            return cls.success(payload.value, from_cache=from_cache)
        return cls.failure(payload.error, from_cache=from_cache)

    def to_payload(self) -> Payload:
        if self.ok:
            return SuccessPayload(value=self.value)
        assert self.error is not None
        return FailurePayload(error=self.error)

    def unwrap(self) -> T:
        """Return the value, or raise :class:`WrappedOperationError` for a failure.

        Live and replayed failures raise identical errors: same type, same
        message, same ``failure`` and no chained cause. The original
        exception of a live failure stays available as :attr:`exception`
        and in the DEBUG log.
        """
        if self.ok:
            return self.value  # type: ignore[return-value]
        assert self.error is not None
        raise WrappedOperationError(self.error) from None


class Memoizer:
    """Runs producers through a cache store.

    Args:
        store: Where entries live.
        codec: Payload encoder/decoder; defaults to an untyped
            :class:`~cache_serde.codec.JsonCodec`.
        policy: Freshness policy; defaults to a one-hour interval.
        cache_failures: Persist failure outcomes so they are replayed.
            When ``False`` only successful results are stored.

    Example::

        memoizer = Memoizer(FileStore("cache"), JsonCodec(dict), FreshnessPolicy(600))
        outcome = await memoizer.execute(key, lambda: client.get_user(7))
        user = outcome.unwrap()
    """

    def __init__(
        self,
        store: CacheStore,
        codec: Optional[Codec] = None,
        policy: Optional[FreshnessPolicy] = None,
        cache_failures: bool = True,
    ) -> None:
        self.store = store
        self.codec: Codec = codec or JsonCodec()
        self.policy = policy or FreshnessPolicy()
        self.cache_failures = cache_failures

    async def execute(self, key: str, producer: Producer) -> Outcome[Any]:
        """Return the cached outcome for *key*, or run *producer* and store its outcome.

        Args:
            key: A cache key from :func:`~cache_serde.keys.make_key` or
                :func:`~cache_serde.keys.hash_key`.
            producer: Zero-argument coroutine function. Cancellation and
                other non-``Exception`` errors propagate and nothing is
                written.

        Raises:
            InvalidKeyError: If *key* is not a valid digest.
        """
        validate_key(key)
        cached = await self._lookup(key)
        if cached is not None:
            return cached
        outcome = await self._produce(key, producer)
        await self._persist(key, outcome)
        return outcome

    async def _lookup(self, key: str) -> Optional[Outcome[Any]]:
        try:
            if not await self.store.exists(key):
                logger.debug("Cache miss for %s: no entry", key)
                return None
            last_modified = await self.store.last_modified(key)
        except StorageError as exc:
            logger.debug("Cache miss for %s: %s", key, exc)
            return None

        if not self.policy.is_fresh(last_modified):
            logger.debug("Cache miss for %s: entry is stale", key)
            return None

        try:
            payload = self.codec.decode(await self.store.read(key))
        except StorageError as exc:
            logger.warning("Cache entry %s could not be read, recomputing: %s", key, exc)
            return None
        except CorruptCacheError as exc:
            logger.warning("Cache entry %s is corrupt, recomputing: %s", key, exc)
            return None

        logger.debug("Cache hit for %s (%s)", key, payload.status)
        return Outcome.from_payload(payload, from_cache=True)

    async def _produce(self, key: str, producer: Producer) -> Outcome[Any]:
        try:
            result = await producer()
        except Exception as exc:
            logger.debug("Producer for %s failed: %r", key, exc, exc_info=exc)
            return Outcome.failure(FailureInfo.from_exception(exc), exception=exc)
        if isinstance(result, Outcome):
            return result
        return Outcome.success(result)

    async def _persist(self, key: str, outcome: Outcome[Any]) -> None:
        if not outcome.ok and not self.cache_failures:
            logger.debug("Not caching failure for %s", key)
            return
        try:
            data = self.codec.encode(outcome.to_payload())
            await self.store.write(key, data)
        except (StorageError, SerializationError) as exc:
            logger.warning("Could not persist cache entry %s: %s", key, exc)


async def memoize(
    key: str,
    producer: Producer,
    store: CacheStore,
    invalidation_interval: Union[Interval, FreshnessPolicy] = 3600,
    codec: Optional[Codec] = None,
    cache_failures: bool = True,
) -> Outcome[Any]:
    """One-shot form of :meth:`Memoizer.execute`."""
    policy = (
        invalidation_interval
        if isinstance(invalidation_interval, FreshnessPolicy)
        else FreshnessPolicy(invalidation_interval)
    )
    memoizer = Memoizer(store, codec=codec, policy=policy, cache_failures=cache_failures)
    return await memoizer.execute(key, producer)
