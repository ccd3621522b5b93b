"""The :func:`cache_async` decorator.

Binds the orchestrator to an ``async def``: every call derives its key
from the function identity and its bound arguments, resolves the cache
root (which may be a template over those arguments), and runs the call
through a :class:`~cache_serde.orchestrator.Memoizer`.

Example::

    from cache_serde import cache_async

    @cache_async(cache_root="~/.cache/weather/{city}", invalidation_interval=600)
    async def forecast(city: str, days: int = 3) -> Forecast:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"https://api.example.com/{city}", params={"days": days})
            response.raise_for_status()
            return Forecast.model_validate(response.json())

    await forecast("oslo")            # runs the request and stores the result
    await forecast(city="oslo")       # same key, served from disk
    await forecast.invalidate("oslo") # drops the entry

Failures of the wrapped function surface as
:class:`~cache_serde.exceptions.WrappedOperationError`, both when they
just happened and when they are replayed from the cache.
"""

from __future__ import annotations

import functools
import inspect
import logging
import typing
from collections import OrderedDict
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from cache_serde.codec import JsonCodec
from cache_serde.config import render_cache_root, resolve_config
from cache_serde.freshness import FreshnessPolicy
from cache_serde.keys import bind_arguments, key_from_arguments, make_key
from cache_serde.models import CacheConfig, FailureInfo
from cache_serde.orchestrator import Memoizer, Outcome
from cache_serde.store import CacheStore, DiskcacheStore, open_store

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

MAX_OPEN_STORES = 16
"""Stores kept open per decorated function; templated roots beyond this are closed LRU-first."""


def _return_type(func: Callable[..., Any]) -> Any:
    """Return *func*'s resolved return annotation, or ``Any`` if it has none."""
    try:
        hints = typing.get_type_hints(func)
    except (NameError, TypeError, AttributeError) as exc:  # unresolvable forward references
        logger.debug("Cannot resolve annotations of %s: %s", func, exc)
        return Any
    return hints.get("return", Any)


class CallSite:
    """Per-function state behind a :func:`cache_async` wrapper.

    Holds the settings given to the decorator, the lazily resolved
    :class:`~cache_serde.models.CacheConfig`, the typed codec, and the
    stores of the most recently used rendered cache roots, at most
    *max_open_stores* of them. An evicted store is closed; a diskcache
    store reopens itself if a call still in flight touches it again. It
    keeps no per-key state.
    """

    def __init__(
        self,
        func: Callable[..., Awaitable[Any]],
        overrides: dict[str, Any],
        value_type: Any = None,
        key_prefix: Optional[str] = None,
        ignore: Iterable[str] = (),
        max_open_stores: int = MAX_OPEN_STORES,
    ) -> None:
        self.func = func
        self.key_prefix = key_prefix
        self.ignore = tuple(ignore)
        self._overrides = overrides
        self._config: Optional[CacheConfig] = None
        self.codec = JsonCodec(_return_type(func) if value_type is None else value_type)
        self.max_open_stores = max(1, max_open_stores)
        self._stores: OrderedDict[tuple[str, Path], CacheStore] = OrderedDict()

    @property
    def config(self) -> CacheConfig:
        if self._config is None:
            self._config = resolve_config(**self._overrides)
        return self._config

    def cache_key(self, *args: Any, **kwargs: Any) -> str:
        return make_key(self.func, args, kwargs, ignore=self.ignore, prefix=self.key_prefix)

    def store_for(self, arguments: dict[str, Any]) -> CacheStore:
        config = self.config
        root = render_cache_root(config.cache_root, arguments)
        slot = (config.backend, root)
        store = self._stores.get(slot)
        if store is not None:
            self._stores.move_to_end(slot)
            return store
        store = self._stores[slot] = open_store(config.backend, root)
        while len(self._stores) > self.max_open_stores:
            (_, evicted_root), evicted = self._stores.popitem(last=False)
            logger.debug("Closing cache store for %s", evicted_root)
            _close_store(evicted)
        return store

    def close(self) -> None:
        """Close every open store."""
        while self._stores:
            _close_store(self._stores.popitem()[1])

    def memoizer(self, store: CacheStore) -> Memoizer:
        config = self.config
        return Memoizer(
            store,
            codec=self.codec,
            policy=FreshnessPolicy(config.invalidation_interval),
            cache_failures=config.cache_failures,
        )

    async def call(self, args: tuple[Any, ...], kwargs: dict[str, Any]) -> Any:
        if not self.config.enabled:
            try:
                return await self.func(*args, **kwargs)
            except Exception as exc:
                return Outcome.failure(FailureInfo.from_exception(exc), exception=exc).unwrap()
        arguments = bind_arguments(self.func, args, kwargs)
        key = key_from_arguments(self.func, arguments, self.ignore, self.key_prefix)
        store = self.store_for(arguments)
        outcome = await self.memoizer(store).execute(key, lambda: self.func(*args, **kwargs))
        return outcome.unwrap()

    async def invalidate(self, *args: Any, **kwargs: Any) -> bool:
        arguments = bind_arguments(self.func, args, kwargs)
        key = key_from_arguments(self.func, arguments, self.ignore, self.key_prefix)
        return await self.store_for(arguments).delete(key)


def _close_store(store: CacheStore) -> None:
    if isinstance(store, DiskcacheStore):
        store.close()


def cache_async(
    cache_root: Any = None,
    invalidation_interval: Optional[int] = None,
    *,
    value_type: Any = None,
    cache_failures: Optional[bool] = None,
    backend: Optional[str] = None,
    enabled: Optional[bool] = None,
    key_prefix: Optional[str] = None,
    ignore: Iterable[str] = (),
) -> Any:
    """Cache the results of an ``async def`` on disk.

    Usable bare (``@cache_async``) or with arguments. Options left as
    ``None`` are resolved through :func:`~cache_serde.config.resolve_config`
    on the first call.

    Args:
        cache_root: Directory for entries; may contain ``{arg}``
            placeholders and ``~``. Default ``"cache"``.
        invalidation_interval: Seconds an entry stays fresh. Default 3600;
            0 always recomputes.
        value_type: Type used to validate cached values. Defaults to the
            function's return annotation.
        cache_failures: Whether failures are stored and replayed.
        backend: ``"file"`` or ``"diskcache"``.
        enabled: ``False`` calls straight through to the function.
        key_prefix: Identity used in the key instead of ``module.qualname``.
        ignore: Parameter names left out of the key (``self``, clients).

    Returns:
        The decorated coroutine function, with ``cache_key(...)``,
        ``invalidate(...)`` and ``cache_site`` attached.

    Raises:
        TypeError: If applied to something that is not a coroutine function.
    """
    if callable(cache_root):
        return cache_async()(cache_root)

    overrides = {
        "cache_root": cache_root,
        "invalidation_interval": invalidation_interval,
        "cache_failures": cache_failures,
        "backend": backend,
        "enabled": enabled,
    }

    def decorator(func: F) -> F:
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"cache_async requires an async function, got {func!r}")
        site = CallSite(func, overrides, value_type=value_type, key_prefix=key_prefix, ignore=ignore)

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await site.call(args, kwargs)

        wrapper.cache_key = site.cache_key  # type: ignore[attr-defined]
        wrapper.invalidate = site.invalidate  # type: ignore[attr-defined]
        wrapper.cache_site = site  # type: ignore[attr-defined]
        return wrapper  # type: ignore[return-value]

    return decorator
