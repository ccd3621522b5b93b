"""Deterministic cache-key derivation.

A key is the SHA-256 hex digest of a canonical JSON document naming the
function (``module.qualname``) and its *effective* arguments: the call is
bound against the function signature and defaults are applied, so
``fetch(1)``, ``fetch(user_id=1)`` and ``fetch(1, page=1)`` (when
``page`` defaults to 1) all map to the same entry.

Values that are not plain JSON are converted with
:func:`pydantic_core.to_jsonable_python` (models, dataclasses, dates,
paths, UUIDs, ...). Mappings and sets are ordered by the canonical
encoding of their members, so the key depends neither on insertion order
nor on hash randomisation, and dict keys keep their type. Anything else
raises :class:`~cache_serde.exceptions.KeyDerivationError`; falling back to
``repr`` would leak memory addresses into the key.
"""

from __future__ import annotations

import hashlib
import inspect
import json
import re
from typing import Any, Callable, Iterable, Mapping, Optional

from pydantic_core import PydanticSerializationError, to_jsonable_python

from cache_serde.exceptions import InvalidKeyError, KeyDerivationError

_KEY_RE = re.compile(r"[0-9a-f]{64}")


def _canonical(obj: Any) -> Any:
    """Reduce *obj* to plain JSON whose encoding identifies it unambiguously.

    Mappings become ``{"__dict__": [[key, value], ...]}`` with each key in
    its own canonical encoding, so ``{1: "a"}`` and ``{"1": "a"}`` differ
    and keys of mixed types still sort. Tuples and sets are tagged so
    they never collide with lists.
    """
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, Mapping):
        pairs = sorted(
            ((_canonical_json(key), _canonical(value)) for key, value in obj.items()),
            key=lambda pair: pair[0],
        )
        return {"__dict__": [[key, value] for key, value in pairs]}
    if isinstance(obj, tuple):
        return {"__tuple__": [_canonical(item) for item in obj]}
    if isinstance(obj, list):
        return [_canonical(item) for item in obj]
    if isinstance(obj, (set, frozenset)):
        return {"__set__": sorted(_canonical_json(item) for item in obj)}
    try:
        converted = to_jsonable_python(obj)
    except PydanticSerializationError as exc:
        raise KeyDerivationError(
            f"Cannot derive a cache key from argument of type {type(obj).__name__}"
        ) from exc
    return _canonical(converted)


def _canonical_json(data: Any) -> str:
    try:
        return json.dumps(_canonical(data), sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError, RecursionError) as exc:
        raise KeyDerivationError(f"Cannot derive a cache key: {exc}") from exc


def qualified_name(func: Callable[..., Any]) -> str:
    """Return ``module.qualname`` for *func*."""
    module = getattr(func, "__module__", None) or "<unknown>"
    qualname = getattr(func, "__qualname__", None) or getattr(func, "__name__", repr(func))
    return f"{module}.{qualname}"


def hash_key(raw: str | bytes) -> str:
    """Hash an explicit caller-supplied key into a storage-safe digest."""
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def validate_key(key: str) -> str:
    """Return *key* unchanged if it is a SHA-256 hex digest.

    Raises:
        InvalidKeyError: For anything else, so a key can never name a
            path outside the cache root.
    """
    if not isinstance(key, str) or not _KEY_RE.fullmatch(key):
        raise InvalidKeyError(f"Not a valid cache key: {key!r}")
    return key


def bind_arguments(
    func: Callable[..., Any],
    args: Iterable[Any] = (),
    kwargs: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    """Bind a call against *func*'s signature and apply defaults.

    Raises:
        KeyDerivationError: If the arguments do not match the signature.
    """
    try:
        bound = inspect.signature(func).bind(*args, **dict(kwargs or {}))
    except TypeError as exc:
        raise KeyDerivationError(
            f"Arguments do not match {qualified_name(func)}: {exc}"
        ) from exc
    bound.apply_defaults()
    return dict(bound.arguments)


def make_key(
    func: Callable[..., Any],
    args: Iterable[Any] = (),
    kwargs: Optional[Mapping[str, Any]] = None,
    ignore: Iterable[str] = (),
    prefix: Optional[str] = None,
) -> str:
    """Derive the cache key for one call of *func*.

    Args:
        func: The function being cached.
        args: Positional arguments of the call.
        kwargs: Keyword arguments of the call.
        ignore: Parameter names left out of the key (``self``, clients,
            loggers and other arguments that do not affect the result).
        prefix: Replaces the function's qualified name as the identity
            component, e.g. to keep keys stable across a rename.

    Returns:
        A 64-character lowercase hex digest.
    """
    return key_from_arguments(func, bind_arguments(func, args, kwargs), ignore, prefix)


def key_from_arguments(
    func: Callable[..., Any],
    arguments: Mapping[str, Any],
    ignore: Iterable[str] = (),
    prefix: Optional[str] = None,
) -> str:
    """Like :func:`make_key`, for arguments already bound with :func:`bind_arguments`."""
    ignored = set(ignore)
    document = {
        "fn": prefix or qualified_name(func),
        "args": {name: value for name, value in arguments.items() if name not in ignored},
    }
    return hash_key(_canonical_json(document))
