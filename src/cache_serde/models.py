"""Canonical Pydantic models shared across all cache_serde modules.

The models fall into two groups:

**Configuration** -- :class:`CacheConfig`, resolved per decorated call
site by :func:`~cache_serde.config.resolve_config`.

**Persisted payloads** -- the discriminated union written into every
cache entry. A payload is either a :class:`SuccessPayload` carrying the
produced value or a :class:`FailurePayload` carrying a
:class:`FailureInfo` that describes the error the wrapped operation
raised. The ``status`` field is the discriminator. :class:`EntryInfo` is
the metadata view of a stored entry returned by the store's maintenance
listing.

All models use Pydantic v2.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

PAYLOAD_FORMAT_VERSION = 1
"""Bumped whenever the on-disk payload layout changes; older entries become misses."""

DEFAULT_CACHE_ROOT = "cache"
DEFAULT_INVALIDATION_INTERVAL = 3600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Configuration ---


class CacheConfig(BaseModel):
    """Settings for one cached call site.

    Example::

        CacheConfig(cache_root="~/.cache/weather/{city}", invalidation_interval=600)
    """

    model_config = ConfigDict(extra="forbid")

    cache_root: str = Field(
        default=DEFAULT_CACHE_ROOT,
        description="Directory holding the entries; may contain {arg} placeholders and ~",
    )
    invalidation_interval: int = Field(
        default=DEFAULT_INVALIDATION_INTERVAL,
        ge=0,
        description="Seconds an entry stays fresh; 0 always recomputes",
    )
    cache_failures: bool = Field(
        default=True, description="Persist and replay failures of the wrapped operation"
    )
    backend: Literal["file", "diskcache"] = Field(
        default="file", description="Storage backend: one file per key, or a diskcache directory"
    )
    enabled: bool = Field(default=True, description="Bypass the cache entirely when False")


# --- Persisted payloads ---


class FailureInfo(BaseModel):
    """Serializable description of an exception raised by a wrapped operation."""

    error_type: str
    module: str = "builtins"
    message: str = ""

    @classmethod
    def from_exception(cls, exc: BaseException) -> FailureInfo:
        exc_type = type(exc)
        return cls(
            error_type=exc_type.__qualname__,
            module=exc_type.__module__,
            message=str(exc),
        )


class SuccessPayload(BaseModel):
    """Payload for an operation that returned a value."""

    status: Literal["ok"] = "ok"
    format_version: Literal[1] = PAYLOAD_FORMAT_VERSION
    created_at: datetime = Field(default_factory=_utcnow)
    value: Any = None


class FailurePayload(BaseModel):
    """Payload for an operation that raised."""

    status: Literal["error"] = "error"
    format_version: Literal[1] = PAYLOAD_FORMAT_VERSION
    created_at: datetime = Field(default_factory=_utcnow)
    error: FailureInfo


CachePayload = Annotated[
    Union[SuccessPayload, FailurePayload], Field(discriminator="status")
]
"""Discriminated union stored in every cache entry."""

Payload = Union[SuccessPayload, FailurePayload]


# --- Store metadata ---


class EntryInfo(BaseModel):
    """Metadata for one stored entry, as listed by a cache store."""

    key: str
    size: int
    last_modified: datetime
