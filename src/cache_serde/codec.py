"""Encoding of cache payloads to and from bytes.

A :class:`Codec` turns a :data:`~cache_serde.models.Payload` into the
bytes written to a cache entry and back. The default
:class:`JsonCodec` is typed: it is built for the value type the caller
expects and validates decoded values through a
:class:`pydantic.TypeAdapter`, so a hit returns a value of exactly that
type (models come back as models, tuples as tuples, datetimes as
datetimes). An entry that no longer matches the expected type is
reported as corrupt and recomputed.
"""

from __future__ import annotations

from typing import Any, Protocol

from pydantic import TypeAdapter
from pydantic_core import PydanticSerializationError, to_json

from cache_serde.exceptions import CorruptCacheError, SerializationError
from cache_serde.models import CachePayload, Payload, SuccessPayload

_PAYLOAD_ADAPTER: TypeAdapter[Payload] = TypeAdapter(CachePayload)


class Codec(Protocol):
    """Anything that can encode a payload to bytes and decode it back."""

    def encode(self, payload: Payload) -> bytes: ...

    def decode(self, data: bytes) -> Payload: ...


class JsonCodec:
    """JSON codec validating cached values against *value_type*.

    Args:
        value_type: The type the wrapped operation returns. Defaults to
            :data:`typing.Any`, which round-trips plain JSON data only.

    Example::

        codec = JsonCodec(list[User])
        data = codec.encode(SuccessPayload(value=[User(id=1)]))
        codec.decode(data).value   # [User(id=1)]
    """

    def __init__(self, value_type: Any = Any) -> None:
        self.value_type = value_type
        self._values: TypeAdapter[Any] = TypeAdapter(value_type)

    def encode(self, payload: Payload) -> bytes:
        """Serialize *payload* to UTF-8 JSON.

        Raises:
            SerializationError: If the value cannot be represented as JSON.
        """
        try:
            data = payload.model_dump(mode="json", exclude={"value"})
            if isinstance(payload, SuccessPayload):
                data["value"] = self._values.dump_python(payload.value, mode="json")
            return to_json(data)
        except (PydanticSerializationError, TypeError, ValueError) as exc:
            raise SerializationError(
                f"Cannot encode value of type {type(getattr(payload, 'value', None)).__name__}: {exc}"
            ) from exc

    def decode(self, data: bytes) -> Payload:
        """Parse *data* back into a payload.

        Raises:
            CorruptCacheError: On invalid JSON, an unknown payload layout or
                format version, or a value that fails validation.
        """
        try:
            payload = _PAYLOAD_ADAPTER.validate_json(data)
            if isinstance(payload, SuccessPayload):
                payload = payload.model_copy(
                    update={"value": self._values.validate_python(payload.value)}
                )
        except ValueError as exc:
            raise CorruptCacheError(f"Undecodable cache entry: {exc}") from exc
        return payload
