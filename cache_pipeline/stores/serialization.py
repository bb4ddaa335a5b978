"""
Value serializers used by byte-oriented stores, and restoration of decoded
values to the response type a request declared.
"""

import json
from functools import lru_cache
from typing import Any

from pydantic import TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError, to_jsonable_python

from shared.errors import SerializationError


class JsonSerializer:
    """UTF-8 JSON, the default wire format for cached responses.

    Pydantic models, dataclasses, datetimes, ``Decimal`` and ``UUID`` values
    are encoded through pydantic's JSON mode. Decoding yields plain JSON
    types; ``restore`` turns them back into the declared response type.
    """

    def __init__(self, default=None):
        self._default = default if default is not None else to_jsonable_python

    def dumps(self, value: Any) -> bytes:
        try:
            return json.dumps(value, default=self._default, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError, OverflowError, PydanticSerializationError) as exc:
            raise SerializationError(
                f"JSON serialization failed: {exc}",
                {"value_type": type(value).__name__}
            ) from exc

    def loads(self, data: bytes) -> Any:
        try:
            return json.loads(data)
        except (TypeError, ValueError, UnicodeDecodeError) as exc:
            raise SerializationError(f"JSON deserialization failed: {exc}") from exc


class BytesSerializer:
    """Passthrough for stores wrapped by ``CompressedCacheStore``."""

    def dumps(self, value: Any) -> bytes:
        if isinstance(value, (bytes, bytearray, memoryview)):
            return bytes(value)
        raise SerializationError(
            "BytesSerializer only accepts bytes",
            {"value_type": type(value).__name__}
        )

    def loads(self, data: bytes) -> bytes:
        return bytes(data)


@lru_cache(maxsize=256)
def _adapter(response_type) -> TypeAdapter:
    return TypeAdapter(response_type)


def restore(value: Any, response_type: Any = None) -> Any:
    """Rebuild a decoded cache value as ``response_type``.

    Values that already have the right type (the in-memory store keeps Python
    objects) pass through unchanged. A payload that no longer fits the type
    raises ``SerializationError``.
    """
    if value is None or response_type is None:
        return value
    try:
        return _adapter(response_type).validate_python(value)
    except ValidationError as exc:
        raise SerializationError(
            f"Cached value does not match {getattr(response_type, '__name__', response_type)}",
            {"errors": exc.error_count()}
        ) from exc
