"""
GZip compression decorator for cache stores.

Every value written through ``CompressedCacheStore`` carries a tag so reads
know whether to decompress::

    b"RAW:"  + payload             (payload <= threshold)
    b"GZIP:" + gzip(payload)       (payload >  threshold)

The wrapped store must round-trip ``bytes`` values unchanged: an
``InMemoryCacheStore`` does so natively, a ``RedisCacheStore`` needs the
``BytesSerializer``.
"""

import gzip
import zlib
from datetime import timedelta
from typing import Any, Dict, Iterable, Mapping, Optional

from shared.errors import SerializationError
from shared.logging import get_logger
from .base import CacheStore, Expiration
from .serialization import JsonSerializer

RAW_MARKER = b"RAW:"
GZIP_MARKER = b"GZIP:"
DEFAULT_THRESHOLD_BYTES = 1024


def compress_payload(payload: bytes, threshold: int = DEFAULT_THRESHOLD_BYTES) -> bytes:
    """Tag ``payload``, compressing it only when strictly larger than ``threshold``."""
    if len(payload) > threshold:
        return GZIP_MARKER + gzip.compress(payload)
    return RAW_MARKER + payload


def decompress_payload(blob: bytes) -> bytes:
    """Inverse of ``compress_payload``."""
    if blob.startswith(GZIP_MARKER):
        try:
            return gzip.decompress(blob[len(GZIP_MARKER):])
        except (OSError, EOFError, zlib.error) as exc:
            raise SerializationError(f"Corrupt compressed cache payload: {exc}") from exc
    if blob.startswith(RAW_MARKER):
        return blob[len(RAW_MARKER):]
    raise SerializationError("Cache payload is missing its compression tag")


class CompressedCacheStore(CacheStore):
    """Serializes, compresses and tags values before delegating to ``inner``."""

    def __init__(
        self,
        inner: CacheStore,
        threshold_bytes: int = DEFAULT_THRESHOLD_BYTES,
        serializer=None,
    ):
        if threshold_bytes < 0:
            raise ValueError("threshold_bytes must not be negative")
        self.inner = inner
        self.threshold_bytes = threshold_bytes
        self.serializer = serializer or JsonSerializer()
        self.logger = get_logger("cache.store.compression")

    def _encode(self, value: Any) -> bytes:
        payload = self.serializer.dumps(value)
        blob = compress_payload(payload, self.threshold_bytes)
        if blob.startswith(GZIP_MARKER):
            self.logger.debug(
                "Compressed cache payload",
                original_bytes=len(payload),
                stored_bytes=len(blob)
            )
        return blob

    def _decode(self, blob: Optional[bytes]) -> Optional[Any]:
        if blob is None:
            return None
        if not isinstance(blob, (bytes, bytearray)):
            raise SerializationError(
                "Compressed store expected bytes from the inner store",
                {"value_type": type(blob).__name__}
            )
        return self.serializer.loads(decompress_payload(bytes(blob)))

    async def get(self, key: str) -> Optional[Any]:
        return self._decode(await self.inner.get(key))

    async def set(self, key: str, value: Any, expiration: Expiration = None) -> None:
        if value is None:
            return
        await self.inner.set(key, self._encode(value), expiration)

    async def remove(self, key: str) -> None:
        await self.inner.remove(key)

    async def remove_by_prefix(self, prefix: str) -> int:
        return await self.inner.remove_by_prefix(prefix)

    async def refresh(self, key: str) -> None:
        await self.inner.refresh(key)

    async def ttl(self, key: str) -> Optional[timedelta]:
        return await self.inner.ttl(key)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[Any]]:
        blobs = await self.inner.get_many(keys)
        return {key: self._decode(blob) for key, blob in blobs.items()}

    async def set_many(self, items: Mapping[str, Any], expiration: Expiration = None) -> None:
        encoded = {key: self._encode(value) for key, value in items.items() if value is not None}
        if encoded:
            await self.inner.set_many(encoded, expiration)
