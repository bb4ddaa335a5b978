"""
Service-scoped, versioned cache keys.

Keys follow the pattern ``{service}:{version}:{logical key}``, e.g.
``"company-svc:v1:Dealership:42"``. Bumping the version on a breaking change to
cached payloads makes every old entry unreachable without a flush.
"""

from typing import Optional

SEPARATOR = ":"


class KeyScope:
    """Builds fully-qualified cache keys for one service and schema version."""

    def __init__(self, service_name: str, version: str = "v1"):
        if not version:
            raise ValueError("Cache key version must not be empty")
        self.service_name = service_name
        self.version = version
        self._prefix = f"{service_name}{SEPARATOR}{version}" if service_name else version

    @property
    def prefix(self) -> str:
        """Scope prefix without trailing separator (``"company-svc:v1"``)."""
        return self._prefix

    def scope(self, logical_key: str) -> str:
        """Scope a caller-supplied logical key."""
        return f"{self._prefix}{SEPARATOR}{logical_key}"

    def key(self, *parts: str) -> str:
        """Scope a key built from parts; empty parts are skipped.

        ``scope.key("User", "Id", "42")`` -> ``"company-svc:v1:User:Id:42"``
        """
        return self.scope(self.for_parts(*parts))

    def unscope(self, scoped_key: str) -> Optional[str]:
        """Return the logical key if ``scoped_key`` belongs to this scope."""
        head = self._prefix + SEPARATOR
        if scoped_key.startswith(head):
            return scoped_key[len(head):]
        return None

    @staticmethod
    def for_parts(*parts: str) -> str:
        """Join key parts without a service scope (shared/cross-service keys)."""
        return SEPARATOR.join(str(p) for p in parts if p is not None and str(p) != "")

    @staticmethod
    def for_entity(entity: str, entity_id) -> str:
        """Entity key by id: ``for_entity("User", 42)`` -> ``"User:42"``.

        String ids are sanitized so they cannot inject separators.
        """
        if isinstance(entity_id, int):
            return f"{entity}{SEPARATOR}{entity_id}"
        return f"{entity}{SEPARATOR}{KeyScope.sanitize(entity_id)}"

    @staticmethod
    def sanitize(value: Optional[str]) -> str:
        """Replace characters that are problematic inside a key segment."""
        if value is None or not value.strip():
            return "empty"

        for ch in (" ", ":", "/", "\\"):
            value = value.replace(ch, "_")
        return value.lower().strip()

    def __repr__(self) -> str:
        return f"KeyScope(prefix={self._prefix!r})"


def extract_entity_type(key: str, scope: Optional[KeyScope] = None) -> str:
    """Entity type of a cache key.

    ``"svc:v1:Dealership:42"`` -> ``"Dealership"``; ``"User:123"`` -> ``"User"``.
    When the owning scope is known its exact prefix is stripped first;
    otherwise a key with three or more segments is assumed to be scoped.
    """
    if scope is not None:
        logical = scope.unscope(key)
        if logical is not None:
            return logical.split(SEPARATOR, 1)[0] or "Unknown"
        return key.split(SEPARATOR, 1)[0] or "Unknown"

    parts = key.split(SEPARATOR)
    if len(parts) >= 3:
        return parts[2] or "Unknown"
    return parts[0] or "Unknown"
