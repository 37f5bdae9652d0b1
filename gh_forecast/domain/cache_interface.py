"""Cache interface (port) for persisting raw fetch results.

This is the port in hexagonal architecture that the infrastructure layer implements.
"""
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence
from gh_forecast.domain.models import CacheClearResult, CacheStats


class ICacheStore(ABC):
    """Abstract interface for TTL-bounded storage of JSON-serializable data.

    Implementations never raise from ``get`` or ``set``: caching is an
    optimization, so storage failures degrade to a miss or a no-op write.
    """

    @abstractmethod
    def get(self, key_parts: Sequence[str], ttl_ms: int) -> Optional[Any]:
        """Return the cached value, or None when absent, stale or unreadable.

        A stale or version-mismatched entry is deleted before returning None.

        Args:
            key_parts: Ordered parts identifying the query
            ttl_ms: Maximum age in milliseconds
        """
        pass

    @abstractmethod
    def set(self, key_parts: Sequence[str], data: Any, ttl_ms: int) -> None:
        """Store data under the key, overwriting any previous entry."""
        pass

    @abstractmethod
    def clear(self) -> CacheClearResult:
        """Delete every cache entry."""
        pass

    @abstractmethod
    def stats(self) -> CacheStats:
        """Get the number, total size and oldest age of stored entries."""
        pass
