"""JSON file cache implementation for raw fetch results."""
import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Optional, Sequence
from gh_forecast.domain.cache_interface import ICacheStore
from gh_forecast.domain.models import CacheClearResult, CacheStats


logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = Path.home() / ".gh-forecast-cache"

# Bump whenever the on-disk entry layout or cached data shape changes
CACHE_VERSION = "1"


def _now_ms() -> int:
    return int(time.time() * 1000)


class FileCacheStore(ICacheStore):
    """File-per-key cache of JSON-serializable data.

    Each entry is stored as ``<md5 of key parts>.json`` holding
    ``{"version", "timestamp", "ttlMs", "data"}``. Expired and
    version-mismatched entries are deleted lazily when read; there is no
    background sweep. Concurrent writers are last-writer-wins.
    """

    def __init__(self, cache_dir: Path = DEFAULT_CACHE_DIR, clock: Callable[[], int] = _now_ms):
        """Initialize the cache.

        Args:
            cache_dir: Directory holding the entries, created on first use
            clock: Source of epoch milliseconds
        """
        self._cache_dir = Path(cache_dir)
        self._clock = clock

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    @staticmethod
    def cache_key(key_parts: Sequence[str]) -> str:
        """Hash the ordered key parts into a file-safe key."""
        return hashlib.md5("|".join(key_parts).encode("utf-8")).hexdigest()

    def _path(self, key_parts: Sequence[str]) -> Path:
        return self._cache_dir / f"{self.cache_key(key_parts)}.json"

    def get(self, key_parts: Sequence[str], ttl_ms: int) -> Optional[Any]:
        """Get cached data if present, current-version and no older than ttl_ms."""
        try:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
            path = self._path(key_parts)
            if not path.exists():
                return None

            entry = json.loads(path.read_text(encoding="utf-8"))

            if entry["version"] != CACHE_VERSION:
                path.unlink()
                return None

            age = self._clock() - entry["timestamp"]
            if age > ttl_ms:
                path.unlink()
                return None

            return entry["data"]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.debug(f"Cache read failed, treating as miss: {e}")
            return None

    def set(self, key_parts: Sequence[str], data: Any, ttl_ms: int) -> None:
        """Save data to the cache; failures leave the cache unchanged."""
        entry = {
            "version": CACHE_VERSION,
            "timestamp": self._clock(),
            "ttlMs": ttl_ms,
            "data": data,
        }
        try:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
            self._path(key_parts).write_text(json.dumps(entry), encoding="utf-8")
        except (OSError, ValueError, TypeError) as e:
            logger.debug(f"Cache write failed, skipping: {e}")

    def clear(self) -> CacheClearResult:
        """Delete all cache entries.

        Returns:
            Number of files deleted and bytes freed
        """
        count = 0
        freed = 0

        if not self._cache_dir.exists():
            return CacheClearResult(count=0, bytes=0)

        for path in self._cache_dir.glob("*.json"):
            try:
                size = path.stat().st_size
                path.unlink()
            except OSError as e:
                logger.debug(f"Could not delete cache file {path}: {e}")
                continue
            count += 1
            freed += size

        logger.info(f"Cleared {count} cache files ({freed} bytes)")
        return CacheClearResult(count=count, bytes=freed)

    def stats(self) -> CacheStats:
        """Get the number of entries, their total size and the oldest entry's age."""
        if not self._cache_dir.exists():
            return CacheStats(count=0, bytes=0, oldest_age_ms=None)

        count = 0
        total_bytes = 0
        now = self._clock()
        oldest_timestamp = now

        for path in self._cache_dir.glob("*.json"):
            try:
                total_bytes += path.stat().st_size
            except OSError:
                continue
            count += 1

            try:
                entry = json.loads(path.read_text(encoding="utf-8"))
                oldest_timestamp = min(oldest_timestamp, int(entry["timestamp"]))
            except (OSError, ValueError, KeyError, TypeError):
                # Corrupt entries still count towards size
                continue

        return CacheStats(
            count=count,
            bytes=total_bytes,
            oldest_age_ms=now - oldest_timestamp if count > 0 else None
        )
