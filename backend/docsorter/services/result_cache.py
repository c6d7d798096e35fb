"""
Result Cache.

Content-hash keyed store for inference results with bounded capacity,
transparent compression and a JSON snapshot on disk.
"""
import base64
import hashlib
import json
import logging
import os
import re
import threading
import time
import zlib
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from docsorter.services.errors import CacheError

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


@dataclass
class CacheEntry:
    """Serialized value with bookkeeping."""
    key: str
    payload: bytes
    compressed: bool
    size: int
    inserted_at: float
    last_accessed: float

    def to_json(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "payload": base64.b64encode(self.payload).decode("ascii"),
            "compressed": self.compressed,
            "size": self.size,
            "inserted_at": self.inserted_at,
            "last_accessed": self.last_accessed,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            key=data["key"],
            payload=base64.b64decode(data["payload"]),
            compressed=bool(data["compressed"]),
            size=int(data["size"]),
            inserted_at=float(data["inserted_at"]),
            last_accessed=float(data["last_accessed"]),
        )


def normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip().lower()


def make_cache_key(text: str, options: Optional[Dict[str, Any]] = None) -> str:
    """Stable key for normalized text plus the options that affect the answer."""
    sha = hashlib.sha256()
    sha.update(normalize_text(text).encode("utf-8"))
    if options:
        sha.update(b"\x00")
        sha.update(json.dumps(options, sort_keys=True, default=str).encode("utf-8"))
    return sha.hexdigest()


class ResultCache:
    """
    Thread-safe bounded cache.

    Eviction is by insertion order: a full cache drops the entry that was
    inserted first, regardless of how recently it was read.
    """

    def __init__(self, max_size: int = 1000, max_age: float = 7 * 24 * 60 * 60,
                 compression_threshold: int = 1024, snapshot_path: Optional[str] = None,
                 clock: Callable[[], float] = time.time):
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self.max_size = max(1, max_size)
        self.max_age = max_age
        self.compression_threshold = compression_threshold
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None
        self._persistent = self.snapshot_path is not None
        self._clock = clock
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._evictions = 0

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def _encode(self, value: Any) -> tuple:
        raw = json.dumps(value, separators=(",", ":"), default=str).encode("utf-8")
        if len(raw) > self.compression_threshold:
            return zlib.compress(raw), True, len(raw)
        return raw, False, len(raw)

    @staticmethod
    def _decode(entry: CacheEntry) -> Any:
        raw = zlib.decompress(entry.payload) if entry.compressed else entry.payload
        return json.loads(raw.decode("utf-8"))

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.inserted_at > self.max_age

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on miss or expiry."""
        with self._lock:
            entry = self._cache.get(key)
            now = self._clock()
            if entry is None or self._is_expired(entry, now):
                if entry is not None:
                    del self._cache[key]
                self._misses += 1
                return None

            try:
                value = self._decode(entry)
            except (zlib.error, ValueError) as e:
                logger.warning(f"Dropping undecodable cache entry {key[:12]}: {e}")
                del self._cache[key]
                self._misses += 1
                return None

            entry.last_accessed = now
            self._hits += 1
            return value

    def set(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value."""
        payload, compressed, size = self._encode(value)
        now = self._clock()
        with self._lock:
            # Re-setting a key counts as a fresh insertion
            self._cache.pop(key, None)
            while len(self._cache) >= self.max_size:
                evicted_key, _ = self._cache.popitem(last=False)
                self._evictions += 1
                logger.debug(f"Evicted cache entry {evicted_key[:12]}")
            self._cache[key] = CacheEntry(
                key=key,
                payload=payload,
                compressed=compressed,
                size=size,
                inserted_at=now,
                last_accessed=now,
            )
            self._sets += 1

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def cleanup_expired(self) -> int:
        """Remove expired entries. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._cache.items() if self._is_expired(e, now)]
            for key in expired:
                del self._cache[key]
        if expired:
            logger.info(f"Removed {len(expired)} expired cache entries")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._cache

    @property
    def persistent(self) -> bool:
        return self._persistent

    @property
    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._cache),
                "max_size": self.max_size,
                "max_age": self.max_age,
                "hits": self._hits,
                "misses": self._misses,
                "sets": self._sets,
                "evictions": self._evictions,
                "hit_rate": self._hits / total if total > 0 else 0,
                "compressed_entries": sum(1 for e in self._cache.values() if e.compressed),
                "persistent": self._persistent,
            }

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def _read_snapshot(self) -> list:
        try:
            with open(self.snapshot_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict) or data.get("version") != SNAPSHOT_VERSION:
                raise CacheError(f"Unsupported snapshot format in {self.snapshot_path}")
            return [CacheEntry.from_json(item) for item in data.get("entries", [])]
        except CacheError:
            raise
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise CacheError(f"Unreadable snapshot {self.snapshot_path}: {e}") from e

    def load(self) -> int:
        """
        Reload entries from the snapshot.

        An unreadable snapshot leaves the cache empty and memory-only.
        Returns the number of entries loaded.
        """
        if not self._persistent or not self.snapshot_path.exists():
            return 0

        try:
            entries = self._read_snapshot()
        except CacheError as e:
            logger.warning(f"{e}; continuing with an in-memory cache")
            self._persistent = False
            return 0

        now = self._clock()
        loaded = 0
        with self._lock:
            self._cache.clear()
            for entry in sorted(entries, key=lambda e: e.inserted_at):
                if self._is_expired(entry, now):
                    continue
                self._cache[entry.key] = entry
                loaded += 1
            while len(self._cache) > self.max_size:
                self._cache.popitem(last=False)
                self._evictions += 1
        logger.info(f"Loaded {loaded} cache entries from {self.snapshot_path}")
        return loaded

    def save(self) -> bool:
        """Write the snapshot. Returns False if persistence is off or the write failed."""
        if not self._persistent:
            return False

        with self._lock:
            data = {
                "version": SNAPSHOT_VERSION,
                "saved_at": self._clock(),
                "entries": [entry.to_json() for entry in self._cache.values()],
            }

        tmp_path = self.snapshot_path.with_suffix(self.snapshot_path.suffix + ".tmp")
        try:
            self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self.snapshot_path)
        except OSError as e:
            logger.warning(f"Failed to write cache snapshot {self.snapshot_path}: {e}")
            return False

        logger.info(f"Saved {len(data['entries'])} cache entries to {self.snapshot_path}")
        return True
