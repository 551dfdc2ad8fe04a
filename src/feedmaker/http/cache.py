from __future__ import annotations

import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Optional

from feedmaker.core.io import atomic_write_bytes, atomic_write_json
from feedmaker.http.models import CacheEntry, decode_cache_entry, encode_cache_entry

logger = logging.getLogger(__name__)


class HttpCache:
    """
    On-disk response cache keyed by the SHA-256 of the request URL.

    Each entry is a pair of files, ``<key>.body`` and ``<key>.meta.json``. Both are
    replaced atomically; concurrent writers are not coordinated, so the last one wins.
    Entries are never evicted automatically.
    """

    def __init__(self, cache_dir: str | Path) -> None:
        self._dir = Path(cache_dir)

    @property
    def directory(self) -> Path:
        return self._dir

    @staticmethod
    def key_for(url: str) -> str:
        return hashlib.sha256(url.encode("utf-8")).hexdigest()

    def _meta_path(self, url: str) -> Path:
        return self._dir / f"{self.key_for(url)}.meta.json"

    def _body_path(self, url: str) -> Path:
        return self._dir / f"{self.key_for(url)}.body"

    def get(self, url: str) -> Optional[CacheEntry]:
        meta_path = self._meta_path(url)
        if not meta_path.exists():
            return None
        try:
            payload = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("Unreadable cache metadata, ignoring entry. path=%s", meta_path)
            return None
        if not isinstance(payload, dict):
            return None
        return decode_cache_entry(payload)

    def read_body(self, url: str) -> Optional[bytes]:
        body_path = self._body_path(url)
        try:
            return body_path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError:
            logger.warning("Unreadable cache body, ignoring entry. path=%s", body_path)
            return None

    def put(self, url: str, entry: CacheEntry, body: bytes) -> None:
        atomic_write_bytes(self._body_path(url), body)
        atomic_write_json(self._meta_path(url), encode_cache_entry(entry))
        logger.debug("http.cache_store url=%s bytes=%d", url, len(body))

    def touch(self, url: str, entry: CacheEntry, now: Optional[float] = None) -> CacheEntry:
        """Refresh only fetched_at, used after a 304 revalidation."""
        entry.fetched_at = time.time() if now is None else now
        atomic_write_json(self._meta_path(url), encode_cache_entry(entry))
        return entry

    @staticmethod
    def is_fresh(entry: CacheEntry, ttl_seconds: float, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return current - entry.fetched_at <= ttl_seconds

    def clear(self) -> int:
        if not self._dir.exists():
            return 0
        removed = 0
        for path in self._dir.iterdir():
            if path.is_file() and (path.name.endswith(".body") or path.name.endswith(".meta.json")):
                path.unlink(missing_ok=True)
                removed += 1
        logger.info("HTTP cache cleared. path=%s files=%d", self._dir, removed)
        return removed
