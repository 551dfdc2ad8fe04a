from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional

from feedmaker.config.models import HttpSettings

_CHARSET_RE = re.compile(r"charset\s*=\s*\"?([^\";\s]+)\"?", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class FetchOptions:
    """Per-request knobs. Defaults mirror the documented HttpSettings defaults."""

    timeout_seconds: float = 18.0
    connect_timeout_seconds: float = 8.0
    max_redirects: int = 5
    user_agent: str = ""
    accept: str = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
    accept_language: str = "en-US,en;q=0.9"
    extra_headers: Mapping[str, str] = field(default_factory=dict)
    use_cache: bool = True
    cache_ttl_seconds: int = 900
    max_body_bytes: int = 8 * 1024 * 1024

    @classmethod
    def from_settings(cls, settings: HttpSettings, *, user_agent: str) -> FetchOptions:
        return cls(
            timeout_seconds=settings.timeout_seconds,
            connect_timeout_seconds=settings.connect_timeout_seconds,
            max_redirects=settings.max_redirects,
            user_agent=settings.user_agent or user_agent,
            accept=settings.accept,
            accept_language=settings.accept_language,
            cache_ttl_seconds=settings.cache_ttl_seconds,
            max_body_bytes=settings.max_body_bytes,
        )

    def with_overrides(self, **changes) -> FetchOptions:
        return replace(self, **changes)

    def validate(self) -> None:
        if self.timeout_seconds <= 0 or self.connect_timeout_seconds <= 0:
            raise ValueError("Fetch timeouts must be positive.")
        if self.max_redirects < 0:
            raise ValueError("max_redirects must not be negative.")
        if self.cache_ttl_seconds < 0:
            raise ValueError("cache_ttl_seconds must not be negative.")


@dataclass(slots=True)
class FetchResult:
    ok: bool
    status: int
    headers: dict[str, str]
    body: bytes
    final_url: str
    from_cache: bool = False
    revalidated: bool = False
    error: Optional[str] = None

    @classmethod
    def failure(cls, url: str, error: str, *, status: int = 0) -> FetchResult:
        return cls(ok=False, status=status, headers={}, body=b"", final_url=url, error=error)

    @property
    def charset(self) -> Optional[str]:
        match = _CHARSET_RE.search(self.headers.get("content-type", ""))
        return match.group(1).strip().lower() if match else None

    def text(self) -> str:
        charset = self.charset
        if charset:
            try:
                return self.body.decode(charset, errors="replace")
            except LookupError:
                pass
        return self.body.decode("utf-8", errors="replace")


@dataclass(slots=True)
class CacheEntry:
    url: str
    status: int
    headers: dict[str, str]
    final_url: str
    etag: Optional[str]
    last_modified: Optional[str]
    fetched_at: float


def encode_cache_entry(entry: CacheEntry) -> dict:
    return {
        "url": entry.url,
        "status": entry.status,
        "headers": dict(entry.headers),
        "final_url": entry.final_url,
        "etag": entry.etag,
        "last_modified": entry.last_modified,
        "fetched_at": entry.fetched_at,
    }


def decode_cache_entry(payload: dict) -> CacheEntry:
    return CacheEntry(
        url=str(payload.get("url", "")),
        status=int(payload.get("status", 0)),
        headers={str(k).lower(): str(v) for k, v in (payload.get("headers") or {}).items()},
        final_url=str(payload.get("final_url", payload.get("url", ""))),
        etag=payload.get("etag"),
        last_modified=payload.get("last_modified"),
        fetched_at=float(payload.get("fetched_at", 0.0)),
    )
