from __future__ import annotations

from feedmaker.http.cache import HttpCache
from feedmaker.http.models import CacheEntry, FetchOptions, FetchResult

__all__ = ["CacheEntry", "FetchOptions", "FetchResult", "HttpCache", "HttpClient"]


def __getattr__(name: str):
    if name == "HttpClient":
        from feedmaker.http.client import HttpClient as _HttpClient

        return _HttpClient
    raise AttributeError(name)
