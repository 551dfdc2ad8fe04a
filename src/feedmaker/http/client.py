from __future__ import annotations

import asyncio
import logging
import time
from typing import Iterable, Optional

import aiohttp

from feedmaker.config.models import AppConfig
from feedmaker.http.cache import HttpCache
from feedmaker.http.models import CacheEntry, FetchOptions, FetchResult
from feedmaker.http.urls import check_fetch_target, resolve_url

logger = logging.getLogger(__name__)

_REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})


class _BodyTooLarge(Exception):
    pass


def default_user_agent(config: AppConfig) -> str:
    info = config.app.info_url or config.app.public_base_url
    return f"{config.app.name} Bot/1.0 (+{info})"


class HttpClient:
    """
    Fetches pages over one shared aiohttp session.

    Redirects are followed by hand so every hop can be checked against the
    scheme, credential and private-address rules. Transport problems never
    raise; they come back as ``FetchResult(ok=False, status=0, error=...)``.
    """

    def __init__(
        self,
        *,
        options: FetchOptions,
        cache: Optional[HttpCache] = None,
        allow_private_hosts: bool = False,
        multi_fetch_concurrency: int = 6,
    ) -> None:
        options.validate()
        if multi_fetch_concurrency < 1:
            raise ValueError("multi_fetch_concurrency must be at least 1.")
        self._options = options
        self._cache = cache
        self._allow_private_hosts = allow_private_hosts
        self._multi_fetch_concurrency = multi_fetch_concurrency
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_config(cls, config: AppConfig, *, cache: Optional[HttpCache] = None) -> HttpClient:
        options = FetchOptions.from_settings(config.http, user_agent=default_user_agent(config))
        return cls(
            options=options,
            cache=cache if cache is not None else HttpCache(config.storage.cache_dir),
            allow_private_hosts=config.http.allow_private_hosts,
            multi_fetch_concurrency=config.http.multi_fetch_concurrency,
        )

    @property
    def options(self) -> FetchOptions:
        return self._options

    @property
    def cache(self) -> Optional[HttpCache]:
        return self._cache

    async def __aenter__(self) -> HttpClient:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def start(self) -> None:
        if self._session is not None:
            return
        self._session = aiohttp.ClientSession()

    async def stop(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def fetch(self, url: str, options: Optional[FetchOptions] = None) -> FetchResult:
        opts = options or self._options
        opts.validate()
        should_close = False
        if self._session is None:
            await self.start()
            should_close = True
        try:
            return await self._fetch_with_cache(url, opts)
        finally:
            if should_close:
                await self.stop()

    async def head(self, url: str, options: Optional[FetchOptions] = None) -> FetchResult:
        opts = (options or self._options).with_overrides(use_cache=False)
        opts.validate()
        should_close = False
        if self._session is None:
            await self.start()
            should_close = True
        try:
            return await self._request("HEAD", url, opts, extra_headers={})
        finally:
            if should_close:
                await self.stop()

    async def fetch_many(
        self,
        urls: Iterable[str],
        options: Optional[FetchOptions] = None,
    ) -> dict[str, FetchResult]:
        """Fetch all URLs concurrently, bypassing the cache, and return once every one has finished."""
        opts = (options or self._options).with_overrides(use_cache=False)
        unique = list(dict.fromkeys(urls))
        if not unique:
            return {}
        semaphore = asyncio.Semaphore(self._multi_fetch_concurrency)

        async def _one(target: str) -> FetchResult:
            async with semaphore:
                return await self._request("GET", target, opts, extra_headers={})

        should_close = False
        if self._session is None:
            await self.start()
            should_close = True
        try:
            results = await asyncio.gather(*(_one(u) for u in unique))
        finally:
            if should_close:
                await self.stop()
        return dict(zip(unique, results))

    async def _fetch_with_cache(self, url: str, opts: FetchOptions) -> FetchResult:
        use_cache = opts.use_cache and self._cache is not None
        entry: Optional[CacheEntry] = None
        cached_body: Optional[bytes] = None
        conditional: dict[str, str] = {}

        if use_cache:
            assert self._cache is not None
            entry = self._cache.get(url)
            if entry is not None:
                cached_body = self._cache.read_body(url)
            if entry is not None and cached_body is not None:
                if self._cache.is_fresh(entry, opts.cache_ttl_seconds):
                    logger.debug("http.cache_hit url=%s", url)
                    return self._result_from_cache(entry, cached_body, revalidated=False)
                if entry.etag:
                    conditional["If-None-Match"] = entry.etag
                if entry.last_modified:
                    conditional["If-Modified-Since"] = entry.last_modified

        result = await self._request("GET", url, opts, extra_headers=conditional)

        if use_cache and result.status == 304 and entry is not None and cached_body is not None:
            assert self._cache is not None
            entry = self._cache.touch(url, entry)
            logger.debug("http.cache_revalidated url=%s", url)
            return self._result_from_cache(entry, cached_body, revalidated=True)

        if use_cache and result.ok and result.body:
            assert self._cache is not None
            new_entry = CacheEntry(
                url=url,
                status=result.status,
                headers=dict(result.headers),
                final_url=result.final_url,
                etag=result.headers.get("etag"),
                last_modified=result.headers.get("last-modified"),
                fetched_at=time.time(),
            )
            try:
                self._cache.put(url, new_entry, result.body)
            except OSError:
                logger.warning("Failed to write HTTP cache entry. url=%s", url, exc_info=True)
        return result

    @staticmethod
    def _result_from_cache(entry: CacheEntry, body: bytes, *, revalidated: bool) -> FetchResult:
        return FetchResult(
            ok=200 <= entry.status < 400,
            status=entry.status,
            headers=dict(entry.headers),
            body=body,
            final_url=entry.final_url or entry.url,
            from_cache=True,
            revalidated=revalidated,
        )

    def _build_headers(self, opts: FetchOptions, extra_headers: dict[str, str]) -> dict[str, str]:
        headers = {
            "Accept": opts.accept,
            "Accept-Language": opts.accept_language,
        }
        if opts.user_agent:
            headers["User-Agent"] = opts.user_agent
        headers.update(opts.extra_headers)
        headers.update(extra_headers)
        return headers

    async def _request(
        self,
        method: str,
        url: str,
        opts: FetchOptions,
        *,
        extra_headers: dict[str, str],
    ) -> FetchResult:
        assert self._session is not None
        timeout = aiohttp.ClientTimeout(total=opts.timeout_seconds, connect=opts.connect_timeout_seconds)
        headers = self._build_headers(opts, extra_headers)

        current = url
        seen = {current}
        redirects = 0
        logger.debug("http.fetch_start method=%s url=%s", method, url)

        while True:
            blocked = check_fetch_target(current, allow_private_hosts=self._allow_private_hosts)
            if blocked is not None:
                if redirects > 0 and blocked == "invalid_url":
                    blocked = "invalid_redirect_target"
                logger.info("Fetch blocked. url=%s reason=%s", current, blocked)
                return FetchResult.failure(current, blocked)

            try:
                async with self._session.request(
                    method,
                    current,
                    headers=headers,
                    timeout=timeout,
                    allow_redirects=False,
                ) as response:
                    status = response.status
                    response_headers = {k.lower(): v for k, v in response.headers.items()}

                    if status in _REDIRECT_STATUSES and "location" in response_headers:
                        target = resolve_url(response_headers["location"], current)
                        if not target:
                            return FetchResult.failure(current, "invalid_redirect_target", status=status)
                        if target in seen:
                            return FetchResult.failure(current, "redirect_loop", status=status)
                        if redirects >= opts.max_redirects:
                            return FetchResult.failure(current, "too_many_redirects", status=status)
                        redirects += 1
                        seen.add(target)
                        logger.debug("http.redirect from=%s to=%s status=%s", current, target, status)
                        current = target
                        continue

                    body = b""
                    if method != "HEAD":
                        body = await self._read_body(response, opts.max_body_bytes)
            except _BodyTooLarge:
                logger.warning("Response body too large. url=%s limit=%d", current, opts.max_body_bytes)
                return FetchResult.failure(current, "body_too_large")
            except asyncio.TimeoutError:
                logger.info("Fetch timed out. url=%s timeout_seconds=%s", current, opts.timeout_seconds)
                return FetchResult.failure(current, "timeout")
            except aiohttp.ClientError as e:
                logger.info("Fetch failed. url=%s error=%s", current, e)
                return FetchResult.failure(current, f"{type(e).__name__}: {e}")

            ok = 200 <= status < 400
            logger.debug("http.fetch_done url=%s status=%s bytes=%d", current, status, len(body))
            return FetchResult(
                ok=ok,
                status=status,
                headers=response_headers,
                body=body,
                final_url=current,
                error=None if ok else f"HTTP {status}",
            )

    @staticmethod
    async def _read_body(response: aiohttp.ClientResponse, limit: int) -> bytes:
        chunks: list[bytes] = []
        size = 0
        async for chunk in response.content.iter_chunked(64 * 1024):
            size += len(chunk)
            if limit and size > limit:
                raise _BodyTooLarge()
            chunks.append(chunk)
        return b"".join(chunks)
