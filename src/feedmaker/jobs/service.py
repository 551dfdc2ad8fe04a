from __future__ import annotations

import logging
from typing import Iterable, Optional

from feedmaker.config.models import AppConfig
from feedmaker.core.errors import FeedGenerationError, JobNotFoundError
from feedmaker.core.models import FEED_FORMATS, DiscoveredFeed, FeedItem
from feedmaker.core.utils import new_job_id, utc_now
from feedmaker.extract.discovery import discover_feeds, rank_native_candidates
from feedmaker.extract.heuristics import ExtractionOptions
from feedmaker.extract.impl import ExtractionReport, extract_with_report
from feedmaker.feeds.builder import extension_for
from feedmaker.feeds.native import NATIVE_ACCEPT, NativeFeedError, effective_native_url, parse_native
from feedmaker.http.client import HttpClient
from feedmaker.http.models import FetchResult
from feedmaker.http.urls import is_http_url
from feedmaker.jobs.filters import normalize_keywords
from feedmaker.jobs.models import Job
from feedmaker.jobs.refresh import RefreshOrchestrator, RunSummary
from feedmaker.jobs.state import RefreshState, fetch_failed
from feedmaker.jobs.store import JobStatistics, JobStore

logger = logging.getLogger(__name__)

# Advertised feeds tried per page when resolving a native source.
NATIVE_CANDIDATES = 5


class FeedService:
    """Job operations used by the CLI and any outer surface (admin UI, HTTP handlers)."""

    def __init__(
        self,
        *,
        config: AppConfig,
        client: HttpClient,
        store: Optional[JobStore] = None,
        orchestrator: Optional[RefreshOrchestrator] = None,
    ) -> None:
        self._config = config
        self._client = client
        self._store = store or JobStore(
            config.storage.jobs_dir,
            config.storage.feeds_dir,
            config.storage.lock_path or None,
        )
        self._orchestrator = orchestrator or RefreshOrchestrator(config=config, store=self._store, fetcher=client)

    @classmethod
    def from_config(cls, config: AppConfig) -> FeedService:
        return cls(config=config, client=HttpClient.from_config(config))

    async def __aenter__(self) -> FeedService:
        await self._client.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self._client.stop()

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def orchestrator(self) -> RefreshOrchestrator:
        return self._orchestrator

    def _clamp_limit(self, limit: Optional[int]) -> int:
        settings = self._config.extraction
        value = settings.default_limit if limit is None else int(limit)
        return max(1, min(settings.max_limit, value))

    def _clamp_interval(self, interval: Optional[int]) -> int:
        settings = self._config.refresh
        value = settings.default_interval_seconds if interval is None else int(interval)
        return max(settings.min_interval_seconds, value)

    async def create_job(
        self,
        source_url: str,
        *,
        format: str = "rss",
        limit: Optional[int] = None,
        mode: str = "custom",
        include_keywords: Iterable[str] | str = (),
        exclude_keywords: Iterable[str] | str = (),
        allow_empty: bool = False,
        refresh_interval: Optional[int] = None,
        extraction: Optional[ExtractionOptions] = None,
    ) -> Job:
        """
        Register a feed job and generate its first file.

        Raises ValueError for bad input and FeedGenerationError when the first
        generation fails; in that case nothing is left behind.
        """

        source_url = (source_url or "").strip()
        if not is_http_url(source_url):
            raise ValueError(f"Source URL must be an absolute http(s) URL: {source_url!r}")
        fmt = (format or "").strip().lower()
        if fmt not in FEED_FORMATS:
            raise ValueError(f"Unsupported feed format: {format!r}")
        if mode not in ("native", "custom"):
            raise ValueError(f"Unsupported mode: {mode!r}")

        native_source: Optional[str] = None
        if mode == "native":
            native_source = await self.resolve_native_source(source_url)
            if native_source is None:
                logger.info("No usable native feed found, falling back to custom mode. url=%s", source_url)
                mode = "custom"

        job_id = new_job_id()
        filename = f"{job_id}.{extension_for(fmt)}"
        opts = extraction or ExtractionOptions()
        job = Job(
            job_id=job_id,
            source_url=source_url,
            native_source=native_source,
            feed_url=f"{self._config.app.public_base_url.rstrip('/')}/{filename}",
            feed_filename=filename,
            mode=mode,  # type: ignore[arg-type]
            format=fmt,
            limit=self._clamp_limit(limit),
            refresh_interval=self._clamp_interval(refresh_interval),
            include_keywords=normalize_keywords(include_keywords),
            exclude_keywords=normalize_keywords(exclude_keywords),
            allow_empty=allow_empty,
            item_selector=opts.item_selector,
            title_selector=opts.title_selector,
            summary_selector=opts.summary_selector,
        )

        updated, outcome = await self._orchestrator.refresh_job(job)
        if outcome.state is RefreshState.FAIL:
            self._store.delete(job_id)
            raise FeedGenerationError(outcome.error or "Feed generation failed", http_status=outcome.http_status or 0)
        if outcome.state is RefreshState.SKIP:
            self._orchestrator.publish_empty(updated, now=utc_now())

        logger.info(
            "Feed job created. job_id=%s mode=%s format=%s items=%s url=%s",
            updated.job_id,
            updated.mode,
            updated.format,
            updated.items_count,
            source_url,
        )
        return updated

    async def resolve_native_source(self, url: str) -> Optional[str]:
        """Return a feed URL for the page: the URL itself when it is a feed, else the best advertised feed."""
        target = effective_native_url(url)
        options = self._client.options.with_overrides(accept=NATIVE_ACCEPT)
        fetch = await self._client.fetch(target, options)
        if fetch_failed(fetch):
            return None
        if self._parses_as_feed(fetch):
            return fetch.final_url

        candidates = rank_native_candidates(discover_feeds(fetch.text(), fetch.final_url), fetch.final_url)
        if not candidates:
            return None
        hrefs = [c.href for c in candidates[:NATIVE_CANDIDATES]]
        results = await self._client.fetch_many(hrefs, options)
        for href in hrefs:
            result = results.get(href)
            if result is not None and not fetch_failed(result) and self._parses_as_feed(result):
                return href
        return None

    @staticmethod
    def _parses_as_feed(fetch: FetchResult) -> bool:
        content_type = fetch.headers.get("content-type", "").lower()
        if "html" in content_type:
            return False
        try:
            native = parse_native(fetch.body, fetch.headers, fetch.final_url)
        except NativeFeedError:
            return False
        return bool(native.items)

    def update_filters(
        self,
        job_id: str,
        include_keywords: Iterable[str] | str,
        exclude_keywords: Iterable[str] | str,
    ) -> bool:
        if not self._store.is_valid_id(job_id):
            return False
        job = self._store.load(job_id)
        if job is None:
            return False
        job.include_keywords = normalize_keywords(include_keywords)
        job.exclude_keywords = normalize_keywords(exclude_keywords)
        self._store.save(job)
        logger.info(
            "Job filters updated. job_id=%s include=%s exclude=%s",
            job_id,
            job.include_keywords,
            job.exclude_keywords,
        )
        return True

    def delete_job(self, job_id: str) -> None:
        if not self._store.is_valid_id(job_id) or not self._store.delete(job_id):
            raise JobNotFoundError(job_id)

    def list_jobs(self) -> list[Job]:
        return self._store.list()

    def statistics(self) -> JobStatistics:
        return self._store.statistics(warn_threshold=self._config.refresh.failure_alert_threshold)

    async def refresh_job(self, job_id: str) -> bool:
        if not self._store.is_valid_id(job_id):
            raise JobNotFoundError(job_id)
        job = self._store.get(job_id)
        _, outcome = await self._orchestrator.refresh_job(job)
        return outcome.succeeded

    async def run_batch(self, *, max_jobs: Optional[int] = None) -> Optional[RunSummary]:
        return await self._orchestrator.run_batch(max_jobs=max_jobs)

    async def preview(
        self,
        url: str,
        *,
        limit: Optional[int] = None,
        options: Optional[ExtractionOptions] = None,
    ) -> tuple[list[FeedItem], ExtractionReport]:
        """Fetch a page and run extraction without creating a job."""
        fetch = await self._client.fetch(url)
        if fetch_failed(fetch):
            raise FeedGenerationError(fetch.error or f"HTTP {fetch.status}", http_status=fetch.status)
        return extract_with_report(fetch.text(), fetch.final_url, self._clamp_limit(limit), options)

    async def discover(self, url: str) -> list[DiscoveredFeed]:
        fetch = await self._client.fetch(url)
        if fetch_failed(fetch):
            raise FeedGenerationError(fetch.error or f"HTTP {fetch.status}", http_status=fetch.status)
        return rank_native_candidates(discover_feeds(fetch.text(), fetch.final_url), fetch.final_url)
