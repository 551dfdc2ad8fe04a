from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol, Sequence

from feedmaker.config.models import AppConfig
from feedmaker.core.io import atomic_write_text
from feedmaker.core.models import FeedItem, encode_item
from feedmaker.core.utils import format_rfc3339, hash_text, parse_rfc3339, utc_now
from feedmaker.extract.heuristics import ExtractionOptions
from feedmaker.extract.impl import extract_with_report
from feedmaker.extract.normalize import normalize
from feedmaker.feeds.builder import build_feed
from feedmaker.feeds.native import NATIVE_ACCEPT, NativeFeed, NativeFeedError, effective_native_url, parse_native
from feedmaker.feeds.validator import validate
from feedmaker.http.models import FetchOptions, FetchResult
from feedmaker.http.urls import host_of
from feedmaker.jobs.filters import apply_keyword_filters
from feedmaker.jobs.models import Job
from feedmaker.jobs.state import RefreshOutcome, RefreshState, apply_outcome, decide, fetch_failed
from feedmaker.jobs.store import JobStore

logger = logging.getLogger(__name__)

NOTE_NATIVE_SWITCH = "native failed, switched to custom"


class Fetcher(Protocol):
    @property
    def options(self) -> FetchOptions: ...

    async def fetch(self, url: str, options: Optional[FetchOptions] = None) -> FetchResult: ...


@dataclass(slots=True)
class RunSummary:
    started_at: str
    finished_at: str = ""
    total: int = 0
    due: int = 0
    refreshed: int = 0
    failures: int = 0
    skipped: int = 0
    purged: int = 0
    deferred: int = 0
    failed_jobs: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "total": self.total,
            "due": self.due,
            "refreshed": self.refreshed,
            "failures": self.failures,
            "skipped": self.skipped,
            "purged": self.purged,
            "deferred": self.deferred,
            "failed_jobs": list(self.failed_jobs),
        }


def items_fingerprint(items: Sequence[FeedItem]) -> str:
    return hash_text(json.dumps([encode_item(item) for item in items], sort_keys=True, ensure_ascii=False))


class RefreshOrchestrator:
    """
    Re-runs fetch and extraction for jobs and publishes the result.

    Every attempt ends in exactly one of ok, skip or fail. Only ok replaces the
    published file; fail and skip leave the last good file in place.
    """

    def __init__(self, *, config: AppConfig, store: JobStore, fetcher: Fetcher) -> None:
        self._config = config
        self._store = store
        self._fetcher = fetcher
        self._auto_allow_empty = [re.compile(p, re.IGNORECASE) for p in config.refresh.auto_allow_empty_patterns]

    @property
    def store(self) -> JobStore:
        return self._store

    def is_due(self, job: Job, now: Optional[datetime] = None) -> bool:
        if not job.last_refresh_at:
            return True
        try:
            last = parse_rfc3339(job.last_refresh_at)
        except ValueError:
            return True
        interval = max(self._config.refresh.min_interval_seconds, job.refresh_interval)
        return ((now or utc_now()) - last).total_seconds() >= interval

    def auto_allow_empty(self, url: str) -> bool:
        return any(pattern.search(url) for pattern in self._auto_allow_empty)

    async def refresh_job(self, job: Job, *, now: Optional[datetime] = None) -> tuple[Job, RefreshOutcome]:
        """Run one attempt, persist the updated record and return it with the outcome."""
        now = now or utc_now()
        logger.debug(
            "refresh.state job_id=%s state=%s mode=%s url=%s",
            job.job_id,
            RefreshState.RUNNING.value,
            job.mode,
            job.source_url,
        )
        try:
            job, outcome = await self._attempt(job, now)
        except Exception as e:
            logger.exception("Unexpected error while refreshing job. job_id=%s", job.job_id)
            outcome = RefreshOutcome(state=RefreshState.FAIL, error=f"{type(e).__name__}: {e}", note="internal error")

        updated = apply_outcome(job, outcome, now)
        self._store.save(updated)

        if outcome.state is RefreshState.FAIL:
            logger.warning(
                "Job refresh failed. job_id=%s streak=%s status=%s error=%s",
                updated.job_id,
                updated.failure_streak,
                outcome.http_status,
                outcome.error,
            )
            threshold = self._config.refresh.failure_alert_threshold
            if threshold > 0 and updated.failure_streak >= threshold:
                logger.warning(
                    "Job failure streak reached alert threshold. job_id=%s streak=%s threshold=%s url=%s",
                    updated.job_id,
                    updated.failure_streak,
                    threshold,
                    updated.source_url,
                )
        else:
            logger.info(
                "Job refreshed. job_id=%s state=%s items=%s note=%s",
                updated.job_id,
                outcome.state.value,
                updated.items_count,
                updated.last_refresh_note,
            )
        return updated, outcome

    async def _attempt(self, job: Job, now: datetime) -> tuple[Job, RefreshOutcome]:
        if job.mode != "native":
            return job, await self._refresh_custom(job, now)

        url = effective_native_url(job.native_source or job.source_url)
        options = self._fetcher.options.with_overrides(use_cache=False, accept=NATIVE_ACCEPT)
        fetch = await self._fetcher.fetch(url, options)
        if fetch_failed(fetch):
            return job, self._outcome_from_decision(job, fetch, [])

        try:
            native = parse_native(fetch.body, fetch.headers, fetch.final_url)
        except NativeFeedError as e:
            logger.warning("Native feed unusable, switching job to custom. job_id=%s error=%s", job.job_id, e)
            switched = replace(job, mode="custom", native_source=None)
            outcome = await self._refresh_custom(switched, now)
            outcome.note = f"{NOTE_NATIVE_SWITCH}; {outcome.note}" if outcome.note else NOTE_NATIVE_SWITCH
            outcome.details.setdefault("native_error", str(e))
            return switched, outcome

        items = self._select(job, native.items)
        return job, self._publish(job, fetch, items, now, native=native)

    async def _refresh_custom(self, job: Job, now: datetime) -> RefreshOutcome:
        options = self._fetcher.options.with_overrides(use_cache=False)
        fetch = await self._fetcher.fetch(job.source_url, options)
        if fetch_failed(fetch):
            return self._outcome_from_decision(job, fetch, [])

        filtered = bool(job.include_keywords or job.exclude_keywords)
        # Over-fetch when filters may discard items.
        limit = max(job.limit, self._config.extraction.max_limit) if filtered else job.limit
        extraction = ExtractionOptions(
            item_selector=job.item_selector,
            title_selector=job.title_selector,
            summary_selector=job.summary_selector,
        )
        raw_items, report = extract_with_report(fetch.text(), fetch.final_url, limit, extraction)
        items = self._select(job, raw_items)
        return self._publish(
            job,
            fetch,
            items,
            now,
            title=report.page_title or host_of(job.source_url) or job.source_url,
            description=report.page_description or f"Items extracted from {job.source_url}",
        )

    def _select(self, job: Job, items: Sequence[FeedItem]) -> list[FeedItem]:
        return normalize(apply_keyword_filters(items, job.include_keywords, job.exclude_keywords), job.limit)

    def _outcome_from_decision(self, job: Job, fetch: FetchResult, items: Sequence[FeedItem]) -> RefreshOutcome:
        decision = decide(job, fetch, items, auto_allow_empty=self.auto_allow_empty(job.source_url))
        details = {"final_url": fetch.final_url} if fetch.final_url else {}
        return RefreshOutcome(
            state=decision.state,
            http_status=fetch.status or None,
            error=decision.error,
            note=decision.note,
            auto=decision.auto,
            details=details,
        )

    def _publish(
        self,
        job: Job,
        fetch: FetchResult,
        items: Sequence[FeedItem],
        now: datetime,
        *,
        native: Optional[NativeFeed] = None,
        title: str = "",
        description: str = "",
    ) -> RefreshOutcome:
        outcome = self._outcome_from_decision(job, fetch, items)
        if outcome.state is not RefreshState.OK:
            return outcome

        passthrough = (
            native is not None
            and native.format == job.format
            and not job.include_keywords
            and not job.exclude_keywords
        )
        if passthrough:
            assert native is not None
            body = native.body
            fingerprint = hash_text(body)
            note = "native refresh"
            if native.notes:
                note += f" ({'; '.join(native.notes)})"
        else:
            if native is not None:
                title = title or native.title
                description = description or native.description
            body = build_feed(
                job.format,
                title=title or host_of(job.source_url) or job.source_url,
                link=(native.link if native is not None and native.link else job.source_url),
                description=description or f"Items from {job.source_url}",
                items=items,
                feed_url=job.feed_url,
                last_built=now,
            )
            fingerprint = items_fingerprint(items)
            note = "native rebuilt" if native is not None else "custom refresh"

        validation = validate(job.format, body, checked_at=format_rfc3339(now))
        if not validation.ok:
            outcome.state = RefreshState.FAIL
            outcome.error = validation.errors[0] if validation.errors else "Feed failed validation."
            outcome.note = "validation failed"
            outcome.details["validation_errors"] = list(validation.errors)
            return outcome

        feed_path = self._store.feed_path(job)
        if fingerprint == job.content_hash and feed_path.exists():
            note = f"{note}; unchanged"
            logger.debug("refresh.unchanged job_id=%s", job.job_id)
        else:
            atomic_write_text(feed_path, body)
            logger.debug("refresh.published job_id=%s path=%s bytes=%d", job.job_id, feed_path, len(body))

        outcome.note = note
        outcome.items_count = len(items)
        outcome.content_hash = fingerprint
        outcome.validation = validation
        return outcome

    def publish_empty(self, job: Job, *, now: Optional[datetime] = None) -> None:
        """Write a feed without items, used when a new job's first refresh is skipped."""
        feed_path = self._store.feed_path(job)
        if feed_path.exists():
            return
        body = build_feed(
            job.format,
            title=host_of(job.source_url) or job.source_url,
            link=job.source_url,
            description=f"Items from {job.source_url}",
            items=[],
            feed_url=job.feed_url,
            last_built=now or utc_now(),
        )
        atomic_write_text(feed_path, body)

    async def run_batch(self, *, max_jobs: Optional[int] = None, now: Optional[datetime] = None) -> Optional[RunSummary]:
        """
        Refresh every due job once, oldest first.

        Returns None without doing anything when another batch holds the lock.
        """

        with self._store.refresh_lock() as acquired:
            if not acquired:
                logger.info("Refresh batch already running, skipping this run.")
                return None
            return await self._run_batch_locked(max_jobs=max_jobs, now=now)

    async def _run_batch_locked(self, *, max_jobs: Optional[int], now: Optional[datetime]) -> RunSummary:
        current = now or utc_now()
        summary = RunSummary(started_at=format_rfc3339(current))
        jobs = self._store.list()
        summary.total = len(jobs)

        retention_days = self._config.refresh.retention_days
        due: list[Job] = []
        for job in jobs:
            if self._store.should_purge(job, retention_days=retention_days, now=current):
                self._store.delete(job.job_id)
                summary.purged += 1
                logger.info("Purged stale job. job_id=%s retention_days=%s", job.job_id, retention_days)
                continue
            if self.is_due(job, current):
                due.append(job)
        summary.due = len(due)

        cap = self._config.refresh.max_per_run if max_jobs is None else max_jobs
        batch = due if cap <= 0 else due[:cap]
        summary.deferred = len(due) - len(batch)

        for job in batch:
            updated, outcome = await self.refresh_job(job, now=now)
            if outcome.state is RefreshState.OK:
                summary.refreshed += 1
            elif outcome.state is RefreshState.SKIP:
                summary.skipped += 1
            else:
                summary.failures += 1
                summary.failed_jobs.append(
                    {
                        "job_id": updated.job_id,
                        "error": updated.last_refresh_error,
                        "failure_streak": updated.failure_streak,
                    }
                )

        summary.finished_at = format_rfc3339(utc_now())
        self._append_run_log(summary)
        logger.info(
            "Refresh batch finished. due=%s refreshed=%s skipped=%s failures=%s purged=%s deferred=%s",
            summary.due,
            summary.refreshed,
            summary.skipped,
            summary.failures,
            summary.purged,
            summary.deferred,
        )
        return summary

    def _append_run_log(self, summary: RunSummary) -> None:
        path = Path(self._config.storage.refresh_log_path)
        lines: list[str] = []
        if path.exists():
            lines = [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
        lines.append(json.dumps(summary.to_dict(), sort_keys=True))
        max_lines = self._config.refresh.log_max_lines
        if max_lines > 0:
            lines = lines[-max_lines:]
        try:
            atomic_write_text(path, "\n".join(lines) + "\n")
        except OSError:
            logger.warning("Failed to write refresh run log. path=%s", path, exc_info=True)

    def recent_runs(self, limit: int = 5) -> list[dict]:
        """Most recent run summaries, newest first."""
        path = Path(self._config.storage.refresh_log_path)
        if limit <= 0 or not path.exists():
            return []
        entries: list[dict] = []
        for line in reversed(path.read_text(encoding="utf-8").splitlines()[-limit:]):
            try:
                decoded = json.loads(line)
            except ValueError:
                continue
            if isinstance(decoded, dict):
                entries.append(decoded)
        return entries
