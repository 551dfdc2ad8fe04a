import json
import os
import stat
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from feedmaker.config.models import AppConfig
from feedmaker.feeds.validator import validate
from feedmaker.http.models import FetchOptions, FetchResult
from feedmaker.jobs.models import Job
from feedmaker.jobs.refresh import NOTE_NATIVE_SWITCH, RefreshOrchestrator
from feedmaker.jobs.state import NOTE_SKIP_AUTO, NOTE_SKIP_MANUAL, RefreshState
from feedmaker.jobs.store import JobStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

PAGE_URL = "https://example.com/news"
FEED_URL = "https://example.com/feed.xml"

NEWS_PAGE = """
<html><head><title>Example News</title>
<script type="application/ld+json">
{"@type": "ItemList", "itemListElement": [
  {"url": "/2024/05/01/first-story", "name": "First story headline"},
  {"url": "/2024/05/02/second-story", "name": "Second story about apples"},
  {"url": "/2024/05/03/third-story", "name": "Third story headline"}
]}
</script></head><body></body></html>
"""

EMPTY_PAGE = "<html><body><p>Nothing here yet</p></body></html>"

NATIVE_RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel>
<title>Native</title><link>https://example.com/</link><description>Native feed</description>
<item><title>Native item</title><link>https://example.com/native-item</link></item>
</channel></rss>
"""


def make_config(root: Path, **refresh) -> AppConfig:
    return AppConfig.model_validate(
        {
            "app": {"public_base_url": "http://localhost:8000/feeds"},
            "logging": {
                "level": "INFO",
                "file": {"path": str(root / "logs" / "feedmaker.log"), "rotation": {"backup_count": 1}},
            },
            "storage": {
                "feeds_dir": str(root / "feeds"),
                "jobs_dir": str(root / "jobs"),
                "cache_dir": str(root / "cache"),
                "refresh_log_path": str(root / "logs" / "refresh-runs.jsonl"),
            },
            "refresh": {"auto_allow_empty_patterns": [r"^https?://(www\.)?bing\.com/news/search"], **refresh},
        }
    )


def html_result(url: str, html: str) -> FetchResult:
    return FetchResult(
        ok=True,
        status=200,
        headers={"content-type": "text/html; charset=utf-8"},
        body=html.encode("utf-8"),
        final_url=url,
    )


class StubFetcher:
    """Serves canned results by URL and records what was asked for."""

    def __init__(self, responses: dict[str, FetchResult]) -> None:
        self.responses = responses
        self.calls: list[tuple[str, Optional[FetchOptions]]] = []
        self._options = FetchOptions(user_agent="test")

    @property
    def options(self) -> FetchOptions:
        return self._options

    async def fetch(self, url: str, options: Optional[FetchOptions] = None) -> FetchResult:
        self.calls.append((url, options))
        if url not in self.responses:
            return FetchResult.failure(url, "ClientConnectorError: unreachable")
        return self.responses[url]


class RefreshOrchestratorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.config = make_config(self.root)
        self.store = JobStore(self.config.storage.jobs_dir, self.config.storage.feeds_dir)
        self.fetcher = StubFetcher({PAGE_URL: html_result(PAGE_URL, NEWS_PAGE)})
        self.orchestrator = RefreshOrchestrator(config=self.config, store=self.store, fetcher=self.fetcher)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _job(self, job_id: str = "job1", fmt: str = "rss", **changes) -> Job:
        ext = "xml" if fmt == "rss" else "json"
        job = Job(
            job_id=job_id,
            source_url=PAGE_URL,
            feed_url=f"http://localhost:8000/feeds/{job_id}.{ext}",
            feed_filename=f"{job_id}.{ext}",
            format=fmt,
        )
        for key, value in changes.items():
            setattr(job, key, value)
        return job

    async def test_custom_refresh_publishes_valid_feed(self) -> None:
        job, outcome = await self.orchestrator.refresh_job(self._job(), now=NOW)

        self.assertIs(outcome.state, RefreshState.OK)
        self.assertEqual(job.items_count, 3)
        self.assertEqual(job.refresh_count, 1)
        self.assertEqual(job.last_refresh_note, "custom refresh")
        body = self.store.feed_path(job).read_text(encoding="utf-8")
        self.assertTrue(validate("rss", body).ok)
        self.assertIn("https://example.com/2024/05/01/first-story", body)
        self.assertEqual(self.store.get("job1").last_refresh_status, "ok")
        _, options = self.fetcher.calls[0]
        self.assertFalse(options.use_cache)

    async def test_jsonfeed_job(self) -> None:
        job, _ = await self.orchestrator.refresh_job(self._job(fmt="jsonfeed"), now=NOW)

        data = json.loads(self.store.feed_path(job).read_text(encoding="utf-8"))
        self.assertEqual(data["feed_url"], "http://localhost:8000/feeds/job1.json")
        self.assertEqual(data["title"], "Example News")
        self.assertEqual(len(data["items"]), 3)

    async def test_limit_and_keyword_filters(self) -> None:
        job, _ = await self.orchestrator.refresh_job(self._job(limit=2), now=NOW)
        self.assertEqual(job.items_count, 2)

        job, _ = await self.orchestrator.refresh_job(self._job(include_keywords=["apples"]), now=NOW)
        self.assertEqual(job.items_count, 1)
        self.assertIn("second-story", self.store.feed_path(job).read_text(encoding="utf-8"))

    async def test_unchanged_items_skip_the_write(self) -> None:
        job, _ = await self.orchestrator.refresh_job(self._job(), now=NOW)
        feed_path = self.store.feed_path(job)
        first_body = feed_path.read_text(encoding="utf-8")

        job, outcome = await self.orchestrator.refresh_job(job, now=NOW + timedelta(hours=2))

        self.assertIs(outcome.state, RefreshState.OK)
        self.assertEqual(job.last_refresh_note, "custom refresh; unchanged")
        self.assertEqual(job.refresh_count, 2)
        self.assertEqual(feed_path.read_text(encoding="utf-8"), first_body)

    async def test_unchanged_items_leave_the_file_untouched(self) -> None:
        job, _ = await self.orchestrator.refresh_job(self._job(), now=NOW)
        feed_path = self.store.feed_path(job)
        past = 1_700_000_000_000_000_000
        os.utime(feed_path, ns=(past, past))

        job, _ = await self.orchestrator.refresh_job(job, now=NOW + timedelta(hours=2))

        self.assertEqual(feed_path.stat().st_mtime_ns, past)

    async def test_published_feed_is_world_readable(self) -> None:
        job, _ = await self.orchestrator.refresh_job(self._job(), now=NOW)

        mode = stat.S_IMODE(self.store.feed_path(job).stat().st_mode)
        self.assertEqual(mode & 0o044, 0o044)

    async def test_failure_keeps_last_good_file_and_counts_streak(self) -> None:
        job, _ = await self.orchestrator.refresh_job(self._job(), now=NOW)
        feed_path = self.store.feed_path(job)
        good_body = feed_path.read_text(encoding="utf-8")
        self.fetcher.responses[PAGE_URL] = FetchResult(
            ok=False, status=503, headers={}, body=b"", final_url=PAGE_URL, error="HTTP 503"
        )

        job, outcome = await self.orchestrator.refresh_job(job, now=NOW + timedelta(hours=1))
        job, outcome = await self.orchestrator.refresh_job(job, now=NOW + timedelta(hours=2))

        self.assertIs(outcome.state, RefreshState.FAIL)
        self.assertEqual(job.failure_streak, 2)
        self.assertEqual(job.last_refresh_code, 503)
        self.assertEqual(job.last_refresh_error, "HTTP 503")
        self.assertEqual(job.diagnostics.failure_streak, 2)
        self.assertEqual(job.items_count, 3)
        self.assertEqual(feed_path.read_text(encoding="utf-8"), good_body)

    async def test_empty_page_fails_without_allow_empty(self) -> None:
        self.fetcher.responses[PAGE_URL] = html_result(PAGE_URL, EMPTY_PAGE)

        job, outcome = await self.orchestrator.refresh_job(self._job(), now=NOW)

        self.assertIs(outcome.state, RefreshState.FAIL)
        self.assertEqual(job.last_refresh_error, "No items found")
        self.assertFalse(self.store.feed_path(job).exists())

    async def test_allow_empty_skips(self) -> None:
        self.fetcher.responses[PAGE_URL] = html_result(PAGE_URL, EMPTY_PAGE)

        job, outcome = await self.orchestrator.refresh_job(self._job(allow_empty=True, failure_streak=1), now=NOW)

        self.assertIs(outcome.state, RefreshState.SKIP)
        self.assertTrue(outcome.succeeded)
        self.assertEqual(job.last_refresh_note, NOTE_SKIP_MANUAL)
        self.assertEqual(job.failure_streak, 1)
        self.assertIsNone(job.auto_allow_empty_at)
        self.assertFalse(self.store.feed_path(job).exists())

    async def test_allow_empty_keeps_the_published_feed(self) -> None:
        job, _ = await self.orchestrator.refresh_job(self._job(allow_empty=True), now=NOW)
        feed_path = self.store.feed_path(job)
        published = feed_path.read_bytes()
        validation = job.last_validation
        self.fetcher.responses[PAGE_URL] = html_result(PAGE_URL, EMPTY_PAGE)

        job, outcome = await self.orchestrator.refresh_job(job, now=NOW + timedelta(hours=1))

        self.assertIs(outcome.state, RefreshState.SKIP)
        self.assertEqual(feed_path.read_bytes(), published)
        self.assertEqual(job.items_count, 3)
        self.assertEqual(job.last_validation, validation)
        self.assertEqual(self.store.get("job1").items_count, 3)

    async def test_auto_allow_empty_for_matching_source(self) -> None:
        url = "https://www.bing.com/news/search?q=nothing"
        self.fetcher.responses[url] = html_result(url, EMPTY_PAGE)

        job, outcome = await self.orchestrator.refresh_job(self._job(source_url=url), now=NOW)

        self.assertIs(outcome.state, RefreshState.SKIP)
        self.assertEqual(job.last_refresh_note, NOTE_SKIP_AUTO)
        self.assertEqual(job.auto_allow_empty_at, "2024-06-01T12:00:00Z")

    async def test_native_feed_is_passed_through(self) -> None:
        self.fetcher.responses[FEED_URL] = FetchResult(
            ok=True,
            status=200,
            headers={"content-type": "application/rss+xml"},
            body=NATIVE_RSS.encode("utf-8"),
            final_url=FEED_URL,
        )

        job, outcome = await self.orchestrator.refresh_job(self._job(mode="native", native_source=FEED_URL), now=NOW)

        self.assertIs(outcome.state, RefreshState.OK)
        self.assertEqual(job.last_refresh_note, "native refresh")
        self.assertEqual(self.store.feed_path(job).read_text(encoding="utf-8"), NATIVE_RSS)
        self.assertEqual(self.fetcher.calls[0][0], FEED_URL)

    async def test_native_feed_is_rebuilt_for_other_format(self) -> None:
        self.fetcher.responses[FEED_URL] = FetchResult(
            ok=True,
            status=200,
            headers={"content-type": "application/rss+xml"},
            body=NATIVE_RSS.encode("utf-8"),
            final_url=FEED_URL,
        )

        job, _ = await self.orchestrator.refresh_job(
            self._job(fmt="jsonfeed", mode="native", native_source=FEED_URL), now=NOW
        )

        data = json.loads(self.store.feed_path(job).read_text(encoding="utf-8"))
        self.assertEqual(job.last_refresh_note, "native rebuilt")
        self.assertEqual(data["title"], "Native")
        self.assertEqual(data["items"][0]["url"], "https://example.com/native-item")

    async def test_broken_native_feed_switches_to_custom(self) -> None:
        self.fetcher.responses[FEED_URL] = html_result(FEED_URL, "<html><body><p>moved</p></body></html>")

        job, outcome = await self.orchestrator.refresh_job(self._job(mode="native", native_source=FEED_URL), now=NOW)

        self.assertIs(outcome.state, RefreshState.OK)
        self.assertEqual(job.mode, "custom")
        self.assertIsNone(job.native_source)
        self.assertTrue(job.last_refresh_note.startswith(NOTE_NATIVE_SWITCH))
        self.assertEqual(self.store.get("job1").mode, "custom")

    async def test_unexpected_errors_become_failures(self) -> None:
        async def boom(url, options=None):
            raise RuntimeError("kaput")

        self.fetcher.fetch = boom

        with self.assertLogs("feedmaker.jobs.refresh", level="ERROR"):
            job, outcome = await self.orchestrator.refresh_job(self._job(), now=NOW)

        self.assertIs(outcome.state, RefreshState.FAIL)
        self.assertEqual(job.last_refresh_error, "RuntimeError: kaput")
        self.assertEqual(job.failure_streak, 1)

    def test_is_due(self) -> None:
        self.assertTrue(self.orchestrator.is_due(self._job(), NOW))

        recent = self._job(last_refresh_at="2024-06-01T11:50:00Z", refresh_interval=60)
        self.assertFalse(self.orchestrator.is_due(recent, NOW))
        self.assertTrue(self.orchestrator.is_due(recent, NOW + timedelta(minutes=6)))

    async def test_run_batch_refreshes_due_jobs_and_logs_the_run(self) -> None:
        self.store.save(self._job("due1"))
        self.store.save(self._job("fresh", last_refresh_at="2024-06-01T11:59:00Z"))
        self.store.save(self._job("broken", source_url="https://example.com/down"))

        summary = await self.orchestrator.run_batch(now=NOW)

        self.assertEqual(summary.total, 3)
        self.assertEqual(summary.due, 2)
        self.assertEqual(summary.refreshed, 1)
        self.assertEqual(summary.failures, 1)
        self.assertEqual(summary.failed_jobs[0]["job_id"], "broken")
        self.assertEqual(self.store.get("fresh").refresh_count, 0)

        runs = self.orchestrator.recent_runs()
        self.assertEqual(len(runs), 1)
        self.assertEqual(runs[0]["refreshed"], 1)

    async def test_run_batch_respects_cap(self) -> None:
        self.store.save(self._job("a"))
        self.store.save(self._job("b"))

        summary = await self.orchestrator.run_batch(max_jobs=1, now=NOW)

        self.assertEqual(summary.refreshed, 1)
        self.assertEqual(summary.deferred, 1)

    async def test_run_batch_is_skipped_while_another_holds_the_lock(self) -> None:
        self.store.save(self._job())

        with self.store.refresh_lock() as acquired:
            self.assertTrue(acquired)
            summary = await self.orchestrator.run_batch(now=NOW)

        self.assertIsNone(summary)
        self.assertEqual(self.fetcher.calls, [])

    async def test_run_log_is_capped(self) -> None:
        config = make_config(self.root, log_max_lines=2)
        orchestrator = RefreshOrchestrator(config=config, store=self.store, fetcher=self.fetcher)

        for _ in range(3):
            await orchestrator.run_batch(now=NOW)

        lines = Path(config.storage.refresh_log_path).read_text(encoding="utf-8").splitlines()
        self.assertEqual(len(lines), 2)

    async def test_stale_jobs_are_purged(self) -> None:
        config = make_config(self.root, retention_days=30)
        orchestrator = RefreshOrchestrator(config=config, store=self.store, fetcher=self.fetcher)
        self.store.save(self._job("old"))
        record = self.store.jobs_dir / "old.json"
        payload = json.loads(record.read_text(encoding="utf-8"))
        payload["updated_at"] = "2023-01-01T00:00:00Z"
        record.write_text(json.dumps(payload), encoding="utf-8")

        summary = await orchestrator.run_batch(now=NOW)

        self.assertEqual(summary.purged, 1)
        self.assertIsNone(self.store.load("old"))


if __name__ == "__main__":
    unittest.main()
