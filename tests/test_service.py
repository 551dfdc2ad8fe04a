import tempfile
import unittest
from pathlib import Path
from typing import Iterable, Optional

from feedmaker.core.errors import FeedGenerationError, JobNotFoundError
from feedmaker.extract.heuristics import ExtractionOptions
from feedmaker.http.models import FetchOptions, FetchResult
from feedmaker.jobs.service import FeedService

from test_refresh import EMPTY_PAGE, NATIVE_RSS, NEWS_PAGE, PAGE_URL, StubFetcher, html_result, make_config

FEED_URL = "https://example.com/feed.xml"

PAGE_WITH_FEEDS = """
<html><head>
<link rel="alternate" type="application/atom+xml" href="https://other.example.net/atom.xml">
<link rel="alternate" type="application/rss+xml" href="/broken.xml">
<link rel="alternate" type="application/rss+xml" href="/feed.xml">
</head><body></body></html>
"""


class StubClient(StubFetcher):
    def __init__(self, responses: dict[str, FetchResult]) -> None:
        super().__init__(responses)
        self.started = False
        self.many_calls: list[list[str]] = []

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    async def fetch_many(self, urls: Iterable[str], options: Optional[FetchOptions] = None) -> dict[str, FetchResult]:
        urls = list(urls)
        self.many_calls.append(urls)
        return {url: await self.fetch(url, options) for url in urls}


def rss_result(url: str) -> FetchResult:
    return FetchResult(
        ok=True,
        status=200,
        headers={"content-type": "application/rss+xml"},
        body=NATIVE_RSS.encode("utf-8"),
        final_url=url,
    )


class FeedServiceTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.config = make_config(self.root)
        self.client = StubClient({PAGE_URL: html_result(PAGE_URL, NEWS_PAGE)})
        self.service = FeedService(config=self.config, client=self.client)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def test_context_manager_starts_and_stops_client(self) -> None:
        async with self.service as service:
            self.assertIs(service, self.service)
            self.assertTrue(self.client.started)
        self.assertFalse(self.client.started)

    async def test_create_job_publishes_first_feed(self) -> None:
        job = await self.service.create_job(PAGE_URL, limit=500, refresh_interval=10, include_keywords="Story, story")

        self.assertEqual(job.limit, 50)
        self.assertEqual(job.refresh_interval, 900)
        self.assertEqual(job.include_keywords, ["story"])
        self.assertEqual(job.feed_url, f"http://localhost:8000/feeds/{job.job_id}.xml")
        self.assertEqual(job.last_refresh_status, "ok")
        self.assertTrue(self.service.store.feed_path(job).exists())
        self.assertEqual([j.job_id for j in self.service.list_jobs()], [job.job_id])

    async def test_failed_first_generation_leaves_nothing_behind(self) -> None:
        self.client.responses[PAGE_URL] = html_result(PAGE_URL, EMPTY_PAGE)

        with self.assertRaises(FeedGenerationError) as ctx:
            await self.service.create_job(PAGE_URL)

        self.assertEqual(str(ctx.exception), "No items found")
        self.assertEqual(ctx.exception.http_status, 200)
        self.assertEqual(self.service.list_jobs(), [])
        self.assertEqual(list(Path(self.config.storage.feeds_dir).glob("*")), [])

    async def test_skipped_first_generation_publishes_empty_feed(self) -> None:
        self.client.responses[PAGE_URL] = html_result(PAGE_URL, EMPTY_PAGE)

        job = await self.service.create_job(PAGE_URL, format="jsonfeed", allow_empty=True)

        self.assertEqual(job.last_refresh_status, "skip")
        self.assertTrue(job.feed_filename.endswith(".json"))
        self.assertTrue(self.service.store.feed_path(job).exists())

    async def test_invalid_input_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            await self.service.create_job("ftp://example.com/")
        with self.assertRaises(ValueError):
            await self.service.create_job(PAGE_URL, format="atom")
        with self.assertRaises(ValueError):
            await self.service.create_job(PAGE_URL, mode="scraped")
        self.assertEqual(self.client.calls, [])

    async def test_native_mode_uses_advertised_feed(self) -> None:
        self.client.responses[PAGE_URL] = html_result(PAGE_URL, PAGE_WITH_FEEDS)
        self.client.responses["https://example.com/broken.xml"] = html_result("https://example.com/broken.xml", "oops")
        self.client.responses[FEED_URL] = rss_result(FEED_URL)

        job = await self.service.create_job(PAGE_URL, mode="native")

        self.assertEqual(job.mode, "native")
        self.assertEqual(job.native_source, FEED_URL)
        self.assertEqual(self.client.many_calls[0][:2], ["https://example.com/broken.xml", FEED_URL])
        self.assertEqual(self.service.store.feed_path(job).read_text(encoding="utf-8"), NATIVE_RSS)

    async def test_native_mode_accepts_a_feed_url_directly(self) -> None:
        self.client.responses[FEED_URL] = rss_result(FEED_URL)

        job = await self.service.create_job(FEED_URL, mode="native")

        self.assertEqual(job.native_source, FEED_URL)
        self.assertEqual(self.client.many_calls, [])

    async def test_native_mode_falls_back_to_custom(self) -> None:
        job = await self.service.create_job(PAGE_URL, mode="native")

        self.assertEqual(job.mode, "custom")
        self.assertIsNone(job.native_source)
        self.assertEqual(job.items_count, 3)

    async def test_update_filters_and_delete(self) -> None:
        job = await self.service.create_job(PAGE_URL)

        self.assertTrue(self.service.update_filters(job.job_id, "Apples", ""))
        self.assertEqual(self.service.store.get(job.job_id).include_keywords, ["apples"])
        self.assertTrue(await self.service.refresh_job(job.job_id))
        self.assertEqual(self.service.store.get(job.job_id).items_count, 1)
        self.assertFalse(self.service.update_filters("missing", "x", ""))
        self.assertFalse(self.service.update_filters("../escape", "x", ""))

        self.service.delete_job(job.job_id)
        self.assertFalse(self.service.store.feed_path(job).exists())
        with self.assertRaises(JobNotFoundError):
            self.service.delete_job(job.job_id)
        with self.assertRaises(JobNotFoundError):
            await self.service.refresh_job(job.job_id)
        with self.assertRaises(JobNotFoundError):
            self.service.delete_job("bad id!")

    async def test_preview_and_discover(self) -> None:
        items, report = await self.service.preview(PAGE_URL, limit=2, options=ExtractionOptions())
        self.assertEqual(len(items), 2)
        self.assertEqual(report.jsonld_count, 2)

        self.client.responses[PAGE_URL] = html_result(PAGE_URL, PAGE_WITH_FEEDS)
        feeds = await self.service.discover(PAGE_URL)
        self.assertEqual(
            [f.href for f in feeds],
            ["https://example.com/broken.xml", FEED_URL, "https://other.example.net/atom.xml"],
        )

        with self.assertRaises(FeedGenerationError):
            await self.service.preview("https://example.com/down")

    async def test_statistics(self) -> None:
        await self.service.create_job(PAGE_URL)

        stats = self.service.statistics()

        self.assertEqual((stats.total, stats.failing, stats.threshold), (1, 0, 3))


if __name__ == "__main__":
    unittest.main()
