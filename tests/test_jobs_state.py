import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from feedmaker.core.errors import JobNotFoundError
from feedmaker.core.models import FeedItem, ValidationResult
from feedmaker.http.models import FetchResult
from feedmaker.jobs.filters import apply_keyword_filters, normalize_keywords
from feedmaker.jobs.models import Job, decode_job, encode_job
from feedmaker.jobs.state import (
    NOTE_SKIP_AUTO,
    NOTE_SKIP_MANUAL,
    RefreshOutcome,
    RefreshState,
    apply_outcome,
    decide,
)
from feedmaker.jobs.store import JobStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _job(job_id: str = "job1", **changes) -> Job:
    job = Job(
        job_id=job_id,
        source_url="https://example.com/news",
        feed_url=f"http://localhost:8000/feeds/{job_id}.xml",
        feed_filename=f"{job_id}.xml",
    )
    for key, value in changes.items():
        setattr(job, key, value)
    return job


def _ok_fetch() -> FetchResult:
    return FetchResult(ok=True, status=200, headers={}, body=b"<html></html>", final_url="https://example.com/news")


class KeywordFilterTests(unittest.TestCase):
    def test_normalize_keywords(self) -> None:
        self.assertEqual(normalize_keywords("Apple, banana\nAPPLE,,"), ["apple", "banana"])
        self.assertEqual(normalize_keywords(["One,Two", " three "]), ["one", "two", "three"])
        self.assertEqual(len(normalize_keywords([f"k{i}" for i in range(30)])), 20)
        self.assertEqual(normalize_keywords(None), [])

    def test_include_and_exclude(self) -> None:
        items = [
            FeedItem(title="Apple launches phone", link="https://example.com/1"),
            FeedItem(title="Banana prices", link="https://example.com/2", description="apple orchards too"),
            FeedItem(title="Weather today", link="https://example.com/3"),
        ]

        included = apply_keyword_filters(items, ["apple"], [])
        self.assertEqual([i.link for i in included], ["https://example.com/1", "https://example.com/2"])

        both = apply_keyword_filters(items, ["apple"], ["banana"])
        self.assertEqual([i.link for i in both], ["https://example.com/1"])

        self.assertEqual(apply_keyword_filters(items, [], []), items)


class DecideTests(unittest.TestCase):
    def test_fetch_failure_is_fail(self) -> None:
        decision = decide(_job(), FetchResult.failure("https://example.com/news", "timeout"), [], auto_allow_empty=True)

        self.assertIs(decision.state, RefreshState.FAIL)
        self.assertFalse(decision.publish)
        self.assertEqual(decision.error, "timeout")

    def test_http_error_is_fail(self) -> None:
        fetch = FetchResult(ok=False, status=503, headers={}, body=b"", final_url="https://example.com/news")

        self.assertEqual(decide(_job(), fetch, [], auto_allow_empty=False).error, "HTTP 503")

    def test_empty_results(self) -> None:
        manual = decide(_job(allow_empty=True), _ok_fetch(), [], auto_allow_empty=False)
        self.assertIs(manual.state, RefreshState.SKIP)
        self.assertEqual(manual.note, NOTE_SKIP_MANUAL)
        self.assertFalse(manual.auto)

        auto = decide(_job(), _ok_fetch(), [], auto_allow_empty=True)
        self.assertIs(auto.state, RefreshState.SKIP)
        self.assertEqual(auto.note, NOTE_SKIP_AUTO)
        self.assertTrue(auto.auto)

        failed = decide(_job(), _ok_fetch(), [], auto_allow_empty=False)
        self.assertIs(failed.state, RefreshState.FAIL)
        self.assertEqual(failed.error, "No items found")

    def test_items_publish(self) -> None:
        decision = decide(_job(), _ok_fetch(), [FeedItem(title="t", link="https://example.com/a")], auto_allow_empty=False)

        self.assertIs(decision.state, RefreshState.OK)
        self.assertTrue(decision.publish)


class ApplyOutcomeTests(unittest.TestCase):
    def test_fail_increments_streak_without_touching_input(self) -> None:
        job = _job(failure_streak=2, refresh_count=5, items_count=7)
        outcome = RefreshOutcome(
            state=RefreshState.FAIL,
            http_status=503,
            error="HTTP 503",
            note="fetch failed",
            details={"final_url": "https://example.com/news", "ignored": object()},
        )

        updated = apply_outcome(job, outcome, NOW)

        self.assertEqual(job.failure_streak, 2)
        self.assertIsNone(job.last_refresh_status)
        self.assertEqual(updated.failure_streak, 3)
        self.assertEqual(updated.last_refresh_status, "fail")
        self.assertEqual(updated.last_refresh_code, 503)
        self.assertEqual(updated.refresh_count, 5)
        self.assertEqual(updated.items_count, 7)
        self.assertEqual(updated.last_refresh_at, "2024-06-01T12:00:00Z")
        self.assertEqual(updated.diagnostics.failure_streak, 3)
        self.assertEqual(updated.diagnostics.details, {"final_url": "https://example.com/news"})

    def test_ok_resets_streak_and_diagnostics(self) -> None:
        failed = apply_outcome(_job(), RefreshOutcome(state=RefreshState.FAIL, error="boom"), NOW)
        outcome = RefreshOutcome(
            state=RefreshState.OK,
            http_status=200,
            note="custom refresh",
            items_count=4,
            content_hash="abc",
            validation=ValidationResult(ok=True, warnings=["w", " "], checked_at="2024-06-01T12:00:00Z"),
        )

        updated = apply_outcome(failed, outcome, NOW + timedelta(minutes=5))

        self.assertEqual(updated.failure_streak, 0)
        self.assertIsNone(updated.diagnostics)
        self.assertIsNone(updated.last_refresh_error)
        self.assertEqual(updated.refresh_count, 1)
        self.assertEqual(updated.items_count, 4)
        self.assertEqual(updated.content_hash, "abc")
        self.assertEqual(updated.last_validation.warnings, ["w"])

    def test_skip_keeps_counters(self) -> None:
        job = _job(failure_streak=1, refresh_count=3, items_count=2, content_hash="keep")

        updated = apply_outcome(job, RefreshOutcome(state=RefreshState.SKIP, note=NOTE_SKIP_AUTO, auto=True), NOW)

        self.assertEqual(updated.last_refresh_status, "skip")
        self.assertEqual(updated.failure_streak, 1)
        self.assertEqual(updated.refresh_count, 3)
        self.assertEqual(updated.items_count, 2)
        self.assertEqual(updated.content_hash, "keep")
        self.assertEqual(updated.auto_allow_empty_at, "2024-06-01T12:00:00Z")

    def test_non_terminal_state_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            apply_outcome(_job(), RefreshOutcome(state=RefreshState.RUNNING), NOW)


class JobStoreTests(unittest.TestCase):
    def test_save_load_and_record_format(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = JobStore(Path(tmp) / "jobs", Path(tmp) / "feeds")
            job = _job(include_keywords=["apple"])

            store.save(job)
            loaded = store.get("job1")

            self.assertEqual(loaded.include_keywords, ["apple"])
            self.assertTrue(loaded.created_at)
            self.assertEqual(encode_job(decode_job(encode_job(loaded))), encode_job(loaded))

    def test_list_orders_least_recently_refreshed_first(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = JobStore(Path(tmp) / "jobs", Path(tmp) / "feeds")
            store.save(_job("b", last_refresh_at="2024-06-01T10:00:00Z"))
            store.save(_job("a", last_refresh_at="2024-06-01T11:00:00Z"))
            store.save(_job("c"))
            (Path(tmp) / "jobs" / "broken.json").write_text("{", encoding="utf-8")

            self.assertEqual([j.job_id for j in store.list()], ["c", "b", "a"])

    def test_delete_removes_record_and_feed(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = JobStore(Path(tmp) / "jobs", Path(tmp) / "feeds")
            job = store.save(_job())
            feed_path = store.feed_path(job)
            feed_path.parent.mkdir(parents=True)
            feed_path.write_text("<rss/>", encoding="utf-8")

            self.assertTrue(store.delete("job1"))
            self.assertFalse(feed_path.exists())
            self.assertIsNone(store.load("job1"))
            self.assertFalse(store.delete("job1"))
            with self.assertRaises(JobNotFoundError):
                store.get("job1")

    def test_rejects_path_like_ids(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = JobStore(Path(tmp) / "jobs", Path(tmp) / "feeds")

            with self.assertRaises(ValueError):
                store.load("../etc/passwd")

    def test_refresh_lock_is_exclusive(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = JobStore(Path(tmp) / "jobs", Path(tmp) / "feeds")

            with store.refresh_lock() as first:
                with store.refresh_lock() as second:
                    self.assertTrue(first)
                    self.assertFalse(second)
            with store.refresh_lock() as again:
                self.assertTrue(again)

    def test_statistics_and_purge(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = JobStore(Path(tmp) / "jobs", Path(tmp) / "feeds")
            jobs = [_job("a", failure_streak=1), _job("b", failure_streak=4, mode="native"), _job("c")]

            stats = store.statistics(jobs, warn_threshold=3)

            self.assertEqual((stats.total, stats.native, stats.failing, stats.critical), (3, 1, 2, 1))

            old = _job("old", updated_at="2024-01-01T00:00:00Z")
            self.assertTrue(store.should_purge(old, retention_days=30, now=NOW))
            self.assertFalse(store.should_purge(old, retention_days=0, now=NOW))


if __name__ == "__main__":
    unittest.main()
