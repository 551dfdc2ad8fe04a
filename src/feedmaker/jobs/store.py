from __future__ import annotations

import fcntl
import json
import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator, Optional

from feedmaker.core.errors import JobNotFoundError
from feedmaker.core.io import atomic_write_json
from feedmaker.core.utils import format_rfc3339, parse_rfc3339, utc_now
from feedmaker.jobs.models import Job, decode_job, encode_job

logger = logging.getLogger(__name__)

_JOB_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


@dataclass(slots=True)
class JobStatistics:
    total: int
    native: int
    failing: int
    critical: int
    threshold: int


class JobStore:
    """
    One JSON document per job under ``jobs_dir``; published feeds live in ``feeds_dir``.

    Records are replaced atomically and are not locked; the batch refresh takes
    a separate process-wide lock file so only one run touches them at a time.
    """

    def __init__(self, jobs_dir: str | Path, feeds_dir: str | Path, lock_path: str | Path | None = None) -> None:
        self._jobs_dir = Path(jobs_dir)
        self._feeds_dir = Path(feeds_dir)
        self._lock_path = Path(lock_path) if lock_path else self._jobs_dir / ".refresh.lock"

    @property
    def jobs_dir(self) -> Path:
        return self._jobs_dir

    @property
    def feeds_dir(self) -> Path:
        return self._feeds_dir

    @staticmethod
    def is_valid_id(job_id: str) -> bool:
        return bool(_JOB_ID_RE.match(job_id or ""))

    def _job_path(self, job_id: str) -> Path:
        if not self.is_valid_id(job_id):
            raise ValueError(f"Invalid job id: {job_id!r}")
        return self._jobs_dir / f"{job_id}.json"

    def feed_path(self, job: Job) -> Path:
        name = Path(job.feed_filename).name
        if not name:
            raise ValueError(f"Job has no feed filename. job_id={job.job_id}")
        return self._feeds_dir / name

    def save(self, job: Job) -> Job:
        job.updated_at = format_rfc3339(utc_now())
        if not job.created_at:
            job.created_at = job.updated_at
        atomic_write_json(self._job_path(job.job_id), encode_job(job))
        return job

    def load(self, job_id: str) -> Optional[Job]:
        path = self._job_path(job_id)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            return decode_job(payload)
        except Exception:
            logger.exception("Failed to read job record. path=%s", path)
            return None

    def get(self, job_id: str) -> Job:
        job = self.load(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list(self) -> list[Job]:
        """All readable jobs, least recently refreshed first."""
        if not self._jobs_dir.exists():
            return []
        jobs: list[Job] = []
        for path in sorted(self._jobs_dir.glob("*.json")):
            job = self.load(path.stem) if _JOB_ID_RE.match(path.stem) else None
            if job is not None:
                jobs.append(job)
        jobs.sort(key=lambda j: (j.last_refresh_at or "", j.job_id))
        return jobs

    def delete(self, job_id: str) -> bool:
        job = self.load(job_id)
        removed = False
        if job is not None and job.feed_filename:
            feed_path = self.feed_path(job)
            if feed_path.exists():
                feed_path.unlink()
                removed = True
        path = self._job_path(job_id)
        if path.exists():
            path.unlink()
            removed = True
        if removed:
            logger.info("Job deleted. job_id=%s", job_id)
        return removed

    @contextmanager
    def refresh_lock(self) -> Iterator[bool]:
        """Non-blocking exclusive lock. Yields False when another run holds it."""
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._lock_path, "a+") as handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                yield False
                return
            try:
                yield True
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def last_seen(self, job: Job) -> Optional[datetime]:
        """Newest of the feed file's mtime/atime, else the record's own timestamps."""
        if job.feed_filename:
            feed_path = self.feed_path(job)
            if feed_path.exists():
                stat = feed_path.stat()
                return datetime.fromtimestamp(max(stat.st_mtime, stat.st_atime), tz=utc_now().tzinfo)
        for value in (job.updated_at, job.created_at):
            if value:
                try:
                    return parse_rfc3339(value)
                except ValueError:
                    continue
        return None

    def should_purge(self, job: Job, *, retention_days: int, now: Optional[datetime] = None) -> bool:
        if retention_days <= 0:
            return False
        seen = self.last_seen(job)
        if seen is None:
            return False
        return seen < (now or utc_now()) - timedelta(days=retention_days)

    def statistics(self, jobs: Optional[list[Job]] = None, *, warn_threshold: int = 3) -> JobStatistics:
        jobs = self.list() if jobs is None else jobs
        failing = [j for j in jobs if j.failure_streak > 0]
        return JobStatistics(
            total=len(jobs),
            native=sum(1 for j in jobs if j.mode == "native"),
            failing=len(failing),
            critical=sum(1 for j in failing if j.failure_streak >= warn_threshold),
            threshold=warn_threshold,
        )
