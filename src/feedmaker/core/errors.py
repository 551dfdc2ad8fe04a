from __future__ import annotations


class FeedMakerError(Exception):
    """Base class for errors raised by the job operations."""


class JobNotFoundError(FeedMakerError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class FeedGenerationError(FeedMakerError):
    """The first generation of a new feed did not produce a publishable file."""

    def __init__(self, message: str, *, http_status: int = 0) -> None:
        super().__init__(message)
        self.http_status = http_status
