"""Feed jobs: persistence, keyword filters and the refresh state machine."""

from __future__ import annotations

from typing import TYPE_CHECKING

from feedmaker.jobs.models import Diagnostics, Job, ValidationSnapshot
from feedmaker.jobs.state import RefreshOutcome, RefreshState
from feedmaker.jobs.store import JobStore

if TYPE_CHECKING:
    from feedmaker.jobs.refresh import RefreshOrchestrator
    from feedmaker.jobs.service import FeedService

__all__ = [
    "Diagnostics",
    "FeedService",
    "Job",
    "JobStore",
    "RefreshOrchestrator",
    "RefreshOutcome",
    "RefreshState",
    "ValidationSnapshot",
]


def __getattr__(name: str):
    if name == "RefreshOrchestrator":
        from feedmaker.jobs.refresh import RefreshOrchestrator as _RefreshOrchestrator

        return _RefreshOrchestrator
    if name == "FeedService":
        from feedmaker.jobs.service import FeedService as _FeedService

        return _FeedService
    raise AttributeError(name)
