from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional, Sequence

from feedmaker.core.models import FeedItem, ValidationResult
from feedmaker.core.utils import format_rfc3339
from feedmaker.http.models import FetchResult
from feedmaker.jobs.models import Diagnostics, Job, ValidationSnapshot

ERROR_MAX = 800
NOTE_MAX = 200
DETAIL_MAX = 400

NOTE_SKIP_MANUAL = "no items (allow_empty)"
NOTE_SKIP_AUTO = "no items (auto)"


class RefreshState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    OK = "ok"
    FAIL = "fail"
    SKIP = "skip"


@dataclass(frozen=True, slots=True)
class Decision:
    state: RefreshState
    publish: bool
    error: Optional[str] = None
    note: Optional[str] = None
    auto: bool = False


@dataclass(slots=True)
class RefreshOutcome:
    """Everything a finished refresh attempt reports back to the job record."""

    state: RefreshState
    http_status: Optional[int] = None
    error: Optional[str] = None
    note: Optional[str] = None
    auto: bool = False
    items_count: int = 0
    content_hash: str = ""
    validation: Optional[ValidationResult] = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.state in (RefreshState.OK, RefreshState.SKIP)


def trim(value: Optional[str], limit: int) -> str:
    text = (value or "").strip()
    if len(text) > limit:
        return text[: limit - 1] + "…"
    return text


def fetch_failed(fetch: FetchResult) -> bool:
    return not fetch.ok or not (200 <= fetch.status < 400)


def decide(
    job: Job,
    fetch: FetchResult,
    items: Sequence[FeedItem],
    *,
    auto_allow_empty: bool,
) -> Decision:
    """Classify one refresh attempt. Pure: reads its arguments and nothing else."""
    if fetch_failed(fetch):
        return Decision(
            state=RefreshState.FAIL,
            publish=False,
            error=fetch.error or f"HTTP {fetch.status}",
            note="fetch failed",
        )
    if not items:
        if job.allow_empty:
            return Decision(state=RefreshState.SKIP, publish=False, note=NOTE_SKIP_MANUAL)
        if auto_allow_empty:
            return Decision(state=RefreshState.SKIP, publish=False, note=NOTE_SKIP_AUTO, auto=True)
        return Decision(state=RefreshState.FAIL, publish=False, error="No items found", note="no items")
    return Decision(state=RefreshState.OK, publish=True)


def _clean_details(details: dict[str, Any]) -> dict[str, Any]:
    clean: dict[str, Any] = {}
    for key, value in details.items():
        if isinstance(value, (str, int, float, bool)):
            clean[str(key)] = trim(str(value), DETAIL_MAX) if isinstance(value, str) else value
        elif isinstance(value, (list, tuple)):
            clean[str(key)] = list(value)[:5]
    return clean


def apply_outcome(job: Job, outcome: RefreshOutcome, now: datetime) -> Job:
    """Return a copy of job updated for the outcome; the argument is left untouched."""
    stamp = format_rfc3339(now)
    updated = replace(
        job,
        include_keywords=list(job.include_keywords),
        exclude_keywords=list(job.exclude_keywords),
        last_refresh_at=stamp,
        last_refresh_status=outcome.state.value,
        last_refresh_code=outcome.http_status,
    )

    if outcome.state is RefreshState.OK:
        updated.last_refresh_error = None
        updated.last_refresh_note = outcome.note or "ok"
        updated.refresh_count = job.refresh_count + 1
        updated.items_count = outcome.items_count
        updated.failure_streak = 0
        updated.diagnostics = None
        if outcome.content_hash:
            updated.content_hash = outcome.content_hash
        if outcome.validation is not None:
            updated.last_validation = ValidationSnapshot(
                warnings=[w for w in outcome.validation.warnings if w.strip()],
                checked_at=outcome.validation.checked_at or stamp,
            )
        return updated

    if outcome.state is RefreshState.SKIP:
        updated.last_refresh_error = None
        updated.last_refresh_note = outcome.note or NOTE_SKIP_MANUAL
        if outcome.auto:
            updated.auto_allow_empty_at = stamp
        return updated

    if outcome.state is RefreshState.FAIL:
        streak = job.failure_streak + 1
        error = trim(outcome.error or "Refresh failed", ERROR_MAX)
        updated.last_refresh_error = error
        updated.last_refresh_note = outcome.note or "fail"
        updated.failure_streak = streak
        updated.diagnostics = Diagnostics(
            captured_at=stamp,
            failure_streak=streak,
            error=error,
            source_url=job.source_url,
            mode=updated.mode,
            http_status=outcome.http_status,
            note=trim(outcome.note, NOTE_MAX) or None,
            details=_clean_details(outcome.details),
        )
        return updated

    raise ValueError(f"Refresh outcome must be terminal, got: {outcome.state.value}")
