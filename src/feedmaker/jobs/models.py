from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

SchemaVersion = 1

JobMode = Literal["native", "custom"]
RefreshStatus = Literal["ok", "fail", "skip"]


@dataclass(slots=True)
class ValidationSnapshot:
    warnings: list[str] = field(default_factory=list)
    checked_at: str = ""


@dataclass(slots=True)
class Diagnostics:
    captured_at: str
    failure_streak: int
    error: str
    source_url: str = ""
    mode: str = ""
    http_status: Optional[int] = None
    note: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Job:
    job_id: str
    source_url: str
    feed_url: str
    feed_filename: str
    mode: JobMode = "custom"
    format: str = "rss"
    limit: int = 10
    refresh_interval: int = 3600
    native_source: Optional[str] = None
    include_keywords: list[str] = field(default_factory=list)
    exclude_keywords: list[str] = field(default_factory=list)
    allow_empty: bool = False
    auto_allow_empty_at: Optional[str] = None
    item_selector: Optional[str] = None
    title_selector: Optional[str] = None
    summary_selector: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    last_refresh_at: Optional[str] = None
    last_refresh_status: Optional[RefreshStatus] = None
    last_refresh_error: Optional[str] = None
    last_refresh_code: Optional[int] = None
    last_refresh_note: Optional[str] = None
    refresh_count: int = 0
    items_count: int = 0
    content_hash: str = ""
    failure_streak: int = 0
    last_validation: Optional[ValidationSnapshot] = None
    diagnostics: Optional[Diagnostics] = None


def _encode_diagnostics(diagnostics: Diagnostics) -> dict:
    payload: dict[str, Any] = {
        "captured_at": diagnostics.captured_at,
        "failure_streak": diagnostics.failure_streak,
        "error": diagnostics.error,
        "source_url": diagnostics.source_url,
        "mode": diagnostics.mode,
        "http_status": diagnostics.http_status,
    }
    if diagnostics.note:
        payload["note"] = diagnostics.note
    if diagnostics.details:
        payload["details"] = dict(diagnostics.details)
    return payload


def _decode_diagnostics(payload: Any) -> Optional[Diagnostics]:
    if not isinstance(payload, dict):
        return None
    status = payload.get("http_status")
    return Diagnostics(
        captured_at=str(payload.get("captured_at", "")),
        failure_streak=int(payload.get("failure_streak", 0) or 0),
        error=str(payload.get("error", "")),
        source_url=str(payload.get("source_url", "")),
        mode=str(payload.get("mode", "")),
        http_status=int(status) if status not in (None, "") else None,
        note=payload.get("note"),
        details=dict(payload.get("details") or {}),
    )


def encode_job(job: Job) -> dict:
    return {
        "schema_version": SchemaVersion,
        "job_id": job.job_id,
        "source_url": job.source_url,
        "native_source": job.native_source,
        "feed_url": job.feed_url,
        "feed_filename": job.feed_filename,
        "mode": job.mode,
        "format": job.format,
        "limit": job.limit,
        "refresh_interval": job.refresh_interval,
        "include_keywords": list(job.include_keywords),
        "exclude_keywords": list(job.exclude_keywords),
        "allow_empty": job.allow_empty,
        "auto_allow_empty_at": job.auto_allow_empty_at,
        "item_selector": job.item_selector,
        "title_selector": job.title_selector,
        "summary_selector": job.summary_selector,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
        "last_refresh_at": job.last_refresh_at,
        "last_refresh_status": job.last_refresh_status,
        "last_refresh_error": job.last_refresh_error,
        "last_refresh_code": job.last_refresh_code,
        "last_refresh_note": job.last_refresh_note,
        "refresh_count": job.refresh_count,
        "items_count": job.items_count,
        "content_hash": job.content_hash,
        "failure_streak": job.failure_streak,
        "last_validation": (
            {"warnings": list(job.last_validation.warnings), "checked_at": job.last_validation.checked_at}
            if job.last_validation
            else None
        ),
        "diagnostics": _encode_diagnostics(job.diagnostics) if job.diagnostics else None,
    }


def decode_job(payload: dict) -> Job:
    validation = payload.get("last_validation")
    snapshot = None
    if isinstance(validation, dict):
        snapshot = ValidationSnapshot(
            warnings=[str(w) for w in validation.get("warnings") or [] if str(w).strip()],
            checked_at=str(validation.get("checked_at", "")),
        )
    code = payload.get("last_refresh_code")
    return Job(
        job_id=str(payload["job_id"]),
        source_url=str(payload.get("source_url", "")),
        native_source=payload.get("native_source"),
        feed_url=str(payload.get("feed_url", "")),
        feed_filename=str(payload.get("feed_filename", "")),
        mode=payload.get("mode") or "custom",
        format=payload.get("format") or "rss",
        limit=int(payload.get("limit", 10) or 10),
        refresh_interval=int(payload.get("refresh_interval", 3600) or 3600),
        include_keywords=list(payload.get("include_keywords") or []),
        exclude_keywords=list(payload.get("exclude_keywords") or []),
        allow_empty=bool(payload.get("allow_empty", False)),
        auto_allow_empty_at=payload.get("auto_allow_empty_at"),
        item_selector=payload.get("item_selector"),
        title_selector=payload.get("title_selector"),
        summary_selector=payload.get("summary_selector"),
        created_at=str(payload.get("created_at", "")),
        updated_at=str(payload.get("updated_at", "")),
        last_refresh_at=payload.get("last_refresh_at"),
        last_refresh_status=payload.get("last_refresh_status"),
        last_refresh_error=payload.get("last_refresh_error"),
        last_refresh_code=int(code) if code not in (None, "") else None,
        last_refresh_note=payload.get("last_refresh_note"),
        refresh_count=int(payload.get("refresh_count", 0) or 0),
        items_count=int(payload.get("items_count", 0) or 0),
        content_hash=str(payload.get("content_hash", "")),
        failure_streak=int(payload.get("failure_streak", 0) or 0),
        last_validation=snapshot,
        diagnostics=_decode_diagnostics(payload.get("diagnostics")),
    )
