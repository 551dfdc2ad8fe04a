from __future__ import annotations

from feedmaker.extract.discovery import discover_feeds, rank_native_candidates
from feedmaker.extract.heuristics import ExtractionOptions, looks_like_article
from feedmaker.extract.impl import ExtractionReport, extract_items, extract_with_report
from feedmaker.extract.normalize import normalize

__all__ = [
    "ExtractionOptions",
    "ExtractionReport",
    "discover_feeds",
    "extract_items",
    "extract_with_report",
    "looks_like_article",
    "normalize",
    "rank_native_candidates",
]
