from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from feedmaker.core.models import FeedItem
from feedmaker.extract.discovery import base_url_for, page_metadata, parse_html
from feedmaker.extract.heuristics import ExtractionOptions, extract_heuristic, extract_with_selectors
from feedmaker.extract.jsonld import extract_jsonld
from feedmaker.extract.normalize import normalize

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExtractionReport:
    """Page metadata and per-stage counts, shown by the selector testing tool."""

    base_url: str = ""
    page_title: str = ""
    page_description: str = ""
    jsonld_count: int = 0
    custom_selector: Optional[str] = None
    custom_selector_matches: Optional[int] = None
    dom_count: int = 0
    total: int = 0


def extract_with_report(
    html: str,
    source_url: str,
    limit: int,
    options: Optional[ExtractionOptions] = None,
) -> tuple[list[FeedItem], ExtractionReport]:
    opts = options or ExtractionOptions()
    soup = parse_html(html)
    base = base_url_for(soup, source_url)
    page_title, page_description = page_metadata(soup)
    report = ExtractionReport(base_url=base, page_title=page_title, page_description=page_description)

    if limit <= 0:
        return [], report

    items = extract_jsonld(soup, base, limit)
    report.jsonld_count = len(items)

    if len(items) < limit and opts.has_selectors:
        report.custom_selector = opts.item_selector
        items, matches = extract_with_selectors(soup, base, limit, opts, seed_items=items)
        report.custom_selector_matches = matches

    if len(items) < limit:
        before = len(items)
        items = extract_heuristic(soup, base, limit, seed_items=items)
        report.dom_count = len(items) - before

    result = normalize(items, limit)
    report.total = len(result)
    logger.debug(
        "extract.done url=%s jsonld=%d custom=%s dom=%d total=%d",
        source_url,
        report.jsonld_count,
        report.custom_selector_matches,
        report.dom_count,
        report.total,
    )
    return result, report


def extract_items(
    html: str,
    source_url: str,
    limit: int,
    options: Optional[ExtractionOptions] = None,
) -> list[FeedItem]:
    items, _ = extract_with_report(html, source_url, limit, options)
    return items
