from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence
from urllib.parse import urlsplit

from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError

from feedmaker.core.models import FeedItem
from feedmaker.extract.text import clean_date, clean_text_field, title_key
from feedmaker.http.urls import resolve_url

logger = logging.getLogger(__name__)

DEFAULT_QUERIES: tuple[str, ...] = (
    "article a[href]",
    '[class*="card"] a[href], [class*="story"] a[href], [class*="item"] a[href], [class*="post"] a[href]',
    "h1 a[href], h2 a[href], h3 a[href]",
    "li a[href]",
)

SECTION_TOKENS: tuple[str, ...] = (
    "/news/",
    "/tech/",
    "/science/",
    "/review",
    "/blog/",
    "/deals/",
    "/how-to/",
    "/article/",
)

_DATED_PATH_RE = re.compile(r"/\d{4}/\d{2}/\d{2}/")
_BLOCKED_SCHEMES = ("javascript:", "mailto:")

TITLE_MIN = 6
TITLE_MAX = 200
CUSTOM_TITLE_MAX = 220
CUSTOM_SUMMARY_MAX = 400


@dataclass(frozen=True, slots=True)
class ExtractionOptions:
    """CSS selector overrides used before the built-in heuristics."""

    item_selector: Optional[str] = None
    title_selector: Optional[str] = None
    summary_selector: Optional[str] = None

    @property
    def has_selectors(self) -> bool:
        return bool(self.item_selector and self.item_selector.strip())


def looks_like_article(href: str) -> bool:
    """Rough check that a URL looks like an article permalink."""
    try:
        path = urlsplit(href).path
    except ValueError:
        return False
    if not path:
        return False
    has_hyphen = "-" in path
    if len(path) < 10 and not has_hyphen:
        return False
    if _DATED_PATH_RE.search(path):
        return True
    if has_hyphen and len(path) > 20:
        return True
    return len(path) > 15 and any(token in path for token in SECTION_TOKENS)


def _dedupe_key(link: str, title: str) -> str:
    return hashlib.sha1(f"{link}|{title_key(title)}".encode("utf-8")).hexdigest()


def _usable_href(raw: Optional[str]) -> str:
    href = (raw or "").strip()
    if not href or href.lower().startswith(_BLOCKED_SCHEMES):
        return ""
    return href


def _safe_select(root: Tag, selector: str) -> list[Tag]:
    try:
        return root.select(selector)
    except SelectorSyntaxError:
        logger.warning("Ignoring invalid CSS selector. selector=%s", selector)
        return []


def _safe_select_one(root: Tag, selector: Optional[str]) -> Optional[Tag]:
    if not selector:
        return None
    try:
        return root.select_one(selector)
    except SelectorSyntaxError:
        logger.warning("Ignoring invalid CSS selector. selector=%s", selector)
        return None


def extract_heuristic(
    soup: BeautifulSoup,
    base_url: str,
    limit: int,
    seed_items: Sequence[FeedItem] = (),
    queries: Optional[Iterable[str]] = None,
) -> list[FeedItem]:
    """
    Scan anchors in well-known containers, one query at a time, until limit is reached.

    Seed items count towards the limit and block duplicates of themselves.
    """

    items = list(seed_items)
    seen = {_dedupe_key(item.link, item.title) for item in items}
    if len(items) >= limit:
        return items

    for query in queries if queries is not None else DEFAULT_QUERIES:
        for anchor in _safe_select(soup, query):
            title = clean_text_field(anchor.get_text(" "), TITLE_MAX)
            if len(title) < TITLE_MIN:
                continue
            href = _usable_href(anchor.get("href"))
            if not href:
                continue
            href = resolve_url(href, base_url)
            if not href or not looks_like_article(href):
                continue
            key = _dedupe_key(href, title)
            if key in seen:
                continue
            seen.add(key)
            items.append(FeedItem(title=title, link=href))
            if len(items) >= limit:
                return items
    return items


def extract_with_selectors(
    soup: BeautifulSoup,
    base_url: str,
    limit: int,
    options: ExtractionOptions,
    seed_items: Sequence[FeedItem] = (),
) -> tuple[list[FeedItem], int]:
    """Apply user supplied CSS selectors. Returns the items and the number of matched item nodes."""
    items = list(seed_items)
    if not options.has_selectors:
        return items, 0
    seen = {_dedupe_key(item.link, item.title) for item in items}
    nodes = _safe_select(soup, options.item_selector or "")

    for node in nodes:
        if len(items) >= limit:
            break
        anchor = node if node.name == "a" and node.has_attr("href") else node.select_one("a[href]")
        if anchor is None:
            continue
        href = _usable_href(anchor.get("href"))
        if not href:
            continue
        href = resolve_url(href, base_url)
        if not href:
            continue

        title = clean_text_field(anchor.get_text(" "), CUSTOM_TITLE_MAX)
        title_node = _safe_select_one(node, options.title_selector)
        if title_node is not None:
            candidate = clean_text_field(title_node.get_text(" "), CUSTOM_TITLE_MAX)
            if candidate:
                title = candidate
        if not title:
            title = href

        summary = ""
        summary_node = _safe_select_one(node, options.summary_selector)
        if summary_node is not None:
            summary = clean_text_field(summary_node.get_text(" "), CUSTOM_SUMMARY_MAX)

        date = ""
        time_node = node.select_one("time[datetime]")
        if time_node is not None:
            date = clean_date(time_node.get("datetime"))

        key = _dedupe_key(href, title)
        if key in seen:
            continue
        seen.add(key)
        items.append(FeedItem(title=title, link=href, description=summary, date=date))

    return items, len(nodes)
