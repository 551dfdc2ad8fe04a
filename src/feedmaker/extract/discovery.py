from __future__ import annotations

from typing import Iterable

from bs4 import BeautifulSoup

from feedmaker.core.models import DiscoveredFeed
from feedmaker.extract.text import neat_text
from feedmaker.http.urls import host_of, is_http_url, resolve_url

FEED_TYPES = frozenset(
    {
        "application/rss+xml",
        "application/atom+xml",
        "application/json",
        "application/feed+json",
        "text/xml",
        "application/xml",
    }
)

# Higher ranks are preferred when choosing between advertised feeds.
_TYPE_RANK = {
    "application/rss+xml": 3,
    "application/atom+xml": 2,
    "text/xml": 2,
    "application/xml": 2,
    "application/feed+json": 1,
    "application/json": 1,
}


def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def base_url_for(soup: BeautifulSoup, source_url: str) -> str:
    """Base for relative links: <base href>, then <link rel=canonical>, then the page URL."""
    href = ""
    base = soup.find("base", href=True)
    if base is not None:
        href = str(base.get("href", "")).strip()
    if not href:
        canonical = soup.find("link", rel="canonical", href=True)
        if canonical is not None:
            href = str(canonical.get("href", "")).strip()
    if not href:
        return source_url
    return resolve_url(href, source_url) or source_url


def _rel_tokens(value) -> list[str]:
    if isinstance(value, str):
        value = value.split()
    return [str(v).lower() for v in (value or [])]


def discover(soup: BeautifulSoup, base_url: str) -> list[DiscoveredFeed]:
    out: list[DiscoveredFeed] = []
    seen: set[str] = set()
    for link in soup.find_all("link", href=True):
        if "alternate" not in _rel_tokens(link.get("rel")):
            continue
        feed_type = str(link.get("type", "")).strip().lower()
        if feed_type not in FEED_TYPES:
            continue
        href = resolve_url(str(link.get("href", "")), base_url)
        if not href:
            continue
        key = href.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(DiscoveredFeed(href=href, type=feed_type, title=neat_text(str(link.get("title", "")))))
    return out


def discover_feeds(html: str, source_url: str) -> list[DiscoveredFeed]:
    soup = parse_html(html)
    return discover(soup, base_url_for(soup, source_url))


def rank_native_candidates(candidates: Iterable[DiscoveredFeed], source_url: str) -> list[DiscoveredFeed]:
    """Keep http(s) feeds, same host first, then RSS over Atom/XML over JSON; ties keep page order."""
    source_host = host_of(source_url)
    usable = [c for c in candidates if is_http_url(c.href)]
    indexed = list(enumerate(usable))
    indexed.sort(
        key=lambda pair: (
            0 if host_of(pair[1].href) == source_host else 1,
            -_TYPE_RANK.get(pair[1].type, 0),
            pair[0],
        )
    )
    return [candidate for _, candidate in indexed]


def page_metadata(soup: BeautifulSoup) -> tuple[str, str]:
    """Best-effort (title, description) for the channel of a generated feed."""
    title = ""
    for attrs in ({"property": "og:site_name"}, {"property": "og:title"}):
        meta = soup.find("meta", attrs=attrs)
        if meta is not None and str(meta.get("content", "")).strip():
            title = str(meta.get("content"))
            break
    if not title and soup.title is not None:
        title = soup.title.get_text(" ")
    description = ""
    for attrs in ({"name": "description"}, {"property": "og:description"}):
        meta = soup.find("meta", attrs=attrs)
        if meta is not None and str(meta.get("content", "")).strip():
            description = str(meta.get("content"))
            break
    return neat_text(title, 200), neat_text(description, 400)
