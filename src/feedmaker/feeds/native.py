from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Sequence
from urllib.parse import urlsplit

import feedparser
from bs4 import UnicodeDammit

from feedmaker.core.models import FeedItem
from feedmaker.extract.text import clean_date, clean_text_field
from feedmaker.feeds.builder import build_rss
from feedmaker.feeds.validator import validate
from feedmaker.http.urls import host_of, resolve_url

logger = logging.getLogger(__name__)

NATIVE_ACCEPT = (
    "application/rss+xml, application/atom+xml, application/feed+json, "
    "application/json, application/xml;q=0.9, */*;q=0.8"
)

_XML_DECL_ENCODING_RE = re.compile(r"""(<\?xml\b[^>]*encoding=["'])[^"']+(["'])""", re.IGNORECASE)
_XML_DECL_NO_ENCODING_RE = re.compile(r"(<\?xml\b[^>]*?)(\s*\?>)", re.IGNORECASE)
_XML_DECL_CHARSET_RE = re.compile(rb"""<\?xml[^>]*encoding=["']([^"']+)["']""")
_HEADER_CHARSET_RE = re.compile(r"charset\s*=\s*\"?([^\";]+)\"?", re.IGNORECASE)
_ROOT_TAG_RE = re.compile(r"^<([a-z0-9:_-]+)", re.IGNORECASE)
_XML_PROLOG_RE = re.compile(r"^<\?xml[^>]*>\s*", re.IGNORECASE)


class NativeFeedError(Exception):
    """The fetched document is not a usable feed."""


@dataclass(slots=True)
class EncodedBody:
    text: str
    changed: bool = False
    source_charset: Optional[str] = None


@dataclass(slots=True)
class NativeFeed:
    body: str
    format: str
    title: str = ""
    link: str = ""
    description: str = ""
    items: list[FeedItem] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def normalize_encoding(body: bytes, headers: Optional[Mapping[str, str]] = None) -> EncodedBody:
    """Decode to text, converting from the declared charset when the bytes are not UTF-8."""
    result = EncodedBody(text="")
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError:
        candidates: list[str] = []
        match = _XML_DECL_CHARSET_RE.search(body[:1024])
        if match:
            candidates.append(match.group(1).decode("ascii", errors="ignore").strip())
        header_match = _HEADER_CHARSET_RE.search((headers or {}).get("content-type", ""))
        if header_match:
            candidates.append(header_match.group(1).strip())
        candidates.append("windows-1252")
        dammit = UnicodeDammit(body, known_definite_encodings=candidates, is_html=False)
        if dammit.unicode_markup is None:
            text = body.decode("utf-8", errors="replace")
        else:
            text = dammit.unicode_markup
            result.source_charset = (dammit.original_encoding or "").lower() or None
        result.changed = True

    if text.startswith("\ufeff"):
        text = text[1:]
        result.changed = True
        if result.source_charset is None:
            result.source_charset = "utf-8-bom"

    if result.changed:
        updated, count = _XML_DECL_ENCODING_RE.subn(r"\1UTF-8\2", text, count=1)
        if count == 0 and updated.lstrip().startswith("<?xml"):
            updated = _XML_DECL_NO_ENCODING_RE.sub(r'\1 encoding="UTF-8"\2', updated, count=1)
        text = updated

    result.text = text
    return result


def detect_format(text: str, headers: Optional[Mapping[str, str]] = None, source_url: str = "") -> str:
    """Classify a feed document as "rss", "atom" or "jsonfeed"."""
    content_type = (headers or {}).get("content-type", "").lower()
    if "json" in content_type:
        return "jsonfeed"
    if "atom" in content_type:
        return "atom"
    if "xml" in content_type and "rss" in content_type:
        return "rss"

    head = text.lstrip()[:4000].lower()
    if '"version"' in head and "jsonfeed.org/version" in head:
        return "jsonfeed"
    if "<feed" in head and "www.w3.org/2005/atom" in head:
        return "atom"
    if "<rss" in head:
        return "rss"

    trimmed = _XML_PROLOG_RE.sub("", text.lstrip(), count=1).lstrip()
    match = _ROOT_TAG_RE.match(trimmed)
    if match:
        local = match.group(1).lower().split(":")[-1]
        if local == "feed":
            return "atom"
        if local in ("rss", "rdf"):
            return "rss"
    if trimmed.startswith("{"):
        return "jsonfeed"

    path = urlsplit(source_url).path.lower() if source_url else ""
    if path.endswith(".json"):
        return "jsonfeed"
    return "rss"


# ---------------------------------------------------------------------------
# Per-host overrides for feeds that need special handling.
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Transformed:
    body: str
    format: str
    note: str


@dataclass(frozen=True, slots=True)
class FeedOverride:
    name: str
    hosts: Sequence[str] = ()
    rewrite_url: Optional[Callable[[str], Optional[str]]] = None
    transform: Optional[Callable[[str, str, str], Optional[Transformed]]] = None

    def applies_to(self, url: str) -> bool:
        if not self.hosts:
            return True
        host = host_of(url)
        return any(host == h or host.endswith("." + h) for h in self.hosts)


def _google_topics_to_rss(url: str) -> Optional[str]:
    parts = urlsplit(url)
    if "/rss/" in parts.path or not parts.path.startswith("/topics/"):
        return None
    return url.replace("/topics/", "/rss/topics/", 1)


def _jsonfeed_add_version(text: str, fmt: str, url: str) -> Optional[Transformed]:
    if fmt != "jsonfeed" and not text.lstrip().startswith("{"):
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    changed = False
    if not isinstance(data.get("items"), list):
        data["items"] = []
        changed = True
    if not str(data.get("version") or "").strip():
        data["version"] = "https://jsonfeed.org/version/1"
        changed = True
    if not changed:
        return None
    return Transformed(
        body=json.dumps(data, indent=2, ensure_ascii=False),
        format="jsonfeed",
        note="jsonfeed normalized (added version)",
    )


def _youtube_atom_to_rss(text: str, fmt: str, url: str) -> Optional[Transformed]:
    if fmt != "atom" or "yt:channelid" not in text[:20000].lower():
        return None
    parsed = feedparser.parse(text)
    feed = parsed.get("feed", {})
    items: list[FeedItem] = []
    for entry in parsed.get("entries", []):
        link = entry.get("link") or ""
        if not link and entry.get("yt_videoid"):
            link = f"https://www.youtube.com/watch?v={entry['yt_videoid']}"
        title = entry.get("title") or link
        if not link:
            continue
        description = ""
        media = entry.get("media_description") or entry.get("summary") or ""
        if isinstance(media, str):
            description = media
        items.append(
            FeedItem(
                title=clean_text_field(title, 220) or "Video",
                link=link,
                description=clean_text_field(description, 400),
                date=clean_date(entry.get("published") or entry.get("updated") or ""),
            )
        )
    if not items:
        return None
    rss = build_rss(
        feed.get("title") or "YouTube Channel",
        feed.get("link") or url,
        feed.get("subtitle") or "Videos fetched from YouTube.",
        items,
    )
    return Transformed(body=rss, format="rss", note="youtube normalized")


NATIVE_OVERRIDES: tuple[FeedOverride, ...] = (
    FeedOverride(name="google-news-topics", hosts=("news.google.com",), rewrite_url=_google_topics_to_rss),
    FeedOverride(name="youtube-atom", hosts=("youtube.com",), transform=_youtube_atom_to_rss),
    FeedOverride(name="jsonfeed-version", transform=_jsonfeed_add_version),
)


def effective_native_url(url: str, overrides: Sequence[FeedOverride] = NATIVE_OVERRIDES) -> str:
    for override in overrides:
        if override.rewrite_url is None or not override.applies_to(url):
            continue
        rewritten = override.rewrite_url(url)
        if rewritten and rewritten != url:
            logger.debug("native.url_rewrite override=%s from=%s to=%s", override.name, url, rewritten)
            return rewritten
    return url


def apply_transforms(
    text: str,
    fmt: str,
    url: str,
    overrides: Sequence[FeedOverride] = NATIVE_OVERRIDES,
) -> tuple[str, str, list[str]]:
    notes: list[str] = []
    for override in overrides:
        if override.transform is None or not override.applies_to(url):
            continue
        transformed = override.transform(text, fmt, url)
        if transformed is None:
            continue
        text, fmt = transformed.body, transformed.format
        notes.append(transformed.note)
    return text, fmt, notes


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _entry_content_html(entry) -> Optional[str]:
    for content in entry.get("content") or []:
        value = content.get("value") if isinstance(content, dict) else None
        if value:
            return value
    return None


def _items_from_feedparser(parsed, base_url: str) -> list[FeedItem]:
    items: list[FeedItem] = []
    for entry in parsed.get("entries", []):
        link = resolve_url(entry.get("link") or "", base_url)
        content_html = _entry_content_html(entry)
        summary = entry.get("summary") or ""
        items.append(
            FeedItem(
                title=clean_text_field(entry.get("title") or "", 220) or link,
                link=link,
                description=clean_text_field(summary, 400),
                date=clean_date(entry.get("published") or entry.get("updated") or ""),
                content_html=content_html or (summary if "<" in summary else None),
            )
        )
    return items


def _items_from_jsonfeed(data: dict, base_url: str) -> list[FeedItem]:
    items: list[FeedItem] = []
    for entry in data.get("items") or []:
        if not isinstance(entry, dict):
            continue
        link = resolve_url(str(entry.get("url") or entry.get("external_url") or ""), base_url)
        content_html = entry.get("content_html") if isinstance(entry.get("content_html"), str) else None
        description = entry.get("summary") or entry.get("content_text") or ""
        items.append(
            FeedItem(
                title=clean_text_field(entry.get("title") or "", 220) or link,
                link=link,
                description=clean_text_field(description, 400),
                date=clean_date(entry.get("date_published") or entry.get("date_modified") or ""),
                content_html=content_html,
            )
        )
    return items


def parse_native(
    body: bytes,
    headers: Optional[Mapping[str, str]],
    url: str,
    *,
    overrides: Sequence[FeedOverride] = NATIVE_OVERRIDES,
) -> NativeFeed:
    """
    Turn a fetched feed document into a NativeFeed.

    Raises NativeFeedError when the document is empty or cannot be read as a feed.
    """

    if not body.strip():
        raise NativeFeedError("Native refresh returned empty body")

    encoded = normalize_encoding(body, headers)
    notes: list[str] = []
    if encoded.changed:
        notes.append(
            f"encoding normalized from {encoded.source_charset}" if encoded.source_charset else "encoding normalized"
        )

    fmt = detect_format(encoded.text, headers, url)
    text, fmt, transform_notes = apply_transforms(encoded.text, fmt, url, overrides)
    notes.extend(transform_notes)

    if fmt == "jsonfeed":
        check = validate("jsonfeed", text)
        if not check.ok:
            raise NativeFeedError(check.errors[0] if check.errors else "Native feed failed validation.")
        data = json.loads(text)
        return NativeFeed(
            body=text,
            format="jsonfeed",
            title=str(data.get("title") or ""),
            link=str(data.get("home_page_url") or url),
            description=str(data.get("description") or ""),
            items=_items_from_jsonfeed(data, url),
            notes=notes,
            warnings=check.warnings,
        )

    warnings: list[str] = []
    if fmt == "rss":
        check = validate("rss", text)
        if not check.ok:
            raise NativeFeedError(check.errors[0] if check.errors else "Native feed failed validation.")
        warnings = check.warnings

    parsed = feedparser.parse(text)
    if parsed.get("bozo") and not parsed.get("entries") and not parsed.get("feed"):
        raise NativeFeedError(f"Native feed could not be parsed: {parsed.get('bozo_exception')}")
    feed = parsed.get("feed", {})
    return NativeFeed(
        body=text,
        format=fmt,
        title=clean_text_field(feed.get("title") or "", 200),
        link=feed.get("link") or url,
        description=clean_text_field(feed.get("subtitle") or feed.get("description") or "", 400),
        items=_items_from_feedparser(parsed, url),
        notes=notes,
        warnings=warnings,
    )
