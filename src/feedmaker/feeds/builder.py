from __future__ import annotations

import html
import json
import re
import xml.etree.ElementTree as ET
from datetime import datetime
from email.utils import format_datetime
from typing import Optional, Sequence

from bs4 import BeautifulSoup

from feedmaker.core.models import FeedItem
from feedmaker.extract.text import neat_text, parse_date

CONTENT_NS = "http://purl.org/rss/1.0/modules/content/"
JSONFEED_VERSION = "https://jsonfeed.org/version/1.1"

DESCRIPTION_MAX = 400
SUMMARY_MAX = 220
FALLBACK_DESCRIPTION = "Feed item"

CONTENT_TYPES = {
    "rss": "application/rss+xml; charset=utf-8",
    "jsonfeed": "application/feed+json; charset=utf-8",
}
EXTENSIONS = {"rss": "xml", "jsonfeed": "json"}

_XML_INVALID_RE = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")
_SCRUB_TAGS = ("script", "style", "svg", "noscript", "iframe")

ET.register_namespace("content", CONTENT_NS)


def content_type_for(fmt: str) -> str:
    return CONTENT_TYPES[fmt]


def extension_for(fmt: str) -> str:
    return EXTENSIONS[fmt]


def xml_safe(value: Optional[str]) -> str:
    return _XML_INVALID_RE.sub("", value or "")


def plain_text(value: str, limit: int) -> str:
    text = value or ""
    if "<" in text:
        text = BeautifulSoup(text, "html.parser").get_text(" ")
    return neat_text(html.unescape(text).replace("\xa0", " "), limit)


def clean_content_html(value: str) -> str:
    """Drop script, style and svg markup; wrap plain text in paragraphs."""
    raw = (value or "").strip()
    if not raw:
        return ""
    soup = BeautifulSoup(raw, "html.parser")
    for element in soup(_SCRUB_TAGS):
        element.decompose()
    if soup.find(True) is None:
        text = soup.get_text().replace("\r\n", "\n").replace("\xa0", " ").strip()
        paragraphs = [p.strip() for p in re.split(r"\n{2,}", text) if p.strip()]
        return "\n".join(f"<p>{html.escape(p).replace(chr(10), '<br>')}</p>" for p in paragraphs)
    return str(soup).strip()


def item_content_html(item: FeedItem) -> str:
    for candidate in (item.content_html or "", item.description or ""):
        cleaned = clean_content_html(candidate)
        if cleaned:
            return cleaned
    return ""


def _summary_source(item: FeedItem) -> str:
    for candidate in (item.description, item.content_html or "", item.title, item.link):
        if candidate and candidate.strip():
            return candidate
    return ""


def _rfc822(value: str) -> Optional[str]:
    parsed = parse_date(value)
    return format_datetime(parsed) if parsed else None


def _rfc3339(value: str) -> Optional[str]:
    parsed = parse_date(value)
    return parsed.isoformat() if parsed else None


def build_rss(
    title: str,
    link: str,
    description: str,
    items: Sequence[FeedItem],
    last_built: Optional[datetime] = None,
) -> str:
    """Serialize items as RSS 2.0. Output depends only on the arguments."""
    rss = ET.Element("rss", {"version": "2.0"})
    channel = ET.SubElement(rss, "channel")
    ET.SubElement(channel, "title").text = xml_safe(title)
    ET.SubElement(channel, "link").text = xml_safe(link)
    ET.SubElement(channel, "description").text = xml_safe(description)
    if last_built is not None:
        ET.SubElement(channel, "lastBuildDate").text = format_datetime(last_built)

    for item in items:
        node = ET.SubElement(channel, "item")
        ET.SubElement(node, "title").text = xml_safe(item.title or "Untitled")
        ET.SubElement(node, "link").text = xml_safe(item.link)
        summary = plain_text(_summary_source(item), DESCRIPTION_MAX) or FALLBACK_DESCRIPTION
        ET.SubElement(node, "description").text = xml_safe(summary)

        content = item_content_html(item)
        if content:
            ET.SubElement(node, f"{{{CONTENT_NS}}}encoded").text = xml_safe(content)

        if item.date:
            pub_date = _rfc822(item.date)
            if pub_date:
                ET.SubElement(node, "pubDate").text = pub_date

        guid = ET.SubElement(node, "guid", {"isPermaLink": "true"})
        guid.text = xml_safe(item.link)

    body = ET.tostring(rss, encoding="unicode")
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + body + "\n"


def build_jsonfeed(
    title: str,
    link: str,
    description: str,
    items: Sequence[FeedItem],
    feed_url: str,
) -> str:
    feed: dict = {
        "version": JSONFEED_VERSION,
        "title": title,
        "home_page_url": link,
        "feed_url": feed_url,
        "description": description,
        "items": [],
    }
    for item in items:
        item_title = item.title or "Untitled"
        entry: dict = {"id": item.link, "url": item.link, "title": item_title}

        content = item_content_html(item)
        if content:
            entry["content_html"] = content

        text = plain_text(content or _summary_source(item), DESCRIPTION_MAX) or item_title
        entry["content_text"] = text
        entry["summary"] = neat_text(text, SUMMARY_MAX)

        if item.date:
            published = _rfc3339(item.date)
            if published:
                entry["date_published"] = published
        feed["items"].append(entry)

    return json.dumps(feed, indent=2, ensure_ascii=False) + "\n"


def build_feed(
    fmt: str,
    *,
    title: str,
    link: str,
    description: str,
    items: Sequence[FeedItem],
    feed_url: str,
    last_built: Optional[datetime] = None,
) -> str:
    if fmt == "rss":
        return build_rss(title, link, description, items, last_built=last_built)
    if fmt == "jsonfeed":
        return build_jsonfeed(title, link, description, items, feed_url)
    raise ValueError(f"Unsupported feed format: {fmt}")
