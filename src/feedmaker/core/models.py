from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional

FeedFormat = Literal["rss", "jsonfeed"]
FEED_FORMATS: tuple[str, ...] = ("rss", "jsonfeed")


@dataclass(slots=True)
class FeedItem:
    title: str
    link: str
    description: str = ""
    date: str = ""
    content_html: Optional[str] = None


@dataclass(slots=True)
class DiscoveredFeed:
    href: str
    type: str
    title: str = ""


@dataclass(slots=True)
class ValidationResult:
    ok: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    checked_at: str = ""


def encode_item(item: FeedItem) -> dict:
    payload = {
        "title": item.title,
        "link": item.link,
        "description": item.description,
        "date": item.date,
    }
    if item.content_html:
        payload["content_html"] = item.content_html
    return payload
