from __future__ import annotations

import re
from typing import Iterable, Sequence, Union

from feedmaker.core.models import FeedItem

MAX_KEYWORDS = 20

_SPLIT_RE = re.compile(r"[,\n]+")


def normalize_keywords(value: Union[str, Iterable[str], None]) -> list[str]:
    """Split on commas and newlines, lower-case, drop blanks and repeats, keep at most 20."""
    if value is None:
        return []
    parts: Iterable[str]
    if isinstance(value, str):
        parts = _SPLIT_RE.split(value)
    else:
        parts = [p for raw in value for p in _SPLIT_RE.split(str(raw))]

    keywords: list[str] = []
    for part in parts:
        keyword = part.strip().lower()
        if not keyword or keyword in keywords:
            continue
        keywords.append(keyword)
        if len(keywords) >= MAX_KEYWORDS:
            break
    return keywords


def _haystack(item: FeedItem) -> str:
    return " ".join(filter(None, (item.title, item.description, item.content_html or ""))).lower()


def item_matches(item: FeedItem, include: Sequence[str], exclude: Sequence[str]) -> bool:
    text = _haystack(item)
    if include and not any(keyword in text for keyword in include):
        return False
    return not any(keyword in text for keyword in exclude)


def apply_keyword_filters(
    items: Sequence[FeedItem],
    include: Sequence[str],
    exclude: Sequence[str],
) -> list[FeedItem]:
    if not include and not exclude:
        return list(items)
    include_lc = [k.lower() for k in include if k]
    exclude_lc = [k.lower() for k in exclude if k]
    return [item for item in items if item_matches(item, include_lc, exclude_lc)]
