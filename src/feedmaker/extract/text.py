from __future__ import annotations

import html
import re
from datetime import datetime, timezone
from typing import Any, Optional

from bs4 import BeautifulSoup
from dateutil import parser as date_parser

_WS_RE = re.compile(r"\s+")
_ELLIPSIS = "…"


def collapse_ws(value: str) -> str:
    return _WS_RE.sub(" ", value or "").strip()


def neat_text(value: Optional[str], max_len: int = 500) -> str:
    """Collapse whitespace and cap at max_len characters, ellipsis included."""
    text = collapse_ws(value or "")
    if max_len > 0 and len(text) > max_len:
        text = text[: max_len - 1].rstrip() + _ELLIPSIS
    return text


def strip_tags(value: str) -> str:
    if "<" not in value:
        return value
    soup = BeautifulSoup(value, "html.parser")
    for element in soup(["script", "style", "noscript"]):
        element.decompose()
    return soup.get_text(" ")


def clean_text_field(value: Any, max_len: int) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        value = " ".join(str(v) for v in value if isinstance(v, (str, int, float)))
    elif not isinstance(value, str):
        if isinstance(value, (int, float)):
            value = str(value)
        else:
            return ""
    text = html.unescape(strip_tags(value))
    return neat_text(text, max_len)


def title_key(title: str) -> str:
    return collapse_ws(title).lower()


def parse_date(raw: Any) -> Optional[datetime]:
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parsed = date_parser.parse(raw.strip())
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def clean_date(raw: Any) -> str:
    """Reformat a parseable date as ISO-8601; pass anything else through unchanged."""
    if not isinstance(raw, str):
        return ""
    parsed = parse_date(raw)
    if parsed is None:
        return raw.strip()
    return parsed.isoformat()
