from __future__ import annotations

import json
import xml.etree.ElementTree as ET
from typing import Optional

from feedmaker.core.models import ValidationResult
from feedmaker.core.utils import format_rfc3339, utc_now

MAX_MESSAGES = 8


class _Collector:
    def __init__(self) -> None:
        self.errors: list[str] = []
        self.warnings: list[str] = []

    def error(self, message: str) -> None:
        if len(self.errors) < MAX_MESSAGES:
            self.errors.append(message)

    def warn(self, message: str) -> None:
        if len(self.warnings) < MAX_MESSAGES:
            self.warnings.append(message)

    def result(self, checked_at: str) -> ValidationResult:
        return ValidationResult(
            ok=not self.errors,
            errors=list(self.errors),
            warnings=list(self.warnings),
            checked_at=checked_at,
        )


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1].lower() if isinstance(tag, str) else ""


def _child_text(node: ET.Element, name: str) -> str:
    for child in node:
        if _local_name(child.tag) == name:
            return (child.text or "").strip()
    return ""


def _validate_rss(content: str, out: _Collector) -> None:
    try:
        root = ET.fromstring(content.encode("utf-8") if isinstance(content, str) else content)
    except ET.ParseError as e:
        out.error(f"Malformed XML: {e}")
        return

    if _local_name(root.tag) != "rss":
        out.warn(f"Expected <rss> root, found <{_local_name(root.tag)}>.")

    channel = next((child for child in root if _local_name(child.tag) == "channel"), None)
    if channel is None:
        out.error("RSS feed is missing <channel>.")
        return

    for name in ("title", "link", "description"):
        if not _child_text(channel, name):
            out.warn(f"Channel is missing <{name}>.")

    items = [child for child in channel if _local_name(child.tag) == "item"]
    if not items:
        out.warn("RSS feed contains no <item> elements.")
        return
    for index, item in enumerate(items, start=1):
        missing = [name for name in ("title", "link") if not _child_text(item, name)]
        if missing:
            out.warn(f"Item #{index} is missing <{'> and <'.join(missing)}>.")


def _validate_jsonfeed(content: str, out: _Collector) -> None:
    try:
        data = json.loads(content)
    except ValueError as e:
        out.error(f"Invalid JSON: {e}")
        return
    if not isinstance(data, dict):
        out.error("Feed JSON did not decode to an object.")
        return

    if not data.get("version"):
        out.warn('Missing required "version" field.')
    if not data.get("title"):
        out.warn('Missing required "title" field.')
    items = data.get("items")
    if not isinstance(items, list):
        out.warn('"items" must be an array.')
        return
    if not items:
        out.warn("JSON feed contains no items.")
    for index, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            out.warn(f"Item #{index} is not an object.")
            continue
        if str(item.get("id", "") or "") == "":
            out.warn(f'Item #{index} is missing an "id".')
        if not item.get("url"):
            out.warn(f'Item #{index} is missing a "url".')


def validate(fmt: str, content: str, *, checked_at: Optional[str] = None) -> ValidationResult:
    """
    Sanity-check a rendered feed.

    Only unparseable content (or an RSS document without a channel) makes the
    result not ok; everything else is reported as a warning.
    """

    out = _Collector()
    normalized = (fmt or "").strip().lower()
    if normalized == "jsonfeed":
        _validate_jsonfeed(content, out)
    elif normalized == "rss":
        _validate_rss(content, out)
    else:
        out.error(f"Unsupported feed format: {fmt}")
    return out.result(checked_at or format_rfc3339(utc_now()))
