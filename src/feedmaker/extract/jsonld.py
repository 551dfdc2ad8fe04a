from __future__ import annotations

import json
import logging
import re
from collections import deque
from typing import Any, Optional

from bs4 import BeautifulSoup

from feedmaker.core.models import FeedItem
from feedmaker.extract.text import clean_date, clean_text_field
from feedmaker.http.urls import resolve_url

logger = logging.getLogger(__name__)

_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")

TITLE_MAX = 220
DESCRIPTION_MAX = 400


def _load_block(raw: str) -> Any:
    """Decode one JSON-LD block, retrying once with trailing commas removed."""
    try:
        return json.loads(raw)
    except ValueError:
        pass
    try:
        return json.loads(_TRAILING_COMMA_RE.sub(r"\1", raw))
    except ValueError:
        return None


def _type_of(obj: dict) -> str:
    value = obj.get("@type", "")
    if isinstance(value, list):
        return ",".join(str(v) for v in value).lower()
    return str(value).lower()


def _get(obj: Any, key: str) -> Any:
    return obj.get(key) if isinstance(obj, dict) else None


def _first_present(*values: Any) -> Any:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _article_link(obj: dict) -> Optional[str]:
    url = obj.get("url")
    if isinstance(url, str) and url.strip():
        return url
    main = obj.get("mainEntityOfPage")
    if isinstance(main, str) and main.strip():
        return main
    main_id = _get(main, "@id")
    if isinstance(main_id, str) and main_id.strip():
        return main_id
    return None


def _is_article_type(type_name: str) -> bool:
    return bool(type_name) and ("article" in type_name or type_name == "blogposting")


def extract_jsonld(soup: BeautifulSoup, base_url: str, limit: int) -> list[FeedItem]:
    items: list[FeedItem] = []
    seen: set[str] = set()
    if limit <= 0:
        return items

    def _add(title: Any, link: Any, description: Any, date: Any) -> bool:
        if not title or not isinstance(link, str) or not link.strip():
            return False
        href = resolve_url(link, base_url)
        if not href or href in seen:
            return False
        clean_title = clean_text_field(title, TITLE_MAX)
        if not clean_title:
            return False
        seen.add(href)
        items.append(
            FeedItem(
                title=clean_title,
                link=href,
                description=clean_text_field(description, DESCRIPTION_MAX),
                date=clean_date(date),
            )
        )
        return len(items) >= limit

    for script in soup.find_all("script", type="application/ld+json"):
        raw = (script.string or script.get_text() or "").strip()
        if not raw:
            continue
        decoded = _load_block(raw)
        if not decoded:
            logger.debug("Skipping unparseable JSON-LD block. size=%d", len(raw))
            continue

        queue: deque[Any] = deque([decoded])
        while queue:
            obj = queue.popleft()
            if isinstance(obj, list):
                queue.extend(obj)
                continue
            if not isinstance(obj, dict):
                continue
            graph = obj.get("@graph")
            if isinstance(graph, list):
                queue.extend(graph)
                continue

            type_name = _type_of(obj)

            if type_name == "itemlist":
                elements = obj.get("itemListElement")
                if isinstance(elements, dict):
                    elements = [elements]
                for element in elements if isinstance(elements, list) else []:
                    if not isinstance(element, dict):
                        continue
                    inner = element.get("item")
                    done = _add(
                        _first_present(element.get("name"), _get(inner, "name")),
                        _first_present(element.get("url"), _get(inner, "url"), inner if isinstance(inner, str) else None),
                        _first_present(element.get("description"), _get(inner, "description")) or "",
                        _first_present(element.get("datePublished"), _get(inner, "datePublished")) or "",
                    )
                    if done:
                        return items
                continue

            if _is_article_type(type_name):
                done = _add(
                    _first_present(obj.get("headline"), obj.get("name")),
                    _article_link(obj),
                    obj.get("description") or "",
                    _first_present(obj.get("datePublished"), obj.get("dateModified")) or "",
                )
                if done:
                    return items
    return items
