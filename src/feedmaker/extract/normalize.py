from __future__ import annotations

from typing import Iterable

from feedmaker.core.models import FeedItem


def normalize(items: Iterable[FeedItem], limit: int) -> list[FeedItem]:
    """
    Drop linkless items and repeats of a link (case-insensitive), keeping the first.

    Order is preserved and the result never exceeds max(limit, 0) items.
    """

    cap = max(limit, 0)
    out: list[FeedItem] = []
    if cap == 0:
        return out
    seen: set[str] = set()
    for item in items:
        key = (item.link or "").strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(item)
        if len(out) >= cap:
            break
    return out
