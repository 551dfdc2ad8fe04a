from __future__ import annotations

from feedmaker.feeds.builder import build_feed, build_jsonfeed, build_rss, content_type_for
from feedmaker.feeds.validator import validate

__all__ = ["build_feed", "build_jsonfeed", "build_rss", "content_type_for", "validate"]
