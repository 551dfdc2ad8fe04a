"""Turn web pages into RSS 2.0 and JSON Feed files and keep them fresh."""

from __future__ import annotations

__version__ = "0.1.0"
