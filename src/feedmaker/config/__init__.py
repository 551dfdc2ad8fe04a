from __future__ import annotations

from feedmaker.config.loader import YamlConfigLoader
from feedmaker.config.models import AppConfig, ConfigLoadRequest

__all__ = ["AppConfig", "ConfigLoadRequest", "YamlConfigLoader"]
