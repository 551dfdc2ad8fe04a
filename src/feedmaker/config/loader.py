from __future__ import annotations

import collections.abc
import os
import shutil
import typing
from pathlib import Path
from typing import Any, MutableMapping, Sequence

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel

from feedmaker.config.models import AppConfig, ConfigLoadRequest

DEFAULT_CONFIG_TEMPLATE = Path("examples/config.yaml")

# Created beside data/config/ on first run.
DATA_SUBDIRS = ("config", "feeds", "jobs", "http-cache", "logs")

_LIST_ORIGINS = (list, tuple, collections.abc.Sequence)


def _read_yaml_config(path: Path) -> dict[str, Any]:
    if not path.exists() and DEFAULT_CONFIG_TEMPLATE.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(DEFAULT_CONFIG_TEMPLATE, path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Top-level YAML must be a mapping, got: {type(data).__name__}")
    return data


def _ensure_data_layout(yaml_path: Path) -> None:
    if yaml_path.parent.name != "config":
        return
    data_root = yaml_path.parent.parent
    for name in DATA_SUBDIRS:
        (data_root / name).mkdir(parents=True, exist_ok=True)


def _is_list_field(annotation: Any) -> bool:
    return typing.get_origin(annotation) in _LIST_ORIGINS


def _set_override(config: MutableMapping[str, Any], segments: Sequence[str], value: str) -> None:
    """
    Place an environment value at its key path, checked against the AppConfig schema.

    Sections missing from the YAML are created so that fields with defaults can
    still be overridden. List fields take a comma separated value.
    """
    dotted = ".".join(segments)
    model: type[BaseModel] = AppConfig
    target = config
    for index, segment in enumerate(segments):
        field = model.model_fields.get(segment)
        if field is None:
            raise KeyError(f"Unknown configuration key path: {dotted}")

        annotation = field.annotation
        is_last = index == len(segments) - 1
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            if is_last:
                raise TypeError(f"Configuration key path points to a section: {dotted}")
            section = target.setdefault(segment, {})
            if not isinstance(section, dict):
                raise TypeError(f"Configuration key path does not point to a mapping: {dotted}")
            target = section
            model = annotation
            continue

        if not is_last:
            raise KeyError(f"Unknown configuration key path: {dotted}")
        if _is_list_field(annotation):
            target[segment] = [part.strip() for part in value.split(",") if part.strip()]
        else:
            # Pydantic coerces the string during validation.
            target[segment] = value


def _apply_env_overrides(config: MutableMapping[str, Any], env_prefix: str) -> None:
    for name, value in os.environ.items():
        if not name.startswith(env_prefix):
            continue
        segments = [part.lower() for part in name[len(env_prefix) :].split("__") if part]
        if not segments:
            raise ValueError(f"Invalid environment variable override name: {name}")
        _set_override(config, segments, value)


class YamlConfigLoader:
    """Loads AppConfig from YAML, then .env values, then FEEDMAKER__ environment overrides."""

    async def load(self, request: ConfigLoadRequest = ConfigLoadRequest()) -> AppConfig:
        yaml_path = Path(request.yaml_path)
        _ensure_data_layout(yaml_path)
        config = _read_yaml_config(yaml_path)

        if request.dotenv_path is not None:
            dotenv_path = Path(request.dotenv_path)
            if dotenv_path.exists():
                load_dotenv(dotenv_path=dotenv_path, override=False)

        _apply_env_overrides(config, request.env_prefix)
        return AppConfig.model_validate(config)
