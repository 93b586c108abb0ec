"""Configuration loading for svcmode.

Settings come from an optional YAML file, validated against a packaged JSON
Schema, with a couple of environment overrides for cloud credentials.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError

from svcmode.core.errors import ConfigError
from svcmode.core.schema_loader import load_schema_validator
from svcmode.core.timeouts import TimeoutPolicy

LOGGER = logging.getLogger(__name__)

ENV_CLOUD_URL = "SVCMODE_CLOUD_URL"
ENV_CLOUD_ANON_KEY = "SVCMODE_CLOUD_ANON_KEY"


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class ServiceModeConfig:
    baudrate: int = 115200
    read_timeout_s: float = 0.1
    log_level: str = "INFO"
    cloud_url: str | None = None
    cloud_anon_key: str | None = None
    timeouts: TimeoutPolicy = field(default_factory=TimeoutPolicy)


def default_config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "svcmode" / "config.yaml"


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at root")
    return loaded


def load_config(path: str | Path | None = None) -> ServiceModeConfig:
    """Load settings from ``path``, or from the default location if it exists.

    An explicit path that does not exist is an error; a missing default file
    just means defaults.
    """
    if path is None:
        candidate = default_config_path()
        doc = _read_yaml(candidate) if candidate.is_file() else {}
        source: Path | str = candidate
    else:
        source = Path(path)
        if not source.exists():
            raise ConfigError(f"Config path does not exist: {source}")
        doc = _read_yaml(source)

    try:
        load_schema_validator("config.schema.json").validate(doc)
    except ValidationError as exc:
        where = ".".join(str(p) for p in exc.path)
        where = f" ({where})" if where else ""
        raise ConfigError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    cloud_url = os.environ.get(ENV_CLOUD_URL) or doc.get("cloud_url")
    cloud_anon_key = os.environ.get(ENV_CLOUD_ANON_KEY) or doc.get("cloud_anon_key")
    config = ServiceModeConfig(
        baudrate=int(doc.get("baudrate", 115200)),
        read_timeout_s=float(doc.get("read_timeout_s", 0.1)),
        log_level=doc.get("log_level", "INFO"),
        cloud_url=cloud_url,
        cloud_anon_key=cloud_anon_key,
        timeouts=TimeoutPolicy.from_mapping(doc.get("timeouts", {})),
    )
    LOGGER.debug("Loaded configuration from %s", source)
    return config
