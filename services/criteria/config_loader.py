"""Config file (criteria.yaml) loader."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent.parent / "configs" / "criteria.yaml"
CONFIG_ENV_VAR = "CRITERIA_CONFIG"


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: Optional[str] = None
    loggers: Dict[str, str] = Field(default_factory=dict)


class StoreSettings(BaseModel):
    backend: Literal["memory", "json"] = "memory"
    path: Optional[str] = None


class LibrarySettings(BaseModel):
    path: Optional[str] = None


class ApiSettings(BaseModel):
    title: str = "Defect Criteria Engine API"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])


class Settings(BaseModel):
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    library: LibrarySettings = Field(default_factory=LibrarySettings)
    api: ApiSettings = Field(default_factory=ApiSettings)


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """Read the YAML config into a dict.

    Args:
        config_path: config file path. ``None`` uses ``$CRITERIA_CONFIG`` or the
            bundled default; a missing default yields an empty config.

    Returns:
        The config dictionary.
    """
    explicit = config_path or os.environ.get(CONFIG_ENV_VAR)
    path = _config_path(config_path)
    if not path.exists():
        if explicit:
            raise FileNotFoundError(f"Config file not found: {path}")
        logger.info("No config file at %s; using defaults", path)
        return {}

    with open(path, encoding="utf-8") as f:
        cfg: Dict[str, Any] = yaml.safe_load(f) or {}

    log_file = (cfg.get("logging") or {}).get("file")
    if log_file and os.path.dirname(log_file):
        os.makedirs(os.path.dirname(log_file), exist_ok=True)

    logger.info("Config loaded: %s", path)
    return cfg


def _config_path(config_path: Optional[Union[str, Path]]) -> Path:
    explicit = config_path or os.environ.get(CONFIG_ENV_VAR)
    return Path(explicit) if explicit else DEFAULT_CONFIG_PATH


def load_settings(config_path: Optional[Union[str, Path]] = None) -> Settings:
    """Load and validate settings; relative file paths resolve against the config file."""
    settings = Settings.model_validate(load_config(config_path))
    base = _config_path(config_path).resolve().parent
    if settings.store.path and not Path(settings.store.path).is_absolute():
        settings.store.path = str((base / settings.store.path).resolve())
    if settings.library.path and not Path(settings.library.path).is_absolute():
        settings.library.path = str((base / settings.library.path).resolve())
    return settings
