"""Logging initialisation for the CLI and API entry points."""

from __future__ import annotations

import logging
import sys
from typing import Any, Dict, List

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _level(name: Any, default: int = logging.INFO) -> int:
    return getattr(logging, str(name or "").upper(), default)


def setup_logging(cfg: Dict[str, Any]) -> None:
    """Configure root logging from the ``logging`` section of the config.

    ``logging.loggers`` maps logger names to levels, e.g. ``{"services.criteria.evaluator": "DEBUG"}``
    to trace every skipped rule.
    """
    log_cfg = cfg.get("logging") or {}

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = log_cfg.get("file")
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=_level(log_cfg.get("level")),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )

    for name, level in (log_cfg.get("loggers") or {}).items():
        logging.getLogger(name).setLevel(_level(level))
