"""Structured logging initialisation utilities."""
from __future__ import annotations

import logging
import logging.config
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def configure_logging(config_path: Optional[Path], *, level: int = logging.INFO) -> None:
    """Configure stdlib and structlog logging using the YAML definition.

    Structlog renders each event to a JSON line and hands it to the standard
    library logger named after the emitting module, so handlers and levels
    come from ``logging.yaml``. Without that file the root logger falls back
    to ``basicConfig``.
    """
    if config_path is None or not config_path.exists():
        logging.basicConfig(level=level, format="%(message)s")
    else:
        with config_path.open("r", encoding="utf-8") as handle:
            config: Dict[str, Any] = yaml.safe_load(handle)
        logging.config.dictConfig(config)
    _configure_structlog()
