"""Logging setup for the API process."""
from __future__ import annotations

import logging

from petition.config import get_settings

_NOISY_LOGGERS = ("httpx", "httpcore", "anthropic", "openai", "uvicorn.access")


def configure_logging(level: str | None = None) -> None:
    level = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        force=True,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
