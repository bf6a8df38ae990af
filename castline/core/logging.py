from __future__ import annotations

import logging
import logging.config
from typing import Any

import structlog

from castline.core.config import get_settings


def _json_formatter() -> dict[str, Any]:
    # Records come from stdlib loggers, so the pre-chain adds what structlog-native events would carry.
    return {
        "()": structlog.stdlib.ProcessorFormatter,
        "foreign_pre_chain": [
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
        ],
        "processors": [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
    }


def configure_logging() -> None:
    settings = get_settings()
    formatter = "json" if settings.log_format.lower() == "json" else "text"
    logging.config.dictConfig(
        {
            "version": 1,
            # Keep uvicorn/arq loggers alive; they propagate into the root handler.
            "disable_existing_loggers": False,
            "formatters": {
                "text": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
                "json": _json_formatter(),
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": formatter,
                },
            },
            "root": {"level": settings.log_level.upper(), "handlers": ["default"]},
        }
    )
