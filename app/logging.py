from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from typing import Any, Dict

from .settings import Settings

_HANDLER_MARK = "_reelsmith_handler"


def configure_logging(settings: Settings) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level.upper())

    # Re-running (tests, reloads) must not stack duplicate handlers.
    for handler in list(root_logger.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root_logger.removeHandler(handler)

    log_format = (
        "%(message)s"
        if settings.log_json
        else "%(asctime)s %(levelname)s %(name)s %(message)s"
    )
    formatter = logging.Formatter(log_format)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    setattr(stream_handler, _HANDLER_MARK, True)
    root_logger.addHandler(stream_handler)

    if settings.log_dir is not None:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            settings.log_dir / f"{settings.service_name}.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        setattr(file_handler, _HANDLER_MARK, True)
        root_logger.addHandler(file_handler)


def log_event(logger: logging.Logger, event: str, **payload: Any) -> None:
    record: Dict[str, Any] = {"event": event, **payload}
    logger.info(json.dumps(record, default=str))
