from __future__ import annotations

import json
import logging

from backend.app.core import config


def configure_logging() -> None:
    fmt = "%(message)s" if config.LOG_JSON else "%(asctime)s %(levelname)s %(name)s %(message)s"
    logging.basicConfig(level=config.LOG_LEVEL.upper(), format=fmt)


def log_json(logger: logging.Logger, payload: dict, level: int = logging.INFO) -> None:
    logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))
