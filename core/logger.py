# /core/logger.py

import logging
import sys
from typing import Any, Dict

from pythonjsonlogger import jsonlogger

LOG_FORMAT = '%(asctime)s %(name)s %(levelname)s %(threadName)s %(message)s'


def get_logger(name: str):
    """
    Returns a logger emitting one JSON object per line on stdout.
    Keys passed through ``extra=`` (e.g. ``execution_id``) become fields of that object,
    which is how log lines of one request are correlated.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    from core.config import settings

    logger.setLevel(settings.LOG_LEVEL.upper())
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(jsonlogger.JsonFormatter(LOG_FORMAT, rename_fields={"levelname": "level"}))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def run_extra(run_id: str, **fields: Any) -> Dict[str, Any]:
    return {"execution_id": run_id, **fields}
