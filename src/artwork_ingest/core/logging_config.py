"""Logging setup for the ingestion pipeline.

Three output formats are supported, picked by ``LOG_FORMAT``:

- ``structured``: one text line per record with source location
- ``simple``: timestamp, logger, level and message
- ``json``: one JSON object per record, carrying ingestion fields such as
  ``object_key`` and ``owner_id`` when the caller attached them

``LOG_LEVEL`` sets the level for every logger created here.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

ROOT_LOGGER_NAME = "artwork-ingest"

# Record attributes copied into JSON output when present.
INGESTION_FIELDS = (
    "correlation_id",
    "operation",
    "component",
    "owner_id",
    "object_key",
    "stage",
)

LIBRARY_LOGGERS = ("botocore", "boto3", "aiobotocore", "aioboto3", "urllib3", "PIL")

_TEXT_FORMATS = {
    "structured": (
        "%(asctime)s | %(name)s | %(levelname)-8s | "
        "%(filename)s:%(lineno)d | %(funcName)s() | %(message)s"
    ),
    "simple": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}


class IngestionJsonFormatter(logging.Formatter):
    """Formats a record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in INGESTION_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


def resolve_level(level: Union[str, int, None] = None) -> int:
    """Turn a level name, number or ``None`` (read ``LOG_LEVEL``) into a level."""
    if isinstance(level, int):
        return level
    name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def build_formatter(format_type: str) -> logging.Formatter:
    if format_type == "json":
        return IngestionJsonFormatter()
    if format_type == "structured":
        return logging.Formatter(_TEXT_FORMATS["structured"], datefmt="%Y-%m-%d %H:%M:%S")
    return logging.Formatter(_TEXT_FORMATS["simple"])


def setup_logger(
    name: str = ROOT_LOGGER_NAME,
    level: Optional[str] = None,
    format_type: str = "structured",
) -> logging.Logger:
    """
    Create or refresh a pipeline logger.

    Args:
        name: Logger name, usually ``artwork-ingest`` or a dotted child of it
        level: Level name override; ``LOG_LEVEL`` or INFO when omitted
        format_type: ``structured``, ``simple`` or ``json``; ``LOG_FORMAT`` wins

    Returns:
        The configured logger. Handlers are attached once per name.
    """
    logger = logging.getLogger(name)
    logger.setLevel(resolve_level(level))

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(build_formatter(os.getenv("LOG_FORMAT", format_type).lower()))
        logger.addHandler(handler)

    logger.propagate = False
    return logger


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    return setup_logger(name)


def quiet_library_loggers(level: Optional[str] = None) -> None:
    """Hold AWS SDK and Pillow loggers at WARNING unless running at DEBUG."""
    floor = logging.DEBUG if resolve_level(level) <= logging.DEBUG else logging.WARNING
    for library in LIBRARY_LOGGERS:
        logging.getLogger(library).setLevel(floor)


def configure_multiprocessing_logging() -> None:
    """
    Configure logging inside a CPU worker process.

    Used as the ``initializer`` of the process pool that runs validation and
    derivative generation, so records from workers are not interleaved.
    """
    import multiprocessing

    process_name = multiprocessing.current_process().name
    setup_logger(f"{ROOT_LOGGER_NAME}.{process_name}")
    quiet_library_loggers()


logger = setup_logger()
