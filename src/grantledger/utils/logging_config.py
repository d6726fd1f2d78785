import logging
import json
import os
import sys
from datetime import datetime, UTC
from typing import Any, Dict


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }

        # Merge extra fields if they exist
        if hasattr(record, "extra_fields"):
            log_entry.update(record.extra_fields)  # type: ignore

        if record.exc_info:
            log_entry["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO"):
    logger = logging.getLogger("grantledger")
    logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

    # Remove existing handlers to avoid duplicates
    logger.handlers = []
    logger.addHandler(handler)

    log_dir = os.getenv("GRANTLEDGER_LOG_DIR")
    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.FileHandler(os.path.join(log_dir, "grantledger.log"))
            file_handler.setFormatter(JSONFormatter())
            logger.addHandler(file_handler)
        except OSError as e:
            sys.stderr.write(f"Failed to setup file logging: {e}\n")

    # psycopg logs every notice at INFO otherwise
    logging.getLogger("psycopg").setLevel(logging.WARNING)


def _qualified(name: str) -> str:
    if name == "grantledger" or name.startswith("grantledger."):
        return name
    return f"grantledger.{name}"


class StructuredLogger:
    def __init__(self, name: str):
        self.logger = logging.getLogger(_qualified(name))

    def debug(self, msg: str, **kwargs):
        self.logger.debug(msg, extra={"extra_fields": kwargs})

    def info(self, msg: str, **kwargs):
        self.logger.info(msg, extra={"extra_fields": kwargs})

    def warning(self, msg: str, **kwargs):
        self.logger.warning(msg, extra={"extra_fields": kwargs})

    def error(self, msg: str, **kwargs):
        self.logger.error(msg, extra={"extra_fields": kwargs})

    def critical(self, msg: str, **kwargs):
        self.logger.critical(msg, extra={"extra_fields": kwargs})
