"""
Structured logging

- JSON format (production)
- Colored console format (development)
- Pipeline run id tracking through a context variable
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

from release_promoter.core.config import get_settings

run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)


class JSONFormatter(logging.Formatter):
    """JSON log formatter (production)"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        run_id = run_id_var.get()
        if run_id:
            log_data["run_id"] = run_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colored console formatter (development)"""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)

        run_id = run_id_var.get()
        run_str = f"[{run_id[:8]}] " if run_id else ""

        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        message = record.getMessage()

        formatted = (
            f"{color}{timestamp} | {record.levelname:8} | "
            f"{run_str}{record.name} | {message}{self.RESET}"
        )

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


@lru_cache()
def setup_logging() -> None:
    """Initialize the root logger once"""
    settings = get_settings()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    # stderr keeps stdout free for CLI JSON output
    handler = logging.StreamHandler(sys.stderr)
    if settings.app_env == "production":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(ConsoleFormatter())

    root_logger.addHandler(handler)

    for noisy in ("docker", "urllib3", "kubernetes", "paramiko", "uvicorn"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Module logger

    Usage:
        logger = get_logger(__name__)
        logger.info("Promoting", extra={"extra_fields": {"target": "swarm"}})
    """
    setup_logging()
    return logging.getLogger(name)


def set_run_id(run_id: Optional[str]) -> None:
    run_id_var.set(run_id)


def get_run_id() -> Optional[str]:
    return run_id_var.get()
