"""Structured logging for the harvester and its per-query log files.

Every record goes through structlog into stdlib handlers that render JSON
lines. ``logs/harvester.log`` receives everything at INFO and above,
``logs/error.log`` only errors, and each query fingerprint gets its own file
under ``logs/queries/`` so ``place-harvester log show --query`` can replay a
single run.
"""

from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path
from typing import Any, Iterable

import structlog
from pythonjsonlogger.jsonlogger import JsonFormatter

ROOT_LOGGER = "place_harvester"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_configured = False


def _log_dir() -> Path:
    home = os.environ.get("PLACE_HARVESTER_HOME")
    if home:
        return Path(home).expanduser().resolve() / "logs"
    return Path(__file__).resolve().parents[1] / "logs"


def _json_formatter() -> logging.Formatter:
    return JsonFormatter(JSON_FORMAT)


def _file_handler(path: Path, level: str, formatter: str = "json") -> dict[str, Any]:
    return {
        "class": "logging.FileHandler",
        "level": level,
        "filename": str(path),
        "encoding": "utf-8",
        "formatter": formatter,
    }


def _logging_dict(level: str, log_dir: Path) -> dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"json": {"()": JsonFormatter, "fmt": JSON_FORMAT}},
        "handlers": {
            "console": {"class": "logging.StreamHandler", "level": level, "formatter": "json"},
            "harvester_file": _file_handler(log_dir / "harvester.log", "INFO"),
            "error_file": _file_handler(log_dir / "error.log", "ERROR"),
        },
        "loggers": {
            ROOT_LOGGER: {
                "handlers": ["console", "harvester_file", "error_file"],
                "level": level,
                "propagate": False,
            },
        },
    }


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_logging(verbose: bool = False) -> structlog.BoundLogger:
    """Set up handlers once per process and return the application logger."""

    global _configured
    log_dir = _log_dir()
    (log_dir / "queries").mkdir(parents=True, exist_ok=True)
    if not _configured:
        logging.config.dictConfig(_logging_dict("DEBUG" if verbose else "INFO", log_dir))
        _configure_structlog()
        _configured = True
    return structlog.get_logger(ROOT_LOGGER)


def harvester_log_path() -> Path:
    return _log_dir() / "harvester.log"


def query_log_path(fingerprint: str) -> Path:
    return _log_dir() / "queries" / f"{fingerprint[:16]}.log"


def _attach_file_handler(logger_name: str, path: Path) -> None:
    py_logger = logging.getLogger(logger_name)
    target = os.path.abspath(path)
    for handler in py_logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
            return
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.INFO)
    handler.setFormatter(_json_formatter())
    py_logger.addHandler(handler)


def query_logger(fingerprint: str, verbose: bool = False) -> structlog.BoundLogger:
    """Logger bound to one query fingerprint, mirrored to that query's file."""

    configure_logging(verbose)
    logger_name = f"{ROOT_LOGGER}.query.{fingerprint[:16]}"
    _attach_file_handler(logger_name, query_log_path(fingerprint))
    return structlog.get_logger(logger_name).bind(fingerprint=fingerprint)


def tail_log(path: Path, line_count: int = 100) -> list[str]:
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="ignore") as stream:
        lines = stream.readlines()
    return lines[-line_count:]


def available_query_logs() -> Iterable[Path]:
    queries_dir = _log_dir() / "queries"
    if not queries_dir.exists():
        return []
    return sorted(queries_dir.glob("*.log"))


__all__ = [
    "available_query_logs",
    "configure_logging",
    "harvester_log_path",
    "query_log_path",
    "query_logger",
    "tail_log",
]
