from __future__ import annotations

import logging
import re
import sys
from pathlib import Path
from typing import TextIO

import structlog
from structlog.typing import EventDict, Processor

from backend.app.config import AppSettings
from backend.app.telemetry import TELEMETRY_LOGGER_NAME

ROOT_LOGGER_NAME = "link_saver"
LOG_FILE_NAME = "link-saver.log"
TELEMETRY_LOG_FILE_NAME = "link-saver-telemetry.log"

# uvicorn errors are copied into the JSON log file.
_FORWARDED_LOGGERS: tuple[str, ...] = ("uvicorn.error",)
# Chatty third-party loggers capped at WARNING.
_QUIET_LOGGERS: tuple[str, ...] = ("MARKDOWN", "google.generativeai", "google.api_core", "grpc")

# Bot tokens appear in Telegram API urls; API keys in query strings and headers.
_SECRET_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"bot\d+:[A-Za-z0-9_-]+"), "bot[masked]"),
    (re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/=-]+"), "Bearer [masked]"),
    (re.compile(r"(?i)([?&]key=)[^&\s]+"), r"\1[masked]"),
)


def configure_application_logging(settings: AppSettings) -> Path:
    """Route `link_saver.*` records to the console and a JSON file.

    Telemetry events get their own file so the main log stays readable.
    Returns the main log file path.
    """
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = settings.log_dir / LOG_FILE_NAME
    telemetry_log_file = settings.log_dir / TELEMETRY_LOG_FILE_NAME

    _configure_structlog()

    app_logger = _claim_logger(ROOT_LOGGER_NAME, logging.DEBUG)
    file_handler = _build_file_handler(log_file, logging.DEBUG)
    app_logger.addHandler(_build_console_handler(sys.stdout, level=settings.log_level))
    app_logger.addHandler(file_handler)

    telemetry_logger = _claim_logger(TELEMETRY_LOGGER_NAME, logging.INFO)
    telemetry_logger.addHandler(_build_file_handler(telemetry_log_file, logging.INFO))

    for name in _FORWARDED_LOGGERS:
        forwarded = logging.getLogger(name)
        if file_handler not in forwarded.handlers:
            forwarded.addHandler(file_handler)
    _quiet_library_loggers()

    app_logger.info(
        "logging ready level=%s path=%s telemetry_path=%s",
        settings.log_level.upper(),
        log_file,
        telemetry_log_file,
    )
    return log_file


def configure_cli_logging(*, level: str = "WARNING") -> None:
    """Console-only logging for `linkctl`; stdout stays reserved for command output."""
    _configure_structlog()
    logger = _claim_logger(ROOT_LOGGER_NAME, logging.DEBUG)
    logger.addHandler(_build_console_handler(sys.stderr, level=level))
    _quiet_library_loggers()


def mask_secrets(_logger: object, _method_name: str, event_dict: EventDict) -> EventDict:
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _mask(value)
    return event_dict


def _mask(text: str) -> str:
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _claim_logger(name: str, level: int) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    return logger


def _quiet_library_loggers() -> None:
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _build_console_handler(stream: TextIO, *, level: str) -> logging.Handler:
    handler = logging.StreamHandler(stream=stream)
    handler.setLevel(_parse_level(level))
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_pre_chain(),
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                mask_secrets,
                structlog.dev.ConsoleRenderer(colors=_stream_supports_color(stream)),
            ],
        )
    )
    return handler


def _build_file_handler(path: Path, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_pre_chain(),
            processors=[
                _add_source_location,
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                mask_secrets,
                structlog.processors.JSONRenderer(sort_keys=True),
            ],
        )
    )
    return handler


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
    ]


def _parse_level(raw_level: str) -> int:
    resolved = logging.getLevelName(raw_level.strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _add_source_location(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict["pathname"] = record.pathname
        event_dict["lineno"] = record.lineno
        event_dict["func_name"] = record.funcName
    return event_dict


def _stream_supports_color(stream: object) -> bool:
    isatty = getattr(stream, "isatty", None)
    if not callable(isatty):
        return False
    try:
        return bool(isatty())
    except (OSError, ValueError):
        return False
