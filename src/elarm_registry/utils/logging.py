"""
Logging configuration for the elarm registry.

Everything logs through structlog with snake_case event names and keyword
context (server=..., subscriber=...). setup_logging() routes those events to:
- a rich console handler on stderr
- rotating JSON files, when a log directory is configured
- Sentry, when a DSN is configured
"""

import logging
import logging.handlers
import sys
import os
from pathlib import Path
from typing import Optional, Dict, Any, List
import json
from datetime import datetime, timezone
import structlog
from rich.logging import RichHandler
from rich.console import Console
import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration


# Shared stderr console so log lines and CLI output do not interleave badly
console = Console(file=sys.stderr)

_MAX_BYTES = 10 * 1024 * 1024

# LogRecord attributes that are not user context
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {'message', 'taskName'}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with any extra record attributes included."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'location': f"{record.module}:{record.funcName}:{record.lineno}",
            'pid': record.process,
        }

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS:
                continue
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                value = repr(value)
            entry[key] = value

        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry)


def _processors(enable_json: bool) -> List[Any]:
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if enable_json else structlog.dev.ConsoleRenderer(),
    ]


def _json_file_handler(path: Path, level: int, backups: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=_MAX_BYTES, backupCount=backups, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter())
    return handler


def setup_logging(
    app_name: str = "elarm",
    log_level: str = "INFO",
    log_dir: Optional[Path] = None,
    enable_json: bool = True,
    enable_sentry: bool = False,
    sentry_dsn: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Configure structlog and the root logger.

    Calling it again replaces the previous handlers.

    Args:
        app_name: Name of the main logger and prefix of the log files
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_dir: Directory for {app_name}.log and {app_name}-errors.log
        enable_json: Render structlog events as JSON instead of key=value
        enable_sentry: Forward errors to Sentry (needs sentry_dsn)
        sentry_dsn: Sentry DSN

    Returns:
        The main logger, the log directory, the console and the settings used
    """
    level = getattr(logging, log_level.upper())

    structlog.configure(
        processors=_processors(enable_json),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        rich_tracebacks=True,
        tracebacks_suppress=["click", "asyncio"]
    )
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter('%(message)s'))
    root_logger.addHandler(console_handler)

    if log_dir is not None:
        log_dir = Path(log_dir).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        root_logger.addHandler(
            _json_file_handler(log_dir / f"{app_name}.log", logging.DEBUG, backups=10)
        )
        root_logger.addHandler(
            _json_file_handler(log_dir / f"{app_name}-errors.log", logging.ERROR, backups=5)
        )

    if enable_sentry and sentry_dsn:
        sentry_sdk.init(
            dsn=sentry_dsn,
            integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
            traces_sample_rate=0.1,
        )

    settings = {
        'app_name': app_name,
        'log_level': log_level,
        'enable_json': enable_json,
        'enable_sentry': enable_sentry,
    }

    main_logger = structlog.get_logger(app_name)
    main_logger.info(
        "logging_configured",
        log_dir=str(log_dir) if log_dir else None,
        pid=os.getpid(),
        **settings
    )

    return {
        'logger': main_logger,
        'log_dir': log_dir,
        'console': console,
        'config': settings,
    }


def get_logger(name: str) -> structlog.BoundLogger:
    """Logger for one component, e.g. get_logger("elarm.registry")."""
    return structlog.get_logger(name)


__all__ = [
    'setup_logging',
    'get_logger',
    'JSONFormatter',
]
