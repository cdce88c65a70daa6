import logging
import sys
from typing import Any, Dict, Optional

import structlog
from pythonjsonlogger.json import JsonFormatter

from webhook_relay.core.config import Settings, settings as default_settings


def setup_logging(app_settings: Optional[Settings] = None):
    """
    Configure structured logging for the relay.

    structlog builds the event dict; the final processor hands it to the
    standard library as ``extra`` so python-json-logger renders one JSON
    object per line, shared with third-party loggers (sqlalchemy, httpx).
    """
    app_settings = app_settings or default_settings

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, app_settings.LOG_LEVEL))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.render_to_log_kwargs,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class ContextLogger:
    """
    Structured logger for the relay.

    Fields given to ``with_context`` (delivery id, webhook id and the like)
    are attached to every record the child logger writes. Binding happens on
    first use, so module-level loggers pick up the configuration installed
    later by ``setup_logging``.
    """

    def __init__(self, name: str, context: Optional[Dict[str, Any]] = None):
        self.name = name
        self.context = dict(context or {})
        self.logger = structlog.get_logger(name)

    def with_context(self, **kwargs: Any) -> "ContextLogger":
        """Child logger carrying ``kwargs`` in addition to this logger's fields."""
        return ContextLogger(self.name, {**self.context, **kwargs})

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log("debug", message, kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log("info", message, kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log("warning", message, kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log("error", message, kwargs)

    def _log(self, level: str, message: str, fields: Dict[str, Any]) -> None:
        getattr(self.logger, level)(message, **{**self.context, **fields})


def get_logger(name: str) -> ContextLogger:
    """
    Get a context-aware logger instance.
    """
    return ContextLogger(name)
