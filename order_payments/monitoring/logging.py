"""
Structured logging for the payment service.

structlog renders every event as one JSON line on stdout; stdlib loggers
(uvicorn, sqlalchemy, httpx) go through python-json-logger so the stream
stays machine readable. Gateway credentials and webhook signatures are
masked before rendering.
"""
import logging
import sys
from typing import Any, Callable, Dict, Optional

import structlog
from pythonjsonlogger import jsonlogger

from order_payments import __version__
from order_payments.config import Settings, get_settings

REDACTED = "[REDACTED]"

# Event keys whose values never reach the log stream
SENSITIVE_KEYS = frozenset(
    {
        "access_token",
        "api_key",
        "authorization",
        "client_secret",
        "password",
        "raw_body",
        "signature",
        "webhook_secret",
    }
)

# Third-party loggers capped below the service level
QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "uvicorn.access": logging.INFO,
}

Processor = Callable[[Any, str, Dict[str, Any]], Dict[str, Any]]


def redact_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential-like values, including inside nested dicts."""
    for key, value in event_dict.items():
        if key.lower() in SENSITIVE_KEYS and value is not None:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = redact_sensitive(logger, method_name, dict(value))
    return event_dict


def app_context(settings: Settings) -> Processor:
    """
    Build a processor stamping service identity on every event.

    Args:
        settings: Settings the service was started with

    Returns:
        Processor: structlog processor
    """
    context = {
        "app_name": settings.app_name,
        "app_env": settings.app_env,
        "version": __version__,
    }

    def add_app_context(
        logger: Any, method_name: str, event_dict: Dict[str, Any]
    ) -> Dict[str, Any]:
        for key, value in context.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_app_context


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    JSON output everywhere except debug mode, which renders for a
    terminal.

    Args:
        settings: Settings to configure from (environment settings if omitted)
    """
    settings = settings or get_settings()
    renderer: Any = (
        structlog.dev.ConsoleRenderer()
        if settings.debug
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            app_context(settings),
            redact_sensitive,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(settings.log_level)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        renderer="console" if settings.debug else "json",
    )
