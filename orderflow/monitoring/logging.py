"""
Structured logging for the order service.

structlog renders order/payment events as JSON lines; records coming from
libraries through the standard ``logging`` module (uvicorn, SQLAlchemy,
stripe) go through python-json-logger so both streams share one shape:
``@timestamp``, ``level``, ``logger``, ``message``/``event``.

Gateway secrets, webhook signatures and customer contact details are masked
before anything is rendered.
"""
import logging
import sys
from typing import Any, Dict, List, Optional

import structlog
from pythonjsonlogger.json import JsonFormatter

from orderflow.config import Settings, get_settings

REDACTED = "[redacted]"

SENSITIVE_KEYS = frozenset(
    {
        "api_key",
        "authorization",
        "customer_email",
        "email",
        "phone",
        "signature",
        "stripe_secret_key",
        "stripe_webhook_secret",
        "webhook_secret",
    }
)

# Library loggers and the level they are held at unless debugging.
QUIET_LOGGERS: Dict[str, int] = {
    "aiosqlite": logging.WARNING,
    "asyncio": logging.WARNING,
    "stripe": logging.INFO,
    "uvicorn.access": logging.WARNING,
}

_app_context: Dict[str, Any] = {}


def add_app_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Stamp every event with the service name and environment."""
    for key, value in _app_context.items():
        event_dict.setdefault(key, value)
    return event_dict


def redact_sensitive_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask values of keys that carry secrets or customer contact details."""
    for key in event_dict.keys() & SENSITIVE_KEYS:
        if event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def build_processors(json_output: bool = True) -> List[Any]:
    """
    Processor chain shared by the API and the workers.

    Args:
        json_output: Render JSON lines; False gives the console renderer
            used when debugging locally
    """
    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_app_context,
        redact_sensitive_fields,
        renderer,
    ]


def build_json_formatter() -> JsonFormatter:
    """Formatter for standard-library records, aligned with structlog's keys."""
    return JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={
            "asctime": "@timestamp",
            "levelname": "level",
            "name": "logger",
        },
        timestamp=False,
    )


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the root logger.

    Safe to call more than once: the root handlers are replaced, not stacked.
    """
    settings = settings or get_settings()
    _app_context.clear()
    _app_context.update(app_name=settings.app_name, app_env=settings.app_env)

    structlog.configure(
        processors=build_processors(json_output=not settings.debug),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_json_formatter())
    root_logger.addHandler(handler)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(logging.DEBUG if settings.debug else level)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        json_output=not settings.debug,
    )
