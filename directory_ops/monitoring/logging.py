"""
Structured Logging for the Directory Operations Engine

Configures structlog with stdlib integration, ISO timestamps, correlation ID
enrichment and JSON (or console) rendering. Correlation IDs live in a context
variable so they follow a request, or an operation run started outside Flask,
through every log line it produces.

Dedicated loggers:
- ``directory_ops.audit.fallback``: receives full audit entries whenever the
  audit sink transport fails, so no audit record is silently dropped.
"""

import logging
import logging.config
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from flask import Flask, g, has_request_context, request

AUDIT_FALLBACK_LOGGER_NAME = "directory_ops.audit.fallback"

correlation_id_context: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)


def generate_correlation_id() -> str:
    """Generate a correlation ID of the form ``<utc timestamp>-<random hex>``."""
    timestamp = datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')
    return f"{timestamp}-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """
    Set the correlation ID for the current context.

    Args:
        correlation_id: Correlation ID to use; generated when None

    Returns:
        The correlation ID that was set
    """
    if correlation_id is None:
        correlation_id = generate_correlation_id()
    correlation_id_context.set(correlation_id)
    if has_request_context():
        g.correlation_id = correlation_id
    return correlation_id


def get_correlation_id() -> Optional[str]:
    correlation_id = correlation_id_context.get()
    if correlation_id:
        return correlation_id
    if has_request_context() and hasattr(g, 'correlation_id'):
        return g.correlation_id
    return None


def clear_correlation_id() -> None:
    correlation_id_context.set(None)


def create_correlation_processor() -> Callable:
    """Create a structlog processor adding ``correlation_id`` to every event."""

    def processor(logger, method_name, event_dict):
        correlation_id = get_correlation_id()
        if correlation_id:
            event_dict['correlation_id'] = correlation_id
        return event_dict

    return processor


def setup_structured_logging(level: str = "INFO", fmt: str = "json") -> structlog.stdlib.BoundLogger:
    """
    Configure structlog and the stdlib logging tree.

    Args:
        level: Root log level name
        fmt: ``json`` for machine-readable output, ``console`` for development

    Returns:
        Logger bound to the ``directory_ops`` namespace
    """
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        create_correlation_processor(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if fmt == 'console':
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.config.dictConfig({
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'plain': {'format': '%(message)s'},
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'formatter': 'plain',
                'stream': 'ext://sys.stdout',
            },
        },
        'loggers': {
            '': {
                'handlers': ['console'],
                'level': level.upper(),
            },
            AUDIT_FALLBACK_LOGGER_NAME: {
                'level': 'INFO',
                'propagate': True,
            },
        },
    })

    return structlog.get_logger("directory_ops")


def get_audit_fallback_logger() -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(AUDIT_FALLBACK_LOGGER_NAME)


def init_request_correlation(app: Flask) -> None:
    """
    Register request hooks propagating ``X-Correlation-ID`` through logs.

    The incoming header is reused when present; the ID is echoed back on the
    response either way.
    """

    @app.before_request
    def _bind_correlation_id():
        set_correlation_id(
            request.headers.get('X-Correlation-ID') or request.headers.get('X-Request-ID')
        )

    @app.after_request
    def _echo_correlation_id(response):
        correlation_id = get_correlation_id()
        if correlation_id:
            response.headers['X-Correlation-ID'] = correlation_id
        return response

    @app.teardown_request
    def _clear_correlation_id(exc):
        clear_correlation_id()
