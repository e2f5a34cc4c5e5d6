"""
Business Exception Classes for the Directory Operations Engine

This module provides the error taxonomy shared by the duplicate detection,
merge, workflow and bulk operation components. Every exception carries a
stable error code, an HTTP status code for the Flask surface, a severity and
category for monitoring, and a filtered context dictionary that is safe to
return to API clients.

The exception hierarchy:
- DirectoryOpsError: Base class for all engine failures
- NotFoundError: Unknown business record, operation or snapshot
- ValidationError: Malformed input or invariant violation (safety ceiling,
  primary listed in its own duplicate list, illegal configuration)
- InvalidStateError: Illegal operation state transition or illegal record state
- StorageError: Persistent store failure or unsupported transaction boundary
- AuthorizationError: Actor is not an administrator
- ConfigurationError: Invalid engine configuration

Per-record partial failures inside a batch are not exceptions; they are
reported as ``RecordOutcome`` entries with status ``FAILED``.
"""

import re
import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from flask import has_request_context, jsonify, request
from werkzeug.exceptions import HTTPException

logger = structlog.get_logger("business.exceptions")


class ErrorSeverity(Enum):
    """Error severity classification used for log levels and alerting."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error category classification for structured error reporting."""
    RESOURCE_ACCESS = "resource_access"
    DATA_VALIDATION = "data_validation"
    STATE_TRANSITION = "state_transition"
    STORAGE = "storage"
    AUTHORIZATION = "authorization"
    CONFIGURATION = "configuration"


_SENSITIVE_PATTERNS = [
    r"password\s*[:=]\s*['\"][^'\"]*['\"]",
    r"token\s*[:=]\s*['\"][^'\"]*['\"]",
    r"secret\s*[:=]\s*['\"][^'\"]*['\"]",
    r"mongodb(\+srv)?://[^\s/]*",
]

_SENSITIVE_KEYS = {'password', 'token', 'secret', 'credential', 'uri'}


class DirectoryOpsError(Exception):
    """
    Base exception class for all directory operations failures.

    Provides error response standardization, context filtering and a single
    structured log entry per raised exception.

    Attributes:
        message (str): User-facing error message (sanitized)
        error_code (str): Unique error identifier for client handling
        http_status_code (int): HTTP status code for Flask response
        severity (ErrorSeverity): Error severity level for monitoring
        category (ErrorCategory): Error category for classification
        context (Dict[str, Any]): Additional error context (filtered)
        timestamp (datetime): Error occurrence timestamp
        request_id (Optional[str]): Request identifier for correlation

    Example:
        try:
            service.merge_businesses(actor, "biz-1", ["biz-2"])
        except DirectoryOpsError as e:
            logger.error("Merge rejected", error=e.to_dict())
    """

    def __init__(
        self,
        message: str,
        error_code: str,
        http_status_code: int = 400,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.DATA_VALIDATION,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)

        self.message = self._sanitize_message(message)
        self.error_code = error_code
        self.http_status_code = http_status_code
        self.severity = severity
        self.category = category
        self.context = self._filter_sensitive_context(context or {})
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)
        self.request_id = self._get_request_id()

        self._log_exception()

    def _sanitize_message(self, message: str) -> str:
        """
        Sanitize error message to prevent information disclosure.

        Args:
            message: Raw error message potentially containing sensitive data

        Returns:
            Sanitized error message safe for client exposure
        """
        sanitized = message
        for pattern in _SENSITIVE_PATTERNS:
            sanitized = re.sub(pattern, "[REDACTED]", sanitized, flags=re.IGNORECASE)

        max_length = 500
        if len(sanitized) > max_length:
            sanitized = sanitized[:max_length] + "... [TRUNCATED]"
        return sanitized

    def _filter_sensitive_context(self, context: Dict[str, Any]) -> Dict[str, Any]:
        """Redact sensitive keys and bound list sizes in the error context."""
        filtered = {}
        for key, value in context.items():
            if any(sensitive in key.lower() for sensitive in _SENSITIVE_KEYS):
                filtered[key] = "[REDACTED]"
            elif isinstance(value, dict):
                filtered[key] = self._filter_sensitive_context(value)
            elif isinstance(value, (list, tuple)) and len(value) > 25:
                filtered[key] = list(value[:25]) + ["... [TRUNCATED]"]
            else:
                filtered[key] = value
        return filtered

    def _get_request_id(self) -> Optional[str]:
        """Extract the correlation id from the Flask request, when there is one."""
        if not has_request_context():
            return None
        return request.headers.get('X-Request-ID') or request.headers.get('X-Correlation-ID')

    def _log_exception(self) -> None:
        log_data = {
            'event_type': 'directory_ops_exception',
            'exception_class': self.__class__.__name__,
            'error_code': self.error_code,
            'severity': self.severity.value,
            'category': self.category.value,
            'http_status_code': self.http_status_code,
            'request_id': self.request_id,
            'context': self.context,
        }
        if self.cause is not None:
            log_data['cause'] = {
                'type': type(self.cause).__name__,
                'message': str(self.cause),
                'traceback': traceback.format_exception(
                    type(self.cause), self.cause, self.cause.__traceback__
                )[-3:],
            }

        if self.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            logger.error(self.message, **log_data)
        elif self.severity == ErrorSeverity.MEDIUM:
            logger.warning(self.message, **log_data)
        else:
            logger.info(self.message, **log_data)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to dictionary for JSON serialization.

        Returns:
            Dictionary representation safe for client exposure
        """
        return {
            'error': {
                'message': self.message,
                'code': self.error_code,
                'severity': self.severity.value,
                'category': self.category.value,
                'timestamp': self.timestamp.isoformat(),
                'request_id': self.request_id,
                'context': self.context,
            }
        }

    def to_flask_response(self) -> tuple:
        """Convert exception to a Flask ``(response, status)`` tuple."""
        return jsonify(self.to_dict()), self.http_status_code


class NotFoundError(DirectoryOpsError):
    """
    Raised when a business record, bulk operation or snapshot does not exist.

    Example:
        raise NotFoundError(
            message="Business not found",
            error_code="BUSINESS_NOT_FOUND",
            resource_type="business",
            resource_id=business_id
        )
    """

    def __init__(
        self,
        message: str,
        error_code: str = "RESOURCE_NOT_FOUND",
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        **kwargs
    ) -> None:
        kwargs.setdefault('http_status_code', 404)
        kwargs.setdefault('category', ErrorCategory.RESOURCE_ACCESS)

        context = kwargs.get('context') or {}
        if resource_type:
            context['resource_type'] = resource_type
        if resource_id is not None:
            context['resource_id'] = str(resource_id)
        kwargs['context'] = context

        super().__init__(message, error_code, **kwargs)
        self.resource_type = resource_type
        self.resource_id = resource_id


class ValidationError(DirectoryOpsError):
    """
    Raised for malformed input or violated invariants.

    Covers pydantic model validation failures, an empty or self-referencing
    duplicate list, merge chains, unknown workflow rules and a target count
    above the operation's safety ceiling.
    """

    def __init__(
        self,
        message: str,
        error_code: str = "VALIDATION_FAILED",
        validation_errors: Optional[List[Dict[str, Any]]] = None,
        field_name: Optional[str] = None,
        **kwargs
    ) -> None:
        kwargs.setdefault('http_status_code', 400)
        kwargs.setdefault('category', ErrorCategory.DATA_VALIDATION)

        context = kwargs.get('context') or {}
        if field_name:
            context['field_name'] = field_name
        if validation_errors:
            context['validation_errors'] = validation_errors
        kwargs['context'] = context

        super().__init__(message, error_code, **kwargs)
        self.validation_errors = validation_errors or []
        self.field_name = field_name


class InvalidStateError(DirectoryOpsError):
    """
    Raised when an operation state transition is not permitted.

    The rejected attempt never mutates the operation.
    """

    def __init__(
        self,
        message: str,
        error_code: str = "INVALID_STATE_TRANSITION",
        current_state: Optional[str] = None,
        attempted_action: Optional[str] = None,
        **kwargs
    ) -> None:
        kwargs.setdefault('http_status_code', 409)
        kwargs.setdefault('category', ErrorCategory.STATE_TRANSITION)

        context = kwargs.get('context') or {}
        if current_state is not None:
            context['current_state'] = current_state
        if attempted_action is not None:
            context['attempted_action'] = attempted_action
        kwargs['context'] = context

        super().__init__(message, error_code, **kwargs)
        self.current_state = current_state
        self.attempted_action = attempted_action


class StorageError(DirectoryOpsError):
    """Raised when the persistent store fails or cannot honor a transaction."""

    def __init__(
        self,
        message: str,
        error_code: str = "STORAGE_FAILURE",
        operation: Optional[str] = None,
        retry_recommended: bool = False,
        **kwargs
    ) -> None:
        kwargs.setdefault('http_status_code', 503)
        kwargs.setdefault('severity', ErrorSeverity.HIGH)
        kwargs.setdefault('category', ErrorCategory.STORAGE)

        context = kwargs.get('context') or {}
        if operation:
            context['storage_operation'] = operation
        context['retry_recommended'] = retry_recommended
        kwargs['context'] = context

        super().__init__(message, error_code, **kwargs)
        self.operation = operation
        self.retry_recommended = retry_recommended


class AuthorizationError(DirectoryOpsError):
    """Raised when a mutating entry point is invoked by a non-admin actor."""

    def __init__(
        self,
        message: str,
        error_code: str = "ADMIN_REQUIRED",
        actor: Optional[str] = None,
        **kwargs
    ) -> None:
        kwargs.setdefault('http_status_code', 403)
        kwargs.setdefault('severity', ErrorSeverity.HIGH)
        kwargs.setdefault('category', ErrorCategory.AUTHORIZATION)

        context = kwargs.get('context') or {}
        if actor is not None:
            context['actor'] = actor
        kwargs['context'] = context

        super().__init__(message, error_code, **kwargs)
        self.actor = actor


class ConfigurationError(DirectoryOpsError):
    """Raised when the engine configuration is unusable."""

    def __init__(
        self,
        message: str,
        error_code: str = "CONFIGURATION_INVALID",
        configuration_key: Optional[str] = None,
        **kwargs
    ) -> None:
        kwargs.setdefault('http_status_code', 500)
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        kwargs.setdefault('category', ErrorCategory.CONFIGURATION)

        context = kwargs.get('context') or {}
        if configuration_key:
            context['configuration_key'] = configuration_key
        kwargs['context'] = context

        super().__init__(message, error_code, **kwargs)
        self.configuration_key = configuration_key


def register_error_handlers(app) -> None:
    """
    Register Flask error handlers for engine exceptions.

    ``DirectoryOpsError`` subclasses are rendered through ``to_flask_response``;
    anything else becomes a generic 500 body without internal detail.

    Args:
        app: Flask application instance for error handler registration
    """

    @app.errorhandler(DirectoryOpsError)
    def handle_directory_ops_error(error: DirectoryOpsError):
        return error.to_flask_response()

    @app.errorhandler(Exception)
    def handle_unexpected_exception(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.error("Unhandled exception in request",
                     exception_class=type(error).__name__,
                     error=str(error),
                     exc_info=True)
        return jsonify({
            'error': {
                'message': "An unexpected error occurred",
                'code': "INTERNAL_ERROR",
            }
        }), 500
