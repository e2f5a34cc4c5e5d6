"""
Storage Error Classification and Retry Logic

Maps PyMongo errors onto the engine's ``StorageError`` and retries transient
failures (connection loss, network timeouts, server selection) with tenacity
exponential backoff before surfacing them.

Retries are never applied to individual writes issued inside an open
transaction; the transaction boundary is retried as a whole by its caller.
"""

import logging
from functools import wraps
from typing import Callable, Dict, Tuple, Type

import pymongo.errors
import structlog
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from directory_ops.business.exceptions import StorageError

logger = structlog.get_logger(__name__)

TRANSIENT_PYMONGO_ERRORS: Tuple[Type[Exception], ...] = (
    pymongo.errors.AutoReconnect,
    pymongo.errors.NetworkTimeout,
    pymongo.errors.ServerSelectionTimeoutError,
    pymongo.errors.ConnectionFailure,
)

# Ordered most specific first; the first isinstance match wins.
PYMONGO_ERROR_CODES: Tuple[Tuple[Type[Exception], str], ...] = (
    (pymongo.errors.NetworkTimeout, "STORAGE_TIMEOUT"),
    (pymongo.errors.ExecutionTimeout, "STORAGE_TIMEOUT"),
    (pymongo.errors.WTimeoutError, "STORAGE_TIMEOUT"),
    (pymongo.errors.ServerSelectionTimeoutError, "STORAGE_UNAVAILABLE"),
    (pymongo.errors.AutoReconnect, "STORAGE_UNAVAILABLE"),
    (pymongo.errors.ConnectionFailure, "STORAGE_UNAVAILABLE"),
    (pymongo.errors.DuplicateKeyError, "STORAGE_DUPLICATE_KEY"),
    (pymongo.errors.WriteConcernError, "STORAGE_WRITE_CONCERN"),
    (pymongo.errors.OperationFailure, "STORAGE_OPERATION_FAILED"),
    (pymongo.errors.ConfigurationError, "STORAGE_CONFIGURATION"),
    (pymongo.errors.InvalidOperation, "STORAGE_INVALID_OPERATION"),
)


class StorageRetryConfig:
    """Exponential backoff parameters for storage retries."""

    def __init__(
        self,
        max_attempts: int = 3,
        min_wait: float = 0.1,
        max_wait: float = 2.0,
        multiplier: float = 0.5,
    ):
        self.max_attempts = max_attempts
        self.min_wait = min_wait
        self.max_wait = max_wait
        self.multiplier = multiplier


DEFAULT_RETRY_CONFIG = StorageRetryConfig()


def classify_pymongo_error(error: Exception, operation: str) -> StorageError:
    """
    Convert a PyMongo error into a ``StorageError``.

    Args:
        error: The original PyMongo exception
        operation: Name of the storage operation that failed

    Returns:
        StorageError carrying an error code specific to the failure class
    """
    error_code = "STORAGE_FAILURE"
    for error_type, code in PYMONGO_ERROR_CODES:
        if isinstance(error, error_type):
            error_code = code
            break

    details: Dict[str, str] = {'pymongo_error': type(error).__name__}
    if isinstance(error, pymongo.errors.OperationFailure) and error.code is not None:
        details['server_code'] = str(error.code)

    return StorageError(
        message=f"Storage operation '{operation}' failed: {error}",
        error_code=error_code,
        operation=operation,
        retry_recommended=isinstance(error, TRANSIENT_PYMONGO_ERRORS),
        context=details,
        cause=error,
    )


def create_retrying(config: StorageRetryConfig) -> Retrying:
    return Retrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.min_wait,
            max=config.max_wait,
        ),
        retry=retry_if_exception_type(TRANSIENT_PYMONGO_ERRORS),
        before_sleep=before_sleep_log(logging.getLogger(__name__), logging.WARNING),
        reraise=True,
    )


def with_storage_retry(operation: str) -> Callable:
    """
    Decorator for store methods: retry transient PyMongo errors, then classify.

    The wrapped method's instance supplies ``retry_config``; calls made while
    the instance has an open transaction are attempted once.

    Args:
        operation: Storage operation name for logs and error context
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            in_transaction = getattr(self, 'in_transaction', False)
            config = getattr(self, 'retry_config', DEFAULT_RETRY_CONFIG)
            if in_transaction:
                config = StorageRetryConfig(max_attempts=1)
            try:
                for attempt in create_retrying(config):
                    with attempt:
                        return func(self, *args, **kwargs)
            except pymongo.errors.PyMongoError as e:
                logger.warning("Storage operation failed",
                               operation=operation,
                               error_type=type(e).__name__,
                               in_transaction=in_transaction)
                raise classify_pymongo_error(e, operation) from e

        return wrapper
    return decorator
