# src/artwork_ingest/core/error_handling.py

import asyncio
import functools
import inspect
import logging

from botocore.exceptions import ClientError as BotocoreClientError
from botocore.exceptions import (
    BotoCoreError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from PIL import UnidentifiedImageError as PILUnidentifiedImageError

from .exceptions import IngestionPipelineError, ImageProcessingError, StorageError

RETRYABLE_S3_ERROR_CODES = (
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "SlowDown",
    "RequestTimeout",
    "InternalError",
    "ServiceUnavailable",
)


def _translate(func, e):
    """Map third-party exceptions onto the pipeline hierarchy, or return None."""
    if isinstance(e, IngestionPipelineError):
        return None
    if isinstance(e, BotocoreClientError):
        return StorageError(f"S3 operation failed in {func.__name__}: {e}")
    if isinstance(e, EndpointConnectionError):
        return StorageError(f"S3 endpoint unreachable in {func.__name__}: {e}")
    if isinstance(e, BotoCoreError):
        return StorageError(f"S3 client error in {func.__name__}: {e}")
    if isinstance(e, PILUnidentifiedImageError):
        return ImageProcessingError(f"Failed to identify image in {func.__name__}: {e}")
    return None


def with_error_handling(func):
    """
    A decorator to wrap functions (sync or async) with standardized error handling.

    Errors are logged with traceback; botocore and Pillow errors are re-raised
    as ``StorageError`` / ``ImageProcessingError`` with the original chained.
    """
    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            logger = logging.getLogger(func.__module__ + "." + func.__name__)
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                logger.error(f"Error in '{func.__name__}': {e}", exc_info=True)
                translated = _translate(func, e)
                if translated is not None:
                    raise translated from e
                raise

        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger(func.__module__ + "." + func.__name__)
        try:
            return func(*args, **kwargs)
        except Exception as e:
            logger.error(f"Error in '{func.__name__}': {e}", exc_info=True)
            translated = _translate(func, e)
            if translated is not None:
                raise translated from e
            raise

    return wrapper


def is_retryable_storage_error(error: BaseException) -> bool:
    """True when a ``StorageError`` wraps a throttling, timeout or connectivity fault."""
    cause = error.__cause__
    if isinstance(cause, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
        return True
    if isinstance(cause, BotocoreClientError):
        error_code = cause.response.get("Error", {}).get("Code")
        return error_code in RETRYABLE_S3_ERROR_CODES
    return False


def retry_storage_operation(max_attempts=3, initial_delay=0.5, backoff_factor=2):
    """
    Decorator to retry async storage operations with exponential backoff.

    Only ``StorageError`` instances whose cause is retryable are retried; any
    other failure propagates immediately.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            logger = logging.getLogger(func.__module__ + "." + func.__name__)
            delay = initial_delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except StorageError as e:
                    if not is_retryable_storage_error(e):
                        logger.error(
                            f"Storage operation '{func.__name__}' failed with non-retryable error: {e}"
                        )
                        raise
                    if attempt >= max_attempts:
                        logger.error(
                            f"Storage operation '{func.__name__}' failed after {max_attempts} attempts. Error: {e}"
                        )
                        raise
                    logger.info(
                        f"Storage operation '{func.__name__}' failed. Attempt {attempt}/{max_attempts}. "
                        f"Retrying in {delay:.2f}s. Error: {e}"
                    )
                    await asyncio.sleep(delay)
                    delay *= backoff_factor

        return wrapper

    return decorator


class CleanupErrorCollector:
    """
    Context manager that collects best-effort cleanup failures.

    Failures are reported with ``add_error`` and summarised on exit; they are
    never raised. Exceptions escaping the block itself still propagate.
    """

    def __init__(self, operation_name="Cleanup"):
        self.operation_name = operation_name
        self.errors = []
        self.logger = logging.getLogger(self.__class__.__module__ + "." + self.__class__.__name__)

    def __enter__(self):
        self.logger.debug(f"Starting {self.operation_name}.")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.errors:
            self.logger.warning(
                f"{self.operation_name} completed with {len(self.errors)} error(s)."
            )
            for i, error_detail in enumerate(self.errors):
                self.logger.error(
                    f"  Error {i + 1}/{len(self.errors)} for item "
                    f"'{error_detail['item']}': {error_detail['error']}"
                )
        elif exc_type:
            self.logger.error(
                f"{self.operation_name} failed due to an unhandled exception: {exc_val}",
                exc_info=(exc_type, exc_val, exc_tb),
            )
        else:
            self.logger.debug(f"{self.operation_name} completed successfully.")
        return False

    @property
    def succeeded(self) -> bool:
        return not self.errors

    def add_error(self, error_message, item_identifier="Unknown item"):
        """Report a failure for a specific item (e.g. an object key)."""
        self.errors.append({"item": item_identifier, "error": str(error_message)})
        self.logger.debug(
            f"Error added for item '{item_identifier}' in {self.operation_name}: {error_message}"
        )
