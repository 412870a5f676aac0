"""Custom exceptions for the ingestion pipeline."""

from __future__ import annotations

from enum import Enum


class IngestionPipelineError(Exception):
    """Base exception for all ingestion pipeline errors."""


class StorageError(IngestionPipelineError):
    """Error raised for object storage failures."""


class ConfigurationError(IngestionPipelineError):
    """Error raised for invalid configuration options."""


class ImageProcessingError(IngestionPipelineError):
    """Error raised when decoding or encoding an image fails."""


class InvalidReason(str, Enum):
    """User-actionable reasons a source image is refused."""

    UNSUPPORTED_FORMAT = "unsupported format"
    DIMENSIONS_EXCEED_LIMIT = "dimensions exceed limit"
    FILE_TOO_LARGE = "file too large"
    CORRUPT_IMAGE = "corrupt image"


class InvalidImageError(IngestionPipelineError):
    """The uploaded bytes failed validation; terminal for the attempt."""

    def __init__(self, reason: InvalidReason, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)


class GenerationError(IngestionPipelineError):
    """Producing derivatives from a valid source failed; safe to retry."""


class PublishError(IngestionPipelineError):
    """Writing derivatives to storage failed; safe to retry."""

    def __init__(self, message: str, failed_keys: tuple = ()) -> None:
        self.failed_keys = tuple(failed_keys)
        super().__init__(message)


class InvalidTransitionError(IngestionPipelineError):
    """An ingestion attempt was asked to move along an edge it does not have."""
