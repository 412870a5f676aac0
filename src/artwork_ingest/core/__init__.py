"""Core components of the artwork ingestion pipeline."""

from .exceptions import (
    ConfigurationError,
    GenerationError,
    ImageProcessingError,
    IngestionPipelineError,
    InvalidImageError,
    InvalidReason,
    InvalidTransitionError,
    PublishError,
    StorageError,
)
from .logging_config import (
    configure_multiprocessing_logging,
    get_logger,
    setup_logger,
)
from .models import (
    Asset,
    DerivativeSet,
    FailureStage,
    ImageMetadata,
    IngestionConfig,
    IngestionFailure,
    IngestionResult,
    IngestionSuccess,
    Rejected,
    UploadTarget,
    UploadTicket,
)
from .orchestrator import (
    IngestionOrchestrator,
    IngestionState,
    complete_with_retries,
)
from .placeholder import decode_placeholder, encode_image

__all__ = [
    "IngestionConfig",
    "UploadTicket",
    "UploadTarget",
    "Rejected",
    "ImageMetadata",
    "Asset",
    "DerivativeSet",
    "FailureStage",
    "IngestionSuccess",
    "IngestionFailure",
    "IngestionResult",
    "IngestionOrchestrator",
    "IngestionState",
    "complete_with_retries",
    "encode_image",
    "decode_placeholder",
    "setup_logger",
    "get_logger",
    "configure_multiprocessing_logging",
    "IngestionPipelineError",
    "StorageError",
    "ConfigurationError",
    "ImageProcessingError",
    "InvalidImageError",
    "InvalidReason",
    "GenerationError",
    "PublishError",
    "InvalidTransitionError",
]
