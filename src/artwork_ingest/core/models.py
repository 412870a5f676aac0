"""Shared data models for the ingestion pipeline."""

import os
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import ConfigurationError

MIB = 1024 * 1024

ALLOWED_CONTENT_TYPES: FrozenSet[str] = frozenset(
    {"image/jpeg", "image/png", "image/webp", "image/tiff"}
)

# True (byte-sniffed) format tag -> canonical MIME type
FORMAT_CONTENT_TYPES: Dict[str, str] = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "TIFF": "image/tiff",
}


class IngestionConfig(BaseModel):
    """Limits, transform parameters and wiring for one pipeline instance."""

    bucket: str = ""
    key_prefix: str = "uploads"
    region_name: Optional[str] = None
    endpoint_url: Optional[str] = None

    allowed_content_types: FrozenSet[str] = ALLOWED_CONTENT_TYPES
    max_bytes: int = Field(default=50 * MIB, gt=0)
    max_dimension: int = Field(default=8000, gt=0)
    max_pixels: int = Field(default=8000 * 8000, gt=0)
    ticket_ttl_seconds: int = Field(default=300, gt=0)

    thumbnail_size: int = 400
    thumbnail_quality: int = Field(default=80, ge=1, le=95)
    medium_max_edge: int = 1200
    medium_quality: int = Field(default=85, ge=1, le=95)
    background_color: Tuple[int, int, int] = (255, 255, 255)

    placeholder_grid: int = 32
    placeholder_components_x: int = Field(default=4, ge=1, le=9)
    placeholder_components_y: int = Field(default=3, ge=1, le=9)

    cpu_workers: int = Field(default=4, gt=0)
    cpu_executor: str = "thread"

    @classmethod
    def from_env(cls, **overrides: Any) -> "IngestionConfig":
        """
        Build a config from ``INGEST_*`` environment variables.

        Explicit keyword overrides win over the environment.

        Raises:
            ConfigurationError: If a numeric variable cannot be parsed.
        """
        env_map = {
            "bucket": ("INGEST_BUCKET", str),
            "key_prefix": ("INGEST_KEY_PREFIX", str),
            "region_name": ("AWS_REGION", str),
            "endpoint_url": ("INGEST_ENDPOINT_URL", str),
            "ticket_ttl_seconds": ("INGEST_TICKET_TTL_SECONDS", int),
            "max_bytes": ("INGEST_MAX_BYTES", int),
            "max_dimension": ("INGEST_MAX_DIMENSION", int),
            "max_pixels": ("INGEST_MAX_PIXELS", int),
            "cpu_workers": ("INGEST_CPU_WORKERS", int),
            "cpu_executor": ("INGEST_CPU_EXECUTOR", str),
        }

        values: Dict[str, Any] = {}
        for field_name, (env_name, cast) in env_map.items():
            raw = os.getenv(env_name)
            if raw is None or raw == "":
                continue
            try:
                values[field_name] = cast(raw)
            except ValueError as exc:
                raise ConfigurationError(
                    f"{env_name} must be {cast.__name__}, got {raw!r}"
                ) from exc

        values.update(overrides)
        config = cls(**values)
        if config.cpu_executor not in ("thread", "process"):
            raise ConfigurationError(
                f"cpu_executor must be 'thread' or 'process', got {config.cpu_executor!r}"
            )
        return config


class UploadGrant(BaseModel):
    """Write-scoped access grant minted by object storage for a single key."""

    url: str
    fields: Dict[str, str] = Field(default_factory=dict)
    expires_at: datetime


class UploadTicket(BaseModel):
    """Time-boxed permission to write exactly one object."""

    model_config = ConfigDict(frozen=True)

    owner_id: str
    object_key: str
    issued_at: datetime
    expires_at: datetime
    allowed_content_types: FrozenSet[str]
    max_bytes: int
    grant: UploadGrant

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def remaining_seconds(self, now: datetime) -> float:
        return (self.expires_at - now).total_seconds()


class UploadTarget(BaseModel):
    """What the client needs to upload directly to storage."""

    upload_url: str
    upload_fields: Dict[str, str] = Field(default_factory=dict)
    object_key: str
    expires_at: datetime


class Rejected(BaseModel):
    """A ticket request refused before any bytes moved."""

    reason: str
    detail: str = ""

    def to_payload(self) -> Dict[str, Any]:
        return {"reason": self.reason, "detail": self.detail}


class ImageMetadata(BaseModel):
    """Facts about the source image; computed once by the validator."""

    model_config = ConfigDict(frozen=True)

    width_px: int
    height_px: int
    format_tag: str
    byte_size: int

    @property
    def content_type(self) -> str:
        return FORMAT_CONTENT_TYPES[self.format_tag]


class Asset(BaseModel):
    """A published derivative image."""

    model_config = ConfigDict(frozen=True)

    object_key: str
    width_px: int
    height_px: int
    byte_size: int

    def to_payload(self) -> Dict[str, Any]:
        return {"key": self.object_key, "width": self.width_px, "height": self.height_px}


class DerivativeSet(BaseModel):
    """Thumbnail, medium preview and placeholder; only ever exposed whole."""

    model_config = ConfigDict(frozen=True)

    thumbnail: Asset
    medium_preview: Asset
    placeholder: str


class FailureStage(str, Enum):
    """Stage tag carried by a failed ingestion result."""

    VALIDATING = "validating"
    GENERATING = "generating"
    PUBLISHING = "publishing"
    EXPIRED = "expired"


class IngestionSuccess(BaseModel):
    """Terminal success value handed to the content-record layer."""

    model_config = ConfigDict(frozen=True)

    object_key: str
    metadata: ImageMetadata
    derivatives: DerivativeSet

    @property
    def success(self) -> bool:
        return True

    def to_payload(self) -> Dict[str, Any]:
        """Wire shape consumed by the content-record collaborator."""
        return {
            "sourceWidth": self.metadata.width_px,
            "sourceHeight": self.metadata.height_px,
            "sourceByteSize": self.metadata.byte_size,
            "thumbnail": self.derivatives.thumbnail.to_payload(),
            "mediumPreview": self.derivatives.medium_preview.to_payload(),
            "placeholder": self.derivatives.placeholder,
        }


class IngestionFailure(BaseModel):
    """Terminal failure value; ``retryable`` tells the caller whether to try again."""

    model_config = ConfigDict(frozen=True)

    object_key: str
    stage: FailureStage
    reason: str
    retryable: bool = False

    @property
    def success(self) -> bool:
        return False

    def to_payload(self) -> Dict[str, Any]:
        return {"stage": self.stage.value, "reason": self.reason}


IngestionResult = Union[IngestionSuccess, IngestionFailure]


class RenderedImage(BaseModel):
    """Encoded derivative bytes prior to publishing."""

    model_config = ConfigDict(frozen=True)

    data: bytes
    width_px: int
    height_px: int
    content_type: str = "image/jpeg"

    @property
    def byte_size(self) -> int:
        return len(self.data)


class RenderedDerivatives(BaseModel):
    """Output of the derivative generator: all three members or nothing."""

    model_config = ConfigDict(frozen=True)

    thumbnail: RenderedImage
    medium_preview: RenderedImage
    placeholder: str
