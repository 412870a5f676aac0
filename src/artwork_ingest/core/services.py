"""Service implementations for the ingestion pipeline components."""

import asyncio
import io
import json
import re
import struct
import uuid
from datetime import timedelta
from typing import Callable, FrozenSet, List, Optional, Sequence, Tuple, Union

from PIL import Image, ImageOps, UnidentifiedImageError

from .error_handling import CleanupErrorCollector
from .exceptions import (
    GenerationError,
    InvalidImageError,
    InvalidReason,
    PublishError,
)
from .image_utils import (
    bounded_dimensions,
    build_object_key,
    center_crop_box,
    derivative_keys,
    encode_jpeg,
    flatten_to_rgb,
    normalize_content_type,
    sniff_format,
)
from .models import (
    FORMAT_CONTENT_TYPES,
    Asset,
    DerivativeSet,
    ImageMetadata,
    IngestionConfig,
    IngestionSuccess,
    Rejected,
    RenderedDerivatives,
    RenderedImage,
    UploadTicket,
)
from .observability import LogContext, StructuredLogger
from .placeholder import encode_image
from .protocols import Clock, LoggerProtocol, ObjectStorageProtocol, utc_now

OWNER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")

# EXIF orientations that swap width and height
_TRANSPOSING_ORIENTATIONS = {5, 6, 7, 8}
_EXIF_ORIENTATION_TAG = 0x0112

_DECODE_ERRORS = (
    UnidentifiedImageError,
    OSError,
    SyntaxError,
    ValueError,
    EOFError,
    struct.error,
)


class UploadAuthorizer:
    """Issues short-lived, owner-namespaced upload tickets.

    Declared name, type and size are client assertions: they only scope the
    ticket and are re-checked against the real bytes by ``ImageValidator``.
    Expected refusals are returned as ``Rejected`` and never touch storage.
    """

    def __init__(
        self,
        storage: ObjectStorageProtocol,
        config: IngestionConfig,
        logger: Optional[LoggerProtocol] = None,
        clock: Optional[Clock] = None,
        token_factory: Optional[Callable[[], str]] = None,
    ):
        self._storage = storage
        self._config = config
        self._logger = logger or StructuredLogger("artwork-ingest.authorizer")
        self._clock = clock or utc_now
        self._token_factory = token_factory or (lambda: uuid.uuid4().hex)

    def check_scope(
        self, owner_id: str, declared_content_type: str, declared_byte_size: int
    ) -> Optional[Rejected]:
        """Return a ``Rejected`` if the request is out of scope, else None."""
        if not owner_id or not OWNER_ID_PATTERN.match(owner_id):
            return Rejected(reason="invalid owner id")

        content_type = normalize_content_type(declared_content_type or "")
        if content_type not in self._config.allowed_content_types:
            return Rejected(
                reason="unsupported content type",
                detail=f"{declared_content_type!r} is not one of "
                f"{', '.join(sorted(self._config.allowed_content_types))}",
            )

        if declared_byte_size is None or declared_byte_size <= 0:
            return Rejected(reason="invalid byte size", detail=str(declared_byte_size))

        if declared_byte_size > self._config.max_bytes:
            return Rejected(
                reason="file too large",
                detail=f"{declared_byte_size} bytes exceeds {self._config.max_bytes}",
            )
        return None

    async def issue_ticket(
        self,
        owner_id: str,
        declared_file_name: str,
        declared_content_type: str,
        declared_byte_size: int,
    ) -> Union[UploadTicket, Rejected]:
        """
        Issue a ticket for one new object key.

        Raises:
            StorageError: If the storage backend cannot mint an upload grant.
        """
        context = LogContext(
            operation="issue_ticket", component="upload_authorizer", owner_id=owner_id
        )
        rejection = self.check_scope(owner_id, declared_content_type, declared_byte_size)
        if rejection is not None:
            self._logger.info(
                f"Ticket rejected: {rejection.reason}", context, detail=rejection.detail
            )
            return rejection

        content_type = normalize_content_type(declared_content_type)
        object_key = build_object_key(
            self._config.key_prefix, owner_id, self._token_factory(), declared_file_name
        )
        issued_at = self._clock()
        expires_at = issued_at + timedelta(seconds=self._config.ticket_ttl_seconds)

        grant = await self._storage.create_upload_grant(
            object_key,
            content_type,
            self._config.max_bytes,
            self._config.ticket_ttl_seconds,
        )

        self._logger.info(
            "Ticket issued", context, object_key=object_key, expires_at=expires_at.isoformat()
        )
        return UploadTicket(
            owner_id=owner_id,
            object_key=object_key,
            issued_at=issued_at,
            expires_at=expires_at,
            allowed_content_types=self._config.allowed_content_types,
            max_bytes=self._config.max_bytes,
            grant=grant,
        )


class ImageValidator:
    """Inspects untrusted bytes and produces the authoritative ``ImageMetadata``.

    Pure and CPU-bound. Limits that can be checked from the header are
    checked before the pixel data is decoded.
    """

    def __init__(self, config: IngestionConfig, logger: Optional[LoggerProtocol] = None):
        self._config = config
        self._logger = logger or StructuredLogger("artwork-ingest.validator")

    @property
    def allowed_formats(self) -> FrozenSet[str]:
        return frozenset(
            tag
            for tag, content_type in FORMAT_CONTENT_TYPES.items()
            if content_type in self._config.allowed_content_types
        )

    def _check_dimensions(self, width: int, height: int) -> None:
        limit = self._config.max_dimension
        if width > limit or height > limit:
            raise InvalidImageError(
                InvalidReason.DIMENSIONS_EXCEED_LIMIT,
                f"{width}x{height} exceeds {limit}px per axis",
            )
        if width * height > self._config.max_pixels:
            raise InvalidImageError(
                InvalidReason.DIMENSIONS_EXCEED_LIMIT,
                f"{width}x{height} exceeds {self._config.max_pixels} pixels",
            )
        if width <= 0 or height <= 0:
            raise InvalidImageError(InvalidReason.CORRUPT_IMAGE, f"{width}x{height}")

    def validate(self, data: bytes) -> ImageMetadata:
        """
        Validate raw image bytes.

        Args:
            data: Object bytes as fetched from storage

        Returns:
            ImageMetadata with display-oriented dimensions

        Raises:
            InvalidImageError: With the specific ``InvalidReason``
        """
        metadata, _ = self._inspect(data, keep_pixels=False)
        return metadata

    def validate_and_decode(self, data: bytes) -> Tuple[ImageMetadata, "Image.Image"]:
        """
        Validate and return the decoded, upright image along with its metadata.

        Lets a generator in the same process skip a second decode.

        Raises:
            InvalidImageError: With the specific ``InvalidReason``
        """
        metadata, upright = self._inspect(data, keep_pixels=True)
        assert upright is not None
        return metadata, upright

    def _inspect(
        self, data: bytes, keep_pixels: bool
    ) -> Tuple[ImageMetadata, Optional["Image.Image"]]:
        byte_size = len(data)
        if byte_size == 0:
            raise InvalidImageError(InvalidReason.CORRUPT_IMAGE, "empty object")
        if byte_size > self._config.max_bytes:
            raise InvalidImageError(
                InvalidReason.FILE_TOO_LARGE,
                f"{byte_size} bytes exceeds {self._config.max_bytes}",
            )

        format_tag = sniff_format(data)
        if format_tag is None or format_tag not in self.allowed_formats:
            raise InvalidImageError(
                InvalidReason.UNSUPPORTED_FORMAT, format_tag or "unrecognised signature"
            )

        upright = None
        try:
            with Image.open(io.BytesIO(data), formats=[format_tag]) as img:
                # Header-only: nothing has been decoded yet.
                width, height = img.size
                self._check_dimensions(width, height)
                # Full decode; truncated or corrupt pixel data fails here.
                img.load()
                orientation = img.getexif().get(_EXIF_ORIENTATION_TAG)
                if keep_pixels:
                    upright = ImageOps.exif_transpose(img)
        except InvalidImageError:
            raise
        except Image.DecompressionBombError as exc:
            raise InvalidImageError(InvalidReason.DIMENSIONS_EXCEED_LIMIT, str(exc)) from exc
        except _DECODE_ERRORS as exc:
            self._logger.debug(f"Decoder rejected {format_tag} image: {exc}")
            raise InvalidImageError(InvalidReason.CORRUPT_IMAGE, str(exc)) from exc

        if orientation in _TRANSPOSING_ORIENTATIONS:
            width, height = height, width

        metadata = ImageMetadata(
            width_px=width, height_px=height, format_tag=format_tag, byte_size=byte_size
        )
        return metadata, upright


class DerivativeGenerator:
    """Produces thumbnail, medium preview and placeholder from one decoded image."""

    def __init__(self, config: IngestionConfig, logger: Optional[LoggerProtocol] = None):
        self._config = config
        self._logger = logger or StructuredLogger("artwork-ingest.generator")

    def decode(self, data: bytes, metadata: ImageMetadata) -> "Image.Image":
        with Image.open(io.BytesIO(data), formats=[metadata.format_tag]) as img:
            img.load()
            upright = ImageOps.exif_transpose(img)
        return self.prepare(upright, metadata)

    def prepare(self, upright: "Image.Image", metadata: ImageMetadata) -> "Image.Image":
        """Check an upright image against its metadata and flatten it to RGB."""
        if upright.size != (metadata.width_px, metadata.height_px):
            raise GenerationError(
                f"Decoded size {upright.size[0]}x{upright.size[1]} does not match "
                f"validated {metadata.width_px}x{metadata.height_px}"
            )
        return flatten_to_rgb(upright, self._config.background_color)

    def render_thumbnail(self, img: "Image.Image") -> RenderedImage:
        size = self._config.thumbnail_size
        box = center_crop_box(img.width, img.height)
        thumb = img.resize((size, size), Image.Resampling.LANCZOS, box=box)
        return RenderedImage(
            data=encode_jpeg(thumb, self._config.thumbnail_quality),
            width_px=size,
            height_px=size,
        )

    def render_medium(self, img: "Image.Image") -> RenderedImage:
        width, height = bounded_dimensions(img.width, img.height, self._config.medium_max_edge)
        medium = img if (width, height) == img.size else img.resize(
            (width, height), Image.Resampling.LANCZOS
        )
        return RenderedImage(
            data=encode_jpeg(medium, self._config.medium_quality, progressive=True),
            width_px=width,
            height_px=height,
        )

    def render_placeholder(self, img: "Image.Image") -> str:
        return encode_image(
            img,
            grid=self._config.placeholder_grid,
            components_x=self._config.placeholder_components_x,
            components_y=self._config.placeholder_components_y,
        )

    def generate(
        self,
        data: bytes,
        metadata: ImageMetadata,
        decoded: Optional["Image.Image"] = None,
    ) -> RenderedDerivatives:
        """
        Generate all three derivatives.

        Args:
            data: Source bytes, decoded here unless ``decoded`` is given
            metadata: Validated metadata for ``data``
            decoded: Upright image from ``ImageValidator.validate_and_decode``

        Raises:
            GenerationError: If any transform fails; no partial output is returned.
        """
        try:
            if decoded is not None:
                img = self.prepare(decoded, metadata)
            else:
                img = self.decode(data, metadata)
            return RenderedDerivatives(
                thumbnail=self.render_thumbnail(img),
                medium_preview=self.render_medium(img),
                placeholder=self.render_placeholder(img),
            )
        except GenerationError:
            raise
        except Exception as exc:  # noqa: BLE001
            self._logger.error(f"Derivative generation failed: {exc}", exc_info=True)
            raise GenerationError(str(exc)) from exc


class AssetPublisher:
    """Writes derivatives under deterministic keys, all or (best-effort) nothing."""

    def __init__(self, storage: ObjectStorageProtocol, logger: Optional[LoggerProtocol] = None):
        self._storage = storage
        self._logger = logger or StructuredLogger("artwork-ingest.publisher")

    @staticmethod
    def build_derivative_set(
        object_key: str, rendered: RenderedDerivatives
    ) -> DerivativeSet:
        keys = derivative_keys(object_key)
        return DerivativeSet(
            thumbnail=Asset(
                object_key=keys["thumbnail"],
                width_px=rendered.thumbnail.width_px,
                height_px=rendered.thumbnail.height_px,
                byte_size=rendered.thumbnail.byte_size,
            ),
            medium_preview=Asset(
                object_key=keys["medium"],
                width_px=rendered.medium_preview.width_px,
                height_px=rendered.medium_preview.height_px,
                byte_size=rendered.medium_preview.byte_size,
            ),
            placeholder=rendered.placeholder,
        )

    async def publish(
        self, object_key: str, rendered: RenderedDerivatives, metadata: ImageMetadata
    ) -> DerivativeSet:
        """
        Write thumbnail, medium preview and manifest concurrently.

        Raises:
            PublishError: If any write fails, after best-effort deletion of
                the writes that succeeded.
        """
        context = LogContext(
            operation="publish", component="asset_publisher"
        ).with_metadata(object_key=object_key)
        derivatives = self.build_derivative_set(object_key, rendered)
        manifest = IngestionSuccess(
            object_key=object_key, metadata=metadata, derivatives=derivatives
        ).to_payload()
        manifest_key = derivative_keys(object_key)["manifest"]

        writes: List[Tuple[str, bytes, str]] = [
            (derivatives.thumbnail.object_key, rendered.thumbnail.data, rendered.thumbnail.content_type),
            (
                derivatives.medium_preview.object_key,
                rendered.medium_preview.data,
                rendered.medium_preview.content_type,
            ),
            (
                manifest_key,
                json.dumps(manifest, sort_keys=True).encode("utf-8"),
                "application/json",
            ),
        ]

        results = await asyncio.gather(
            *(self._storage.put(key, body, content_type) for key, body, content_type in writes),
            return_exceptions=True,
        )

        written = [key for (key, _, _), res in zip(writes, results) if not isinstance(res, BaseException)]
        failed = [(key, res) for (key, _, _), res in zip(writes, results) if isinstance(res, BaseException)]

        if failed:
            for key, error in failed:
                self._logger.error(f"Derivative write failed for {key}: {error}", context)
            await self.cleanup(written)
            raise PublishError(
                f"{len(failed)} of {len(writes)} derivative writes failed",
                failed_keys=tuple(key for key, _ in failed),
            )

        self._logger.info("Derivatives published", context, keys=len(writes))
        return derivatives

    async def cleanup(self, keys: Sequence[str]) -> bool:
        """
        Best-effort delete of already-written derivatives.

        Returns:
            True if every delete succeeded. Failures are logged, never raised.
        """
        if not keys:
            return True
        with CleanupErrorCollector(f"Derivative cleanup ({len(keys)} keys)") as collector:
            results = await asyncio.gather(
                *(self._storage.delete(key) for key in keys), return_exceptions=True
            )
            for key, res in zip(keys, results):
                if isinstance(res, BaseException):
                    collector.add_error(res, item_identifier=key)
        return collector.succeeded

    async def cleanup_all(self, object_key: str) -> bool:
        """Delete every derivative key that could exist for ``object_key``."""
        return await self.cleanup(list(derivative_keys(object_key).values()))
