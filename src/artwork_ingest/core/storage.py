"""S3-backed object storage for the ingestion pipeline."""

from contextlib import AsyncExitStack
from datetime import timedelta
from typing import Any, Optional

import aioboto3
import boto3
from botocore.exceptions import ClientError

# Conditional import for type checking S3 client
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from mypy_boto3_s3.client import S3Client
else:
    S3Client = Any

from .error_handling import retry_storage_operation, with_error_handling
from .exceptions import ConfigurationError
from .logging_config import get_logger
from .models import UploadGrant
from .protocols import Clock, utc_now

NOT_FOUND_CODES = ("NoSuchKey", "404", "NotFound")


class S3ObjectStorage:
    """
    Object storage over S3.

    Reads, writes and deletes go through a shared ``aioboto3`` client so the
    event loop is never blocked on network I/O. Upload grants are presigned
    POST policies, which ``boto3`` signs locally without a round trip.

    Use as an async context manager, or pass an already-open ``client``.
    """

    def __init__(
        self,
        bucket: str,
        client: Any = None,
        presign_client: Optional[S3Client] = None,
        session: Optional[aioboto3.Session] = None,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        clock: Optional[Clock] = None,
    ):
        if not bucket:
            raise ConfigurationError(
                "A bucket name is required. Set INGEST_BUCKET or pass --bucket."
            )
        self.bucket = bucket
        self._client = client
        self._presign_client = presign_client
        self._session = session
        self._region_name = region_name
        self._endpoint_url = endpoint_url
        self._clock = clock or utc_now
        self._exit_stack: Optional[AsyncExitStack] = None
        self._logger = get_logger("artwork-ingest.storage")

    async def __aenter__(self) -> "S3ObjectStorage":
        if self._client is None:
            session = self._session or aioboto3.Session()
            self._exit_stack = AsyncExitStack()
            self._client = await self._exit_stack.enter_async_context(
                session.client(  # type: ignore[reportUnknownMemberType]
                    "s3", region_name=self._region_name, endpoint_url=self._endpoint_url
                )
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._exit_stack is not None:
            await self._exit_stack.aclose()
            self._exit_stack = None
            self._client = None

    def _require_client(self) -> Any:
        if self._client is None:
            raise ConfigurationError("S3ObjectStorage used outside 'async with'")
        return self._client

    def _get_presign_client(self) -> S3Client:
        if self._presign_client is None:
            self._presign_client = boto3.session.Session().client(
                "s3", region_name=self._region_name, endpoint_url=self._endpoint_url
            )
        return self._presign_client

    @retry_storage_operation()
    @with_error_handling
    async def put(self, key: str, data: bytes, content_type: str) -> None:
        self._logger.debug(f"Uploading to s3://{self.bucket}/{key}")
        await self._require_client().put_object(
            Bucket=self.bucket, Key=key, Body=data, ContentType=content_type
        )

    @retry_storage_operation()
    @with_error_handling
    async def get(self, key: str) -> Optional[bytes]:
        self._logger.debug(f"Downloading from s3://{self.bucket}/{key}")
        try:
            response = await self._require_client().get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                return None
            raise
        async with response["Body"] as stream:
            return await stream.read()

    @retry_storage_operation()
    @with_error_handling
    async def delete(self, key: str) -> None:
        self._logger.debug(f"Deleting s3://{self.bucket}/{key}")
        await self._require_client().delete_object(Bucket=self.bucket, Key=key)

    @with_error_handling
    def _presign_post(self, key: str, content_type: str, max_bytes: int, expires_in: int) -> dict:
        return self._get_presign_client().generate_presigned_post(
            Bucket=self.bucket,
            Key=key,
            Fields={"Content-Type": content_type},
            Conditions=[
                {"Content-Type": content_type},
                ["content-length-range", 1, max_bytes],
            ],
            ExpiresIn=expires_in,
        )

    async def create_upload_grant(
        self, key: str, content_type: str, max_bytes: int, expires_in: int
    ) -> UploadGrant:
        issued_at = self._clock()
        response = self._presign_post(key, content_type, max_bytes, expires_in)
        return UploadGrant(
            url=response["url"],
            fields={name: str(value) for name, value in response["fields"].items()},
            expires_at=issued_at + timedelta(seconds=expires_in),
        )
