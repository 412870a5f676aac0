"""Protocol definitions for dependency injection and testability."""

from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from .models import UploadGrant

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ObjectStorageProtocol(Protocol):
    """Contract the pipeline expects from object storage.

    ``get`` returns ``None`` when the key does not exist; every other fault is
    raised as ``StorageError``.
    """

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        """Write an object."""
        ...

    async def get(self, key: str) -> Optional[bytes]:
        """Read an object."""
        ...

    async def delete(self, key: str) -> None:
        """Delete an object; deleting a missing key is not an error."""
        ...

    async def create_upload_grant(
        self, key: str, content_type: str, max_bytes: int, expires_in: int
    ) -> UploadGrant:
        """Mint a time-boxed, write-scoped grant for a single key."""
        ...


class LoggerProtocol(Protocol):
    """Protocol for logging operations."""

    def debug(self, message: str, context: Any = None, **kwargs: Any) -> None:
        ...

    def info(self, message: str, context: Any = None, **kwargs: Any) -> None:
        ...

    def warning(self, message: str, context: Any = None, **kwargs: Any) -> None:
        ...

    def error(self, message: str, context: Any = None, **kwargs: Any) -> None:
        ...
