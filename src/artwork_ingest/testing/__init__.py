"""Testing utilities and fakes for the ingestion pipeline."""

from .fakes import (
    FakeClock,
    FakeLogger,
    InMemoryObjectStorage,
    StoredObject,
    create_fake_executable,
    create_oversized_png,
    create_test_image,
    truncate_image,
)

__all__ = [
    "InMemoryObjectStorage",
    "StoredObject",
    "FakeClock",
    "FakeLogger",
    "create_test_image",
    "create_oversized_png",
    "truncate_image",
    "create_fake_executable",
]
