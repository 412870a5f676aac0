"""End-to-end ingestion scenarios through the pipeline factory."""

import asyncio
import io
import json
from concurrent.futures import ProcessPoolExecutor

import pytest
from PIL import Image

from artwork_ingest.core.factories import IngestionPipelineFactory, LoggerFactory, StorageFactory
from artwork_ingest.core.models import (
    FailureStage,
    IngestionConfig,
    IngestionFailure,
    IngestionSuccess,
    Rejected,
    UploadTarget,
)
from artwork_ingest.core.observability import StructuredLogger
from artwork_ingest.core.orchestrator import IngestionState
from artwork_ingest.core.storage import S3ObjectStorage
from artwork_ingest.testing.fakes import (
    FakeClock,
    FakeLogger,
    InMemoryObjectStorage,
    create_fake_executable,
    create_oversized_png,
    create_test_image,
)


@pytest.fixture
def storage():
    return InMemoryObjectStorage()


@pytest.fixture
def logger():
    return FakeLogger()


@pytest.fixture
def pipeline(storage, logger):
    orchestrator = IngestionPipelineFactory.create_pipeline(
        storage,
        config=IngestionConfig(bucket="test-bucket", cpu_workers=2),
        logger=logger,
        clock=FakeClock(),
    )
    yield orchestrator
    orchestrator.close()


def ingest(pipeline, storage, data, content_type="image/jpeg", declared_size=None, file_name="art"):
    async def flow():
        target = await pipeline.request_upload(
            "artist_42", file_name, content_type, declared_size or len(data)
        )
        if isinstance(target, Rejected):
            return target, target
        storage.add_object(target.object_key, data, content_type)
        result = await pipeline.complete_ingestion(target.object_key)
        await pipeline.drain_cleanup()
        return target, result

    return asyncio.run(flow())


def test_large_jpeg_produces_full_derivative_set(pipeline, storage):
    """A 3000x2000 JPEG declared as 4 MB yields thumbnail, preview and placeholder."""
    target, result = ingest(
        pipeline, storage, create_test_image(3000, 2000), declared_size=4_000_000, file_name="sunset.jpg"
    )

    assert isinstance(target, UploadTarget)
    assert isinstance(result, IngestionSuccess)
    payload = result.to_payload()
    assert payload["sourceWidth"] == 3000
    assert payload["sourceHeight"] == 2000
    assert (payload["thumbnail"]["width"], payload["thumbnail"]["height"]) == (400, 400)
    assert (payload["mediumPreview"]["width"], payload["mediumPreview"]["height"]) == (1200, 800)
    assert len(payload["placeholder"]) == 28

    with Image.open(io.BytesIO(storage.objects[payload["thumbnail"]["key"]].body)) as thumb:
        assert thumb.size == (400, 400)
    with Image.open(io.BytesIO(storage.objects[payload["mediumPreview"]["key"]].body)) as medium:
        assert medium.size == (1200, 800)

    manifest = json.loads(storage.objects[target.object_key + ".manifest.json"].body)
    assert manifest == payload


def test_oversized_png_is_rejected_without_derivatives(pipeline, storage):
    target, result = ingest(pipeline, storage, create_oversized_png(9000, 9000), "image/png")

    assert isinstance(result, IngestionFailure)
    assert result.to_payload() == {"stage": "validating", "reason": "dimensions exceed limit"}
    assert storage.keys() == [target.object_key]


def test_pdf_ticket_is_rejected_before_any_transfer(pipeline, storage):
    result, _ = ingest(pipeline, storage, b"%PDF-1.7", "application/pdf")

    assert isinstance(result, Rejected)
    assert result.reason == "unsupported content type"
    assert storage.operation_count == 0
    assert storage.keys() == []


def test_executable_declared_as_jpeg_is_unsupported(pipeline, storage):
    _, result = ingest(pipeline, storage, create_fake_executable(), "image/jpeg")
    assert result.to_payload() == {"stage": "validating", "reason": "unsupported format"}


def test_true_format_governs_over_declared_type(pipeline, storage):
    _, result = ingest(pipeline, storage, create_test_image(500, 500, format="PNG"), "image/jpeg")

    assert isinstance(result, IngestionSuccess)
    assert result.metadata.format_tag == "PNG"


@pytest.mark.parametrize("image_format", ["JPEG", "PNG", "WEBP", "TIFF"])
def test_every_allowed_format_is_ingested(pipeline, storage, image_format):
    _, result = ingest(pipeline, storage, create_test_image(1500, 1000, format=image_format))

    assert isinstance(result, IngestionSuccess)
    assert result.derivatives.thumbnail.width_px == 400
    assert result.derivatives.medium_preview.width_px == 1200
    assert result.derivatives.medium_preview.height_px == 800


def test_results_are_logged_with_owner(pipeline, storage, logger):
    ingest(pipeline, storage, create_test_image(640, 480))
    completions = [log for log in logger.get_logs("INFO") if log["message"] == "Ingestion complete"]
    assert completions[0]["owner_id"] == "artist_42"


def test_process_pool_executor(storage):
    config = IngestionConfig(bucket="test-bucket", cpu_workers=1, cpu_executor="process")
    pipeline = IngestionPipelineFactory.create_pipeline(storage, config=config, logger=FakeLogger())
    try:
        assert isinstance(pipeline._cpu_executor, ProcessPoolExecutor)
        _, result = ingest(pipeline, storage, create_test_image(1200, 900))
    finally:
        pipeline.close()

    assert isinstance(result, IngestionSuccess)
    assert pipeline.get_attempt(result.object_key).state is IngestionState.COMPLETE


def test_factory_defaults():
    assert isinstance(LoggerFactory.create_logger("artwork-ingest.test"), StructuredLogger)
    storage = StorageFactory.create_storage(IngestionConfig(bucket="art-bucket", region_name="eu-west-1"))
    assert isinstance(storage, S3ObjectStorage)
    assert storage.bucket == "art-bucket"


def test_expired_ticket_reports_expired_stage(storage):
    clock = FakeClock()
    pipeline = IngestionPipelineFactory.create_pipeline(
        storage, config=IngestionConfig(bucket="test-bucket"), logger=FakeLogger(), clock=clock
    )

    async def flow():
        target = await pipeline.request_upload("artist_42", "late.jpg", "image/jpeg", 1000)
        storage.add_object(target.object_key, create_test_image(100, 100))
        clock.advance(300)
        return await pipeline.complete_ingestion(target.object_key)

    try:
        result = asyncio.run(flow())
    finally:
        pipeline.close()

    assert result.stage is FailureStage.EXPIRED
    assert result.to_payload() == {"stage": "expired", "reason": "expired"}
