"""Unit tests for the ingestion orchestrator and its state machine."""

import asyncio
from unittest.mock import Mock

import pytest
from botocore.exceptions import ReadTimeoutError

from artwork_ingest.core.exceptions import GenerationError, InvalidTransitionError
from artwork_ingest.core.models import (
    FailureStage,
    IngestionConfig,
    IngestionFailure,
    IngestionSuccess,
    Rejected,
    UploadTarget,
)
from artwork_ingest.core.orchestrator import (
    IngestionAttempt,
    IngestionOrchestrator,
    IngestionState,
    InMemoryAttemptStore,
    complete_with_retries,
)
from artwork_ingest.core.services import DerivativeGenerator, ImageValidator
from artwork_ingest.testing.fakes import (
    FakeClock,
    FakeLogger,
    InMemoryObjectStorage,
    create_fake_executable,
    create_test_image,
)


class SlowPutStorage(InMemoryObjectStorage):
    """Storage whose writes block until cancelled."""

    def __init__(self):
        super().__init__()
        self.put_started = asyncio.Event()

    async def put(self, key, data, content_type):
        self.put_started.set()
        await asyncio.sleep(30)
        await super().put(key, data, content_type)


class LateUploadStorage(InMemoryObjectStorage):
    """Storage where the upload becomes visible only after the first read."""

    def __init__(self, data):
        super().__init__()
        self.pending = data

    async def get(self, key):
        result = await super().get(key)
        if result is None and self.pending is not None:
            self.add_object(key, self.pending)
            self.pending = None
        return result


class FlakyReadStorage(InMemoryObjectStorage):
    """Storage whose first read fails with a raw botocore timeout."""

    def __init__(self):
        super().__init__()
        self.failed_once = False

    async def get(self, key):
        if not self.failed_once:
            self.failed_once = True
            raise ReadTimeoutError(endpoint_url="https://s3.example")
        return await super().get(key)


def make_orchestrator(storage, clock=None, **config_overrides):
    config = IngestionConfig(bucket="test-bucket", cpu_workers=2, **config_overrides)
    return IngestionOrchestrator(
        storage, config, logger=FakeLogger(), clock=clock or FakeClock()
    )


async def request(orchestrator, file_name="sunset.jpg", content_type="image/jpeg"):
    target = await orchestrator.request_upload("artist_42", file_name, content_type, 4_000_000)
    assert isinstance(target, UploadTarget)
    return target


@pytest.fixture
def storage():
    return InMemoryObjectStorage()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def orchestrator(storage, clock):
    orchestrator = make_orchestrator(storage, clock)
    yield orchestrator
    orchestrator.close()


class TestIngestionAttempt:
    """Tests for the per-attempt state machine."""

    def make_attempt(self, clock):
        orchestrator = make_orchestrator(InMemoryObjectStorage(), clock)
        try:
            target = asyncio.run(request(orchestrator))
            return orchestrator.get_attempt(target.object_key)
        finally:
            orchestrator.close()

    def test_request_leaves_attempt_awaiting_upload(self, clock):
        attempt = self.make_attempt(clock)
        assert attempt.state is IngestionState.AWAITING_UPLOAD
        assert [state for state, _ in attempt.history] == [
            IngestionState.TICKETED,
            IngestionState.AWAITING_UPLOAD,
        ]

    def test_invalid_transition(self, clock):
        attempt = self.make_attempt(clock)
        with pytest.raises(InvalidTransitionError):
            attempt.advance(IngestionState.PUBLISHING, clock())

    def test_terminal_states_have_no_exits(self, clock):
        attempt = self.make_attempt(clock)
        attempt.fail(FailureStage.VALIDATING, "corrupt image", retryable=False, at=clock())
        for state in IngestionState:
            with pytest.raises(InvalidTransitionError):
                attempt.advance(state, clock())

    def test_restart_requires_retryable_failure(self, clock):
        attempt = self.make_attempt(clock)
        with pytest.raises(InvalidTransitionError):
            attempt.restart(clock())

        attempt.fail(FailureStage.PUBLISHING, "processing failed", retryable=True, at=clock())
        attempt.restart(clock())
        assert attempt.state is IngestionState.AWAITING_UPLOAD
        assert attempt.result is None

    def test_attempt_store(self, clock):
        attempt = self.make_attempt(clock)
        store = InMemoryAttemptStore()
        store.save(attempt)
        assert store.get(attempt.object_key) is attempt
        store.discard(attempt.object_key)
        assert store.get(attempt.object_key) is None
        assert len(store) == 0


class TestRequestUpload:
    def test_returns_upload_target(self, orchestrator, storage, clock):
        target = asyncio.run(request(orchestrator))

        assert target.object_key.startswith("uploads/artist_42/")
        assert target.object_key.endswith("/sunset.jpg")
        assert target.upload_url == "https://test-bucket.storage.test/"
        assert (target.expires_at - clock()).total_seconds() == 300
        assert storage.operation_count == 1

    def test_rejection_creates_no_attempt(self, orchestrator, storage):
        result = asyncio.run(
            orchestrator.request_upload("artist_42", "doc.pdf", "application/pdf", 1000)
        )

        assert isinstance(result, Rejected)
        assert result.reason == "unsupported content type"
        assert storage.operation_count == 0

    def test_expired_attempts_are_pruned(self, storage, clock):
        attempts = InMemoryAttemptStore()
        orchestrator = IngestionOrchestrator(
            storage,
            IngestionConfig(bucket="test-bucket", cpu_workers=1),
            attempts=attempts,
            logger=FakeLogger(),
            clock=clock,
        )

        async def scenario():
            abandoned = await request(orchestrator, file_name="abandoned.jpg")
            done = await request(orchestrator, file_name="done.jpg")
            storage.add_object(done.object_key, create_test_image(640, 480))
            await orchestrator.complete_ingestion(done.object_key)
            rejected = await request(orchestrator, file_name="rejected.jpg")
            storage.add_object(rejected.object_key, create_fake_executable())
            await orchestrator.complete_ingestion(rejected.object_key)
            assert len(attempts) == 3

            clock.advance(301)
            fresh = await request(orchestrator, file_name="fresh.jpg")
            return abandoned, done, rejected, fresh

        try:
            abandoned, done, rejected, fresh = asyncio.run(scenario())
        finally:
            orchestrator.close()

        assert len(attempts) == 2
        assert attempts.get(abandoned.object_key) is None
        assert attempts.get(rejected.object_key) is None
        assert attempts.get(done.object_key).state is IngestionState.COMPLETE
        assert attempts.get(fresh.object_key).state is IngestionState.AWAITING_UPLOAD


class TestCompleteIngestion:
    """Tests for complete_ingestion outcomes."""

    def test_success(self, orchestrator, storage):
        async def scenario():
            target = await request(orchestrator)
            storage.add_object(target.object_key, create_test_image(3000, 2000))
            return target, await orchestrator.complete_ingestion(target.object_key)

        target, result = asyncio.run(scenario())

        assert isinstance(result, IngestionSuccess)
        payload = result.to_payload()
        assert payload["sourceWidth"] == 3000
        assert payload["sourceHeight"] == 2000
        assert payload["thumbnail"]["width"] == payload["thumbnail"]["height"] == 400
        assert (payload["mediumPreview"]["width"], payload["mediumPreview"]["height"]) == (1200, 800)
        assert len(payload["placeholder"]) == 28

        attempt = orchestrator.get_attempt(target.object_key)
        assert [state for state, _ in attempt.history] == [
            IngestionState.TICKETED,
            IngestionState.AWAITING_UPLOAD,
            IngestionState.VALIDATING,
            IngestionState.GENERATING,
            IngestionState.PUBLISHING,
            IngestionState.COMPLETE,
        ]
        for stage in ("fetch", "validate", "generate", "publish"):
            (timing,) = orchestrator.metrics.timings(stage)
            assert timing.success
            assert timing.object_key == target.object_key

    def test_completed_attempt_is_not_reprocessed(self, orchestrator, storage):
        async def scenario():
            target = await request(orchestrator)
            storage.add_object(target.object_key, create_test_image(800, 600))
            first = await orchestrator.complete_ingestion(target.object_key)
            operations = storage.operation_count
            second = await orchestrator.complete_ingestion(target.object_key)
            return first, second, operations

        first, second, operations = asyncio.run(scenario())

        assert second is first
        assert storage.operation_count == operations

    def test_unknown_key(self, orchestrator):
        result = asyncio.run(orchestrator.complete_ingestion("uploads/nobody/x/y.jpg"))
        assert isinstance(result, IngestionFailure)
        assert result.reason == "unknown upload"
        assert not result.retryable

    def test_invalid_upload_is_terminal(self, orchestrator, storage):
        async def scenario():
            target = await request(orchestrator)
            storage.add_object(target.object_key, create_fake_executable())
            first = await orchestrator.complete_ingestion(target.object_key)
            operations = storage.operation_count
            second = await orchestrator.complete_ingestion(target.object_key)
            return first, second, operations

        first, second, operations = asyncio.run(scenario())

        assert first.to_payload() == {"stage": "validating", "reason": "unsupported format"}
        assert not first.retryable
        assert second is first
        assert storage.operation_count == operations
        assert not any(op.startswith("put:") for op in storage.operations)

    def test_upload_not_found_is_retryable(self, orchestrator, storage):
        async def scenario():
            target = await request(orchestrator)
            missing = await orchestrator.complete_ingestion(target.object_key)
            storage.add_object(target.object_key, create_test_image(640, 480))
            retried = await orchestrator.complete_ingestion(target.object_key)
            return target, missing, retried

        target, missing, retried = asyncio.run(scenario())

        assert missing.reason == "upload not found"
        assert missing.stage is FailureStage.VALIDATING
        assert missing.retryable
        assert isinstance(retried, IngestionSuccess)
        assert orchestrator.get_attempt(target.object_key).run_count == 2

    def test_expired_ticket(self, orchestrator, storage, clock):
        async def scenario():
            target = await request(orchestrator)
            storage.add_object(target.object_key, create_test_image(640, 480))
            clock.advance(301)
            return await orchestrator.complete_ingestion(target.object_key)

        result = asyncio.run(scenario())

        assert result.stage is FailureStage.EXPIRED
        assert result.reason == "expired"
        assert not any(op.startswith("get:") for op in storage.operations)

    def test_storage_unavailable(self, orchestrator, storage):
        async def scenario():
            target = await request(orchestrator)
            storage.add_object(target.object_key, create_test_image(640, 480))
            storage.set_failure_mode(True, operations={"get"})
            return await orchestrator.complete_ingestion(target.object_key)

        result = asyncio.run(scenario())

        assert result.stage is FailureStage.VALIDATING
        assert result.reason == "storage unavailable"
        assert result.retryable

    def test_unexpected_read_error_fails_attempt(self, clock):
        storage = FlakyReadStorage()
        orchestrator = make_orchestrator(storage, clock)

        async def scenario():
            target = await request(orchestrator)
            storage.add_object(target.object_key, create_test_image(640, 480))
            first = await orchestrator.complete_ingestion(target.object_key)
            state_after_first = orchestrator.get_attempt(target.object_key).state
            second = await orchestrator.complete_ingestion(target.object_key)
            return first, state_after_first, second

        try:
            first, state_after_first, second = asyncio.run(scenario())
        finally:
            orchestrator.close()

        assert first.to_payload() == {"stage": "validating", "reason": "processing failed"}
        assert first.retryable
        assert state_after_first is IngestionState.FAILED
        assert isinstance(second, IngestionSuccess)

    def test_unexpected_validator_error_fails_attempt(self, storage, clock):
        validator = Mock()
        validator.validate_and_decode.side_effect = RuntimeError("decoder bug")
        orchestrator = IngestionOrchestrator(
            storage,
            IngestionConfig(bucket="test-bucket", cpu_workers=1),
            validator=validator,
            logger=FakeLogger(),
            clock=clock,
        )

        async def scenario():
            target = await request(orchestrator)
            storage.add_object(target.object_key, create_test_image(640, 480))
            return target, await orchestrator.complete_ingestion(target.object_key)

        try:
            target, result = asyncio.run(scenario())
        finally:
            orchestrator.close()

        assert result.stage is FailureStage.VALIDATING
        assert result.reason == "processing failed"
        assert orchestrator.get_attempt(target.object_key).state is IngestionState.FAILED

    def test_thread_executor_decodes_source_once(self, storage, clock):
        config = IngestionConfig(bucket="test-bucket", cpu_workers=1)
        validator = Mock(wraps=ImageValidator(config))
        generator = Mock(wraps=DerivativeGenerator(config))
        orchestrator = IngestionOrchestrator(
            storage,
            config,
            validator=validator,
            generator=generator,
            logger=FakeLogger(),
            clock=clock,
        )

        async def scenario():
            target = await request(orchestrator)
            storage.add_object(target.object_key, create_test_image(640, 480))
            return await orchestrator.complete_ingestion(target.object_key)

        try:
            result = asyncio.run(scenario())
        finally:
            orchestrator.close()

        assert isinstance(result, IngestionSuccess)
        validator.validate.assert_not_called()
        validator.validate_and_decode.assert_called_once()
        decoded = generator.generate.call_args[0][2]
        assert decoded.size == (640, 480)

    def test_generation_failure_is_retryable(self, storage, clock):
        generator = Mock()
        generator.generate.side_effect = GenerationError("encoder crashed")
        orchestrator = IngestionOrchestrator(
            storage,
            IngestionConfig(bucket="test-bucket", cpu_workers=1),
            generator=generator,
            logger=FakeLogger(),
            clock=clock,
        )

        async def scenario():
            target = await request(orchestrator)
            storage.add_object(target.object_key, create_test_image(640, 480))
            return await orchestrator.complete_ingestion(target.object_key)

        try:
            result = asyncio.run(scenario())
        finally:
            orchestrator.close()

        assert result.to_payload() == {"stage": "generating", "reason": "processing failed"}
        assert result.retryable
        assert not any(op.startswith("put:") for op in storage.operations)

    def test_publish_failure_leaves_no_derivatives(self, orchestrator, storage):
        async def scenario():
            target = await request(orchestrator)
            storage.add_object(target.object_key, create_test_image(1600, 1200))
            storage.fail_keys_with_suffix(".manifest.json")
            failed = await orchestrator.complete_ingestion(target.object_key)
            left_behind = storage.keys()

            storage.failing_key_suffixes.clear()
            retried = await orchestrator.complete_ingestion(target.object_key)
            return target, failed, left_behind, retried

        target, failed, left_behind, retried = asyncio.run(scenario())

        assert failed.to_payload() == {"stage": "publishing", "reason": "processing failed"}
        assert failed.retryable
        assert left_behind == [target.object_key]
        assert isinstance(retried, IngestionSuccess)
        assert len(storage.keys()) == 4

    def test_concurrent_attempts_are_independent(self, orchestrator, storage):
        async def scenario():
            first = await request(orchestrator, "a.jpg")
            second = await request(orchestrator, "b.png", "image/png")
            storage.add_object(first.object_key, create_test_image(900, 600))
            storage.add_object(second.object_key, create_test_image(600, 900, format="PNG"))
            return await asyncio.gather(
                orchestrator.complete_ingestion(first.object_key),
                orchestrator.complete_ingestion(second.object_key),
            )

        first, second = asyncio.run(scenario())

        assert first.success and second.success
        assert first.metadata.width_px == 900
        assert second.metadata.width_px == 600


class TestTimeoutAndCancellation:
    def test_processing_past_expiry_fails_expired_and_cleans_up(self):
        storage = InMemoryObjectStorage()
        orchestrator = make_orchestrator(storage, ticket_ttl_seconds=1)

        async def scenario():
            target = await request(orchestrator)
            storage.add_object(target.object_key, create_test_image(640, 480))
            storage.set_delay(5)
            result = await orchestrator.complete_ingestion(target.object_key)
            storage.set_delay(0)
            await orchestrator.drain_cleanup()
            return target, result

        try:
            target, result = asyncio.run(scenario())
        finally:
            orchestrator.close()

        assert result.stage is FailureStage.EXPIRED
        assert not result.retryable
        assert storage.keys() == [target.object_key]
        assert "delete:" + target.object_key + ".thumb.jpg" in storage.operations
        assert orchestrator.get_attempt(target.object_key).state is IngestionState.FAILED

    def test_cancellation_during_publish_cleans_up(self):
        async def scenario():
            storage = SlowPutStorage()
            orchestrator = make_orchestrator(storage)
            try:
                target = await request(orchestrator)
                storage.add_object(target.object_key, create_test_image(640, 480))

                task = asyncio.ensure_future(orchestrator.complete_ingestion(target.object_key))
                await storage.put_started.wait()

                duplicate = await orchestrator.complete_ingestion(target.object_key)

                task.cancel()
                with pytest.raises(asyncio.CancelledError):
                    await task
                await orchestrator.drain_cleanup()
                return storage, orchestrator.get_attempt(target.object_key), duplicate
            finally:
                orchestrator.close()

        storage, attempt, duplicate = asyncio.run(scenario())

        assert duplicate.reason == "already in progress"
        assert duplicate.retryable
        assert attempt.state is IngestionState.FAILED
        assert attempt.result.to_payload() == {"stage": "publishing", "reason": "cancelled"}
        assert attempt.result.retryable
        deletes = sorted(op for op in storage.operations if op.startswith("delete:"))
        assert len(deletes) == 3
        assert storage.keys() == [attempt.object_key]


class TestCompleteWithRetries:
    def test_retries_until_success(self):
        data = create_test_image(640, 480)
        storage = LateUploadStorage(data)
        orchestrator = make_orchestrator(storage)

        async def scenario():
            target = await request(orchestrator)
            return target, await complete_with_retries(orchestrator, target.object_key, initial_delay=0)

        try:
            target, result = asyncio.run(scenario())
        finally:
            orchestrator.close()

        assert isinstance(result, IngestionSuccess)
        assert orchestrator.get_attempt(target.object_key).run_count == 2

    def test_gives_up_after_max_attempts(self, orchestrator, storage):
        async def scenario():
            target = await request(orchestrator)
            storage.add_object(target.object_key, create_test_image(640, 480))
            storage.fail_keys_with_suffix(".medium.jpg")
            result = await complete_with_retries(
                orchestrator, target.object_key, max_attempts=3, initial_delay=0
            )
            return target, result

        target, result = asyncio.run(scenario())

        assert result.stage is FailureStage.PUBLISHING
        assert orchestrator.get_attempt(target.object_key).run_count == 3

    def test_terminal_failure_is_not_retried(self, orchestrator, storage):
        async def scenario():
            target = await request(orchestrator)
            storage.add_object(target.object_key, create_fake_executable())
            result = await complete_with_retries(orchestrator, target.object_key, initial_delay=0)
            return target, result

        target, result = asyncio.run(scenario())

        assert result.reason == "unsupported format"
        assert orchestrator.get_attempt(target.object_key).run_count == 1


def test_attempt_dataclass_defaults():
    attempt = IngestionAttempt(ticket=Mock(object_key="k"))
    assert attempt.state is IngestionState.TICKETED
    assert attempt.object_key == "k"
    assert attempt.run_count == 0
