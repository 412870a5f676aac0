"""Two-phase ingestion orchestrator.

Each ingestion attempt is an explicit state machine::

    TICKETED -> AWAITING_UPLOAD -> VALIDATING -> GENERATING -> PUBLISHING -> COMPLETE
                                   (any non-terminal state) -> FAILED

Attempts are keyed by object key and share no mutable state with each
other. Validation and generation are CPU-bound and run on a dedicated
executor; fetching and publishing are awaited on the event loop.
"""

import asyncio
from abc import ABC, abstractmethod
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple, Union

from .exceptions import (
    GenerationError,
    InvalidImageError,
    InvalidTransitionError,
    PublishError,
    StorageError,
)
from .logging_config import configure_multiprocessing_logging
from .models import (
    FailureStage,
    IngestionConfig,
    IngestionFailure,
    IngestionResult,
    IngestionSuccess,
    Rejected,
    UploadTarget,
    UploadTicket,
)
from .observability import LogContext, MetricsCollector, StructuredLogger
from .protocols import Clock, LoggerProtocol, ObjectStorageProtocol, utc_now
from .services import AssetPublisher, DerivativeGenerator, ImageValidator, UploadAuthorizer


class IngestionState(str, Enum):
    """Lifecycle of a single ingestion attempt."""

    TICKETED = "ticketed"
    AWAITING_UPLOAD = "awaiting_upload"
    VALIDATING = "validating"
    GENERATING = "generating"
    PUBLISHING = "publishing"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (IngestionState.COMPLETE, IngestionState.FAILED)

    @property
    def is_running(self) -> bool:
        return self in (
            IngestionState.VALIDATING,
            IngestionState.GENERATING,
            IngestionState.PUBLISHING,
        )


ALLOWED_TRANSITIONS: Dict[IngestionState, Set[IngestionState]] = {
    IngestionState.TICKETED: {IngestionState.AWAITING_UPLOAD, IngestionState.FAILED},
    IngestionState.AWAITING_UPLOAD: {IngestionState.VALIDATING, IngestionState.FAILED},
    IngestionState.VALIDATING: {IngestionState.GENERATING, IngestionState.FAILED},
    IngestionState.GENERATING: {IngestionState.PUBLISHING, IngestionState.FAILED},
    IngestionState.PUBLISHING: {IngestionState.COMPLETE, IngestionState.FAILED},
    IngestionState.COMPLETE: set(),
    IngestionState.FAILED: set(),
}

# Where a failure is reported when it happens in a given state
_STAGE_FOR_STATE: Dict[IngestionState, FailureStage] = {
    IngestionState.TICKETED: FailureStage.VALIDATING,
    IngestionState.AWAITING_UPLOAD: FailureStage.VALIDATING,
    IngestionState.VALIDATING: FailureStage.VALIDATING,
    IngestionState.GENERATING: FailureStage.GENERATING,
    IngestionState.PUBLISHING: FailureStage.PUBLISHING,
}


@dataclass
class IngestionAttempt:
    """Bookkeeping for one run of the pipeline over one object key."""

    ticket: UploadTicket
    state: IngestionState = IngestionState.TICKETED
    result: Optional[IngestionResult] = None
    history: List[Tuple[IngestionState, datetime]] = field(default_factory=list)
    run_count: int = 0

    @property
    def object_key(self) -> str:
        return self.ticket.object_key

    def advance(self, new_state: IngestionState, at: datetime) -> None:
        """Move along one edge of the state machine.

        Raises:
            InvalidTransitionError: If the edge does not exist.
        """
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"{self.object_key}: cannot move from {self.state.value} to {new_state.value}"
            )
        self.state = new_state
        self.history.append((new_state, at))

    def fail(
        self, stage: FailureStage, reason: str, retryable: bool, at: datetime
    ) -> IngestionFailure:
        failure = IngestionFailure(
            object_key=self.object_key, stage=stage, reason=reason, retryable=retryable
        )
        self.advance(IngestionState.FAILED, at)
        self.result = failure
        return failure

    def complete(self, success: IngestionSuccess, at: datetime) -> IngestionSuccess:
        self.advance(IngestionState.COMPLETE, at)
        self.result = success
        return success

    def restart(self, at: datetime) -> None:
        """Begin a new run after a retryable failure, keeping the same ticket."""
        if not (
            self.state is IngestionState.FAILED
            and isinstance(self.result, IngestionFailure)
            and self.result.retryable
        ):
            raise InvalidTransitionError(f"{self.object_key}: attempt is not retryable")
        self.state = IngestionState.AWAITING_UPLOAD
        self.result = None
        self.history.append((IngestionState.AWAITING_UPLOAD, at))


class AttemptStore(ABC):
    """Where attempts live between ``request_upload`` and ``complete_ingestion``."""

    @abstractmethod
    def save(self, attempt: IngestionAttempt) -> None:
        ...

    @abstractmethod
    def get(self, object_key: str) -> Optional[IngestionAttempt]:
        ...

    @abstractmethod
    def discard(self, object_key: str) -> None:
        ...

    @abstractmethod
    def prune_expired(self, now: datetime) -> int:
        """Drop attempts whose ticket has expired, keeping completed and running ones.

        Returns:
            The number of attempts removed.
        """


class InMemoryAttemptStore(AttemptStore):
    """Process-local attempt store."""

    def __init__(self) -> None:
        self._attempts: Dict[str, IngestionAttempt] = {}

    def save(self, attempt: IngestionAttempt) -> None:
        self._attempts[attempt.object_key] = attempt

    def get(self, object_key: str) -> Optional[IngestionAttempt]:
        return self._attempts.get(object_key)

    def discard(self, object_key: str) -> None:
        self._attempts.pop(object_key, None)

    def prune_expired(self, now: datetime) -> int:
        stale = [
            key
            for key, attempt in self._attempts.items()
            if attempt.ticket.is_expired(now)
            and attempt.state is not IngestionState.COMPLETE
            and not attempt.state.is_running
        ]
        for key in stale:
            del self._attempts[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._attempts)


def create_cpu_executor(config: IngestionConfig) -> Executor:
    """Executor for validation and derivative generation."""
    if config.cpu_executor == "process":
        return ProcessPoolExecutor(
            max_workers=config.cpu_workers, initializer=configure_multiprocessing_logging
        )
    return ThreadPoolExecutor(
        max_workers=config.cpu_workers, thread_name_prefix="artwork-ingest-cpu"
    )


class IngestionOrchestrator:
    """Sequences authorizer, validator, generator and publisher per attempt."""

    def __init__(
        self,
        storage: ObjectStorageProtocol,
        config: IngestionConfig,
        authorizer: Optional[UploadAuthorizer] = None,
        validator: Optional[ImageValidator] = None,
        generator: Optional[DerivativeGenerator] = None,
        publisher: Optional[AssetPublisher] = None,
        attempts: Optional[AttemptStore] = None,
        cpu_executor: Optional[Executor] = None,
        logger: Optional[LoggerProtocol] = None,
        metrics_collector: Optional[MetricsCollector] = None,
        clock: Optional[Clock] = None,
    ):
        self._storage = storage
        self._config = config
        self._clock = clock or utc_now
        self._logger = logger or StructuredLogger("artwork-ingest.orchestrator")
        self._authorizer = authorizer or UploadAuthorizer(
            storage, config, logger=self._logger, clock=self._clock
        )
        self._validator = validator or ImageValidator(config)
        self._generator = generator or DerivativeGenerator(config)
        self._publisher = publisher or AssetPublisher(storage, logger=self._logger)
        self._attempts = attempts or InMemoryAttemptStore()
        self._owns_executor = cpu_executor is None
        self._cpu_executor = cpu_executor or create_cpu_executor(config)
        # Decoded pixels are handed to the generator only when both share memory.
        self._reuse_decoded = not isinstance(self._cpu_executor, ProcessPoolExecutor)
        self._metrics = metrics_collector or MetricsCollector()
        self._cleanup_tasks: Set["asyncio.Task[bool]"] = set()

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    def get_attempt(self, object_key: str) -> Optional[IngestionAttempt]:
        return self._attempts.get(object_key)

    async def request_upload(
        self, owner_id: str, file_name: str, content_type: str, byte_size: int
    ) -> Union[UploadTarget, Rejected]:
        """
        Phase one: issue a ticket and tell the client where to upload.

        Raises:
            StorageError: If an upload grant cannot be minted.
        """
        issued = await self._authorizer.issue_ticket(owner_id, file_name, content_type, byte_size)
        if isinstance(issued, Rejected):
            return issued

        now = self._clock()
        pruned = self._attempts.prune_expired(now)
        if pruned:
            self._logger.debug(f"Dropped {pruned} expired attempts")

        attempt = IngestionAttempt(ticket=issued)
        attempt.history.append((IngestionState.TICKETED, issued.issued_at))
        attempt.advance(IngestionState.AWAITING_UPLOAD, now)
        self._attempts.save(attempt)

        return UploadTarget(
            upload_url=issued.grant.url,
            upload_fields=issued.grant.fields,
            object_key=issued.object_key,
            expires_at=issued.expires_at,
        )

    async def complete_ingestion(self, object_key: str) -> IngestionResult:
        """
        Phase two: the client says the object is in place.

        Returns a stored result for a finished attempt instead of running the
        pipeline again, so a completed upload is never published twice.
        """
        attempt = self._attempts.get(object_key)
        if attempt is None:
            return IngestionFailure(
                object_key=object_key,
                stage=FailureStage.VALIDATING,
                reason="unknown upload",
                retryable=False,
            )

        if attempt.state is IngestionState.COMPLETE:
            self._logger.info(f"Ingestion already complete for {object_key}")
            return attempt.result  # type: ignore[return-value]

        if attempt.state.is_running:
            return IngestionFailure(
                object_key=object_key,
                stage=_STAGE_FOR_STATE[attempt.state],
                reason="already in progress",
                retryable=True,
            )

        if attempt.state is IngestionState.FAILED:
            assert isinstance(attempt.result, IngestionFailure)
            if not attempt.result.retryable:
                return attempt.result
            attempt.restart(self._clock())

        now = self._clock()
        if attempt.ticket.is_expired(now):
            return attempt.fail(FailureStage.EXPIRED, "expired", retryable=False, at=now)

        attempt.run_count += 1
        context = LogContext(
            operation="complete_ingestion",
            component="ingestion_orchestrator",
            owner_id=attempt.ticket.owner_id,
        ).with_metadata(object_key=object_key, run=attempt.run_count)

        # Claimed before the first await so a concurrent call sees it as running.
        attempt.advance(IngestionState.VALIDATING, now)
        timeout = attempt.ticket.remaining_seconds(now)
        try:
            return await asyncio.wait_for(self._run(attempt, context), timeout=timeout)
        except asyncio.TimeoutError:
            self._logger.warning("Ingestion exceeded ticket lifetime", context)
            self._schedule_cleanup(object_key)
            return attempt.fail(FailureStage.EXPIRED, "expired", retryable=False, at=self._clock())
        except asyncio.CancelledError:
            self._logger.warning("Ingestion cancelled", context, stage=attempt.state.value)
            if attempt.state in (IngestionState.GENERATING, IngestionState.PUBLISHING):
                self._schedule_cleanup(object_key)
            if not attempt.state.is_terminal:
                attempt.fail(
                    _STAGE_FOR_STATE[attempt.state], "cancelled", retryable=True, at=self._clock()
                )
            raise

    async def _run(self, attempt: IngestionAttempt, context: LogContext) -> IngestionResult:
        loop = asyncio.get_running_loop()
        object_key = attempt.object_key

        try:
            with self._metrics.measure("fetch", object_key=object_key):
                data = await self._storage.get(object_key)
            if data is None:
                self._logger.info("Upload not found in storage", context)
                return attempt.fail(
                    FailureStage.VALIDATING, "upload not found", retryable=True, at=self._clock()
                )

            with self._metrics.measure("validate", object_key=object_key):
                decoded = None
                if self._reuse_decoded:
                    metadata, decoded = await loop.run_in_executor(
                        self._cpu_executor, self._validator.validate_and_decode, data
                    )
                else:
                    metadata = await loop.run_in_executor(
                        self._cpu_executor, self._validator.validate, data
                    )

            attempt.advance(IngestionState.GENERATING, self._clock())
            with self._metrics.measure("generate", object_key=object_key):
                rendered = await loop.run_in_executor(
                    self._cpu_executor, self._generator.generate, data, metadata, decoded
                )

            attempt.advance(IngestionState.PUBLISHING, self._clock())
            with self._metrics.measure("publish", object_key=object_key):
                derivatives = await self._publisher.publish(object_key, rendered, metadata)

        except InvalidImageError as exc:
            self._logger.info(f"Upload rejected: {exc}", context)
            return attempt.fail(
                FailureStage.VALIDATING, exc.reason.value, retryable=False, at=self._clock()
            )
        except GenerationError as exc:
            self._logger.error(f"Generation failed: {exc}", context, exc_info=True)
            return attempt.fail(
                FailureStage.GENERATING, "processing failed", retryable=True, at=self._clock()
            )
        except PublishError as exc:
            self._logger.error(f"Publishing failed: {exc}", context)
            return attempt.fail(
                FailureStage.PUBLISHING, "processing failed", retryable=True, at=self._clock()
            )
        except StorageError as exc:
            self._logger.error(f"Storage unavailable: {exc}", context)
            return attempt.fail(
                _STAGE_FOR_STATE[attempt.state],
                "storage unavailable",
                retryable=True,
                at=self._clock(),
            )
        except Exception as exc:
            # Any other fault still has to leave the attempt in FAILED.
            self._logger.error(f"Unexpected ingestion error: {exc}", context, exc_info=True)
            return attempt.fail(
                _STAGE_FOR_STATE[attempt.state],
                "processing failed",
                retryable=True,
                at=self._clock(),
            )

        success = IngestionSuccess(object_key=object_key, metadata=metadata, derivatives=derivatives)
        self._logger.info(
            "Ingestion complete",
            context,
            width=metadata.width_px,
            height=metadata.height_px,
        )
        return attempt.complete(success, self._clock())

    def _schedule_cleanup(self, object_key: str) -> None:
        """Fire-and-forget deletion of any derivatives written for ``object_key``."""
        task = asyncio.get_running_loop().create_task(self._publisher.cleanup_all(object_key))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def drain_cleanup(self) -> None:
        """Wait for scheduled cleanups; used on shutdown and in tests."""
        while self._cleanup_tasks:
            await asyncio.gather(*list(self._cleanup_tasks), return_exceptions=True)

    def close(self) -> None:
        if self._owns_executor:
            self._cpu_executor.shutdown(wait=True)


async def complete_with_retries(
    orchestrator: IngestionOrchestrator,
    object_key: str,
    max_attempts: int = 3,
    initial_delay: float = 0.5,
    backoff_factor: float = 2.0,
) -> IngestionResult:
    """
    Caller-side retry policy for ``complete_ingestion``.

    Only failures marked retryable (generation, publishing, transient
    storage) are retried; invalid input and expiry come back immediately.
    """
    logger = StructuredLogger("artwork-ingest.retry")
    delay = initial_delay
    result: IngestionResult = await orchestrator.complete_ingestion(object_key)
    attempt = 1
    while isinstance(result, IngestionFailure) and result.retryable and attempt < max_attempts:
        logger.info(
            f"Ingestion of {object_key} failed at {result.stage.value} ({result.reason}). "
            f"Attempt {attempt}/{max_attempts}. Retrying in {delay:.2f}s."
        )
        await asyncio.sleep(delay)
        delay *= backoff_factor
        attempt += 1
        result = await orchestrator.complete_ingestion(object_key)
    return result
