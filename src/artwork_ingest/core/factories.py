"""Factory classes for creating configured service instances."""

import logging
from concurrent.futures import Executor
from typing import Optional

import aioboto3

from .models import IngestionConfig
from .observability import MetricsCollector, StructuredLogger
from .orchestrator import AttemptStore, IngestionOrchestrator
from .protocols import Clock, LoggerProtocol, ObjectStorageProtocol
from .services import AssetPublisher, DerivativeGenerator, ImageValidator, UploadAuthorizer
from .storage import S3ObjectStorage


class LoggerFactory:
    """Factory for creating logger instances."""

    @staticmethod
    def create_logger(name: str, level: Optional[int] = None) -> StructuredLogger:
        """Create a structured logger; level defaults to LOG_LEVEL."""
        return StructuredLogger(name, level)


class StorageFactory:
    """Factory for creating object storage instances."""

    @staticmethod
    def create_storage(
        config: IngestionConfig,
        session: Optional[aioboto3.Session] = None,
        clock: Optional[Clock] = None,
    ) -> S3ObjectStorage:
        """Create S3 storage; enter it with ``async with`` before use."""
        return S3ObjectStorage(
            bucket=config.bucket,
            session=session,
            region_name=config.region_name,
            endpoint_url=config.endpoint_url,
            clock=clock,
        )


class IngestionPipelineFactory:
    """Factory for creating the complete ingestion pipeline."""

    @staticmethod
    def create_pipeline(
        storage: ObjectStorageProtocol,
        config: Optional[IngestionConfig] = None,
        logger: Optional[LoggerProtocol] = None,
        clock: Optional[Clock] = None,
        metrics_collector: Optional[MetricsCollector] = None,
        attempts: Optional[AttemptStore] = None,
        cpu_executor: Optional[Executor] = None,
    ) -> IngestionOrchestrator:
        """Create a fully wired orchestrator over ``storage``."""

        if config is None:
            config = IngestionConfig.from_env()

        if logger is None:
            logger = LoggerFactory.create_logger("artwork-ingest")

        authorizer = UploadAuthorizer(storage, config, logger=logger, clock=clock)
        validator = ImageValidator(config)
        generator = DerivativeGenerator(config)
        publisher = AssetPublisher(storage, logger=logger)

        # The orchestrator creates and owns an executor when none is passed
        orchestrator = IngestionOrchestrator(
            storage=storage,
            config=config,
            authorizer=authorizer,
            validator=validator,
            generator=generator,
            publisher=publisher,
            attempts=attempts,
            cpu_executor=cpu_executor,
            logger=logger,
            metrics_collector=metrics_collector,
            clock=clock,
        )

        logging.getLogger("artwork-ingest").debug(
            f"Pipeline created: executor={config.cpu_executor}, workers={config.cpu_workers}"
        )
        return orchestrator
