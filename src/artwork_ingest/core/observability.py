"""Observability utilities for logging and stage metrics."""

import logging
import math
import time
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional
from dataclasses import dataclass, field
from enum import Enum

from .logging_config import INGESTION_FIELDS, get_logger


class LogLevel(Enum):
    """Log levels for structured logging."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class LogContext:
    """Context information for structured logging."""

    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    operation: str = ""
    component: str = ""
    owner_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def with_operation(self, operation: str) -> "LogContext":
        """Create new context with operation set."""
        return LogContext(
            correlation_id=self.correlation_id,
            operation=operation,
            component=self.component,
            owner_id=self.owner_id,
            metadata=self.metadata.copy(),
        )

    def with_metadata(self, **kwargs: Any) -> "LogContext":
        """Create new context with additional metadata."""
        new_metadata = self.metadata.copy()
        new_metadata.update(kwargs)
        return LogContext(
            correlation_id=self.correlation_id,
            operation=self.operation,
            component=self.component,
            owner_id=self.owner_id,
            metadata=new_metadata,
        )


class StructuredLogger:
    """Structured logger with context support."""

    def __init__(self, name: str, level: Optional[int] = None):
        self._logger = get_logger(name)
        if level is not None:
            self._logger.setLevel(level)

    @property
    def name(self) -> str:
        return self._logger.name

    @staticmethod
    def _record_fields(context: Optional[LogContext], kwargs: Dict[str, Any]) -> Dict[str, Any]:
        """Ingestion fields to attach to the ``LogRecord`` for JSON output."""
        values: Dict[str, Any] = dict(kwargs)
        if context:
            values = {
                "correlation_id": context.correlation_id,
                "operation": context.operation or None,
                "component": context.component or None,
                "owner_id": context.owner_id,
                **context.metadata,
                **kwargs,
            }
        return {name: values[name] for name in INGESTION_FIELDS if values.get(name) is not None}

    def _log(
        self,
        level: LogLevel,
        message: str,
        context: Optional[LogContext] = None,
        exc_info: bool = False,
        **kwargs: Any,
    ) -> None:
        if context:
            formatted_message = f"[{context.correlation_id}] {message}"
            if context.operation:
                formatted_message = f"[{context.operation}] {formatted_message}"

            details = {**context.metadata, **kwargs}
            if context.owner_id:
                details["owner_id"] = context.owner_id
            if details:
                metadata_str = ", ".join(f"{k}={v}" for k, v in details.items())
                formatted_message = f"{formatted_message} ({metadata_str})"
        elif kwargs:
            metadata_str = ", ".join(f"{k}={v}" for k, v in kwargs.items())
            formatted_message = f"{message} ({metadata_str})"
        else:
            formatted_message = message

        getattr(self._logger, level.value.lower())(
            formatted_message, exc_info=exc_info, extra=self._record_fields(context, kwargs)
        )

    def debug(self, message: str, context: Optional[LogContext] = None, **kwargs: Any) -> None:
        self._log(LogLevel.DEBUG, message, context, **kwargs)

    def info(self, message: str, context: Optional[LogContext] = None, **kwargs: Any) -> None:
        self._log(LogLevel.INFO, message, context, **kwargs)

    def warning(self, message: str, context: Optional[LogContext] = None, **kwargs: Any) -> None:
        self._log(LogLevel.WARNING, message, context, **kwargs)

    def error(self, message: str, context: Optional[LogContext] = None, **kwargs: Any) -> None:
        self._log(LogLevel.ERROR, message, context, **kwargs)

    def critical(self, message: str, context: Optional[LogContext] = None, **kwargs: Any) -> None:
        self._log(LogLevel.CRITICAL, message, context, **kwargs)


@dataclass(frozen=True)
class StageTiming:
    """Time spent in one pipeline stage for one object."""

    stage: str
    duration: float
    success: bool
    object_key: Optional[str] = None
    error: Optional[str] = None

    @property
    def duration_ms(self) -> float:
        return self.duration * 1000


class MetricsCollector:
    """Stage timings for fetch, validate, generate and publish."""

    def __init__(self) -> None:
        self._timings: List[StageTiming] = []

    def record(self, timing: StageTiming) -> None:
        self._timings.append(timing)

    def timings(self, stage: Optional[str] = None) -> List[StageTiming]:
        if stage:
            return [t for t in self._timings if t.stage == stage]
        return list(self._timings)

    def summary(self, stage: Optional[str] = None) -> Dict[str, Any]:
        """Count, failures and duration percentiles in milliseconds."""
        timings = self.timings(stage)
        if not timings:
            return {}

        durations = sorted(t.duration_ms for t in timings)
        failures = sum(1 for t in timings if not t.success)
        p95_index = max(0, math.ceil(0.95 * len(durations)) - 1)
        return {
            "count": len(timings),
            "failures": failures,
            "success_rate": (len(timings) - failures) / len(timings),
            "mean_ms": sum(durations) / len(durations),
            "p95_ms": durations[p95_index],
            "max_ms": durations[-1],
        }

    def by_stage(self) -> Dict[str, Dict[str, Any]]:
        stages = dict.fromkeys(t.stage for t in self._timings)
        return {stage: self.summary(stage) for stage in stages}

    def reset(self) -> None:
        self._timings.clear()

    @contextmanager
    def measure(self, stage: str, object_key: Optional[str] = None) -> Iterator[None]:
        """Time the wrapped block; a raised exception, cancellation included, marks it failed."""
        started = time.perf_counter()
        error: Optional[str] = None
        try:
            yield
        except BaseException as exc:
            error = str(exc) or type(exc).__name__
            raise
        finally:
            self.record(
                StageTiming(
                    stage=stage,
                    duration=time.perf_counter() - started,
                    success=error is None,
                    object_key=object_key,
                    error=error,
                )
            )


def create_logger(name: str, level: LogLevel = LogLevel.INFO) -> StructuredLogger:
    """Create a structured logger at the given level."""
    return StructuredLogger(name, getattr(logging, level.value))
