"""Structured pipeline events.

The pipeline reports what happens per pool as :class:`PipelineEvent` values
handed to an :class:`EventSink`. The default sink writes them to the log;
other sinks (metrics, alerting) only need an ``emit()`` method.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .errors import ErrorKind
    from .Pool import Pool

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    SAMPLE_SUCCEEDED = "sample_succeeded"
    SAMPLE_FAILED = "sample_failed"
    OBSERVATION_REJECTED = "observation_rejected"
    TWAP_COMPUTED = "twap_computed"
    TWAP_UNAVAILABLE = "twap_unavailable"
    SUBMISSION_ATTEMPTED = "submission_attempted"
    SUBMISSION_SUCCEEDED = "submission_succeeded"
    SUBMISSION_FAILED = "submission_failed"
    SUBMISSION_ABORTED = "submission_aborted"
    POOL_SKIPPED = "pool_skipped"
    POOL_HALTED = "pool_halted"


_LEVELS: dict[EventKind, int] = {
    EventKind.SAMPLE_SUCCEEDED: logging.DEBUG,
    EventKind.SAMPLE_FAILED: logging.WARNING,
    EventKind.OBSERVATION_REJECTED: logging.WARNING,
    EventKind.TWAP_COMPUTED: logging.INFO,
    EventKind.TWAP_UNAVAILABLE: logging.INFO,
    EventKind.SUBMISSION_ATTEMPTED: logging.INFO,
    EventKind.SUBMISSION_SUCCEEDED: logging.INFO,
    EventKind.SUBMISSION_FAILED: logging.WARNING,
    EventKind.SUBMISSION_ABORTED: logging.WARNING,
    EventKind.POOL_SKIPPED: logging.WARNING,
    EventKind.POOL_HALTED: logging.ERROR,
}


@dataclass(frozen=True)
class PipelineEvent:
    """A structured event about one pool.

    :ivar kind: What happened.
    :ivar pool: Pool concerned, None for batch-wide events.
    :ivar error_kind: Error classification for failures.
    :ivar attempt: Attempt number within the cycle, if relevant.
    :ivar fields: Additional event specific values.
    """

    kind: EventKind
    pool: Pool | None = None
    error_kind: ErrorKind | None = None
    attempt: int | None = None
    fields: dict[str, Any] = field(default_factory=dict)


class EventSink(Protocol):
    def emit(self, event: PipelineEvent) -> None: ...


class LoggingEventSink:
    """Writes events to the log, one line per event."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self.log = log or logger

    def emit(self, event: PipelineEvent) -> None:
        parts = [event.kind.value]
        if event.pool is not None:
            parts.append(f"pool={event.pool}")
        if event.error_kind is not None:
            parts.append(f"error_kind={event.error_kind.value}")
        if event.attempt is not None:
            parts.append(f"attempt={event.attempt}")
        parts.extend(f"{k}={v}" for k, v in event.fields.items())
        self.log.log(_LEVELS.get(event.kind, logging.INFO), " ".join(parts))
