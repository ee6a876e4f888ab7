"""Transient fault classification and exponential backoff."""

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol

from ..errors import ConfigurationError, OperationFailedError
from ..models.config import RetrySettings

logger = logging.getLogger(__name__)


class TransientCategory(str, Enum):
    """Classification of an operation error."""
    NETWORK_TIMEOUT = "network_timeout"
    SERVER_THROTTLING = "server_throttling"
    DEADLOCK = "deadlock"
    POOL_EXHAUSTION = "pool_exhaustion"
    TRANSPORT_ERROR = "transport_error"
    NON_TRANSIENT = "non_transient"

    @property
    def retryable(self) -> bool:
        return self != TransientCategory.NON_TRANSIENT


# Azure SQL / SQL Server throttling and failover codes
THROTTLING_CODES = ("40501", "40613", "40197", "40540", "49918", "49919", "49920", "10928", "10929")
DEADLOCK_CODE = "1205"
# Winsock resets/timeouts and ODBC link-failure SQLSTATEs
TRANSPORT_CODES = ("10053", "10054", "10060", "08S01", "08001")


def _code_pattern(codes) -> "re.Pattern":
    return re.compile(r"(?<![\w.])(?:" + "|".join(re.escape(c) for c in codes) + r")(?![\w.])")


_TIMEOUT = re.compile(
    r"\btime(?:d)?[\s-]?outs?\b|\bHYT0[01]\b|connection (?:was |has been )?(?:lost|broken|reset|dropped)"
    r"|communication link failure",
    re.IGNORECASE,
)
_THROTTLING = _code_pattern(THROTTLING_CODES)
_DEADLOCK = _code_pattern((DEADLOCK_CODE,))
_POOL = re.compile(r"pool (?:is )?exhausted|max(?:imum)? pool size|connection pool", re.IGNORECASE)
_TRANSPORT = _code_pattern(TRANSPORT_CODES)


def classify_error(message: str) -> TransientCategory:
    """Classify an error message; the first matching rule wins."""
    if _TIMEOUT.search(message):
        return TransientCategory.NETWORK_TIMEOUT
    if _THROTTLING.search(message):
        return TransientCategory.SERVER_THROTTLING
    if _DEADLOCK.search(message):
        return TransientCategory.DEADLOCK
    if _POOL.search(message):
        return TransientCategory.POOL_EXHAUSTION
    if _TRANSPORT.search(message):
        return TransientCategory.TRANSPORT_ERROR
    return TransientCategory.NON_TRANSIENT


@dataclass(frozen=True)
class RetryEvent:
    """A retry or terminal failure reported to the event sink."""
    description: str
    attempt: int
    max_attempts: int
    category: TransientCategory
    error: str
    delay: Optional[float] = None  # None for a terminal failure
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def terminal(self) -> bool:
        return self.delay is None


class RetryEventSink(Protocol):
    """Structured sink for retry events."""

    def record(self, event: RetryEvent) -> None:
        ...


class LoggingRetrySink:
    """Default sink that writes retry events to the module logger."""

    def record(self, event: RetryEvent) -> None:
        if event.terminal:
            logger.error(
                f"{event.description} failed terminally on attempt "
                f"{event.attempt}/{event.max_attempts} ({event.category.value}): {event.error}"
            )
        else:
            logger.warning(
                f"{event.description} attempt {event.attempt}/{event.max_attempts} failed "
                f"({event.category.value}), retrying in {event.delay:g}s: {event.error}"
            )


class MemoryRetrySink:
    """Sink that keeps events in memory; used for reports and tests."""

    def __init__(self):
        self.events: List[RetryEvent] = []

    def record(self, event: RetryEvent) -> None:
        self.events.append(event)


@dataclass
class RetryResult:
    """Successful result of a retried operation."""
    value: Any
    attempts: int
    delays: List[float] = field(default_factory=list)


class TransientRetryPolicy:
    """
    Executes an operation with exponential backoff on transient errors.

    ``Attempt(n) -> Success | RetryableFailure -> sleep -> Attempt(n+1) |
    TerminalFailure``. Non-transient errors fail on the first attempt; the
    final failure is always raised as OperationFailedError.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 2.0,
        sink: Optional[RetryEventSink] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the policy.

        Args:
            max_attempts: Total attempts per operation, 1-10
            initial_delay: First backoff delay in seconds, 1-60; doubled per retry
            sink: Receiver of retry and terminal-failure events
            sleep: Sleep function (injectable for tests)
        """
        settings = RetrySettings(max_attempts=max_attempts, initial_delay=initial_delay)
        settings.validate()
        self.max_attempts = settings.max_attempts
        self.initial_delay = settings.initial_delay
        self.sink = sink or LoggingRetrySink()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: RetrySettings, **kwargs) -> "TransientRetryPolicy":
        return cls(max_attempts=settings.max_attempts, initial_delay=settings.initial_delay, **kwargs)

    def execute(self, operation: Callable[[], Any], description: str = "operation") -> RetryResult:
        """
        Run ``operation`` until it succeeds or fails terminally.

        Returns:
            RetryResult with the operation's return value

        Raises:
            OperationFailedError: chained to the last error raised by ``operation``
        """
        delay = self.initial_delay
        delays: List[float] = []
        attempt = 0

        while True:
            attempt += 1
            try:
                value = operation()
                if attempt > 1:
                    logger.info(f"{description} succeeded on attempt {attempt}")
                return RetryResult(value=value, attempts=attempt, delays=delays)

            except (ConfigurationError, OperationFailedError):
                raise

            except Exception as e:
                message = str(e)
                category = classify_error(message)

                if category.retryable and attempt < self.max_attempts:
                    self.sink.record(RetryEvent(
                        description=description,
                        attempt=attempt,
                        max_attempts=self.max_attempts,
                        category=category,
                        error=message,
                        delay=delay,
                    ))
                    self._sleep(delay)
                    delays.append(delay)
                    delay *= 2
                    continue

                self.sink.record(RetryEvent(
                    description=description,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    category=category,
                    error=message,
                ))
                raise OperationFailedError(
                    description, category, attempt, message, delays
                ) from e
