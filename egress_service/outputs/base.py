"""Output adapter contract and the delivery retry policy shared by adapters."""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar, Union

from livekit.api import FileInfo, SegmentsInfo, StreamInfoList

from egress_service.errors import DeliveryError, FatalDeliveryError
from egress_service.metrics import DELIVERY_RETRIES, get_metrics_collector


logger = logging.getLogger(__name__)

H = TypeVar("H")
T = TypeVar("T")

ResultInfo = Union[FileInfo, SegmentsInfo, StreamInfoList]


class OutputKind(str, Enum):
    """Resolved output variant of an egress request."""
    FILE = "file"
    SEGMENTS = "segments"
    STREAM = "stream"
    DIRECT_FILE = "direct_file"
    WEBSOCKET = "websocket"


@dataclass(frozen=True)
class OutputSpec:
    """
    Tagged output configuration.

    ``config`` is the protocol message of the variant (``EncodedFileOutput``,
    ``SegmentedFileOutput``, ``StreamOutput``, ``DirectFileOutput``) or the
    websocket URL string for ``OutputKind.WEBSOCKET``.
    """
    kind: OutputKind
    config: Any

    @property
    def result_field(self) -> str:
        """Name of the ``EgressInfo.result`` oneof member this output fills."""
        if self.kind in (OutputKind.FILE, OutputKind.DIRECT_FILE):
            return "file"
        if self.kind == OutputKind.SEGMENTS:
            return "segments"
        return "stream"


@dataclass(frozen=True)
class OutputContext:
    """Job facts an adapter needs to name and place its output."""
    egress_id: str
    room_name: str
    room_id: str = ""
    track_id: str = ""
    audio_only: bool = False
    file_extension: str = "mp4"


@dataclass
class RetryConfig:
    """Configuration for delivery retry logic."""
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings) -> "RetryConfig":
        return cls(**settings.retry_config)

    def delay_for(self, attempt: int) -> float:
        """Calculate delay for exponential backoff after ``attempt`` failures."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)

        return delay


async def deliver_with_retry(
    operation: Callable[[], Awaitable[T]],
    retry_config: RetryConfig,
    description: str,
    log: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None,
) -> T:
    """
    Run a delivery operation, retrying transient failures.

    Args:
        operation: Zero-argument coroutine function performing one attempt
        retry_config: Backoff policy
        description: What is being delivered, for logs and errors
        log: Logger to report retries on

    Returns:
        Whatever the operation returns

    Raises:
        FatalDeliveryError: On a fatal failure or once attempts are exhausted
    """
    log = log or logger
    last_error: Optional[DeliveryError] = None

    for attempt in range(1, retry_config.max_attempts + 1):
        try:
            return await operation()
        except DeliveryError as e:
            last_error = e
            log.warning(
                f"Delivery of {description} failed (attempt {attempt}): {e}",
                extra={"attempt": attempt, "error": str(e)}
            )

            if attempt == retry_config.max_attempts:
                break

            get_metrics_collector().increment_counter(DELIVERY_RETRIES)
            await asyncio.sleep(retry_config.delay_for(attempt))

    raise FatalDeliveryError(
        f"{description} failed after {retry_config.max_attempts} attempts: {last_error}"
    )


class OutputAdapter(ABC, Generic[H]):
    """
    Uniform interface over one delivery target.

    Handles are owned by a single egress job and are never shared.
    """

    kind: OutputKind

    @abstractmethod
    async def open(self, spec: OutputSpec, context: OutputContext) -> H:
        """
        Resolve the sink and prepare it for data.

        Raises:
            ConfigurationError: If the output is malformed or unsupported
            FatalDeliveryError: If the sink cannot be reached
        """

    @abstractmethod
    async def write(self, handle: H, chunk) -> None:
        """
        Deliver one media chunk.

        Raises:
            FatalDeliveryError: If delivery cannot continue
        """

    @abstractmethod
    async def finalize(self, handle: H) -> ResultInfo:
        """Flush, upload and describe the delivered output."""

    @abstractmethod
    async def abort(self, handle: H) -> None:
        """Best effort cleanup. Never raises."""

    def live_result(self, handle: H) -> Optional[ResultInfo]:
        """Result to publish while the job is still running, if any."""
        return None

    def describe(self, handle: H) -> Dict[str, Any]:
        """Loggable summary of the handle."""
        return {"kind": self.kind.value}
