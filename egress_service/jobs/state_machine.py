"""
Egress lifecycle state machine.

One ``EgressStateMachine`` drives one job: it attaches the media pipeline,
opens the output, pumps media into it and records every transition
through the job's ``JobWriter``.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Callable, Dict, List, Optional, Set

from livekit.api import EgressInfo, EgressStatus

from egress_service.encoding import describe as describe_encoding
from egress_service.errors import (
    ConfigurationError,
    EgressError,
    FatalDeliveryError,
    InvalidStateError,
    SourceNotFoundError,
    ValidationError,
)
from egress_service.jobs.models import EgressJob, TERMINAL_STATUSES, copy_info, is_terminal, status_name
from egress_service.jobs.registry import JobWriter
from egress_service.logging_config import get_logger_with_correlation
from egress_service.metrics import EGRESS_ENDED, EGRESS_ERRORS, get_metrics_collector
from egress_service.outputs.base import OutputAdapter, OutputContext, OutputKind, ResultInfo
from egress_service.outputs.streams import StreamOutputAdapter, stream_urls
from egress_service.pipeline import MediaPipeline, MediaSession, PipelineEvent, PipelineSignal, SourceKind


logger = logging.getLogger(__name__)

STARTING = EgressStatus.EGRESS_STARTING
ACTIVE = EgressStatus.EGRESS_ACTIVE
ENDING = EgressStatus.EGRESS_ENDING
COMPLETE = EgressStatus.EGRESS_COMPLETE
FAILED = EgressStatus.EGRESS_FAILED
ABORTED = EgressStatus.EGRESS_ABORTED
LIMIT_REACHED = EgressStatus.EGRESS_LIMIT_REACHED

# Valid status transitions
VALID_TRANSITIONS: Dict[int, Set[int]] = {
    STARTING: {ACTIVE, FAILED},
    ACTIVE: {ENDING, FAILED, LIMIT_REACHED, ABORTED},
    ENDING: {COMPLETE, FAILED, ABORTED},
}

SHUTDOWN_ERROR = "egress service shutting down"


def can_transition(from_status: int, to_status: int) -> bool:
    """
    Check if a status transition is valid.

    Args:
        from_status: The current ``EgressStatus``
        to_status: The target ``EgressStatus``

    Returns:
        True if the transition is valid, False otherwise
    """
    return to_status in VALID_TRANSITIONS.get(from_status, set())


def set_result(info: EgressInfo, field_name: str, result: ResultInfo) -> None:
    """Store ``result`` in the result oneof and its repeated mirror."""
    if field_name == "file":
        info.file.CopyFrom(result)
        del info.file_results[:]
        info.file_results.append(result)
    elif field_name == "segments":
        info.segments.CopyFrom(result)
        del info.segment_results[:]
        info.segment_results.append(result)
    else:
        info.stream.CopyFrom(result)
        del info.stream_results[:]
        info.stream_results.extend(result.info)


@dataclass
class StateTransition:
    """Represents a status transition with metadata."""

    from_status: int
    to_status: int
    timestamp: datetime
    trigger: str


class EgressStateMachine:
    """
    Drives one egress job from ``EGRESS_STARTING`` to a terminal status.

    Transitions follow ``VALID_TRANSITIONS``; anything else is refused and
    logged. Once terminal, the descriptor never changes again, so a late
    stop or cancellation cannot overwrite a natural ending.
    """

    def __init__(
        self,
        job: EgressJob,
        writer: JobWriter,
        pipeline: MediaPipeline,
        adapter: OutputAdapter,
    ):
        self.job = job
        self.writer = writer
        self.pipeline = pipeline
        self.adapter = adapter

        self.log = get_logger_with_correlation(__name__, job.egress_id)
        self.metrics_collector = get_metrics_collector()

        self._session: Optional[MediaSession] = None
        self._handle = None
        self._task: Optional[asyncio.Task] = None
        self._stop_requested = False
        self._update_lock = asyncio.Lock()
        self._transition_history: List[StateTransition] = []
        self._transition_callbacks: List[Callable[[StateTransition], None]] = []

        # Stream updates received while still STARTING
        self._pending_urls: Dict[str, bool] = {}
        self._pending_layout: Optional[str] = None

    @property
    def egress_id(self) -> str:
        return self.job.egress_id

    @property
    def status(self) -> int:
        return self.writer.current.status

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def snapshot(self) -> EgressInfo:
        return copy_info(self.writer.current)

    def add_transition_callback(self, callback: Callable[[StateTransition], None]) -> None:
        self._transition_callbacks.append(callback)

    def get_transition_history(self) -> List[StateTransition]:
        return self._transition_history.copy()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task:
        """Launch the job task."""
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"egress-{self.egress_id}")
        return self._task

    async def run(self) -> None:
        """Run the job to completion. Cancellation aborts it."""
        try:
            await self._run()
        except asyncio.CancelledError:
            await self._on_cancelled()
            raise
        except Exception as e:
            self.log.exception(f"Egress failed with unexpected error: {e}")
            await self._fail(f"internal error: {e}", "internal_error")
        finally:
            await self._close_session()

    async def _run(self) -> None:
        try:
            self._session = await self.pipeline.attach(self.job.source, self.job.encoding)
        except SourceNotFoundError as e:
            await self._fail(e.message, "source_not_found")
            return
        except EgressError as e:
            await self._fail(f"pipeline attach failed: {e.message}", "attach_failed")
            return

        encoding = self.job.encoding
        self.log.info(
            f"Media pipeline attached ({describe_encoding(encoding)})",
            extra={"encoding": encoding.to_dict() if encoding is not None else None}
        )

        room_id = self._session.room_id
        if room_id:
            self.writer.update(lambda info: setattr(info, "room_id", room_id))

        context = OutputContext(
            egress_id=self.egress_id,
            room_name=self.job.room_name,
            room_id=room_id,
            track_id=self.job.source.primary_track_id,
            audio_only=self.job.source.audio_only,
            file_extension=self._session.file_extension,
        )

        async with self._update_lock:
            try:
                self._handle = await self.adapter.open(self.job.output, context)
            except (ConfigurationError, FatalDeliveryError) as e:
                await self._fail(f"output failed to open: {e.message}", "output_open_failed")
                return
            self.log.info("Output opened", extra={"output": self.adapter.describe(self._handle)})

            await self._apply_pending_updates()
            self._transition(ACTIVE, "output_opened", self._publish_live_result)

        if self._stop_requested:
            await self._abort("stopped_before_active")
            return

        await self._consume()

    async def _consume(self) -> None:
        try:
            async for item in self._session.events():
                if isinstance(item, PipelineEvent):
                    if item.signal == PipelineSignal.SOURCE_ENDED:
                        break
                    if item.signal == PipelineSignal.LIMIT_REACHED:
                        await self._finish_limit_reached()
                        return
                    if item.signal == PipelineSignal.FATAL_ERROR:
                        await self._fail(item.error or "media pipeline failed", "pipeline_error")
                        return
                    continue

                # Nothing is written once a stop has been requested
                if self._stop_requested:
                    self.log.info("Stop requested, draining output")
                    break

                active_before = self._active_endpoint_count()
                await self.adapter.write(self._handle, item)
                if self._active_endpoint_count() != active_before:
                    self._publish_update()
        except FatalDeliveryError as e:
            await self._finish_after_delivery_failure(e.message)
            return

        if self.status == ACTIVE:
            self._transition(ENDING, "source_ended")
        await self._finish_complete()

    async def _finish_complete(self) -> None:
        try:
            result = await self.adapter.finalize(self._handle)
        except EgressError as e:
            await self._fail(f"output finalize failed: {e.message}", "finalize_failed")
            return
        self._transition(COMPLETE, "outputs_finalized", self._result_setter(result))

    async def _finish_limit_reached(self) -> None:
        try:
            result = await self.adapter.finalize(self._handle)
        except EgressError as e:
            await self._fail(f"output finalize failed: {e.message}", "finalize_failed")
            return
        # A job already ending on request completes normally
        final_status = LIMIT_REACHED if self.status == ACTIVE else COMPLETE
        self._transition(final_status, "limit_reached", self._result_setter(result))

    async def _finish_after_delivery_failure(self, error: str) -> None:
        if self.status == ACTIVE:
            self._transition(ENDING, "delivery_failed")

        mutation = None
        try:
            result = await self.adapter.finalize(self._handle)
            mutation = self._result_setter(result)
        except EgressError as e:
            self.log.warning(f"Could not finalize output after delivery failure: {e.message}")
            await self._abort_output()

        self._transition(FAILED, "delivery_failed", mutation, error=error)

    async def _fail(self, error: str, trigger: str) -> None:
        await self._abort_output()
        self._transition(FAILED, trigger, error=error)

    async def _abort(self, trigger: str) -> None:
        await self._abort_output()
        self._transition(ABORTED, trigger)

    async def _on_cancelled(self) -> None:
        status = self.status
        if status == STARTING:
            await self._fail(SHUTDOWN_ERROR, "cancelled")
        elif status in (ACTIVE, ENDING):
            await self._abort("cancelled")

    def fail_if_never_ran(self) -> None:
        """Fail a job whose task was cancelled before its first step."""
        if self.status == STARTING and self._session is None:
            self._transition(FAILED, "cancelled", error=SHUTDOWN_ERROR)

    async def _abort_output(self) -> None:
        if self._handle is None:
            return
        try:
            await self.adapter.abort(self._handle)
        except Exception as e:
            self.log.error(f"Error aborting output: {e}")

    async def _close_session(self) -> None:
        if self._session is None:
            return
        try:
            await self._session.close()
        except Exception as e:
            self.log.error(f"Error closing media session: {e}")

    # ------------------------------------------------------------------
    # Requests from the service
    # ------------------------------------------------------------------

    async def request_stop(self) -> EgressInfo:
        """
        Ask the job to stop.

        ``ACTIVE`` jobs move to ``ENDING`` and drain; a ``STARTING`` job is
        aborted as soon as it becomes active. Already ending or finished
        jobs are left alone.
        """
        status = self.status
        if status == STARTING:
            self._stop_requested = True
            self.log.info("Stop requested while starting")
        elif status == ACTIVE:
            self._stop_requested = True
            self._transition(ENDING, "stop_requested")
            try:
                await self._session.stop()
            except Exception as e:
                self.log.error(f"Error stopping media session: {e}")
        return self.snapshot()

    async def update_layout(self, layout: str) -> EgressInfo:
        """
        Switch the layout of a room composite egress.

        Raises:
            ValidationError: If the egress is not a room composite
            InvalidStateError: If the egress is no longer starting or active
        """
        if self.job.source.kind != SourceKind.ROOM_COMPOSITE:
            raise ValidationError("layout can only be updated on room composite egress", self.egress_id)

        async with self._update_lock:
            self._require_updatable("update layout")
            if self._session is None or self._handle is None:
                self._pending_layout = layout
            else:
                await self._session.update_layout(layout)
            self.log.info(f"Layout updated to {layout}")
        return self.snapshot()

    async def update_stream(self, add_urls: List[str], remove_urls: List[str]) -> EgressInfo:
        """
        Add and remove stream URLs.

        Adding an active URL or removing an unknown one is a no-op. The
        update is refused as a whole if it would leave no active URL.

        Raises:
            ValidationError: If the egress has no stream output or every URL would be removed
            ConfigurationError: If an added URL does not fit the output protocol
            InvalidStateError: If the egress is no longer starting or active
        """
        if self.job.output.kind != OutputKind.STREAM or not isinstance(self.adapter, StreamOutputAdapter):
            raise ValidationError("egress does not have a stream output", self.egress_id)

        async with self._update_lock:
            self._require_updatable("update stream")

            target = self._handle if self._handle is not None else self.job.output
            for url in add_urls:
                self.adapter.check_url(target, url)

            removed = set(remove_urls)
            remaining = [url for url in dict.fromkeys(self._current_urls() + list(add_urls)) if url not in removed]
            if not remaining:
                raise ValidationError("update would remove every active stream output", self.egress_id)

            if self._handle is None:
                for url in add_urls:
                    self._pending_urls[url] = True
                for url in remove_urls:
                    self._pending_urls[url] = False
                return self.snapshot()

            for url in add_urls:
                await self.adapter.add_url(self._handle, url)
            for url in remove_urls:
                await self.adapter.remove_url(self._handle, url)

            if self.status in (STARTING, ACTIVE):
                self._publish_update()
        return self.snapshot()

    def _require_updatable(self, operation: str) -> None:
        status = self.status
        if status not in (STARTING, ACTIVE):
            raise InvalidStateError(f"cannot {operation} while {status_name(status)}", self.egress_id)

    def _current_urls(self) -> List[str]:
        if self._handle is not None:
            return self._handle.active_urls
        urls = [url for url in stream_urls(self.job.output) if self._pending_urls.get(url, True)]
        urls.extend(url for url, added in self._pending_urls.items() if added and url not in urls)
        return urls

    async def _apply_pending_updates(self) -> None:
        if self._pending_layout is not None:
            await self._session.update_layout(self._pending_layout)
            self._pending_layout = None

        for url, added in self._pending_urls.items():
            if added:
                await self.adapter.add_url(self._handle, url)
            else:
                await self.adapter.remove_url(self._handle, url)
        self._pending_urls.clear()

    # ------------------------------------------------------------------
    # Descriptor updates
    # ------------------------------------------------------------------

    def _active_endpoint_count(self) -> int:
        if isinstance(self.adapter, StreamOutputAdapter):
            return len(self._handle.active_urls)
        return 0

    def _result_setter(self, result: ResultInfo) -> Callable[[EgressInfo], None]:
        field_name = self.job.output.result_field
        return lambda info: set_result(info, field_name, result)

    def _publish_live_result(self, info: EgressInfo) -> None:
        result = self.adapter.live_result(self._handle)
        if result is not None:
            set_result(info, self.job.output.result_field, result)

    def _publish_update(self) -> None:
        if self.status in TERMINAL_STATUSES:
            return
        self.writer.update(self._publish_live_result)

    def _transition(
        self,
        new_status: int,
        trigger: str,
        mutation: Optional[Callable[[EgressInfo], None]] = None,
        error: str = "",
    ) -> bool:
        """
        Move the descriptor to ``new_status``.

        Returns:
            True if the transition happened, False if it was not allowed
        """
        current = self.status
        if new_status == current:
            self.log.debug(f"Already in status {status_name(new_status)}, ignoring transition")
            return True

        if not can_transition(current, new_status):
            self.log.warning(
                f"Invalid transition from {status_name(current)} to {status_name(new_status)} "
                f"(trigger: {trigger})"
            )
            return False

        now = time.time_ns()

        def apply(info: EgressInfo) -> None:
            if mutation is not None:
                mutation(info)
            info.status = new_status
            if new_status == ACTIVE:
                info.started_at = now
            if is_terminal(new_status):
                info.ended_at = max(now, info.started_at)
            if new_status == FAILED:
                info.error = error

        self.writer.update(apply)

        transition = StateTransition(
            from_status=current,
            to_status=new_status,
            timestamp=datetime.now(UTC),
            trigger=trigger,
        )
        self._transition_history.append(transition)

        log_extra = {"from_status": status_name(current), "to_status": status_name(new_status), "trigger": trigger}
        if new_status == FAILED:
            self.log.error(f"Egress failed: {error}", extra=log_extra)
        else:
            self.log.info(
                f"Status transition: {status_name(current)} -> {status_name(new_status)} (trigger: {trigger})",
                extra=log_extra
            )

        if is_terminal(new_status):
            self.metrics_collector.increment_counter(EGRESS_ENDED, labels={"status": status_name(new_status)})
            if new_status == FAILED:
                self.metrics_collector.increment_counter(EGRESS_ERRORS)

        for callback in self._transition_callbacks:
            try:
                callback(transition)
            except Exception as e:
                self.log.error(f"Error executing transition callback: {e}")

        return True
