"""
Egress Service

RPC-facing façade of the egress engine:
- Start room composite, track composite and track egress
- Live layout and stream URL updates
- Listing, stopping and awaiting egress jobs
- Health status, retention cleanup and graceful shutdown
"""

import asyncio
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from livekit.api import (
    EgressInfo,
    EgressStatus,
    ListEgressRequest,
    ListEgressResponse,
    RoomCompositeEgressRequest,
    StopEgressRequest,
    TrackCompositeEgressRequest,
    TrackEgressRequest,
    UpdateLayoutRequest,
    UpdateStreamRequest,
)

from egress_service.config import Settings, get_settings
from egress_service.database.repository import SQLEgressStore
from egress_service.errors import CapacityError, EgressError, InvalidStateError
from egress_service.jobs.models import EgressJob, is_terminal, status_name
from egress_service.jobs.registry import EgressRegistry, UpdateListener
from egress_service.jobs.state_machine import EgressStateMachine
from egress_service.logging_config import LoggerMixin
from egress_service.metrics import EGRESS_ACTIVE, EGRESS_ERRORS, EGRESS_STARTED, START_DURATION, get_metrics_collector, timer
from egress_service.outputs import build_adapter
from egress_service.outputs.base import RetryConfig
from egress_service.outputs.storage import StorageResolver
from egress_service.outputs.streams import EndpointConnector, WebSocketConnector
from egress_service.pipeline import MediaPipeline
from egress_service.security import redact_url
from egress_service.services import validation
from egress_service.services.validation import EgressPlan


def new_egress_id() -> str:
    """Generate an egress id such as ``EG_1a2b3c4d5e6f``."""
    return f"EG_{uuid.uuid4().hex[:12]}"


class EgressService(LoggerMixin):
    """
    Orchestrates egress jobs.

    Each started job gets its own ``EgressStateMachine`` running as an
    asyncio task. The registry keeps descriptors of finished jobs until
    they are cleaned up.
    """

    def __init__(
        self,
        pipeline: MediaPipeline,
        settings: Optional[Settings] = None,
        registry: Optional[EgressRegistry] = None,
        storage: Optional[StorageResolver] = None,
        connectors: Optional[Dict[str, EndpointConnector]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        """
        Initialize the egress service.

        Args:
            pipeline: Media pipeline used to capture sources
            settings: Settings, the global settings when omitted
            registry: Descriptor registry, built from settings when omitted
            storage: Upload destinations for file outputs
            connectors: Stream connectors by URL scheme, added to the built-in websocket connector
            id_factory: Egress id generator
        """
        super().__init__()
        self.settings = settings or get_settings()
        self.pipeline = pipeline
        self.metrics_collector = get_metrics_collector()

        self._store: Optional[SQLEgressStore] = None
        if registry is None:
            if self.settings.persistence_enabled:
                self._store = SQLEgressStore(self.settings.database_url, echo=self.settings.debug)
                self._store.create_tables()
            registry = EgressRegistry(self._store)
        self.registry = registry

        self.storage = storage or StorageResolver(self.settings.output_directory)

        websocket = WebSocketConnector(connect_timeout=self.settings.websocket_connect_timeout)
        self.connectors: Dict[str, EndpointConnector] = {"ws": websocket, "wss": websocket}
        self.connectors.update(connectors or {})

        self.retry_config = RetryConfig.from_settings(self.settings)
        self._id_factory = id_factory or new_egress_id
        self._machines: Dict[str, EgressStateMachine] = {}
        self._closed = False

        self._logger.info("Egress Service initialized")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # Start Methods

    async def start_room_composite_egress(self, request: RoomCompositeEgressRequest) -> EgressInfo:
        """
        Start a room composite egress.

        Args:
            request: Room composite request with exactly one output

        Returns:
            EgressInfo of the new job in ``EGRESS_STARTING``
        """
        plan = self._validate("room_composite", validation.validate_room_composite,
                              request, self.settings.default_base_url)
        return self._start(plan, request)

    async def start_track_composite_egress(self, request: TrackCompositeEgressRequest) -> EgressInfo:
        """
        Start a track composite egress.

        Args:
            request: Track composite request with at least one track id and exactly one output

        Returns:
            EgressInfo of the new job in ``EGRESS_STARTING``
        """
        plan = self._validate("track_composite", validation.validate_track_composite, request)
        return self._start(plan, request)

    async def start_track_egress(self, request: TrackEgressRequest) -> EgressInfo:
        """
        Start a single track egress without transcoding.

        Args:
            request: Track request with a direct file output or websocket URL

        Returns:
            EgressInfo of the new job in ``EGRESS_STARTING``
        """
        plan = self._validate("track", validation.validate_track, request)
        return self._start(plan, request)

    def _validate(self, request_type: str, validator, *args) -> EgressPlan:
        try:
            return validator(*args)
        except EgressError as e:
            self.metrics_collector.increment_counter(
                EGRESS_ERRORS,
                labels={"type": request_type, "error": "invalid_request"}
            )
            self.warning_with_context(f"Rejected {request_type} egress request: {e.message}")
            raise

    def _start(self, plan: EgressPlan, request) -> EgressInfo:
        if self._closed:
            raise InvalidStateError("egress service is shutting down")

        with timer(START_DURATION, labels={"type": plan.request_field}):
            limit = self.settings.max_active_egress
            if limit and self.active_count() >= limit:
                self.metrics_collector.increment_counter(
                    EGRESS_ERRORS,
                    labels={"type": plan.request_field, "error": "capacity"}
                )
                raise CapacityError(f"maximum of {limit} active egress reached")

            egress_id = self._id_factory()
            info = EgressInfo(
                egress_id=egress_id,
                room_name=plan.room_name,
                status=EgressStatus.EGRESS_STARTING,
            )
            getattr(info, plan.request_field).CopyFrom(request)

            job = EgressJob(info=info, source=plan.source, output=plan.output, encoding=plan.encoding)
            writer = self.registry.reserve(job)

            adapter = build_adapter(
                plan.output.kind,
                self.storage,
                self.connectors,
                self.retry_config,
                Path(self.settings.output_directory) / "staging",
                self.settings.segment_duration,
            )
            machine = EgressStateMachine(job, writer, self.pipeline, adapter)
            self._machines[egress_id] = machine
            task = machine.start()
            task.add_done_callback(lambda t: self._on_job_done(egress_id, t))

        self.metrics_collector.increment_counter(EGRESS_STARTED, labels={"type": plan.request_field})
        self._update_active_gauge()

        self.info_with_context(
            f"Started {plan.request_field} egress {egress_id} for room {plan.room_name}",
            correlation_id=egress_id,
            room_name=plan.room_name,
            output=plan.output.kind.value,
        )
        return self.registry.get(egress_id)

    def _on_job_done(self, egress_id: str, task: asyncio.Task) -> None:
        self._machines.pop(egress_id, None)
        self._update_active_gauge()
        if not task.cancelled() and task.exception() is not None:
            self.error_with_context(
                f"Egress task ended with error: {task.exception()}",
                correlation_id=egress_id,
            )

    # Update Methods

    async def update_layout(self, request: UpdateLayoutRequest) -> EgressInfo:
        """
        Change the layout of a running room composite egress.

        Raises:
            NotFoundError: If the egress is unknown
            InvalidStateError: If the egress already ended
        """
        validation.validate_update_layout(request)
        machine = self._running_machine(request.egress_id, "update layout")
        return await machine.update_layout(request.layout)

    async def update_stream(self, request: UpdateStreamRequest) -> EgressInfo:
        """
        Add or remove stream URLs of a running stream egress.

        Raises:
            NotFoundError: If the egress is unknown
            InvalidStateError: If the egress already ended
        """
        validation.validate_update_stream(request)
        machine = self._running_machine(request.egress_id, "update stream")
        info = await machine.update_stream(list(request.add_output_urls), list(request.remove_output_urls))
        self.info_with_context(
            "Updated stream outputs",
            correlation_id=request.egress_id,
            added=[redact_url(url) for url in request.add_output_urls],
            removed=[redact_url(url) for url in request.remove_output_urls],
        )
        return info

    def _running_machine(self, egress_id: str, operation: str) -> EgressStateMachine:
        machine = self._machines.get(egress_id)
        if machine is not None:
            return machine
        # Raises NotFoundError for unknown ids
        info = self.registry.get(egress_id)
        raise InvalidStateError(f"cannot {operation} while {status_name(info.status)}", egress_id)

    # List and Stop

    async def list_egress(self, request: Optional[ListEgressRequest] = None) -> ListEgressResponse:
        """
        List egress jobs in creation order.

        Args:
            request: Optional filters (room name, egress id, active only)

        Returns:
            ListEgressResponse with matching descriptors
        """
        request = request or ListEgressRequest()
        items = self.registry.list(
            room_name=request.room_name,
            egress_id=request.egress_id,
            active=request.active,
        )
        return ListEgressResponse(items=items)

    async def stop_egress(self, request: StopEgressRequest) -> EgressInfo:
        """
        Stop an egress. Stopping an ending or finished egress is a no-op.

        Raises:
            NotFoundError: If the egress is unknown
        """
        validation.validate_stop(request)
        machine = self._machines.get(request.egress_id)
        if machine is None:
            return self.registry.get(request.egress_id)

        info = await machine.request_stop()
        self.info_with_context(
            f"Stop requested, egress is {status_name(info.status)}",
            correlation_id=request.egress_id,
        )
        return info

    async def wait_for_egress(self, egress_id: str, timeout: Optional[float] = None) -> EgressInfo:
        """
        Wait until an egress reaches a terminal status.

        Args:
            egress_id: Egress to wait for
            timeout: Seconds to wait at most

        Returns:
            EgressInfo snapshot, terminal unless the timeout expired
        """
        machine = self._machines.get(egress_id)
        if machine is not None and machine.task is not None:
            await asyncio.wait({machine.task}, timeout=timeout)
        return self.registry.get(egress_id)

    def add_update_listener(self, listener: UpdateListener) -> None:
        """Receive an ``EgressInfo`` snapshot whenever a descriptor changes."""
        self.registry.add_listener(listener)

    # Housekeeping

    def active_count(self) -> int:
        return sum(1 for machine in self._machines.values() if not is_terminal(machine.status))

    def _update_active_gauge(self) -> None:
        if self.settings.enable_metrics:
            self.metrics_collector.set_gauge(EGRESS_ACTIVE, self.active_count())

    def restore(self) -> int:
        """
        Reload descriptors persisted by a previous process.

        Returns:
            Number of restored descriptors
        """
        return self.registry.restore()

    def cleanup_completed_egress(self, max_age_seconds: Optional[float] = None) -> int:
        """
        Forget finished egress descriptors.

        Args:
            max_age_seconds: Only those that ended longer ago than this

        Returns:
            Number of removed descriptors
        """
        older_than = None
        if max_age_seconds is not None:
            older_than = time.time_ns() - int(max_age_seconds * 1_000_000_000)
        return self.registry.cleanup_terminal(older_than)

    def get_health_status(self) -> Dict[str, Any]:
        """
        Get health status of the egress service.

        Returns:
            Health status information
        """
        counts = self.registry.count_by_status()
        return {
            "service": "egress",
            "status": "stopping" if self._closed else "healthy",
            "active_egress": self.active_count(),
            "max_active_egress": self.settings.max_active_egress,
            "egress_by_status": counts,
            "total_tracked": sum(counts.values()),
            "persistence": self._store is not None,
            "stream_schemes": sorted(self.connectors),
        }

    async def close(self) -> None:
        """
        Shut down: abort running jobs and release connectors.

        ``ACTIVE`` and ``ENDING`` jobs end ``EGRESS_ABORTED``; jobs still
        starting end ``EGRESS_FAILED``.
        """
        if self._closed:
            return
        self._closed = True

        machines = list(self._machines.values())
        tasks: List[asyncio.Task] = [m.task for m in machines if m.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            self._logger.info(f"Aborted {len(tasks)} running egress jobs")

        for machine in machines:
            machine.fail_if_never_ran()

        for connector in set(self.connectors.values()):
            try:
                await connector.close()
            except Exception as e:
                self._logger.error(f"Error closing stream connector: {e}")

        # Queued descriptor writes land before the store goes away
        await asyncio.to_thread(self.registry.close)
        if self._store is not None:
            self._store.close()

        self._logger.info("Egress Service closed")
