"""Output adapters: files, HLS segments and live streams."""

from pathlib import Path
from typing import Dict

from egress_service.outputs.base import (
    OutputAdapter,
    OutputContext,
    OutputKind,
    OutputSpec,
    RetryConfig,
    deliver_with_retry,
)
from egress_service.outputs.files import FileOutputAdapter
from egress_service.outputs.segments import SegmentsOutputAdapter
from egress_service.outputs.storage import LocalObjectStore, ObjectStore, StorageResolver
from egress_service.outputs.streams import (
    EndpointConnector,
    EndpointWriter,
    StreamOutputAdapter,
    WebSocketConnector,
)


def build_adapter(
    kind: OutputKind,
    storage: StorageResolver,
    connectors: Dict[str, EndpointConnector],
    retry_config: RetryConfig,
    staging_directory: Path,
    segment_duration: int = 6,
) -> OutputAdapter:
    """Select the adapter for a resolved output kind."""
    if kind in (OutputKind.FILE, OutputKind.DIRECT_FILE):
        return FileOutputAdapter(kind, storage, retry_config, staging_directory)
    if kind == OutputKind.SEGMENTS:
        return SegmentsOutputAdapter(storage, retry_config, staging_directory, segment_duration)
    return StreamOutputAdapter(kind, connectors, retry_config)


__all__ = [
    "EndpointConnector",
    "EndpointWriter",
    "FileOutputAdapter",
    "LocalObjectStore",
    "ObjectStore",
    "OutputAdapter",
    "OutputContext",
    "OutputKind",
    "OutputSpec",
    "RetryConfig",
    "SegmentsOutputAdapter",
    "StorageResolver",
    "StreamOutputAdapter",
    "WebSocketConnector",
    "build_adapter",
    "deliver_with_retry",
]
