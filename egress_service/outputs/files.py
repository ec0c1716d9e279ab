"""Single file outputs: encoded composite files and direct track files."""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
import aiofiles.os
from livekit.api import EncodedFileType, FileInfo

from egress_service.errors import ConfigurationError, FatalDeliveryError
from egress_service.logging_config import get_logger_with_correlation
from egress_service.outputs.base import (
    OutputAdapter,
    OutputContext,
    OutputKind,
    OutputSpec,
    RetryConfig,
    deliver_with_retry,
)
from egress_service.outputs.storage import ObjectStore, StorageResolver, content_type_for, discard_staged


logger = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%dT%H%M%S"


def render_template(template: str, context: OutputContext, now: Optional[datetime] = None) -> str:
    """
    Expand filename placeholders.

    Supported: ``{room_name}``, ``{room_id}``, ``{track_id}``, ``{time}``
    (local time) and ``{utc}`` (UTC time).
    """
    now = now or datetime.now(timezone.utc)
    values = {
        "{room_name}": context.room_name,
        "{room_id}": context.room_id,
        "{track_id}": context.track_id,
        "{time}": now.astimezone().strftime(TIME_FORMAT),
        "{utc}": now.astimezone(timezone.utc).strftime(TIME_FORMAT),
    }
    for placeholder, value in values.items():
        template = template.replace(placeholder, value)
    return template


def file_extension(spec: OutputSpec, context: OutputContext) -> str:
    if spec.kind == OutputKind.FILE:
        if spec.config.file_type == EncodedFileType.OGG:
            return "ogg"
        if spec.config.file_type == EncodedFileType.MP4:
            return "mp4"
    if context.audio_only:
        return "ogg"
    return context.file_extension


def resolve_filepath(spec: OutputSpec, context: OutputContext) -> str:
    """Object key of a file output, with a generated name when none was given."""
    extension = file_extension(spec, context)
    if spec.kind == OutputKind.DIRECT_FILE:
        default_name = "{track_id}-{time}"
    else:
        default_name = "{room_name}-{time}"

    filepath = spec.config.filepath
    if not filepath:
        filepath = default_name
    elif filepath.endswith("/"):
        filepath = filepath + default_name

    filepath = render_template(filepath, context)
    if not Path(filepath).suffix:
        filepath = f"{filepath}.{extension}"
    return filepath


@dataclass
class FileHandle:
    key: str
    local_path: Path
    store: ObjectStore
    fp: Any
    log: Any
    # Written to the staging directory and removed after upload
    staged: bool = False
    started_at: int = field(default_factory=time.time_ns)
    size: int = 0
    duration: int = 0


class FileOutputAdapter(OutputAdapter[FileHandle]):
    """Writes the whole stream into one file, uploaded when the job ends."""

    def __init__(self, kind: OutputKind, storage: StorageResolver, retry_config: RetryConfig, staging_directory: Path):
        self.kind = kind
        self.storage = storage
        self.retry_config = retry_config
        self.staging_directory = Path(staging_directory)

    async def open(self, spec: OutputSpec, context: OutputContext) -> FileHandle:
        store = self.storage.resolve(spec.config)
        key = resolve_filepath(spec, context)

        local_path = store.local_path_for(key)
        staged = local_path is None
        if staged:
            local_path = self.staging_directory / context.egress_id / Path(key).name

        try:
            await aiofiles.os.makedirs(local_path.parent, exist_ok=True)
            fp = await aiofiles.open(local_path, "wb")
        except OSError as e:
            raise ConfigurationError(f"output path {key} is not writable: {e}")

        log = get_logger_with_correlation(__name__, context.egress_id)
        log.info(f"Opened file output {key}", extra={"local_path": str(local_path)})
        return FileHandle(key=key, local_path=local_path, store=store, fp=fp, log=log, staged=staged)

    async def write(self, handle: FileHandle, chunk) -> None:
        try:
            await handle.fp.write(chunk.data)
        except OSError as e:
            raise FatalDeliveryError(f"write to {handle.key} failed: {e}")
        handle.size += len(chunk.data)
        handle.duration += chunk.duration

    async def finalize(self, handle: FileHandle) -> FileInfo:
        try:
            await self._close(handle)
        except OSError as e:
            raise FatalDeliveryError(f"flush of {handle.key} failed: {e}")

        location = await deliver_with_retry(
            lambda: handle.store.upload(handle.local_path, handle.key, content_type_for(handle.key)),
            self.retry_config,
            f"upload of {handle.key}",
            handle.log,
        )
        if handle.staged:
            await discard_staged(handle.local_path, handle.log)

        ended_at = time.time_ns()
        handle.log.info(f"File output {handle.key} finalized", extra={"size": handle.size, "location": location})
        return FileInfo(
            filename=handle.key,
            started_at=handle.started_at,
            ended_at=ended_at,
            duration=handle.duration or ended_at - handle.started_at,
            size=handle.size,
            location=location,
        )

    async def abort(self, handle: FileHandle) -> None:
        try:
            await self._close(handle)
        except OSError as e:
            handle.log.warning(f"Error closing aborted output {handle.key}: {e}")
        if handle.staged:
            await discard_staged(handle.local_path, handle.log)

    def describe(self, handle: FileHandle) -> Dict[str, Any]:
        return {"kind": self.kind.value, "filename": handle.key, "size": handle.size}

    @staticmethod
    async def _close(handle: FileHandle) -> None:
        if handle.fp is not None:
            fp, handle.fp = handle.fp, None
            await fp.close()
