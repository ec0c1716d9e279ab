"""Segmented (HLS) file output with playlist bookkeeping."""

import logging
import math
import posixpath
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import aiofiles.os
from livekit.api import SegmentedFileSuffix, SegmentsInfo

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
from egress_service.outputs.files import render_template
from egress_service.outputs.storage import ObjectStore, StorageResolver, content_type_for, discard_staged


logger = logging.getLogger(__name__)

NS_PER_SECOND = 1_000_000_000

# Segments kept in the live (sliding window) playlist
LIVE_WINDOW = 5


@dataclass
class Segment:
    index: int
    name: str
    duration: int
    size: int


def render_playlist(segments: List[Segment], target_duration: int, ended: bool) -> str:
    """
    Build an HLS media playlist.

    Args:
        segments: Segments in playback order
        target_duration: Segment duration in whole seconds
        ended: Whether to close the playlist with ``#EXT-X-ENDLIST``

    Returns:
        str: m3u8 text
    """
    longest = max((s.duration for s in segments), default=0) / NS_PER_SECOND
    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:3",
        f"#EXT-X-TARGETDURATION:{max(target_duration, math.ceil(longest))}",
        f"#EXT-X-MEDIA-SEQUENCE:{segments[0].index if segments else 0}",
    ]
    for segment in segments:
        lines.append(f"#EXTINF:{segment.duration / NS_PER_SECOND:.3f},")
        lines.append(posixpath.basename(segment.name))
    if ended:
        lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines) + "\n"


@dataclass
class SegmentsHandle:
    prefix: str
    playlist_key: str
    live_playlist_key: Optional[str]
    store: ObjectStore
    local_dir: Path
    segment_duration: int
    timestamp_suffix: bool
    log: Any
    # Local copies live in the staging directory until uploaded
    staged: bool = False
    started_at: int = field(default_factory=time.time_ns)
    next_index: int = 0
    segments: List[Segment] = field(default_factory=list)
    buffer: bytearray = field(default_factory=bytearray)
    buffer_duration: int = 0
    playlist_location: str = ""
    live_playlist_location: str = ""

    @property
    def size(self) -> int:
        return sum(s.size for s in self.segments)

    @property
    def duration(self) -> int:
        return sum(s.duration for s in self.segments)


class SegmentsOutputAdapter(OutputAdapter[SegmentsHandle]):
    """Cuts the stream into fixed-duration segments and maintains the playlists."""

    kind = OutputKind.SEGMENTS

    def __init__(self, storage: StorageResolver, retry_config: RetryConfig, staging_directory: Path,
                 default_segment_duration: int = 6):
        self.storage = storage
        self.retry_config = retry_config
        self.staging_directory = Path(staging_directory)
        self.default_segment_duration = default_segment_duration

    async def open(self, spec: OutputSpec, context: OutputContext) -> SegmentsHandle:
        config = spec.config
        store = self.storage.resolve(config)

        prefix = render_template(config.filename_prefix or "{room_name}-{time}", context)
        directory = posixpath.dirname(prefix)

        playlist_name = render_template(config.playlist_name, context) if config.playlist_name else ""
        if not playlist_name:
            playlist_name = posixpath.basename(prefix) + ".m3u8"
        playlist_key = posixpath.join(directory, playlist_name) if "/" not in playlist_name else playlist_name

        live_playlist_key = None
        if config.live_playlist_name:
            live_name = render_template(config.live_playlist_name, context)
            live_playlist_key = posixpath.join(directory, live_name) if "/" not in live_name else live_name

        local_playlist = store.local_path_for(playlist_key)
        # Segment and live playlist keys must land under the same root
        for key in filter(None, (live_playlist_key, self._segment_name_for(prefix, 0, False))):
            store.local_path_for(key)
        staged = local_playlist is None
        local_dir = self.staging_directory / context.egress_id if staged else local_playlist.parent
        try:
            if not staged:
                await aiofiles.os.makedirs(local_dir, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"segment directory {local_dir} is not writable: {e}")

        log = get_logger_with_correlation(__name__, context.egress_id)
        log.info(f"Opened segmented output {playlist_key}", extra={"prefix": prefix})

        return SegmentsHandle(
            prefix=prefix,
            playlist_key=playlist_key,
            live_playlist_key=live_playlist_key,
            store=store,
            local_dir=local_dir,
            segment_duration=(config.segment_duration or self.default_segment_duration) * NS_PER_SECOND,
            timestamp_suffix=config.filename_suffix == SegmentedFileSuffix.TIMESTAMP,
            log=log,
            staged=staged,
        )

    async def write(self, handle: SegmentsHandle, chunk) -> None:
        handle.buffer.extend(chunk.data)
        handle.buffer_duration += chunk.duration
        if handle.buffer_duration >= handle.segment_duration:
            await self._flush_segment(handle)

    async def finalize(self, handle: SegmentsHandle) -> SegmentsInfo:
        if handle.buffer:
            await self._flush_segment(handle)

        target = handle.segment_duration // NS_PER_SECOND
        handle.playlist_location = await self._upload_text(
            handle, handle.playlist_key, render_playlist(handle.segments, target, ended=True)
        )
        if handle.live_playlist_key:
            handle.live_playlist_location = await self._upload_text(
                handle, handle.live_playlist_key,
                render_playlist(handle.segments[-LIVE_WINDOW:], target, ended=True)
            )

        handle.log.info(
            f"Segmented output {handle.playlist_key} finalized",
            extra={"segment_count": len(handle.segments), "size": handle.size}
        )
        return SegmentsInfo(
            playlist_name=handle.playlist_key,
            live_playlist_name=handle.live_playlist_key or "",
            duration=handle.duration,
            size=handle.size,
            playlist_location=handle.playlist_location,
            live_playlist_location=handle.live_playlist_location,
            segment_count=len(handle.segments),
            started_at=handle.started_at,
            ended_at=time.time_ns(),
        )

    async def abort(self, handle: SegmentsHandle) -> None:
        handle.buffer.clear()
        handle.buffer_duration = 0

    def describe(self, handle: SegmentsHandle) -> Dict[str, Any]:
        return {"kind": self.kind.value, "playlist": handle.playlist_key, "segments": len(handle.segments)}

    def _segment_name(self, handle: SegmentsHandle, index: int) -> str:
        return self._segment_name_for(handle.prefix, index, handle.timestamp_suffix)

    @staticmethod
    def _segment_name_for(prefix: str, index: int, timestamp_suffix: bool) -> str:
        if timestamp_suffix:
            stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")[:-3]
            return f"{prefix}_{stamp}.ts"
        return f"{prefix}_{index:05d}.ts"

    async def _flush_segment(self, handle: SegmentsHandle) -> None:
        # Name is fixed before the first upload attempt
        index = handle.next_index
        handle.next_index += 1
        segment = Segment(
            index=index,
            name=self._segment_name(handle, index),
            duration=handle.buffer_duration,
            size=len(handle.buffer),
        )
        data = bytes(handle.buffer)
        handle.buffer.clear()
        handle.buffer_duration = 0

        local_path = self._local_path(handle, segment.name)
        await self._upload_local(handle, local_path, segment.name, data, f"segment {segment.name}")
        handle.segments.append(segment)

        if handle.live_playlist_key:
            target = handle.segment_duration // NS_PER_SECOND
            handle.live_playlist_location = await self._upload_text(
                handle, handle.live_playlist_key,
                render_playlist(handle.segments[-LIVE_WINDOW:], target, ended=False)
            )

    async def _upload_text(self, handle: SegmentsHandle, key: str, text: str) -> str:
        local_path = self._local_path(handle, key)
        return await self._upload_local(handle, local_path, key, text.encode("utf-8"), f"playlist {key}")

    async def _upload_local(self, handle: SegmentsHandle, local_path: Path, key: str, data: bytes,
                            description: str) -> str:
        await self._write_local(local_path, data)
        try:
            return await deliver_with_retry(
                lambda: handle.store.upload(local_path, key, content_type_for(key)),
                self.retry_config,
                description,
                handle.log,
            )
        finally:
            if handle.staged:
                await discard_staged(local_path, handle.log)

    @staticmethod
    def _local_path(handle: SegmentsHandle, key: str) -> Path:
        return handle.store.local_path_for(key) or handle.local_dir / posixpath.basename(key)

    @staticmethod
    async def _write_local(path: Path, data: bytes) -> None:
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            async with aiofiles.open(path, "wb") as fp:
                await fp.write(data)
        except OSError as e:
            raise FatalDeliveryError(f"write to {path} failed: {e}")
