"""
Interfaces of the capture/encode pipeline the egress engine drives.

The engine never touches media itself. A ``MediaPipeline`` attaches to a
room or track and returns a ``MediaSession`` whose ``events()`` iterator
yields encoded ``MediaChunk``s interleaved with ``PipelineEvent``s.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional, Union

from egress_service.encoding import EncodingSettings


class SourceKind(str, Enum):
    """What the pipeline should capture."""
    ROOM_COMPOSITE = "room_composite"
    TRACK_COMPOSITE = "track_composite"
    TRACK = "track"


@dataclass(frozen=True)
class SourceSelector:
    """Identifies the media source of an egress job."""
    kind: SourceKind
    room_name: str
    layout: str = ""
    audio_only: bool = False
    video_only: bool = False
    base_url: str = ""
    audio_track_id: str = ""
    video_track_id: str = ""
    track_id: str = ""

    @property
    def primary_track_id(self) -> str:
        """Track id used for filename templating."""
        return self.track_id or self.video_track_id or self.audio_track_id


@dataclass(frozen=True)
class MediaChunk:
    """A piece of encoded media.

    ``duration`` is the media time covered by the chunk in nanoseconds.
    """
    data: bytes
    duration: int = 0


class PipelineSignal(str, Enum):
    SOURCE_ENDED = "source_ended"
    LIMIT_REACHED = "limit_reached"
    FATAL_ERROR = "fatal_error"


@dataclass(frozen=True)
class PipelineEvent:
    signal: PipelineSignal
    error: str = ""


PipelineItem = Union[MediaChunk, PipelineEvent]


class MediaSession(ABC):
    """A running capture of one source."""

    room_id: str = ""
    file_extension: str = "mp4"

    @abstractmethod
    def events(self) -> AsyncIterator[PipelineItem]:
        """Iterate encoded chunks and lifecycle events until the source ends."""

    @abstractmethod
    async def stop(self) -> None:
        """Ask the pipeline to drain. The iterator ends once drained."""

    @abstractmethod
    async def update_layout(self, layout: str) -> None:
        """Switch the composite layout of a running room composite capture."""

    @abstractmethod
    async def close(self) -> None:
        """Release pipeline resources. Safe to call more than once."""


class MediaPipeline(ABC):
    """Factory for media sessions."""

    @abstractmethod
    async def attach(self, source: SourceSelector, encoding: Optional[EncodingSettings]) -> MediaSession:
        """
        Attach to a source.

        Args:
            source: Room or track to capture
            encoding: Transcoding parameters, ``None`` for passthrough track egress

        Returns:
            MediaSession producing media for the source

        Raises:
            SourceNotFoundError: If the room or track does not exist
        """
