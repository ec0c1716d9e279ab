"""
Request validation.

Turns a start request into an ``EgressPlan`` or raises ``ValidationError``.
Nothing here touches the registry, so a rejected request leaves no trace.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from livekit.api import (
    RoomCompositeEgressRequest,
    StopEgressRequest,
    TrackCompositeEgressRequest,
    TrackEgressRequest,
    UpdateLayoutRequest,
    UpdateStreamRequest,
)

from egress_service.encoding import EncodingSettings, resolve_encoding
from egress_service.errors import ValidationError
from egress_service.outputs.base import OutputKind, OutputSpec
from egress_service.outputs.streams import allowed_schemes, url_scheme
from egress_service.pipeline import SourceKind, SourceSelector
from egress_service.security import redact_url


COMPOSITE_OUTPUT_KINDS = {
    "file": OutputKind.FILE,
    "stream": OutputKind.STREAM,
    "segments": OutputKind.SEGMENTS,
}


@dataclass(frozen=True)
class EgressPlan:
    """Validated, defaulted form of a start request."""
    request_field: str
    room_name: str
    source: SourceSelector
    output: OutputSpec
    encoding: Optional[EncodingSettings]


def _require(value: str, name: str) -> None:
    if not value:
        raise ValidationError(f"{name} is required")


def composite_output(
    request: Union[RoomCompositeEgressRequest, TrackCompositeEgressRequest]
) -> OutputSpec:
    """
    Find the single output of a composite request.

    Both the ``output`` oneof and the repeated ``*_outputs`` lists count.

    Raises:
        ValidationError: If there is no output, more than one, or an image output
    """
    if len(request.image_outputs):
        raise ValidationError("image outputs are not supported")

    candidates: List[Tuple[str, object]] = []
    which = request.WhichOneof("output")
    if which:
        candidates.append((which, getattr(request, which)))
    candidates.extend(("file", output) for output in request.file_outputs)
    candidates.extend(("stream", output) for output in request.stream_outputs)
    candidates.extend(("segments", output) for output in request.segment_outputs)

    if not candidates:
        raise ValidationError("an output is required")
    if len(candidates) > 1:
        raise ValidationError(f"exactly one output is supported, got {len(candidates)}")

    name, config = candidates[0]
    spec = OutputSpec(kind=COMPOSITE_OUTPUT_KINDS[name], config=config)
    if spec.kind == OutputKind.STREAM:
        validate_stream_urls(spec, list(config.urls))
    return spec


def validate_stream_urls(spec: OutputSpec, urls: List[str]) -> None:
    """
    Check stream URLs against the output protocol.

    Raises:
        ValidationError: If no URL is given or a URL has the wrong scheme
    """
    if not urls:
        raise ValidationError("stream output requires at least one url")

    schemes = allowed_schemes(spec)
    for url in urls:
        if not url:
            raise ValidationError("stream url must not be empty")
        if url_scheme(url) not in schemes:
            raise ValidationError(
                f"url {redact_url(url)} does not match the stream protocol ({', '.join(schemes)})"
            )


def validate_room_composite(request: RoomCompositeEgressRequest, default_base_url: str) -> EgressPlan:
    _require(request.room_name, "room_name")
    if request.audio_only and request.video_only:
        raise ValidationError("audio_only and video_only are mutually exclusive")

    output = composite_output(request)
    encoding = resolve_encoding(request)

    source = SourceSelector(
        kind=SourceKind.ROOM_COMPOSITE,
        room_name=request.room_name,
        layout=request.layout,
        audio_only=request.audio_only,
        video_only=request.video_only,
        base_url=request.custom_base_url or default_base_url,
    )
    return EgressPlan("room_composite", request.room_name, source, output, encoding)


def validate_track_composite(request: TrackCompositeEgressRequest) -> EgressPlan:
    _require(request.room_name, "room_name")
    if not request.audio_track_id and not request.video_track_id:
        raise ValidationError("audio_track_id or video_track_id is required")

    output = composite_output(request)
    encoding = resolve_encoding(request)

    source = SourceSelector(
        kind=SourceKind.TRACK_COMPOSITE,
        room_name=request.room_name,
        audio_only=not request.video_track_id,
        video_only=not request.audio_track_id,
        audio_track_id=request.audio_track_id,
        video_track_id=request.video_track_id,
    )
    return EgressPlan("track_composite", request.room_name, source, output, encoding)


def validate_track(request: TrackEgressRequest) -> EgressPlan:
    _require(request.room_name, "room_name")
    _require(request.track_id, "track_id")

    which = request.WhichOneof("output")
    if which == "file":
        output = OutputSpec(kind=OutputKind.DIRECT_FILE, config=request.file)
    elif which == "websocket_url":
        output = OutputSpec(kind=OutputKind.WEBSOCKET, config=request.websocket_url)
        validate_stream_urls(output, [request.websocket_url])
    else:
        raise ValidationError("an output is required")

    source = SourceSelector(kind=SourceKind.TRACK, room_name=request.room_name, track_id=request.track_id)
    # Track egress is not transcoded
    return EgressPlan("track", request.room_name, source, output, None)


def validate_update_layout(request: UpdateLayoutRequest) -> None:
    _require(request.egress_id, "egress_id")
    _require(request.layout, "layout")


def validate_update_stream(request: UpdateStreamRequest) -> None:
    _require(request.egress_id, "egress_id")
    if not request.add_output_urls and not request.remove_output_urls:
        raise ValidationError("add_output_urls or remove_output_urls is required")
    if any(not url for url in list(request.add_output_urls) + list(request.remove_output_urls)):
        raise ValidationError("stream url must not be empty")


def validate_stop(request: StopEgressRequest) -> None:
    _require(request.egress_id, "egress_id")
