"""Encoding presets and resolution of per-request encoding options."""

import logging
from dataclasses import dataclass, replace
from typing import Dict, Optional, Union

from livekit.api import (
    EncodingOptions,
    EncodingOptionsPreset,
    RoomCompositeEgressRequest,
    TrackCompositeEgressRequest,
)
from livekit.protocol.models import AudioCodec, VideoCodec

from egress_service.errors import ValidationError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncodingSettings:
    """Fully resolved encoding parameters handed to the media pipeline."""
    width: int = 1920
    height: int = 1080
    depth: int = 24
    framerate: int = 30
    audio_codec: str = "OPUS"
    audio_bitrate: int = 128
    audio_frequency: int = 44100
    video_codec: str = "H264_MAIN"
    video_bitrate: int = 4500
    key_frame_interval: float = 0.0

    def to_dict(self) -> Dict[str, Union[int, float, str]]:
        return {
            "width": self.width,
            "height": self.height,
            "depth": self.depth,
            "framerate": self.framerate,
            "audio_codec": self.audio_codec,
            "audio_bitrate": self.audio_bitrate,
            "audio_frequency": self.audio_frequency,
            "video_codec": self.video_codec,
            "video_bitrate": self.video_bitrate,
            "key_frame_interval": self.key_frame_interval,
        }


ADVANCED_DEFAULTS = EncodingSettings()

DEFAULT_PRESET = EncodingOptionsPreset.H264_720P_30

PRESETS: Dict[int, EncodingSettings] = {
    EncodingOptionsPreset.H264_720P_30: EncodingSettings(width=1280, height=720, framerate=30, video_bitrate=3000),
    EncodingOptionsPreset.H264_720P_60: EncodingSettings(width=1280, height=720, framerate=60, video_bitrate=4500),
    EncodingOptionsPreset.H264_1080P_30: EncodingSettings(width=1920, height=1080, framerate=30, video_bitrate=4500),
    EncodingOptionsPreset.H264_1080P_60: EncodingSettings(width=1920, height=1080, framerate=60, video_bitrate=6000),
    EncodingOptionsPreset.PORTRAIT_H264_720P_30: EncodingSettings(width=720, height=1280, framerate=30, video_bitrate=3000),
    EncodingOptionsPreset.PORTRAIT_H264_720P_60: EncodingSettings(width=720, height=1280, framerate=60, video_bitrate=4500),
    EncodingOptionsPreset.PORTRAIT_H264_1080P_30: EncodingSettings(width=1080, height=1920, framerate=30, video_bitrate=4500),
    EncodingOptionsPreset.PORTRAIT_H264_1080P_60: EncodingSettings(width=1080, height=1920, framerate=60, video_bitrate=6000),
}


def preset_settings(preset: int) -> EncodingSettings:
    """
    Look up the encoding settings of a named preset.

    Args:
        preset: ``EncodingOptionsPreset`` value

    Returns:
        EncodingSettings for the preset

    Raises:
        ValidationError: If the preset is not known
    """
    try:
        return PRESETS[preset]
    except KeyError:
        raise ValidationError(f"unknown encoding preset: {preset}")


def advanced_settings(options: EncodingOptions) -> EncodingSettings:
    """
    Resolve explicit encoding options, filling zero fields with defaults.

    Args:
        options: Advanced ``EncodingOptions`` from the request

    Returns:
        EncodingSettings with every field populated

    Raises:
        ValidationError: If any numeric field is negative
    """
    numeric = {
        "width": options.width,
        "height": options.height,
        "depth": options.depth,
        "framerate": options.framerate,
        "audio_bitrate": options.audio_bitrate,
        "audio_frequency": options.audio_frequency,
        "video_bitrate": options.video_bitrate,
        "key_frame_interval": options.key_frame_interval,
    }
    for name, value in numeric.items():
        if value < 0:
            raise ValidationError(f"encoding option {name} must not be negative")

    overrides = {name: value for name, value in numeric.items() if value}

    # 0 is DEFAULT_AC / DEFAULT_VC
    if options.audio_codec:
        overrides["audio_codec"] = AudioCodec.Name(options.audio_codec)
    if options.video_codec:
        overrides["video_codec"] = VideoCodec.Name(options.video_codec)

    return replace(ADVANCED_DEFAULTS, **overrides)


def resolve_encoding(
    request: Union[RoomCompositeEgressRequest, TrackCompositeEgressRequest]
) -> EncodingSettings:
    """Resolve the ``options`` oneof of a composite request.

    No options means the 720p30 preset.
    """
    which = request.WhichOneof("options")
    if which == "advanced":
        return advanced_settings(request.advanced)
    if which == "preset":
        return preset_settings(request.preset)
    return PRESETS[DEFAULT_PRESET]


def describe(settings: Optional[EncodingSettings]) -> str:
    """Short human readable form used in log lines."""
    if settings is None:
        return "passthrough"
    return f"{settings.width}x{settings.height}@{settings.framerate}fps {settings.video_codec}/{settings.audio_codec}"
