"""Tests for encoding presets and option resolution."""

import pytest
from livekit.api import (
    EncodingOptions,
    EncodingOptionsPreset,
    RoomCompositeEgressRequest,
    TrackCompositeEgressRequest,
)
from livekit.protocol.models import AudioCodec, VideoCodec

from egress_service.encoding import (
    ADVANCED_DEFAULTS,
    PRESETS,
    advanced_settings,
    describe,
    preset_settings,
    resolve_encoding,
)
from egress_service.errors import ValidationError


class TestPresets:

    def test_all_presets_defined(self):
        assert len(PRESETS) == 8

    def test_landscape_and_portrait(self):
        landscape = preset_settings(EncodingOptionsPreset.H264_1080P_60)
        portrait = preset_settings(EncodingOptionsPreset.PORTRAIT_H264_1080P_60)

        assert (landscape.width, landscape.height, landscape.framerate) == (1920, 1080, 60)
        assert (portrait.width, portrait.height) == (1080, 1920)
        assert landscape.video_bitrate == portrait.video_bitrate == 6000
        assert landscape.video_codec == "H264_MAIN"
        assert landscape.audio_codec == "OPUS"

    def test_unknown_preset(self):
        with pytest.raises(ValidationError):
            preset_settings(99)


class TestAdvancedOptions:

    def test_zero_fields_take_defaults(self):
        settings = advanced_settings(EncodingOptions())

        assert settings == ADVANCED_DEFAULTS
        assert (settings.width, settings.height, settings.depth, settings.framerate) == (1920, 1080, 24, 30)
        assert (settings.audio_bitrate, settings.audio_frequency, settings.video_bitrate) == (128, 44100, 4500)

    def test_explicit_fields_kept(self):
        options = EncodingOptions(
            width=640,
            height=360,
            framerate=15,
            audio_codec=AudioCodec.AAC,
            video_codec=VideoCodec.H264_HIGH,
            video_bitrate=800,
        )

        settings = advanced_settings(options)

        assert (settings.width, settings.height, settings.framerate) == (640, 360, 15)
        assert settings.audio_codec == "AAC"
        assert settings.video_codec == "H264_HIGH"
        assert settings.video_bitrate == 800
        assert settings.depth == 24

    def test_negative_values_rejected(self):
        with pytest.raises(ValidationError):
            advanced_settings(EncodingOptions(width=-1))


class TestResolveEncoding:

    def test_default_preset(self):
        settings = resolve_encoding(RoomCompositeEgressRequest(room_name="room-a"))

        assert settings == PRESETS[EncodingOptionsPreset.H264_720P_30]
        assert (settings.width, settings.height, settings.video_bitrate) == (1280, 720, 3000)

    def test_explicit_preset(self):
        request = TrackCompositeEgressRequest(room_name="room-a", preset=EncodingOptionsPreset.H264_720P_60)

        assert resolve_encoding(request).framerate == 60

    def test_advanced(self):
        request = RoomCompositeEgressRequest(room_name="room-a", advanced=EncodingOptions(width=1280, height=720))

        settings = resolve_encoding(request)
        assert (settings.width, settings.height, settings.framerate) == (1280, 720, 30)

    def test_describe(self):
        assert describe(None) == "passthrough"
        assert describe(ADVANCED_DEFAULTS) == "1920x1080@30fps H264_MAIN/OPUS"

    def test_to_dict(self):
        request = RoomCompositeEgressRequest(room_name="room-a", advanced=EncodingOptions(width=1280, height=720))

        fields = resolve_encoding(request).to_dict()

        assert (fields["width"], fields["height"], fields["framerate"]) == (1280, 720, 30)
        assert set(fields) == {
            "width", "height", "depth", "framerate", "audio_codec", "audio_bitrate",
            "audio_frequency", "video_codec", "video_bitrate", "key_frame_interval",
        }
