"""Tests for single file outputs."""

from datetime import datetime, timezone

import pytest
from livekit.api import DirectFileOutput, EncodedFileOutput, EncodedFileType, S3Upload

from egress_service.errors import ConfigurationError, FatalDeliveryError
from egress_service.outputs.base import OutputContext, OutputKind, OutputSpec, RetryConfig
from egress_service.outputs.files import FileOutputAdapter, render_template, resolve_filepath
from egress_service.outputs.storage import StorageResolver
from egress_service.pipeline import MediaChunk

from fakes import SECOND, FakeObjectStore


CONTEXT = OutputContext(egress_id="EG_file", room_name="room-a", room_id="RM_1", track_id="TR_audio")


def file_spec(filepath: str = "", **kwargs) -> OutputSpec:
    return OutputSpec(kind=OutputKind.FILE, config=EncodedFileOutput(filepath=filepath, **kwargs))


@pytest.fixture
def storage(tmp_path):
    return StorageResolver(tmp_path / "out")


@pytest.fixture
def adapter(storage, tmp_path):
    retry = RetryConfig(max_attempts=3, base_delay=0, jitter=False)
    return FileOutputAdapter(OutputKind.FILE, storage, retry, tmp_path / "staging")


class TestFilenames:
    """Test filename templating."""

    def test_render_template(self):
        now = datetime(2024, 5, 1, 12, 30, 15, tzinfo=timezone.utc)

        rendered = render_template("{room_name}/{room_id}/{track_id}-{utc}", CONTEXT, now=now)

        assert rendered == "room-a/RM_1/TR_audio-2024-05-01T123015"

    def test_default_name(self):
        path = resolve_filepath(file_spec(), CONTEXT)

        assert path.startswith("room-a-")
        assert path.endswith(".mp4")

    def test_direct_file_default_uses_track(self):
        spec = OutputSpec(kind=OutputKind.DIRECT_FILE, config=DirectFileOutput())

        assert resolve_filepath(spec, CONTEXT).startswith("TR_audio-")

    def test_directory_path_gets_default_name(self):
        path = resolve_filepath(file_spec("recordings/"), CONTEXT)

        assert path.startswith("recordings/room-a-")
        assert path.endswith(".mp4")

    def test_extension_from_file_type_and_audio_only(self):
        assert resolve_filepath(file_spec("a", file_type=EncodedFileType.OGG), CONTEXT) == "a.ogg"

        audio_only = OutputContext(egress_id="EG_file", room_name="room-a", audio_only=True)
        assert resolve_filepath(file_spec("a"), audio_only) == "a.ogg"

    def test_explicit_extension_kept(self):
        assert resolve_filepath(file_spec("out/{room_name}.webm"), CONTEXT) == "out/room-a.webm"


class TestFileOutputAdapter:

    @pytest.mark.asyncio
    async def test_local_file(self, adapter, tmp_path):
        """Test a local file is written in place and described by its FileInfo."""
        handle = await adapter.open(file_spec("rec/{room_name}.mp4"), CONTEXT)
        for _ in range(3):
            await adapter.write(handle, MediaChunk(data=b"x" * 10, duration=SECOND))

        info = await adapter.finalize(handle)

        target = tmp_path / "out" / "rec" / "room-a.mp4"
        assert target.read_bytes() == b"x" * 30
        assert info.filename == "rec/room-a.mp4"
        assert info.location == str(target)
        assert info.size == 30
        assert info.duration == 3 * SECOND
        assert info.ended_at >= info.started_at

    @pytest.mark.asyncio
    async def test_remote_upload_retries_transient_failures(self, adapter, storage):
        remote = FakeObjectStore("recordings", failures=2)
        storage.register("s3", lambda upload: remote)
        spec = file_spec("rec/a.mp4", s3=S3Upload(bucket="recordings"))

        handle = await adapter.open(spec, CONTEXT)
        await adapter.write(handle, MediaChunk(data=b"media", duration=SECOND))
        info = await adapter.finalize(handle)

        assert remote.attempts == ["rec/a.mp4"] * 3
        assert remote.objects["rec/a.mp4"] == b"media"
        assert remote.content_types["rec/a.mp4"] == "video/mp4"
        assert info.location == "https://recordings.example.com/rec/a.mp4"

    @pytest.mark.asyncio
    async def test_remote_upload_fatal(self, adapter, storage):
        remote = FakeObjectStore("recordings", fatal=True)
        storage.register("s3", lambda upload: remote)
        spec = file_spec("a.mp4", s3=S3Upload(bucket="recordings"))

        handle = await adapter.open(spec, CONTEXT)
        with pytest.raises(FatalDeliveryError):
            await adapter.finalize(handle)

        assert remote.attempts == ["a.mp4"]

    @pytest.mark.asyncio
    async def test_abort_closes_file(self, adapter):
        handle = await adapter.open(file_spec("a.mp4"), CONTEXT)

        await adapter.abort(handle)
        await adapter.abort(handle)

        assert handle.fp is None

    @pytest.mark.asyncio
    async def test_staged_file_removed_after_upload(self, adapter, storage, tmp_path):
        remote = FakeObjectStore("recordings")
        storage.register("s3", lambda upload: remote)
        spec = file_spec("rec/a.mp4", s3=S3Upload(bucket="recordings"))

        handle = await adapter.open(spec, CONTEXT)
        assert handle.staged
        await adapter.write(handle, MediaChunk(data=b"media", duration=SECOND))
        await adapter.finalize(handle)

        assert remote.objects["rec/a.mp4"] == b"media"
        assert not handle.local_path.exists()
        assert list((tmp_path / "staging").iterdir()) == []

    @pytest.mark.asyncio
    async def test_abort_discards_staged_file(self, adapter, storage, tmp_path):
        storage.register("s3", lambda upload: FakeObjectStore("recordings"))
        spec = file_spec("a.mp4", s3=S3Upload(bucket="recordings"))

        handle = await adapter.open(spec, CONTEXT)
        await adapter.write(handle, MediaChunk(data=b"media", duration=SECOND))
        await adapter.abort(handle)

        assert not handle.local_path.exists()
        assert list((tmp_path / "staging").iterdir()) == []

    @pytest.mark.asyncio
    async def test_local_file_kept_on_abort(self, adapter, tmp_path):
        handle = await adapter.open(file_spec("a.mp4"), CONTEXT)
        await adapter.abort(handle)

        assert not handle.staged
        assert (tmp_path / "out" / "a.mp4").exists()

    @pytest.mark.parametrize("filepath", ["/etc/egress/a.mp4", "../outside.mp4", "rec/../../outside.mp4"])
    @pytest.mark.asyncio
    async def test_paths_outside_output_directory(self, adapter, tmp_path, filepath):
        with pytest.raises(ConfigurationError):
            await adapter.open(file_spec(filepath), CONTEXT)

        assert not (tmp_path / "outside.mp4").exists()

    @pytest.mark.asyncio
    async def test_describe(self, adapter):
        handle = await adapter.open(file_spec("a.mp4"), CONTEXT)
        await adapter.write(handle, MediaChunk(data=b"media", duration=SECOND))

        assert adapter.describe(handle) == {"kind": OutputKind.FILE.value, "filename": "a.mp4", "size": 5}
        await adapter.abort(handle)
