"""Tests for the temp artifact store."""

import asyncio
import io
import os
import re
import time
from pathlib import Path

import pytest

from audio_transcriber.storage import temp_store as temp_store_module
from audio_transcriber.storage.temp_store import CHUNK_SIZE, TempArtifactStore
from audio_transcriber.utils.errors import FILE_TOO_LARGE, UploadValidationError


class FakeUpload:
    """Async reader over in-memory bytes that records chunk sizes requested."""

    def __init__(self, data: bytes) -> None:
        self._buffer = io.BytesIO(data)
        self.requested: list[int] = []

    async def read(self, size: int = -1) -> bytes:
        self.requested.append(size)
        return self._buffer.read(size)


class ExplodingUpload:
    def __init__(self) -> None:
        self.calls = 0

    async def read(self, size: int = -1) -> bytes:
        self.calls += 1
        if self.calls > 1:
            raise ConnectionResetError("client went away")
        return b"x" * 10


@pytest.fixture
def store(tmp_path: Path) -> TempArtifactStore:
    return TempArtifactStore(tmp_path / "temp", max_age_seconds=60)


class TestAllocate:
    """Tests for generated artifact names."""

    def test_name_format(self, store: TempArtifactStore) -> None:
        artifact = store.allocate(".WAV", owner="job-1")

        assert re.fullmatch(r"audio-\d+-[0-9a-f]{32}\.wav", artifact.path.name)
        assert artifact.path.parent == store.directory
        assert artifact.owner == "job-1"
        assert store.directory.is_dir()

    def test_names_are_unique(self, store: TempArtifactStore) -> None:
        names = {store.allocate(".mp3").path.name for _ in range(100)}
        assert len(names) == 100


class TestWriteUpload:
    """Tests for streaming uploads to disk."""

    @pytest.mark.asyncio
    async def test_streams_in_chunks(self, store: TempArtifactStore) -> None:
        data = os.urandom(CHUNK_SIZE * 2 + 123)
        upload = FakeUpload(data)

        artifact = await store.write_upload(upload, ".mp3", max_bytes=10 * CHUNK_SIZE)

        assert artifact.path.read_bytes() == data
        assert artifact.size_bytes == len(data)
        assert set(upload.requested) == {CHUNK_SIZE}

    @pytest.mark.asyncio
    async def test_too_large_removes_partial_file(self, store: TempArtifactStore) -> None:
        upload = FakeUpload(b"a" * 2048)

        with pytest.raises(UploadValidationError) as exc_info:
            await store.write_upload(upload, ".wav", max_bytes=1024, owner="job-9")

        assert exc_info.value.code == FILE_TOO_LARGE
        assert exc_info.value.status_code == 413
        assert exc_info.value.job_id == "job-9"
        assert list(store.directory.iterdir()) == []

    @pytest.mark.asyncio
    async def test_exactly_max_bytes_is_accepted(self, store: TempArtifactStore) -> None:
        artifact = await store.write_upload(FakeUpload(b"b" * 1024), ".wav", max_bytes=1024)
        assert artifact.size_bytes == 1024

    @pytest.mark.asyncio
    async def test_read_failure_removes_partial_file(self, store: TempArtifactStore) -> None:
        with pytest.raises(ConnectionResetError):
            await store.write_upload(ExplodingUpload(), ".wav", max_bytes=1024)

        assert list(store.directory.iterdir()) == []

    @pytest.mark.asyncio
    async def test_disk_io_runs_in_worker_threads(
        self, store: TempArtifactStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        calls: list[str] = []
        real_to_thread = asyncio.to_thread

        async def recording_to_thread(func, /, *args, **kwargs):
            calls.append(getattr(func, "__name__", repr(func)))
            return await real_to_thread(func, *args, **kwargs)

        monkeypatch.setattr(temp_store_module.asyncio, "to_thread", recording_to_thread)
        artifact = await store.write_upload(
            FakeUpload(b"c" * (CHUNK_SIZE + 10)), ".wav", max_bytes=4 * CHUNK_SIZE
        )

        assert artifact.path.read_bytes() == b"c" * (CHUNK_SIZE + 10)
        assert calls == ["open", "write", "write", "close"]


class TestRemoveAndSweep:
    """Tests for eager removal, age sweep and drain."""

    def test_remove_is_idempotent(self, store: TempArtifactStore) -> None:
        artifact = store.allocate(".wav")
        artifact.path.write_bytes(b"data")

        assert store.remove(artifact) is True
        assert not artifact.path.exists()
        assert artifact.removed is True
        assert artifact.exists is False
        assert store.remove(artifact) is True

    def test_remove_missing_file_is_ok(self, store: TempArtifactStore) -> None:
        artifact = store.allocate(".wav")
        assert store.remove(artifact) is True

    def test_track_records_size(self, store: TempArtifactStore) -> None:
        store.ensure_directory()
        path = store.directory / "converted-abc-x.mp3"
        path.write_bytes(b"12345")

        artifact = store.track(path, owner="job-1")
        assert artifact.size_bytes == 5
        assert artifact.extension == ".mp3"

    def test_sweep_removes_only_old_files(self, store: TempArtifactStore) -> None:
        store.ensure_directory()
        old = store.directory / "old.wav"
        fresh = store.directory / "fresh.wav"
        old.write_bytes(b"o")
        fresh.write_bytes(b"f")
        past = time.time() - 120
        os.utime(old, (past, past))

        assert store.sweep() == 1
        assert not old.exists()
        assert fresh.exists()

    def test_sweep_without_directory(self, tmp_path: Path) -> None:
        assert TempArtifactStore(tmp_path / "missing").sweep() == 0

    def test_drain_removes_everything(self, store: TempArtifactStore) -> None:
        store.ensure_directory()
        for name in ("a.wav", "b.mp3", "c.flac"):
            (store.directory / name).write_bytes(b"x")

        assert store.drain() == 3
        assert list(store.directory.iterdir()) == []
