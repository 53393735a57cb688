"""Tests for the stream supervisor."""

import errno
import gzip
import os
import tempfile
import threading
import time
from pathlib import Path

import pytest

from logkeeper.core import appender as appender_module
from logkeeper.core import manager as manager_module
from logkeeper.core.errors import (
    InvalidConfigError,
    RotationError,
    StreamExistsError,
    UnknownStreamError,
)
from logkeeper.core.events import CompressionResult, RotationEvent, SweepResult
from logkeeper.supervisor.supervisor import LogStreamSupervisor


def rotated_files(directory: Path, stream_id: str) -> list:
    return sorted(p.name for p in directory.iterdir() if p.name.startswith(f"{stream_id}.log."))


class TestLogStreamSupervisor:
    """Test LogStreamSupervisor."""

    @pytest.fixture
    def temp_dir(self):
        """Create a temporary directory for tests."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    def supervisor(self, temp_dir):
        """Create a supervisor."""
        supervisor = LogStreamSupervisor(data_dir=temp_dir)
        yield supervisor
        supervisor.close()

    def test_rotation_compression_and_retention(self, supervisor, temp_dir):
        """Test a stream keeps two compressed rotated segments."""
        supervisor.register(
            "wiki",
            {"max_segment_size": 100, "max_segment_count": 2, "compress": True},
        )

        assert supervisor.write("wiki", b"w" * 150) == 150
        writes = [bytes([ord("a") + i]) * 101 for i in range(3)]
        for data in writes:
            supervisor.write("wiki", data)

        assert supervisor.wait_idle("wiki", timeout=30)

        directory = temp_dir / "wiki"
        assert rotated_files(directory, "wiki") == ["wiki.log.1.gz", "wiki.log.2.gz"]
        assert gzip.decompress((directory / "wiki.log.1.gz").read_bytes()) == writes[2]
        assert gzip.decompress((directory / "wiki.log.2.gz").read_bytes()) == writes[1]
        assert (directory / "wiki.log").read_bytes() == b""

        segments = supervisor.list_segments("wiki")
        assert [s.sequence for s in segments] == [1, 2]
        assert all(s.compressed for s in segments)
        assert supervisor.total_space_used("wiki") == sum(s.size for s in segments)

    def test_zero_byte_write(self, supervisor):
        """Test an empty write succeeds and uses no space."""
        supervisor.register("wiki", {"max-size": "1k", "max-file": "3"})

        assert supervisor.write("wiki", b"") == 0
        assert supervisor.total_space_used("wiki") == 0
        assert supervisor.list_segments("wiki") == []

    def test_write_below_limit_does_not_rotate(self, supervisor):
        """Test writes under the size limit stay in the active segment."""
        supervisor.register("db", {"max_segment_size": 100})

        supervisor.write("db", b"x" * 99)

        assert supervisor.list_segments("db") == []
        assert supervisor.total_space_used("db") == 99

    def test_invalid_update_keeps_prior_config(self, supervisor):
        """Test a rejected update leaves the previous configuration in effect."""
        stream = supervisor.register("db", {"max_segment_size": 100, "max_segment_count": 2})
        before = stream.config

        with pytest.raises(InvalidConfigError):
            supervisor.update_config("db", {"max_segment_size": 100, "max_segment_count": -1})

        assert stream.config == before

        supervisor.write("db", b"x" * 100)
        assert len(supervisor.list_segments("db")) == 1

    def test_update_applies_to_next_rotation(self, supervisor):
        """Test a new size limit is used from the next write."""
        supervisor.register("db", {"max_segment_size": 1000, "compress": False})
        supervisor.write("db", b"x" * 50)

        updated = supervisor.update_config("db", {"max_segment_size": 60, "compress": False})
        assert updated.max_segment_size == 60

        supervisor.write("db", b"x" * 10)
        assert len(supervisor.list_segments("db")) == 1

    def test_compression_not_retroactive(self, supervisor):
        """Test enabling compression leaves earlier rotated segments alone."""
        supervisor.register("wiki", {"max_segment_size": 10, "max_segment_count": 5, "compress": False})
        supervisor.write("wiki", b"first-segment")

        supervisor.update_config("wiki", {"max_segment_size": 10, "max_segment_count": 5, "compress": True})
        supervisor.write("wiki", b"second-segment")
        assert supervisor.wait_idle("wiki", timeout=30)

        newest, oldest = supervisor.list_segments("wiki")
        assert newest.compressed
        assert not oldest.compressed

    def test_unknown_stream(self, supervisor):
        """Test operations on unregistered streams fail."""
        with pytest.raises(UnknownStreamError):
            supervisor.write("missing", b"data")

        with pytest.raises(UnknownStreamError):
            supervisor.total_space_used("missing")

        with pytest.raises(UnknownStreamError):
            supervisor.update_config("missing", {})

        with pytest.raises(UnknownStreamError):
            supervisor.force_rotate("missing")

        with pytest.raises(UnknownStreamError):
            supervisor.deregister("missing")

    def test_duplicate_registration(self, supervisor):
        """Test a stream id can only be registered once."""
        supervisor.register("wiki")

        with pytest.raises(StreamExistsError):
            supervisor.register("wiki")

    @pytest.mark.parametrize("stream_id", ["", "a/b", "..", "."])
    def test_invalid_stream_id(self, supervisor, stream_id):
        """Test ids unusable as file names are rejected."""
        with pytest.raises(ValueError):
            supervisor.register(stream_id)

    def test_invalid_registration_config(self, supervisor):
        """Test registration validates its configuration."""
        with pytest.raises(InvalidConfigError):
            supervisor.register("wiki", {"max_segment_size": 0})

        with pytest.raises(InvalidConfigError):
            supervisor.register("wiki", {"compression": "zip"})

        assert supervisor.streams() == []

    def test_explicit_base_path(self, supervisor, temp_dir):
        """Test a stream can live outside the data directory."""
        base = temp_dir / "elsewhere"
        supervisor.register("wiki", base_path=base)
        supervisor.write("wiki", b"line\n")

        assert (base / "wiki.log").read_bytes() == b"line\n"

    def test_force_rotate_empty_stream(self, supervisor):
        """Test forcing a rotation with no data produces an empty segment."""
        supervisor.register("wiki", {"compress": False})

        event = supervisor.force_rotate("wiki")

        assert event.rotated.size == 0
        assert [s.size for s in supervisor.list_segments("wiki")] == [0]

    def test_rotation_failure_reports_bytes_written(self, supervisor, temp_dir, monkeypatch):
        """Test a failed rotation keeps the appended bytes and reports them."""
        supervisor.register("wiki", {"max_segment_size": 100, "compress": False})

        def disk_full(path):
            raise OSError(errno.ENOSPC, "No space left on device")

        monkeypatch.setattr(manager_module, "create_segment_file", disk_full)

        with pytest.raises(RotationError) as exc_info:
            supervisor.write("wiki", b"x" * 150)

        assert exc_info.value.bytes_written == 150
        assert (temp_dir / "wiki" / "wiki.log").read_bytes() == b"x" * 150
        assert supervisor.list_segments("wiki") == []

        monkeypatch.undo()

        supervisor.write("wiki", b"y")
        assert [s.size for s in supervisor.list_segments("wiki")] == [151]

    def test_deregister(self, supervisor, temp_dir):
        """Test a deregistered stream keeps its files but rejects writes."""
        supervisor.register("wiki")
        supervisor.write("wiki", b"kept\n")

        supervisor.deregister("wiki")

        assert supervisor.streams() == []
        assert (temp_dir / "wiki" / "wiki.log").read_bytes() == b"kept\n"
        with pytest.raises(UnknownStreamError):
            supervisor.write("wiki", b"more")

    def test_reregister_recovers_segments(self, supervisor):
        """Test registering an existing directory picks up its segments."""
        supervisor.register("wiki", {"max_segment_size": 10, "compress": False})
        supervisor.write("wiki", b"0123456789")
        supervisor.write("wiki", b"tail")
        supervisor.deregister("wiki")

        supervisor.register("wiki", {"max_segment_size": 10, "compress": False})

        assert [s.size for s in supervisor.list_segments("wiki")] == [10]
        assert supervisor.total_space_used("wiki") == 14

    def test_subscribers_receive_events(self, supervisor):
        """Test rotation, compression and sweep events reach subscribers."""
        received = []

        def broken(event):
            raise RuntimeError("subscriber failure")

        supervisor.subscribe(broken)
        unsubscribe = supervisor.subscribe(received.append)

        supervisor.register("wiki", {"max_segment_size": 10, "max_segment_count": 1})
        supervisor.write("wiki", b"x" * 10)
        supervisor.write("wiki", b"y" * 10)
        assert supervisor.wait_idle("wiki", timeout=30)

        kinds = {type(event) for event in received}
        assert RotationEvent in kinds
        assert CompressionResult in kinds
        assert SweepResult in kinds

        unsubscribe()
        count = len(received)
        supervisor.write("wiki", b"z" * 10)
        assert supervisor.wait_idle("wiki", timeout=30)
        assert len(received) == count

    def test_status(self, supervisor):
        """Test the status report lists every stream."""
        supervisor.register("wiki", {"max_segment_size": 10, "compress": False})
        supervisor.register("db")
        supervisor.write("wiki", b"x" * 12)

        status = supervisor.status()

        assert set(status) == {"db", "wiki"}
        assert status["wiki"]["total_space_used"] == 12
        assert [s["sequence"] for s in status["wiki"]["segments"]] == [0, 1]

    def test_context_manager_closes_streams(self, temp_dir):
        """Test leaving the context deregisters every stream."""
        with LogStreamSupervisor(data_dir=temp_dir) as supervisor:
            supervisor.register("wiki")
            supervisor.register("db")

        assert supervisor.streams() == []


class TestConcurrentWrites:
    """Test concurrent writers."""

    @pytest.fixture
    def temp_dir(self):
        """Create a temporary directory for tests."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    def supervisor(self, temp_dir):
        """Create a supervisor."""
        supervisor = LogStreamSupervisor(data_dir=temp_dir)
        yield supervisor
        supervisor.close()

    def test_concurrent_writes_one_stream(self, supervisor, temp_dir):
        """Test no bytes are lost or duplicated under concurrent writes."""
        supervisor.register(
            "wiki",
            {"max_segment_size": 100, "max_segment_count": 1000, "compress": False},
        )
        errors = []

        def writer(worker_id):
            try:
                for _ in range(50):
                    supervisor.write("wiki", f"{worker_id:02d}-record\n".encode())
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert supervisor.wait_idle("wiki", timeout=30)

        segments = supervisor.list_segments("wiki")
        assert [s.sequence for s in segments] == list(range(1, len(segments) + 1))
        assert all(s.size == 100 for s in segments)

        directory = temp_dir / "wiki"
        on_disk = sum(p.stat().st_size for p in directory.iterdir())
        assert on_disk == 8 * 50 * 10
        assert supervisor.total_space_used("wiki") == on_disk

        content = b"".join(p.read_bytes() for p in directory.iterdir())
        for worker_id in range(8):
            assert content.count(f"{worker_id:02d}-record\n".encode()) == 50

    def test_streams_are_independent(self, supervisor, temp_dir):
        """Test concurrent writes to different streams."""
        config = {"max_segment_size": 64, "max_segment_count": 2, "compress": True}
        stream_ids = ["wiki", "db", "filemanager"]
        for stream_id in stream_ids:
            supervisor.register(stream_id, config)

        def writer(stream_id):
            for i in range(40):
                supervisor.write(stream_id, f"{stream_id} {i:04d}\n".encode())

        threads = [threading.Thread(target=writer, args=(s,)) for s in stream_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        for stream_id in stream_ids:
            assert supervisor.wait_idle(stream_id, timeout=30)
            assert rotated_files(temp_dir / stream_id, stream_id) == [
                f"{stream_id}.log.1.gz",
                f"{stream_id}.log.2.gz",
            ]
            assert list((temp_dir / stream_id).glob("*.tmp")) == []


class TestStreamLimits:
    """Test timeouts, storage failures and hot reload of retention settings."""

    @pytest.fixture
    def temp_dir(self):
        """Create a temporary directory for tests."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    def supervisor(self, temp_dir):
        """Create a supervisor."""
        supervisor = LogStreamSupervisor(data_dir=temp_dir)
        yield supervisor
        supervisor.close()

    def test_busy_write_lock_times_out(self, supervisor):
        """Test writes and forced rotations give up after the rotation timeout."""
        stream = supervisor.register("wiki", {"rotation_timeout": 0.1, "compress": False})
        held = threading.Event()
        release = threading.Event()

        def hold_lock():
            with stream._write_lock:
                held.set()
                release.wait(10)

        holder = threading.Thread(target=hold_lock)
        holder.start()
        try:
            assert held.wait(10)

            started = time.monotonic()
            with pytest.raises(IOError, match="Timed out"):
                supervisor.write("wiki", b"blocked\n")
            with pytest.raises(RotationError, match="Timed out"):
                supervisor.force_rotate("wiki")
            assert time.monotonic() - started < 5
        finally:
            release.set()
            holder.join()

        assert supervisor.write("wiki", b"after\n") == 6
        assert supervisor.total_space_used("wiki") == 6

    def test_append_failure_reaches_writer(self, supervisor, monkeypatch):
        """Test a failing disk write is raised to the caller."""
        supervisor.register("wiki", {"compress": False})
        real_write = os.write

        def failing_write(fd, data):
            if data == b"doomed\n":
                raise OSError(errno.EIO, "Input/output error")
            return real_write(fd, data)

        monkeypatch.setattr(appender_module.os, "write", failing_write)

        with pytest.raises(IOError):
            supervisor.write("wiki", b"doomed\n")

        assert supervisor.total_space_used("wiki") == 0
        assert supervisor.write("wiki", b"fine\n") == 5

    def test_reload_starts_timed_retention(self, supervisor):
        """Test enabling age retention by reload sweeps without further writes."""
        options = {"max_segment_size": 10, "max_segment_count": 10, "compress": False}
        supervisor.register("db", options)
        for i in range(3):
            supervisor.write("db", f"record-{i:03d}".encode())
        assert len(supervisor.list_segments("db")) == 3

        supervisor.update_config(
            "db",
            dict(options, max_retained_age=0.1, sweep_interval=0.05),
        )

        deadline = time.monotonic() + 5
        while supervisor.list_segments("db") and time.monotonic() < deadline:
            time.sleep(0.02)

        assert supervisor.list_segments("db") == []

    def test_reload_lowers_count_without_writes(self, supervisor):
        """Test a smaller retained count is applied right after the update."""
        options = {"max_segment_size": 10, "max_segment_count": 10, "compress": False}
        supervisor.register("db", options)
        for i in range(4):
            supervisor.write("db", f"record-{i:03d}".encode())

        supervisor.update_config("db", dict(options, max_segment_count=1))
        assert supervisor.wait_idle("db", timeout=30)

        assert [s.sequence for s in supervisor.list_segments("db")] == [1]
