"""Tests for atomic JSON storage and the readers-writer lock."""

import json
import threading
import time

import portalocker
import pytest

from memkeep.exceptions import StorageError
from memkeep.locking import ReadWriteLock
from memkeep.storage import quarantine, read_json, write_json_atomic


class TestWriteJsonAtomic:
    """Tests for write_json_atomic."""

    def test_writes_and_replaces(self, tmp_path):
        """Test a second write replaces the first and leaves no temp file."""
        path = tmp_path / "data.json"

        write_json_atomic(path, {"a": 1})
        write_json_atomic(path, {"b": "ünïcode"})

        assert json.loads(path.read_text(encoding="utf-8")) == {"b": "ünïcode"}
        assert not (tmp_path / "data.json.tmp").exists()

    def test_creates_parent_directories(self, tmp_path):
        """Test missing parent directories are created."""
        path = tmp_path / "nested" / "dir" / "data.json"

        write_json_atomic(path, [])

        assert path.exists()

    def test_unserializable_data(self, tmp_path):
        """Test unserializable data raises StorageError and writes nothing."""
        path = tmp_path / "data.json"

        with pytest.raises(StorageError, match="serialize"):
            write_json_atomic(path, {"bad": object()})
        assert not path.exists()

    def test_failed_replace_keeps_old_file(self, tmp_path, monkeypatch):
        """Test a failed rename keeps the previous file intact."""
        path = tmp_path / "data.json"
        write_json_atomic(path, {"version": 1})

        def fail_replace(src, dst):
            raise OSError("no space left on device")

        monkeypatch.setattr("memkeep.storage.os.replace", fail_replace)

        with pytest.raises(StorageError, match="no space"):
            write_json_atomic(path, {"version": 2})

        assert json.loads(path.read_text()) == {"version": 1}
        assert not (tmp_path / "data.json.tmp").exists()

    def test_lock_timeout(self, tmp_path, monkeypatch):
        """Test a held file lock times out with StorageError."""
        path = tmp_path / "data.json"
        monkeypatch.setattr("memkeep.storage.LOCK_TIMEOUT", 0.1)

        with portalocker.Lock(str(tmp_path / "data.json.lock"), mode="a", timeout=1):
            with pytest.raises(StorageError, match="lock"):
                write_json_atomic(path, {"a": 1})

        assert not path.exists()


class TestReadJson:
    """Tests for read_json."""

    def test_missing_file(self, tmp_path):
        """Test a missing file reads as None."""
        assert read_json(tmp_path / "missing.json") is None

    def test_empty_file(self, tmp_path):
        """Test a whitespace-only file reads as None."""
        path = tmp_path / "empty.json"
        path.write_text("  \n")

        assert read_json(path) is None

    def test_corrupt_file(self, tmp_path):
        """Test invalid JSON raises JSONDecodeError."""
        path = tmp_path / "bad.json"
        path.write_text("{")

        with pytest.raises(json.JSONDecodeError):
            read_json(path)

    def test_round_trip(self, tmp_path):
        """Test data written atomically reads back unchanged."""
        path = tmp_path / "data.json"
        write_json_atomic(path, {"m1": {"current_version": 1}})

        assert read_json(path) == {"m1": {"current_version": 1}}


class TestQuarantine:
    """Tests for moving unreadable files aside."""

    def test_moves_file_and_keeps_bytes(self, tmp_path):
        """Test the file is renamed with a corrupt suffix and its bytes kept."""
        path = tmp_path / "data.json"
        path.write_bytes(b"{\xff truncated")

        target = quarantine(path)

        assert not path.exists()
        assert target.parent == tmp_path
        assert target.name.startswith("data.json.corrupt-")
        assert target.read_bytes() == b"{\xff truncated"

    def test_move_failure(self, tmp_path, monkeypatch):
        """Test a failed move raises StorageError and leaves the file."""
        path = tmp_path / "data.json"
        path.write_text("{")

        def fail_replace(src, dst):
            raise OSError("permission denied")

        monkeypatch.setattr("memkeep.storage.os.replace", fail_replace)

        with pytest.raises(StorageError, match="permission denied"):
            quarantine(path)
        assert path.read_text() == "{"


class TestReadWriteLock:
    """Tests for ReadWriteLock."""

    def test_readers_share(self):
        """Test several readers hold the lock at once."""
        lock = ReadWriteLock()
        inside = []
        barrier = threading.Barrier(3, timeout=2)

        def reader():
            with lock.read_locked():
                inside.append(1)
                barrier.wait()

        threads = [threading.Thread(target=reader) for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(inside) == 3

    def test_writer_excludes_readers(self):
        """Test a reader waits for the writer to finish."""
        lock = ReadWriteLock()
        events = []

        lock.acquire_write()

        def reader():
            with lock.read_locked():
                events.append("read")

        thread = threading.Thread(target=reader)
        thread.start()
        time.sleep(0.05)
        events.append("write-done")
        lock.release_write()
        thread.join()

        assert events == ["write-done", "read"]

    def test_waiting_writer_blocks_new_readers(self):
        """Test a queued writer goes before later readers."""
        lock = ReadWriteLock()
        events = []

        lock.acquire_read()

        def writer():
            with lock.write_locked():
                events.append("write")

        def late_reader():
            with lock.read_locked():
                events.append("read")

        writer_thread = threading.Thread(target=writer)
        writer_thread.start()
        time.sleep(0.05)
        reader_thread = threading.Thread(target=late_reader)
        reader_thread.start()
        time.sleep(0.05)

        assert events == []
        lock.release_read()
        writer_thread.join()
        reader_thread.join()

        assert events == ["write", "read"]

    def test_release_on_exception(self):
        """Test the lock is released when the block raises."""
        lock = ReadWriteLock()

        with pytest.raises(RuntimeError):
            with lock.write_locked():
                raise RuntimeError("boom")

        with lock.read_locked():
            pass
