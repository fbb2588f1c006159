"""Tests for the sharded file backend."""
import json

import pytest

from speechflow.errors import StorageQuotaError
from speechflow.storage import FileBackend, PersistentStore


@pytest.fixture
def backend(tmp_path):
    return FileBackend(tmp_path / "store")


class TestFileBackend:

    def test_write_read(self, backend):
        backend.write("tts_cache_abc", '{"x":1}')

        assert backend.read("tts_cache_abc") == '{"x":1}'
        assert backend.keys() == ["tts_cache_abc"]

    def test_sharded_layout(self, backend):
        backend.write("k", "v")

        files = list(backend.base_dir.glob("*/*.json"))
        assert len(files) == 1
        assert files[0].parent.name == files[0].stem[:2]
        assert json.loads(files[0].read_text(encoding="utf-8")) == {"key": "k", "document": "v"}

    def test_missing(self, backend):
        assert backend.read("nope") is None
        assert backend.keys() == []
        backend.delete("nope")

    def test_delete_removes_empty_shard(self, backend):
        backend.write("k", "v")
        backend.delete("k")

        assert backend.read("k") is None
        assert list(backend.base_dir.iterdir()) == []

    def test_survives_reopen(self, tmp_path):
        FileBackend(tmp_path).write("speechflow_limits", "{}")
        assert FileBackend(tmp_path).read("speechflow_limits") == "{}"

    def test_clear(self, backend):
        for i in range(5):
            backend.write(f"k{i}", "v")
        backend.clear()
        assert backend.keys() == []

    def test_unreadable_file(self, backend):
        backend.write("k", "v")
        path, = backend.base_dir.glob("*/*.json")
        path.write_text("{broken", encoding="utf-8")

        assert backend.read("k") == ""
        assert backend.keys() == []

    def test_capacity(self, tmp_path):
        backend = FileBackend(tmp_path, capacity_bytes=20)
        backend.write("a", "x" * 10)

        with pytest.raises(StorageQuotaError):
            backend.write("b", "x" * 10)

        # Overwriting an existing key only charges the difference
        backend.write("a", "y" * 15)

        quota = backend.estimate_quota()
        assert quota.used == 16
        assert quota.available == 4
        assert quota.total == 20

    def test_no_estimate_without_capacity(self, backend):
        assert backend.estimate_quota() is None


class TestStoreOnFiles:

    def test_round_trip(self, tmp_path):
        store = PersistentStore(FileBackend(tmp_path))
        store.set("speechflow_usage", [{"id": "transcribe_1_a"}])

        reopened = PersistentStore(FileBackend(tmp_path))
        assert reopened.get("speechflow_usage") == [{"id": "transcribe_1_a"}]

    def test_corrupted_file_reads_as_none(self, tmp_path):
        backend = FileBackend(tmp_path)
        store = PersistentStore(backend)
        store.set("k", 1)
        path, = tmp_path.glob("*/*.json")
        path.write_text("{broken", encoding="utf-8")

        assert store.get("k") is None
        assert not path.exists()
