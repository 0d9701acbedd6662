import hashlib
import os

import pytest

from chunkmerge.exceptions import DigestMismatchError, EmptyPayloadError, MissingChunkError, StorageWriteError
from chunkmerge.storage import ChunkStore


def md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


@pytest.fixture
def store(tmp_path):
    return ChunkStore(tmp_path / "uploads")


def test_put_uses_part_layout(store):
    path = store.put("movie.mp4", 1, b"hello", md5(b"hello"))

    assert path == store.root / "movie.mp4.part1"
    assert path.read_bytes() == b"hello"
    # временных файлов не остаётся
    assert sorted(p.name for p in store.root.iterdir()) == ["movie.mp4.part1"]


def test_digest_mismatch_is_not_persisted(store):
    with pytest.raises(DigestMismatchError) as info:
        store.put("movie.mp4", 2, b"payload", md5(b"other"))

    assert info.value.index == 2
    assert info.value.actual == md5(b"payload")
    assert list(store.root.iterdir()) == []


def test_empty_payload_rejected_before_write(store):
    with pytest.raises(EmptyPayloadError):
        store.put("movie.mp4", 1, b"", md5(b""))
    assert list(store.root.iterdir()) == []


def test_reupload_same_index_overwrites(store):
    store.put("a.bin", 1, b"first", md5(b"first"))
    store.put("a.bin", 1, b"first", md5(b"first"))

    assert store.list_indices("a.bin") == [1]
    assert store.chunk_path("a.bin", 1).read_bytes() == b"first"


def test_digest_comparison_ignores_case(store):
    store.put("a.bin", 1, b"data", md5(b"data").upper())
    assert store.has_chunk("a.bin", 1)


def test_list_indices_does_not_mix_assemblies(store):
    store.put("a.bin", 2, b"x", md5(b"x"))
    store.put("a.bin", 10, b"y", md5(b"y"))
    store.put("a.bin.part1", 1, b"z", md5(b"z"))
    (store.root / "a.bin.part3.tmp-abc").write_bytes(b"partial")

    assert store.list_indices("a.bin") == [2, 10]
    assert store.present_count("a.bin", 10) == 2
    assert store.present_count("a.bin", 3) == 1


def test_assembly_id_is_sanitized(store):
    path = store.put("../../etc/passwd", 1, b"x", md5(b"x"))
    assert path.parent == store.root
    assert store.sanitize_id("../../etc/passwd") == "passwd"
    assert store.sanitize_id("..") == "file"
    assert store.sanitize_id("C:\\Users\\me\\отчёт.pdf") == "_____.pdf"


def test_read_all_in_order_reports_first_missing(store):
    store.put("a.bin", 1, b"one", md5(b"one"))
    store.put("a.bin", 3, b"three", md5(b"three"))

    with pytest.raises(MissingChunkError) as info:
        store.read_all_in_order("a.bin", 3)
    assert info.value.index == 2


def test_merge_into_concatenates_in_index_order(store):
    parts = {3: b"ccc", 1: b"a", 2: b"bb"}
    for index, data in parts.items():
        store.put("a.bin", index, data, md5(data))

    written = store.merge_into("a.bin", 3)

    assert written == 6
    assert store.merged_path("a.bin").read_bytes() == b"abbccc"
    # чанки удаляет координатор, а не merge_into
    assert store.list_indices("a.bin") == [1, 2, 3]


def test_merge_into_custom_destination(store, tmp_path):
    store.put("a.bin", 1, b"only", md5(b"only"))
    destination = tmp_path / "out.bin"
    assert store.merge_into("a.bin", 1, destination) == 4
    assert destination.read_bytes() == b"only"
    assert not store.merged_exists("a.bin")


def test_failed_merge_leaves_no_partial_file(store):
    store.put("a.bin", 1, b"one", md5(b"one"))
    store.put("a.bin", 2, b"two", md5(b"two"))
    # каталог на месте итогового файла не даёт выполнить переименование
    store.merged_path("a.bin").mkdir()

    with pytest.raises(StorageWriteError):
        store.merge_into("a.bin", 2)

    names = sorted(p.name for p in store.root.iterdir())
    assert names == ["a.bin", "a.bin.part1", "a.bin.part2"]
    assert not store.merged_exists("a.bin")


def test_merge_into_missing_chunk(store):
    store.put("a.bin", 1, b"one", md5(b"one"))
    with pytest.raises(MissingChunkError):
        store.merge_into("a.bin", 2)
    assert not store.merged_exists("a.bin")
    assert sorted(p.name for p in store.root.iterdir()) == ["a.bin.part1"]


def test_delete_all_is_best_effort(store):
    for index in (1, 2, 3):
        store.put("a.bin", index, b"x", md5(b"x"))
    os.remove(store.chunk_path("a.bin", 2))

    assert store.delete_all("a.bin", 3) == 2
    assert store.list_indices("a.bin") == []


def test_delete_all_logs_unlink_errors(store, monkeypatch, caplog):
    store.put("a.bin", 1, b"x", md5(b"x"))
    store.put("a.bin", 2, b"y", md5(b"y"))

    original_unlink = type(store.root).unlink

    def flaky_unlink(self, *args, **kwargs):
        if self.name == "a.bin.part1":
            raise PermissionError("read-only")
        return original_unlink(self, *args, **kwargs)

    monkeypatch.setattr(type(store.root), "unlink", flaky_unlink)
    assert store.delete_all("a.bin", 2) == 1
    assert "a.bin.part1" in caplog.text


def test_failed_fsync_closes_handle_and_cleans_temp(store, monkeypatch):
    handles = []
    real_open = open

    def tracking_open(*args, **kwargs):
        handle = real_open(*args, **kwargs)
        handles.append(handle)
        return handle

    def broken_fsync(fd):
        raise OSError("disk gone")

    monkeypatch.setattr("chunkmerge.storage.open", tracking_open, raising=False)
    monkeypatch.setattr("chunkmerge.storage.os.fsync", broken_fsync)

    with pytest.raises(StorageWriteError):
        store.put("movie.mp4", 1, b"hello", md5(b"hello"))
    store.root.joinpath("b.bin.part1").write_bytes(b"x")
    with pytest.raises(StorageWriteError):
        store.merge_into("b.bin", 1)

    assert len(handles) == 2
    assert all(handle.closed for handle in handles)
    assert sorted(p.name for p in store.root.iterdir()) == ["b.bin.part1"]
