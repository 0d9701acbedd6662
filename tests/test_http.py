import hashlib

import pytest
from fastapi.testclient import TestClient

from chunkmerge.config import Settings
from chunkmerge.main import create_app


def md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


@pytest.fixture
def app(tmp_path):
    return create_app(Settings(upload_dir=tmp_path / "uploads", merge_workers=2, max_chunk_size=1024))


def _upload(client, filename, index, total, data, digest=None):
    return client.post(
        "/api/upload",
        files={"file": (filename, data, "application/octet-stream")},
        data={
            "md5": digest if digest is not None else md5(data),
            "chunkNumber": str(index),
            "totalChunks": str(total),
        },
    )


def test_upload_flow_out_of_order(app):
    chunks = {1: b"a" * 100, 2: b"b" * 100, 3: b"c" * 50}

    with TestClient(app) as client:
        first = _upload(client, "report.pdf", 2, 3, chunks[2])
        assert first.status_code == 200
        assert first.json()["status"] == "accepted"
        assert first.json()["triggered_merge"] is False

        assert _upload(client, "report.pdf", 1, 3, chunks[1]).status_code == 200

        last = _upload(client, "report.pdf", 3, 3, chunks[3])
        assert last.status_code == 202
        assert last.json()["status"] == "assembly_complete"
        assert last.json()["triggered_merge"] is True

    # выход из клиента дожидается фоновой сборки
    merged = app.state.store.merged_path("report.pdf")
    assert merged.stat().st_size == 250
    assert merged.read_bytes() == chunks[1] + chunks[2] + chunks[3]
    assert app.state.store.list_indices("report.pdf") == []


def test_digest_mismatch_asks_for_resend(app):
    with TestClient(app) as client:
        response = _upload(client, "x.bin", 1, 2, b"payload", digest=md5(b"other"))

        assert response.status_code == 422
        body = response.json()
        assert body["status"] == "digest_mismatch"
        assert body["index"] == 1
        assert app.state.store.list_indices("x.bin") == []


def test_rejects_empty_invalid_and_oversized_chunks(app):
    with TestClient(app) as client:
        assert _upload(client, "x.bin", 1, 2, b"").status_code == 400
        assert _upload(client, "x.bin", 3, 2, b"data").status_code == 400
        assert _upload(client, "x.bin", 1, 2, b"z" * 2048).status_code == 413

        assert _upload(client, "x.bin", 1, 2, b"data").status_code == 200
        mismatch = _upload(client, "x.bin", 2, 5, b"data")
        assert mismatch.status_code == 400


def test_status_endpoint(app):
    with TestClient(app) as client:
        assert client.get("/api/status", params={"assembly_id": "nope.bin"}).status_code == 404

        _upload(client, "s.bin", 1, 2, b"one")
        status = client.get("/api/status", params={"assembly_id": "s.bin"}).json()
        assert status["state"] == "receiving"
        assert status["total"] == 2
        assert status["present_count"] == 1
        assert status["merged"] is False
        assert "missing" not in status

        _upload(client, "s.bin", 2, 2, b"two")

    with TestClient(app) as client:
        status = client.get("/api/status", params={"assembly_id": "s.bin"}).json()
    assert status["state"] == "merged"
    assert status["merged"] is True
    assert status["size_bytes"] == 6


def test_manual_merge_after_failure(app):
    store = app.state.store
    with TestClient(app) as client:
        _upload(client, "m.bin", 1, 2, b"one")
        store.merged_path("m.bin").mkdir()
        _upload(client, "m.bin", 2, 2, b"two")

    with TestClient(app) as client:
        status = client.get("/api/status", params={"assembly_id": "m.bin"}).json()
        assert status["state"] == "merge_failed"
        assert status["last_error"]
        assert store.list_indices("m.bin") == [1, 2]

        store.merged_path("m.bin").rmdir()
        response = client.post("/api/merge", json={"assembly_id": "m.bin"})
        assert response.status_code == 202
        assert response.json() == {"assembly_id": "m.bin", "total": 2, "scheduled": True}

    assert store.merged_path("m.bin").read_bytes() == b"onetwo"


def test_manual_merge_requires_total_for_unknown_assembly(app):
    with TestClient(app) as client:
        assert client.post("/api/merge", json={"assembly_id": "ghost.bin"}).status_code == 400
        assert client.post("/api/merge", json={"assembly_id": "ghost.bin", "total": 0}).status_code == 422


def test_metrics_endpoint(app):
    with TestClient(app) as client:
        _upload(client, "q.bin", 1, 2, b"data")
        snapshot = client.get("/api/metrics").json()
    assert snapshot["chunks"] == {"accepted": 1}
    assert snapshot["samples"]["chunks"] == 1


def test_chunk_size_limit_is_inclusive(app):
    with TestClient(app) as client:
        assert _upload(client, "edge.bin", 1, 2, b"e" * 1024).status_code == 200
        assert _upload(client, "edge.bin", 2, 2, b"e" * 1025).status_code == 413
        assert app.state.store.list_indices("edge.bin") == [1]


def test_manual_merge_of_merged_assembly_needs_total(app):
    with TestClient(app) as client:
        _upload(client, "done.bin", 1, 1, b"solo")

    with TestClient(app) as client:
        # после сборки кэш пуст, total берётся из запроса
        assert client.post("/api/merge", json={"assembly_id": "done.bin"}).status_code == 400
        response = client.post("/api/merge", json={"assembly_id": "done.bin", "total": 1})
        assert response.status_code == 202
        assert response.json() == {"assembly_id": "done.bin", "total": 1, "scheduled": True}

    assert app.state.store.merged_path("done.bin").read_bytes() == b"solo"
