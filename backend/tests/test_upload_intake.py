import io
from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from backend.app.config import settings
from backend.app.routers import purchases as purchases_router
from backend.tests.fakes import FakeConn, FakeCursor


class _Tasks:
    def __init__(self):
        self.queued = []

    def add_task(self, fn, *args):
        self.queued.append((fn, args))


class _EndlessBody:
    """A request body that never ends; only a reader that stops at the cap can finish."""

    def __init__(self):
        self.reads = 0

    def read(self, size=-1):
        if size is None or size < 0:
            raise AssertionError("whole-body read")
        self.reads += 1
        return b"x" * size


def _setup(monkeypatch, tmp_path):
    cur = FakeCursor(
        [("INSERT INTO purchase_uploads", lambda p: {"id": p[0], "filename": p[2], "status": "UPLOADED"})]
    )
    temp = tmp_path / "up.pdf"
    monkeypatch.setattr(purchases_router, "get_conn", lambda: FakeConn(cur))
    monkeypatch.setattr(purchases_router, "set_clinic_context", lambda *_args, **_kwargs: None)
    monkeypatch.setattr(purchases_router, "temp_path_for", lambda upload_id, filename: str(temp))
    monkeypatch.setattr(settings, "upload_max_mb", 1)
    return cur, temp


def _upload(body, filename="invoice.pdf"):
    return SimpleNamespace(filename=filename, content_type="application/pdf", file=body)


def test_upload_is_written_to_temp_and_parse_is_queued(monkeypatch, tmp_path):
    cur, temp = _setup(monkeypatch, tmp_path)
    tasks = _Tasks()
    row = purchases_router.upload_purchase_invoice(
        tasks, file=_upload(io.BytesIO(b"%PDF-1.4 invoice")), clinic_id="c1", user={"user_id": "u1"}
    )
    assert row["status"] == "UPLOADED"
    assert temp.read_bytes() == b"%PDF-1.4 invoice"
    (sql, params), = cur.statements("INSERT INTO purchase_uploads")
    assert params[4] == str(temp)
    (fn, args), = tasks.queued
    assert fn is purchases_router.run_purchase_upload_parse
    assert args[1:] == ("c1", row["id"])


def test_oversized_upload_stops_reading_at_the_cap(monkeypatch, tmp_path):
    cur, temp = _setup(monkeypatch, tmp_path)
    body = _EndlessBody()
    with pytest.raises(HTTPException) as exc_info:
        purchases_router.upload_purchase_invoice(_Tasks(), file=_upload(body), clinic_id="c1", user={"user_id": "u1"})
    assert exc_info.value.status_code == 413
    assert body.reads == 2
    assert not temp.exists()
    assert cur.writes() == []


def test_empty_upload_is_rejected(monkeypatch, tmp_path):
    cur, temp = _setup(monkeypatch, tmp_path)
    with pytest.raises(HTTPException) as exc_info:
        purchases_router.upload_purchase_invoice(
            _Tasks(), file=_upload(io.BytesIO(b"")), clinic_id="c1", user={"user_id": "u1"}
        )
    assert exc_info.value.status_code == 400
    assert not temp.exists()
    assert cur.writes() == []


def test_unsupported_extension_is_rejected_before_anything_is_written(monkeypatch, tmp_path):
    cur, temp = _setup(monkeypatch, tmp_path)
    with pytest.raises(HTTPException) as exc_info:
        purchases_router.upload_purchase_invoice(
            _Tasks(), file=_upload(io.BytesIO(b"MZ"), filename="invoice.exe"), clinic_id="c1", user={"user_id": "u1"}
        )
    assert exc_info.value.status_code == 400
    assert not temp.exists()
    assert cur.writes() == []
