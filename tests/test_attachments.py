import json
from contextlib import contextmanager

import pytest

from orderhub.attachments import SqlAttachmentTargets
from orderhub.db import Base, SessionLocal, engine
from orderhub.errors import StorageError, TargetNotFound
from orderhub.models import Order, OrderDocument, Product

OLD_PATH = "products/documents/old-manual.pdf"
NEW_PATH = "products/documents/new-manual.pdf"


def _reset_state() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        db.add(Order(id=42, order_number="ORD-0042"))
        db.add(Product(id=7, name="Widget", document=OLD_PATH))
        db.commit()


def _events_from_caplog(caplog) -> list[dict]:
    events: list[dict] = []
    for record in caplog.records:
        if record.name != "orderhub.request":
            continue
        try:
            events.append(json.loads(record.message))
        except json.JSONDecodeError:
            continue
    return events


def _product_document(product_id: int) -> str | None:
    with SessionLocal() as db:
        return db.get(Product, product_id).document


def test_replace_product_document_deletes_previous_file(blobs) -> None:
    _reset_state()
    blobs.put(f"public/{OLD_PATH}", b"old")
    blobs.put(f"public/{NEW_PATH}", b"new")

    SqlAttachmentTargets(blobs).replace_product_document(7, NEW_PATH)

    assert _product_document(7) == NEW_PATH
    assert not blobs.exists(f"public/{OLD_PATH}")
    assert blobs.get(f"public/{NEW_PATH}") == b"new"


def test_failed_delete_of_previous_file_is_logged_not_raised(blobs, monkeypatch, caplog) -> None:
    _reset_state()
    caplog.set_level("INFO", logger="orderhub.request")
    blobs.put(f"public/{OLD_PATH}", b"old")

    def _denied(key: str) -> None:
        raise StorageError(f"s3 request failed for {key}: AccessDenied")

    monkeypatch.setattr(blobs, "delete", _denied)

    SqlAttachmentTargets(blobs).replace_product_document(7, NEW_PATH)

    assert _product_document(7) == NEW_PATH
    events = [e for e in _events_from_caplog(caplog) if e.get("event") == "product_document_delete_failed"]
    assert events
    assert events[-1]["file_path"] == OLD_PATH
    assert "AccessDenied" in events[-1]["detail"]


def test_previous_file_survives_when_commit_fails(blobs) -> None:
    _reset_state()
    blobs.put(f"public/{OLD_PATH}", b"old")

    @contextmanager
    def _failing_commit_scope():
        db = SessionLocal()
        try:
            yield db
            raise RuntimeError("database went away")
        finally:
            db.rollback()
            db.close()

    targets = SqlAttachmentTargets(blobs, session_factory=_failing_commit_scope)
    with pytest.raises(RuntimeError):
        targets.replace_product_document(7, NEW_PATH)

    assert _product_document(7) == OLD_PATH
    assert blobs.get(f"public/{OLD_PATH}") == b"old"


def test_attach_order_document_records_metadata(blobs) -> None:
    _reset_state()

    record = SqlAttachmentTargets(blobs).attach_order_document(
        order_id=42,
        finalized_path="orders/documents/abc.pdf",
        original_name="report.pdf",
        byte_size=12,
        content_type="application/pdf",
        uploader_id="3",
    )

    assert record.filename == "abc.pdf"
    assert record.url.endswith("/orders/documents/abc.pdf")
    with SessionLocal() as db:
        row = db.get(OrderDocument, record.id)
        assert row.order_id == 42
        assert row.mime_type == "application/pdf"
        assert row.uploaded_by == "3"


def test_unknown_targets(blobs) -> None:
    _reset_state()
    targets = SqlAttachmentTargets(blobs)

    assert targets.target_exists("order_document", 42)
    assert not targets.target_exists("product_document", 999)
    with pytest.raises(TargetNotFound):
        targets.replace_product_document(999, NEW_PATH)
