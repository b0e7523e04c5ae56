import magic
import pytest

from orderhub.attachments import AttachmentTargets, DocumentRecord
from orderhub.config import Settings
from orderhub.errors import (
    MergeInProgress,
    PayloadTooLarge,
    SessionNotFound,
    TargetNotFound,
    UploadIncomplete,
    ValidationError,
)
from orderhub.service import (
    UploadService,
    build_final_path,
    detect_content_type,
    file_extension,
    random_file_stem,
)

STEM = "a" * 40


class _FakeTargets(AttachmentTargets):
    def __init__(self, orders=(42,), products=(7,)) -> None:
        self.orders = set(orders)
        self.products = set(products)
        self.order_documents: list[DocumentRecord] = []
        self.product_documents: dict[int, str] = {}
        self.fail_with: Exception | None = None

    def target_exists(self, target_type: str, target_id: int) -> bool:
        pool = self.orders if target_type == "order_document" else self.products
        return target_id in pool

    def attach_order_document(
        self, order_id, finalized_path, original_name, byte_size, content_type, uploader_id
    ) -> DocumentRecord:
        if self.fail_with is not None:
            raise self.fail_with
        record = DocumentRecord(
            id=len(self.order_documents) + 1,
            order_id=order_id,
            filename=finalized_path.rsplit("/", 1)[-1],
            original_name=original_name,
            file_path=finalized_path,
            file_size=byte_size,
            mime_type=content_type,
            uploaded_by=uploader_id,
        )
        self.order_documents.append(record)
        return record

    def replace_product_document(self, product_id, finalized_path) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.product_documents[product_id] = finalized_path


def _service(store, targets=None, **overrides) -> UploadService:
    config = Settings(**{"max_chunk_bytes": 16, "recommended_chunk_size_bytes": 4, **overrides})
    return UploadService(store, targets or _FakeTargets(), config=config, name_factory=lambda: STEM)


def _send_all(service: UploadService, upload_id: str, payload: bytes, chunk_size: int) -> None:
    for index, start in enumerate(range(0, len(payload), chunk_size)):
        service.store_chunk(upload_id, index, payload[start : start + chunk_size])


def test_initialize_returns_id_and_recommended_chunk_size(store) -> None:
    result = _service(store).initialize("report.pdf", 3, 12)

    assert result.chunk_size == 4
    assert store.read(result.upload_id).filename == "report.pdf"


@pytest.mark.parametrize(
    "filename,total_chunks,file_size",
    [
        ("", 1, 1),
        ("   ", 1, 1),
        ("x" * 256, 1, 1),
        ("a.bin", 0, 1),
        ("a.bin", 10001, 1),
        ("a.bin", 1, 0),
        ("a.bin", 1, 5 * 1024 * 1024 * 1024 + 1),
    ],
)
def test_initialize_rejects_out_of_range_values(store, filename, total_chunks, file_size) -> None:
    with pytest.raises(ValidationError):
        _service(store).initialize(filename, total_chunks, file_size)
    assert store.list_session_ids() == []


def test_initialize_accepts_upper_limits(store) -> None:
    result = _service(store).initialize("x" * 255, 10000, 5 * 1024 * 1024 * 1024)
    assert store.read(result.upload_id).total_chunks == 10000


def test_store_chunk_rejects_empty_and_oversize_payloads(store) -> None:
    service = _service(store)
    upload_id = service.initialize("a.bin", 2, 20).upload_id

    with pytest.raises(ValidationError):
        service.store_chunk(upload_id, 0, b"")
    with pytest.raises(PayloadTooLarge) as exc_info:
        service.store_chunk(upload_id, 0, b"x" * 17)

    assert exc_info.value.status_code == 413
    assert store.read(upload_id).received_chunks == []


def test_status_reports_progress(store, clock) -> None:
    service = _service(store)
    upload_id = service.initialize("a.bin", 3, 9).upload_id
    clock.advance(minutes=1)
    service.store_chunk(upload_id, 1, b"def")

    status = service.get_status(upload_id)

    assert status.received_chunks == [1]
    assert status.is_complete is False
    assert status.updated_at > status.created_at
    assert service.get_status("missing") is None


@pytest.mark.parametrize("total_chunks", [2, 3, 5])
def test_complete_refuses_until_every_chunk_arrived(store, total_chunks) -> None:
    service = _service(store)
    upload_id = service.initialize("a.bin", total_chunks, total_chunks).upload_id
    for index in range(total_chunks - 1):
        service.store_chunk(upload_id, index, b"x")

    with pytest.raises(UploadIncomplete):
        service.complete(upload_id, "order_document", 42, "1")

    status = service.get_status(upload_id)
    assert status.is_complete is False
    assert len(status.received_chunks) == total_chunks - 1


def test_complete_merges_and_attaches_order_document(store, blobs) -> None:
    targets = _FakeTargets()
    service = _service(store, targets)
    payload = b"%PDF-1.4 hello world"
    upload_id = service.initialize("Quarterly Report.PDF", 5, len(payload)).upload_id
    _send_all(service, upload_id, payload, 4)

    completed = service.complete(upload_id, "order_document", 42, "17")

    assert completed.file_path == f"orders/documents/{STEM}.pdf"
    assert completed.url == f"/storage/orders/documents/{STEM}.pdf"
    assert completed.content_type == "application/pdf"
    assert completed.size == len(payload)
    assert blobs.get(f"public/{completed.file_path}") == payload
    document = targets.order_documents[0]
    assert document.order_id == 42
    assert document.original_name == "Quarterly Report.PDF"
    assert document.uploaded_by == "17"
    assert completed.document == document
    assert store.read(upload_id) is None
    assert store.list_session_ids() == []


def test_complete_replaces_product_document(store, blobs) -> None:
    targets = _FakeTargets()
    service = _service(store, targets)
    upload_id = service.initialize("datasheet.docx", 1, 3).upload_id
    service.store_chunk(upload_id, 0, b"doc")

    completed = service.complete(upload_id, "product_document", 7, "1")

    assert completed.file_path == f"products/documents/{STEM}.docx"
    assert completed.document is None
    assert targets.product_documents == {7: completed.file_path}


def test_complete_unknown_target_keeps_session(store, blobs) -> None:
    service = _service(store)
    upload_id = service.initialize("a.bin", 1, 1).upload_id
    service.store_chunk(upload_id, 0, b"x")

    with pytest.raises(TargetNotFound) as exc_info:
        service.complete(upload_id, "order_document", 999, "1")

    assert exc_info.value.status_code == 404
    assert store.read(upload_id) is not None
    assert blobs.list_directories("public") == []


def test_complete_rejects_unknown_target_type(store) -> None:
    service = _service(store)
    upload_id = service.initialize("a.bin", 1, 1).upload_id
    service.store_chunk(upload_id, 0, b"x")

    with pytest.raises(ValidationError):
        service.complete(upload_id, "invoice", 1, "1")


def test_complete_unknown_session(store) -> None:
    with pytest.raises(SessionNotFound):
        _service(store).complete("missing", "order_document", 42, "1")


def test_attach_failure_discards_artifact_and_keeps_session(store, blobs) -> None:
    targets = _FakeTargets()
    targets.fail_with = RuntimeError("database unavailable")
    service = _service(store, targets)
    upload_id = service.initialize("a.txt", 1, 2).upload_id
    service.store_chunk(upload_id, 0, b"hi")

    with pytest.raises(RuntimeError):
        service.complete(upload_id, "order_document", 42, "1")

    assert not blobs.exists(f"public/orders/documents/{STEM}.txt")
    session = store.read(upload_id)
    assert session.received_chunks == [0]
    assert session.merge_lease_until is None

    targets.fail_with = None
    completed = service.complete(upload_id, "order_document", 42, "1")
    assert blobs.get(f"public/{completed.file_path}") == b"hi"


def test_complete_is_rejected_while_another_merge_holds_the_lease(store) -> None:
    service = _service(store)
    upload_id = service.initialize("a.bin", 1, 1).upload_id
    service.store_chunk(upload_id, 0, b"x")
    store.acquire_merge_lease(upload_id, 600)

    with pytest.raises(MergeInProgress):
        service.complete(upload_id, "order_document", 42, "1")
    assert store.read(upload_id) is not None


def test_cancel_is_idempotent(store, blobs) -> None:
    service = _service(store)
    upload_id = service.initialize("a.bin", 2, 2).upload_id
    service.store_chunk(upload_id, 0, b"x")

    service.cancel(upload_id)
    service.cancel(upload_id)
    service.cancel("never-existed")

    assert service.get_status(upload_id) is None
    assert store.list_session_ids() == []


def test_sweep_defaults_to_configured_ttl(store, clock) -> None:
    service = _service(store, stale_session_ttl_hours=2)
    old = service.initialize("old.bin", 1, 1).upload_id
    clock.advance(hours=3)
    fresh = service.initialize("new.bin", 1, 1).upload_id

    stats = service.sweep()

    assert stats["sessions_deleted"] == 1
    assert service.get_status(old) is None
    assert service.get_status(fresh) is not None


@pytest.mark.parametrize(
    "filename,expected",
    [
        ("report.pdf", "pdf"),
        ("Photo.JPG", "jpg"),
        ("archive.tar.gz", "gz"),
        ("C:\\Users\\me\\notes.txt", "txt"),
        ("../../etc/passwd", ""),
        ("noext", ""),
        ("weird.p$f", ""),
    ],
)
def test_file_extension(filename, expected) -> None:
    assert file_extension(filename) == expected


def test_build_final_path_never_uses_client_directories() -> None:
    assert build_final_path("../../secret.pdf", "order_document", STEM) == f"orders/documents/{STEM}.pdf"
    assert build_final_path("README", "product_document", STEM) == f"products/documents/{STEM}"


def test_random_file_stem_shape() -> None:
    stem = random_file_stem()
    assert len(stem) == 40
    assert stem.isalnum()
    assert stem != random_file_stem()


def test_detect_content_type_trusts_bytes_over_filename() -> None:
    pdf = b"%PDF-1.4\n%\xe2\xe3\xcf\xd3\n1 0 obj\n<< /Type /Catalog >>\nendobj\n"
    png = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\x00\x00\x01\x00\x00\x00\x01\x08\x06\x00\x00\x00"

    assert detect_content_type(pdf, "scan") == "application/pdf"
    assert detect_content_type(pdf, "holiday.png") == "application/pdf"
    assert detect_content_type(png, "report.pdf") == "image/png"


def test_detect_content_type_falls_back_to_filename_then_octet_stream(monkeypatch) -> None:
    monkeypatch.setattr("orderhub.service.magic.from_buffer", lambda sample, mime=True: "application/octet-stream")

    assert detect_content_type(b"\x00\x01\x02", "report.pdf") == "application/pdf"
    assert detect_content_type(b"\x00\x01\x02", "blob.unknownext") == "application/octet-stream"
    assert detect_content_type(b"", "noext") == "application/octet-stream"


def test_detect_content_type_survives_libmagic_errors(monkeypatch) -> None:
    def _broken(sample, mime=True):
        raise magic.MagicException("magic database unavailable")

    monkeypatch.setattr("orderhub.service.magic.from_buffer", _broken)

    assert detect_content_type(b"%PDF-1.4", "notes.txt") == "text/plain"


def test_complete_records_sniffed_type_not_declared_name(store) -> None:
    targets = _FakeTargets()
    service = _service(store, targets)
    payload = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\n"
    total_chunks = -(-len(payload) // 16)
    upload_id = service.initialize("innocent.txt", total_chunks, len(payload)).upload_id
    _send_all(service, upload_id, payload, 16)

    completed = service.complete(upload_id, "order_document", 42, "1")

    assert completed.file_path.endswith(".txt")
    assert completed.content_type == "application/pdf"
    assert targets.order_documents[0].mime_type == "application/pdf"
