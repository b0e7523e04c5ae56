import json

from fastapi.testclient import TestClient

from orderhub.db import Base, SessionLocal, engine
from orderhub.main import app
from orderhub.models import Order


def _reset_state() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        db.add(Order(id=5, order_number="ORD-AUDIT"))
        db.commit()


def _events_from_caplog(caplog) -> list[dict]:
    events: list[dict] = []
    for record in caplog.records:
        if record.name != "orderhub.audit":
            continue
        try:
            events.append(json.loads(record.message))
        except json.JSONDecodeError:
            continue
    return events


def test_audit_logs_for_init_complete_cancel(caplog) -> None:
    _reset_state()
    caplog.set_level("INFO", logger="orderhub.audit")
    headers = {"X-API-Key": "dev-key", "X-Request-ID": "req-audit"}
    with TestClient(app) as client:
        init = client.post(
            "/uploads/init", json={"filename": "audit.txt", "total_chunks": 1, "file_size": 4}, headers=headers
        )
        assert init.status_code == 201
        upload_id = init.json()["upload_id"]

        chunk = client.post(
            f"/uploads/{upload_id}/chunk",
            data={"chunk_index": "0"},
            files={"chunk": ("chunk_0", b"abcd", "application/octet-stream")},
            headers=headers,
        )
        assert chunk.status_code == 200

        complete = client.post(
            f"/uploads/{upload_id}/complete",
            json={"target_type": "order_document", "target_id": 5},
            headers=headers,
        )
        assert complete.status_code == 200

        other = client.post(
            "/uploads/init", json={"filename": "drop.txt", "total_chunks": 2, "file_size": 8}, headers=headers
        )
        cancel = client.delete(f"/uploads/{other.json()['upload_id']}", headers=headers)
        assert cancel.status_code == 200

    events = _events_from_caplog(caplog)
    actions = [event.get("action") for event in events]
    assert "upload_init" in actions
    assert "upload_complete" in actions
    assert "upload_cancel" in actions
    init_event = next(event for event in events if event.get("action") == "upload_init")
    assert init_event["request_id"] == "req-audit"
    assert init_event["user_id"] == "1"
    assert "trace_id" in init_event
    complete_event = next(event for event in events if event.get("action") == "upload_complete")
    assert complete_event["target_id"] == 5
    assert complete_event["file_size"] == 4
