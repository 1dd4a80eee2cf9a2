from __future__ import annotations

from io import BytesIO

from openpyxl import load_workbook

from caseflow.core.config import settings
from caseflow.models.production import FileUpload, ProductionCase, ProductionMeta, Shipment
from caseflow.schemas.production import COLUMN_MAP

from helpers import csv_bytes, xlsx_bytes

XLSX_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _case(number, total=5, **overrides):
    item = {
        "caseNumber": number,
        "criticalParts": 1,
        "totalLines": total,
        "domesticLines": 3,
        "bulkLines": 2,
        "sourceRow": 2,
    }
    item.update(overrides)
    return item


def _process(client, shipments, meta=None, email="operator@example.com"):
    return client.post(
        "/api/production/process-cases",
        headers={"X-User-Email": email},
        json={"shipments": shipments, "meta": meta or {"fileName": "cases.xlsx"}},
    )


def _delete(client, shipments):
    return client.request("DELETE", "/api/production/process-cases", json={"shipments": shipments})


def test_upload_archives_file(client, storage):
    response = client.post(
        "/api/production/upload",
        files={"file": ("My Cases.xlsx", xlsx_bytes([]), XLSX_TYPE)},
        data={"shipmentId": "S1"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["storagePath"].startswith("shipments/S1/production/")
    assert body["storagePath"].endswith("-My_Cases.xlsx")
    assert body["downloadURL"].startswith("file://")
    assert body["fileName"] == "My Cases.xlsx"
    assert storage.exists(body["storagePath"])


def test_upload_requires_file_and_shipment(client):
    missing_shipment = client.post(
        "/api/production/upload",
        files={"file": ("cases.xlsx", b"data", XLSX_TYPE)},
    )
    missing_file = client.post("/api/production/upload", data={"shipmentId": "S1"})

    assert missing_shipment.status_code == 400
    assert missing_shipment.json()["detail"]["code"] == "INVALID_FORM"
    assert missing_file.status_code == 400


def test_upload_rejects_oversized_file(client, monkeypatch):
    monkeypatch.setattr(settings, "PRODUCTION_UPLOAD_MAX_BYTES", 8)

    response = client.post(
        "/api/production/upload",
        files={"file": ("cases.xlsx", b"0123456789", XLSX_TYPE)},
        data={"shipmentId": "S1"},
    )

    assert response.status_code == 413
    assert response.json()["detail"]["code"] == "FILE_TOO_LARGE"


def test_process_cases_persists_and_locks(client, db_session):
    response = _process(client, {"S1": [_case("A"), _case("B")], "S2": [_case("A")]})

    assert response.status_code == 200
    assert response.json() == {
        "totalItems": 3,
        "perShipmentCounts": {"S1": 2, "S2": 1},
        "status": "ok",
    }
    shipment = db_session.get(Shipment, "S1")
    assert shipment.production_uploaded is True
    meta = db_session.get(ProductionMeta, "S1")
    assert meta.case_numbers == ["A", "B"]
    assert meta.count == 2
    assert meta.file_name == "cases.xlsx"
    row = db_session.query(ProductionCase).filter_by(shipment_id="S1", case_number="A").one()
    assert row.uploaded_by == "operator@example.com"
    assert row.total_lines == 5
    audit = db_session.query(FileUpload).one()
    assert audit.status == "completed"
    assert audit.processed_count == 3
    assert audit.shipment_ids == ["S1", "S2"]


def test_process_cases_skips_malformed_items(client, db_session):
    response = _process(
        client,
        {
            "S1": [
                _case("GOOD"),
                _case("NEG", bulkLines=-1),
                _case("", totalLines=3),
                _case("MISSING", domesticLines=None),
            ]
        },
    )

    assert response.status_code == 200
    assert response.json()["totalItems"] == 1
    numbers = [row.case_number for row in db_session.query(ProductionCase).all()]
    assert numbers == ["GOOD"]


def test_process_cases_upserts_duplicate_case_numbers(client, db_session):
    response = _process(client, {"S1": [_case("A", total=1), _case("A", total=9)]})

    assert response.status_code == 200
    rows = db_session.query(ProductionCase).all()
    assert len(rows) == 1
    assert rows[0].total_lines == 9
    assert db_session.get(ProductionMeta, "S1").case_numbers == ["A"]


def test_process_cases_refuses_locked_shipment(client, db_session):
    assert _process(client, {"S1": [_case("A")]}).status_code == 200

    response = _process(client, {"S2": [_case("X")], "S1": [_case("B")]})

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["code"] == "SHIPMENT_LOCKED"
    assert detail["shipment_ids"] == ["S1"]
    # Whole request is rolled back, including shipments processed before the conflict.
    assert db_session.query(ProductionCase).filter_by(shipment_id="S2").count() == 0
    assert [row.case_number for row in db_session.query(ProductionCase).all()] == ["A"]
    statuses = sorted(row.status for row in db_session.query(FileUpload).all())
    assert statuses == ["completed", "failed"]


def test_process_cases_requires_shipments(client):
    response = _process(client, {})

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_PAYLOAD"


def test_delete_subset_keeps_lock_and_prunes_meta(client, db_session):
    _process(client, {"S1": [_case("A"), _case("B")]})

    response = _delete(client, {"S1": ["A"]})

    assert response.status_code == 200
    assert response.json()["totalDeletes"] == 1
    assert db_session.get(Shipment, "S1").production_uploaded is True
    meta = db_session.get(ProductionMeta, "S1")
    assert meta.case_numbers == ["B"]
    assert meta.count == 1


def test_delete_last_cases_releases_lock(client, db_session):
    _process(client, {"S1": [_case("A"), _case("B")]})

    response = _delete(client, {"S1": ["A", "B", "NOT-THERE"]})

    assert response.json()["totalDeletes"] == 2
    assert db_session.get(Shipment, "S1").production_uploaded is False
    assert db_session.get(ProductionMeta, "S1") is None


def test_wildcard_delete_removes_cases_and_archived_file(client, db_session, storage):
    stored = storage.save(shipment_id="S1", file_name="cases.xlsx", content=b"data")
    _process(
        client,
        {"S1": [_case("A"), _case("B")]},
        meta={"fileName": "cases.xlsx", "storagePath": stored.storage_path},
    )
    _process(client, {"S2": [_case("A")]})

    response = _delete(client, {"S1": ["*"]})

    assert response.json()["totalDeletes"] == 2
    assert not storage.exists(stored.storage_path)
    assert db_session.get(Shipment, "S1").production_uploaded is False
    assert db_session.query(ProductionCase).filter_by(shipment_id="S2").count() == 1
    assert db_session.get(Shipment, "S2").production_uploaded is True


def test_delete_unknown_shipment_is_a_noop(client, db_session):
    response = _delete(client, {"GHOST": ["*"]})

    assert response.status_code == 200
    assert response.json()["totalDeletes"] == 0
    assert db_session.get(Shipment, "GHOST") is None


def test_shipment_states(client):
    _process(client, {"S1": [_case("A")]})

    response = client.get("/api/production/shipments", params={"ids": "S1,S9"})

    assert response.json() == [
        {"shipmentId": "S1", "productionUploaded": True},
        {"shipmentId": "S9", "productionUploaded": False},
    ]


def test_open_cases_hide_fully_consumed(client, db_session):
    _process(client, {"S1": [_case("A", total=4), _case("B", total=4), _case("C", total=0)]})
    row = db_session.query(ProductionCase).filter_by(case_number="B").one()
    row.consumed_lines = 4
    db_session.commit()

    response = client.get("/api/production/cases", params={"shipmentId": "S1"})

    assert response.status_code == 200
    assert response.json() == {
        "caseNumbers": ["A"],
        "balances": [{"caseNumber": "A", "remainingLines": 4.0}],
    }


def test_open_cases_requires_shipment(client):
    response = client.get("/api/production/cases")

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "MISSING_PARAMS"


def test_case_detail(client):
    _process(client, {"S1": [_case("A", total=6)]})

    found = client.get("/api/production/case", params={"shipmentId": "S1", "caseNumber": "A"})
    missing = client.get("/api/production/case", params={"shipmentId": "S1", "caseNumber": "Z"})

    assert found.status_code == 200
    body = found.json()
    assert body["success"] is True
    assert body["data"]["totalLines"] == 6
    assert body["data"]["remainingLines"] == 6
    assert body["data"]["uploadedBy"] == "operator@example.com"
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "NOT_FOUND"


def test_template_download(client):
    response = client.get("/api/production/template.xlsx")

    assert response.status_code == 200
    assert response.headers["content-type"] == XLSX_TYPE
    assert "attachment" in response.headers["content-disposition"]
    ws = load_workbook(BytesIO(response.content)).active
    assert [cell.value for cell in ws[1]] == list(COLUMN_MAP.values())


def test_parse_preview(client):
    content = csv_bytes([["A", 1, 2, 1, 1], ["", 1, 1, 1, 1], ["B", "x", 1, 1, 1]])

    response = client.post(
        "/api/production/parse",
        params={"filename": "cases.csv"},
        content=content,
        headers={"Content-Type": "text/csv"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["validCount"] == 1
    assert body["errorCount"] == 2
    assert body["records"][0]["caseNumber"] == "A"
    assert body["errors"] == [
        {"row": 3, "messages": ["Case number is required"]},
        {"row": 4, "messages": ["criticalParts must be a number"]},
    ]


def test_parse_preview_rejects_bad_header(client):
    content = csv_bytes([["A", 1, 2, 1, 1]], header=["id", "a", "b", "c", "d"])

    response = client.post("/api/production/parse", params={"filename": "cases.csv"}, content=content)

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["code"] == "INVALID_FORMAT"
    assert detail["expected"].startswith("Expected headers at row 1")


def test_endpoints_dark_when_disabled(client, monkeypatch):
    monkeypatch.setattr(settings, "PRODUCTION_INGESTION_ENABLED", False)

    assert client.get("/api/production/shipments", params={"ids": "S1"}).status_code == 404
    assert client.get("/health").json() == {"status": "up"}


def test_wildcard_delete_keeps_archive_shared_with_other_shipment(client, db_session, storage):
    stored = storage.save(shipment_id="S1", file_name="cases.xlsx", content=b"data")
    _process(
        client,
        {"S1": [_case("A")], "S2": [_case("A")]},
        meta={"fileName": "cases.xlsx", "storagePath": stored.storage_path},
    )

    _delete(client, {"S1": ["*"]})

    assert storage.exists(stored.storage_path)
    assert db_session.get(ProductionMeta, "S2").storage_path == stored.storage_path

    _delete(client, {"S2": ["*"]})

    assert not storage.exists(stored.storage_path)
