from datetime import date, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from payvat import models
from payvat.config import settings
from payvat.pipelines import processing
from conftest import INVOICE_TEXT, bearer, create_user, register

RECEIPT_TEXT = "Fuel receipt\nTotal: €53.00\n€10.00 VAT included\n"


async def upload(client, name="invoice.txt", content=INVOICE_TEXT, category="SALES_INVOICE", headers=None, **data):
    if isinstance(content, str):
        content = content.encode("utf-8")
    return await client.post(
        "/api/upload",
        files={"file": (name, content, "text/plain")},
        data={"category": category, **data},
        headers=headers,
    )


async def audit_rows(session_factory, action):
    async with session_factory() as s:
        result = await s.execute(select(models.AuditLog).where(models.AuditLog.action == action))
        return list(result.scalars())


@pytest.mark.asyncio
async def test_anonymous_upload_creates_guest_and_extracts_vat(client):
    response = await upload(client)

    assert response.status_code == 201
    body = response.json()
    assert body["is_guest"] is True
    assert body["processed"] is True
    assert body["duplicate"]["is_duplicate"] is False
    document = body["document"]
    assert document["category"] == "SALES_INVOICE"
    assert document["document_type"] == "TEXT"
    assert document["extracted_data"]["sales_vat"] == [23.0]
    assert document["extracted_data"]["total_amount"] == 123.0
    assert document["extracted_data"]["vat_rate"] == 23
    assert "auth_token=" in response.headers["set-cookie"]

    # The guest cookie is reused on the next upload
    second = await upload(client, "receipt.txt", RECEIPT_TEXT, "PURCHASE_RECEIPT")
    assert second.status_code == 201
    assert "set-cookie" not in second.headers

    listing = await client.get("/api/documents")
    assert listing.json()["total"] == 2


@pytest.mark.asyncio
async def test_guest_keeps_documents_after_registering(client, session_factory):
    await upload(client)
    await upload(client, "receipt.txt", RECEIPT_TEXT, "PURCHASE_RECEIPT")

    response = await client.post(
        "/api/auth/register",
        json={
            "email": "converted@acme.ie",
            "password": "correct-horse-battery",
            "business_name": "Converted Ltd",
            "vat_number": "IE8888888H",
        },
    )
    assert response.status_code == 201
    assert response.json()["converted_from_guest"] is True
    client.cookies.clear()

    login = await client.post(
        "/api/auth/login", json={"email": "converted@acme.ie", "password": "correct-horse-battery"}
    )
    assert login.status_code == 200
    documents = await client.get("/api/documents")
    assert documents.json()["total"] == 2

    async with session_factory() as s:
        guests = await s.execute(select(models.User).where(models.User.role == "GUEST"))
        assert guests.scalars().first() is None
    assert len(await audit_rows(session_factory, "GUEST_CONVERTED_TO_USER")) == 1


@pytest.mark.asyncio
async def test_guests_cannot_use_account_routes(client):
    await upload(client)
    response = await client.post(
        "/api/vat/calculate",
        json={"sales_vat": "10.00", "period_start": "2024-01-01", "period_end": "2024-02-29"},
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_documents_require_a_session(client):
    response = await client.get("/api/documents")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_duplicate_upload_is_flagged(client):
    token = await register(client)
    first = await upload(client, headers=bearer(token))
    second = await upload(client, "invoice copy.txt", headers=bearer(token))

    assert second.status_code == 201
    assert second.json()["duplicate"] == {
        "is_duplicate": True,
        "duplicate_of_id": first.json()["document"]["id"],
        "similarity": 1.0,
    }
    assert second.json()["document"]["is_duplicate"] is True
    assert any("duplicate" in w for w in second.json()["warnings"])


@pytest.mark.asyncio
async def test_rescanned_invoice_with_same_figures_is_flagged(client):
    token = await register(client)
    first = await upload(client, headers=bearer(token))
    rescan = INVOICE_TEXT.replace("INVOICE INV-2024-001", "Invoice INV-2024-001 (scanned copy)")
    second = await upload(client, "scan-0042.txt", rescan, headers=bearer(token))

    assert second.json()["duplicate"] == {
        "is_duplicate": True,
        "duplicate_of_id": first.json()["document"]["id"],
        "similarity": 0.8,
    }
    fingerprints = [r.json()["document"]["extracted_data"]["fingerprint"] for r in (first, second)]
    assert fingerprints[0]["metadata_hash"] == fingerprints[1]["metadata_hash"]
    assert fingerprints[0]["content_hash"] != fingerprints[1]["content_hash"]


@pytest.mark.asyncio
async def test_stored_file_written_only_for_committed_uploads(client, monkeypatch, tmp_path):
    monkeypatch.setattr(settings.upload, "storage_dir", str(tmp_path))
    token = await register(client)

    blocked = await upload(client, "run.txt", b"#!/bin/sh\nrm -rf ~", headers=bearer(token))
    assert blocked.status_code == 422
    assert list(tmp_path.rglob("*")) == []

    stored = await upload(client, headers=bearer(token))
    assert stored.status_code == 201
    assert [p.name for p in tmp_path.rglob("*.txt")] == [stored.json()["document"]["file_name"]]


@pytest.mark.asyncio
async def test_failed_commit_removes_stored_file(session, monkeypatch, tmp_path):
    monkeypatch.setattr(settings.upload, "storage_dir", str(tmp_path))
    owner = await create_user(session, email="disk@example.ie", vat_number="IE5555555E")

    async def failing_audit(*args, **kwargs):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(processing, "_audit_upload", failing_audit)

    with pytest.raises(SQLAlchemyError):
        await processing.process_upload(
            session, owner, filename="invoice.txt", content=INVOICE_TEXT.encode(),
            mime_type="text/plain", category="SALES_INVOICE",
        )
    assert [p for p in tmp_path.rglob("*") if p.is_file()] == []


@pytest.mark.asyncio
async def test_other_users_documents_are_not_found(client):
    owner = await register(client)
    intruder = await register(client, email="intruder@example.ie", vat_number="IE9999999J")
    document_id = (await upload(client, headers=bearer(owner))).json()["document"]["id"]

    for method, url in [
        ("GET", f"/api/documents/{document_id}"),
        ("DELETE", f"/api/documents/{document_id}"),
        ("POST", f"/api/documents/{document_id}/reprocess"),
    ]:
        response = await client.request(method, url, headers=bearer(intruder))
        assert response.status_code == 404
        assert response.json() == {"error": "not_found", "detail": "Document not found"}

    assert (await client.get(f"/api/documents/{document_id}", headers=bearer(owner))).status_code == 200


@pytest.mark.asyncio
async def test_manual_correction_is_audited(client, session_factory):
    token = await register(client)
    document_id = (await upload(client, headers=bearer(token))).json()["document"]["id"]

    response = await client.patch(
        f"/api/documents/{document_id}",
        json={"sales_vat": ["30.00"], "note": "Supplier reissued invoice"},
        headers=bearer(token),
    )

    assert response.status_code == 200
    data = response.json()["extracted_data"]
    assert data["sales_vat"] == [30.0]
    assert data["corrected"] is True
    assert data["method"] == "manual"
    assert data["correction_note"] == "Supplier reissued invoice"

    (row,) = await audit_rows(session_factory, "CORRECT_VAT_DATA")
    assert row.entity_id == document_id
    assert row.old_values == {"sales_vat": [23.0]}
    assert row.new_values == {"sales_vat": [30.0]}

    summary = await client.get("/api/documents/extracted-vat", headers=bearer(token))
    assert summary.json()["total_sales_vat"] == 30.0
    assert summary.json()["documents"][0]["corrected"] is True

    # Reprocessing discards the manual values
    reprocessed = await client.post(f"/api/documents/{document_id}/reprocess", headers=bearer(token))
    assert reprocessed.json()["document"]["extracted_data"]["sales_vat"] == [23.0]
    assert reprocessed.json()["document"]["extracted_data"]["corrected"] is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [{}, {"note": "only a note"}, {"sales_vat": ["-1.00"]}, {"category": "NOT_A_CATEGORY"}],
)
async def test_invalid_corrections_are_rejected(client, payload):
    token = await register(client)
    document_id = (await upload(client, headers=bearer(token))).json()["document"]["id"]

    response = await client.patch(f"/api/documents/{document_id}", json=payload, headers=bearer(token))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_extracted_vat_summary(client):
    token = await register(client)
    await upload(client, headers=bearer(token))
    await upload(client, "receipt.txt", RECEIPT_TEXT, "PURCHASE_RECEIPT", headers=bearer(token))

    response = await client.get("/api/documents/extracted-vat", headers=bearer(token))

    body = response.json()
    assert body["total_sales_vat"] == 23.0
    assert body["total_purchase_vat"] == 10.0
    assert body["net_vat"] == 13.0
    assert body["document_count"] == 2
    assert [d["original_name"] for d in body["documents"]] == ["invoice.txt", "receipt.txt"]

    filtered = await client.get("/api/documents?category=purchase_receipt", headers=bearer(token))
    assert filtered.json()["total"] == 1


@pytest.mark.asyncio
async def test_delete_document(client, session_factory):
    token = await register(client)
    document_id = (await upload(client, headers=bearer(token))).json()["document"]["id"]

    response = await client.delete(f"/api/documents/{document_id}", headers=bearer(token))

    assert response.json() == {"success": True, "message": "Document deleted"}
    assert (await client.get(f"/api/documents/{document_id}", headers=bearer(token))).status_code == 404
    (row,) = await audit_rows(session_factory, "DELETE_DOCUMENT")
    assert row.old_values == {"original_name": "invoice.txt", "category": "SALES_INVOICE"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "name,content,category,status,error",
    [
        ("tool.exe", b"MZ...", "SALES_INVOICE", 400, "bad_request"),
        ("empty.txt", b"", "SALES_INVOICE", 400, "bad_request"),
        ("invoice.txt", b"VAT: 1.00", "GIFT", 400, "bad_request"),
        ("run.txt", b"#!/bin/sh\nrm -rf ~", "SALES_INVOICE", 422, "upload_blocked"),
    ],
)
async def test_rejected_uploads(client, name, content, category, status, error):
    token = await register(client)
    response = await upload(client, name, content, category, headers=bearer(token))

    assert response.status_code == status
    assert response.json()["error"] == error


@pytest.mark.asyncio
async def test_rejected_anonymous_upload_leaves_no_guest(client, session_factory):
    response = await upload(client, "tool.exe", b"MZ...")

    assert response.status_code == 400
    async with session_factory() as s:
        assert (await s.execute(select(models.User))).scalars().first() is None


@pytest.mark.asyncio
async def test_oversized_upload_is_413(client, monkeypatch):
    monkeypatch.setattr(settings.upload, "max_file_size", 1024)
    token = await register(client)

    response = await upload(client, content=b"x" * 2048, headers=bearer(token))

    assert response.status_code == 413
    assert response.json()["error"] == "file_too_large"


@pytest.mark.asyncio
async def test_upload_to_foreign_return_is_404(client):
    token = await register(client)
    response = await upload(client, headers=bearer(token), vat_return_id="does-not-exist")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_unparseable_document_is_stored_unprocessed(client):
    token = await register(client)
    response = await upload(client, "latin1.txt", "Caf\xe9 VAT: 5.00".encode("latin-1"), headers=bearer(token))

    assert response.status_code == 201
    body = response.json()
    assert body["processed"] is False
    assert body["document"]["scan_result"].startswith("Processing failed")


@pytest.mark.asyncio
async def test_batch_upload(client, monkeypatch):
    monkeypatch.setattr(settings.batch, "max_concurrent", 1)
    token = await register(client)

    response = await client.post(
        "/api/upload/batch",
        files=[
            ("files", ("invoice.txt", INVOICE_TEXT.encode(), "text/plain")),
            ("files", ("receipt.txt", RECEIPT_TEXT.encode(), "text/plain")),
            ("files", ("tool.exe", b"MZ...", "application/octet-stream")),
        ],
        data={"category": "SALES_INVOICE"},
        headers=bearer(token),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["summary"]["completed"] == 2
    assert body["summary"]["error"] == 1
    failed = [i for i in body["items"] if i["status"] == "error"]
    assert failed[0]["filename"] == "tool.exe"
    assert failed[0]["attempts"] == 1

    listing = await client.get("/api/documents", headers=bearer(token))
    assert listing.json()["total"] == 2


@pytest.mark.asyncio
async def test_anonymous_batch_without_accepted_files_leaves_no_guest(client, session_factory):
    response = await client.post(
        "/api/upload/batch",
        files=[
            ("files", ("tool.exe", b"MZ...", "application/octet-stream")),
            ("files", ("setup.exe", b"MZ....", "application/octet-stream")),
        ],
        data={"category": "SALES_INVOICE"},
    )

    assert response.status_code == 200
    assert response.json()["summary"]["error"] == 2
    assert "set-cookie" not in response.headers
    async with session_factory() as s:
        assert (await s.execute(select(models.User))).scalars().first() is None


@pytest.mark.asyncio
async def test_anonymous_batch_keeps_guest_with_documents(client):
    response = await client.post(
        "/api/upload/batch",
        files=[
            ("files", ("invoice.txt", INVOICE_TEXT.encode(), "text/plain")),
            ("files", ("tool.exe", b"MZ...", "application/octet-stream")),
        ],
        data={"category": "SALES_INVOICE"},
    )

    assert response.json()["is_guest"] is True
    assert "auth_token=" in response.headers["set-cookie"]
    listing = await client.get("/api/documents")
    assert listing.json()["total"] == 1


@pytest.mark.asyncio
async def test_monthly_summary_groups_by_upload_month(client, session_factory):
    token = await register(client)
    invoice_id = (await upload(client, headers=bearer(token))).json()["document"]["id"]
    await upload(client, "receipt.txt", RECEIPT_TEXT, "PURCHASE_RECEIPT", headers=bearer(token))

    now = models.utcnow()
    last_month = now.replace(day=1, hour=12) - timedelta(days=1)
    async with session_factory() as s:
        invoice = await s.get(models.Document, invoice_id)
        invoice.uploaded_at = last_month
        await s.commit()

    response = await client.get("/api/documents/monthly-summary", headers=bearer(token))

    body = response.json()
    assert body["requested_period"] == {"year": now.year, "month": now.month}
    current, previous = body["monthly_summaries"]
    assert body["current_month"] == current
    assert (current["year"], current["month"]) == (now.year, now.month)
    assert current["purchase_document_count"] == 1
    assert current["total_purchase_vat"] == 10.0
    assert current["net_vat"] == -10.0
    assert current["trends"] == {"sales_vat_change": -100.0, "purchase_vat_change": 0.0, "document_count_change": 0.0}
    assert (previous["year"], previous["month"]) == (last_month.year, last_month.month)
    assert previous["total_sales_vat"] == 23.0
    assert previous["sales_document_count"] == 1

    older = await client.get("/api/documents/monthly-summary?year=2001&month=1", headers=bearer(token))
    assert older.json()["monthly_summaries"] == []
    assert older.json()["current_month"] is None

    invalid = await client.get("/api/documents/monthly-summary?month=13", headers=bearer(token))
    assert invalid.status_code == 400


@pytest.mark.asyncio
async def test_search_documents(client):
    token = await register(client)
    await upload(client, headers=bearer(token))
    await upload(client, "receipt.txt", RECEIPT_TEXT, "PURCHASE_RECEIPT", headers=bearer(token))
    await upload(client, "invoice copy.txt", headers=bearer(token))

    async def names(query):
        response = await client.get(f"/api/documents/search?{query}", headers=bearer(token))
        assert response.status_code == 200, response.text
        return [d["original_name"] for d in response.json()["documents"]]

    assert (await names("query=invoice"))[0] == "invoice.txt"
    assert sorted(await names("query=INVOICE")) == ["invoice copy.txt", "invoice.txt"]
    assert await names("categories=PURCHASE_RECEIPT") == ["receipt.txt"]
    assert await names("is_duplicate=true") == ["invoice copy.txt"]
    assert sorted(await names("min_amount=100")) == ["invoice copy.txt", "invoice.txt"]
    assert await names("sort_by=name&sort_order=asc") == ["invoice copy.txt", "invoice.txt", "receipt.txt"]
    assert await names(f"date_to={(date.today() - timedelta(days=2)).isoformat()}") == []

    page = (await client.get("/api/documents/search?limit=1", headers=bearer(token))).json()
    assert page["total"] == 3
    assert page["has_more"] is True

    bad = await client.get("/api/documents/search?categories=NOPE", headers=bearer(token))
    assert bad.status_code == 400
