"""Document listing, search, monthly summaries, VAT aggregation, correction and deletion."""
from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Literal

from fastapi import APIRouter, HTTPException, Query, status
from rapidfuzz import fuzz
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ai.extractor import ExtractedVATData, aggregate_vat, validate_extracted
from .. import models
from ..audit import record_audit
from ..deps import ContextDep, DocumentOwner, SessionDep
from ..pipelines.processing import parse_category, reprocess_document
from ..schemas import DocumentCorrection, document_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["documents"])

CORRECTABLE_FIELDS = ("sales_vat", "purchase_vat", "total_amount", "vat_rate")


async def get_owned_document(session: AsyncSession, document_id: str, owner: models.User) -> models.Document:
    document = await session.get(models.Document, document_id)
    # Someone else's document is indistinguishable from a missing one
    if document is None or document.user_id != owner.id:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Document not found")
    return document


async def _check_return_owner(session: AsyncSession, vat_return_id: str, owner: models.User) -> None:
    vat_return = await session.get(models.VATReturn, vat_return_id)
    if vat_return is None or vat_return.user_id != owner.id:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "VAT return not found")


@router.get("")
async def list_documents(
    session: SessionDep,
    owner: DocumentOwner,
    category: str | None = None,
    vat_return_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> dict:
    stmt = select(models.Document).where(models.Document.user_id == owner.id)
    if category:
        stmt = stmt.where(models.Document.category == parse_category(category).value)
    if vat_return_id:
        stmt = stmt.where(models.Document.vat_return_id == vat_return_id)

    total = await session.scalar(select(func.count()).select_from(stmt.subquery()))
    result = await session.execute(
        stmt.order_by(models.Document.uploaded_at.desc()).limit(limit).offset(offset)
    )
    return {
        "documents": [document_to_dict(d) for d in result.scalars()],
        "total": total or 0,
        "limit": limit,
        "offset": offset,
    }


@router.get("/extracted-vat")
async def extracted_vat(
    session: SessionDep,
    owner: DocumentOwner,
    vat_return_id: str | None = None,
) -> dict:
    """Sales and purchase VAT summed over the owner's processed documents."""
    stmt = select(models.Document).where(
        models.Document.user_id == owner.id,
        models.Document.is_scanned.is_(True),
    )
    if vat_return_id:
        stmt = stmt.where(models.Document.vat_return_id == vat_return_id)
    documents = list((await session.execute(stmt.order_by(models.Document.uploaded_at))).scalars())

    extracted = [ExtractedVATData.from_dict(d.extracted_data) for d in documents]
    aggregate = aggregate_vat(extracted)

    return {
        **aggregate.to_dict(),
        "documents": [
            {
                "id": d.id,
                "original_name": d.original_name,
                "category": d.category,
                "sales_vat": float(data.total_sales_vat),
                "purchase_vat": float(data.total_purchase_vat),
                "confidence": round(data.confidence, 2),
                "corrected": bool((d.extracted_data or {}).get("corrected")),
            }
            for d, data in zip(documents, extracted)
        ],
    }


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + month - 1 + delta
    return index // 12, index % 12 + 1


def _percent_change(current: float, previous: float) -> float:
    if previous <= 0:
        return 0.0
    return round((current - previous) / previous * 100, 1)


@router.get("/monthly-summary")
async def monthly_summary(
    session: SessionDep,
    owner: DocumentOwner,
    year: int | None = Query(default=None, ge=2000, le=2100),
    month: int | None = Query(default=None, ge=1, le=12),
) -> dict:
    """Per-month document counts and extracted VAT for the twelve months
    ending at ``year``/``month`` (default: the current month).

    Months are keyed on upload date. Trends compare each month with the
    previous month that has documents.
    """
    today = models.utcnow()
    target = (year or today.year, month or today.month)
    start = datetime(*_shift_month(*target, -11), 1)
    end = datetime(*_shift_month(*target, 1), 1)

    result = await session.execute(
        select(models.Document).where(
            models.Document.user_id == owner.id,
            models.Document.uploaded_at >= start,
            models.Document.uploaded_at < end,
        )
    )

    buckets: dict[tuple[int, int], dict] = {}
    for document in result.scalars():
        key = (document.uploaded_at.year, document.uploaded_at.month)
        bucket = buckets.setdefault(key, {
            "documents": 0, "sales": 0, "purchases": 0, "duplicates": 0,
            "sales_vat": Decimal("0"), "purchase_vat": Decimal("0"), "confidence": 0.0,
        })
        data = ExtractedVATData.from_dict(document.extracted_data)
        bucket["documents"] += 1
        if document.category.startswith("SALES"):
            bucket["sales"] += 1
        elif document.category.startswith("PURCHASE"):
            bucket["purchases"] += 1
        if document.is_duplicate:
            bucket["duplicates"] += 1
        bucket["sales_vat"] += data.total_sales_vat
        bucket["purchase_vat"] += data.total_purchase_vat
        bucket["confidence"] += data.confidence

    summaries = []
    for (y, m), bucket in sorted(buckets.items(), reverse=True):
        summaries.append({
            "year": y,
            "month": m,
            "document_count": bucket["documents"],
            "sales_document_count": bucket["sales"],
            "purchase_document_count": bucket["purchases"],
            "duplicate_count": bucket["duplicates"],
            "total_sales_vat": float(bucket["sales_vat"]),
            "total_purchase_vat": float(bucket["purchase_vat"]),
            "net_vat": float(bucket["sales_vat"] - bucket["purchase_vat"]),
            "average_confidence": round(bucket["confidence"] / bucket["documents"], 2),
        })

    trend_fields = {
        "sales_vat_change": "total_sales_vat",
        "purchase_vat_change": "total_purchase_vat",
        "document_count_change": "document_count",
    }
    for current, previous in zip(summaries, summaries[1:] + [{}]):
        current["trends"] = {
            name: _percent_change(current[key], previous.get(key, 0)) for name, key in trend_fields.items()
        }

    return {
        "monthly_summaries": summaries,
        "current_month": next((s for s in summaries if (s["year"], s["month"]) == target), None),
        "requested_period": {"year": target[0], "month": target[1]},
    }


def _relevance(document: models.Document, query: str) -> float:
    name = document.original_name.lower()
    score = 1.0 + fuzz.partial_ratio(query, name) / 100
    if query in name:
        score += 2.0
    if query in (name, Path(name).stem):
        score += 5.0
    if document.is_scanned and not document.is_duplicate:
        score += 0.3
    return round(score, 2)


@router.get("/search")
async def search_documents(
    session: SessionDep,
    owner: DocumentOwner,
    query: str | None = Query(default=None, max_length=200),
    categories: str | None = Query(default=None, description="Comma separated categories"),
    is_duplicate: bool | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    min_amount: float | None = Query(default=None, ge=0),
    max_amount: float | None = Query(default=None, ge=0),
    sort_by: Literal["relevance", "uploaded_at", "name", "total_amount"] = "relevance",
    sort_order: Literal["asc", "desc"] = "desc",
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> dict:
    """Search the owner's documents by name or scan result with filters.

    ``min_amount``/``max_amount`` apply to the extracted total. Relevance
    ordering only applies when ``query`` is given; otherwise results are
    ordered by upload time.
    """
    stmt = select(models.Document).where(models.Document.user_id == owner.id)
    needle = (query or "").strip().lower()
    if needle:
        pattern = f"%{needle}%"
        stmt = stmt.where(or_(
            func.lower(models.Document.original_name).like(pattern),
            func.lower(models.Document.file_name).like(pattern),
            func.lower(models.Document.scan_result).like(pattern),
        ))
    if categories:
        wanted = [parse_category(c.strip()).value for c in categories.split(",") if c.strip()]
        stmt = stmt.where(models.Document.category.in_(wanted))
    if is_duplicate is not None:
        stmt = stmt.where(models.Document.is_duplicate.is_(is_duplicate))
    if date_from:
        stmt = stmt.where(models.Document.uploaded_at >= datetime.combine(date_from, time.min))
    if date_to:
        stmt = stmt.where(models.Document.uploaded_at < datetime.combine(date_to + timedelta(days=1), time.min))

    documents = list((await session.execute(stmt)).scalars())

    def total_of(document: models.Document) -> float | None:
        return (document.extracted_data or {}).get("total_amount")

    if min_amount is not None or max_amount is not None:
        documents = [
            d for d in documents
            if total_of(d) is not None
            and (min_amount is None or total_of(d) >= min_amount)
            and (max_amount is None or total_of(d) <= max_amount)
        ]

    scores = {d.id: _relevance(d, needle) if needle else 1.0 for d in documents}
    sort_keys = {
        "relevance": lambda d: (scores[d.id], d.uploaded_at) if needle else (d.uploaded_at,),
        "uploaded_at": lambda d: (d.uploaded_at,),
        "name": lambda d: (d.original_name.lower(),),
        "total_amount": lambda d: (total_of(d) or 0.0, d.uploaded_at),
    }
    documents.sort(key=sort_keys[sort_by], reverse=sort_order == "desc")

    page = documents[offset:offset + limit]
    return {
        "documents": [{**document_to_dict(d), "relevance_score": scores[d.id]} for d in page],
        "total": len(documents),
        "limit": limit,
        "offset": offset,
        "has_more": offset + len(page) < len(documents),
    }


@router.get("/{document_id}")
async def get_document(document_id: str, session: SessionDep, owner: DocumentOwner) -> dict:
    document = await get_owned_document(session, document_id, owner)
    return document_to_dict(document)


@router.patch("/{document_id}")
async def correct_document(
    document_id: str,
    body: DocumentCorrection,
    session: SessionDep,
    owner: DocumentOwner,
    context: ContextDep,
) -> dict:
    """Manually correct extracted VAT; the previous values go to the audit trail."""
    document = await get_owned_document(session, document_id, owner)
    current = dict(document.extracted_data or {})
    changes = body.model_dump(exclude_unset=True)

    old_values = {k: current.get(k) for k in CORRECTABLE_FIELDS if k in changes}
    new_values: dict = {}

    for key in CORRECTABLE_FIELDS:
        if key not in changes:
            continue
        value = changes[key]
        if isinstance(value, list):
            value = [float(a) for a in value]
        elif value is not None:
            value = float(value)
        current[key] = value
        new_values[key] = value

    if "category" in changes and changes["category"]:
        old_values["category"] = document.category
        document.category = parse_category(changes["category"]).value
        new_values["category"] = document.category

    if "vat_return_id" in changes:
        if changes["vat_return_id"]:
            await _check_return_owner(session, changes["vat_return_id"], owner)
        old_values["vat_return_id"] = document.vat_return_id
        document.vat_return_id = changes["vat_return_id"]
        new_values["vat_return_id"] = document.vat_return_id

    if not new_values:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "No changes supplied")

    if any(k in new_values for k in CORRECTABLE_FIELDS):
        data = ExtractedVATData.from_dict(current)
        validation = validate_extracted(data)
        current["corrected"] = True
        current["corrected_at"] = models.utcnow().isoformat()
        current["correction_note"] = changes.get("note")
        current["method"] = "manual"
        current["validation"] = {
            "is_valid": validation.is_valid,
            "issues": validation.issues,
            "warnings": validation.warnings,
        }
        # Reassign so the JSON column is flagged dirty
        document.extracted_data = current
        document.is_scanned = True

    record_audit(
        session,
        user_id=owner.id,
        action="CORRECT_VAT_DATA",
        entity_type="Document",
        entity_id=document.id,
        context=context,
        old_values=old_values,
        new_values=new_values,
        metadata={"note": changes.get("note")} if changes.get("note") else None,
    )
    await session.commit()
    logger.info(f"Document {document.id} corrected by {owner.id}: {sorted(new_values)}")
    return document_to_dict(document)


@router.post("/{document_id}/reprocess")
async def reprocess(
    document_id: str,
    session: SessionDep,
    owner: DocumentOwner,
    context: ContextDep,
) -> dict:
    """Run extraction again on the stored file."""
    document = await get_owned_document(session, document_id, owner)
    processed = await reprocess_document(session, document, context=context)
    return {
        "success": True,
        "processed": processed.processed,
        "document": document_to_dict(processed.document),
        "warnings": processed.warnings,
    }


@router.delete("/{document_id}")
async def delete_document(
    document_id: str,
    session: SessionDep,
    owner: DocumentOwner,
    context: ContextDep,
) -> dict:
    document = await get_owned_document(session, document_id, owner)
    file_path = document.file_path

    record_audit(
        session,
        user_id=owner.id,
        action="DELETE_DOCUMENT",
        entity_type="Document",
        entity_id=document.id,
        context=context,
        old_values={"original_name": document.original_name, "category": document.category},
    )
    await session.execute(delete(models.Document).where(models.Document.id == document.id))
    await session.commit()

    if file_path:
        try:
            await asyncio.to_thread(Path(file_path).unlink, missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove stored file for document {document_id}: {e}")

    return {"success": True, "message": "Document deleted"}
