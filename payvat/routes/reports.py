"""User reports and dashboard statistics."""
from __future__ import annotations

import calendar
import logging
from collections import Counter
from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ai.extractor import ExtractedVATData, aggregate_vat
from .. import models
from ..deps import CurrentUser, SessionDep
from ..schemas import ReportType, payment_to_dict, vat_return_to_dict
from ..vat import q_money

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reports", tags=["reports"])


def report_window(year: int, month: int | None) -> tuple[date, date]:
    """Whole year, or a single month when ``month`` is given."""
    if month:
        return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])
    return date(year, 1, 1), date(year, 12, 31)


async def _vat_summary(session: AsyncSession, user: models.User, start: date, end: date) -> dict:
    returns = list((await session.execute(
        select(models.VATReturn)
        .where(
            models.VATReturn.user_id == user.id,
            models.VATReturn.period_start >= start,
            models.VATReturn.period_start <= end,
        )
        .order_by(models.VATReturn.period_end)
    )).scalars())
    payments = {
        p.vat_return_id: p
        for p in (await session.execute(
            select(models.Payment).where(models.Payment.vat_return_id.in_([r.id for r in returns]))
        )).scalars()
    } if returns else {}

    total_paid = sum(
        (p.amount for p in payments.values() if p.status == models.PaymentStatus.COMPLETED.value),
        Decimal("0"),
    )
    return {
        "totals": {
            "total_sales_vat": float(q_money(sum((r.sales_vat for r in returns), Decimal("0")))),
            "total_purchase_vat": float(q_money(sum((r.purchase_vat for r in returns), Decimal("0")))),
            "total_net_vat": float(q_money(sum((r.net_vat for r in returns), Decimal("0")))),
            "total_paid": float(q_money(total_paid)),
            "returns_count": len(returns),
            "submitted_count": sum(1 for r in returns if r.status != models.ReturnStatus.DRAFT.value),
        },
        "vat_returns": [
            {
                **vat_return_to_dict(r),
                "payment": payment_to_dict(payments[r.id]) if r.id in payments else None,
            }
            for r in returns
        ],
    }


async def _payment_history(session: AsyncSession, user: models.User, start: date, end: date) -> dict:
    payments = list((await session.execute(
        select(models.Payment)
        .where(
            models.Payment.user_id == user.id,
            func.date(models.Payment.created_at) >= start,
            func.date(models.Payment.created_at) <= end,
        )
        .order_by(models.Payment.created_at.desc())
    )).scalars())
    completed = [p for p in payments if p.status == models.PaymentStatus.COMPLETED.value]
    return {
        "totals": {
            "total_paid": float(q_money(sum((p.amount for p in completed), Decimal("0")))),
            "payments_count": len(payments),
            "by_status": dict(Counter(p.status for p in payments)),
        },
        "payments": [payment_to_dict(p) for p in payments],
    }


async def _document_summary(session: AsyncSession, user: models.User, start: date, end: date) -> dict:
    documents = list((await session.execute(
        select(models.Document).where(
            models.Document.user_id == user.id,
            func.date(models.Document.uploaded_at) >= start,
            func.date(models.Document.uploaded_at) <= end,
        )
    )).scalars())
    processed = [d for d in documents if d.is_scanned]
    aggregate = aggregate_vat(ExtractedVATData.from_dict(d.extracted_data) for d in processed)
    return {
        "totals": {
            "documents_count": len(documents),
            "processed_count": len(processed),
            "duplicate_count": sum(1 for d in documents if d.is_duplicate),
            "total_size": sum(d.file_size for d in documents),
        },
        "by_category": dict(Counter(d.category for d in documents)),
        "by_type": dict(Counter(d.document_type for d in documents)),
        "extracted_vat": aggregate.to_dict(),
    }


REPORTS = {
    "vat-summary": _vat_summary,
    "payment-history": _payment_history,
    "document-summary": _document_summary,
}


@router.get("")
async def generate_report(
    session: SessionDep,
    user: CurrentUser,
    report_type: ReportType = Query(default="vat-summary", alias="type"),
    year: int | None = Query(default=None, ge=2000, le=2100),
    month: int | None = Query(default=None, ge=1, le=12),
) -> dict:
    year = year or date.today().year
    start, end = report_window(year, month)
    body = await REPORTS[report_type](session, user, start, end)
    return {
        "success": True,
        "report": {
            "type": report_type,
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            **body,
        },
    }


@router.get("/stats")
async def dashboard_stats(session: SessionDep, user: CurrentUser) -> dict:
    """Current-year filing statistics for the dashboard."""
    year = date.today().year
    returns = list((await session.execute(
        select(models.VATReturn).where(
            models.VATReturn.user_id == user.id,
            models.VATReturn.period_start >= date(year, 1, 1),
            models.VATReturn.period_start <= date(year, 12, 31),
        )
    )).scalars())
    filed = [r for r in returns if r.status != models.ReturnStatus.DRAFT.value]
    total_vat = sum((r.net_vat for r in filed), Decimal("0"))
    on_time = sum(1 for r in filed if r.submitted_at and r.submitted_at.date() <= r.due_date)

    documents_count = await session.scalar(
        select(func.count()).select_from(models.Document).where(models.Document.user_id == user.id)
    )
    pending_payments = await session.scalar(
        select(func.count()).select_from(models.Payment).where(
            models.Payment.user_id == user.id,
            models.Payment.status == models.PaymentStatus.PENDING.value,
        )
    )

    return {
        "success": True,
        "stats": {
            "current_year": year,
            "total_vat_payments": float(q_money(total_vat)),
            "returns_filed": len(filed),
            "draft_returns": len(returns) - len(filed),
            "average_vat_per_return": float(q_money(total_vat / len(filed))) if filed else 0.0,
            "on_time_payment_rate": round(on_time / len(filed) * 100) if filed else 100,
            "documents_count": documents_count or 0,
            "pending_payments": pending_payments or 0,
        },
    }
