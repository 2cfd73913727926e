"""Administrative endpoints: users, filings, VAT overrides, guest cleanup, security and audit logs."""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy import func, select

from ai.extractor import ExtractedVATData, validate_extracted
from .. import models
from ..audit import audit_row_to_dict, record_audit
from ..deps import AdminUser, ContextDep, SessionDep
from ..pipelines.cleanup import (
    CleanupConfig,
    cleanup_guest_users,
    emergency_guest_cleanup,
    guest_user_stats,
)
from ..pipelines.processing import parse_category
from ..schemas import (
    CleanupRequest,
    UserDTO,
    VATOverrideRequest,
    document_to_dict,
    payment_to_dict,
    vat_return_to_dict,
)
from ..security import security
from ..vat import format_euro, q_money

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

OPEN_RETURN_STATUSES = (
    models.ReturnStatus.DRAFT.value,
    models.ReturnStatus.SUBMITTED.value,
    models.ReturnStatus.OVERDUE.value,
)


@router.get("/users")
async def list_users(
    session: SessionDep,
    admin: AdminUser,
    role: str | None = None,
    search: str | None = Query(default=None, max_length=100),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> dict:
    stmt = select(models.User)
    if role:
        stmt = stmt.where(models.User.role == role.upper())
    if search:
        term, _ = security.sanitize_text_input(search, "search")
        pattern = f"%{term.lower()}%"
        stmt = stmt.where(
            func.lower(models.User.email).like(pattern)
            | func.lower(models.User.business_name).like(pattern)
        )

    total = await session.scalar(select(func.count()).select_from(stmt.subquery()))
    result = await session.execute(stmt.order_by(models.User.created_at.desc()).limit(limit).offset(offset))
    return {
        "users": [
            {
                **UserDTO.model_validate(u).model_dump(),
                "created_at": u.created_at.isoformat(),
                "last_login_at": u.last_login_at.isoformat() if u.last_login_at else None,
            }
            for u in result.scalars()
        ],
        "total": total or 0,
        "limit": limit,
        "offset": offset,
    }


@router.get("/guests/stats")
async def guest_stats(session: SessionDep, admin: AdminUser) -> dict:
    return await guest_user_stats(session)


@router.post("/guests/cleanup")
async def run_guest_cleanup(
    session: SessionDep,
    admin: AdminUser,
    context: ContextDep,
    body: CleanupRequest | None = None,
) -> dict:
    """Delete stale guest users now, optionally as a dry run or emergency sweep."""
    body = body or CleanupRequest()
    if body.emergency:
        result = await emergency_guest_cleanup(session)
    else:
        defaults = CleanupConfig()
        result = await cleanup_guest_users(
            session,
            CleanupConfig(
                max_age_hours=body.max_age_hours or defaults.max_age_hours,
                batch_size=body.batch_size or defaults.batch_size,
                dry_run=body.dry_run,
            ),
        )

    record_audit(
        session,
        user_id=admin.id,
        action="ADMIN_GUEST_CLEANUP",
        entity_type="User",
        context=context,
        metadata={"emergency": body.emergency, **result.to_dict()},
    )
    await session.commit()
    logger.info(f"Admin {admin.id} ran guest cleanup: {result.guest_users_deleted} deleted")
    return {"success": not result.errors, "result": result.to_dict()}


@router.get("/security/stats")
async def security_stats(
    admin: AdminUser,
    days: int = Query(default=30, ge=1, le=365),
    recent: int = Query(default=20, ge=0, le=200),
) -> dict:
    return {
        **security.get_stats(days),
        "recent_events": [e.to_dict() for e in security.get_logs()[:recent]],
    }


@router.get("/audit-logs")
async def audit_logs(
    session: SessionDep,
    admin: AdminUser,
    user_id: str | None = None,
    action: str | None = None,
    entity_type: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> dict:
    stmt = select(models.AuditLog)
    if user_id:
        stmt = stmt.where(models.AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(models.AuditLog.action == action.upper())
    if entity_type:
        stmt = stmt.where(models.AuditLog.entity_type == entity_type)
    result = await session.execute(
        stmt.order_by(models.AuditLog.created_at.desc()).limit(limit).offset(offset)
    )
    return {"logs": [audit_row_to_dict(r) for r in result.scalars()], "limit": limit, "offset": offset}


def _owner_summary(user: models.User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "business_name": user.business_name,
        "vat_number": user.vat_number,
    }


@router.get("/returns")
async def list_vat_returns(
    session: SessionDep,
    admin: AdminUser,
    context: ContextDep,
    user_id: str | None = None,
    status_filter: str | None = Query(default=None, alias="status"),
    year: int | None = Query(default=None, ge=2000, le=2100),
    overdue: bool = False,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> dict:
    """All users' VAT returns with owner, payment and totals per status."""
    conditions = []
    if user_id:
        conditions.append(models.VATReturn.user_id == user_id)
    if status_filter:
        conditions.append(models.VATReturn.status == status_filter.upper())
    if year:
        conditions.append(models.VATReturn.period_start >= date(year, 1, 1))
        conditions.append(models.VATReturn.period_start < date(year + 1, 1, 1))
    if overdue:
        conditions.append(models.VATReturn.due_date < date.today())
        conditions.append(models.VATReturn.status.in_(OPEN_RETURN_STATUSES))

    breakdown = await session.execute(
        select(
            models.VATReturn.status,
            func.count(),
            func.coalesce(func.sum(models.VATReturn.sales_vat), 0),
            func.coalesce(func.sum(models.VATReturn.purchase_vat), 0),
            func.coalesce(func.sum(models.VATReturn.net_vat), 0),
        )
        .where(*conditions)
        .group_by(models.VATReturn.status)
    )
    status_rows = breakdown.all()

    result = await session.execute(
        select(models.VATReturn, models.User)
        .join(models.User, models.VATReturn.user_id == models.User.id)
        .where(*conditions)
        .order_by(models.VATReturn.period_end.desc(), models.VATReturn.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    rows = result.all()

    return_ids = [r.id for r, _ in rows]
    payments = {
        p.vat_return_id: p
        for p in (await session.execute(
            select(models.Payment).where(models.Payment.vat_return_id.in_(return_ids))
        )).scalars()
    }
    document_counts = dict((await session.execute(
        select(models.Document.vat_return_id, func.count())
        .where(models.Document.vat_return_id.in_(return_ids))
        .group_by(models.Document.vat_return_id)
    )).all())

    today = date.today()
    total = sum(count for _, count, *_ in status_rows)
    total_net = sum(Decimal(str(net)) for *_, net in status_rows)

    record_audit(
        session,
        user_id=admin.id,
        action="ADMIN_VIEW_VAT_RETURNS",
        entity_type="VATReturn",
        context=context,
        metadata={
            "filters": {"user_id": user_id, "status": status_filter, "year": year, "overdue": overdue},
            "result_count": len(rows),
            "total_net_vat": float(total_net),
        },
    )
    await session.commit()

    return {
        "vat_returns": [
            {
                **vat_return_to_dict(vat_return),
                "user": _owner_summary(user),
                "payment": payment_to_dict(payments[vat_return.id]) if vat_return.id in payments else None,
                "document_count": document_counts.get(vat_return.id, 0),
                "is_overdue": vat_return.due_date < today and vat_return.status in OPEN_RETURN_STATUSES,
            }
            for vat_return, user in rows
        ],
        "statistics": {
            "total_sales_vat": float(sum(Decimal(str(row[2])) for row in status_rows)),
            "total_purchase_vat": float(sum(Decimal(str(row[3])) for row in status_rows)),
            "total_net_vat": float(total_net),
            "status_breakdown": [
                {"status": s, "count": count, "total_net_vat": float(net)}
                for s, count, _, _, net in status_rows
            ],
        },
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/payments")
async def list_all_payments(
    session: SessionDep,
    admin: AdminUser,
    context: ContextDep,
    user_id: str | None = None,
    status_filter: str | None = Query(default=None, alias="status"),
    date_from: date | None = None,
    date_to: date | None = None,
    min_amount: Decimal | None = Query(default=None, ge=0),
    max_amount: Decimal | None = Query(default=None, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> dict:
    """All payments with owner and return, plus totals per status."""
    conditions = []
    if user_id:
        conditions.append(models.Payment.user_id == user_id)
    if status_filter:
        conditions.append(models.Payment.status == status_filter.upper())
    if date_from:
        conditions.append(models.Payment.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        conditions.append(models.Payment.created_at < datetime.combine(date_to + timedelta(days=1), time.min))
    if min_amount is not None:
        conditions.append(models.Payment.amount >= min_amount)
    if max_amount is not None:
        conditions.append(models.Payment.amount <= max_amount)

    status_rows = (await session.execute(
        select(models.Payment.status, func.count(), func.coalesce(func.sum(models.Payment.amount), 0))
        .where(*conditions)
        .group_by(models.Payment.status)
    )).all()

    result = await session.execute(
        select(models.Payment, models.User, models.VATReturn)
        .join(models.User, models.Payment.user_id == models.User.id)
        .join(models.VATReturn, models.Payment.vat_return_id == models.VATReturn.id)
        .where(*conditions)
        .order_by(models.Payment.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    rows = result.all()

    total = sum(count for _, count, _ in status_rows)
    total_amount = sum(Decimal(str(amount)) for *_, amount in status_rows)

    record_audit(
        session,
        user_id=admin.id,
        action="ADMIN_VIEW_PAYMENTS",
        entity_type="Payment",
        context=context,
        metadata={
            "filters": {
                "user_id": user_id,
                "status": status_filter,
                "date_from": date_from.isoformat() if date_from else None,
                "date_to": date_to.isoformat() if date_to else None,
            },
            "result_count": len(rows),
            "total_amount": float(total_amount),
        },
    )
    await session.commit()

    return {
        "payments": [
            {
                **payment_to_dict(payment),
                "user": _owner_summary(user),
                "vat_return": {
                    "id": vat_return.id,
                    "period": f"{vat_return.period_start:%d/%m/%Y} - {vat_return.period_end:%d/%m/%Y}",
                    "status": vat_return.status,
                    "revenue_ref_number": vat_return.revenue_ref_number,
                    "net_vat": float(vat_return.net_vat),
                },
            }
            for payment, user, vat_return in rows
        ],
        "statistics": {
            "total_amount": float(total_amount),
            "average_amount": float(round(total_amount / total, 2)) if total else 0.0,
            "status_breakdown": [
                {"status": s, "count": count, "total_amount": float(amount)}
                for s, count, amount in status_rows
            ],
        },
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/documents")
async def list_all_documents(
    session: SessionDep,
    admin: AdminUser,
    context: ContextDep,
    user_id: str | None = None,
    category: str | None = None,
    is_scanned: bool | None = None,
    vat_return_id: str | None = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> dict:
    conditions = []
    if user_id:
        conditions.append(models.Document.user_id == user_id)
    if category:
        conditions.append(models.Document.category == parse_category(category).value)
    if is_scanned is not None:
        conditions.append(models.Document.is_scanned.is_(is_scanned))
    if vat_return_id:
        conditions.append(models.Document.vat_return_id == vat_return_id)

    total = await session.scalar(select(func.count()).select_from(models.Document).where(*conditions))
    result = await session.execute(
        select(models.Document, models.User)
        .join(models.User, models.Document.user_id == models.User.id)
        .where(*conditions)
        .order_by(models.Document.uploaded_at.desc())
        .limit(limit)
        .offset(offset)
    )
    rows = result.all()

    record_audit(
        session,
        user_id=admin.id,
        action="ADMIN_VIEW_DOCUMENTS",
        entity_type="Document",
        context=context,
        metadata={
            "filters": {"user_id": user_id, "category": category, "is_scanned": is_scanned},
            "result_count": len(rows),
        },
    )
    await session.commit()

    return {
        "documents": [{**document_to_dict(d), "user": _owner_summary(u)} for d, u in rows],
        "total": total or 0,
        "limit": limit,
        "offset": offset,
    }


@router.post("/override-vat")
async def override_vat(
    body: VATOverrideRequest,
    session: SessionDep,
    admin: AdminUser,
    context: ContextDep,
) -> dict:
    """Replace a document's extracted VAT with an admin-supplied amount.

    Sales documents get the amount as their sales VAT and purchase
    documents as their purchase VAT. The previous figures and the reason
    go to the audit trail.
    """
    document = await session.get(models.Document, body.document_id)
    if document is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Document not found")

    category = models.DocumentCategory(document.category)
    side = "sales" if category.is_sales else "purchase" if category.is_purchase else None
    if side is None:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST, f"{document.category} documents do not carry sales or purchase VAT"
        )
    key = f"{side}_vat"

    current = dict(document.extracted_data or {})
    data = ExtractedVATData.from_dict(current)
    original = data.total_sales_vat if side == "sales" else data.total_purchase_vat
    amount = q_money(body.correct_vat_amount)

    current[key] = [float(amount)]
    data = ExtractedVATData.from_dict(current)
    validation = validate_extracted(data)
    current.update({
        "corrected": True,
        "corrected_at": models.utcnow().isoformat(),
        "correction_note": body.reason,
        "method": "manual",
        "validation": {
            "is_valid": validation.is_valid,
            "issues": validation.issues,
            "warnings": validation.warnings,
        },
    })
    document.extracted_data = current
    document.is_scanned = True
    document.scan_result = (
        f"MANUAL OVERRIDE: {format_euro(amount)} VAT (was {format_euro(original)}). Reason: {body.reason}"
    )

    audit = record_audit(
        session,
        user_id=admin.id,
        action="VAT_MANUAL_OVERRIDE",
        entity_type="Document",
        entity_id=document.id,
        context=context,
        old_values={key: float(original)},
        new_values={key: float(amount)},
        metadata={"reason": body.reason, "document_owner_id": document.user_id},
    )
    await session.commit()
    logger.info(f"Admin {admin.id} overrode {key} on document {document.id}: {original} -> {amount}")

    return {
        "success": True,
        "document": document_to_dict(document),
        "override": {
            "id": audit.id,
            "reason": body.reason,
            "original_amount": float(original),
            "correct_vat_amount": float(amount),
        },
    }


@router.get("/override-vat")
async def override_history(session: SessionDep, admin: AdminUser, document_id: str) -> dict:
    """Manual VAT overrides applied to one document, newest first."""
    result = await session.execute(
        select(models.AuditLog)
        .where(
            models.AuditLog.action == "VAT_MANUAL_OVERRIDE",
            models.AuditLog.entity_id == document_id,
        )
        .order_by(models.AuditLog.created_at.desc())
    )
    return {"document_id": document_id, "overrides": [audit_row_to_dict(r) for r in result.scalars()]}
