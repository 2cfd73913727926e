"""VAT return calculation, editing and submission to Revenue."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models
from ..audit import record_audit
from ..deps import ContextDep, CurrentUser, SessionDep
from ..notifications import email_service
from ..revenue import RevenueClient, get_revenue_client
from ..schemas import (
    VATCalculateRequest,
    VATReturnUpdate,
    VATSubmitRequest,
    document_to_dict,
    payment_to_dict,
    vat_return_to_dict,
)
from ..vat import (
    calculate_net_vat,
    check_vat_amount,
    perform_vat_calculation,
    validate_vat_period,
    vat3_figures,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/vat", tags=["vat"])

RevenueDep = Annotated[RevenueClient, Depends(get_revenue_client)]

EU_FIELDS = ("goods_to_eu", "goods_from_eu", "services_to_eu", "services_from_eu", "postponed_accounting")


def _figures(vat_return: models.VATReturn) -> dict[str, int]:
    return vat3_figures(
        vat_return.sales_vat,
        vat_return.purchase_vat,
        e1=vat_return.goods_to_eu,
        e2=vat_return.goods_from_eu,
        es1=vat_return.services_to_eu,
        es2=vat_return.services_from_eu,
        pa1=vat_return.postponed_accounting,
    ).as_dict()


async def get_owned_return(session: AsyncSession, vat_return_id: str, user: models.User) -> models.VATReturn:
    vat_return = await session.get(models.VATReturn, vat_return_id)
    if vat_return is None or vat_return.user_id != user.id:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "VAT return not found")
    return vat_return


@router.post("/calculate")
async def calculate(
    body: VATCalculateRequest,
    session: SessionDep,
    user: CurrentUser,
    context: ContextDep,
) -> dict:
    """Validate a period, compute net VAT and save it as a draft return.

    An existing draft for the same period is updated instead of duplicated.
    """
    calc = perform_vat_calculation(body.sales_vat, body.purchase_vat, body.period_start, body.period_end)
    if not calc.is_valid:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, calc.warnings[0] if calc.warnings else "Invalid VAT period")
    for name in EU_FIELDS:
        check_vat_amount(name.replace("_", " ").capitalize(), getattr(body, name))

    result = await session.execute(
        select(models.VATReturn).where(
            models.VATReturn.user_id == user.id,
            models.VATReturn.period_start == body.period_start,
            models.VATReturn.period_end == body.period_end,
            models.VATReturn.status == models.ReturnStatus.DRAFT.value,
        )
    )
    vat_return = result.scalars().first()
    created = vat_return is None
    if created:
        vat_return = models.VATReturn(
            user_id=user.id,
            period_start=body.period_start,
            period_end=body.period_end,
            status=models.ReturnStatus.DRAFT.value,
        )
        session.add(vat_return)

    vat_return.sales_vat = calc.sales_vat
    vat_return.purchase_vat = calc.purchase_vat
    vat_return.net_vat = calc.net_vat
    vat_return.due_date = calc.due_date
    for name in EU_FIELDS:
        setattr(vat_return, name, getattr(body, name))
    await session.flush()

    record_audit(
        session,
        user_id=user.id,
        action="CALCULATE_VAT",
        entity_type="VATReturn",
        entity_id=vat_return.id,
        context=context,
        metadata={
            "sales_vat": float(calc.sales_vat),
            "purchase_vat": float(calc.purchase_vat),
            "net_vat": float(calc.net_vat),
            "created": created,
        },
    )
    await session.commit()

    return {
        "success": True,
        "vat_return": vat_return_to_dict(vat_return),
        "calculation": {
            "sales_vat": float(calc.sales_vat),
            "purchase_vat": float(calc.purchase_vat),
            "net_vat": float(calc.net_vat),
            "is_refund": calc.is_refund,
            "due_date": calc.due_date.isoformat(),
            "warnings": calc.warnings,
            "vat3": _figures(vat_return),
        },
    }


@router.post("/submit")
async def submit(
    body: VATSubmitRequest,
    session: SessionDep,
    user: CurrentUser,
    context: ContextDep,
    revenue: RevenueDep,
) -> dict:
    """Submit a draft return to ROS.

    Steps:
    1. Re-validate the period and link the supplied documents
    2. Submit to Revenue (failure leaves the return as a draft, HTTP 502)
    3. Mark SUBMITTED and open a pending payment when VAT is owed
    """
    result = await session.execute(
        select(models.VATReturn).where(
            models.VATReturn.id == body.vat_return_id,
            models.VATReturn.user_id == user.id,
            models.VATReturn.status == models.ReturnStatus.DRAFT.value,
        )
    )
    vat_return = result.scalars().first()
    if vat_return is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "VAT return not found or already submitted")

    ok, error = validate_vat_period(vat_return.period_start, vat_return.period_end)
    if not ok:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, error)

    receipt = await revenue.submit_vat3(user, vat_return)

    if body.document_ids:
        await session.execute(
            update(models.Document)
            .where(models.Document.id.in_(body.document_ids), models.Document.user_id == user.id)
            .values(vat_return_id=vat_return.id)
        )

    vat_return.status = models.ReturnStatus.SUBMITTED.value
    vat_return.submitted_at = models.utcnow()
    vat_return.revenue_ref_number = receipt.reference_number
    vat_return.revenue_response = receipt.to_dict()

    payment = None
    if Decimal(vat_return.net_vat) > 0:
        payment = models.Payment(
            user_id=user.id,
            vat_return_id=vat_return.id,
            amount=vat_return.net_vat,
            currency="EUR",
            status=models.PaymentStatus.PENDING.value,
        )
        session.add(payment)
        await session.flush()

    record_audit(
        session,
        user_id=user.id,
        action="SUBMIT_VAT_RETURN",
        entity_type="VATReturn",
        entity_id=vat_return.id,
        context=context,
        metadata={
            "reference_number": receipt.reference_number,
            "net_vat": float(vat_return.net_vat),
            "documents_linked": len(body.document_ids),
            "payment_id": payment.id if payment else None,
        },
    )
    await session.commit()
    logger.info(f"Return {vat_return.id} submitted for user {user.id}: {receipt.reference_number}")

    await email_service.send_submission_confirmation(user, vat_return)

    return {
        "success": True,
        "reference_number": receipt.reference_number,
        "vat_return": vat_return_to_dict(vat_return),
        "vat3": receipt.figures.as_dict(),
        "payment": payment_to_dict(payment) if payment else None,
    }


@router.get("/{vat_return_id}")
async def get_vat_return(vat_return_id: str, session: SessionDep, user: CurrentUser) -> dict:
    vat_return = await get_owned_return(session, vat_return_id, user)
    documents = await session.execute(
        select(models.Document)
        .where(models.Document.vat_return_id == vat_return.id)
        .order_by(models.Document.uploaded_at)
    )
    payment = await session.scalar(
        select(models.Payment).where(models.Payment.vat_return_id == vat_return.id)
    )
    return {
        **vat_return_to_dict(vat_return),
        "vat3": _figures(vat_return),
        "documents": [document_to_dict(d) for d in documents.scalars()],
        "payment": payment_to_dict(payment) if payment else None,
    }


@router.patch("/{vat_return_id}")
async def update_vat_return(
    vat_return_id: str,
    body: VATReturnUpdate,
    session: SessionDep,
    user: CurrentUser,
    context: ContextDep,
) -> dict:
    """Edit a draft's figures; net VAT is recomputed."""
    vat_return = await get_owned_return(session, vat_return_id, user)
    if vat_return.status != models.ReturnStatus.DRAFT.value:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Only draft VAT returns can be edited")

    changes = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None}
    if not changes:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "No changes supplied")

    old_values = {k: float(getattr(vat_return, k)) for k in changes}
    for name, value in changes.items():
        setattr(vat_return, name, check_vat_amount(name.replace("_", " ").capitalize(), value))
    old_values["net_vat"] = float(vat_return.net_vat)
    vat_return.net_vat = calculate_net_vat(vat_return.sales_vat, vat_return.purchase_vat)

    new_values = {k: float(v) for k, v in changes.items()}
    new_values["net_vat"] = float(vat_return.net_vat)
    record_audit(
        session,
        user_id=user.id,
        action="UPDATE_VAT_RETURN",
        entity_type="VATReturn",
        entity_id=vat_return.id,
        context=context,
        old_values=old_values,
        new_values=new_values,
    )
    await session.commit()
    return {"success": True, "vat_return": vat_return_to_dict(vat_return), "vat3": _figures(vat_return)}
