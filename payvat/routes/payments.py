"""Payment of submitted VAT returns through the simulated card gateway."""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, HTTPException, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models
from ..audit import record_audit
from ..deps import ContextDep, CurrentUser, SessionDep
from ..notifications import email_service
from ..payments import (
    GatewayError,
    WEBHOOK_SIGNATURE_HEADER,
    build_receipt,
    gateway,
    generate_receipt_number,
    map_gateway_status,
    to_cents,
    validate_payment_amount,
    verify_webhook_signature,
)
from ..schemas import PaymentConfirmRequest, PaymentCreateRequest, payment_to_dict, vat_return_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

REUSABLE_STATUSES = {models.PaymentStatus.FAILED.value, models.PaymentStatus.CANCELLED.value}
OPEN_STATUSES = {models.PaymentStatus.PENDING.value, models.PaymentStatus.PROCESSING.value}

# Gateway event type -> payment status
WEBHOOK_EVENTS = {
    "payment_intent.succeeded": models.PaymentStatus.COMPLETED,
    "payment_intent.payment_failed": models.PaymentStatus.FAILED,
    "payment_intent.canceled": models.PaymentStatus.CANCELLED,
    "payment_intent.requires_action": models.PaymentStatus.PROCESSING,
}


def _mark_paid(payment: models.Payment, vat_return: models.VATReturn, payment_method: str | None) -> None:
    now = models.utcnow()
    payment.status = models.PaymentStatus.COMPLETED.value
    payment.payment_method = payment_method
    payment.processed_at = now
    payment.receipt_number = generate_receipt_number(payment.id)
    payment.failed_at = None
    payment.failure_reason = None
    vat_return.status = models.ReturnStatus.PAID.value
    vat_return.paid_at = now


async def get_owned_payment(session: AsyncSession, payment_id: str, user: models.User) -> models.Payment:
    payment = await session.get(models.Payment, payment_id)
    if payment is None or payment.user_id != user.id:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Payment not found")
    return payment


@router.get("")
async def list_payments(
    session: SessionDep,
    user: CurrentUser,
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> dict:
    stmt = select(models.Payment).where(models.Payment.user_id == user.id)
    if status_filter:
        stmt = stmt.where(models.Payment.status == status_filter.upper())
    result = await session.execute(
        stmt.order_by(models.Payment.created_at.desc()).limit(limit).offset(offset)
    )
    return {"payments": [payment_to_dict(p) for p in result.scalars()], "limit": limit, "offset": offset}


@router.get("/{payment_id}")
async def get_payment(payment_id: str, session: SessionDep, user: CurrentUser) -> dict:
    payment = await get_owned_payment(session, payment_id, user)
    vat_return = await session.get(models.VATReturn, payment.vat_return_id)
    body = {**payment_to_dict(payment), "vat_return": vat_return_to_dict(vat_return)}
    if payment.status == models.PaymentStatus.COMPLETED.value:
        body["receipt"] = build_receipt(payment, vat_return, user)
    return body


@router.post("/create")
async def create_payment(
    body: PaymentCreateRequest,
    session: SessionDep,
    user: CurrentUser,
    context: ContextDep,
) -> dict:
    """Create (or reuse) a payment intent for a submitted return.

    A pending intent is returned unchanged; failed or cancelled payments
    get a fresh intent on the same row.
    """
    vat_return = await session.get(models.VATReturn, body.vat_return_id)
    if vat_return is None or vat_return.user_id != user.id:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "VAT return not found")
    if vat_return.status == models.ReturnStatus.PAID.value:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "VAT return has already been paid")
    if vat_return.status != models.ReturnStatus.SUBMITTED.value:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "VAT return must be submitted before payment")
    if vat_return.net_vat <= 0:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "No payment is due for this VAT return")

    ok, error = validate_payment_amount(vat_return.net_vat)
    if not ok:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, error)

    payment = await session.scalar(
        select(models.Payment).where(models.Payment.vat_return_id == vat_return.id)
    )
    if payment is not None:
        if payment.status == models.PaymentStatus.COMPLETED.value:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "VAT return has already been paid")
        if payment.status in OPEN_STATUSES and payment.gateway_payment_id:
            return {
                "success": True,
                "payment": payment_to_dict(payment),
                "client_secret": payment.gateway_client_secret,
                "reused": True,
            }
        if payment.status not in REUSABLE_STATUSES | OPEN_STATUSES:
            raise HTTPException(
                status.HTTP_400_BAD_REQUEST, f"Payment is {payment.status.lower()} and cannot be retried"
            )
    else:
        payment = models.Payment(
            user_id=user.id,
            vat_return_id=vat_return.id,
            amount=vat_return.net_vat,
            currency="EUR",
        )
        session.add(payment)
        await session.flush()

    intent = gateway.create_intent(
        to_cents(vat_return.net_vat),
        metadata={
            "payment_id": payment.id,
            "vat_return_id": vat_return.id,
            "user_id": user.id,
            "vat_number": user.vat_number,
        },
    )
    payment.amount = vat_return.net_vat
    payment.gateway_payment_id = intent.id
    payment.gateway_client_secret = intent.client_secret
    payment.status = map_gateway_status(intent.status).value
    payment.failed_at = None
    payment.failure_reason = None

    record_audit(
        session,
        user_id=user.id,
        action="CREATE_PAYMENT",
        entity_type="Payment",
        entity_id=payment.id,
        context=context,
        metadata={"amount": float(payment.amount), "gateway_payment_id": intent.id},
    )
    await session.commit()
    return {
        "success": True,
        "payment": payment_to_dict(payment),
        "client_secret": intent.client_secret,
        "reused": False,
    }


@router.post("/confirm")
async def confirm_payment(
    body: PaymentConfirmRequest,
    session: SessionDep,
    user: CurrentUser,
    context: ContextDep,
) -> dict:
    """Confirm the intent with the gateway; success marks the return PAID."""
    payment = await get_owned_payment(session, body.payment_id, user)
    if payment.status == models.PaymentStatus.COMPLETED.value:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Payment has already been completed")
    if not payment.gateway_payment_id:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Payment has not been initialised")

    vat_return = await session.get(models.VATReturn, payment.vat_return_id)

    try:
        intent = gateway.confirm(payment.gateway_payment_id, body.card_number)
    except GatewayError as e:
        payment.status = models.PaymentStatus.FAILED.value
        payment.failed_at = models.utcnow()
        payment.failure_reason = e.message
        record_audit(
            session,
            user_id=user.id,
            action="PAYMENT_FAILED",
            entity_type="Payment",
            entity_id=payment.id,
            context=context,
            metadata={"kind": e.kind, "reason": e.message},
        )
        await session.commit()
        logger.info(f"Payment {payment.id} failed: {e.kind}")
        raise

    _mark_paid(payment, vat_return, intent.payment_method)

    record_audit(
        session,
        user_id=user.id,
        action="PAYMENT_COMPLETED",
        entity_type="Payment",
        entity_id=payment.id,
        context=context,
        metadata={"amount": float(payment.amount), "receipt_number": payment.receipt_number},
    )
    await session.commit()

    receipt = build_receipt(payment, vat_return, user)
    await email_service.send_payment_receipt(user, receipt)
    logger.info(f"Payment {payment.id} completed for return {vat_return.id}")

    return {
        "success": True,
        "payment": payment_to_dict(payment),
        "vat_return": vat_return_to_dict(vat_return),
        "receipt": receipt,
    }


@router.post("/webhook")
async def payment_webhook(request: Request, session: SessionDep, context: ContextDep) -> dict:
    """Apply a signed gateway event to the matching payment.

    Events for unknown intents or unhandled types are acknowledged and
    ignored. A completed payment is never moved back to another status.
    """
    payload = await request.body()
    if not verify_webhook_signature(payload, request.headers.get(WEBHOOK_SIGNATURE_HEADER)):
        logger.warning(f"Rejected payment webhook from {context.ip}: bad signature")
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid webhook signature")

    try:
        event = json.loads(payload)
        event_type = event["type"]
        intent = event["data"]["object"]
        intent_id = intent["id"]
    except (ValueError, KeyError, TypeError):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Malformed webhook event") from None

    new_status = WEBHOOK_EVENTS.get(event_type)
    if new_status is None:
        logger.info(f"Ignoring unhandled webhook event {event_type}")
        return {"received": True, "handled": False}

    payment = await session.scalar(
        select(models.Payment).where(models.Payment.gateway_payment_id == intent_id)
    )
    if payment is None:
        logger.warning(f"Webhook {event_type} for unknown payment intent {intent_id}")
        return {"received": True, "handled": False}
    if payment.status == models.PaymentStatus.COMPLETED.value:
        return {"received": True, "handled": False}

    old_status = payment.status
    if new_status == models.PaymentStatus.COMPLETED:
        vat_return = await session.get(models.VATReturn, payment.vat_return_id)
        _mark_paid(payment, vat_return, intent.get("payment_method") or "card")
    else:
        payment.status = new_status.value
        if new_status != models.PaymentStatus.PROCESSING:
            error = intent.get("last_payment_error") or {}
            payment.failed_at = models.utcnow()
            payment.failure_reason = error.get("message") or (
                "Payment was canceled" if new_status == models.PaymentStatus.CANCELLED else "Payment failed"
            )

    record_audit(
        session,
        user_id=payment.user_id,
        action=f"PAYMENT_{new_status.value}_WEBHOOK",
        entity_type="Payment",
        entity_id=payment.id,
        context=context,
        old_values={"status": old_status},
        new_values={"status": payment.status},
        metadata={"event": event_type, "gateway_payment_id": intent_id},
    )
    await session.commit()
    logger.info(f"Payment {payment.id} moved {old_status} -> {payment.status} by {event_type}")
    return {"received": True, "handled": True}
