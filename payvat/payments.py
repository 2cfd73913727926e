"""Simulated card payment gateway and payment helpers.

Payment intents live in process memory. The lifecycle mirrors a typical
card gateway: ``requires_payment_method`` -> ``succeeded`` or ``canceled``.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from . import models
from .config import settings
from .vat import format_euro, q_money

logger = logging.getLogger(__name__)

DECLINE_TEST_CARD = "4000000000000002"
WEBHOOK_SIGNATURE_HEADER = "x-payvat-signature"

GATEWAY_STATUS_MAP = {
    "requires_payment_method": models.PaymentStatus.PENDING,
    "requires_confirmation": models.PaymentStatus.PROCESSING,
    "requires_action": models.PaymentStatus.PROCESSING,
    "processing": models.PaymentStatus.PROCESSING,
    "requires_capture": models.PaymentStatus.PROCESSING,
    "canceled": models.PaymentStatus.CANCELLED,
    "succeeded": models.PaymentStatus.COMPLETED,
}

GATEWAY_ERROR_MESSAGES = {
    "card_error": "Your card was declined.",
    "card_declined": "Your card was declined.",
    "rate_limit_error": "Too many requests made to the API too quickly.",
    "invalid_request_error": "Invalid parameters were supplied to the payment gateway.",
    "api_error": "An error occurred internally with the payment gateway.",
    "connection_error": "Network communication with the payment gateway failed.",
    "authentication_error": "Authentication with the payment gateway failed.",
}


class GatewayError(Exception):
    """Payment gateway failure with a machine-readable ``kind``."""

    def __init__(self, kind: str, message: str | None = None) -> None:
        self.kind = kind
        self.message = message or GATEWAY_ERROR_MESSAGES.get(kind, "An unexpected payment error occurred.")
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        # Client-side problems are 400, gateway-side problems are 502
        return 400 if self.kind in ("card_error", "card_declined", "invalid_request_error") else 502


def map_gateway_status(gateway_status: str) -> models.PaymentStatus:
    return GATEWAY_STATUS_MAP.get(gateway_status, models.PaymentStatus.FAILED)


def to_cents(amount) -> int:
    return int(q_money(amount) * 100)


def validate_payment_amount(amount) -> tuple[bool, str | None]:
    """Accept amounts within the configured gateway limits (EUR 0.50 to 1,000,000)."""
    cents = to_cents(amount)
    min_cents = settings.payment.min_amount_cents
    max_cents = settings.payment.max_amount_cents
    if cents < min_cents:
        return False, f"Minimum payment amount is {format_euro(Decimal(min_cents) / 100)}"
    if cents > max_cents:
        return False, f"Maximum payment amount is {format_euro(Decimal(max_cents) / 100)}"
    return True, None


@dataclass
class PaymentIntent:
    id: str
    amount: int  # cents
    currency: str
    status: str
    client_secret: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created: float = field(default_factory=time.time)
    payment_method: str | None = None
    last_error: str | None = None


class SimulatedGateway:
    """In-memory stand-in for a card gateway."""

    def __init__(self) -> None:
        self._intents: dict[str, PaymentIntent] = {}
        self._lock = threading.Lock()

    def create_intent(self, amount_cents: int, metadata: dict[str, Any] | None = None) -> PaymentIntent:
        if amount_cents <= 0:
            raise GatewayError("invalid_request_error", "Amount must be positive")
        intent_id = f"pi_{secrets.token_hex(12)}"
        intent = PaymentIntent(
            id=intent_id,
            amount=amount_cents,
            currency=settings.payment.currency.lower(),
            status="requires_payment_method",
            client_secret=f"{intent_id}_secret_{secrets.token_hex(12)}",
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._intents[intent_id] = intent
        logger.info(f"Created payment intent {intent_id} for {amount_cents} cents")
        return intent

    def retrieve(self, intent_id: str) -> PaymentIntent:
        with self._lock:
            intent = self._intents.get(intent_id)
        if intent is None:
            raise GatewayError("invalid_request_error", f"No such payment intent: {intent_id}")
        return intent

    def confirm(self, intent_id: str, card_number: str | None = None) -> PaymentIntent:
        """Confirm an intent; the decline test card fails with ``card_declined``."""
        intent = self.retrieve(intent_id)
        if intent.status == "succeeded":
            return intent
        if intent.status == "canceled":
            raise GatewayError("invalid_request_error", "Payment intent was canceled")

        digits = "".join(ch for ch in (card_number or "") if ch.isdigit())
        if digits == DECLINE_TEST_CARD:
            intent.status = "requires_payment_method"
            intent.last_error = "card_declined"
            logger.info(f"Payment intent {intent_id} declined")
            raise GatewayError("card_declined")

        intent.status = "succeeded"
        intent.payment_method = "card"
        intent.last_error = None
        logger.info(f"Payment intent {intent_id} succeeded")
        return intent

    def cancel(self, intent_id: str) -> PaymentIntent:
        intent = self.retrieve(intent_id)
        if intent.status == "succeeded":
            raise GatewayError("invalid_request_error", "Cannot cancel a succeeded payment")
        intent.status = "canceled"
        return intent

    def reset(self) -> None:
        with self._lock:
            self._intents.clear()


gateway = SimulatedGateway()


def generate_receipt_number(payment_id: str) -> str:
    return f"RCP-{payment_id[-8:].upper()}"


def build_receipt(
    payment: models.Payment,
    vat_return: models.VATReturn,
    user: models.User,
) -> dict[str, Any]:
    """Receipt body returned on confirmation and used for the receipt email."""
    paid_at: datetime | None = payment.processed_at
    return {
        "receipt_number": payment.receipt_number or generate_receipt_number(payment.id),
        "payment_id": payment.id,
        "amount": float(payment.amount),
        "amount_display": format_euro(payment.amount),
        "currency": payment.currency,
        "paid_at": paid_at.isoformat() if paid_at else None,
        "business_name": user.business_name,
        "vat_number": user.vat_number,
        "vat_return_id": vat_return.id,
        "period_start": vat_return.period_start.isoformat(),
        "period_end": vat_return.period_end.isoformat(),
        "revenue_ref_number": vat_return.revenue_ref_number,
    }


def sign_webhook_payload(payload: bytes, secret: str | None = None) -> str:
    """Hex HMAC-SHA256 of a raw webhook body."""
    key = (secret or settings.payment.webhook_secret).encode("utf-8")
    return hmac.new(key, payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: bytes, signature: str | None) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_webhook_payload(payload), signature.strip())
