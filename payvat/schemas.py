"""Pydantic request models and JSON serializers for the HTTP API."""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from . import models
from .vat import validate_irish_vat_number

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# Non-negative, at most two decimal places
MoneyAmount = Annotated[Decimal, Field(ge=0, max_digits=14, decimal_places=2)]


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


# -------------------- Auth --------------------
class RegisterRequest(BaseModel):
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=8, max_length=128)
    business_name: str = Field(min_length=2, max_length=255)
    vat_number: str
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)
    phone: str | None = Field(default=None, max_length=50)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("vat_number")
    @classmethod
    def check_vat_number(cls, v: str) -> str:
        v = v.replace(" ", "").upper()
        if not validate_irish_vat_number(v):
            raise ValueError("Invalid Irish VAT number format (IE1234567A)")
        return v


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class UserDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    role: str
    business_name: str
    vat_number: str
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None


class AuthResponse(BaseModel):
    success: bool = True
    message: str
    user: UserDTO
    converted_from_guest: bool = False


# -------------------- VAT --------------------
class VATCalculateRequest(BaseModel):
    sales_vat: MoneyAmount = Decimal("0")
    purchase_vat: MoneyAmount = Decimal("0")
    period_start: date
    period_end: date
    goods_to_eu: MoneyAmount = Decimal("0")
    goods_from_eu: MoneyAmount = Decimal("0")
    services_to_eu: MoneyAmount = Decimal("0")
    services_from_eu: MoneyAmount = Decimal("0")
    postponed_accounting: MoneyAmount = Decimal("0")


class VATReturnUpdate(BaseModel):
    """Partial edit of a draft return; omitted fields are left unchanged."""
    sales_vat: MoneyAmount | None = None
    purchase_vat: MoneyAmount | None = None
    goods_to_eu: MoneyAmount | None = None
    goods_from_eu: MoneyAmount | None = None
    services_to_eu: MoneyAmount | None = None
    services_from_eu: MoneyAmount | None = None
    postponed_accounting: MoneyAmount | None = None


class VATSubmitRequest(BaseModel):
    vat_return_id: str
    document_ids: list[str] = Field(default_factory=list)


# -------------------- Documents --------------------
class DocumentCorrection(BaseModel):
    """Manual correction of the extracted VAT amounts."""
    sales_vat: list[Decimal] | None = None
    purchase_vat: list[Decimal] | None = None
    total_amount: Decimal | None = Field(default=None, ge=0)
    vat_rate: Decimal | None = Field(default=None, ge=0, le=100)
    category: str | None = None
    vat_return_id: str | None = None
    note: str | None = Field(default=None, max_length=1000)

    @field_validator("sales_vat", "purchase_vat")
    @classmethod
    def non_negative(cls, v: list[Decimal] | None) -> list[Decimal] | None:
        if v is not None and any(a < 0 for a in v):
            raise ValueError("VAT amounts cannot be negative")
        return v


# -------------------- Payments --------------------
class PaymentCreateRequest(BaseModel):
    vat_return_id: str


class PaymentConfirmRequest(BaseModel):
    payment_id: str
    card_number: str | None = Field(default=None, max_length=32)


# -------------------- Admin --------------------
class CleanupRequest(BaseModel):
    dry_run: bool = False
    emergency: bool = False
    max_age_hours: float | None = Field(default=None, gt=0)
    batch_size: int | None = Field(default=None, ge=1, le=1000)


class VATOverrideRequest(BaseModel):
    """Admin correction of a document's extracted VAT amount."""
    document_id: str
    correct_vat_amount: Decimal = Field(ge=0, le=99999, max_digits=12, decimal_places=2)
    reason: str = Field(min_length=3, max_length=1000)


ReportType = Literal["vat-summary", "payment-history", "document-summary"]


def money(value: Any) -> float:
    """JSON-friendly money value."""
    return float(value or 0)


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def document_to_dict(document: models.Document) -> dict[str, Any]:
    return {
        "id": document.id,
        "original_name": document.original_name,
        "file_name": document.file_name,
        "file_size": document.file_size,
        "mime_type": document.mime_type,
        "document_type": document.document_type,
        "category": document.category,
        "vat_return_id": document.vat_return_id,
        "is_scanned": document.is_scanned,
        "scan_result": document.scan_result,
        "extracted_data": document.extracted_data,
        "is_duplicate": document.is_duplicate,
        "duplicate_of_id": document.duplicate_of_id,
        "uploaded_at": _iso(document.uploaded_at),
    }


def payment_to_dict(payment: models.Payment) -> dict[str, Any]:
    return {
        "id": payment.id,
        "vat_return_id": payment.vat_return_id,
        "amount": money(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "payment_method": payment.payment_method,
        "gateway_payment_id": payment.gateway_payment_id,
        "processed_at": _iso(payment.processed_at),
        "failed_at": _iso(payment.failed_at),
        "failure_reason": payment.failure_reason,
        "receipt_number": payment.receipt_number,
        "created_at": _iso(payment.created_at),
    }


def vat_return_to_dict(vat_return: models.VATReturn) -> dict[str, Any]:
    return {
        "id": vat_return.id,
        "period_start": _iso(vat_return.period_start),
        "period_end": _iso(vat_return.period_end),
        "due_date": _iso(vat_return.due_date),
        "sales_vat": money(vat_return.sales_vat),
        "purchase_vat": money(vat_return.purchase_vat),
        "net_vat": money(vat_return.net_vat),
        "goods_to_eu": money(vat_return.goods_to_eu),
        "goods_from_eu": money(vat_return.goods_from_eu),
        "services_to_eu": money(vat_return.services_to_eu),
        "services_from_eu": money(vat_return.services_from_eu),
        "postponed_accounting": money(vat_return.postponed_accounting),
        "status": vat_return.status,
        "submitted_at": _iso(vat_return.submitted_at),
        "paid_at": _iso(vat_return.paid_at),
        "revenue_ref_number": vat_return.revenue_ref_number,
        "created_at": _iso(vat_return.created_at),
    }
