"""Core SQLAlchemy models (2.x style) for the PayVAT schema.

Users own documents, VAT returns and payments; audit rows outlive the user
that produced them. Money columns are fixed-point decimals, ids are uuid4 hex.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what every supported backend stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


Money = Numeric(14, 2)


class Role(str, Enum):
    """User roles, lowest privilege first."""
    GUEST = "GUEST"
    USER = "USER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class ReturnStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class DocumentType(str, Enum):
    PDF = "PDF"
    EXCEL = "EXCEL"
    CSV = "CSV"
    IMAGE = "IMAGE"
    TEXT = "TEXT"


class DocumentCategory(str, Enum):
    SALES_INVOICE = "SALES_INVOICE"
    SALES_RECEIPT = "SALES_RECEIPT"
    SALES_REPORT = "SALES_REPORT"
    PURCHASE_INVOICE = "PURCHASE_INVOICE"
    PURCHASE_RECEIPT = "PURCHASE_RECEIPT"
    PURCHASE_REPORT = "PURCHASE_REPORT"
    BANK_STATEMENT = "BANK_STATEMENT"
    OTHER = "OTHER"

    @property
    def is_sales(self) -> bool:
        return self.value.startswith("SALES")

    @property
    def is_purchase(self) -> bool:
        return self.value.startswith("PURCHASE")


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class User(Base):
    """Registered businesses and session-scoped guests."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    password: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=Role.USER.value)
    business_name: Mapped[str] = mapped_column(String(255), nullable=False)
    vat_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    first_name: Mapped[str | None] = mapped_column(String(100))
    last_name: Mapped[str | None] = mapped_column(String(100))
    phone: Mapped[str | None] = mapped_column(String(50))
    address: Mapped[str | None] = mapped_column(Text)
    email_verified: Mapped[datetime | None] = mapped_column(DateTime)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    # Relationships
    vat_returns: Mapped[list[VATReturn]] = relationship(
        "VATReturn", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    documents: Mapped[list[Document]] = relationship(
        "Document", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    payments: Mapped[list[Payment]] = relationship(
        "Payment", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index("ix_users_role_created", "role", "created_at"),
    )

    @property
    def is_guest(self) -> bool:
        return self.role == Role.GUEST.value


class VATReturn(Base):
    """A VAT3 return for one filing period."""
    __tablename__ = "vat_returns"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
        index=True,
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    sales_vat: Mapped[Decimal] = mapped_column(Money, nullable=False)
    purchase_vat: Mapped[Decimal] = mapped_column(Money, nullable=False)
    net_vat: Mapped[Decimal] = mapped_column(Money, nullable=False)
    # EU trade fields on the VAT3 form
    goods_to_eu: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    goods_from_eu: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    services_to_eu: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    services_from_eu: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    postponed_accounting: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ReturnStatus.DRAFT.value)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime)
    revenue_ref_number: Mapped[str | None] = mapped_column(String(64))
    revenue_response: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    # Relationships
    user: Mapped[User] = relationship("User", back_populates="vat_returns")
    documents: Mapped[list[Document]] = relationship("Document", back_populates="vat_return")
    payment: Mapped[Payment | None] = relationship(
        "Payment", back_populates="vat_return", uselist=False, passive_deletes=True
    )

    __table_args__ = (
        Index("ix_vat_returns_user_period", "user_id", "period_start", "period_end"),
    )


class Document(Base):
    """An uploaded invoice, receipt or report with its extraction result."""
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
        index=True,
    )
    vat_return_id: Mapped[str | None] = mapped_column(
        ForeignKey("vat_returns.id", ondelete="SET NULL", onupdate="CASCADE"),
        index=True,
    )
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    original_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str | None] = mapped_column(String(1024))
    file_data: Mapped[bytes | None] = mapped_column(LargeBinary, deferred=True)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False)
    file_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    document_type: Mapped[str] = mapped_column(String(20), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    is_scanned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    scan_result: Mapped[str | None] = mapped_column(Text)
    extracted_data: Mapped[dict | None] = mapped_column(JSON)
    is_duplicate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    duplicate_of_id: Mapped[str | None] = mapped_column(String(32))
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    # Relationships
    user: Mapped[User] = relationship("User", back_populates="documents")
    vat_return: Mapped[VATReturn | None] = relationship("VATReturn", back_populates="documents")

    __table_args__ = (
        Index("ix_documents_user_uploaded", "user_id", "uploaded_at"),
        Index("ix_documents_scanned_user", "is_scanned", "user_id"),
    )


class Payment(Base):
    """Payment of the net VAT owed on a submitted return."""
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
        index=True,
    )
    vat_return_id: Mapped[str] = mapped_column(
        ForeignKey("vat_returns.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
        unique=True,
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_method: Mapped[str | None] = mapped_column(String(32))
    gateway_payment_id: Mapped[str | None] = mapped_column(String(64))
    gateway_client_secret: Mapped[str | None] = mapped_column(String(128))
    processed_at: Mapped[datetime | None] = mapped_column(DateTime)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    receipt_number: Mapped[str | None] = mapped_column(String(32), unique=True)
    receipt_url: Mapped[str | None] = mapped_column(String(1024))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    # Relationships
    user: Mapped[User] = relationship("User", back_populates="payments")
    vat_return: Mapped[VATReturn] = relationship("VATReturn", back_populates="payment")

    __table_args__ = (
        Index("ix_payments_user_status", "user_id", "status", "created_at"),
    )


class AuditLog(Base):
    """Append-only record of user and system actions."""
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL", onupdate="CASCADE"),
        index=True,
    )
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity_type: Mapped[str | None] = mapped_column(String(32))
    entity_id: Mapped[str | None] = mapped_column(String(32), index=True)
    ip_address: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(String(512))
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)
    old_values: Mapped[dict | None] = mapped_column(JSON)
    new_values: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_logs_user_action", "user_id", "action", "created_at"),
    )
