"""Transactional email: submission confirmations, payment receipts, welcome mail.

Outside production, messages go to an in-memory outbox and the log instead
of an SMTP server.
"""
from __future__ import annotations

import asyncio
import logging
import smtplib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage

from . import models
from .config import settings
from .vat import format_euro

logger = logging.getLogger(__name__)


@dataclass
class OutgoingEmail:
    to: str
    subject: str
    body: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EmailService:
    """Builds and delivers notification emails.

    Delivery failures are logged and reported as ``False``; callers never
    fail a request because an email could not be sent.
    """

    def __init__(self, use_smtp: bool | None = None) -> None:
        self.use_smtp = (settings.is_production and bool(settings.email.smtp_host)) if use_smtp is None else use_smtp
        self.outbox: list[OutgoingEmail] = []

    async def send(self, to: str, subject: str, body: str) -> bool:
        message = OutgoingEmail(to=to, subject=subject, body=body)
        if not self.use_smtp:
            self.outbox.append(message)
            logger.info(f"Email queued to outbox: to={to} subject={subject!r}")
            return True

        try:
            await asyncio.to_thread(self._send_smtp, message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {to}: {e}")
            return False
        logger.info(f"Email sent: to={to} subject={subject!r}")
        return True

    def _send_smtp(self, message: OutgoingEmail) -> None:
        cfg = settings.email
        msg = EmailMessage()
        msg["From"] = cfg.from_address
        msg["To"] = message.to
        msg["Subject"] = message.subject
        msg.set_content(message.body)

        with smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=30) as smtp:
            smtp.starttls()
            if cfg.smtp_user and cfg.smtp_password:
                smtp.login(cfg.smtp_user, cfg.smtp_password)
            smtp.send_message(msg)

    async def send_submission_confirmation(self, user: models.User, vat_return: models.VATReturn) -> bool:
        body = (
            f"Dear {user.business_name},\n\n"
            f"Your VAT3 return for {vat_return.period_start:%d %b %Y} - {vat_return.period_end:%d %b %Y} "
            f"has been submitted to Revenue.\n\n"
            f"Reference number: {vat_return.revenue_ref_number}\n"
            f"Sales VAT (T1): {format_euro(vat_return.sales_vat)}\n"
            f"Purchase VAT (T2): {format_euro(vat_return.purchase_vat)}\n"
            f"Net VAT: {format_euro(vat_return.net_vat)}\n"
            f"Payment due: {vat_return.due_date:%d %b %Y}\n\n"
            f"{settings.base_url}/dashboard\n"
        )
        return await self.send(user.email, f"VAT return submitted - {vat_return.revenue_ref_number}", body)

    async def send_payment_receipt(self, user: models.User, receipt: dict) -> bool:
        body = (
            f"Dear {user.business_name},\n\n"
            f"We have received your VAT payment of {receipt['amount_display']}.\n\n"
            f"Receipt number: {receipt['receipt_number']}\n"
            f"VAT number: {receipt['vat_number']}\n"
            f"Period: {receipt['period_start']} to {receipt['period_end']}\n"
            f"Revenue reference: {receipt['revenue_ref_number']}\n"
        )
        return await self.send(user.email, f"Payment receipt {receipt['receipt_number']}", body)

    async def send_welcome(self, user: models.User, converted_from_guest: bool = False) -> bool:
        intro = (
            "Your uploaded documents have been kept and are now part of your account."
            if converted_from_guest
            else "Your account is ready."
        )
        body = (
            f"Welcome to PayVAT, {user.business_name}.\n\n"
            f"{intro}\n\n"
            f"Sign in at {settings.base_url}/login\n"
            f"Questions? Contact {settings.email.admin_address}\n"
        )
        return await self.send(user.email, "Welcome to PayVAT", body)


email_service = EmailService()
