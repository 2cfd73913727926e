"""Guest user lifecycle: creation, conversion on sign-up, and scheduled cleanup.

Guests are created on anonymous uploads. Guests older than the cutoff are
removed together with their documents, stored files, audit rows, returns
and payments.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import models
from ..auth import get_password_hash
from ..config import settings
from ..security import security

logger = logging.getLogger(__name__)

GUEST_EMAIL_DOMAIN = "guest.payvat.ie"


@dataclass
class CleanupConfig:
    max_age_hours: float = 24.0
    batch_size: int = 100
    dry_run: bool = False


@dataclass
class CleanupResult:
    guest_users_deleted: int = 0
    documents_deleted: int = 0
    audit_logs_deleted: int = 0
    files_deleted: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "guest_users_deleted": self.guest_users_deleted,
            "documents_deleted": self.documents_deleted,
            "audit_logs_deleted": self.audit_logs_deleted,
            "files_deleted": self.files_deleted,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
            "dry_run": self.dry_run,
        }


class GuestConversionError(Exception):
    """A guest could not be turned into a registered user."""
    pass


async def create_guest_user(session: AsyncSession) -> models.User:
    """Create a session-scoped guest owner for anonymous uploads."""
    stamp = int(time.time() * 1000)
    suffix = secrets.token_hex(4)
    guest = models.User(
        email=f"guest_{stamp}_{suffix}@{GUEST_EMAIL_DOMAIN}",
        password=get_password_hash(secrets.token_urlsafe(24)),
        role=models.Role.GUEST.value,
        business_name="Guest User",
        vat_number=f"GUEST{stamp}{suffix}".upper(),
    )
    session.add(guest)
    await session.flush()
    logger.info(f"Created guest user {guest.id}")
    return guest


async def convert_guest_to_user(
    session: AsyncSession,
    guest_id: str,
    *,
    email: str,
    password: str,
    business_name: str,
    vat_number: str,
    first_name: str | None = None,
    last_name: str | None = None,
    phone: str | None = None,
) -> models.User:
    """Promote a guest to USER in place, keeping their documents.

    Raises:
        GuestConversionError: If the id does not belong to a guest
    """
    guest = await session.get(models.User, guest_id)
    if guest is None or not guest.is_guest:
        raise GuestConversionError("Guest user not found")

    guest.email = email.strip().lower()
    guest.password = get_password_hash(password)
    guest.business_name = business_name
    guest.vat_number = vat_number.strip().upper()
    guest.first_name = first_name
    guest.last_name = last_name
    guest.phone = phone
    guest.role = models.Role.USER.value
    guest.email_verified = models.utcnow()
    await session.flush()

    logger.info(f"Converted guest {guest_id} to registered user")
    return guest


async def _delete_stored_files(paths: list[str], result: CleanupResult) -> None:
    for path in paths:
        try:
            await asyncio.to_thread(Path(path).unlink, missing_ok=True)
            result.files_deleted += 1
        except OSError as e:
            result.errors.append(f"Failed to delete stored file {path}: {e}")


async def _cleanup_single_guest(
    session: AsyncSession,
    guest: models.User,
    config: CleanupConfig,
    result: CleanupResult,
) -> list[str]:
    """Delete one guest and its rows; returns stored file paths to unlink after commit."""
    documents = list((await session.execute(
        select(models.Document).where(models.Document.user_id == guest.id)
    )).scalars())
    stored_files = [d.file_path for d in documents if d.file_path]

    if config.dry_run:
        audit_count = await session.scalar(
            select(func.count()).select_from(models.AuditLog).where(models.AuditLog.user_id == guest.id)
        )
        result.guest_users_deleted += 1
        result.documents_deleted += len(documents)
        result.audit_logs_deleted += audit_count or 0
        return []

    async with session.begin_nested():
        docs = await session.execute(delete(models.Document).where(models.Document.user_id == guest.id))
        audits = await session.execute(delete(models.AuditLog).where(models.AuditLog.user_id == guest.id))
        # Payments reference returns, so they go first
        await session.execute(delete(models.Payment).where(models.Payment.user_id == guest.id))
        await session.execute(delete(models.VATReturn).where(models.VATReturn.user_id == guest.id))
        await session.execute(delete(models.User).where(models.User.id == guest.id))

    result.documents_deleted += docs.rowcount or 0
    result.audit_logs_deleted += audits.rowcount or 0
    result.guest_users_deleted += 1
    logger.debug(f"Deleted guest user {guest.id}")
    return stored_files


async def cleanup_guest_users(session: AsyncSession, config: CleanupConfig | None = None) -> CleanupResult:
    """Delete guests created before ``now - max_age_hours``.

    Each guest is removed in its own savepoint; a failure is recorded in
    ``errors`` and the loop moves on to the next guest.
    Stored files are unlinked only once the deletions are committed.
    """
    config = config or CleanupConfig()
    started = time.monotonic()
    result = CleanupResult(dry_run=config.dry_run)
    cutoff = models.utcnow() - timedelta(hours=config.max_age_hours)

    logger.info(f"Starting guest cleanup (max age {config.max_age_hours}h, dry run {config.dry_run})")

    guests = list((await session.execute(
        select(models.User)
        .where(models.User.role == models.Role.GUEST.value, models.User.created_at < cutoff)
        .order_by(models.User.created_at)
        .limit(config.batch_size)
    )).scalars())

    stored_files: list[str] = []
    for guest in guests:
        guest_id = guest.id
        try:
            stored_files.extend(await _cleanup_single_guest(session, guest, config, result))
        except SQLAlchemyError as e:
            result.errors.append(f"Failed to cleanup guest {guest_id}: {e}")
            logger.error(f"Failed to cleanup guest {guest_id}: {e}")

    if not config.dry_run:
        await session.commit()
        # Deleted rows must not linger in the identity map
        session.expunge_all()
        await _delete_stored_files(stored_files, result)

    result.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        f"Guest cleanup completed: {result.guest_users_deleted} guests, "
        f"{result.documents_deleted} documents, {len(result.errors)} errors"
    )
    return result


async def emergency_guest_cleanup(session: AsyncSession) -> CleanupResult:
    """Aggressive cleanup: guests older than 6 hours, up to 200 at a time."""
    logger.warning("Emergency guest cleanup initiated")
    return await cleanup_guest_users(session, CleanupConfig(max_age_hours=6, batch_size=200))


async def guest_user_stats(session: AsyncSession) -> dict[str, Any]:
    doc_stats = (
        select(
            models.Document.user_id.label("user_id"),
            func.count(models.Document.id).label("documents"),
            func.coalesce(func.sum(models.Document.file_size), 0).label("size"),
        )
        .group_by(models.Document.user_id)
        .subquery()
    )
    rows = (await session.execute(
        select(models.User.created_at, doc_stats.c.documents, doc_stats.c.size)
        .outerjoin(doc_stats, doc_stats.c.user_id == models.User.id)
        .where(models.User.role == models.Role.GUEST.value)
        .order_by(models.User.created_at)
    )).all()

    now = models.utcnow()

    def _age_hours(created) -> int:
        return round((now - created).total_seconds() / 3600)

    return {
        "total": len(rows),
        "with_documents": sum(1 for r in rows if r.documents),
        "total_documents": sum(r.documents or 0 for r in rows),
        "oldest_age_hours": _age_hours(rows[0].created_at) if rows else 0,
        "newest_age_hours": _age_hours(rows[-1].created_at) if rows else 0,
        "total_size": int(sum(r.size or 0 for r in rows)),
    }


class GuestCleanupScheduler:
    """Runs guest cleanup every ``interval_hours`` in a background task."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        interval_hours: float | None = None,
        config: CleanupConfig | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.interval_seconds = (interval_hours or settings.cleanup.interval_hours) * 3600
        self.config = config or CleanupConfig(
            max_age_hours=settings.cleanup.max_age_hours,
            batch_size=settings.cleanup.batch_size,
        )
        self._task: asyncio.Task | None = None
        self.last_result: CleanupResult | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> CleanupResult:
        security.purge_expired()
        async with self.session_factory() as session:
            self.last_result = await cleanup_guest_users(session, self.config)
        return self.last_result

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                result = await self.run_once()
            except Exception as e:
                logger.exception(f"Scheduled guest cleanup failed: {e}")
                continue
            if result.guest_users_deleted:
                logger.info(f"Scheduled cleanup removed {result.guest_users_deleted} guests")

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="guest-cleanup")
        logger.info(f"Guest cleanup scheduled every {self.interval_seconds / 3600:g}h")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Guest cleanup scheduler stopped")
