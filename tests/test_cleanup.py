import asyncio
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from payvat import models
from payvat.pipelines import cleanup
from payvat.pipelines.cleanup import (
    CleanupConfig,
    GuestCleanupScheduler,
    GuestConversionError,
    cleanup_guest_users,
    convert_guest_to_user,
    create_guest_user,
    guest_user_stats,
)
from conftest import create_user


async def age_user(session, user_id, hours):
    await session.execute(
        update(models.User)
        .where(models.User.id == user_id)
        .values(created_at=models.utcnow() - timedelta(hours=hours))
    )
    await session.commit()


async def add_guest_data(session, guest):
    vat_return = models.VATReturn(
        user_id=guest.id,
        period_start=date(2024, 3, 1),
        period_end=date(2024, 4, 30),
        due_date=date(2024, 5, 23),
        sales_vat=Decimal("100.00"),
        purchase_vat=Decimal("0.00"),
        net_vat=Decimal("100.00"),
    )
    session.add(vat_return)
    await session.flush()
    session.add_all([
        models.Document(
            user_id=guest.id,
            vat_return_id=vat_return.id,
            file_name="a.txt",
            original_name="a.txt",
            file_data=b"VAT: 23.00",
            file_size=10,
            mime_type="text/plain",
            file_hash="h1",
            document_type="TEXT",
            category="SALES_INVOICE",
        ),
        models.AuditLog(user_id=guest.id, action="UPLOAD_DOCUMENT"),
        models.Payment(user_id=guest.id, vat_return_id=vat_return.id, amount=Decimal("100.00")),
    ])
    await session.commit()


async def count(session_factory, model, *criteria):
    async with session_factory() as s:
        return await s.scalar(select(func.count()).select_from(model).where(*criteria))


@pytest.mark.asyncio
async def test_guest_creation(session):
    guest = await create_guest_user(session)
    await session.commit()

    assert guest.is_guest
    assert guest.email.endswith("@guest.payvat.ie")
    assert guest.vat_number.startswith("GUEST")
    assert guest.business_name == "Guest User"


@pytest.mark.asyncio
async def test_cleanup_removes_only_stale_guests(session, session_factory):
    stale = await create_guest_user(session)
    fresh = await create_guest_user(session)
    await session.commit()
    await add_guest_data(session, stale)
    await add_guest_data(session, fresh)
    user = await create_user(session, email="old@example.ie", vat_number="IE4444444D")
    await age_user(session, stale.id, 30)
    await age_user(session, user.id, 30 * 24)
    stale_id, fresh_id, user_id = stale.id, fresh.id, user.id

    result = await cleanup_guest_users(session, CleanupConfig(max_age_hours=24))

    assert result.guest_users_deleted == 1
    assert result.documents_deleted == 1
    assert result.audit_logs_deleted == 1
    assert result.errors == []
    assert await count(session_factory, models.User, models.User.id == stale_id) == 0
    assert await count(session_factory, models.Document, models.Document.user_id == stale_id) == 0
    assert await count(session_factory, models.Payment, models.Payment.user_id == stale_id) == 0
    assert await count(session_factory, models.VATReturn, models.VATReturn.user_id == stale_id) == 0
    assert await count(session_factory, models.User, models.User.id.in_([fresh_id, user_id])) == 2
    assert await count(session_factory, models.Document, models.Document.user_id == fresh_id) == 1


@pytest.mark.asyncio
async def test_dry_run_counts_without_deleting(session, session_factory):
    guest = await create_guest_user(session)
    await session.commit()
    await add_guest_data(session, guest)
    await age_user(session, guest.id, 48)

    result = await cleanup_guest_users(session, CleanupConfig(dry_run=True))

    assert result.dry_run
    assert (result.guest_users_deleted, result.documents_deleted, result.audit_logs_deleted) == (1, 1, 1)
    assert await count(session_factory, models.User, models.User.id == guest.id) == 1


@pytest.mark.asyncio
async def test_batch_size_limits_each_run(session, session_factory):
    guests = [await create_guest_user(session) for _ in range(3)]
    await session.commit()
    for g in guests:
        await age_user(session, g.id, 25)

    first = await cleanup_guest_users(session, CleanupConfig(batch_size=2))
    second = await cleanup_guest_users(session, CleanupConfig(batch_size=2))

    assert first.guest_users_deleted == 2
    assert second.guest_users_deleted == 1
    assert await count(session_factory, models.User, models.User.role == "GUEST") == 0


@pytest.mark.asyncio
async def test_stored_files_are_removed(session, tmp_path):
    guest = await create_guest_user(session)
    stored = tmp_path / "invoice.txt"
    stored.write_bytes(b"VAT: 1.00")
    session.add(models.Document(
        user_id=guest.id,
        file_name="invoice.txt",
        original_name="invoice.txt",
        file_path=str(stored),
        file_size=9,
        mime_type="text/plain",
        file_hash="h2",
        document_type="TEXT",
        category="PURCHASE_RECEIPT",
    ))
    await session.commit()
    await age_user(session, guest.id, 100)

    result = await cleanup_guest_users(session)

    assert result.files_deleted == 1
    assert not stored.exists()


@pytest.mark.asyncio
async def test_guest_stats(session):
    old = await create_guest_user(session)
    await create_guest_user(session)
    await session.commit()
    await add_guest_data(session, old)
    await age_user(session, old.id, 10)

    stats = await guest_user_stats(session)

    assert stats["total"] == 2
    assert stats["with_documents"] == 1
    assert stats["total_documents"] == 1
    assert stats["total_size"] == 10
    assert stats["oldest_age_hours"] == 10
    assert stats["newest_age_hours"] == 0


@pytest.mark.asyncio
async def test_convert_guest_keeps_documents(session, session_factory):
    guest = await create_guest_user(session)
    await session.commit()
    await add_guest_data(session, guest)

    user = await convert_guest_to_user(
        session,
        guest.id,
        email=" New@Example.ie ",
        password="correct-horse-battery",
        business_name="New Business",
        vat_number="ie5555555e",
    )
    await session.commit()

    assert user.id == guest.id
    assert user.role == "USER"
    assert user.email == "new@example.ie"
    assert user.vat_number == "IE5555555E"
    assert user.email_verified is not None
    assert await count(session_factory, models.Document, models.Document.user_id == guest.id) == 1


@pytest.mark.asyncio
async def test_convert_rejects_registered_users(session):
    user = await create_user(session, email="real@example.ie", vat_number="IE6666666F")
    with pytest.raises(GuestConversionError):
        await convert_guest_to_user(
            session, user.id, email="x@example.ie", password="p" * 10, business_name="X", vat_number="IE1234567A"
        )


@pytest.mark.asyncio
async def test_scheduler_run_once_and_stop(session, session_factory):
    guest = await create_guest_user(session)
    await session.commit()
    await age_user(session, guest.id, 7)

    scheduler = GuestCleanupScheduler(session_factory, interval_hours=24, config=CleanupConfig(max_age_hours=6))
    result = await scheduler.run_once()
    assert result.guest_users_deleted == 1
    assert scheduler.last_result is result

    scheduler.start()
    assert scheduler.running
    await scheduler.stop()
    assert not scheduler.running


async def add_stored_document(session, guest, path):
    path.write_bytes(b"VAT: 1.00")
    session.add(models.Document(
        user_id=guest.id,
        file_name=path.name,
        original_name=path.name,
        file_path=str(path),
        file_size=9,
        mime_type="text/plain",
        file_hash=path.name,
        document_type="TEXT",
        category="PURCHASE_RECEIPT",
    ))
    await session.commit()


@pytest.mark.asyncio
async def test_failed_guest_keeps_rows_and_files(session, session_factory, tmp_path, monkeypatch):
    failing = await create_guest_user(session)
    healthy = await create_guest_user(session)
    await add_stored_document(session, failing, tmp_path / "kept.txt")
    await add_stored_document(session, healthy, tmp_path / "gone.txt")
    await age_user(session, failing.id, 50)
    await age_user(session, healthy.id, 30)
    failing_id = failing.id

    real_delete = cleanup.delete
    calls = []

    def delete_payments_fails_once(entity):
        if entity is models.Payment and not calls:
            calls.append(entity)
            raise SQLAlchemyError("database is locked")
        return real_delete(entity)

    monkeypatch.setattr(cleanup, "delete", delete_payments_fails_once)

    result = await cleanup_guest_users(session)

    assert result.guest_users_deleted == 1
    assert len(result.errors) == 1
    assert failing_id in result.errors[0]
    assert result.files_deleted == 1
    assert (tmp_path / "kept.txt").exists()
    assert not (tmp_path / "gone.txt").exists()
    assert await count(session_factory, models.User, models.User.id == failing_id) == 1
    assert await count(session_factory, models.Document, models.Document.user_id == failing_id) == 1


@pytest.mark.asyncio
async def test_scheduler_survives_unexpected_errors(session_factory, monkeypatch):
    scheduler = GuestCleanupScheduler(session_factory, interval_hours=0.000001)
    attempts = []

    async def broken_run_once():
        attempts.append(1)
        raise RuntimeError("disk full")

    monkeypatch.setattr(scheduler, "run_once", broken_run_once)
    scheduler.start()
    for _ in range(200):
        if len(attempts) >= 2:
            break
        await asyncio.sleep(0.01)

    assert len(attempts) >= 2
    assert scheduler.running
    await scheduler.stop()
    assert not scheduler.running


@pytest.mark.asyncio
async def test_scheduled_run_purges_security_state(session_factory, monkeypatch):
    purged = []
    monkeypatch.setattr(cleanup.security, "purge_expired", lambda: purged.append(1) or (0, 0))

    await GuestCleanupScheduler(session_factory).run_once()

    assert purged == [1]
