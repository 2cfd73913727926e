import asyncio
from types import SimpleNamespace

import pytest
import pytest_asyncio

from payvat.config import settings
from payvat.pipelines.batch import BatchStatus, BatchUploader
from payvat.pipelines.processing import UploadRejected
from conftest import create_user


class FakeProcessor:
    """Stands in for process_upload and records what it was asked to do."""

    def __init__(self, failures=None, delay=0.01):
        self.failures = dict(failures or {})
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls = []

    async def __call__(self, session, owner, *, filename, content, mime_type, category, context):
        self.calls.append(filename)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            pending = self.failures.get(filename)
            if pending:
                error = pending.pop(0)
                raise error
            return SimpleNamespace(document=SimpleNamespace(id=f"doc-{filename}"), warnings=["checked"])
        finally:
            self.in_flight -= 1


@pytest_asyncio.fixture
async def owner(session):
    return await create_user(session, email="batch@example.ie", vat_number="IE3333333C")


def make_uploader(session_factory, owner, processor, **kwargs):
    kwargs.setdefault("max_concurrent", 2)
    kwargs.setdefault("max_attempts", 3)
    return BatchUploader(session_factory, owner.id, retry_wait=0.001, processor=processor, **kwargs)


@pytest.mark.asyncio
async def test_concurrency_is_bounded(session_factory, owner):
    processor = FakeProcessor()
    uploader = make_uploader(session_factory, owner, processor)
    for i in range(5):
        uploader.add(f"file{i}.txt", b"VAT: 1.00", "text/plain", "SALES_INVOICE")

    summary = await uploader.run()

    assert summary["completed"] == 5
    assert summary["total"] == 5
    assert processor.max_in_flight == 2
    assert {i.document_id for i in uploader.items} == {f"doc-file{i}.txt" for i in range(5)}
    assert all(i.progress == 100 and i.warnings == ["checked"] for i in uploader.items)


@pytest.mark.asyncio
async def test_transient_errors_are_retried(session_factory, owner):
    processor = FakeProcessor(failures={"flaky.txt": [RuntimeError("db hiccup"), RuntimeError("again")]})
    uploader = make_uploader(session_factory, owner, processor)
    item = uploader.add("flaky.txt", b"x", "text/plain", "SALES_INVOICE")

    await uploader.run()

    assert item.status == BatchStatus.COMPLETED
    assert item.attempts == 3
    assert item.error is None


@pytest.mark.asyncio
async def test_item_fails_after_max_attempts(session_factory, owner):
    processor = FakeProcessor(failures={"broken.txt": [RuntimeError("boom")] * 5})
    uploader = make_uploader(session_factory, owner, processor, max_attempts=2)
    item = uploader.add("broken.txt", b"x", "text/plain", "SALES_INVOICE")
    uploader.add("fine.txt", b"x", "text/plain", "SALES_INVOICE")

    summary = await uploader.run()

    assert item.status == BatchStatus.ERROR
    assert item.attempts == 2
    assert item.error == "boom"
    assert summary["error"] == 1
    assert summary["completed"] == 1


@pytest.mark.asyncio
async def test_rejections_are_not_retried(session_factory, owner):
    processor = FakeProcessor(failures={"bad.exe": [UploadRejected("File type '.exe' not supported")]})
    uploader = make_uploader(session_factory, owner, processor)
    item = uploader.add("bad.exe", b"MZ", None, "SALES_INVOICE")

    await uploader.run()

    assert item.status == BatchStatus.ERROR
    assert item.attempts == 1
    assert item.error == "File type '.exe' not supported"


@pytest.mark.asyncio
async def test_retry_errors_and_progress_callback(session_factory, owner):
    seen = []
    processor = FakeProcessor(failures={"late.txt": [UploadRejected("rate limited", status_code=429)]})
    uploader = make_uploader(
        session_factory, owner, processor, on_progress=lambda item: seen.append(item.status)
    )
    uploader.add("late.txt", b"x", "text/plain", "SALES_INVOICE")

    await uploader.run()
    assert uploader.retry_errors() == 1
    await uploader.run()

    assert uploader.summary()["completed"] == 1
    assert seen == [
        BatchStatus.UPLOADING, BatchStatus.PROCESSING, BatchStatus.ERROR,
        BatchStatus.UPLOADING, BatchStatus.PROCESSING, BatchStatus.COMPLETED,
    ]
    assert uploader.clear_completed() == 1
    assert uploader.items == []


@pytest.mark.asyncio
async def test_missing_owner_fails_items(session_factory):
    uploader = BatchUploader(session_factory, "no-such-user", processor=FakeProcessor(), retry_wait=0.001)
    item = uploader.add("a.txt", b"x", "text/plain", "SALES_INVOICE")

    await uploader.run()

    assert item.status == BatchStatus.ERROR
    assert item.error == "Upload owner no longer exists"


def test_batch_size_limit(monkeypatch):
    monkeypatch.setattr(settings.batch, "max_files", 2)
    uploader = BatchUploader(None, "owner")
    uploader.add("a.txt", b"x", "text/plain", "SALES_INVOICE")
    uploader.add("b.txt", b"x", "text/plain", "SALES_INVOICE")

    with pytest.raises(UploadRejected):
        uploader.add("c.txt", b"x", "text/plain", "SALES_INVOICE")
