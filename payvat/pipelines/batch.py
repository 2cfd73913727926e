"""Batch document uploader.

Runs a queue of uploads through the processing pipeline with bounded
concurrency and bounded retries. Each item gets its own database session.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .. import models
from ..audit import RequestContext
from ..config import settings
from .processing import ProcessedDocument, UploadRejected, process_upload

logger = logging.getLogger(__name__)


class BatchStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class BatchItem:
    """One queued file."""
    filename: str
    content: bytes = field(repr=False)
    mime_type: str | None
    category: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: BatchStatus = BatchStatus.PENDING
    progress: int = 0
    error: str | None = None
    document_id: str | None = None
    attempts: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "filename": self.filename,
            "category": self.category,
            "status": self.status.value,
            "progress": self.progress,
            "error": self.error,
            "document_id": self.document_id,
            "attempts": self.attempts,
            "warnings": self.warnings,
        }


ProgressCallback = Callable[[BatchItem], Awaitable[None] | None]
Processor = Callable[..., Awaitable[ProcessedDocument]]


class BatchUploader:
    """Queue of uploads processed with at most ``max_concurrent`` in flight.

    Validation rejections (``UploadRejected``) fail an item immediately;
    any other error is retried with exponential backoff up to
    ``max_attempts`` times.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        owner_id: str,
        *,
        context: RequestContext | None = None,
        max_concurrent: int | None = None,
        max_attempts: int | None = None,
        retry_wait: float = 1.0,
        on_progress: ProgressCallback | None = None,
        processor: Processor = process_upload,
    ) -> None:
        self.session_factory = session_factory
        self.owner_id = owner_id
        self.context = context or RequestContext()
        self.max_concurrent = max_concurrent or settings.batch.max_concurrent
        self.max_attempts = max_attempts or settings.batch.max_attempts
        self.retry_wait = retry_wait
        self.on_progress = on_progress
        self.processor = processor
        self.items: list[BatchItem] = []

    def add(self, filename: str, content: bytes, mime_type: str | None, category: str) -> BatchItem:
        if len(self.items) >= settings.batch.max_files:
            raise UploadRejected(f"A batch can hold at most {settings.batch.max_files} files")
        item = BatchItem(filename=filename, content=content, mime_type=mime_type, category=category)
        self.items.append(item)
        return item

    async def _notify(self, item: BatchItem) -> None:
        if self.on_progress is None:
            return
        result = self.on_progress(item)
        if asyncio.iscoroutine(result):
            await result

    async def _set_status(self, item: BatchItem, status: BatchStatus, progress: int) -> None:
        item.status = status
        item.progress = progress
        await self._notify(item)

    async def _upload_once(self, item: BatchItem) -> ProcessedDocument:
        item.attempts += 1
        async with self.session_factory() as session:
            owner = await session.get(models.User, self.owner_id)
            if owner is None:
                raise UploadRejected("Upload owner no longer exists", status_code=404)
            await self._set_status(item, BatchStatus.PROCESSING, 50)
            return await self.processor(
                session,
                owner,
                filename=item.filename,
                content=item.content,
                mime_type=item.mime_type,
                category=item.category,
                context=self.context,
            )

    async def _run_item(self, item: BatchItem, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            await self._set_status(item, BatchStatus.UPLOADING, 10)
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.max_attempts),
                    wait=wait_exponential(multiplier=self.retry_wait, max=self.retry_wait * 8),
                    retry=retry_if_not_exception_type(UploadRejected),
                    reraise=True,
                ):
                    with attempt:
                        result = await self._upload_once(item)
            except UploadRejected as e:
                item.error = e.message
                await self._set_status(item, BatchStatus.ERROR, 0)
                logger.info(f"Batch item {item.filename} rejected: {e.message}")
                return
            except Exception as e:
                item.error = str(e) or e.__class__.__name__
                await self._set_status(item, BatchStatus.ERROR, 0)
                logger.error(f"Batch item {item.filename} failed after {item.attempts} attempt(s): {e}")
                return

            item.document_id = result.document.id
            item.warnings = list(result.warnings)
            item.error = None
            await self._set_status(item, BatchStatus.COMPLETED, 100)

    async def run(self) -> dict[str, int]:
        """Process every pending item and return the summary."""
        pending = [i for i in self.items if i.status == BatchStatus.PENDING]
        if pending:
            logger.info(
                f"Batch upload of {len(pending)} file(s) for user {self.owner_id} "
                f"(max {self.max_concurrent} concurrent)"
            )
            semaphore = asyncio.Semaphore(self.max_concurrent)
            await asyncio.gather(*(self._run_item(item, semaphore) for item in pending))
        return self.summary()

    def retry_errors(self) -> int:
        """Move failed items back to pending; returns how many were reset."""
        count = 0
        for item in self.items:
            if item.status == BatchStatus.ERROR:
                item.status = BatchStatus.PENDING
                item.progress = 0
                item.error = None
                item.attempts = 0
                count += 1
        return count

    def clear_completed(self) -> int:
        before = len(self.items)
        self.items = [i for i in self.items if i.status != BatchStatus.COMPLETED]
        return before - len(self.items)

    def summary(self) -> dict[str, int]:
        counts = {status.value: 0 for status in BatchStatus}
        for item in self.items:
            counts[item.status.value] += 1
        counts["total"] = len(self.items)
        return counts
