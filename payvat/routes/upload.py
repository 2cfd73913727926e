"""Document upload endpoints (single and batch).

Anonymous callers get a guest account and a guest session cookie on their
first upload; later uploads with that cookie reuse the same guest.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, File, Form, HTTPException, Response, UploadFile, status
from sqlalchemy import delete

from .. import models
from ..auth import create_access_token
from ..config import settings
from ..deps import ContextDep, OptionalUser, SessionDep, SessionFactoryDep
from ..pipelines.batch import BatchUploader
from ..pipelines.cleanup import create_guest_user
from ..pipelines.processing import UploadRejected, process_upload
from ..schemas import document_to_dict
from .auth import set_auth_cookie

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/upload", tags=["upload"])


async def _resolve_owner(session, user: models.User | None, response: Response) -> models.User:
    if user is not None:
        return user
    guest = await create_guest_user(session)
    set_auth_cookie(response, create_access_token(guest))
    return guest


@router.post("", status_code=status.HTTP_201_CREATED)
async def upload_document(
    response: Response,
    session: SessionDep,
    context: ContextDep,
    user: OptionalUser,
    file: UploadFile = File(..., description="Invoice, receipt or report (PDF, CSV, Excel, image, text)"),
    category: str = Form(...),
    vat_return_id: str | None = Form(default=None),
) -> dict:
    """Upload one document and extract its VAT amounts.

    This endpoint:
    1. Validates and security-scans the file
    2. Stores it and checks for duplicates
    3. Parses it (PDF text with OCR fallback, spreadsheets, images)
    4. Extracts and validates VAT figures

    Processing failures are reported on the document and never fail the
    upload itself.
    """
    if not file.filename:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Filename is required")

    try:
        content = await file.read()
        owner = await _resolve_owner(session, user, response)
        processed = await process_upload(
            session,
            owner,
            filename=file.filename,
            content=content,
            mime_type=file.content_type,
            category=category,
            vat_return_id=vat_return_id,
            context=context,
        )
    finally:
        await file.close()

    return {
        "success": True,
        "processed": processed.processed,
        "is_guest": owner.is_guest,
        "document": document_to_dict(processed.document),
        "duplicate": {
            "is_duplicate": processed.duplicate.is_duplicate,
            "duplicate_of_id": processed.duplicate.duplicate_of_id,
            "similarity": processed.duplicate.similarity,
        },
        "warnings": processed.warnings,
    }


@router.post("/batch")
async def upload_batch(
    response: Response,
    session: SessionDep,
    session_factory: SessionFactoryDep,
    context: ContextDep,
    user: OptionalUser,
    files: list[UploadFile] = File(...),
    category: str = Form(...),
) -> dict:
    """Upload many documents at once with bounded concurrency and retries."""
    if len(files) > settings.batch.max_files:
        raise UploadRejected(f"A batch can hold at most {settings.batch.max_files} files")

    # Batch items run in their own sessions and must see the owner row
    owner = user or await create_guest_user(session)
    await session.commit()

    uploader = BatchUploader(session_factory, owner.id, context=context)
    try:
        for upload in files:
            uploader.add(upload.filename or "upload", await upload.read(), upload.content_type, category)
    finally:
        for upload in files:
            await upload.close()

    summary = await uploader.run()
    logger.info(f"Batch upload for {owner.id} finished: {summary}")
    if user is None:
        if summary["completed"]:
            set_auth_cookie(response, create_access_token(owner))
        else:
            # No file was accepted; drop the guest instead of keeping an empty account
            await session.execute(delete(models.User).where(models.User.id == owner.id))
            await session.commit()
            logger.info(f"Removed guest {owner.id} after a batch with no accepted files")
    return {
        "success": summary["error"] == 0,
        "is_guest": owner.is_guest,
        "summary": summary,
        "items": [item.to_dict() for item in uploader.items],
    }
