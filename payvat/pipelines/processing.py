"""Upload processing pipeline.

Combines validation, security scanning, storage, duplicate detection,
parsing and VAT extraction for a single uploaded document.
"""
from __future__ import annotations

import asyncio
import logging
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ai.extractor import (
    ExtractedVATData,
    ExtractionValidation,
    extract_vat_data,
    validate_extracted,
)
from .. import models
from ..audit import RequestContext, record_audit
from ..config import settings
from ..parsers import ParseError, ParsedDocument, detect_file_type, parse_bytes
from ..security import ViolationType, get_file_extension, secure_upload_name, security
from .duplicates import (
    DuplicateCheck,
    check_for_duplicates,
    generate_fingerprint,
    metadata_hash,
    stored_metadata_hash,
)
from .normalization import normalize_text

logger = logging.getLogger(__name__)

EXTENSION_MIME_TYPES: dict[str, tuple[str, ...]] = {
    ".pdf": ("application/pdf",),
    ".csv": ("text/csv", "application/vnd.ms-excel", "text/plain"),
    ".xlsx": ("application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",),
    ".xls": ("application/vnd.ms-excel",),
    ".jpg": ("image/jpeg",),
    ".jpeg": ("image/jpeg",),
    ".png": ("image/png",),
    ".txt": ("text/plain",),
}


class UploadRejected(Exception):
    """The upload failed validation and was not stored."""

    def __init__(self, message: str, status_code: int = 400, violations: list[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.violations = violations or []


class DocumentProcessingError(Exception):
    """Parsing or extraction failed for a stored document."""
    pass


@dataclass
class ProcessedDocument:
    """Result of complete upload processing."""
    document: models.Document
    extracted: ExtractedVATData | None
    validation: ExtractionValidation | None
    duplicate: DuplicateCheck
    warnings: list[str] = field(default_factory=list)

    @property
    def processed(self) -> bool:
        return self.document.is_scanned


def parse_category(category: str | None) -> models.DocumentCategory:
    try:
        return models.DocumentCategory((category or "").upper())
    except ValueError:
        allowed = ", ".join(c.value for c in models.DocumentCategory)
        raise UploadRejected(f"Invalid category '{category}'. Allowed: {allowed}") from None


def resolve_mime_type(filename: str, declared: str | None) -> str:
    """Declared MIME type, or a guess from the extension for generic uploads."""
    declared = (declared or "").split(";")[0].strip().lower()
    if declared and declared != "application/octet-stream":
        return declared
    guessed = EXTENSION_MIME_TYPES.get(get_file_extension(filename))
    if guessed:
        return guessed[0]
    return mimetypes.guess_type(filename)[0] or "application/octet-stream"


def validate_upload(filename: str, content: bytes, mime_type: str) -> None:
    """Size, extension and MIME/extension agreement.

    Raises:
        UploadRejected: 413 for oversized files, 400 otherwise
    """
    if not filename:
        raise UploadRejected("File name is required")
    if not content:
        raise UploadRejected("File is empty")

    max_size = settings.upload.max_file_size
    if len(content) > max_size:
        raise UploadRejected(
            f"File too large. Maximum size is {max_size // (1024 * 1024)}MB",
            status_code=413,
        )

    extension = get_file_extension(filename)
    allowed = {f".{t.lower().lstrip('.')}" for t in settings.upload.allowed_types}
    if extension not in allowed:
        raise UploadRejected(
            f"File type '{extension or filename}' not supported. Allowed: {', '.join(sorted(allowed))}"
        )

    expected = EXTENSION_MIME_TYPES.get(extension)
    if expected and mime_type not in expected:
        raise UploadRejected(f"File content type '{mime_type}' does not match extension '{extension}'")


async def _store_bytes(user_id: str, stored_name: str, content: bytes) -> str:
    directory = Path(settings.upload.storage_dir) / user_id
    path = directory / stored_name

    def _write() -> None:
        directory.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)

    await asyncio.to_thread(_write)
    return str(path)


def _parse_and_extract(content: bytes, filename: str, category: str) -> tuple[ParsedDocument, ExtractedVATData]:
    parsed = parse_bytes(content, filename)
    if parsed.rows is not None:
        extracted = extract_vat_data(parsed.rows, category)
    else:
        text = normalize_text(parsed.text, ocr_cleanup=parsed.metadata.get("method") == "ocr")
        extracted = extract_vat_data(text, category)
    return parsed, extracted


async def extract_document(
    document: models.Document,
    content: bytes,
    *,
    fingerprint: dict[str, Any] | None = None,
) -> tuple[ExtractedVATData | None, ExtractionValidation | None]:
    """Parse and extract into ``document``; failures are recorded, never raised."""
    try:
        parsed, extracted = await asyncio.to_thread(
            _parse_and_extract, content, document.file_name, document.category
        )
    except ParseError as e:
        logger.warning(f"Could not parse document {document.id}: {e}")
        document.is_scanned = False
        document.scan_result = f"Processing failed: {e}"
        return None, None
    except Exception as e:
        logger.error(f"Extraction failed for document {document.id}: {e}", exc_info=True)
        document.is_scanned = False
        document.scan_result = "Processing failed: unexpected error during extraction"
        return None, None

    validation = validate_extracted(extracted)
    amounts = len(extracted.sales_vat) + len(extracted.purchase_vat)
    fingerprint = {**(fingerprint or {}), "metadata_hash": metadata_hash(extracted.to_dict())}

    document.extracted_data = {
        **extracted.to_dict(),
        "validation": {
            "is_valid": validation.is_valid,
            "issues": validation.issues,
            "warnings": validation.warnings,
        },
        "parse": {
            "file_type": parsed.file_type.value,
            "confidence": round(parsed.confidence, 2),
            "method": parsed.metadata.get("method", parsed.file_type.value),
        },
        "fingerprint": fingerprint,
        "corrected": False,
    }
    document.is_scanned = True
    document.scan_result = (
        f"Extracted {amounts} VAT amount(s) with {extracted.confidence:.0%} confidence"
        if amounts
        else "No VAT amounts found"
    )
    return extracted, validation


async def process_upload(
    session: AsyncSession,
    owner: models.User,
    *,
    filename: str,
    content: bytes,
    mime_type: str | None,
    category: str,
    vat_return_id: str | None = None,
    context: RequestContext | None = None,
) -> ProcessedDocument:
    """Validate, store and extract VAT from one uploaded file.

    Steps:
    1. Validate category, size, extension and content type
    2. Security scan (content signatures, file name, rate limit)
    3. Store the document row
    4. Parse + extract + validate VAT figures
    5. Duplicate detection against the owner's documents (bytes and extracted figures)
    6. Write bytes to disk when a storage directory is configured, audit, commit

    Args:
        session: Database session
        owner: User (or guest) the document belongs to
        filename: Original file name
        content: Raw bytes
        mime_type: Declared content type
        category: DocumentCategory value
        vat_return_id: Optional return to attach the document to
        context: Client details for auditing and rate limiting

    Returns:
        ProcessedDocument; extraction failures leave ``document.is_scanned`` False

    Raises:
        UploadRejected: When validation or the security scan rejects the file
    """
    context = context or RequestContext()
    doc_category = parse_category(category)
    mime_type = resolve_mime_type(filename, mime_type)
    validate_upload(filename, content, mime_type)

    if vat_return_id:
        vat_return = await session.get(models.VATReturn, vat_return_id)
        if vat_return is None or vat_return.user_id != owner.id:
            raise UploadRejected("VAT return not found", status_code=404)

    safe_name = secure_upload_name(filename)
    scan = security.validate_file_upload(
        content,
        mime_type,
        safe_name,
        ip=context.ip,
        user_id=owner.id,
        user_agent=context.user_agent,
    )
    if not scan.is_valid:
        rate_limited = any(v.type == ViolationType.RATE_LIMIT_EXCEEDED for v in scan.violations)
        logger.warning(f"Upload {filename!r} blocked (risk {scan.risk_score}): {scan.messages}")
        raise UploadRejected(
            "Too many uploads, please try again later" if rate_limited else "File failed security validation",
            status_code=429 if rate_limited else 422,
            violations=scan.messages,
        )

    fingerprint = generate_fingerprint(content, filename, mime_type)
    document = models.Document(
        id=models.new_id(),
        user_id=owner.id,
        vat_return_id=vat_return_id,
        original_name=filename,
        file_size=len(content),
        mime_type=mime_type,
        file_hash=fingerprint.content_hash,
        document_type=detect_file_type(filename, content[:16]).document_type,
        category=doc_category.value,
    )
    document.file_name = f"{document.id[:12]}_{safe_name}"
    if not settings.upload.storage_dir:
        document.file_data = content

    session.add(document)
    await session.flush()

    extracted, validation = await extract_document(
        document,
        content,
        fingerprint={
            "content_hash": fingerprint.content_hash,
            "structural_hash": fingerprint.structural_hash,
        },
    )

    duplicate = await check_for_duplicates(
        session,
        user_id=owner.id,
        file_hash=fingerprint.content_hash,
        file_size=len(content),
        mime_type=mime_type,
        filename=filename,
        exclude_id=document.id,
        extracted_hash=stored_metadata_hash(document),
    )
    document.is_duplicate = duplicate.is_duplicate
    document.duplicate_of_id = duplicate.duplicate_of_id

    # Bytes hit the disk only once the row exists; a failed commit removes them
    stored_path: str | None = None
    try:
        if settings.upload.storage_dir:
            stored_path = await _store_bytes(owner.id, document.file_name, content)
            document.file_path = stored_path
        await _audit_upload(session, owner, document, extracted, duplicate, context)
        await session.commit()
    except BaseException:
        if stored_path:
            Path(stored_path).unlink(missing_ok=True)
        raise

    warnings: list[str] = []
    if duplicate.is_duplicate:
        warnings.append("This document appears to be a duplicate of one you already uploaded")
    if validation:
        warnings.extend(validation.warnings)
    if not document.is_scanned:
        warnings.append(document.scan_result or "Document could not be processed")

    logger.info(
        f"Processed upload {document.id} ({filename}, {doc_category.value}) for user {owner.id}: "
        f"{document.scan_result}"
    )
    return ProcessedDocument(
        document=document,
        extracted=extracted,
        validation=validation,
        duplicate=duplicate,
        warnings=warnings,
    )


async def _audit_upload(
    session: AsyncSession,
    owner: models.User,
    document: models.Document,
    extracted: ExtractedVATData | None,
    duplicate: DuplicateCheck,
    context: RequestContext,
) -> None:
    # Audit failures must not lose the upload
    try:
        async with session.begin_nested():
            if extracted is not None and extracted.has_vat:
                record_audit(
                    session,
                    user_id=owner.id,
                    action="VAT_DATA_EXTRACTED",
                    entity_type="Document",
                    entity_id=document.id,
                    context=context,
                    metadata={
                        "sales_vat": [float(a) for a in extracted.sales_vat],
                        "purchase_vat": [float(a) for a in extracted.purchase_vat],
                        "confidence": round(extracted.confidence, 2),
                    },
                )
            record_audit(
                session,
                user_id=owner.id,
                action="UPLOAD_DOCUMENT",
                entity_type="Document",
                entity_id=document.id,
                context=context,
                metadata={
                    "file_name": document.original_name,
                    "category": document.category,
                    "file_size": document.file_size,
                    "is_duplicate": duplicate.is_duplicate,
                    "processed": document.is_scanned,
                },
            )
    except SQLAlchemyError as e:
        logger.error(f"Failed to write upload audit rows for document {document.id}: {e}")


async def load_document_bytes(session: AsyncSession, document: models.Document) -> bytes:
    """Stored bytes of a document, from disk or the database.

    Raises:
        DocumentProcessingError: If the bytes are no longer available
    """
    if document.file_path:
        path = Path(document.file_path)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise DocumentProcessingError(f"Stored file is missing for document {document.id}") from e

    # file_data is deferred; load it explicitly instead of lazy-loading
    result = await session.execute(
        select(models.Document.file_data).where(models.Document.id == document.id)
    )
    data = result.scalar_one_or_none()
    if not data:
        raise DocumentProcessingError(f"No stored content for document {document.id}")
    return data


async def reprocess_document(
    session: AsyncSession,
    document: models.Document,
    *,
    context: RequestContext | None = None,
) -> ProcessedDocument:
    """Run extraction again on a stored document, discarding manual corrections.

    Raises:
        DocumentProcessingError: If the stored bytes cannot be loaded
    """
    content = await load_document_bytes(session, document)
    fingerprint = (document.extracted_data or {}).get("fingerprint")
    extracted, validation = await extract_document(document, content, fingerprint=fingerprint)

    record_audit(
        session,
        user_id=document.user_id,
        action="REPROCESS_DOCUMENT",
        entity_type="Document",
        entity_id=document.id,
        context=context,
        metadata={"processed": document.is_scanned, "scan_result": document.scan_result},
    )
    await session.commit()

    warnings = list(validation.warnings) if validation else [document.scan_result or "Processing failed"]
    return ProcessedDocument(
        document=document,
        extracted=extracted,
        validation=validation,
        duplicate=DuplicateCheck(
            is_duplicate=document.is_duplicate,
            duplicate_of_id=document.duplicate_of_id,
        ),
        warnings=warnings,
    )
