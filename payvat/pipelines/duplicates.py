"""Duplicate document detection.

A document is compared against the owner's other uploads using a content
hash plus structural similarity (size, MIME type, name, extension).
"""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models
from ..security import get_file_extension
from .normalization import normalize_filename

logger = logging.getLogger(__name__)

DUPLICATE_THRESHOLD = 0.8


@dataclass(frozen=True)
class DocumentFingerprint:
    content_hash: str
    structural_hash: str
    metadata_hash: str | None = None


@dataclass
class DuplicateCheck:
    is_duplicate: bool
    duplicate_of_id: str | None = None
    similarity: float = 0.0
    reasons: list[str] | None = None


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def metadata_hash(extracted_data: dict[str, Any] | None) -> str | None:
    """Hash of the extracted VAT figures; None when nothing was extracted."""
    if not extracted_data or not (extracted_data.get("sales_vat") or extracted_data.get("purchase_vat")):
        return None
    subset = {
        k: extracted_data.get(k)
        for k in ("sales_vat", "purchase_vat", "total_amount", "vat_rate")
    }
    return hashlib.md5(json.dumps(subset, sort_keys=True, default=str).encode("utf-8")).hexdigest()


def stored_metadata_hash(document: models.Document) -> str | None:
    return ((document.extracted_data or {}).get("fingerprint") or {}).get("metadata_hash")


def generate_fingerprint(
    content: bytes,
    filename: str,
    mime_type: str,
    extracted_data: dict[str, Any] | None = None,
) -> DocumentFingerprint:
    structure = "|".join([
        str(len(content)),
        mime_type,
        normalize_filename(filename),
        get_file_extension(filename),
    ])
    return DocumentFingerprint(
        content_hash=content_hash(content),
        structural_hash=hashlib.md5(structure.encode("utf-8")).hexdigest(),
        metadata_hash=metadata_hash(extracted_data),
    )


def similarity(
    *,
    file_hash: str,
    file_size: int,
    mime_type: str,
    filename: str,
    other: models.Document,
    extracted_hash: str | None = None,
) -> tuple[float, list[str]]:
    """Score how alike two documents are (0..1) and say why.

    ``extracted_hash`` is the metadata hash of the upload's extracted VAT
    figures; matching figures on a file of the same type count as a duplicate.
    """
    if file_hash == other.file_hash:
        return 1.0, ["identical content"]

    score = 0.0
    reasons: list[str] = []
    if file_size == other.file_size and mime_type == other.mime_type:
        score += 0.4
        reasons.append("same size and type")
    if normalize_filename(filename) == normalize_filename(other.original_name):
        score += 0.3
        reasons.append("same file name")
    if get_file_extension(filename) == get_file_extension(other.original_name):
        score += 0.1
        reasons.append("same extension")
    if extracted_hash and extracted_hash == stored_metadata_hash(other):
        score += 0.7
        reasons.append("same extracted VAT figures")
    return min(round(score, 2), 1.0), reasons


def best_match(
    candidates: Iterable[models.Document],
    *,
    file_hash: str,
    file_size: int,
    mime_type: str,
    filename: str,
    extracted_hash: str | None = None,
) -> DuplicateCheck:
    best = DuplicateCheck(is_duplicate=False, reasons=[])
    for other in candidates:
        score, reasons = similarity(
            file_hash=file_hash,
            file_size=file_size,
            mime_type=mime_type,
            filename=filename,
            other=other,
            extracted_hash=extracted_hash,
        )
        if score > best.similarity:
            best = DuplicateCheck(
                is_duplicate=score >= DUPLICATE_THRESHOLD,
                duplicate_of_id=other.id,
                similarity=score,
                reasons=reasons,
            )
    if not best.is_duplicate:
        best.duplicate_of_id = None
    return best


async def check_for_duplicates(
    session: AsyncSession,
    *,
    user_id: str,
    file_hash: str,
    file_size: int,
    mime_type: str,
    filename: str,
    exclude_id: str | None = None,
    extracted_hash: str | None = None,
) -> DuplicateCheck:
    """Compare an upload with the user's existing documents."""
    stmt = select(models.Document).where(models.Document.user_id == user_id)
    if exclude_id:
        stmt = stmt.where(models.Document.id != exclude_id)
    result = await session.execute(stmt)

    check = best_match(
        result.scalars(),
        file_hash=file_hash,
        file_size=file_size,
        mime_type=mime_type,
        filename=filename,
        extracted_hash=extracted_hash,
    )
    if check.is_duplicate:
        logger.info(
            f"Upload {filename} looks like a duplicate of {check.duplicate_of_id} "
            f"(similarity {check.similarity:.2f}: {', '.join(check.reasons or [])})"
        )
    return check
