"""OCR and document parsing utilities.

Supports PDF (text extraction + OCR fallback), images (OCR), CSV, Excel
and plain text with free/open-source tooling.
"""
from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, BinaryIO

import pandas as pd
import pdfplumber
import pytesseract
from pdf2image import convert_from_bytes
from PIL import Image, UnidentifiedImageError
from pypdf import PdfReader

from .config import OCRBackend, settings

logger = logging.getLogger(__name__)


class FileType(str, Enum):
    """Supported file types."""
    PDF = "pdf"
    CSV = "csv"
    EXCEL = "excel"
    IMAGE = "image"
    TEXT = "text"
    UNKNOWN = "unknown"

    @property
    def document_type(self) -> str:
        """Value stored in ``documents.document_type``."""
        return {
            FileType.PDF: "PDF",
            FileType.CSV: "CSV",
            FileType.EXCEL: "EXCEL",
            FileType.IMAGE: "IMAGE",
        }.get(self, "TEXT")


class ParseError(Exception):
    """Raised when document parsing fails."""
    pass


@dataclass
class ParsedDocument:
    """Result of document parsing.

    Text documents fill ``text``; spreadsheets fill ``rows`` as well, with
    a flattened text rendering for display and fallback extraction.
    """
    text: str
    file_type: FileType
    metadata: dict[str, Any] = field(default_factory=dict)
    confidence: float = 1.0
    rows: list[dict[str, Any]] | None = None


def detect_file_type(filename: str, content: bytes | None = None) -> FileType:
    """Detect file type from filename or content.

    Args:
        filename: Original filename
        content: Optional file content for magic number detection

    Returns:
        Detected FileType
    """
    filename_lower = filename.lower()

    if filename_lower.endswith('.pdf'):
        return FileType.PDF
    elif filename_lower.endswith('.csv'):
        return FileType.CSV
    elif filename_lower.endswith(('.xls', '.xlsx', '.xlsm')):
        return FileType.EXCEL
    elif filename_lower.endswith(('.jpg', '.jpeg', '.png')):
        return FileType.IMAGE
    elif filename_lower.endswith('.txt'):
        return FileType.TEXT

    # Magic number detection if content provided
    if content:
        if content.startswith(b'%PDF'):
            return FileType.PDF
        elif content.startswith(b'PK\x03\x04'):  # ZIP/Office
            return FileType.EXCEL
        elif content.startswith((b'\xff\xd8\xff', b'\x89PNG\r\n\x1a\n')):
            return FileType.IMAGE

    return FileType.UNKNOWN


def extract_text_from_pdf_native(file_obj: BinaryIO) -> tuple[str, float]:
    """Extract text from PDF using native text extraction.

    Returns:
        Tuple of (extracted_text, confidence_score)
    """
    try:
        with pdfplumber.open(file_obj) as pdf:
            text = "\n\n".join(filter(None, (page.extract_text() for page in pdf.pages)))

        # Confidence from text density
        if len(text.strip()) > 100:
            return text, 0.95
        elif len(text.strip()) > 20:
            return text, 0.7
        return text, 0.3

    except Exception as e:
        logger.warning(f"pdfplumber extraction failed: {e}, trying pypdf")

        try:
            file_obj.seek(0)
            reader = PdfReader(file_obj)
            text = "\n\n".join(filter(None, (page.extract_text() for page in reader.pages)))
            return text, 0.8 if len(text.strip()) > 100 else 0.5

        except Exception as e2:
            logger.error(f"pypdf extraction also failed: {e2}")
            return "", 0.0


def _ocr_image(image: Image.Image) -> tuple[str, float | None]:
    """OCR one image; returns text and mean word confidence (0..1)."""
    ocr_data = pytesseract.image_to_data(
        image,
        lang=settings.ocr.tesseract_lang,
        output_type=pytesseract.Output.DICT,
    )
    text = pytesseract.image_to_string(image, lang=settings.ocr.tesseract_lang)
    conf_values = [float(c) for c in ocr_data.get("conf", []) if float(c) >= 0]
    confidence = sum(conf_values) / len(conf_values) / 100.0 if conf_values else None
    return text, confidence


def extract_text_from_pdf_ocr(file_content: bytes) -> tuple[str, float]:
    """Extract text from a scanned PDF using Tesseract.

    Raises:
        ParseError: If the PDF cannot be rasterised
    """
    if settings.ocr.backend == OCRBackend.DISABLED:
        logger.info("OCR disabled, skipping PDF OCR")
        return "", 0.0

    try:
        images = convert_from_bytes(file_content, dpi=settings.ocr.dpi, fmt='jpeg')
    except Exception as e:
        logger.error(f"PDF rasterisation failed: {e}")
        raise ParseError(f"OCR processing failed: {e}") from e

    if not images:
        logger.warning("No images extracted from PDF")
        return "", 0.0

    text_parts = []
    confidences = []
    for idx, image in enumerate(images):
        try:
            page_text, page_conf = _ocr_image(image)
        except Exception as e:
            logger.error(f"OCR failed for page {idx + 1}: {e}")
            continue
        if page_text.strip():
            text_parts.append(page_text)
            if page_conf is not None:
                confidences.append(page_conf)

    text = "\n\n".join(text_parts)
    confidence = sum(confidences) / len(confidences) if confidences else 0.0
    logger.info(f"OCR completed on {len(images)} pages: {len(text)} chars, confidence {confidence:.2f}")
    return text, confidence


def parse_pdf(file_obj: BinaryIO, filename: str) -> ParsedDocument:
    """Parse PDF with text extraction + OCR fallback.

    Raises:
        ParseError: If no text can be extracted
    """
    text, confidence = extract_text_from_pdf_native(file_obj)
    method = "native"

    if confidence < settings.ocr.confidence_threshold or len(text.strip()) < 50:
        logger.info(f"Native extraction confidence {confidence:.2f} too low, trying OCR")
        file_obj.seek(0)
        text_ocr, conf_ocr = extract_text_from_pdf_ocr(file_obj.read())
        if conf_ocr > confidence or len(text_ocr) > len(text):
            text, confidence, method = text_ocr, conf_ocr, "ocr"

    if not text.strip():
        raise ParseError("No text could be extracted from PDF")

    return ParsedDocument(
        text=text,
        file_type=FileType.PDF,
        confidence=confidence,
        metadata={"filename": filename, "method": method},
    )


def parse_image(file_obj: BinaryIO, filename: str) -> ParsedDocument:
    """OCR a photographed or scanned receipt.

    Raises:
        ParseError: If the image cannot be opened, OCR is disabled, or no text is found
    """
    if settings.ocr.backend == OCRBackend.DISABLED:
        raise ParseError("OCR is disabled; image documents cannot be read")

    try:
        with Image.open(file_obj) as image:
            image.load()
            text, confidence = _ocr_image(image.convert("RGB"))
    except UnidentifiedImageError as e:
        raise ParseError(f"Unreadable image: {filename}") from e
    except pytesseract.TesseractError as e:
        raise ParseError(f"OCR processing failed: {e}") from e

    if not text.strip():
        raise ParseError("No text could be extracted from image")

    return ParsedDocument(
        text=text,
        file_type=FileType.IMAGE,
        confidence=confidence or 0.0,
        metadata={"filename": filename, "method": "ocr"},
    )


def _frame_to_document(df: pd.DataFrame, file_type: FileType, filename: str) -> ParsedDocument:
    if df.empty:
        raise ParseError(f"{file_type.value.upper()} file is empty")

    df = df.dropna(how="all")
    df.columns = [str(c).strip() for c in df.columns]
    # NaN -> None so rows are JSON-safe
    records = df.astype(object).where(pd.notna(df), None).to_dict("records")

    logger.info(f"Parsed {file_type.value} with {len(df)} rows and {len(df.columns)} columns")
    return ParsedDocument(
        text=df.to_string(index=False),
        file_type=file_type,
        metadata={"filename": filename, "rows": len(records), "columns": list(df.columns)},
        rows=records,
    )


def parse_csv(file_obj: BinaryIO, filename: str) -> ParsedDocument:
    """Parse CSV file into structured records.

    Raises:
        ParseError: If CSV parsing fails
    """
    try:
        df = pd.read_csv(file_obj, encoding='utf-8')
    except Exception as e:
        logger.error(f"CSV parsing failed: {e}")
        raise ParseError(f"Failed to parse CSV: {e}") from e
    return _frame_to_document(df, FileType.CSV, filename)


def parse_excel(file_obj: BinaryIO, filename: str, sheet_name: str | int = 0) -> ParsedDocument:
    """Parse Excel file into structured records.

    Args:
        file_obj: Binary file object
        filename: Original filename
        sheet_name: Sheet name or index (default: first sheet)

    Raises:
        ParseError: If Excel parsing fails
    """
    try:
        df = pd.read_excel(file_obj, sheet_name=sheet_name, engine='openpyxl')
    except Exception as e:
        logger.error(f"Excel parsing failed: {e}")
        raise ParseError(f"Failed to parse Excel: {e}") from e
    return _frame_to_document(df, FileType.EXCEL, filename)


def parse_text(file_obj: BinaryIO, filename: str) -> ParsedDocument:
    raw = file_obj.read()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(f"Text file is not valid UTF-8: {filename}") from e
    if not text.strip():
        raise ParseError("Text file is empty")
    return ParsedDocument(text=text, file_type=FileType.TEXT, metadata={"filename": filename})


def parse_file(file_obj: BinaryIO, filename: str) -> ParsedDocument:
    """Parse uploaded file based on type.

    Raises:
        ParseError: If file type unsupported or parsing fails
    """
    head = file_obj.read(16)
    file_obj.seek(0)
    file_type = detect_file_type(filename, head)

    if file_type == FileType.PDF:
        return parse_pdf(file_obj, filename)
    elif file_type == FileType.CSV:
        return parse_csv(file_obj, filename)
    elif file_type == FileType.EXCEL:
        return parse_excel(file_obj, filename)
    elif file_type == FileType.IMAGE:
        return parse_image(file_obj, filename)
    elif file_type == FileType.TEXT:
        return parse_text(file_obj, filename)
    else:
        raise ParseError(f"Unsupported file type: {filename}")


def parse_bytes(content: bytes, filename: str) -> ParsedDocument:
    """Convenience wrapper for in-memory uploads."""
    return parse_file(io.BytesIO(content), filename)
