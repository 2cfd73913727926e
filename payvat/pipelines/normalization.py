"""Text normalization for invoice and receipt text before VAT extraction.

Handles Unicode forms, OCR artefacts, currency notation and whitespace.
"""
from __future__ import annotations

import logging
import re
import unicodedata

logger = logging.getLogger(__name__)


def normalize_whitespace(text: str) -> str:
    """Collapse runs of whitespace (including non-breaking spaces) and trim."""
    text = text.replace(' ', ' ').replace(' ', ' ')
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


def normalize_punctuation(text: str) -> str:
    """Normalize quotes, dashes and repeated punctuation."""
    text = text.replace('“', '"').replace('”', '"')
    text = text.replace('‘', "'").replace('’', "'")
    text = text.replace('–', '-').replace('—', '-')
    text = re.sub(r'([!?.]){2,}', r'\1', text)
    return text


def normalize_currency(text: str) -> str:
    """Rewrite ``EUR 12.50`` / ``12.50 EUR`` / ``12,50 €`` forms as ``€12.50``."""
    text = re.sub(r'\bEUR\s*([0-9])', r'€\1', text, flags=re.IGNORECASE)
    text = re.sub(
        r'(?<![0-9.,€])([0-9][0-9.,]*[0-9]|[0-9])[ \t]*(?:EUR\b|€)',
        r'€\1',
        text,
        flags=re.IGNORECASE,
    )
    # European decimal comma, only where no thousands separator is involved
    text = re.sub(r'(€\s?[0-9]+),([0-9]{2})\b(?![0-9,])', r'\1.\2', text)
    return text


def fix_ocr_artifacts(text: str) -> str:
    """Repair common OCR confusions inside amounts (O for 0, l for 1)."""
    def _fix(match: re.Match) -> str:
        return match.group(0).replace('O', '0').replace('o', '0').replace('l', '1')

    return re.sub(r'€\s?[0-9Ool][0-9Ool,]*\.[0-9Oo]{2}', _fix, text)


def clean_html(text: str) -> str:
    """Remove HTML tags from text."""
    return re.sub(r'<[^>]+>', '', text)


def normalize_text(
    text: str,
    *,
    lowercase: bool = False,
    remove_extra_whitespace: bool = True,
    clean_html_tags: bool = True,
    ocr_cleanup: bool = False,
) -> str:
    """Normalize document text for VAT extraction.

    Args:
        text: Input text to normalize
        lowercase: Convert to lowercase
        remove_extra_whitespace: Collapse and trim whitespace
        clean_html_tags: Remove HTML tags
        ocr_cleanup: Repair OCR digit confusions (for scanned input)

    Returns:
        Normalized text
    """
    if not text or not text.strip():
        return ""

    if clean_html_tags:
        text = clean_html(text)

    # Composed form keeps "cáin" matching regardless of source encoding
    text = unicodedata.normalize('NFC', text)
    text = normalize_punctuation(text)
    text = normalize_currency(text)

    if ocr_cleanup:
        text = fix_ocr_artifacts(text)

    if lowercase:
        text = text.lower()

    if remove_extra_whitespace:
        text = normalize_whitespace(text)

    return text


def normalize_filename(filename: str) -> str:
    """Comparable form of a file name: lower-case stem, copy markers removed.

    ``Invoice (1).PDF`` and ``invoice copy.pdf`` both become ``invoice``.
    """
    stem = filename.rsplit('.', 1)[0] if '.' in filename else filename
    stem = unicodedata.normalize('NFC', stem).lower()
    stem = re.sub(r'\s*\(\d+\)$', '', stem)
    stem = re.sub(r'[\s_-]*(?:copy|kopie)(?:\s*\d+)?$', '', stem)
    stem = re.sub(r'[^a-z0-9]+', '', stem)
    return stem
