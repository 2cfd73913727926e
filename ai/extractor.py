"""VAT extraction using regex patterns + rapidfuzz column matching.

Works on plain document text (PDF, OCR, text files) and on spreadsheet rows
(CSV/Excel). Each result carries a confidence score and evidence snippets.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable

from rapidfuzz import fuzz, process

from config.vat_patterns import (
    COLUMN_SYNONYMS,
    IRISH_VAT_RATES,
    PATTERNS_VERSION,
    QUALIFIED_VAT,
    RATE_PATTERN,
    TOTAL_PATTERNS,
    VAT_PATTERNS,
)
from payvat.config import settings

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _to_decimal(raw: Any) -> Decimal | None:
    """Parse an amount from a regex group or spreadsheet cell."""
    if raw is None:
        return None
    if isinstance(raw, float) and raw != raw:  # NaN from pandas
        return None
    text = re.sub(r"[€,\s%]", "", str(raw))
    if not text:
        return None
    try:
        return Decimal(text)
    except InvalidOperation:
        return None


@dataclass
class VATPattern:
    """A named regex that captures one amount."""
    name: str
    pattern: str
    rate: float | None = None
    compiled: re.Pattern | None = None

    def __post_init__(self) -> None:
        if self.compiled is None:
            self.compiled = re.compile(self.pattern, re.IGNORECASE)


@dataclass
class ExtractedVATData:
    """VAT figures found in one document."""
    sales_vat: list[Decimal] = field(default_factory=list)
    purchase_vat: list[Decimal] = field(default_factory=list)
    total_amount: Decimal | None = None
    vat_rate: float | None = None
    confidence: float = 0.0
    document_type: str = "OTHER"
    evidence: list[str] = field(default_factory=list)
    method: str = "pattern"  # pattern, spreadsheet, manual

    @property
    def total_sales_vat(self) -> Decimal:
        return _money(sum(self.sales_vat, Decimal("0")))

    @property
    def total_purchase_vat(self) -> Decimal:
        return _money(sum(self.purchase_vat, Decimal("0")))

    @property
    def has_vat(self) -> bool:
        return bool(self.sales_vat or self.purchase_vat)

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form stored in ``documents.extracted_data``."""
        return {
            "sales_vat": [float(a) for a in self.sales_vat],
            "purchase_vat": [float(a) for a in self.purchase_vat],
            "total_amount": float(self.total_amount) if self.total_amount is not None else None,
            "vat_rate": self.vat_rate,
            "confidence": round(self.confidence, 2),
            "document_type": self.document_type,
            "evidence": self.evidence[:10],
            "method": self.method,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ExtractedVATData:
        data = data or {}
        total = _to_decimal(data.get("total_amount"))
        return cls(
            sales_vat=[d for d in (_to_decimal(a) for a in data.get("sales_vat") or []) if d is not None],
            purchase_vat=[d for d in (_to_decimal(a) for a in data.get("purchase_vat") or []) if d is not None],
            total_amount=total,
            vat_rate=data.get("vat_rate"),
            confidence=float(data.get("confidence") or 0.0),
            document_type=data.get("document_type") or "OTHER",
            evidence=list(data.get("evidence") or []),
            method=data.get("method") or "pattern",
        )


class VATExtractor:
    """Pattern-based VAT extractor.

    Supports:
    - Labelled VAT amounts ("VAT: €23.00", "VAT @ 23% €23.00", "€23.00 VAT")
    - Totals and VAT rates, with VAT back-computed from gross when no label exists
    - Spreadsheet rows, with header-to-field mapping via rapidfuzz
    """

    def __init__(
        self,
        vat_patterns: list[VATPattern] | None = None,
        total_patterns: list[VATPattern] | None = None,
    ) -> None:
        """Initialize VAT extractor.

        Args:
            vat_patterns: Patterns capturing VAT amounts. If None, loads the defaults.
            total_patterns: Patterns capturing gross totals. If None, loads the defaults.
        """
        self.vat_patterns = vat_patterns or [VATPattern(**p) for p in VAT_PATTERNS]
        self.total_patterns = total_patterns or [VATPattern(**p) for p in TOTAL_PATTERNS]
        self.rate_pattern = re.compile(RATE_PATTERN, re.IGNORECASE)
        self.qualified_pattern = re.compile(QUALIFIED_VAT, re.IGNORECASE)

        # synonym -> field (vat, net, total, rate)
        self._synonym_map: dict[str, str] = {}
        for field_name, synonyms in COLUMN_SYNONYMS.items():
            for syn in synonyms:
                self._synonym_map[syn.lower()] = field_name

        logger.debug(
            f"Loaded {len(self.vat_patterns)} VAT patterns ({PATTERNS_VERSION}) "
            f"and {len(self._synonym_map)} column synonyms"
        )

    def _is_qualified(self, text: str, start: int) -> bool:
        """True when the label reads "excl. vat" or "incl. vat"."""
        return self.qualified_pattern.search(text, max(0, start - 30), start) is not None

    @staticmethod
    def _evidence(text: str, start: int, end: int) -> str:
        return text[max(0, start - 30):min(len(text), end + 30)].strip()

    @staticmethod
    def _assign(data: ExtractedVATData, category: str, amount: Decimal) -> None:
        if "SALES" in category:
            target = data.sales_vat
        elif "PURCHASE" in category:
            target = data.purchase_vat
        else:
            return
        if amount not in target:
            target.append(amount)

    def extract_from_text(self, text: str, category: str) -> ExtractedVATData:
        """Extract VAT amounts, total and rate from free text.

        Args:
            text: Document text
            category: Document category; decides whether amounts are sales or purchases

        Returns:
            ExtractedVATData with confidence capped at 1.0
        """
        data = ExtractedVATData()
        category = (category or "").upper()
        normalized = re.sub(r"\s+", " ", (text or "").lower()).strip()
        if not normalized:
            return data

        confidence = 0.0

        # 1. Labelled VAT amounts
        for pattern in self.vat_patterns:
            for match in pattern.compiled.finditer(normalized):
                amount = _to_decimal(match.group(1))
                if amount is None or amount <= 0:
                    continue
                if self._is_qualified(normalized, match.start()):
                    continue
                self._assign(data, category, _money(amount))
                data.evidence.append(self._evidence(normalized, *match.span()))
                confidence += 0.3
                if pattern.rate is not None and data.vat_rate is None:
                    data.vat_rate = pattern.rate

        # 2. Totals; the largest one is the gross amount
        for pattern in self.total_patterns:
            for match in pattern.compiled.finditer(normalized):
                amount = _to_decimal(match.group(1))
                if amount is None or amount <= 0:
                    continue
                amount = _money(amount)
                if data.total_amount is None or amount > data.total_amount:
                    data.total_amount = amount
                confidence += 0.2

        # 3. Rate
        rate_match = self.rate_pattern.search(normalized)
        if rate_match:
            rate = float(rate_match.group(1))
            data.vat_rate = int(rate) if rate.is_integer() else rate
            confidence += 0.1

        # 4. Back-compute VAT from gross total and rate
        if not data.has_vat and data.total_amount and data.vat_rate:
            rate = Decimal(str(data.vat_rate))
            computed = _money(data.total_amount * rate / (Decimal("100") + rate))
            self._assign(data, category, computed)
            data.evidence.append(f"computed from total {data.total_amount} at {data.vat_rate}%")
            confidence += 0.2

        data.document_type = self._document_type(category, normalized)
        data.confidence = min(confidence, 1.0)

        logger.debug(
            f"Extracted {len(data.sales_vat)} sales / {len(data.purchase_vat)} purchase amounts "
            f"from text of length {len(text)} (confidence {data.confidence:.2f})"
        )
        return data

    @staticmethod
    def _document_type(category: str, normalized_text: str) -> str:
        is_invoice = "invoice" in normalized_text
        if "SALES" in category:
            return "SALES_INVOICE" if is_invoice else "SALES_RECEIPT"
        if "PURCHASE" in category:
            return "PURCHASE_INVOICE" if is_invoice else "PURCHASE_RECEIPT"
        return "OTHER"

    def match_columns(self, columns: Iterable[Any]) -> dict[str, str]:
        """Map spreadsheet headers to vat/net/total/rate.

        Exact synonym hits win; otherwise the best rapidfuzz score above the
        configured threshold is used. Each field maps to at most one column.

        Returns:
            Dict of field name -> original column header
        """
        threshold = settings.extraction.fuzzy_threshold
        synonyms = list(self._synonym_map)
        mapping: dict[str, str] = {}
        scored: list[tuple[float, str, str]] = []

        for column in columns:
            header = re.sub(r"[_\-]+", " ", str(column)).strip().lower()
            if not header:
                continue
            if header in self._synonym_map:
                scored.append((101.0, self._synonym_map[header], str(column)))
                continue
            best = process.extractOne(header, synonyms, scorer=fuzz.token_sort_ratio)
            if best and best[1] >= threshold:
                scored.append((best[1], self._synonym_map[best[0]], str(column)))

        # Highest score claims the field first
        used_columns: set[str] = set()
        for _, field_name, column in sorted(scored, key=lambda s: s[0], reverse=True):
            if field_name in mapping or column in used_columns:
                continue
            mapping[field_name] = column
            used_columns.add(column)

        logger.debug(f"Column mapping: {mapping}")
        return mapping

    def extract_from_rows(self, rows: list[dict[str, Any]], category: str) -> ExtractedVATData:
        """Extract VAT from spreadsheet rows, summing VAT across rows.

        Rows without a VAT cell fall back to ``total * rate / (100 + rate)``
        or ``net * rate / 100``. Without any usable column the rows are
        flattened to text and run through the text patterns.
        """
        category = (category or "").upper()
        if not rows:
            return ExtractedVATData(document_type=self._document_type(category, ""))

        mapping = self.match_columns(rows[0].keys())
        can_compute = "rate" in mapping and ("total" in mapping or "net" in mapping)
        if "vat" not in mapping and not can_compute:
            logger.info("No VAT columns recognised, falling back to text extraction")
            text = "\n".join(
                " ".join(f"{k}: {v}" for k, v in row.items() if v is not None) for row in rows
            )
            data = self.extract_from_text(text, category)
            data.method = "spreadsheet"
            return data

        vat_sum = Decimal("0")
        total_sum = Decimal("0")
        computed_rows = 0
        rates: set[float] = set()

        for row in rows:
            vat = _to_decimal(row.get(mapping["vat"])) if "vat" in mapping else None
            rate = _to_decimal(row.get(mapping["rate"])) if "rate" in mapping else None
            total = _to_decimal(row.get(mapping["total"])) if "total" in mapping else None
            net = _to_decimal(row.get(mapping["net"])) if "net" in mapping else None

            if rate is not None:
                # 0.23 style fractions
                if Decimal("0") < rate < Decimal("1"):
                    rate *= 100
                rates.add(float(rate))

            if vat is None and rate is not None:
                if total is not None:
                    vat = total * rate / (Decimal("100") + rate)
                elif net is not None:
                    vat = net * rate / Decimal("100")
                if vat is not None:
                    computed_rows += 1

            if vat is not None:
                vat_sum += vat
            if total is not None:
                total_sum += total
            elif net is not None and vat is not None:
                total_sum += net + vat

        data = ExtractedVATData(method="spreadsheet")
        if vat_sum > 0:
            self._assign(data, category, _money(vat_sum))
        data.total_amount = _money(total_sum) if total_sum > 0 else None
        if len(rates) == 1:
            rate = rates.pop()
            data.vat_rate = int(rate) if rate.is_integer() else rate
        data.evidence.append(
            f"{len(rows)} rows; columns {', '.join(f'{k}={v}' for k, v in sorted(mapping.items()))}"
        )
        data.confidence = 0.7 if computed_rows else 0.9
        if not data.has_vat:
            data.confidence = 0.1
        data.document_type = self._document_type(category, " ".join(map(str, rows[0].keys())).lower())

        logger.info(f"Spreadsheet extraction: {len(rows)} rows, VAT {vat_sum:.2f}")
        return data


_default_extractor: VATExtractor | None = None


def get_extractor() -> VATExtractor:
    """Process-wide extractor with the default pattern set."""
    global _default_extractor
    if _default_extractor is None:
        _default_extractor = VATExtractor()
    return _default_extractor


def extract_vat_data(
    content: str | list[dict[str, Any]],
    category: str,
) -> ExtractedVATData:
    """Extract VAT from parsed document content (text or spreadsheet rows)."""
    extractor = get_extractor()
    if isinstance(content, list):
        return extractor.extract_from_rows(content, category)
    return extractor.extract_from_text(content, category)


@dataclass
class ExtractionValidation:
    is_valid: bool
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def validate_extracted(data: ExtractedVATData) -> ExtractionValidation:
    """Sanity-check extracted figures.

    Negative amounts are issues and make the result invalid; everything else
    is a warning for the user to review.
    """
    issues: list[str] = []
    warnings: list[str] = []
    high_amount = Decimal(str(settings.extraction.high_amount_warning))
    amounts = data.sales_vat + data.purchase_vat

    if not amounts:
        warnings.append("No VAT amounts found in document")

    for amount in amounts:
        if amount < 0:
            issues.append(f"Negative VAT amount found: {amount}")
        elif amount > high_amount:
            warnings.append(f"Unusually high VAT amount: {amount}")

    if data.confidence < settings.extraction.min_confidence_warning:
        warnings.append("Low confidence in extracted data - manual review recommended")

    if data.vat_rate is not None and float(data.vat_rate) not in IRISH_VAT_RATES:
        warnings.append(f"Unusual VAT rate: {data.vat_rate}% (Irish rates are 0%, 9%, 13.5%, 23%)")

    if data.total_amount is not None:
        for amount in amounts:
            if amount > data.total_amount:
                warnings.append(f"VAT amount {amount} exceeds total amount {data.total_amount}")

    return ExtractionValidation(is_valid=not issues, issues=issues, warnings=warnings)


@dataclass
class VATAggregate:
    total_sales_vat: Decimal
    total_purchase_vat: Decimal
    net_vat: Decimal
    document_count: int
    average_confidence: float
    validation_summary: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_sales_vat": float(self.total_sales_vat),
            "total_purchase_vat": float(self.total_purchase_vat),
            "net_vat": float(self.net_vat),
            "document_count": self.document_count,
            "average_confidence": round(self.average_confidence, 2),
            "validation_summary": self.validation_summary,
        }


def aggregate_vat(documents: Iterable[ExtractedVATData]) -> VATAggregate:
    """Sum sales and purchase VAT across documents."""
    docs = list(documents)
    sales = sum((d.total_sales_vat for d in docs), Decimal("0"))
    purchases = sum((d.total_purchase_vat for d in docs), Decimal("0"))

    summary = {"valid": 0, "with_warnings": 0, "with_issues": 0}
    for doc in docs:
        result = validate_extracted(doc)
        if result.issues:
            summary["with_issues"] += 1
        elif result.warnings:
            summary["with_warnings"] += 1
        else:
            summary["valid"] += 1

    return VATAggregate(
        total_sales_vat=_money(sales),
        total_purchase_vat=_money(purchases),
        net_vat=_money(sales - purchases),
        document_count=len(docs),
        average_confidence=sum(d.confidence for d in docs) / len(docs) if docs else 0.0,
        validation_summary=summary,
    )
