from decimal import Decimal

import pytest

from ai.extractor import (
    ExtractedVATData,
    VATExtractor,
    aggregate_vat,
    extract_vat_data,
    validate_extracted,
)
from conftest import INVOICE_TEXT


@pytest.fixture(scope="module")
def extractor():
    return VATExtractor()


def test_invoice_text_sales_vat(extractor):
    data = extractor.extract_from_text(INVOICE_TEXT, "SALES_INVOICE")

    assert data.sales_vat == [Decimal("23.00")]
    assert data.purchase_vat == []
    assert data.total_amount == Decimal("123.00")
    assert data.vat_rate == 23
    assert data.document_type == "SALES_INVOICE"
    assert data.confidence == pytest.approx(0.6)


def test_amount_before_vat_label(extractor):
    data = extractor.extract_from_text("Coffee Shop receipt\n€23.00 VAT included\n", "PURCHASE_RECEIPT")

    assert data.purchase_vat == [Decimal("23.00")]
    assert data.sales_vat == []
    assert data.document_type == "PURCHASE_RECEIPT"


def test_vat_computed_from_total_and_rate(extractor):
    data = extractor.extract_from_text("Prices include VAT 23%\nTotal: €123.00", "SALES_RECEIPT")

    assert data.sales_vat == [Decimal("23.00")]
    assert any("computed from total" in e for e in data.evidence)


def test_excl_and_incl_vat_totals_are_not_vat(extractor):
    text = "Tax invoice\nTotal excl. VAT: €1,000.00\nVAT @ 23%: €230.00\nTotal incl. VAT: €1,230.00"
    data = extractor.extract_from_text(text, "PURCHASE_INVOICE")

    assert data.purchase_vat == [Decimal("230.00")]
    assert data.total_amount == Decimal("1230.00")
    assert data.vat_rate == 23


@pytest.mark.parametrize("text", ["VAT 1234567TA", "Supplier VAT: 9876543W\nThank you"])
def test_vat_registration_number_is_not_an_amount(extractor, text):
    data = extractor.extract_from_text(text, "PURCHASE_INVOICE")
    assert data.purchase_vat == []


def test_other_category_collects_nothing(extractor):
    data = extractor.extract_from_text(INVOICE_TEXT, "BANK_STATEMENT")
    assert not data.has_vat
    assert data.document_type == "OTHER"


def test_empty_text(extractor):
    data = extractor.extract_from_text("   \n ", "SALES_INVOICE")
    assert not data.has_vat
    assert data.confidence == 0.0


def test_rows_with_vat_column(extractor):
    rows = [
        {"Description": "Widgets", "Net": "100.00", "VAT Amount": "23.00", "Gross": "123.00"},
        {"Description": "Bolts", "Net": 50, "VAT Amount": 11.5, "Gross": 61.5},
    ]
    data = extractor.extract_from_rows(rows, "PURCHASE_INVOICE")

    assert data.purchase_vat == [Decimal("34.50")]
    assert data.total_amount == Decimal("184.50")
    assert data.method == "spreadsheet"
    assert data.confidence == pytest.approx(0.9)


def test_rows_computed_from_net_and_fractional_rate(extractor):
    data = extractor.extract_from_rows([{"net_amount": 200, "tax_rate": 0.23}], "SALES_REPORT")

    assert data.sales_vat == [Decimal("46.00")]
    assert data.total_amount == Decimal("246.00")
    assert data.vat_rate == 23
    assert data.confidence == pytest.approx(0.7)


def test_fuzzy_column_matching(extractor):
    mapping = extractor.match_columns(["VAT Amnt", "Totl", "Customer"])
    assert mapping == {"vat": "VAT Amnt", "total": "Totl"}


def test_rows_without_known_columns_fall_back_to_text():
    data = extract_vat_data([{"Item": "Consulting", "Notes": "VAT: €46.00"}], "SALES_INVOICE")

    assert data.sales_vat == [Decimal("46.00")]
    assert data.method == "spreadsheet"


def test_validation_flags_problems():
    data = ExtractedVATData(
        sales_vat=[Decimal("-5.00"), Decimal("250000.00")],
        total_amount=Decimal("1000.00"),
        vat_rate=15,
        confidence=0.2,
    )
    result = validate_extracted(data)

    assert not result.is_valid
    assert result.issues == ["Negative VAT amount found: -5.00"]
    joined = " ".join(result.warnings)
    assert "Unusually high VAT amount" in joined
    assert "Low confidence" in joined
    assert "Unusual VAT rate: 15%" in joined
    assert "exceeds total amount" in joined


def test_validation_of_empty_extraction_warns():
    result = validate_extracted(ExtractedVATData(confidence=0.9))
    assert result.is_valid
    assert result.warnings == ["No VAT amounts found in document"]


def test_aggregate_vat():
    sales = ExtractedVATData(sales_vat=[Decimal("23.00"), Decimal("4.50")], confidence=0.8, vat_rate=23)
    purchases = ExtractedVATData(purchase_vat=[Decimal("10.00")], confidence=0.4, vat_rate=23)

    agg = aggregate_vat([sales, purchases])

    assert agg.total_sales_vat == Decimal("27.50")
    assert agg.total_purchase_vat == Decimal("10.00")
    assert agg.net_vat == Decimal("17.50")
    assert agg.document_count == 2
    assert agg.to_dict()["average_confidence"] == 0.6
    assert agg.validation_summary == {"valid": 2, "with_warnings": 0, "with_issues": 0}


def test_stored_form_survives_reload():
    data = ExtractedVATData(purchase_vat=[Decimal("12.30")], total_amount=Decimal("65.78"), vat_rate=23)
    reloaded = ExtractedVATData.from_dict(data.to_dict())
    assert reloaded.purchase_vat == [Decimal("12.3")]
    assert reloaded.total_amount == Decimal("65.78")
