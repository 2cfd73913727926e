from datetime import date
from decimal import Decimal

import pytest

from payvat.vat import (
    VATCalculationError,
    calculate_due_date,
    calculate_net_vat,
    calculate_period_dates,
    filing_frequency,
    format_euro,
    generate_vat_reference,
    is_valid_irish_vat_number,
    parse_euro_amount,
    perform_vat_calculation,
    suggest_vat_periods,
    validate_irish_vat_number,
    validate_vat_period,
    vat3_figures,
    vat_return_due_date,
)

TODAY = date(2024, 6, 15)


def test_net_vat_is_rounded_half_up_to_cents():
    assert calculate_net_vat(Decimal("100.005"), Decimal("0")) == Decimal("100.01")
    assert calculate_net_vat("250.10", "300.20") == Decimal("-50.10")


@pytest.mark.parametrize(
    "period_end,expected",
    [
        (date(2024, 1, 31), date(2024, 2, 23)),  # Friday
        (date(2024, 2, 29), date(2024, 3, 25)),  # 23rd is a Saturday
        (date(2024, 5, 31), date(2024, 6, 24)),  # 23rd is a Sunday
        (date(2024, 12, 31), date(2025, 1, 23)),
    ],
)
def test_due_date_is_23rd_of_next_month_on_a_weekday(period_end, expected):
    assert calculate_due_date(period_end) == expected


@pytest.mark.parametrize(
    "start,end,message",
    [
        (date(2024, 4, 30), date(2024, 3, 1), "after start date"),
        (date(2024, 7, 1), date(2024, 8, 31), "future"),
        (date(2023, 11, 1), date(2023, 11, 30), "6 months"),
        (date(2024, 1, 1), date(2024, 5, 31), "exceed 3 months"),
        (date(2024, 6, 1), date(2024, 6, 10), "at least 2 weeks"),
    ],
)
def test_invalid_periods(start, end, message):
    ok, error = validate_vat_period(start, end, today=TODAY)
    assert not ok
    assert message in error


def test_valid_bimonthly_period():
    assert validate_vat_period(date(2024, 3, 1), date(2024, 4, 30), today=TODAY) == (True, None)


def test_perform_calculation_payable():
    calc = perform_vat_calculation(
        Decimal("1000.00"), Decimal("400.00"), date(2024, 3, 1), date(2024, 4, 30), today=date(2024, 5, 10)
    )
    assert calc.is_valid
    assert calc.net_vat == Decimal("600.00")
    assert calc.due_date == date(2024, 5, 23)
    assert not calc.is_refund
    assert calc.warnings == []


def test_perform_calculation_refund_and_overdue_warnings():
    calc = perform_vat_calculation(
        Decimal("100.00"), Decimal("250.00"), date(2024, 3, 1), date(2024, 4, 30), today=date(2024, 6, 1)
    )
    assert calc.is_refund
    assert calc.net_vat == Decimal("-150.00")
    assert any("refund" in w for w in calc.warnings)
    assert any("overdue" in w for w in calc.warnings)


def test_perform_calculation_invalid_period_has_no_due_date():
    calc = perform_vat_calculation(
        Decimal("10.00"), Decimal("0"), date(2024, 6, 1), date(2024, 6, 5), today=TODAY
    )
    assert not calc.is_valid
    assert calc.due_date is None
    assert calc.net_vat == Decimal("0")
    assert "2 weeks" in calc.warnings[0]


@pytest.mark.parametrize("sales", [Decimal("-1.00"), Decimal("1.005"), Decimal("10000000.01")])
def test_perform_calculation_rejects_bad_amounts(sales):
    with pytest.raises(VATCalculationError):
        perform_vat_calculation(sales, Decimal("0"), date(2024, 3, 1), date(2024, 4, 30), today=TODAY)


def test_vat3_payable_and_repayable_are_exclusive():
    payable = vat3_figures(Decimal("1234.49"), Decimal("200.50"))
    assert (payable.t1, payable.t2, payable.t3, payable.t4) == (1234, 201, 1033, 0)

    repayable = vat3_figures(Decimal("100"), Decimal("350.60"), e1=Decimal("10.5"))
    assert (repayable.t3, repayable.t4) == (0, 251)
    assert repayable.as_dict()["E1"] == 11


@pytest.mark.parametrize(
    "vat_number,strict,lenient",
    [
        ("IE1234567A", True, True),
        ("ie 1234567 ab", True, True),
        ("1234567A", False, True),
        ("IE12345678A", False, True),
        ("IE123456A", False, False),
        ("GB1234567A", False, False),
    ],
)
def test_irish_vat_number_formats(vat_number, strict, lenient):
    assert validate_irish_vat_number(vat_number) is strict
    assert is_valid_irish_vat_number(vat_number) is lenient


def test_period_dates_follow_leap_years():
    assert calculate_period_dates(2024, "jan-feb") == (date(2024, 1, 1), date(2024, 2, 29))
    assert calculate_period_dates(2023, "jan-feb") == (date(2023, 1, 1), date(2023, 2, 28))
    assert calculate_period_dates(2024, "nov-dec")[1] == date(2024, 12, 31)
    with pytest.raises(VATCalculationError):
        calculate_period_dates(2024, "dec-jan")


def test_return_due_date_is_19th():
    assert vat_return_due_date(2024, "nov-dec") == date(2025, 1, 19)


def test_suggested_periods():
    assert len(suggest_vat_periods("monthly", 2024)) == 12
    bimonthly = suggest_vat_periods("bi-monthly", 2024)
    assert [p["key"] for p in bimonthly][:2] == ["jan-feb", "mar-apr"]
    assert filing_frequency(Decimal("3000000")) == "monthly"
    assert filing_frequency(Decimal("2999999.99")) == "bi-monthly"


def test_money_formatting_and_parsing():
    assert format_euro(Decimal("1234.5")) == "€1,234.50"
    assert format_euro(Decimal("-12")) == "-€12.00"
    assert format_euro(Decimal("99.5"), show_cents=False) == "€100"
    assert parse_euro_amount("€ 1,234.56") == Decimal("1234.56")
    assert parse_euro_amount("n/a") == Decimal("0")


def test_vat_reference():
    assert generate_vat_reference("0123456789abcdef", date(2024, 4, 30)) == "VAT-2024-04-ABCDEF"
