"""Irish VAT arithmetic, filing periods and VAT3 figures.

All money is handled as ``Decimal`` and quantised to cents with
ROUND_HALF_UP. VAT3 boxes are reported in whole euros.
"""
from __future__ import annotations

import calendar
import logging
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Literal

logger = logging.getLogger(__name__)


# -------------------- Money helpers --------------------
CENT = Decimal("0.01")
EURO = Decimal("1")
ZERO = Decimal("0")

STANDARD_RATE = Decimal("23")
REDUCED_RATE = Decimal("13.5")
SECOND_REDUCED_RATE = Decimal("9")
ZERO_RATE = Decimal("0")
IRISH_VAT_RATES = (ZERO_RATE, SECOND_REDUCED_RATE, REDUCED_RATE, STANDARD_RATE)

MONTHLY_FILING_THRESHOLD = Decimal("3000000")
MAX_VAT_AMOUNT = Decimal("10000000")
LARGE_NET_VAT_WARNING = Decimal("50000")
PAYMENT_DUE_DAY = 23
RETURN_DUE_DAY = 19


class VATCalculationError(ValueError):
    """Raised when VAT figures cannot be calculated from the given input."""
    pass


def q_money(x) -> Decimal:
    return Decimal(str(x)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_whole_euros(x) -> int:
    """Round to the nearest whole euro, as the VAT3 form requires."""
    return int(Decimal(str(x)).quantize(EURO, rounding=ROUND_HALF_UP))


def format_euro(amount, show_cents: bool = True) -> str:
    """Format like ``€1,234.50`` (or ``-€12.00``)."""
    value = q_money(amount) if show_cents else Decimal(to_whole_euros(amount))
    sign = "-" if value < 0 else ""
    body = f"{abs(value):,.2f}" if show_cents else f"{abs(value):,.0f}"
    return f"{sign}€{body}"


def parse_euro_amount(value: str | None) -> Decimal:
    """Parse user-entered money, tolerating currency symbols, commas and spaces.

    Unparseable input yields zero rather than an error.
    """
    if value is None:
        return ZERO
    cleaned = re.sub(r"[€$£,\s]", "", str(value))
    try:
        return q_money(cleaned) if cleaned else ZERO
    except InvalidOperation:
        return ZERO


# -------------------- Core calculations --------------------
def calculate_net_vat(sales_vat, purchase_vat) -> Decimal:
    """Net VAT = sales VAT - purchase VAT, rounded to cents."""
    return q_money(Decimal(str(sales_vat)) - Decimal(str(purchase_vat)))


def _add_month(d: date) -> date:
    year = d.year + (1 if d.month == 12 else 0)
    month = 1 if d.month == 12 else d.month + 1
    return date(year, month, 1)


def calculate_due_date(period_end: date) -> date:
    """Payment is due on the 23rd of the month after the period ends.

    A due date falling on a weekend moves forward to the following Monday.
    """
    due = _add_month(period_end).replace(day=PAYMENT_DUE_DAY)
    if due.weekday() == 5:  # Saturday
        due += timedelta(days=2)
    elif due.weekday() == 6:  # Sunday
        due += timedelta(days=1)
    return due


def _months_before(d: date, months: int) -> date:
    month_index = d.year * 12 + (d.month - 1) - months
    year, month = divmod(month_index, 12)
    day = min(d.day, calendar.monthrange(year, month + 1)[1])
    return date(year, month + 1, day)


def validate_vat_period(
    period_start: date,
    period_end: date,
    *,
    today: date | None = None,
) -> tuple[bool, str | None]:
    """Check that a filing period is well-formed and current enough to file.

    Returns:
        Tuple of (is_valid, error message or None)
    """
    today = today or date.today()

    if period_end <= period_start:
        return False, "Period end date must be after start date"

    if period_start > today:
        return False, "Period cannot start in the future"

    if period_end < _months_before(today, 6):
        return False, "Period cannot be more than 6 months old"

    month_span = (period_end.year - period_start.year) * 12 + (period_end.month - period_start.month)
    if month_span > 3:
        return False, "VAT period cannot exceed 3 months"

    if (period_end - period_start).days < 14:
        return False, "VAT period must be at least 2 weeks"

    return True, None


@dataclass
class VATCalculation:
    """Outcome of a VAT calculation for one period."""
    sales_vat: Decimal
    purchase_vat: Decimal
    net_vat: Decimal
    period_start: date
    period_end: date
    due_date: date | None
    is_valid: bool
    warnings: list[str] = field(default_factory=list)

    @property
    def is_refund(self) -> bool:
        return self.net_vat < 0


def check_vat_amount(name: str, value: Decimal) -> Decimal:
    if value < ZERO:
        raise VATCalculationError(f"{name} cannot be negative")
    if value > MAX_VAT_AMOUNT:
        raise VATCalculationError(f"{name} amount too large")
    if value != value.quantize(CENT):
        raise VATCalculationError(f"{name} must be in cents precision")
    return value


def perform_vat_calculation(
    sales_vat,
    purchase_vat,
    period_start: date,
    period_end: date,
    *,
    today: date | None = None,
) -> VATCalculation:
    """Validate the period and compute net VAT, due date and warnings.

    Raises:
        VATCalculationError: If an amount is negative, too large or has sub-cent precision
    """
    today = today or date.today()
    sales = check_vat_amount("Sales VAT", Decimal(str(sales_vat)))
    purchases = check_vat_amount("Purchase VAT", Decimal(str(purchase_vat)))

    ok, error = validate_vat_period(period_start, period_end, today=today)
    if not ok:
        return VATCalculation(
            sales_vat=sales,
            purchase_vat=purchases,
            net_vat=ZERO,
            period_start=period_start,
            period_end=period_end,
            due_date=None,
            is_valid=False,
            warnings=[error],
        )

    net = calculate_net_vat(sales, purchases)
    due = calculate_due_date(period_end)

    warnings: list[str] = []
    if net > LARGE_NET_VAT_WARNING:
        warnings.append("Large VAT amount - please verify calculations")
    if purchases > sales:
        warnings.append("Purchase VAT exceeds Sales VAT - VAT refund may apply")
    if due < today:
        warnings.append("VAT return is overdue - late filing penalties may apply")

    return VATCalculation(
        sales_vat=q_money(sales),
        purchase_vat=q_money(purchases),
        net_vat=net,
        period_start=period_start,
        period_end=period_end,
        due_date=due,
        is_valid=True,
        warnings=warnings,
    )


@dataclass
class VAT3Figures:
    """Whole-euro boxes of the VAT3 return."""
    t1: int
    t2: int
    t3: int
    t4: int
    e1: int = 0
    e2: int = 0
    es1: int = 0
    es2: int = 0
    pa1: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "T1": self.t1, "T2": self.t2, "T3": self.t3, "T4": self.t4,
            "E1": self.e1, "E2": self.e2, "ES1": self.es1, "ES2": self.es2,
            "PA1": self.pa1,
        }


def vat3_figures(sales_vat, purchase_vat, e1=0, e2=0, es1=0, es2=0, pa1=0) -> VAT3Figures:
    """Build VAT3 boxes; T3 (payable) and T4 (repayable) are never both non-zero."""
    t1 = to_whole_euros(sales_vat)
    t2 = to_whole_euros(purchase_vat)
    difference = t1 - t2
    return VAT3Figures(
        t1=t1,
        t2=t2,
        t3=difference if difference > 0 else 0,
        t4=-difference if difference < 0 else 0,
        e1=to_whole_euros(e1),
        e2=to_whole_euros(e2),
        es1=to_whole_euros(es1),
        es2=to_whole_euros(es2),
        pa1=to_whole_euros(pa1),
    )


# -------------------- Filing periods --------------------
@dataclass(frozen=True)
class PeriodMapping:
    label: str
    key: str
    start_month: int  # 1-based
    end_month: int


VAT_PERIODS: tuple[PeriodMapping, ...] = (
    PeriodMapping("January - February", "jan-feb", 1, 2),
    PeriodMapping("March - April", "mar-apr", 3, 4),
    PeriodMapping("May - June", "may-jun", 5, 6),
    PeriodMapping("July - August", "jul-aug", 7, 8),
    PeriodMapping("September - October", "sep-oct", 9, 10),
    PeriodMapping("November - December", "nov-dec", 11, 12),
)

_PERIODS_BY_KEY = {p.key: p for p in VAT_PERIODS}


def is_leap_year(year: int) -> bool:
    return calendar.isleap(year)


def _period(period_key: str) -> PeriodMapping:
    try:
        return _PERIODS_BY_KEY[period_key]
    except KeyError:
        raise VATCalculationError(f"Invalid period key: {period_key}") from None


def calculate_period_dates(year: int, period_key: str) -> tuple[date, date]:
    """Start and end dates of a bi-monthly period; February follows the leap-year rule."""
    period = _period(period_key)
    start = date(year, period.start_month, 1)
    end = date(year, period.end_month, calendar.monthrange(year, period.end_month)[1])
    return start, end


def period_label(period_key: str) -> str:
    period = _PERIODS_BY_KEY.get(period_key)
    return period.label if period else period_key


def vat_return_due_date(year: int, period_key: str) -> date:
    """Returns are due on the 19th of the month after the period ends."""
    _, end = calculate_period_dates(year, period_key)
    return _add_month(end).replace(day=RETURN_DUE_DAY)


def is_overdue(year: int, period_key: str, *, today: date | None = None) -> bool:
    return vat_return_due_date(year, period_key) < (today or date.today())


FilingFrequency = Literal["monthly", "bi-monthly"]


def filing_frequency(annual_turnover) -> FilingFrequency:
    return "monthly" if Decimal(str(annual_turnover)) >= MONTHLY_FILING_THRESHOLD else "bi-monthly"


def suggest_vat_periods(frequency: FilingFrequency, year: int) -> list[dict]:
    """List the filing periods of a year for the given frequency."""
    periods = []
    if frequency == "monthly":
        for month in range(1, 13):
            start = date(year, month, 1)
            end = date(year, month, calendar.monthrange(year, month)[1])
            periods.append({
                "label": f"{calendar.month_name[month]} {year}",
                "start_date": start,
                "end_date": end,
            })
    else:
        for p in VAT_PERIODS:
            start, end = calculate_period_dates(year, p.key)
            short = f"{calendar.month_abbr[p.start_month]} - {calendar.month_abbr[p.end_month]}"
            periods.append({
                "label": f"{short} {year}",
                "key": p.key,
                "start_date": start,
                "end_date": end,
            })
    return periods


# -------------------- Identifiers --------------------
_STRICT_VAT_NUMBER = re.compile(r"^IE[0-9]{7}[A-Z]{1,2}$")
_LENIENT_VAT_NUMBERS = (
    re.compile(r"^[0-9]{7}[A-Z]{1,2}$"),
    re.compile(r"^[0-9]{8}[A-Z]$"),
)


def normalize_vat_number(vat_number: str) -> str:
    return re.sub(r"\s", "", vat_number).upper()


def validate_irish_vat_number(vat_number: str) -> bool:
    """Strict registration format: IE + 7 digits + 1-2 letters."""
    return bool(_STRICT_VAT_NUMBER.match(normalize_vat_number(vat_number)))


def is_valid_irish_vat_number(vat_number: str) -> bool:
    """Lenient format used when reading documents; the IE prefix is optional."""
    cleaned = normalize_vat_number(vat_number)
    if cleaned.startswith("IE"):
        cleaned = cleaned[2:]
    return any(p.match(cleaned) for p in _LENIENT_VAT_NUMBERS)


def generate_vat_reference(user_id: str, period_end: date) -> str:
    return f"VAT-{period_end.year}-{period_end.month:02d}-{user_id[-6:].upper()}"

