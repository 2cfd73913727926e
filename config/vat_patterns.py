"""VAT extraction patterns, spreadsheet column synonyms and Irish rates.

Amount groups are matched against lower-cased, whitespace-collapsed text.
Expand here when new invoice layouts show up.
"""

AMOUNT = r"€?\s?([0-9][0-9,]*(?:\.[0-9]+)?)"

# Amount directly followed by letters is a VAT number ("vat 1234567ta"); followed by % it is a rate
AMOUNT_END = r"(?![0-9.,]*(?:\s*%|[a-z]))"

# "total excl. vat: €100.00" is a net or gross figure, not VAT
QUALIFIED_VAT = (
    r"(?<![a-z])(?:excl|incl|ex|inc|excluding|including|exclusive|inclusive|includes?)\.?(?:\s+of)?\s*$"
)

# "€100.00 VAT" is an amount; "€100.00 VAT @ 23%: €23.00" is a net followed by a VAT label
NOT_A_LABEL = r"(?!\s*(?:@|[0-9(:]|amount|rate))"

VAT_PATTERNS = [
    {
        "name": "vat_label",
        "pattern": r"(?:total\s+)?vat[:\s]*" + AMOUNT + AMOUNT_END,
    },
    {
        "name": "vat_amount",
        "pattern": r"vat\s*amount[:\s]*" + AMOUNT + AMOUNT_END,
    },
    {
        "name": "tax_label",
        "pattern": r"(?:total\s+)?tax[:\s]*" + AMOUNT + AMOUNT_END,
    },
    {
        "name": "vat_at_standard_rate",
        "pattern": r"vat\s*@?\s*23%[:\s]*" + AMOUNT,
        "rate": 23,
    },
    {
        "name": "vat_at_reduced_rate",
        "pattern": r"vat\s*@?\s*13\.5%[:\s]*" + AMOUNT,
        "rate": 13.5,
    },
    {
        "name": "vat_at_second_reduced_rate",
        "pattern": r"vat\s*@?\s*9%[:\s]*" + AMOUNT,
        "rate": 9,
    },
    {
        "name": "amount_then_vat",
        "pattern": r"€([0-9][0-9,]*(?:\.[0-9]+)?)\s*vat" + NOT_A_LABEL,
    },
    {
        "name": "amount_then_tax",
        "pattern": r"€([0-9][0-9,]*(?:\.[0-9]+)?)\s*tax" + NOT_A_LABEL,
    },
    {
        "name": "vat_line_item",
        "pattern": r"vat\s*\([0-9.]+%\)[:\s]*" + AMOUNT,
    },
    {
        # Irish for VAT
        "name": "cain_bhreisluacha",
        "pattern": r"cáin\s*bhreisluacha[:\s]*" + AMOUNT,
    },
]

TOTAL_PATTERNS = [
    {
        "name": "total_incl_vat",
        "pattern": r"total\s+(?:incl|inc|including|inclusive)\.?(?:\s+of)?\s+vat[:\s]*" + AMOUNT,
    },
    {"name": "total", "pattern": r"total[:\s]*" + AMOUNT},
    {"name": "amount_due", "pattern": r"amount\s*due[:\s]*" + AMOUNT},
    {"name": "grand_total", "pattern": r"grand\s*total[:\s]*" + AMOUNT},
]

RATE_PATTERN = r"vat\s*@?\s*([0-9]+(?:\.[0-9]+)?)\s*%"

COLUMN_SYNONYMS = {
    "vat": ["vat", "vat amount", "vat total", "tax", "tax amount", "cáin bhreisluacha"],
    "net": ["net", "net amount", "subtotal", "sub total", "amount ex vat", "excl vat", "goods"],
    "total": ["total", "gross", "gross amount", "amount inc vat", "incl vat", "amount due"],
    "rate": ["vat rate", "rate", "tax rate", "vat %", "vat percent"],
}

IRISH_VAT_RATES = [0, 9, 13.5, 23]

PATTERNS_VERSION = "patterns-v1"
