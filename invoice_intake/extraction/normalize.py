"""Value normalization per field type.

Amounts become two-decimal strings, dates ISO ``YYYY-MM-DD`` strings,
identifiers upper-case without inner spaces, and free text has its
whitespace collapsed. A value that cannot be normalized returns ``None``.
"""

import re
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

DATE_FORMATS: list[str] = [
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%m-%d-%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%Y/%m/%d",
    "%m/%d/%y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%B %d %Y",
    "%b %d %Y",
    "%d %B %Y",
    "%d %b %Y",
]

AMOUNT_RE = r"-?\(?[$€£]?\s?\d{1,3}(?:[,.\s]\d{3})*(?:[.,]\d{2})?\)?|-?\d+(?:[.,]\d{2})?"
DATE_RE = (
    r"\d{4}[/\-]\d{1,2}[/\-]\d{1,2}"
    r"|\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}"
    r"|(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\.?\s+\d{1,2},?\s+\d{4}"
    r"|\d{1,2}\s+(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\.?\s+\d{4}"
)

_CENTS = Decimal("0.01")


def parse_amount(raw: str) -> Decimal | None:
    """Parse a monetary string into a Decimal rounded to cents.

    Handles currency symbols, thousands separators in either convention
    (``1,234.50`` and ``1.234,50``) and accounting negatives ``(12.00)``.
    """
    text = raw.strip()
    if not text:
        return None
    negative = text.startswith("-") or (text.startswith("(") and text.endswith(")"))
    text = re.sub(r"[^\d.,]", "", text)
    if not text or not any(ch.isdigit() for ch in text):
        return None

    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        head, _, tail = text.rpartition(",")
        text = f"{head.replace(',', '')}.{tail}" if len(tail) == 2 else text.replace(",", "")
    elif text.count(".") > 1:
        head, _, tail = text.rpartition(".")
        text = f"{head.replace('.', '')}.{tail}" if len(tail) == 2 else text.replace(".", "")

    try:
        value = Decimal(text).quantize(_CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None
    return -value if negative else value


def normalize_amount(raw: str) -> str | None:
    value = parse_amount(raw)
    return None if value is None else f"{value:.2f}"


def parse_date(raw: str) -> datetime | None:
    """Parse a date string against :data:`DATE_FORMATS` in order."""
    text = re.sub(r"\s+", " ", raw.strip().rstrip(".,"))
    text = re.sub(r"(?<=[A-Za-z])\.", "", text)
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def normalize_date(raw: str) -> str | None:
    parsed = parse_date(raw)
    return None if parsed is None else parsed.date().isoformat()


def normalize_identifier(raw: str) -> str | None:
    text = re.sub(r"\s+", "", raw.strip()).strip(".,:;#").upper()
    return text or None


def normalize_text(raw: str) -> str | None:
    text = re.sub(r"\s+", " ", raw).strip(" \t:;,")
    return text or None


_NORMALIZERS = {
    "amount": normalize_amount,
    "date": normalize_date,
    "identifier": normalize_identifier,
    "text": normalize_text,
}


def normalize(field_type: str, raw: str) -> str | None:
    """Normalize a raw string for a scalar field type.

    Args:
        field_type: One of ``amount``, ``date``, ``identifier``, ``text``.
        raw: Text as read from the document.

    Returns:
        Normalized string, or ``None`` if the text is not a valid value.

    Raises:
        ValueError: If the field type has no scalar normalizer.
    """
    try:
        normalizer = _NORMALIZERS[str(field_type)]
    except KeyError:
        raise ValueError(f"No normalizer for field type: {field_type}") from None
    return normalizer(raw)
