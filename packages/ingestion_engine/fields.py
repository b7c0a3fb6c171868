"""
Locale-aware cell parsing for Norwegian bank exports.

Dates arrive as DD.MM.YYYY text, ISO text, native datetimes (openpyxl) or
Excel serial numbers. Amounts arrive as floats or as text with a decimal
comma and space/dot thousands grouping.
"""

import math
import re
import unicodedata
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

import pandas as pd

# Excel's day 0, shifted for the 1900 leap-year bug (serials > 60)
EXCEL_EPOCH = pd.Timestamp("1899-12-30")
SERIAL_MIN_YEAR = 1990
SERIAL_MAX_YEAR = 2050
DATE_LIKE_SERIAL_MIN = 30000
DATE_LIKE_SERIAL_MAX = 60000

_DMY_RE = re.compile(r"^(\d{1,2})[./-](\d{1,2})[./-](\d{2}|\d{4})$")
_ISO_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[ T].*)?$")
_NUMERIC_RE = re.compile(r"^[+-]?\d+(?:\.\d+)?$")
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_SPACES_RE = re.compile(r"\s+")  # \s also covers NBSP and thin space
_CURRENCY_AFFIX_RE = re.compile(r"^(?:nok|kr\.?)\s*|\s*(?:nok|kr\.?)$", re.IGNORECASE)

_HEADER_FOLD = str.maketrans({"ø": "o", "Ø": "o", "æ": "ae", "Æ": "ae", "ß": "ss"})


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if value is pd.NaT:
        return True
    return isinstance(value, str) and not value.strip()


def cell_text(value: Any) -> str:
    if is_blank(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def normalize_header(value: Any) -> str:
    """Fold a header cell to lowercase ascii alphanumerics ("Utl. beløp" -> "utlbelop")."""
    text = cell_text(value).translate(_HEADER_FOLD)
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]", "", text.lower())


def normalize_label(value: Any) -> str:
    """Like normalize_header but keeps word boundaries as single spaces."""
    text = cell_text(value).translate(_HEADER_FOLD)
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]+", " ", text.lower()).strip()


def expand_year(year: int) -> int:
    if year >= 100:
        return year
    return 1900 + year if year > 50 else 2000 + year


def make_iso_date(year: int, month: int, day: int) -> Optional[str]:
    """Return YYYY-MM-DD for a real calendar date, else None."""
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def excel_serial_to_iso(serial: float) -> Optional[str]:
    if not math.isfinite(serial) or serial < 1:
        return None
    stamp = EXCEL_EPOCH + pd.Timedelta(days=int(math.floor(serial)))
    if not SERIAL_MIN_YEAR <= stamp.year <= SERIAL_MAX_YEAR:
        return None
    return stamp.strftime("%Y-%m-%d")


def iso_to_excel_serial(iso: str) -> int:
    return (pd.Timestamp(iso) - EXCEL_EPOCH).days


def parse_date(value: Any) -> Optional[str]:
    """Parse a cell into an ISO date string, or None if it is not a valid date."""
    if is_blank(value) or isinstance(value, bool):
        return None
    if isinstance(value, (datetime, date)):
        return make_iso_date(value.year, value.month, value.day)
    if isinstance(value, (int, float, Decimal)):
        return excel_serial_to_iso(float(value))

    text = str(value).strip()
    match = _DMY_RE.match(text)
    if match:
        day, month, year = (int(g) for g in match.groups())
        return make_iso_date(expand_year(year), month, day)

    match = _ISO_RE.match(text)
    if match:
        year, month, day = (int(g) for g in match.groups())
        return make_iso_date(year, month, day)

    if _NUMERIC_RE.match(text):
        number = float(text)
        if DATE_LIKE_SERIAL_MIN <= number <= DATE_LIKE_SERIAL_MAX:
            return excel_serial_to_iso(number)
    return None


def format_norwegian_date(iso: str) -> str:
    """YYYY-MM-DD -> DD.MM.YYYY"""
    return datetime.strptime(iso, "%Y-%m-%d").strftime("%d.%m.%Y")


def parse_amount(value: Any) -> Optional[float]:
    """Parse a signed amount; None when the cell holds no usable number."""
    if is_blank(value) or isinstance(value, bool):
        return None
    if isinstance(value, (datetime, date)):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        return number if math.isfinite(number) else None

    text = str(value).strip()
    if _DMY_RE.match(text) or _ISO_RE.match(text):
        return None

    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
    text = _CURRENCY_AFFIX_RE.sub("", text.strip())
    text = _SPACES_RE.sub("", text).replace("−", "-")
    if text.endswith("-") and not text.startswith("-"):
        text = "-" + text[:-1]

    if "," in text and "." in text:
        # whichever separator comes last is the decimal mark
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".")

    if not _NUMERIC_RE.match(text):
        return None
    number = float(text)
    return -number if negative else number


def is_likely_date(value: Any) -> bool:
    if isinstance(value, (datetime, date)):
        return True
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return DATE_LIKE_SERIAL_MIN <= value <= DATE_LIKE_SERIAL_MAX and parse_date(value) is not None
    return parse_date(value) is not None


def is_likely_amount(value: Any) -> bool:
    """Numeric but not a date serial."""
    if isinstance(value, (datetime, date)):
        return False
    number = parse_amount(value)
    if number is None:
        return False
    if number.is_integer() and DATE_LIKE_SERIAL_MIN <= number <= DATE_LIKE_SERIAL_MAX:
        return False
    return True


def is_likely_currency(value: Any) -> bool:
    return isinstance(value, str) and bool(_CURRENCY_RE.match(value.strip()))


def is_likely_text(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    text = value.strip()
    if len(text) < 2 or is_likely_currency(text):
        return False
    return parse_date(text) is None and parse_amount(text) is None
