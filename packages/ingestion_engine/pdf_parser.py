"""
PDF statement extraction.

Works on text lines in reading order. Two shapes are recognized:

* tabular lines: ``02.01.2026 03.01.2026 REMA 1000 SORENGA -123,45``
* labeled vertical blocks, one field per label::

      Dato: 02.01.2026
      Transaksjonstekst: Visa 100021 Rema 1000 Sorenga
      Beløp: -123,45
      Butikk: REMA 1000

Everything else is classified (header, page number, section marker,
boilerplate) and counted in the skip summary.
"""

import io
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import pdfplumber
import structlog

from packages.core.config import Settings
from packages.core.errors import UnrecognizedFormatError

from .fields import expand_year, make_iso_date, parse_amount
from .merchant_extractor import MerchantExtractor
from .models import Extraction, ParsedTransaction, ParseResult, SkipReason, dump_payload
from .results import finalize, ingestion_strategy

logger = structlog.get_logger(__name__)

_PDF_MAGIC = b"%PDF"

DATE_TOKEN_RE = re.compile(r"(?<![\d.])(\d{1,2})[./-](\d{1,2})[./-](\d{4}|\d{2})(?![\d])")

HEADER_PATTERNS = (
    re.compile(r"^dato\s+", re.IGNORECASE),
    re.compile(r"^beskrivelse\s+", re.IGNORECASE),
    re.compile(r"^inn\s+ut", re.IGNORECASE),
    re.compile(r"^transaksjonsdato", re.IGNORECASE),
    re.compile(r"^bokførings?dato", re.IGNORECASE),
    re.compile(r"^konto.*?saldo", re.IGNORECASE),
)

PAGE_NUMBER_PATTERNS = (
    re.compile(r"^side\s+\d+\s*(?:av\s+\d+)?$", re.IGNORECASE),
    re.compile(r"^\d+\s*(?:av|of)\s+\d+$", re.IGNORECASE),
    re.compile(r"^page\s+\d+(?:\s+of\s+\d+)?$", re.IGNORECASE),
)

EXCLUDED_PATTERNS = (
    re.compile(r"^(?:saldo|balance|sum|totalt?)\s*:?\s*[+-]?[\d\s,.]+(?:kr|nok)?$", re.IGNORECASE),
    re.compile(r"^utgående\s+saldo", re.IGNORECASE),
    re.compile(r"^inngående\s+saldo", re.IGNORECASE),
    re.compile(r"^periode[:\s]", re.IGNORECASE),
    re.compile(r"^kontonummer", re.IGNORECASE),
    re.compile(r"^bank\s*statement", re.IGNORECASE),
    re.compile(r"^kontoutskrift", re.IGNORECASE),
    re.compile(r"^\d{4}\.\d{2}\.\d{5}$"),
)

# (pattern, status it switches to)
SECTION_MARKERS = (
    (re.compile(r"^(?:reservasjoner|reserverte\s+transaksjoner|ikke\s+bokførte)\b", re.IGNORECASE), "pending"),
    (re.compile(r"^(?:kontobevegelser|bokførte\s+transaksjoner|transaksjoner|bevegelser)\b", re.IGNORECASE), "booked"),
)

BLOCK_LABEL_RE = re.compile(
    r"^(?P<label>dato|bokført|beløp|belop|transaksjonstekst|butikk|valuta)\s*(?::\s*(?P<value>.*)|$)",
    re.IGNORECASE,
)

_SINGLE_MONEY_RE = re.compile(
    r"^(?P<sign>[-+−])?(?P<int>\d{1,3}(?:\.\d{3})+|\d+)(?P<dec>[.,]\d{2})?(?P<sfx>kr|,-)?$",
    re.IGNORECASE,
)
_LEAD_GROUP_RE = re.compile(r"^(?P<sign>[-+−])?(?P<int>\d{1,3})$")
_CURRENCY_WORD_RE = re.compile(r"^(?:kr|nok)\.?$", re.IGNORECASE)

MIN_LINES_BEFORE_RESPLIT = 5


@dataclass
class MoneyToken:
    value: float
    start: int
    end: int


def _valid_date(match: re.Match) -> Optional[str]:
    day, month, year = match.groups()
    return make_iso_date(expand_year(int(year)), int(month), int(day))


def _is_year_like(number: float) -> bool:
    return number.is_integer() and 1900 <= number <= 2100


def find_money_tokens(text: str) -> List[MoneyToken]:
    """Qualifying money tokens in order of appearance.

    A token qualifies when it has two decimals or a currency marker, or is
    an explicitly signed integer that is not a calendar year. Regular-space
    thousands grouping is only joined after a sign or a column gap, so
    "KIWI 505 123,45" reads as 123,45.
    """
    parts = [(m.start(), m.end(), m.group()) for m in re.finditer(r"\S+", text)]
    tokens: List[MoneyToken] = []
    i = 0
    while i < len(parts):
        start, end, word = parts[i]

        lead = _LEAD_GROUP_RE.match(word)
        if lead and i + 1 < len(parts):
            gap_before = start == 0 or (start >= 2 and text[start - 2:start].isspace())
            j = i + 1
            digits = lead.group("int")
            while j < len(parts) and re.fullmatch(r"\d{3}", parts[j][2]):
                digits += parts[j][2]
                j += 1
            tail = re.fullmatch(r"(\d{3})([.,]\d{2})", parts[j][2]) if j < len(parts) else None
            if tail:
                separators = text[start:parts[j][0] + 1]
                joined_ok = lead.group("sign") or gap_before or not re.search(r"(?<=\d) (?=\d)", separators)
                if joined_ok:
                    value = float(digits + tail.group(1) + "." + tail.group(2)[1:])
                    if lead.group("sign"):
                        value = -value if lead.group("sign") != "+" else value
                    tokens.append(MoneyToken(value, start, parts[j][1]))
                    i = j + 1
                    continue

        match = _SINGLE_MONEY_RE.match(word)
        if match:
            marked = bool(match.group("sfx"))
            if i + 1 < len(parts) and _CURRENCY_WORD_RE.match(parts[i + 1][2]):
                marked = True
            if i > 0 and _CURRENCY_WORD_RE.match(parts[i - 1][2]):
                marked = True
            number = parse_amount(word.rstrip("-").rstrip(",") if match.group("sfx") == ",-" else word)
            if number is not None:
                qualifies = bool(match.group("dec")) or marked or (
                    match.group("sign") and not _is_year_like(abs(number))
                )
                if qualifies:
                    tokens.append(MoneyToken(number, start, end))
        i += 1
    return tokens


def mask_dates(line: str, date_matches: Sequence[re.Match]) -> str:
    """Blank out date tokens so their digits can't become amounts."""
    masked = line
    for m in date_matches:
        masked = masked[: m.start()] + " " * (m.end() - m.start()) + masked[m.end():]
    return masked


def is_tabular_transaction(line: str) -> bool:
    """A valid date token plus a non-zero money token on one line."""
    date_matches = list(DATE_TOKEN_RE.finditer(line))[:2]
    if not any(_valid_date(m) for m in date_matches):
        return False
    return any(token.value for token in find_money_tokens(mask_dates(line, date_matches)))


def classify_skipped_line(line: str, has_valid_date: bool, has_amount: bool) -> SkipReason:
    for pattern in HEADER_PATTERNS:
        if pattern.search(line):
            return SkipReason.HEADER
    for pattern in PAGE_NUMBER_PATTERNS:
        if pattern.search(line):
            return SkipReason.PAGE_NUMBER
    for pattern in EXCLUDED_PATTERNS:
        if pattern.search(line):
            return SkipReason.EXCLUDED_PATTERN
    if not has_valid_date:
        return SkipReason.NO_DATE
    if not has_amount:
        return SkipReason.NO_AMOUNT
    return SkipReason.PARSE_FAILED


def section_status(line: str) -> Optional[str]:
    if DATE_TOKEN_RE.search(line):
        return None
    for pattern, status in SECTION_MARKERS:
        if pattern.search(line):
            return status
    return None


def split_text_lines(text: str) -> List[str]:
    """Split extracted text into lines, re-splitting at dates when newlines are missing."""
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if len(lines) >= MIN_LINES_BEFORE_RESPLIT:
        return lines

    resplit: List[str] = []
    for line in lines:
        cuts = [0]
        for match in DATE_TOKEN_RE.finditer(line):
            before = line[: match.start()].rstrip()
            # keep "dd.mm.yyyy dd.mm.yyyy" pairs on one line
            if before and not DATE_TOKEN_RE.search(before[-10:]):
                cuts.append(match.start())
        cuts.append(len(line))
        resplit.extend(
            line[a:b].strip() for a, b in zip(cuts, cuts[1:]) if line[a:b].strip()
        )
    return resplit


class PdfLineParser:
    """Stateful walk over one document's lines."""

    def __init__(self, default_currency: str = "NOK", extractor: Optional[MerchantExtractor] = None):
        self.default_currency = default_currency
        self.extractor = extractor or MerchantExtractor()
        self.extraction = Extraction()
        self.status = "booked"
        self.recognized = False
        self._block: Optional[Dict[str, str]] = None
        self._block_line = 0
        self._block_label_line = ""
        self._pending_label: Optional[str] = None

    def parse(self, lines: Sequence[str]) -> Extraction:
        for number, raw_line in enumerate(lines, start=1):
            line = raw_line.strip()
            if not line:
                continue
            if self._consume_block_line(number, line):
                continue
            self._flush_block()
            self.extraction.total_lines += 1
            self._parse_line(number, line)
        self._flush_block()

        if not self.recognized:
            raise UnrecognizedFormatError("Unrecognized PDF format")
        self.extraction.sections = max(self.extraction.sections, 1)
        self.extraction.detected_format = "pdf_lines"
        return self.extraction

    # Blocks

    def _consume_block_line(self, number: int, line: str) -> bool:
        match = BLOCK_LABEL_RE.match(line)
        if match:
            label = match.group("label").lower().replace("belop", "beløp")
            value = (match.group("value") or "").strip()
            if self._block is not None and label == "dato" and "dato" in self._block:
                self._flush_block()
            if self._block is None:
                self._block = {}
                self._block_line = number
                self._block_label_line = line
                self.recognized = True
            if value:
                self._block[label] = value
                self._pending_label = None
            else:
                self._pending_label = label
            return True
        if self._block is not None and self._pending_label:
            if is_tabular_transaction(line):
                # the label was a column heading, not the start of a field
                self._flush_block()
                return False
            self._block[self._pending_label] = line
            self._pending_label = None
            return True
        return False

    def _flush_block(self) -> None:
        block, self._block, self._pending_label = self._block, None, None
        if block is None:
            return
        self.extraction.total_lines += 1
        if not block:
            self.extraction.skip(self._block_line, SkipReason.HEADER, self._block_label_line)
            return
        text = " | ".join(f"{k}: {v}" for k, v in block.items())

        date_match = DATE_TOKEN_RE.search(block.get("dato", ""))
        tx_date = _valid_date(date_match) if date_match else None
        amount = parse_amount(block.get("beløp"))
        description = block.get("transaksjonstekst") or block.get("butikk") or ""
        if tx_date is None:
            self.extraction.skip(self._block_line, SkipReason.NO_DATE, text)
            return
        if not amount:
            self.extraction.skip(self._block_line, SkipReason.NO_AMOUNT, text)
            return
        if not description:
            self.extraction.skip(self._block_line, SkipReason.PARSE_FAILED, text)
            return

        booked_match = DATE_TOKEN_RE.search(block.get("bokført", ""))
        currency = (block.get("valuta") or self.default_currency).strip().upper()
        self.extraction.transactions.append(
            ParsedTransaction(
                tx_date=tx_date,
                booked_date=_valid_date(booked_match) if booked_match else None,
                description=description,
                amount=round(amount, 2),
                currency=currency if re.fullmatch(r"[A-Z]{3}", currency) else self.default_currency,
                merchant_raw=block.get("butikk"),
                status=self.status,
                raw_payload=dump_payload({"line": self._block_line, "block": block}),
            )
        )

    # Tabular lines

    def _parse_line(self, number: int, line: str) -> None:
        status = section_status(line)
        if status is not None:
            self.status = status
            self.recognized = True
            self.extraction.sections += 1
            self.extraction.skip(number, SkipReason.SECTION_MARKER, line)
            return

        date_matches = list(DATE_TOKEN_RE.finditer(line))[:2]
        valid = [(m, _valid_date(m)) for m in date_matches]
        chosen = next(((m, iso) for m, iso in valid if iso), None)
        if chosen:
            self.recognized = True

        masked = mask_dates(line, date_matches)
        money = [token for token in find_money_tokens(masked) if token.value]

        tx = None
        if chosen and money and not any(p.search(line) for p in EXCLUDED_PATTERNS):
            tx = self._build_transaction(number, line, masked, chosen, valid, money)
        if tx is None:
            reason = classify_skipped_line(line, chosen is not None, bool(money))
            self.extraction.skip(number, reason, line)
            return
        self.extraction.transactions.append(tx)

    def _build_transaction(
        self,
        number: int,
        line: str,
        masked: str,
        chosen: Tuple[re.Match, str],
        valid: List[Tuple[re.Match, Optional[str]]],
        money: List[MoneyToken],
    ) -> Optional[ParsedTransaction]:
        amount_token = money[-1]
        date_match, tx_date = chosen
        booked = next((iso for m, iso in valid if iso and m is not date_match), None)

        text_start = max(m.end() for m, _ in valid)
        description = masked[text_start:amount_token.start]
        if not description.strip():
            description = masked[amount_token.end:]
        merchant_raw = self.extractor.store_marker(description)
        description = re.split(r"\bbutikk\s*:", description, flags=re.IGNORECASE)[0]
        description = " ".join(description.split())
        if not description:
            return None

        return ParsedTransaction(
            tx_date=tx_date,
            booked_date=booked,
            description=description,
            amount=round(amount_token.value, 2),
            currency=self.default_currency,
            merchant_raw=merchant_raw,
            status=self.status,
            raw_payload=dump_payload({"line": number, "text": line}),
        )


def extract_lines(
    lines: Sequence[str],
    default_currency: str = "NOK",
    extractor: Optional[MerchantExtractor] = None,
) -> Extraction:
    return PdfLineParser(default_currency, extractor).parse(lines)


def read_pdf_text(content: bytes) -> str:
    """Text of every page, in reading order."""
    try:
        with pdfplumber.open(io.BytesIO(content)) as pdf:
            pages = [page.extract_text() or "" for page in pdf.pages]
    except Exception as e:
        raise UnrecognizedFormatError(f"Could not read PDF: {e}") from e
    text = "\n".join(pages)
    if not text.strip():
        raise UnrecognizedFormatError("PDF contains no extractable text")
    return text


@ingestion_strategy("pdf")
def parse_pdf(content: bytes, *, settings: Settings) -> Extraction:
    """Parse a PDF payload, or text already extracted from one."""
    if content[:4] == _PDF_MAGIC:
        text = read_pdf_text(content)
    else:
        text = content.decode("utf-8", errors="replace")
    lines = split_text_lines(text)
    logger.debug("pdf_lines_extracted", lines=len(lines))
    return extract_lines(lines, settings.DEFAULT_CURRENCY)


def parse_pdf_lines(lines: Sequence[str], default_currency: str = "NOK") -> ParseResult:
    """Entry point for callers that already segmented the text into lines."""
    try:
        extraction = extract_lines(lines, default_currency)
    except UnrecognizedFormatError as e:
        return ParseResult.failure(e.detail, e.error_type)
    return finalize(extraction, "pdf")
