"""
Spreadsheet table extraction.

Bank exports put one or more transaction tables inside a noisy sheet:
title rows, account metadata, per-section headers, subtotal and balance
rows. ``extract_rows`` walks the raw grid, recovers every header section,
and attributes each non-transaction row to exactly one ``SkipReason``.
Sheets without any header row fall back to shape detection.
"""

import io
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import msoffcrypto
import pandas as pd
import structlog

from packages.core.config import Settings, get_settings
from packages.core.errors import (
    AmbiguousColumnError,
    DecryptionError,
    EmptyDocumentError,
    UnrecognizedFormatError,
)

from .fields import (
    cell_text,
    is_blank,
    is_likely_amount,
    is_likely_currency,
    is_likely_date,
    is_likely_text,
    iso_to_excel_serial,
    normalize_header,
    normalize_label,
    parse_amount,
    parse_date,
)
from .models import Extraction, ParsedTransaction, RawRow, SkipReason, dump_payload
from .results import ingestion_strategy

logger = structlog.get_logger(__name__)

# OLE2 Compound Document magic bytes: encrypted Office files use this container
_OLE2_MAGIC = b"\xD0\xCF\x11\xE0\xA1\xB1\x1A\xE1"

# Header synonyms, most specific first. A header cell can only fill one role.
DATE_HEADERS = (
    "Dato", "Transaksjonsdato", "Transaksjons dato", "Transaksjon dato",
    "Date", "Transaction date", "Utført dato", "Handledato", "Trans.dato",
    "Kjøpsdato", "Betalingsdato", "Bokføringsdato", "Valuteringsdato",
    "Bokført", "Posteringsdato", "Rentedato", "Oppgjørsdato", "Forfall",
)
BOOKED_DATE_HEADERS = (
    "Bokført", "Bokført dato", "Bokføringsdato", "Regnskapsdato", "Booked date",
    "Posteringsdato", "Rentedato", "Oppgjørsdato", "Valuteringsdato",
)
AMOUNT_HEADERS = (
    "Beløp", "Amount", "Transaksjonsbeløp", "Transaksjons beløp", "Beløp NOK",
    "Beløp (NOK)", "NOK beløp", "Inn/Ut", "Kroner", "Kr", "NOK", "Sum",
    "Saldo endring", "Verdi",
)
FOREIGN_AMOUNT_HEADERS = (
    "Utl. beløp", "Utenlandsk beløp", "Beløp i valuta", "Valutabeløp",
    "Opprinnelig beløp", "Foreign amount", "Original amount",
)
AMOUNT_OUT_HEADERS = (
    "Ut", "Ut fra konto", "Uttak", "Utbetalt", "Belastet", "Debitert", "Debet",
    "Debit", "Withdrawal",
)
AMOUNT_IN_HEADERS = (
    "Inn", "Inn på konto", "Innskudd", "Kreditert", "Kredit", "Credit", "Deposit",
)
DESCRIPTION_HEADERS = (
    "Spesifikasjon", "Beskrivelse", "Tekst", "Transaksjonstekst", "Forklaring",
    "Melding", "Description", "Details", "Detaljer", "Transaksjon", "Kontotekst",
    "Merknad", "Kommentar", "Transaksjonstype", "Type", "Kategori", "Navn",
)
MERCHANT_HEADERS = (
    "Butikk", "Brukersted", "Forhandler", "Betalingsmottaker", "Mottaker",
    "Avsender", "Fra/Til", "Merchant", "Recipient",
)
CURRENCY_HEADERS = ("Valuta", "Currency", "Valutakode", "Myntslag")

# Matched against normalize_label() output
_SUMMARY_RE = re.compile(
    r"^(?:saldo(?: hendelser| pr| per)?|utgaende saldo|inngaende saldo|totalbelop|"
    r"totalt|total|sum(?: (?:transaksjoner|inn|ut|belop|periode))?)(?: \d.*)?$"
)


@dataclass(frozen=True)
class ColumnMapping:
    date: int
    amount: Optional[int] = None
    amount_out: Optional[int] = None
    amount_in: Optional[int] = None
    foreign_amount: Optional[int] = None
    booked_date: Optional[int] = None
    description: Optional[int] = None
    merchant: Optional[int] = None
    currency: Optional[int] = None
    headers: Tuple[str, ...] = ()
    label: str = "header"

    def describe(self) -> str:
        if not self.headers:
            return self.label
        parts = [f"date={self.headers[self.date]}"]
        if self.amount is not None:
            parts.append(f"amount={self.headers[self.amount]}")
        for name in ("amount_out", "amount_in", "foreign_amount", "description", "merchant"):
            col = getattr(self, name)
            if col is not None:
                parts.append(f"{name}={self.headers[col]}")
        return f"{self.label}({', '.join(parts)})"

    def column_name(self, col: int) -> str:
        if col < len(self.headers) and self.headers[col]:
            return self.headers[col]
        return f"col_{col}"


def is_summary_label(value: Any) -> bool:
    label = normalize_label(value)
    return bool(label) and _SUMMARY_RE.match(label) is not None


def _is_blank_row(values: Sequence[Any]) -> bool:
    return all(is_blank(v) for v in values)


def _looks_like_data_row(values: Sequence[Any]) -> bool:
    date_cols = [i for i, v in enumerate(values) if not is_blank(v) and parse_date(v)]
    if not date_cols:
        return False
    return any(
        is_likely_amount(v) for i, v in enumerate(values) if i not in date_cols
    )


def match_header(values: Sequence[Any]) -> Optional[ColumnMapping]:
    """Column mapping if the row is a table header (needs Date + Amount)."""
    if _looks_like_data_row(values):
        return None

    headers = tuple(cell_text(v) for v in values)
    normalized = [normalize_header(h) for h in headers]
    used = set()

    def find(names: Sequence[str]) -> Optional[int]:
        for name in names:
            key = normalize_header(name)
            for idx, value in enumerate(normalized):
                if value and value == key and idx not in used:
                    used.add(idx)
                    return idx
        return None

    date_col = find(DATE_HEADERS)
    if date_col is None:
        return None
    amount_col = find(AMOUNT_HEADERS)
    out_col = find(AMOUNT_OUT_HEADERS)
    in_col = find(AMOUNT_IN_HEADERS)
    if amount_col is None and out_col is None and in_col is None:
        return None

    return ColumnMapping(
        date=date_col,
        amount=amount_col,
        amount_out=out_col,
        amount_in=in_col,
        booked_date=find(BOOKED_DATE_HEADERS),
        foreign_amount=find(FOREIGN_AMOUNT_HEADERS),
        currency=find(CURRENCY_HEADERS),
        description=find(DESCRIPTION_HEADERS),
        merchant=find(MERCHANT_HEADERS),
        headers=headers,
    )


def _resolve_amount(row: RawRow, mapping: ColumnMapping) -> Optional[float]:
    if mapping.amount is not None:
        primary = parse_amount(row.cell(mapping.amount))
    else:
        debit = parse_amount(row.cell(mapping.amount_out))
        credit = parse_amount(row.cell(mapping.amount_in))
        if debit is None and credit is None:
            primary = None
        else:
            # Amount = Credit (positive) - Debit (negative)
            primary = abs(credit or 0.0) - abs(debit or 0.0)

    if not primary and mapping.foreign_amount is not None:
        secondary = parse_amount(row.cell(mapping.foreign_amount))
        if secondary:
            primary = secondary
    return None if primary is None else round(primary, 2)


def _date_serial(date_cell: Any, tx_date: str) -> float:
    if isinstance(date_cell, (int, float)) and not isinstance(date_cell, bool):
        return float(date_cell)
    return float(iso_to_excel_serial(tx_date))


def _first_text(row: RawRow) -> str:
    for value in row.values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def convert_row(
    row: RawRow, mapping: ColumnMapping, default_currency: str
) -> Tuple[Optional[ParsedTransaction], Optional[SkipReason]]:
    """One row -> (transaction, None) or (None, reason)."""
    description = cell_text(row.cell(mapping.description))
    merchant_cell = cell_text(row.cell(mapping.merchant))
    label = description or merchant_cell or _first_text(row)
    if is_summary_label(label):
        return None, SkipReason.EXCLUDED_PATTERN

    date_cell = row.cell(mapping.date)
    tx_date = parse_date(date_cell)
    if tx_date is None:
        return None, SkipReason.NO_DATE

    amount = _resolve_amount(row, mapping)
    if amount is not None and amount == _date_serial(date_cell, tx_date):
        raise AmbiguousColumnError()
    if not amount:
        return None, SkipReason.NO_AMOUNT

    description = description or merchant_cell
    if not description:
        return None, SkipReason.PARSE_FAILED

    currency = cell_text(row.cell(mapping.currency)).upper()
    if not is_likely_currency(currency):
        currency = default_currency

    payload: Dict[str, Any] = {
        "row": row.index + 1,
        "section": row.section,
        "section_label": row.section_label,
        "values": {
            mapping.column_name(i): cell_text(v)
            for i, v in enumerate(row.values)
            if not is_blank(v)
        },
    }
    tx = ParsedTransaction(
        tx_date=tx_date,
        booked_date=parse_date(row.cell(mapping.booked_date)),
        description=description,
        amount=amount,
        currency=currency,
        merchant_raw=merchant_cell or None,
        raw_payload=dump_payload(payload),
    )
    return tx, None


class _SectionScanner:
    """Walks a grid, parsing every header section it finds."""

    def __init__(self, rows: List[RawRow], settings: Settings):
        self.rows = rows
        self.settings = settings
        self.extraction = Extraction()
        self.formats: List[str] = []

    def run(self) -> Extraction:
        idx = 0
        while idx < len(self.rows):
            row = self.rows[idx]
            if _is_blank_row(row.values):
                idx += 1
                continue
            mapping = match_header(row.values)
            if mapping is None:
                reason = (
                    SkipReason.SECTION_MARKER
                    if self._is_section_title(idx)
                    else SkipReason.EXCLUDED_PATTERN
                )
                self.extraction.skip(idx + 1, reason, row.values)
                idx += 1
                continue

            logger.debug("header_found", row=idx + 1, mapping=mapping.describe())
            self.extraction.skip(idx + 1, SkipReason.HEADER, row.values)
            idx = self._parse_section(idx + 1, mapping, self._title_before(idx))

        first = self.formats[0]
        fmt = first if len(set(self.formats)) == 1 else " + ".join(self.formats)
        if self.extraction.sections > 1:
            fmt = f"{fmt} [{self.extraction.sections} sections]"
        self.extraction.detected_format = fmt
        return self.extraction

    def _next_non_blank(self, idx: int, step: int) -> Optional[int]:
        idx += step
        while 0 <= idx < len(self.rows):
            if not _is_blank_row(self.rows[idx].values):
                return idx
            idx += step
        return None

    def _is_title_row(self, idx: int) -> bool:
        cells = [v for v in self.rows[idx].values if not is_blank(v)]
        return len(cells) == 1 and is_likely_text(cells[0]) and not is_summary_label(cells[0])

    def _is_section_title(self, idx: int) -> bool:
        if not self._is_title_row(idx):
            return False
        nxt = self._next_non_blank(idx, 1)
        return nxt is not None and match_header(self.rows[nxt].values) is not None

    def _title_before(self, header_idx: int) -> Optional[str]:
        prev = self._next_non_blank(header_idx, -1)
        if prev is None or not self._is_title_row(prev):
            return None
        return _first_text(self.rows[prev])

    def _parse_section(self, start: int, mapping: ColumnMapping, label: Optional[str]) -> int:
        self.extraction.sections += 1
        section = self.extraction.sections
        self.formats.append(mapping.describe())
        parsed = 0

        idx = start
        while idx < len(self.rows):
            row = self.rows[idx]
            if _is_blank_row(row.values):
                idx += 1
                break
            if match_header(row.values) is not None:
                break
            if parse_date(row.cell(mapping.date)) is None and is_summary_label(_first_text(row)):
                # balance/terminator row closes the section
                self.extraction.skip(idx + 1, SkipReason.EXCLUDED_PATTERN, row.values)
                idx += 1
                break

            row.section = section
            row.section_label = label
            tx, reason = convert_row(row, mapping, self.settings.DEFAULT_CURRENCY)
            if tx is not None:
                self.extraction.transactions.append(tx)
                parsed += 1
            else:
                self.extraction.skip(idx + 1, reason, row.values)
            idx += 1

        logger.info("section_parsed", section=section, label=label, header_row=start, parsed=parsed)
        return idx


def _sample_rows(rows: List[RawRow], limit: int) -> List[RawRow]:
    return [r for r in rows if not _is_blank_row(r.values)][:limit]


SIMPLE_5COL_MIN_FILLED = 4


def _is_text_row(values: Sequence[Any]) -> bool:
    cells = [v for v in values if not is_blank(v)]
    return bool(cells) and all(is_likely_text(v) for v in cells)


def _detect_simple_5col(sample: List[RawRow]) -> Optional[ColumnMapping]:
    """date, text, amount, balance, currency without a header row."""
    candidates = [
        r for r in sample
        if len([v for v in r.values[5:] if not is_blank(v)]) == 0
        and len([v for v in r.values[:5] if not is_blank(v)]) >= SIMPLE_5COL_MIN_FILLED
        and parse_date(r.cell(0)) is not None
    ]
    if not candidates:
        return None
    shaped = [
        r for r in candidates
        if is_likely_amount(r.cell(2)) and not is_blank(r.cell(1))
    ]
    if len(shaped) * 2 < len(candidates):
        return None
    return ColumnMapping(date=0, description=1, amount=2, currency=4, label="simple_5col")


def _detect_from_data(sample: List[RawRow]) -> Optional[ColumnMapping]:
    """Infer column roles from the data types found in each column."""
    if not sample:
        return None
    width = max(len(r.values) for r in sample)
    profile = []
    for col in range(width):
        counts = {"date": 0, "amount": 0, "currency": 0, "text": 0}
        for r in sample:
            value = r.cell(col)
            if is_blank(value):
                continue
            if is_likely_date(value):
                counts["date"] += 1
            elif is_likely_amount(value):
                counts["amount"] += 1
            elif is_likely_currency(value):
                counts["currency"] += 1
            elif is_likely_text(value):
                counts["text"] += 1
        profile.append(counts)

    total = len(sample)
    def by_ratio(key: str) -> List[int]:
        return sorted(range(width), key=lambda c: (-profile[c][key], c))

    date_col = by_ratio("date")[0]
    if profile[date_col]["date"] < 2 or profile[date_col]["date"] / total < 0.5:
        return None
    amount_col = next((c for c in by_ratio("amount") if c != date_col), None)
    if amount_col is None:
        return None
    if profile[amount_col]["amount"] < 2 or profile[amount_col]["amount"] / total < 0.4:
        return None

    taken = {date_col, amount_col}
    text_col = next((c for c in by_ratio("text") if c not in taken and profile[c]["text"]), None)
    currency_col = next(
        (c for c in by_ratio("currency") if c not in taken and profile[c]["currency"] / total >= 0.5),
        None,
    )
    return ColumnMapping(
        date=date_col,
        amount=amount_col,
        description=text_col,
        currency=currency_col,
        label="inferred_columns",
    )


def _extract_headerless(rows: List[RawRow], settings: Settings) -> Extraction:
    sample = _sample_rows(rows, settings.HEADER_SCAN_ROWS)
    mapping = _detect_simple_5col(sample) or _detect_from_data(sample)
    if mapping is None:
        headers = [cell_text(v) for v in sample[0].values if not is_blank(v)] if sample else []
        logger.warning("no_header_found", best_candidate=headers[:5])
        raise UnrecognizedFormatError(
            "Could not detect required columns (need Date + Amount). "
            f"Found: {', '.join(headers[:5]) or 'nothing'}"
        )

    extraction = Extraction(detected_format=mapping.label, sections=1)
    seen_data = False
    for row in rows:
        if _is_blank_row(row.values):
            continue
        if not seen_data and _is_text_row(row.values):
            # unrecognized column titles above the data
            extraction.skip(row.index + 1, SkipReason.HEADER, row.values)
            continue
        seen_data = True
        row.section = 1
        tx, reason = convert_row(row, mapping, settings.DEFAULT_CURRENCY)
        if tx is not None:
            extraction.transactions.append(tx)
        else:
            extraction.skip(row.index + 1, reason, row.values)
    return extraction


def extract_rows(rows: Sequence[Sequence[Any]], settings: Optional[Settings] = None) -> Extraction:
    """Grid of raw cell values -> Extraction. Raises IngestionError on structural failure."""
    settings = settings or get_settings()
    raw_rows = [RawRow(index=i, values=list(values)) for i, values in enumerate(rows)]
    non_blank = sum(1 for r in raw_rows if not _is_blank_row(r.values))
    if non_blank == 0:
        raise EmptyDocumentError("No rows found in file")

    window = raw_rows[: settings.HEADER_SCAN_ROWS]
    if any(match_header(r.values) for r in window):
        extraction = _SectionScanner(raw_rows, settings).run()
    else:
        extraction = _extract_headerless(raw_rows, settings)
    extraction.total_lines = non_blank
    return extraction


def _is_ole2(file_content: bytes) -> bool:
    """Check if file starts with the OLE2 magic bytes (encrypted or legacy workbook)."""
    return file_content[:8] == _OLE2_MAGIC


def _open_ole2(file_content: bytes, password: Optional[str]) -> Tuple[io.BytesIO, Optional[str]]:
    try:
        with io.BytesIO(file_content) as f:
            office_file = msoffcrypto.OfficeFile(f)
            if not office_file.is_encrypted():
                # legacy .xls: let pandas pick its reader
                return io.BytesIO(file_content), None
            if not password:
                raise DecryptionError("Password required")

            decrypted_workbook = io.BytesIO()
            office_file.load_key(password=password)
            office_file.decrypt(decrypted_workbook)
    except DecryptionError:
        raise
    except Exception as e:
        msg = str(e).lower()
        if "password" in msg or "decrypt" in msg or "key" in msg:
            raise DecryptionError("Invalid password") from e
        raise DecryptionError(f"Failed to decrypt file: {e}") from e
    return decrypted_workbook, "openpyxl"


def read_workbook_rows(file_content: bytes, password: Optional[str] = None) -> List[List[Any]]:
    """First worksheet as a list of raw rows (empty cells become "")."""
    if _is_ole2(file_content):
        workbook, engine = _open_ole2(file_content, password)
    else:
        workbook, engine = io.BytesIO(file_content), "openpyxl"

    workbook.seek(0)
    try:
        df_raw = pd.read_excel(workbook, header=None, engine=engine, dtype=object)
    except Exception as e:
        raise UnrecognizedFormatError(f"Could not read spreadsheet: {e}") from e

    df_raw = df_raw.astype(object).where(pd.notna(df_raw), "")
    return df_raw.values.tolist()


@ingestion_strategy("xlsx")
def parse_spreadsheet(
    file_content: bytes, *, settings: Settings, password: Optional[str] = None
) -> Extraction:
    """Parse an (optionally encrypted) workbook into transactions."""
    rows = read_workbook_rows(file_content, password)
    return extract_rows(rows, settings)
