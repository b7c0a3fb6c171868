"""
Delimited-text statements.

Norwegian bank CSV exports come in UTF-8 or Windows-1252, separated by
semicolons more often than commas. The text is decoded and tokenized here
and the resulting grid goes through the same header/section logic as a
spreadsheet.
"""

import re
from collections import Counter
from typing import List, Optional

import structlog

from packages.core.config import Settings
from packages.core.errors import UnrecognizedFormatError

from .excel_parser import extract_rows
from .models import Extraction
from .results import ingestion_strategy

logger = structlog.get_logger(__name__)

ENCODING_CANDIDATES = ("utf-8", "cp1252")
DELIMITER_CANDIDATES = (",", ";", "\t", "|")

_MOJIBAKE_RE = re.compile(r"Ã.|Â.|â.")
_LOCALE_LETTERS_RE = re.compile(r"[æøåÆØÅ]")


def score_decoded_text(text: str) -> int:
    """Lower is better."""
    replacement_count = text.count("\ufffd")
    mojibake_count = len(_MOJIBAKE_RE.findall(text))
    norwegian_count = len(_LOCALE_LETTERS_RE.findall(text))
    return replacement_count * 10 + mojibake_count * 3 - norwegian_count


def decode_csv_text(content: bytes) -> str:
    best: Optional[str] = None
    best_score = None
    for encoding in ENCODING_CANDIDATES:
        decoded = content.decode(encoding, errors="replace")
        score = score_decoded_text(decoded)
        if best_score is None or score < best_score:
            best, best_score = decoded, score
    if best is None:
        raise UnrecognizedFormatError("Could not decode text file")
    return best.lstrip("\ufeff")


def count_fields(line: str, delimiter: str) -> int:
    """Quote-aware field count for one physical line."""
    in_quotes = False
    fields = 1
    i = 0
    while i < len(line):
        ch = line[i]
        if ch == '"':
            if in_quotes and i + 1 < len(line) and line[i + 1] == '"':
                i += 1
            else:
                in_quotes = not in_quotes
        elif ch == delimiter and not in_quotes:
            fields += 1
        i += 1
    return fields


def delimiter_score(text: str, delimiter: str, sample_lines: int = 50) -> float:
    lines = [line for line in re.split(r"\r?\n", text) if line.strip()][:sample_lines]
    if not lines:
        return float("-inf")
    counts = Counter(count_fields(line, delimiter) for line in lines)
    mode_fields, mode_count = max(counts.items(), key=lambda item: (item[1], item[0]))
    if mode_fields <= 1:
        return float("-inf")
    return mode_count * 100 + mode_fields


def detect_delimiter(text: str, sample_lines: int = 50) -> str:
    best_delimiter = ","
    best_score = float("-inf")
    for delimiter in DELIMITER_CANDIDATES:
        score = delimiter_score(text, delimiter, sample_lines)
        if score > best_score:
            best_delimiter, best_score = delimiter, score
    return best_delimiter


def tokenize_delimited(text: str, delimiter: str) -> List[List[str]]:
    """RFC4180-style tokenizer. Blank lines are kept as empty rows (section breaks)."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    rows: List[List[str]] = []
    row: List[str] = []
    field: List[str] = []
    in_quotes = False

    def end_row() -> None:
        row.append("".join(field))
        field.clear()
        if len(row) == 1 and not row[0].strip():
            rows.append([])
        else:
            rows.append(list(row))
        row.clear()

    i = 0
    while i < len(text):
        ch = text[i]
        if in_quotes:
            if ch == '"':
                if i + 1 < len(text) and text[i + 1] == '"':
                    field.append('"')
                    i += 1
                else:
                    in_quotes = False
            else:
                field.append(ch)
        elif ch == '"':
            in_quotes = True
        elif ch == delimiter:
            row.append("".join(field))
            field.clear()
        elif ch == "\n":
            end_row()
        else:
            field.append(ch)
        i += 1

    if field or row:
        end_row()
    while rows and not rows[-1]:
        rows.pop()
    return rows


def describe_delimiter(delimiter: str) -> str:
    return "\\t" if delimiter == "\t" else delimiter


@ingestion_strategy("csv")
def parse_csv(content: bytes, *, settings: Settings) -> Extraction:
    """Parse a delimited-text statement."""
    text = decode_csv_text(content)
    if not text.strip():
        raise UnrecognizedFormatError("Text file contains no data")

    delimiter = detect_delimiter(text, settings.DELIMITER_SAMPLE_LINES)
    rows = tokenize_delimited(text, delimiter)
    logger.debug("csv_tokenized", delimiter=delimiter, rows=len(rows))

    extraction = extract_rows(rows, settings)
    extraction.detected_format = (
        f'CSV delimiter "{describe_delimiter(delimiter)}" -> {extraction.detected_format}'
    )
    return extraction
