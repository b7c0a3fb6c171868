"""Standardized ingestion types shared by every extraction strategy."""

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import pandas as pd


class SkipReason(str, Enum):
    """Why a source line/row did not become a transaction."""

    HEADER = "header"
    SECTION_MARKER = "section_marker"
    PAGE_NUMBER = "page_number"
    NO_DATE = "no_date"
    NO_AMOUNT = "no_amount"
    PARSE_FAILED = "parse_failed"
    EXCLUDED_PATTERN = "excluded_pattern"


class MerchantKind(str, Enum):
    NAME = "name"
    CODE = "code"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class NormalizedMerchant:
    """Canonical merchant identity, computed once per transaction."""

    merchant: str
    merchant_raw: str
    merchant_kind: MerchantKind

    def to_dict(self) -> Dict[str, str]:
        return {
            "merchant": self.merchant,
            "merchant_raw": self.merchant_raw,
            "merchant_kind": self.merchant_kind.value,
        }


@dataclass
class RawRow:
    """One source row: positional cell values plus where it came from."""

    index: int
    values: List[Any]
    section: int = 0
    section_label: Optional[str] = None

    def cell(self, col: Optional[int]) -> Any:
        if col is None or col < 0 or col >= len(self.values):
            return ""
        return self.values[col]


@dataclass
class SkippedLine:
    line_number: int  # 1-based
    reason: SkipReason
    text: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line_number": self.line_number,
            "reason": self.reason.value,
            "text": self.text,
        }


@dataclass
class ParsedTransaction:
    """Standardized transaction structure."""

    tx_date: str  # YYYY-MM-DD
    description: str
    amount: float
    currency: str = "NOK"
    booked_date: Optional[str] = None
    merchant_raw: Optional[str] = None
    merchant: Optional[str] = None
    merchant_kind: Optional[MerchantKind] = None
    status: str = "booked"  # booked | pending
    source_type: str = ""
    raw_payload: str = ""  # serialized original row, kept for audit/debug
    tx_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["merchant_kind"] = self.merchant_kind.value if self.merchant_kind else None
        return data


@dataclass
class Extraction:
    """What a strategy recovered from one document, before finishing."""

    transactions: List[ParsedTransaction] = field(default_factory=list)
    skipped: List[SkippedLine] = field(default_factory=list)
    detected_format: Optional[str] = None
    sections: int = 0
    total_lines: int = 0

    def skip(self, line_number: int, reason: SkipReason, text: Any = "") -> None:
        self.skipped.append(SkippedLine(line_number, reason, _truncate(text)))


@dataclass
class ParseResult:
    """Result shape returned by every ingestion entrypoint."""

    transactions: List[ParsedTransaction] = field(default_factory=list)
    skipped_lines: List[SkippedLine] = field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[str] = None
    detected_format: Optional[str] = None
    sections: int = 0
    total_lines: int = 0
    # SHA-256 of the uploaded payload, for duplicate-upload checks
    file_hash: Optional[str] = None

    @classmethod
    def failure(cls, detail: str, error_type: str = "ingestion_error") -> "ParseResult":
        return cls(error=detail, error_type=error_type)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def skipped_lines_summary(self) -> Dict[str, int]:
        summary = {reason.value: 0 for reason in SkipReason}
        for line in self.skipped_lines:
            summary[line.reason.value] += 1
        return summary

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "total_lines": self.total_lines,
            "parsed_count": len(self.transactions),
            "skipped_count": len(self.skipped_lines),
            "sections": self.sections,
        }

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "transactions": [tx.to_dict() for tx in self.transactions],
            "skipped_lines_summary": self.skipped_lines_summary,
            "skipped_lines": [line.to_dict() for line in self.skipped_lines],
            "stats": self.stats,
        }
        if self.error:
            data["error"] = self.error
        if self.detected_format:
            data["detected_format"] = self.detected_format
        if self.file_hash:
            data["file_hash"] = self.file_hash
        return data

    def to_dataframe(self) -> pd.DataFrame:
        columns = list(ParsedTransaction.__dataclass_fields__)
        return pd.DataFrame([tx.to_dict() for tx in self.transactions], columns=columns)


def _truncate(value: Any, limit: int = 100) -> str:
    if isinstance(value, (list, tuple)):
        value = " | ".join(str(v) for v in value if v not in (None, ""))
    text = "" if value is None else str(value)
    return text[:limit]


def dump_payload(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, default=str)
