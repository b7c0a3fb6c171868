"""
Bank Statement Parser - ingestion entrypoint for Norwegian bank exports.

Supports: XLSX/XLS workbooks (including password-protected), delimited
text, and PDF statements (native or already-extracted text).
Features: magic-byte sniffing, multi-section tables, locale-aware
date/amount parsing, merchant normalization and deduplication hashes.
"""

from typing import Callable, Dict, Optional

import structlog

from packages.core.config import Settings, get_settings

from .csv_parser import parse_csv
from .excel_parser import _OLE2_MAGIC, parse_spreadsheet
from .merchant_extractor import MerchantExtractor
from .models import ParseResult
from .pdf_parser import _PDF_MAGIC, parse_pdf

logger = structlog.get_logger(__name__)

_ZIP_MAGIC = b"PK\x03\x04"

SPREADSHEET = "spreadsheet"
TEXT = "text"
PDF = "pdf"

DECLARED_KINDS = {
    "xlsx": SPREADSHEET,
    "xls": SPREADSHEET,
    "csv": TEXT,
    "txt": TEXT,
    "pdf": PDF,
    "auto": None,
}


class FormatSniffer:
    """Picks an extraction strategy from the payload's magic bytes."""

    @staticmethod
    def sniff(content: bytes) -> str:
        head = content[:8]
        if head.startswith(_ZIP_MAGIC) or head == _OLE2_MAGIC:
            return SPREADSHEET
        if head.startswith(_PDF_MAGIC):
            return PDF
        return TEXT

    def resolve(self, content: bytes, declared_kind: str = "auto") -> str:
        declared_kind = (declared_kind or "auto").lower().lstrip(".")
        if declared_kind not in DECLARED_KINDS:
            raise ValueError(f"Unsupported file kind: {declared_kind}")

        sniffed = self.sniff(content)
        declared = DECLARED_KINDS[declared_kind]
        if declared is None:
            return sniffed
        if declared != sniffed and sniffed != TEXT:
            # binary magic wins over a wrong extension
            logger.info("declared_kind_corrected", declared=declared_kind, sniffed=sniffed)
            return sniffed
        return declared


class BankStatementParser:
    """Dispatches one statement to the matching extraction strategy."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        extractor: Optional[MerchantExtractor] = None,
    ):
        self.settings = settings or get_settings()
        self.extractor = extractor or MerchantExtractor()
        self.sniffer = FormatSniffer()
        self.strategies: Dict[str, Callable[..., ParseResult]] = {
            SPREADSHEET: parse_spreadsheet,
            TEXT: parse_csv,
            PDF: parse_pdf,
        }

    def parse(
        self,
        content: bytes,
        declared_kind: str = "auto",
        password: Optional[str] = None,
    ) -> ParseResult:
        content = content or b""
        try:
            kind = self.sniffer.resolve(content, declared_kind)
        except ValueError as e:
            return ParseResult.failure(str(e), "unsupported_kind")

        logger.info("statement_received", kind=kind, size=len(content))
        kwargs = {"password": password} if kind == SPREADSHEET else {}
        return self.strategies[kind](
            content, settings=self.settings, extractor=self.extractor, **kwargs
        )


def parse_statement(
    content: bytes,
    declared_kind: str = "auto",
    password: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> ParseResult:
    """
    Convenience function to parse a bank statement.

    Args:
        content: Raw file bytes
        declared_kind: xlsx, xls, csv, txt, pdf or auto
        password: Password for encrypted workbooks

    Returns:
        ParseResult with transactions, skip summary and detected format
    """
    return BankStatementParser(settings=settings).parse(content, declared_kind, password)
