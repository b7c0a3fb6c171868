"""
Ingestion Engine

Bank statement ingestion: format sniffing, table/line extraction,
locale-aware parsing and merchant normalization.
"""

__version__ = "0.1.0"

from .merchant_extractor import UNKNOWN_MERCHANT, MerchantExtractor
from .models import MerchantKind, NormalizedMerchant, ParsedTransaction, ParseResult, SkipReason
from .parser import BankStatementParser, FormatSniffer, parse_statement

__all__ = [
    "BankStatementParser",
    "FormatSniffer",
    "parse_statement",
    "ParsedTransaction",
    "ParseResult",
    "SkipReason",
    "MerchantKind",
    "NormalizedMerchant",
    "MerchantExtractor",
    "UNKNOWN_MERCHANT",
]
