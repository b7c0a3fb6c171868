"""
Shared finishing step for every extraction strategy.

Each strategy is a plain function ``(content, *, settings, ...) -> Extraction``
that raises ``IngestionError`` on structural failures. ``ingestion_strategy``
wraps it into the public ``(content, ...) -> ParseResult`` shape: payload
guard first, then merchant normalization and fingerprinting.
"""

import functools
from typing import Callable, Optional

import structlog

from packages.core.config import Settings, get_settings
from packages.core.errors import EmptyDocumentError, IngestionError, PayloadTooLargeError

from .fingerprint import compute_file_hash, compute_tx_hash
from .merchant_extractor import MerchantExtractor
from .models import Extraction, ParseResult

logger = structlog.get_logger(__name__)

NO_TRANSACTIONS_ERROR = "No valid transactions found"


def guard_payload(content: Optional[bytes], settings: Settings) -> None:
    if not content:
        raise EmptyDocumentError()
    if len(content) > settings.MAX_UPLOAD_BYTES:
        raise PayloadTooLargeError(len(content), settings.MAX_UPLOAD_BYTES)


def finalize(
    extraction: Extraction,
    source_type: str,
    extractor: Optional[MerchantExtractor] = None,
) -> ParseResult:
    extractor = extractor or MerchantExtractor()

    for tx in extraction.transactions:
        tx.source_type = source_type
        normalized = extractor.normalize(tx.merchant_raw, tx.description)
        tx.merchant = normalized.merchant
        tx.merchant_raw = normalized.merchant_raw or None
        tx.merchant_kind = normalized.merchant_kind
        tx.tx_hash = compute_tx_hash(tx.tx_date, tx.description, tx.amount, source_type)

    result = ParseResult(
        transactions=extraction.transactions,
        skipped_lines=extraction.skipped,
        detected_format=extraction.detected_format,
        sections=extraction.sections,
        total_lines=extraction.total_lines,
    )
    if not extraction.transactions:
        result.error = NO_TRANSACTIONS_ERROR
        result.error_type = "no_transactions"

    logger.info(
        "statement_parsed",
        source_type=source_type,
        detected_format=extraction.detected_format,
        parsed=len(extraction.transactions),
        skipped=result.skipped_lines_summary,
        sections=extraction.sections,
    )
    return result


def ingestion_strategy(source_type: str) -> Callable:
    """Turn an extraction function into a ParseResult-returning entrypoint."""

    def decorator(func: Callable[..., Extraction]) -> Callable[..., ParseResult]:
        @functools.wraps(func)
        def wrapper(
            content: bytes,
            *,
            settings: Optional[Settings] = None,
            extractor: Optional[MerchantExtractor] = None,
            **kwargs,
        ) -> ParseResult:
            settings = settings or get_settings()
            try:
                guard_payload(content, settings)
                extraction = func(content, settings=settings, **kwargs)
            except IngestionError as e:
                logger.warning(
                    "statement_rejected",
                    source_type=source_type,
                    error_type=e.error_type,
                    detail=e.detail,
                )
                result = ParseResult.failure(e.detail, e.error_type)
            else:
                result = finalize(extraction, source_type, extractor)
            if content:
                result.file_hash = compute_file_hash(content)
            return result

        wrapper.extract = func
        return wrapper

    return decorator
