"""Structural ingestion errors.

Extractors raise these when continuing would fabricate data rather than
merely drop noise. The ingestion entrypoint converts them into a result
with zero transactions and a single descriptive ``error`` string.
"""


class IngestionError(Exception):
    """Base ingestion error."""

    def __init__(self, detail: str, error_type: str = "ingestion_error"):
        self.detail = detail
        self.error_type = error_type
        super().__init__(detail)


class PayloadTooLargeError(IngestionError):
    """Payload exceeds the configured size ceiling."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(
            detail=(
                f"File is too large ({size / (1024 * 1024):.1f} MB); "
                f"maximum is {limit / (1024 * 1024):.0f} MB"
            ),
            error_type="payload_too_large",
        )


class EmptyDocumentError(IngestionError):
    """Payload has no content."""

    def __init__(self, detail: str = "File is empty"):
        super().__init__(detail=detail, error_type="empty_document")


class UnrecognizedFormatError(IngestionError):
    """No header row or known layout could be found."""

    def __init__(self, detail: str = "Could not detect required columns (need Date + Amount)"):
        super().__init__(detail=detail, error_type="unrecognized_format")


class AmbiguousColumnError(IngestionError):
    """Amount column resolves to the same values as the date column."""

    def __init__(self, detail: str = "Amount column looks like a date column"):
        super().__init__(detail=detail, error_type="ambiguous_column")


class DecryptionError(IngestionError):
    """Encrypted workbook could not be opened."""

    def __init__(self, detail: str = "Invalid password"):
        super().__init__(detail=detail, error_type="decryption_failed")


class RuleError(ValueError):
    """A rule record is malformed (unknown match type, missing value)."""
