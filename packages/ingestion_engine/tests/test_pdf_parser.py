from unittest.mock import MagicMock, patch

import pytest

from packages.core.errors import UnrecognizedFormatError
from packages.ingestion_engine.pdf_parser import (
    extract_lines,
    find_money_tokens,
    parse_pdf,
    parse_pdf_lines,
    split_text_lines,
)


@pytest.fixture
def sectioned_lines():
    return [
        "Kontoutskrift",
        "Reservasjoner",
        "05.01.2026 KIWI 505 MAJORSTUEN -45,90",
        "Kontobevegelser",
        "Dato Beskrivelse Beløp",
        "02.01.2026 03.01.2026 REMA 1000 SORENGA -123,45",
        "04.01.2026 Varekjøp Butikk: MENY STORO -310,00",
        "Saldo 04.01.2026 5 000,00",
        "Utgående saldo 12 345,67",
        "Side 1 av 2",
    ]


@pytest.fixture
def block_lines():
    return [
        "Kontobevegelser",
        "Dato: 02.01.2026",
        "Transaksjonstekst: Visa 100021 Rema 1000 Sorenga",
        "Beløp: -123,45",
        "Butikk: REMA 1000",
        "Dato: 03.01.2026",
        "Transaksjonstekst: Vipps Ola",
        "Beløp",
        "-50,00",
    ]


def test_year_suffix_is_never_the_amount():
    result = parse_pdf_lines(["02.02.2026 KIWI -123,45 2026"])

    assert result.ok
    tx = result.transactions[0]
    assert tx.tx_date == "2026-02-02"
    assert tx.amount == -123.45
    assert "KIWI" in tx.merchant
    assert tx.source_type == "pdf"


def test_sections_switch_status(sectioned_lines):
    extraction = extract_lines(sectioned_lines)

    assert [(tx.description, tx.status) for tx in extraction.transactions] == [
        ("KIWI 505 MAJORSTUEN", "pending"),
        ("REMA 1000 SORENGA", "booked"),
        ("Varekjøp", "booked"),
    ]
    assert extraction.sections == 2
    assert extraction.detected_format == "pdf_lines"


def test_booked_date_and_store_marker(sectioned_lines):
    extraction = extract_lines(sectioned_lines)
    rema = extraction.transactions[1]
    meny = extraction.transactions[2]

    assert rema.tx_date == "2026-01-02"
    assert rema.booked_date == "2026-01-03"
    assert rema.amount == -123.45
    assert meny.merchant_raw == "MENY STORO"
    assert meny.amount == -310.0


def test_skip_reasons_are_classified(sectioned_lines):
    result = parse_pdf_lines(sectioned_lines)
    summary = result.skipped_lines_summary

    assert summary["section_marker"] == 2
    assert summary["header"] == 1
    assert summary["page_number"] == 1
    # "Kontoutskrift", the dated balance line and the closing balance
    assert summary["excluded_pattern"] == 3
    assert result.stats["parsed_count"] + result.stats["skipped_count"] == result.stats["total_lines"]


def test_invalid_first_date_falls_back_to_second():
    extraction = extract_lines(["31.02.2026 05.02.2026 Meny Storo -50,00"])

    tx = extraction.transactions[0]
    assert tx.tx_date == "2026-02-05"
    assert tx.booked_date is None
    assert tx.description == "Meny Storo"


def test_invalid_only_date_is_skipped():
    extraction = extract_lines(
        ["Kontobevegelser", "80.14.9108 Not a date -10,00", "02.01.2026 KIWI -10,00"]
    )

    assert len(extraction.transactions) == 1
    assert [(s.line_number, s.reason.value) for s in extraction.skipped] == [
        (1, "section_marker"),
        (2, "no_date"),
    ]


def test_blocks(block_lines):
    result = parse_pdf_lines(block_lines)

    assert result.ok
    assert len(result.transactions) == 2
    first, second = result.transactions
    assert first.tx_date == "2026-01-02"
    assert first.description == "Visa 100021 Rema 1000 Sorenga"
    assert first.amount == -123.45
    assert first.merchant == "REMA 1000"
    assert first.merchant_raw == "REMA 1000"
    assert second.amount == -50.0
    assert second.merchant == "Vipps"
    # marker line plus one unit per block
    assert result.total_lines == 3


def test_block_without_amount_is_one_skip():
    extraction = extract_lines(["Dato: 02.01.2026", "Transaksjonstekst: Vipps Ola"])

    assert extraction.transactions == []
    assert [s.reason.value for s in extraction.skipped] == ["no_amount"]


@pytest.mark.parametrize("label", ["Dato", "Beløp"])
def test_lone_column_heading_does_not_swallow_next_row(label):
    result = parse_pdf_lines(["Kontobevegelser", label, "02.01.2026 KIWI -10,00", "03.01.2026 MENY -20,00"])
    summary = result.skipped_lines_summary

    assert [tx.description for tx in result.transactions] == ["KIWI", "MENY"]
    assert summary["section_marker"] == 1
    assert summary["header"] == 1
    assert result.total_lines == 4
    assert result.stats["parsed_count"] + result.stats["skipped_count"] == result.stats["total_lines"]


def test_trailing_lone_label_is_a_header():
    extraction = extract_lines(["02.01.2026 KIWI -10,00", "Dato"])

    assert len(extraction.transactions) == 1
    assert [(s.line_number, s.reason.value) for s in extraction.skipped] == [(2, "header")]
    assert extraction.total_lines == 2


def test_last_money_token_is_the_amount():
    # no column positions in extracted text, so a trailing balance wins
    extraction = extract_lines(["02.01.2026 KIWI -45,90 1045,90"])

    tx = extraction.transactions[0]
    assert tx.amount == 1045.9
    assert tx.description == "KIWI -45,90"


def test_unrecognized_document():
    with pytest.raises(UnrecognizedFormatError, match="Unrecognized PDF format"):
        extract_lines(["Hello world", "Nothing to see here"])

    result = parse_pdf(b"Hello world\nNothing to see here")
    assert result.error == "Unrecognized PDF format"
    assert result.error_type == "unrecognized_format"
    assert result.transactions == []


def test_recognized_document_without_transactions():
    result = parse_pdf(b"Kontobevegelser\n02.02.2026 KIWI 2026")

    assert result.error == "No valid transactions found"
    assert result.skipped_lines_summary["no_amount"] == 1
    assert result.skipped_lines_summary["section_marker"] == 1


def test_split_text_lines_recovers_missing_newlines():
    text = "02.01.2026 KIWI -10,00 03.01.2026 04.01.2026 MENY -20,00"

    assert split_text_lines(text) == [
        "02.01.2026 KIWI -10,00",
        "03.01.2026 04.01.2026 MENY -20,00",
    ]


def test_split_text_lines_keeps_long_documents():
    text = "\n".join(f"0{i}.01.2026 KIWI -1{i},00" for i in range(1, 7))
    assert len(split_text_lines(text)) == 6


@pytest.mark.parametrize(
    "text, expected",
    [
        ("KIWI 505 123,45", [123.45]),
        ("Overføring  1 234,56", [1234.56]),
        ("Varekjøp -1 234,56", [-1234.56]),
        ("Husleie 2026", []),
        ("Refusjon 250 kr", [250.0]),
        ("Innskudd +500", [500.0]),
        ("Ref -2026", []),
        ("Leie 8.500,00", [8500.0]),
    ],
)
def test_find_money_tokens(text, expected):
    assert [token.value for token in find_money_tokens(text)] == expected


@patch("packages.ingestion_engine.pdf_parser.pdfplumber.open")
def test_native_pdf_goes_through_pdfplumber(mock_open):
    page = MagicMock()
    page.extract_text.return_value = (
        "Kontobevegelser\n02.01.2026 03.01.2026 REMA 1000 SORENGA -123,45\nSide 1 av 1"
    )
    mock_open.return_value.__enter__.return_value.pages = [page]

    result = parse_pdf(b"%PDF-1.4 statement")

    assert result.ok
    assert result.transactions[0].merchant == "REMA 1000"
    assert result.skipped_lines_summary["page_number"] == 1
    mock_open.assert_called_once()


@patch("packages.ingestion_engine.pdf_parser.pdfplumber.open")
def test_pdf_without_text_layer(mock_open):
    page = MagicMock()
    page.extract_text.return_value = None
    mock_open.return_value.__enter__.return_value.pages = [page]

    result = parse_pdf(b"%PDF-1.4 scanned")

    assert result.error == "PDF contains no extractable text"
    assert result.error_type == "unrecognized_format"


@patch("packages.ingestion_engine.pdf_parser.pdfplumber.open", side_effect=Exception("broken xref"))
def test_unreadable_pdf(mock_open):
    result = parse_pdf(b"%PDF-1.4 broken")

    assert result.error == "Could not read PDF: broken xref"
