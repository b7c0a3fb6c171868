import argparse
import json
import sys
from pathlib import Path

from tabulate import tabulate

from packages.core.config import get_settings
from packages.core.logging import setup_logging

from .parser import parse_statement

TABLE_COLUMNS = ("tx_date", "amount", "currency", "merchant", "description", "status")


def inspect(args):
    path = Path(args.file)
    try:
        content = path.read_bytes()
    except OSError as e:
        print(f"Error reading file: {e}")
        return 1

    kind = args.kind
    if kind == "auto" and path.suffix.lower().lstrip(".") in ("xlsx", "xls", "csv", "txt", "pdf"):
        kind = path.suffix.lower().lstrip(".")

    result = parse_statement(content, kind, password=args.password)

    if args.json:
        print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2, default=str))
        return 0 if result.ok else 1

    print(f"Detected format: {result.detected_format or '-'}")
    if result.file_hash:
        print(f"File hash: {result.file_hash}")
    if result.error:
        print(f"Error: {result.error}")

    summary = [(reason, count) for reason, count in result.skipped_lines_summary.items()]
    print(tabulate(summary, headers=["Skip reason", "Lines"]))
    print()

    rows = [
        [getattr(tx, column) for column in TABLE_COLUMNS]
        for tx in result.transactions[: args.limit]
    ]
    print(tabulate(rows, headers=TABLE_COLUMNS, floatfmt=".2f"))
    if len(result.transactions) > args.limit:
        print(f"\n... ({len(result.transactions) - args.limit} more transactions) ...")
    return 0 if result.ok else 1


def main(argv=None):
    parser = argparse.ArgumentParser(description="Parse a bank statement")
    parser.add_argument("file", type=str, help="Path to statement (xlsx, xls, csv, txt, pdf)")
    parser.add_argument(
        "--kind",
        type=str,
        default="auto",
        choices=["auto", "xlsx", "xls", "csv", "txt", "pdf"],
    )
    parser.add_argument("--password", type=str, default=None, help="Excel password")
    parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    parser.add_argument("--limit", type=int, default=50, help="Rows to show in the table")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level, json_output=settings.LOG_JSON)
    return inspect(args)


if __name__ == "__main__":
    sys.exit(main())
