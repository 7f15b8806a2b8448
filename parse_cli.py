#!/usr/bin/env python3
"""CLI for the plain-text ledger parser."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from ledger_parser import LedgerFileError, ParseError, parse_entries_from_file, parsed_entries_to_json
from ledger_printer import format_entries


log = logging.getLogger("ledger_parser")


def configure_logging(log_level: str) -> None:
    for existing in list(log.handlers):
        log.removeHandler(existing)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    log.setLevel(log_level.upper())
    log.addHandler(handler)
    log.propagate = False


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Parse a plain-text double-entry ledger into JSON."
    )
    parser.add_argument("ledger_path", type=Path, help="Path to the ledger file")
    parser.add_argument("-o", "--output", type=Path, help="Output file path")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Treat transactions whose postings do not sum to zero as unhandled",
    )
    parser.add_argument(
        "--keep-errors",
        action="store_true",
        help="Include the reason each unhandled statement failed",
    )
    parser.add_argument(
        "--print",
        dest="print_ledger",
        action="store_true",
        help="Emit normalized ledger text instead of JSON",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit with status 2 when any statement could not be parsed",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Diagnostics written to stderr",
    )
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        result = parse_entries_from_file(
            args.ledger_path,
            keep_errors=args.keep_errors,
            check_balances=args.check,
        )
    except (ParseError, LedgerFileError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    for err in result.errors:
        log.warning("%s", err)

    if args.print_ledger:
        rendered = format_entries(result.entries())
    else:
        indent = 2 if args.pretty or args.output else None
        rendered = json.dumps(parsed_entries_to_json(result), ensure_ascii=False, indent=indent)

    if args.output:
        args.output.write_text(rendered + "\n", encoding="utf-8")
    else:
        print(rendered)

    if args.strict and result.unhandled_entries:
        log.error("%d statement(s) could not be parsed", len(result.unhandled_entries))
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
