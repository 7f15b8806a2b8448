"""Render parsed ledger entries back to ledger text."""

from __future__ import annotations

from typing import Iterable, List

from ledger_parser import (
    Amount,
    AutomaticCost,
    Balance,
    Close,
    Commodity,
    Entry,
    Open,
    Posting,
    PriceEntry,
    Transaction,
    decimal_to_json,
    entry_kind,
)


POSTING_INDENT = "    "


def format_amount(amount: Amount) -> str:
    return f"{decimal_to_json(amount.number)} {amount.currency}"


def quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def format_posting(posting: Posting) -> str:
    parts = [f"{POSTING_INDENT}{posting.account}", format_amount(posting.amount)]
    if posting.price is not None:
        parts.append(f"@ {format_amount(posting.price.amount)}")
    if isinstance(posting.cost, AutomaticCost):
        parts.append("{ }")
    elif posting.cost is not None:
        parts.append(f"{{ {format_amount(posting.cost.amount)} }}")
    return " ".join(parts)


def format_transaction(tx: Transaction) -> str:
    header = f"{tx.date.isoformat()} {tx.flag.value}"
    if tx.payee is not None:
        header += f" {quote(tx.payee)}"
    if tx.narration is not None:
        header += f" {quote(tx.narration)}"
    elif tx.payee is not None:
        # A lone string would read back as narration.
        header += ' ""'
    lines: List[str] = [header]
    lines.extend(format_posting(p) for p in tx.postings)
    return "\n".join(lines)


def format_entry(entry: Entry) -> str:
    day = entry.date.isoformat()
    if isinstance(entry, Transaction):
        return format_transaction(entry)
    if isinstance(entry, Open):
        currencies = " ".join(entry.allowed_currencies or ())
        return f"{day} open {entry.account} {currencies}".rstrip()
    if isinstance(entry, Close):
        return f"{day} close {entry.account}"
    if isinstance(entry, Balance):
        return f"{day} balance {entry.account} {format_amount(entry.amount)}"
    if isinstance(entry, Commodity):
        return f"{day} commodity {entry.currency}"
    if isinstance(entry, PriceEntry):
        return f"{day} price {entry.currency} {format_amount(entry.amount)}"
    raise TypeError(f"Cannot format {entry_kind(entry)} entry")


def format_entries(entries: Iterable[Entry]) -> str:
    return "\n\n".join(format_entry(entry) for entry in entries)
