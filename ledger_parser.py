#!/usr/bin/env python3
"""Parse plain-text double-entry ledgers into typed entries.

Parsing is fault-isolating per statement: a statement that cannot be parsed is kept as raw
text in ``ParsedEntries.unhandled_entries`` and the next statement is parsed normally. A
top-level line that cannot start a statement at all is fatal (``SegmentationError``).

Statement text handed around during one parse is sliced from the caller's input string;
the typed entries produced own copies of everything they need.
"""

from __future__ import annotations

import datetime
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, getcontext, localcontext
from enum import Enum
from itertools import chain
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union


logger = logging.getLogger(__name__)

COMMENT_CHARS = (";", "#")

STATEMENT_START_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
MULTILINE_START_RE = re.compile(r"^\d{4}-\d{2}-\d{2}[ \t]+[*!]")
DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
TOKEN_RE = re.compile(r"\S+")
NUMBER_PREFIX_RE = re.compile(r"[-+0-9.]*")
NUMBER_RE = re.compile(r"[-+]?(?:\d+(?:\.\d*)?|\.\d+)")
CURRENCY_RE = re.compile(r"[^\W\d_]+")
HEADER_TOKEN_RE = re.compile(r'"((?:[^"\\]|\\.)*)"|(\S+)')
ESCAPE_RE = re.compile(r"\\(.)")


class ParseError(RuntimeError):
    pass


class GrammarError(ParseError):
    """A token, amount, price/cost clause or posting line is malformed."""


class StatementParseError(ParseError):
    def __init__(self, context: str, statement: str) -> None:
        super().__init__(f"Failed to parse ({context}): `{statement}`")
        self.context = context
        self.statement = statement


class SegmentationError(ParseError):
    def __init__(self, line_number: int, line: str) -> None:
        super().__init__(f"Unrecognized top-level line {line_number}: {line!r}")
        self.line_number = line_number
        self.line = line


class BalanceError(ParseError):
    pass


class LedgerFileError(OSError):
    """A ledger file is missing, unreadable or not valid UTF-8."""


class TransactionFlag(Enum):
    OK = "*"
    ERROR = "!"


@dataclass(frozen=True)
class Amount:
    number: Decimal
    currency: str

    def __str__(self) -> str:
        return f"{decimal_to_json(self.number)} {self.currency}"


@dataclass(frozen=True)
class Price:
    amount: Amount


@dataclass(frozen=True)
class Cost:
    amount: Amount


@dataclass(frozen=True)
class AutomaticCost:
    """Placeholder for an empty ``{}`` cost; the lot is resolved later, outside the parser."""


CostType = Union[Cost, AutomaticCost]


@dataclass(frozen=True)
class Posting:
    account: str
    amount: Amount
    price: Optional[Price] = None
    cost: Optional[CostType] = None


@dataclass(frozen=True)
class Entry:
    date: datetime.date


@dataclass(frozen=True)
class Transaction(Entry):
    flag: TransactionFlag
    payee: Optional[str] = None
    narration: Optional[str] = None
    postings: Tuple[Posting, ...] = ()


@dataclass(frozen=True)
class Open(Entry):
    account: str
    allowed_currencies: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class Close(Entry):
    account: str


@dataclass(frozen=True)
class Balance(Entry):
    account: str
    amount: Amount


@dataclass(frozen=True)
class Commodity(Entry):
    currency: str


@dataclass(frozen=True)
class PriceEntry(Entry):
    currency: str
    amount: Amount


ENTRY_KINDS: Dict[type, str] = {
    Transaction: "transaction",
    Open: "open",
    Close: "close",
    Balance: "balance",
    Commodity: "commodity",
    PriceEntry: "price",
}

# ParsedEntries attribute holding each entry type.
ENTRY_COLLECTIONS: Dict[type, str] = {
    Transaction: "transactions",
    Open: "open",
    Close: "close",
    Balance: "balance",
    Commodity: "commodity",
    PriceEntry: "price",
}


def entry_kind(entry: Entry) -> str:
    kind = ENTRY_KINDS.get(type(entry))
    if kind is None:
        raise TypeError(f"Unsupported entry type: {type(entry).__name__}")
    return kind


@dataclass
class ParsedEntries:
    transactions: List[Transaction] = field(default_factory=list)
    open: List[Open] = field(default_factory=list)
    close: List[Close] = field(default_factory=list)
    balance: List[Balance] = field(default_factory=list)
    commodity: List[Commodity] = field(default_factory=list)
    price: List[PriceEntry] = field(default_factory=list)
    unhandled_entries: List[str] = field(default_factory=list)
    errors: List[StatementParseError] = field(default_factory=list)

    def push(self, entry: Entry) -> None:
        collection = ENTRY_COLLECTIONS.get(type(entry))
        if collection is None:
            raise TypeError(f"Unsupported entry type: {type(entry).__name__}")
        getattr(self, collection).append(entry)

    def push_error(self, error: StatementParseError, keep_error: bool = False) -> None:
        self.unhandled_entries.append(error.statement)
        if keep_error:
            self.errors.append(error)

    def __len__(self) -> int:
        return sum(len(getattr(self, name)) for name in ENTRY_COLLECTIONS.values())

    def is_empty(self) -> bool:
        return len(self) == 0

    def entries(self) -> List[Entry]:
        """All parsed entries ordered by date; entries sharing a date keep kind order."""
        merged = chain.from_iterable(getattr(self, name) for name in ENTRY_COLLECTIONS.values())
        return sorted(merged, key=lambda entry: entry.date)

    def counts(self) -> Dict[str, int]:
        counts = {name: len(getattr(self, name)) for name in ENTRY_COLLECTIONS.values()}
        counts["unhandled_entries"] = len(self.unhandled_entries)
        return counts


def is_comment_char(ch: str) -> bool:
    return ch in COMMENT_CHARS


def strip_comment(line: str) -> str:
    """Cut a ``;``/``#`` comment off one physical line. Quoted text is never cut."""
    in_quotes = False
    escaped = False
    for idx, ch in enumerate(line):
        if escaped:
            escaped = False
        elif ch == "\\" and in_quotes:
            escaped = True
        elif ch == '"':
            in_quotes = not in_quotes
        elif not in_quotes and is_comment_char(ch):
            return line[:idx]
    return line


class Tokenizer:
    """Whitespace-delimited tokens of a single line, trailing comment removed."""

    def __init__(self, line: str) -> None:
        if "\n" in line:
            raise GrammarError(f"Tokenizer does not accept multi-line input: {line!r}")
        self._data = strip_comment(line).strip()
        self._position = 0

    def __iter__(self) -> Iterator[str]:
        return self

    def __next__(self) -> str:
        m = TOKEN_RE.search(self._data, self._position)
        if m is None:
            self._position = len(self._data)
            raise StopIteration
        self._position = m.end()
        return m.group(0)

    def remaining(self) -> str:
        return self._data[self._position :].lstrip()

    def next_token(self, token_type: str) -> str:
        token = next(self, None)
        if token is None:
            raise GrammarError(f"No {token_type} found")
        return token

    def expect_end(self, token_type: str) -> None:
        rest = self.remaining()
        if rest:
            raise GrammarError(f"Unexpected remaining input in {token_type} parsing: {rest!r}")


def decimal_to_json(value: Decimal) -> str:
    return format(value, "f")


def parse_number(raw: str, context: str) -> Decimal:
    if not NUMBER_RE.fullmatch(raw):
        raise GrammarError(f"Invalid number {raw!r} in {context}")
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise GrammarError(f"Invalid number {raw!r} in {context}") from exc


def split_amount(text: str) -> Tuple[Amount, str]:
    """Parse the ``<number>[ ]<currency>`` at the start of ``text``; return it and the rest."""
    stripped = text.lstrip()
    number_raw = NUMBER_PREFIX_RE.match(stripped).group(0)
    if not number_raw:
        raise GrammarError(f"No number found in amount {text.strip()!r}")
    number = parse_number(number_raw, f"amount {text.strip()!r}")

    rest = stripped[len(number_raw) :].lstrip()
    if not rest:
        raise GrammarError(f"No currency found in amount {text.strip()!r}")
    m_ccy = CURRENCY_RE.match(rest)
    if not m_ccy:
        raise GrammarError(f"Currency must be alphabetic in amount {text.strip()!r}")
    return Amount(number=number, currency=m_ccy.group(0)), rest[m_ccy.end() :]


def parse_amount(text: str) -> Amount:
    amount, rest = split_amount(text)
    rest = rest.strip()
    if rest:
        raise GrammarError(f"Unexpected input after currency in amount {text.strip()!r}: {rest!r}")
    return amount


def exact_precision(numbers: List[Decimal]) -> int:
    """Context precision wide enough to add ``numbers`` without rounding."""
    if not numbers:
        return getcontext().prec
    top = max(number.adjusted() for number in numbers)
    bottom = min(number.as_tuple().exponent for number in numbers)
    return max(getcontext().prec, top - bottom + len(str(len(numbers))) + 1)


def to_per_unit(total: Amount, quantity: Decimal, clause: str) -> Amount:
    if quantity == 0:
        raise GrammarError(f"Cannot turn total {clause} {total} into a per-unit {clause} for zero units")
    digits = len(total.number.as_tuple().digits) + len(quantity.as_tuple().digits)
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, digits)
        number = total.number / abs(quantity)
    return Amount(number=number, currency=total.currency)


def parse_price_and_cost(
    text: str, quantity: Decimal
) -> Tuple[Optional[Price], Optional[CostType]]:
    """Parse ``[@ amount | @@ amount] [{ amount } | {{ amount }}]`` after a posting amount.

    Total forms (``@@``, ``{{ }}``) are divided by ``abs(quantity)``, the posting's own number,
    so both price and cost come back per unit. Empty braces give ``AutomaticCost``.
    """
    rest = text.strip()
    price: Optional[Price] = None
    cost: Optional[CostType] = None

    if rest.startswith("@"):
        is_total = rest.startswith("@@")
        body = rest[2:] if is_total else rest[1:]
        try:
            amount, rest = split_amount(body)
        except GrammarError as exc:
            raise GrammarError(f"Invalid price clause in {text.strip()!r}: {exc}") from exc
        if is_total:
            amount = to_per_unit(amount, quantity, "price")
        price = Price(amount=amount)
        rest = rest.strip()
        if rest.startswith("@"):
            raise GrammarError(f"Duplicate price clause in {text.strip()!r}")

    if rest.startswith("{"):
        is_total = rest.startswith("{{")
        opener, closer = ("{{", "}}") if is_total else ("{", "}")
        end = rest.find(closer, len(opener))
        if end < 0:
            raise GrammarError(f"Unterminated cost clause in {text.strip()!r}")
        inner = rest[len(opener) : end]
        if "{" in inner or "}" in inner:
            raise GrammarError(f"Mismatched braces in cost clause {text.strip()!r}")
        if inner.strip():
            try:
                amount = parse_amount(inner)
            except GrammarError as exc:
                raise GrammarError(f"Invalid cost clause in {text.strip()!r}: {exc}") from exc
            if is_total:
                amount = to_per_unit(amount, quantity, "cost")
            cost = Cost(amount=amount)
        else:
            cost = AutomaticCost()

        rest = rest[end + len(closer) :].strip()
        if rest.startswith("}"):
            raise GrammarError(f"Mismatched braces in cost clause {text.strip()!r}")
        if rest.startswith("{"):
            raise GrammarError(f"Duplicate cost clause in {text.strip()!r}")
        if rest.startswith("@"):
            raise GrammarError(f"Price clause must come before the cost clause in {text.strip()!r}")

    if rest:
        raise GrammarError(f"Unrecognized input {rest!r} in price/cost clause {text.strip()!r}")
    return price, cost


def iter_lines(text: str) -> Iterator[Tuple[int, int]]:
    """Yield ``(start, end)`` offsets of every line in ``text``, excluding the line break."""
    position = 0
    size = len(text)
    while position < size:
        newline = text.find("\n", position)
        if newline < 0:
            end = next_position = size
        else:
            end, next_position = newline, newline + 1
        if end > position and text[end - 1] == "\r":
            end -= 1
        yield position, end
        position = next_position


def is_skippable_line(line: str) -> bool:
    return not line or is_comment_char(line[0]) or line.startswith("*")


def iter_statement_spans(text: str) -> Iterator[Tuple[int, int]]:
    """Yield ``(start, end)`` offsets of each logical statement in ``text``.

    A date-led line starts a statement. When the date is followed by a transaction flag the
    statement is a block that also owns every following line up to the next date-led line;
    the block ends at its last significant line, so comment lines between postings stay in
    the span while trailing ones do not. This holds at end of input too: trailing comment
    and blank lines after the last block are never part of its span.

    Raises ``SegmentationError`` on a significant line outside any block that does not
    start with a date.
    """
    block_start: Optional[int] = None
    block_end = 0

    for line_number, (start, end) in enumerate(iter_lines(text), start=1):
        line = text[start:end].strip()
        if is_skippable_line(line):
            continue

        if STATEMENT_START_RE.match(line):
            if block_start is not None:
                yield block_start, block_end
                block_start = None
            if MULTILINE_START_RE.match(line):
                block_start, block_end = start, end
            else:
                yield start, end
            continue

        if block_start is not None:
            block_end = end
            continue

        raise SegmentationError(line_number, text[start:end])

    if block_start is not None:
        yield block_start, block_end


def iter_statements(text: str) -> Iterator[str]:
    for start, end in iter_statement_spans(text):
        yield text[start:end]


def parse_date(raw: str) -> datetime.date:
    m = DATE_RE.match(raw)
    if not m:
        raise GrammarError(f"Invalid date {raw!r}, expected YYYY-MM-DD")
    year, month, day = (int(part) for part in m.groups())
    try:
        return datetime.date(year, month, day)
    except ValueError as exc:
        raise GrammarError(f"Invalid calendar date {raw!r}: {exc}") from exc


def parse_open(entry_date: datetime.date, payload: str) -> Open:
    tokens = Tokenizer(payload)
    account = tokens.next_token("account")
    currencies = tuple(tokens)
    return Open(date=entry_date, account=account, allowed_currencies=currencies or None)


def parse_close(entry_date: datetime.date, payload: str) -> Close:
    tokens = Tokenizer(payload)
    account = tokens.next_token("account")
    tokens.expect_end("close")
    return Close(date=entry_date, account=account)


def parse_commodity(entry_date: datetime.date, payload: str) -> Commodity:
    currency = payload.strip()
    if not currency:
        raise GrammarError("No commodity specified in entry")
    if any(ch.isspace() for ch in currency):
        raise GrammarError(f"Unexpected remaining input in commodity parsing: {currency!r}")
    return Commodity(date=entry_date, currency=currency)


def parse_name_and_amount(payload: str, token_type: str) -> Tuple[str, Amount]:
    # e.g. "Assets:Depot:Cash 1.23 CHF" or "META 1.23 USD"
    tokens = Tokenizer(payload)
    name = tokens.next_token(token_type)
    return name, parse_amount(tokens.remaining())


def parse_balance(entry_date: datetime.date, payload: str) -> Balance:
    account, amount = parse_name_and_amount(payload, "account")
    return Balance(date=entry_date, account=account, amount=amount)


def parse_price(entry_date: datetime.date, payload: str) -> PriceEntry:
    currency, amount = parse_name_and_amount(payload, "currency")
    return PriceEntry(date=entry_date, currency=currency, amount=amount)


DIRECTIVE_PARSERS: Dict[str, Callable[[datetime.date, str], Entry]] = {
    "open": parse_open,
    "close": parse_close,
    "balance": parse_balance,
    "commodity": parse_commodity,
    "price": parse_price,
}


def parse_entry(statement: str) -> Entry:
    """Parse one statement produced by ``iter_statements``.

    Every failure is raised as ``StatementParseError`` carrying the untouched statement.
    """
    parts = statement.strip().split(None, 1)
    if not parts:
        raise StatementParseError("Empty statement", statement)
    try:
        entry_date = parse_date(parts[0])
    except GrammarError as exc:
        raise StatementParseError(f"unable to parse date: {exc}", statement) from exc
    if len(parts) < 2:
        raise StatementParseError("No command in entry", statement)

    rest = parts[1]
    if rest[0] in {flag.value for flag in TransactionFlag}:
        flag = TransactionFlag(rest[0])
        try:
            return parse_transaction(entry_date, flag, rest[1:])
        except GrammarError as exc:
            raise StatementParseError(f"unable to parse transaction: {exc}", statement) from exc

    if "\n" in rest:
        raise StatementParseError("Directive must fit on a single line", statement)
    command_parts = strip_comment(rest).strip().split(None, 1)
    if not command_parts:
        raise StatementParseError("No command in entry", statement)
    command = command_parts[0]
    payload = command_parts[1] if len(command_parts) > 1 else ""

    parser = DIRECTIVE_PARSERS.get(command)
    if parser is None:
        raise StatementParseError(f"Unknown command `{command}` in entry", statement)
    try:
        return parser(entry_date, payload)
    except GrammarError as exc:
        raise StatementParseError(f"invalid {command} entry: {exc}", statement) from exc


def parse_transaction_header(header: str) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(payee, narration)`` from the quoted strings after the flag."""
    strings: List[str] = []
    for m in HEADER_TOKEN_RE.finditer(strip_comment(header).strip()):
        quoted, bare = m.groups()
        if bare is not None:
            raise GrammarError(f"Expected a quoted string in transaction header, got {bare!r}")
        strings.append(ESCAPE_RE.sub(r"\1", quoted))

    if len(strings) > 2:
        raise GrammarError(f"Too many strings in transaction header: {header.strip()!r}")
    if not strings:
        return None, None
    if len(strings) == 1:
        return None, strings[0]
    return strings[0], strings[1]


def parse_posting(line: str) -> Optional[Posting]:
    text = strip_comment(line).strip()
    if not text:
        return None
    parts = text.split(None, 1)
    if len(parts) < 2:
        raise GrammarError(f"No amount in posting {text!r}")
    account, remainder = parts
    amount, rest = split_amount(remainder)
    price, cost = parse_price_and_cost(rest, amount.number)
    return Posting(account=account, amount=amount, price=price, cost=cost)


def parse_transaction(entry_date: datetime.date, flag: TransactionFlag, body: str) -> Transaction:
    """Assemble a transaction from the text following its flag.

    The zero-sum rule is not checked here; see ``check_transaction``.
    """
    header, _, postings_text = body.partition("\n")
    payee, narration = parse_transaction_header(header)

    postings: List[Posting] = []
    for line_no, line in enumerate(postings_text.splitlines(), start=2):
        try:
            posting = parse_posting(line)
        except GrammarError as exc:
            raise GrammarError(f"Invalid posting on line {line_no} {line.strip()!r}: {exc}") from exc
        if posting is not None:
            postings.append(posting)

    return Transaction(
        date=entry_date,
        flag=flag,
        payee=payee,
        narration=narration,
        postings=tuple(postings),
    )


def sum_amounts(amounts: Iterable[Amount]) -> Amount:
    amounts = list(amounts)
    if not amounts:
        raise BalanceError("No amounts to sum")
    currency = amounts[0].currency
    for amount in amounts[1:]:
        if amount.currency != currency:
            raise BalanceError(f"Multiple currencies in given amounts: {currency} and {amount.currency}")

    numbers = [amount.number for amount in amounts]
    total = Decimal(0)
    with localcontext() as ctx:
        ctx.prec = exact_precision(numbers)
        for number in numbers:
            total += number
    return Amount(number=total, currency=currency)


def check_transaction(tx: Transaction) -> None:
    if not tx.postings:
        return
    try:
        total = sum_amounts(posting.amount for posting in tx.postings)
    except BalanceError as exc:
        raise BalanceError(
            f"Invalid collection of amounts in postings of {tx.date.isoformat()} transaction: {exc}"
        ) from exc
    if total.number != 0:
        raise BalanceError(f"Transaction on {tx.date.isoformat()} not balanced: total is {total}")


def parse_statement(statement: str, check_balances: bool = False) -> Entry:
    entry = parse_entry(statement)
    if check_balances and isinstance(entry, Transaction):
        try:
            check_transaction(entry)
        except BalanceError as exc:
            raise StatementParseError(str(exc), statement) from exc
    return entry


def parse_entries_from_string(
    text: str,
    path: Optional[Path] = None,
    *,
    keep_errors: bool = False,
    check_balances: bool = False,
) -> ParsedEntries:
    """Parse a whole ledger text.

    Unparsable statements end up in ``unhandled_entries`` (and in ``errors`` when
    ``keep_errors`` is set). ``SegmentationError`` propagates to the caller.
    """
    source = str(path) if path is not None else "<string>"
    parsed = ParsedEntries()
    for statement in iter_statements(text):
        try:
            entry = parse_statement(statement, check_balances=check_balances)
        except StatementParseError as err:
            logger.debug("Unhandled statement in %s: %s", source, err.context)
            parsed.push_error(err, keep_error=keep_errors)
            continue
        parsed.push(entry)

    logger.info(
        "Parsed %d entries from %s (%d unhandled)",
        len(parsed),
        source,
        len(parsed.unhandled_entries),
    )
    return parsed


def read_ledger_text(path: Path) -> str:
    try:
        raw = Path(path).read_bytes()
    except OSError as exc:
        raise LedgerFileError(f"Cannot read ledger file {path}: {exc}") from exc
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise LedgerFileError(f"Ledger file {path} is not valid UTF-8: {exc}") from exc


def parse_entries_from_file(
    path: Path,
    *,
    keep_errors: bool = False,
    check_balances: bool = False,
) -> ParsedEntries:
    return parse_entries_from_string(
        read_ledger_text(path),
        Path(path),
        keep_errors=keep_errors,
        check_balances=check_balances,
    )


def amount_to_json(amount: Amount) -> dict:
    return {"number": decimal_to_json(amount.number), "currency": amount.currency}


def cost_to_json(cost: Optional[CostType]) -> Optional[dict]:
    if cost is None:
        return None
    if isinstance(cost, AutomaticCost):
        return {"automatic": True, "amount": None}
    return {"automatic": False, "amount": amount_to_json(cost.amount)}


def posting_to_json(posting: Posting) -> dict:
    return {
        "account": posting.account,
        "amount": amount_to_json(posting.amount),
        "price": amount_to_json(posting.price.amount) if posting.price is not None else None,
        "cost": cost_to_json(posting.cost),
    }


def entry_to_json(entry: Entry) -> dict:
    out: dict = {"kind": entry_kind(entry), "date": entry.date.isoformat()}
    if isinstance(entry, Transaction):
        out.update(
            {
                "flag": entry.flag.value,
                "payee": entry.payee,
                "narration": entry.narration,
                "postings": [posting_to_json(p) for p in entry.postings],
            }
        )
    elif isinstance(entry, Open):
        out.update(
            {
                "account": entry.account,
                "allowed_currencies": (
                    list(entry.allowed_currencies) if entry.allowed_currencies is not None else None
                ),
            }
        )
    elif isinstance(entry, Close):
        out["account"] = entry.account
    elif isinstance(entry, Balance):
        out.update({"account": entry.account, "amount": amount_to_json(entry.amount)})
    elif isinstance(entry, Commodity):
        out["currency"] = entry.currency
    elif isinstance(entry, PriceEntry):
        out.update({"currency": entry.currency, "amount": amount_to_json(entry.amount)})
    return out


def parsed_entries_to_json(parsed: ParsedEntries) -> dict:
    out: dict = {"counts": parsed.counts()}
    for name in ENTRY_COLLECTIONS.values():
        out[name] = [entry_to_json(entry) for entry in getattr(parsed, name)]
    out["unhandled_entries"] = list(parsed.unhandled_entries)
    out["errors"] = [{"context": err.context, "statement": err.statement} for err in parsed.errors]
    return out
