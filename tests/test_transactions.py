"""
Transaction assembly and balance validation tests.
"""

from datetime import date
from decimal import Decimal

import pytest

from ledger_parser import (
    Amount,
    AutomaticCost,
    BalanceError,
    Cost,
    GrammarError,
    Posting,
    Price,
    Transaction,
    TransactionFlag,
    check_transaction,
    parse_posting,
    parse_transaction,
    parse_transaction_header,
    sum_amounts,
)


def chf(number: str) -> Amount:
    return Amount(Decimal(number), "CHF")


class TestTransactionHeader:
    """Payee and narration from the quoted strings"""

    def test_no_strings(self) -> None:
        assert parse_transaction_header("   ") == (None, None)

    def test_narration_only(self) -> None:
        assert parse_transaction_header(' "Groceries" ') == (None, "Groceries")

    def test_payee_and_narration(self) -> None:
        assert parse_transaction_header(' "Migros" "Groceries" ; weekly') == ("Migros", "Groceries")

    def test_escaped_quote(self) -> None:
        payee, narration = parse_transaction_header(r' "Bob \"the builder\"" "Fee"')
        assert payee == 'Bob "the builder"'
        assert narration == "Fee"

    def test_comment_char_inside_string(self) -> None:
        assert parse_transaction_header(' "Invoice #12; paid"') == (None, "Invoice #12; paid")

    def test_too_many_strings(self) -> None:
        with pytest.raises(GrammarError, match="Too many strings"):
            parse_transaction_header(' "a" "b" "c"')

    def test_bare_token(self) -> None:
        with pytest.raises(GrammarError, match="quoted string"):
            parse_transaction_header(' "Shop" txn')


class TestParsePosting:
    """Single posting lines"""

    def test_simple(self) -> None:
        posting = parse_posting("  Assets:Cash   -12.50 CHF")
        assert posting == Posting("Assets:Cash", chf("-12.50"))
        assert posting.amount.number.as_tuple().exponent == -2

    def test_blank_and_comment_lines(self) -> None:
        assert parse_posting("    ") is None
        assert parse_posting("  ; a note between postings") is None

    def test_trailing_comment(self) -> None:
        posting = parse_posting("  Expenses:Food 5 CHF ; lunch")
        assert posting == Posting("Expenses:Food", chf("5"))

    def test_price_and_cost(self) -> None:
        posting = parse_posting("  Assets:Depot:META 10 META @ 310 CHF {300 CHF}")
        assert posting.price == Price(chf("310"))
        assert posting.cost == Cost(chf("300"))

    def test_total_cost_is_per_unit(self) -> None:
        posting = parse_posting("  Assets:Depot:META 10 META {{3000 CHF}}")
        assert posting.cost == Cost(chf("300"))

    def test_total_price_uses_absolute_quantity(self) -> None:
        posting = parse_posting("  Assets:Depot:META -4 META @@ 100 CHF")
        assert posting.price == Price(chf("25"))

    def test_automatic_cost(self) -> None:
        posting = parse_posting("  Assets:Depot:META -2 META {}")
        assert posting.cost == AutomaticCost()
        assert posting.price is None

    def test_missing_amount(self) -> None:
        with pytest.raises(GrammarError, match="No amount"):
            parse_posting("  Assets:Cash")

    @pytest.mark.parametrize(
        "line",
        [
            "  Assets:Cash CHF",
            "  Assets:Cash 5",
            "  Assets:Cash 5 CHF extra",
            "  Assets:Cash 5 CHF {7 CHF",
        ],
    )
    def test_invalid(self, line: str) -> None:
        with pytest.raises(GrammarError):
            parse_posting(line)


class TestParseTransaction:
    """Header plus posting lines"""

    def test_postings_in_order(self) -> None:
        body = ' "Shop" "Lunch"\n  Expenses:Food  5 CHF\n  ; paid cash\n  Assets:Cash  -5 CHF'
        tx = parse_transaction(date(2024, 3, 1), TransactionFlag.OK, body)
        assert tx == Transaction(
            date=date(2024, 3, 1),
            flag=TransactionFlag.OK,
            payee="Shop",
            narration="Lunch",
            postings=(
                Posting("Expenses:Food", chf("5")),
                Posting("Assets:Cash", chf("-5")),
            ),
        )

    def test_header_only(self) -> None:
        tx = parse_transaction(date(2024, 3, 1), TransactionFlag.ERROR, "")
        assert tx.postings == ()
        assert tx.payee is None
        assert tx.narration is None

    def test_unbalanced_is_still_parsed(self) -> None:
        tx = parse_transaction(date(2024, 3, 1), TransactionFlag.OK, "\n  Assets:Cash 100 USD")
        assert tx.postings[0].amount == Amount(Decimal(100), "USD")

    def test_error_names_line(self) -> None:
        body = ' "Shop"\n  Expenses:Food  5 CHF\n  Assets:Cash'
        with pytest.raises(GrammarError, match="line 3"):
            parse_transaction(date(2024, 3, 1), TransactionFlag.OK, body)


class TestSumAmounts:
    """Single-currency summation"""

    def test_sum(self) -> None:
        assert sum_amounts([chf("1.5"), chf("2.25"), chf("-0.75")]) == chf("3.00")

    def test_multiple_currencies(self) -> None:
        with pytest.raises(BalanceError, match="CHF and USD"):
            sum_amounts([chf("1"), Amount(Decimal(1), "USD")])

    def test_empty(self) -> None:
        with pytest.raises(BalanceError):
            sum_amounts([])


class TestCheckTransaction:
    """Postings must sum to zero in one currency"""

    def make(self, *amounts: Amount) -> Transaction:
        postings = tuple(Posting(f"Assets:A{i}", amount) for i, amount in enumerate(amounts))
        return Transaction(date=date(2024, 1, 1), flag=TransactionFlag.OK, postings=postings)

    def test_no_postings(self) -> None:
        check_transaction(self.make())

    def test_single_posting(self) -> None:
        with pytest.raises(BalanceError, match="not balanced"):
            check_transaction(self.make(Amount(Decimal(100), "USD")))

    def test_balanced(self) -> None:
        check_transaction(self.make(Amount(Decimal(100), "USD"), Amount(Decimal(-100), "USD")))

    def test_balanced_with_scale_difference(self) -> None:
        check_transaction(self.make(chf("10.50"), chf("-10.5")))

    def test_mixed_currencies(self) -> None:
        tx = self.make(Amount(Decimal(100), "USD"), chf("-90"))
        with pytest.raises(BalanceError) as excinfo:
            check_transaction(tx)
        assert "USD" in str(excinfo.value)
        assert "CHF" in str(excinfo.value)


class TestWideNumbers:
    """Numbers wider than the default decimal precision stay exact"""

    def test_sum_is_exact(self) -> None:
        total = sum_amounts(
            [
                chf("1234567890123456789012345678.9"),
                chf("-0.1"),
                chf("-1234567890123456789012345678.8"),
            ]
        )
        assert total.number == 0

    def test_wide_transaction_balances(self) -> None:
        postings = (
            Posting("Assets:A", chf("1234567890123456789012345678.9")),
            Posting("Assets:B", chf("-0.1")),
            Posting("Assets:C", chf("-1234567890123456789012345678.8")),
        )
        check_transaction(Transaction(date=date(2024, 1, 1), flag=TransactionFlag.OK, postings=postings))

    def test_wide_transaction_off_by_smallest_digit(self) -> None:
        postings = (
            Posting("Assets:A", chf("1234567890123456789012345678.9")),
            Posting("Assets:B", chf("-1234567890123456789012345678.8")),
        )
        with pytest.raises(BalanceError, match="total is 0.1 CHF"):
            check_transaction(Transaction(date=date(2024, 1, 1), flag=TransactionFlag.OK, postings=postings))

    def test_wide_total_cost(self) -> None:
        posting = parse_posting("  Assets:Depot:META 2 META {{12345678901234567890123456789012 CHF}}")
        assert posting.cost == Cost(chf("6172839450617283945061728394506"))
