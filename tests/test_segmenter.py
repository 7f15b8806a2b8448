"""
Statement segmentation tests.
"""

import pytest

from ledger_parser import (
    MULTILINE_START_RE,
    SegmentationError,
    iter_lines,
    iter_statement_spans,
    iter_statements,
)


SPEC_EXAMPLE = (
    "2017-12-01 commodity AMD\n"
    "2024-10-03 balance Assets:Depot:Cash 0 CHF\n"
    "; comment\n"
    "\n"
    "2024-10-04 *\n"
    "; comment in transaction\n"
    "  Assets:Depot:Cash   2100 CHF\n"
    "  Assets:Foo -500 CHF\n"
    "  Income:Salary -1600 CHF\n"
    "2017-12-06 commodity AMD"
)


class TestIterLines:
    """Line offsets"""

    def test_empty(self) -> None:
        assert list(iter_lines("")) == []

    def test_offsets(self) -> None:
        data = "foo\n\nbar\n"
        spans = list(iter_lines(data))
        assert spans == [(0, 3), (4, 4), (5, 8)]
        assert [data[s:e] for s, e in spans] == ["foo", "", "bar"]

    def test_crlf(self) -> None:
        data = "foo\r\nbar"
        assert [data[s:e] for s, e in iter_lines(data)] == ["foo", "bar"]


class TestMultilineStart:
    """Which lines open a transaction block"""

    @pytest.mark.parametrize(
        "line",
        [
            "2024-10-04 *",
            '2024-10-04 * "some text"',
            '2024-10-04   * "some text" ; comments',
            '2024-10-04   *"some text"   "some text" #comments',
            '2024-10-04 ! "pending"',
            "2024-10-04\t*",
        ],
    )
    def test_positive(self, line: str) -> None:
        assert MULTILINE_START_RE.match(line)

    @pytest.mark.parametrize(
        "line",
        [
            "2024-10-04 close Foo:Bar",
            "; 2024-10-04 * ",
            "# 2024-10-04 * ",
            "2024-10-04 close Foo:Bar ; comments * important *",
            "****2024-10-04 close Foo:Bar ; comments * important *",
        ],
    )
    def test_negative(self, line: str) -> None:
        assert not MULTILINE_START_RE.match(line)


class TestIterStatements:
    """Splitting ledger text into logical statements"""

    def test_four_statements(self) -> None:
        statements = list(iter_statements(SPEC_EXAMPLE))
        assert statements == [
            "2017-12-01 commodity AMD",
            "2024-10-03 balance Assets:Depot:Cash 0 CHF",
            "2024-10-04 *\n"
            "; comment in transaction\n"
            "  Assets:Depot:Cash   2100 CHF\n"
            "  Assets:Foo -500 CHF\n"
            "  Income:Salary -1600 CHF",
            "2017-12-06 commodity AMD",
        ]

    def test_blocks_and_leading_whitespace(self) -> None:
        data = (
            "\n"
            "        2017-12-01 commodity AMD\n"
            "2024-10-04 *\n"
            "foo bar\n"
            "2024-10-04 *\n"
            "foo bar3\n"
            "  2024-01-01 close Assets:Depot ; some comment here * * \n"
            ";foo"
        )
        assert list(iter_statements(data)) == [
            "        2017-12-01 commodity AMD",
            "2024-10-04 *\nfoo bar",
            "2024-10-04 *\nfoo bar3",
            "  2024-01-01 close Assets:Depot ; some comment here * * ",
        ]

    def test_block_at_end_of_input(self) -> None:
        data = "2024-10-04 *\n  Assets:Cash 5 CHF\n  Assets:Bank -5 CHF\n"
        assert list(iter_statements(data)) == [
            "2024-10-04 *\n  Assets:Cash 5 CHF\n  Assets:Bank -5 CHF"
        ]

    def test_trailing_comments_not_in_block(self) -> None:
        data = "2024-10-04 *\n  Assets:Cash 5 CHF\n; after\n\n* Heading\n"
        assert list(iter_statements(data)) == ["2024-10-04 *\n  Assets:Cash 5 CHF"]

    def test_block_without_postings(self) -> None:
        data = '2024-10-04 * "empty"\n2024-10-05 commodity CHF'
        assert list(iter_statements(data)) == ['2024-10-04 * "empty"', "2024-10-05 commodity CHF"]

    def test_consecutive_blocks(self) -> None:
        data = "2024-10-04 *\n  A 1 X\n2024-10-05 !\n  B 2 Y"
        assert list(iter_statements(data)) == ["2024-10-04 *\n  A 1 X", "2024-10-05 !\n  B 2 Y"]

    def test_only_comments(self) -> None:
        assert list(iter_statements("; a\n# b\n* c\n\n   \n")) == []

    def test_spans_reference_input(self) -> None:
        spans = list(iter_statement_spans(SPEC_EXAMPLE))
        assert len(spans) == 4
        start, end = spans[2]
        assert SPEC_EXAMPLE[start:end].startswith("2024-10-04 *")
        assert SPEC_EXAMPLE[start:end].endswith("Income:Salary -1600 CHF")

    def test_crlf_input(self) -> None:
        data = "2024-10-04 *\r\n  Assets:Cash 5 CHF\r\n2024-10-05 commodity CHF\r\n"
        assert list(iter_statements(data)) == [
            "2024-10-04 *\r\n  Assets:Cash 5 CHF",
            "2024-10-05 commodity CHF",
        ]


class TestSegmentationErrors:
    """Malformed top-level lines"""

    def test_unrecognized_line(self) -> None:
        data = "2024-01-01 open Assets:Cash\noption \"title\" \"x\"\n2024-01-02 close Assets:Cash"
        statements = iter_statements(data)
        assert next(statements) == "2024-01-01 open Assets:Cash"
        with pytest.raises(SegmentationError) as excinfo:
            next(statements)
        assert excinfo.value.line_number == 2
        assert excinfo.value.line == 'option "title" "x"'

    def test_posting_outside_block(self) -> None:
        data = "2024-01-01 open Assets:Cash\n  Assets:Cash 5 CHF"
        with pytest.raises(SegmentationError, match="line 2"):
            list(iter_statements(data))
