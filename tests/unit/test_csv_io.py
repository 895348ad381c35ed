"""Unit tests for racereg.csv_io."""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from types import SimpleNamespace

from racereg.csv_io import (
    BOM,
    CsvColumn,
    detect_delimiter,
    export_to_csv,
    find_column,
    format_cell,
    parse_line,
    split_lines,
    with_bom,
)


# ---------------------------------------------------------------------------
# parse_line
# ---------------------------------------------------------------------------

class TestParseLine:
    def test_quoted_delimiter(self):
        assert parse_line('123,"Status, complicated",John', ",") == ["123", "Status, complicated", "John"]

    def test_escaped_quotes(self):
        assert parse_line('123,"He said ""Hello""",John', ",") == ["123", 'He said "Hello"', "John"]

    def test_empty_middle_field(self):
        assert parse_line("123,,John", ",") == ["123", "", "John"]

    def test_trailing_delimiter_yields_empty_last_field(self):
        assert parse_line("123,PAID,", ",") == ["123", "PAID", ""]

    def test_empty_line_is_one_empty_field(self):
        assert parse_line("", ";") == [""]

    def test_quote_inside_unquoted_field_is_data(self):
        assert parse_line('12" screen;PAID', ";") == ['12" screen', "PAID"]

    def test_other_delimiters_are_plain_text(self):
        assert parse_line("a,b;c", ";") == ["a,b", "c"]

    def test_tab_delimiter(self):
        assert parse_line("REG-1\tPAID", "\t") == ["REG-1", "PAID"]


# ---------------------------------------------------------------------------
# split_lines / headers
# ---------------------------------------------------------------------------

class TestSplitLines:
    def test_strips_bom_and_blank_lines(self):
        text = BOM + "id;status\r\nREG-1;PAID\n\n   \nREG-2;UNPAID\n"
        assert split_lines(text) == ["id;status", "REG-1;PAID", "REG-2;UNPAID"]

    def test_drops_excel_separator_directive(self):
        assert split_lines("sep=;\nid;status\nREG-1;PAID") == ["id;status", "REG-1;PAID"]

    def test_empty_payload(self):
        assert split_lines("") == []


class TestHeaders:
    def test_find_column_is_case_insensitive_and_ignores_quotes(self):
        assert find_column(["Name", ' "Payment Status" '], ["payment status"]) == 1

    def test_find_column_prefers_earlier_alias(self):
        headers = ["Status", "Payment Status"]
        assert find_column(headers, ["payment status", "status"]) == 1

    def test_find_column_missing(self):
        assert find_column(["a", "b"], ["c"]) == -1

    def test_detect_semicolon_header_with_commas_in_names(self):
        header = "Order Number;Items, sizes;Status"
        assert detect_delimiter(header, [["order number"], ["status"]]) == ";"

    def test_detect_each_candidate(self):
        required = [["id"], ["status"]]
        assert detect_delimiter("id,status", required) == ","
        assert detect_delimiter("id\tstatus", required) == "\t"
        assert detect_delimiter("id|status", required) == "|"

    def test_detect_none_when_columns_missing(self):
        assert detect_delimiter("foo;bar", [["id"], ["status"]]) is None


# ---------------------------------------------------------------------------
# export_to_csv
# ---------------------------------------------------------------------------

class Colour(Enum):
    RED = "red"


COLUMNS = [
    CsvColumn("Reference", "reference"),
    CsvColumn("Note", "note"),
    CsvColumn("Amount", "amount"),
]


class TestExport:
    def test_header_and_one_line_per_record(self):
        rows = [{"reference": "A", "note": "x", "amount": Decimal("1")}, {"reference": "B", "note": "y", "amount": Decimal("2")}]
        assert export_to_csv(rows, COLUMNS) == "Reference,Note,Amount\nA,x,1\nB,y,2\n"

    def test_quotes_only_when_needed(self):
        rows = [SimpleNamespace(reference="A", note='Size "M", blue', amount=Decimal("10.50"))]
        out = export_to_csv(rows, COLUMNS)
        assert out.splitlines()[1] == 'A,"Size ""M"", blue",10.50'

    def test_semicolon_delimiter_and_crlf(self):
        rows = [{"reference": "A", "note": "a,b", "amount": Decimal("3")}]
        out = export_to_csv(rows, COLUMNS, delimiter=";", line_terminator="\r\n")
        assert out == "Reference;Note;Amount\r\nA;a,b;3\r\n"

    def test_callable_columns(self):
        cols = [CsvColumn("Upper", lambda r: r["name"].upper())]
        assert export_to_csv([{"name": "anna"}], cols) == "Upper\nANNA\n"

    def test_carriage_returns_never_break_a_row(self):
        rows = [{"reference": "A", "note": "x\ry", "amount": Decimal("1")}]
        assert export_to_csv(rows, COLUMNS) == 'Reference,Note,Amount\nA,"x\ny",1\n'
        crlf = export_to_csv(rows, COLUMNS, line_terminator="\r\n")
        assert crlf == 'Reference,Note,Amount\r\nA,"x\ny",1\r\n'

    def test_no_records_gives_header_only(self):
        assert export_to_csv([], COLUMNS) == "Reference,Note,Amount\n"

    def test_with_bom(self):
        assert with_bom("a\n") == "\ufeffa\n"

    def test_round_trip_through_parse_line(self):
        records = [
            {"reference": "REG-2026-00001", "note": 'He said "hi", twice', "amount": Decimal("8000")},
            {"reference": "REG-2026-00002", "note": "", "amount": Decimal("0.50")},
            {"reference": "REG-2026-00003", "note": "plain;text", "amount": Decimal("12")},
        ]
        text = with_bom(export_to_csv(records, COLUMNS))
        lines = split_lines(text)[1:]
        parsed = [parse_line(line, ",") for line in lines]
        assert parsed == [[r["reference"], r["note"], format_cell(r["amount"])] for r in records]


class TestFormatCell:
    def test_values(self):
        assert format_cell(None) == ""
        assert format_cell(Colour.RED) == "red"
        assert format_cell(True) == "true"
        assert format_cell(Decimal("1E+2")) == "100"
        assert format_cell(date(2026, 5, 1)) == "2026-05-01"
        assert format_cell(datetime(2026, 5, 1, 8, 30, tzinfo=timezone.utc)) == "2026-05-01T08:30:00+00:00"
        assert format_cell(42) == "42"
