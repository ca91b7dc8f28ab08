import pytest

from engine.errors import ColumnNotEmailError, EmptyTableError, InvalidColumnError, UnknownColumnError
from engine.splitter import (
    extract_records,
    locate_address_column,
    parse_table,
    preview_table,
    render_csv,
    resolve_column,
    split_table,
)

CONTACTS = b"name,email,age\nA,a@x.com,20\nB,bad,x\nC,,5\n"


def test_parse_table_trims_fields_and_skips_blank_rows() -> None:
    table = parse_table(b"\xef\xbb\xbfname , email\n  A ,  a@x.com \n\n\nB,b@y.com\n")

    assert table.header == ["name", "email"]
    assert table.rows == [["A", "a@x.com"], ["B", "b@y.com"]]


def test_parse_table_keeps_rows_of_empty_fields() -> None:
    table = parse_table(b"name,email\nA,a@x.com\n,\n , \nB,b@y.com\n")

    assert table.rows == [["A", "a@x.com"], ["", ""], ["", ""], ["B", "b@y.com"]]


def test_preview_counts_rows_of_empty_fields() -> None:
    stats = preview_table(b"name,email\nA,a@x.com\n,\nB,b@y.com\n", 1)

    assert stats.total_rows == 4
    assert stats.total_emails == 2
    assert stats.total_empty_emails == 1


def test_parse_table_keeps_blank_rows_when_asked() -> None:
    table = parse_table(b"name\nA\n\nB\n", skip_blank_rows=False)

    assert table.rows == [["A"], [], ["B"]]


def test_parse_table_rejects_empty_input() -> None:
    with pytest.raises(EmptyTableError):
        parse_table(b"")
    with pytest.raises(EmptyTableError):
        parse_table(b"\n\n")


def test_parse_table_is_repeatable_and_maps_first_header_occurrence() -> None:
    content = b"email,name,email\nx@y.com,X,z@y.com\n"

    first = parse_table(content)
    second = parse_table(content)

    assert first == second
    assert first.column_index == {"email": 0, "name": 1}


def test_locate_address_column_accepts_email_header() -> None:
    table = parse_table(b"Name,Work Email Address\nA,not-an-address\n")

    assert locate_address_column(table.header, 1, table.rows) == "Work Email Address"


def test_locate_address_column_accepts_column_by_sampled_values() -> None:
    table = parse_table(b"name,contact\nA,\nB,null\nC,c@example.com\n")

    assert locate_address_column(table.header, 1, table.rows) == "contact"


def test_locate_address_column_out_of_bounds() -> None:
    header = ["name", "email"]

    with pytest.raises(InvalidColumnError) as exc:
        locate_address_column(header, 2)
    assert "Max index allowed: 1" in str(exc.value)

    with pytest.raises(InvalidColumnError):
        locate_address_column(header, -1)


def test_locate_address_column_suggests_alternatives() -> None:
    table = parse_table(b"name,primary,age\nA,a@x.com,20\nB,b@y.com,30\n")

    with pytest.raises(ColumnNotEmailError) as exc:
        locate_address_column(table.header, 2, table.rows)

    assert exc.value.suggestions == [1]
    assert exc.value.column_name == "age"


def test_split_table_separates_address_column() -> None:
    split = split_table(parse_table(CONTACTS), 1)

    assert split.address_extract == [["email"], ["a@x.com"], ["bad"], [""]]
    assert split.residual_extract == [["name", "age"], ["A", "20"], ["B", "x"], ["C", "5"]]
    assert split.total_emails == 3
    assert split.has_inconsistent_columns is False


def test_split_table_reports_inconsistent_rows_without_failing() -> None:
    split = split_table(parse_table(b"name,email,age\nA,a@x.com,20\nB\n"), 1)

    assert split.has_inconsistent_columns is True
    assert split.address_extract[-1] == [""]
    assert split.residual_extract[-1] == ["B"]


def test_split_table_can_drop_placeholder_addresses() -> None:
    table = parse_table(b"name,email\nA,a@x.com\nB,\nC,null\nD,d@x.com\n")

    split = split_table(table, 1, remove_empty=True)

    assert split.address_extract == [["email"], ["a@x.com"], ["d@x.com"]]
    assert split.residual_extract == [["name"], ["A"], ["D"]]


def test_extract_records_numbers_rows_in_order() -> None:
    records = extract_records([["email"], [" a@x.com "], [], ["b@y.com"]])

    assert [(r.address, r.source_row_index) for r in records] == [
        ("a@x.com", 0),
        ("", 1),
        ("b@y.com", 2),
    ]


def test_preview_table_counts_unique_empty_and_duplicate_addresses() -> None:
    content = b"name,email\nA,a@x.com\nB,A@X.com\nC,\nD,b@y.com\nE,undefined\n"

    stats = preview_table(content, 1)

    assert stats.column_name == "email"
    assert stats.total_rows == 6
    assert stats.total_emails == 2
    assert stats.total_empty_emails == 2
    assert stats.total_duplicate_emails == 1


def test_render_csv_quotes_fields_that_need_it() -> None:
    rows = [["name", "note"], ["A", "hello, world"], ["B", 'say "hi"']]

    rendered = render_csv(rows)

    assert rendered == b'name,note\nA,"hello, world"\nB,"say ""hi"""\n'
    assert parse_table(rendered).rows == rows[1:]


def test_resolve_column_accepts_index_or_header_name() -> None:
    table = parse_table(CONTACTS)

    assert resolve_column(table, "1") == 1
    assert resolve_column(table, " email ") == 1
    assert resolve_column(table, "age") == 2
    with pytest.raises(UnknownColumnError) as exc:
        resolve_column(table, "phone")
    assert "Columns: name, email, age" in str(exc.value)
