import pytest
from openpyxl import Workbook

from dbimport.core.errors import RowSourceError
from dbimport.services.row_source import (
    CsvRowSource,
    SpreadsheetRowSource,
    detect_delimiter,
    detect_file_encoding,
    fit_row,
    open_row_source,
)


def test_detect_delimiter_picks_the_one_with_most_fields():
    assert detect_delimiter("a;b;c") == ";"
    assert detect_delimiter("a\tb\tc,d") == "\t"
    assert detect_delimiter("a|b|c|d") == "|"
    assert detect_delimiter("single") == ","


def test_detect_file_encoding(write_file):
    assert detect_file_encoding(write_file("bom.csv", b"\xef\xbb\xbfid,name\n")) == "utf-8-sig"
    assert detect_file_encoding(write_file("utf8.csv", "name\ncaf\u00e9\n".encode("utf-8"))) == "utf-8"
    assert detect_file_encoding(write_file("cp.csv", b"name\ncaf\xe9\n")) == "cp1252"


def test_non_utf8_byte_deep_in_file_is_detected(write_file):
    ascii_rows = "".join(f"{i},Person {i}\n" for i in range(5000)).encode("ascii")
    path = write_file("late.csv", b"id,name\n" + ascii_rows + b"5000,Caf\xe9\n")

    source = open_row_source(path)
    source.open()
    try:
        assert source.encoding == "cp1252"
        assert source.seek_to_row(5000)
        assert source.next_row() == ["5000", "Caf\u00e9"]
    finally:
        source.close()
    assert source.count_rows() == 5001


def test_recorded_encoding_skips_detection(write_file):
    path = write_file("cp.csv", b"name\ncaf\xe9\n")

    with open_row_source(path, encoding="iso-8859-1") as source:
        assert source.encoding == "iso-8859-1"
        assert source.next_row() == ["caf\u00e9"]


def test_fit_row_pads_and_truncates():
    assert fit_row(["a"], 3) == ["a", "", ""]
    assert fit_row(["a", "b", "c", "d"], 2) == ["a", "b"]


def test_semicolon_file_with_bom_and_quoted_headers(write_file):
    path = write_file("data.csv", b'\xef\xbb\xbf"id";"name"\n1;Alice\n2;Bob\n')

    with open_row_source(path) as source:
        assert source.headers == ["id", "name"]
        assert source.delimiter == ";"
        assert source.next_row() == ["1", "Alice"]
        assert source.next_row() == ["2", "Bob"]
        assert source.next_row() is None


def test_windows_1252_input_is_decoded(write_file):
    path = write_file("latin.csv", b"name,city\nJos\xe9,M\xfcnchen\n")

    with open_row_source(path) as source:
        assert source.encoding == "cp1252"
        assert source.next_row() == ["José", "München"]


def test_short_and_long_rows_are_fitted_to_header(write_file):
    path = write_file("ragged.csv", "a,b,c\n1\n1,2,3,4,5\n")

    with open_row_source(path) as source:
        assert source.next_row() == ["1", "", ""]
        assert source.next_row() == ["1", "2", "3"]


def test_blank_lines_are_not_rows(write_file):
    path = write_file("blank.csv", "a,b\n1,2\n\n,\n3,4\n")

    source = open_row_source(path)
    with source:
        assert source.next_row() == ["1", "2"]
        assert source.next_row() == ["3", "4"]
        assert source.next_row() is None
    assert source.count_rows() == 2


def test_seek_to_row(write_file):
    path = write_file("seek.csv", "a\n1\n2\n3\n")

    with open_row_source(path) as source:
        assert source.seek_to_row(2) is True
        assert source.next_row() == ["3"]

    with open_row_source(path) as source:
        assert source.seek_to_row(3) is True
        assert source.next_row() is None

    with open_row_source(path) as source:
        assert source.seek_to_row(4) is False


def test_missing_file(tmp_path):
    with pytest.raises(RowSourceError) as exc_info:
        CsvRowSource(tmp_path / "nope.csv").open()
    assert exc_info.value.code == "file_not_found"


def test_empty_file_differs_from_no_headers(write_file):
    with pytest.raises(RowSourceError) as exc_info:
        open_row_source(write_file("empty.csv", "")).open()
    assert exc_info.value.code == "file_empty"

    with pytest.raises(RowSourceError) as exc_info:
        open_row_source(write_file("blank.csv", "\n\n")).open()
    assert exc_info.value.code == "no_headers"


def test_unsupported_extension(write_file):
    with pytest.raises(RowSourceError) as exc_info:
        open_row_source(write_file("data.json", "{}"))
    assert exc_info.value.code == "unsupported_format"


def test_xlsx_rows_are_strings(tmp_path):
    path = tmp_path / "sheet.xlsx"
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["id", "name", None])
    sheet.append([1, "Alice"])
    sheet.append([None, None])
    sheet.append([2, None])
    workbook.save(path)

    source = open_row_source(path)
    assert isinstance(source, SpreadsheetRowSource)
    with source:
        assert source.headers == ["id", "name"]
        assert source.next_row() == ["1", "Alice"]
        assert source.next_row() == ["2", ""]
        assert source.next_row() is None
    assert source.count_rows() == 2
