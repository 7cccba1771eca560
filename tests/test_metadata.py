"""Tests for upload metadata extraction."""
import io
from unittest.mock import patch

import pytest

from pycture import (
    EXCEL_PLACEHOLDER,
    METADATA_READ_BYTES,
    READ_ERROR_COLUMN,
    UNKNOWN_ROWS,
    FileReadError,
    cached_metadata,
    extract_all_metadata,
    extract_file_metadata,
    parse_metadata_text,
)


class FakeUpload(io.BytesIO):
    """Mimics streamlit's UploadedFile: a BytesIO with name/size/type."""

    def __init__(self, data: bytes, name: str, type: str = "text/csv"):
        super().__init__(data)
        self.name = name
        self.size = len(data)
        self.type = type


class BrokenUpload:
    name = "broken.csv"
    size = 10
    type = "text/csv"

    def seek(self, pos):
        return 0

    def read(self, n=-1):
        raise OSError("disk gone")


def test_csv_header_rows_and_sample():
    data = b'"id", \'name\' ,amount\n1,"Alice",10\n\n2,Bob,20\r\n3,Cy,30\n4,Di,40\n'
    meta = extract_file_metadata(FakeUpload(data, "Sales.CSV"))
    assert meta.name == "Sales.CSV"
    assert meta.size == len(data)
    assert meta.columns == ["id", "name", "amount"]
    assert meta.row_count == 4
    assert meta.sample == [["1", "Alice", "10"], ["2", "Bob", "20"], ["3", "Cy", "30"]]


def test_empty_file_gives_empty_metadata():
    meta = extract_file_metadata(FakeUpload(b"\n  \n", "empty.csv"))
    assert meta.columns == []
    assert meta.row_count == 0
    assert meta.sample == []


def test_excel_gets_placeholder():
    meta = extract_file_metadata(FakeUpload(b"PK\x03\x04binary", "book.xlsx", type="application/vnd.ms-excel"))
    assert meta.columns == [EXCEL_PLACEHOLDER]
    assert meta.row_count == UNKNOWN_ROWS
    assert meta.row_count_label == "(unknown)"
    assert meta.sample == []


def test_only_first_50kb_is_used():
    header = b"region,product,amount\n"
    body = b"".join(b"north,widget-%06d,%d\n" % (i, i) for i in range(10000))
    data = header + body
    assert len(data) > METADATA_READ_BYTES

    full = extract_file_metadata(FakeUpload(data, "big.csv"))
    truncated = extract_file_metadata(FakeUpload(data[:METADATA_READ_BYTES], "big.csv"))
    assert full.columns == truncated.columns
    assert full.row_count == truncated.row_count
    assert full.sample == truncated.sample
    assert full.row_count < 10000


def test_upload_is_rewound_after_reading():
    up = FakeUpload(b"a,b\n1,2\n", "x.csv")
    extract_file_metadata(up)
    assert up.read() == b"a,b\n1,2\n"


def test_parse_failure_returns_error_sentinel():
    with patch("pycture._split_csv_line", side_effect=RuntimeError("bad")):
        meta = parse_metadata_text("weird.csv", "a,b\n1,2\n", size=8)
    assert meta.columns == [READ_ERROR_COLUMN]
    assert meta.row_count == 0
    assert meta.sample == []


def test_read_failure_propagates_with_file_name():
    with pytest.raises(FileReadError) as exc:
        extract_file_metadata(BrokenUpload())
    assert "broken.csv" in exc.value.user_message


def test_extract_all_preserves_input_order():
    uploads = [FakeUpload(b"c%d\n1\n" % i, f"f{i}.csv") for i in range(6)]
    metas = extract_all_metadata(uploads)
    assert [m.name for m in metas] == [f"f{i}.csv" for i in range(6)]
    assert [m.columns for m in metas] == [[f"c{i}"] for i in range(6)]


def test_extract_all_empty():
    assert extract_all_metadata([]) == []


def test_row_count_label_uses_thousands_separator():
    meta = parse_metadata_text("n.csv", "a\n" + "1\n" * 1234)
    assert meta.row_count == 1234
    assert meta.row_count_label == "1,234"


def test_cached_metadata_reads_each_upload_once():
    first = FakeUpload(b"a,b\n1,2\n", "one.csv")
    first.file_id = "id-1"
    second = FakeUpload(b"c\n3\n4\n", "two.csv")
    second.file_id = "id-2"
    cache = {}

    assert [m.name for m in cached_metadata([first], cache)] == ["one.csv"]
    with patch("pycture.extract_file_metadata", wraps=extract_file_metadata) as extract:
        metas = cached_metadata([first, second], cache)
        cached_metadata([first, second], cache)
    assert [m.name for m in metas] == ["one.csv", "two.csv"]
    assert [c.args[0] for c in extract.call_args_list] == [second]


def test_cached_metadata_drops_removed_uploads():
    first = FakeUpload(b"a\n1\n", "one.csv")
    second = FakeUpload(b"b\n2\n", "two.csv")
    cache = {}
    cached_metadata([first, second], cache)
    assert cached_metadata([second], cache)[0].name == "two.csv"
    assert list(cache) == [("two.csv", second.size)]
