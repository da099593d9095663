from datetime import datetime
from unittest.mock import patch

import pandas as pd
from pandas.io.parsers import TextFileReader
import pytest

from services.errors import FileParseError, UnsupportedFormat
from services.file_reader import DelimitedReader, SpreadsheetReader, check_extension, open_reader


def _write_csv(tmp_path, name, content):
    path = tmp_path / name
    path.write_text(content, encoding="utf-8")
    return path


def test_check_extension_accepts_supported_formats():
    assert check_extension("orders.CSV") == ".csv"
    assert check_extension("book.xlsx") == ".xlsx"
    assert check_extension("legacy.xls") == ".xls"


@pytest.mark.parametrize("filename", ["data.json", "notes.txt", "archive.csv.zip", "no_extension"])
def test_unsupported_format_fails_before_reading(tmp_path, filename):
    with pytest.raises(UnsupportedFormat) as exc_info:
        open_reader(tmp_path / "does-not-exist", filename=filename)
    assert exc_info.value.code == "UNSUPPORTED_FORMAT"


def test_csv_rows_use_normalized_headers(tmp_path):
    path = _write_csv(
        tmp_path,
        "customers.csv",
        "Customer ID,Full Name,Signup Date,Email,email\n"
        "1,Ada Lovelace,2024-01-15,ada@example.com,ada@work.example\n"
        "2,,2024-02-01,,\n",
    )
    reader = open_reader(path)

    assert isinstance(reader, DelimitedReader)
    assert reader.raw_headers == ["Customer ID", "Full Name", "Signup Date", "Email", "email"]
    assert reader.columns == ["customer_id", "full_name", "signup_date", "email", "email_1"]

    rows = list(reader.iter_rows())
    assert rows == [
        {
            "customer_id": "1",
            "full_name": "Ada Lovelace",
            "signup_date": "2024-01-15",
            "email": "ada@example.com",
            "email_1": "ada@work.example",
        },
        {"customer_id": "2", "full_name": "", "signup_date": "2024-02-01", "email": "", "email_1": ""},
    ]


def test_csv_keeps_values_as_text(tmp_path):
    path = _write_csv(tmp_path, "codes.csv", "zip,flag\n00501,NA\n")
    rows = list(open_reader(path).iter_rows())
    assert rows == [{"zip": "00501", "flag": "NA"}]


def test_csv_streams_across_chunks(tmp_path):
    lines = ["id,value"] + [f"{i},{i * 2}" for i in range(1, 26)]
    path = _write_csv(tmp_path, "many.csv", "\n".join(lines) + "\n")
    reader = DelimitedReader(path, chunk_rows=10)
    rows = list(reader.iter_rows())
    assert len(rows) == 25
    assert rows[0] == {"id": "1", "value": "2"}
    assert rows[-1] == {"id": "25", "value": "50"}


def test_abandoned_csv_stream_closes_the_file(tmp_path):
    lines = ["id"] + [str(i) for i in range(1, 30)]
    path = _write_csv(tmp_path, "abandoned.csv", "\n".join(lines) + "\n")
    reader = DelimitedReader(path, chunk_rows=5)

    with patch.object(TextFileReader, "close", autospec=True, side_effect=TextFileReader.close) as close_spy:
        rows = reader.iter_rows()
        assert next(rows) == {"id": "1"}
        assert close_spy.call_count == 0
        rows.close()

    assert close_spy.call_count == 1


def test_header_only_csv_yields_columns_without_rows(tmp_path):
    path = _write_csv(tmp_path, "empty_rows.csv", "id,name\n")
    reader = open_reader(path)
    assert reader.columns == ["id", "name"]
    assert list(reader.iter_rows()) == []


def test_empty_csv_is_a_parse_error(tmp_path):
    path = _write_csv(tmp_path, "blank.csv", "")
    with pytest.raises(FileParseError):
        open_reader(path)


def test_reader_is_single_use(tmp_path):
    path = _write_csv(tmp_path, "once.csv", "a\n1\n")
    reader = open_reader(path)
    list(reader.iter_rows())
    with pytest.raises(RuntimeError):
        reader.iter_rows()


def test_read_pushes_rows_and_reports_total(tmp_path):
    path = _write_csv(tmp_path, "push.csv", "a,b\n1,2\n3,4\n5,6\n")
    seen = []
    completed = []

    total = open_reader(path).read(seen.append, on_complete=completed.append)

    assert total == 3
    assert completed == [3]
    assert [row["a"] for row in seen] == ["1", "3", "5"]


def test_read_reports_handler_errors_and_stops(tmp_path):
    path = _write_csv(tmp_path, "stop.csv", "a\n1\n2\n3\n")
    errors = []
    seen = []

    def on_row(row):
        if row["a"] == "2":
            raise ValueError("bad row")
        seen.append(row)

    with pytest.raises(ValueError):
        open_reader(path).read(on_row, on_error=errors.append)

    assert [row["a"] for row in seen] == ["1"]
    assert len(errors) == 1 and isinstance(errors[0], ValueError)


def test_xlsx_cells_are_rendered_as_text(tmp_path):
    path = tmp_path / "members.xlsx"
    pd.DataFrame(
        {
            "Name": ["Grace", "Linus"],
            "Joined": [datetime(2024, 1, 1), datetime(2024, 2, 3)],
            "Active": [True, False],
            "Score": [1.0, 2.5],
        }
    ).to_excel(path, index=False)

    reader = open_reader(path)

    assert isinstance(reader, SpreadsheetReader)
    assert reader.columns == ["name", "joined", "active", "score"]
    assert list(reader.iter_rows()) == [
        {"name": "Grace", "joined": "2024-01-01", "active": "true", "score": "1"},
        {"name": "Linus", "joined": "2024-02-03", "active": "false", "score": "2.5"},
    ]


def test_xlsx_reads_the_requested_sheet(tmp_path):
    path = tmp_path / "book.xlsx"
    with pd.ExcelWriter(path) as writer:
        pd.DataFrame({"first": [1]}).to_excel(writer, sheet_name="Summary", index=False)
        pd.DataFrame({"sku": ["A-1", "B-2"]}).to_excel(writer, sheet_name="Inventory", index=False)

    assert open_reader(path).columns == ["first"]

    reader = open_reader(path, sheet="Inventory")
    assert [row["sku"] for row in reader.iter_rows()] == ["A-1", "B-2"]

    with pytest.raises(FileParseError):
        open_reader(path, sheet="Missing")
