from datetime import date
from decimal import Decimal

import pytest

from services.errors import FileParseError
from services.type_inference import ColumnSchema, ColumnType, coerce_row, coerce_value, infer_column_type, infer_columns


@pytest.mark.parametrize(
    "values, expected",
    [
        (["1", "2", "3"], ColumnType.INTEGER),
        (["-7", "12"], ColumnType.INTEGER),
        (["1.5", "2"], ColumnType.DECIMAL),
        (["-3.25", "10."], ColumnType.DECIMAL),
        (["true", "no"], ColumnType.BOOLEAN),
        (["YES", "False", "1", "0"], ColumnType.BOOLEAN),
        (["2024-01-01", "2023-12-31"], ColumnType.DATE),
        (["01/15/2024", "2/3/24"], ColumnType.DATE),
        (["2024-01-01", "not-a-date"], ColumnType.TEXT),
        (["13/45/2024"], ColumnType.TEXT),
        (["abc", "1"], ColumnType.TEXT),
        (["9223372036854775807", "-9223372036854775808"], ColumnType.INTEGER),
        (["5", "123456789012345678901234"], ColumnType.DECIMAL),
    ],
)
def test_infer_column_type(values, expected):
    assert infer_column_type(values).type == expected


def test_all_empty_column_is_nullable_text():
    inferred = infer_column_type(["", "", ""])
    assert inferred.type == ColumnType.TEXT
    assert inferred.nullable is True


def test_empty_values_only_mark_nullable():
    inferred = infer_column_type(["1", "", "3", None])
    assert inferred.type == ColumnType.INTEGER
    assert inferred.nullable is True

    assert infer_column_type(["1", "2"]).nullable is False


def test_infer_columns_keeps_header_order_and_handles_header_only_files():
    schema = infer_columns(["id", "name", "joined"], [])
    assert [column.name for column in schema] == ["id", "name", "joined"]
    assert all(column.type == ColumnType.TEXT and column.nullable for column in schema)


def test_infer_columns_only_reads_the_sample():
    rows = [{"amount": str(i)} for i in range(10)] + [{"amount": "oops"}]
    assert infer_columns(["amount"], rows, sample_size=10)[0].type == ColumnType.INTEGER
    assert infer_columns(["amount"], rows, sample_size=11)[0].type == ColumnType.TEXT


def test_coerce_value_by_type():
    assert coerce_value("42", ColumnSchema("n", ColumnType.INTEGER)) == 42
    assert coerce_value("4.50", ColumnSchema("d", ColumnType.DECIMAL)) == Decimal("4.50")
    assert coerce_value("Yes", ColumnSchema("b", ColumnType.BOOLEAN)) is True
    assert coerce_value("0", ColumnSchema("b", ColumnType.BOOLEAN)) is False
    assert coerce_value("2024-03-09", ColumnSchema("dt", ColumnType.DATE)) == date(2024, 3, 9)
    assert coerce_value("  hello ", ColumnSchema("t", ColumnType.TEXT)) == "hello"
    assert coerce_value("", ColumnSchema("n", ColumnType.INTEGER)) is None


def test_coerce_value_mismatch_names_row_and_column():
    with pytest.raises(FileParseError) as exc_info:
        coerce_value("abc", ColumnSchema("quantity", ColumnType.INTEGER), row_number=1200)
    assert exc_info.value.details["row"] == 1200
    assert exc_info.value.details["column"] == "quantity"
    assert "1200" in exc_info.value.message


def test_coerce_row_fills_missing_columns_with_null():
    columns = [ColumnSchema("id", ColumnType.INTEGER, False), ColumnSchema("note", ColumnType.TEXT)]
    assert coerce_row({"id": "7"}, columns) == {"id": 7, "note": None}


def test_coerce_integer_outside_bigint_range_is_a_parse_error():
    column = ColumnSchema("account", ColumnType.INTEGER)
    assert coerce_value("-9223372036854775808", column) == -(2**63)

    with pytest.raises(FileParseError) as exc_info:
        coerce_value("9223372036854775808", column, row_number=4)
    assert exc_info.value.retryable is False
    assert exc_info.value.details == {"row": 4, "column": "account", "expected": "integer"}
