import pytest

from services.errors import InvalidIdentifier
from services.identifiers import normalize_headers, normalize_name, quote_identifier, sanitize_identifier


@pytest.mark.parametrize("name", ["orders", "Orders_2024", "_staging", "a1_b2_c3", "X"])
def test_sanitize_returns_valid_identifiers_unchanged(name):
    assert sanitize_identifier(name) == name
    assert sanitize_identifier(sanitize_identifier(name)) == name


@pytest.mark.parametrize(
    "name",
    ["", "drop table", "orders;--", "orders\n", "a-b", "a.b", 'quote"d', "naïve", "tab\tname", "orders)", None, 42],
)
def test_sanitize_rejects_characters_outside_allow_list(name):
    with pytest.raises(InvalidIdentifier) as exc_info:
        sanitize_identifier(name)
    assert exc_info.value.code == "INVALID_IDENTIFIER"
    assert exc_info.value.retryable is False


def test_quote_identifier_wraps_in_double_quotes():
    assert quote_identifier("sales") == '"sales"'
    with pytest.raises(InvalidIdentifier):
        quote_identifier('sales"; DROP SCHEMA public; --')


def test_normalize_name_folds_free_text():
    assert normalize_name("  Order Date (UTC) ") == "order_date_utc"
    assert normalize_name("Q1--Revenue") == "q1_revenue"
    assert normalize_name("***") == "column"
    assert normalize_name("", "uploaded_table") == "uploaded_table"
    assert len(normalize_name("x" * 200)) == 63


def test_normalize_headers_disambiguates_duplicates():
    headers = ["Email", "email", "E-mail", "", "Email"]
    assert normalize_headers(headers) == ["email", "email_1", "e_mail", "column", "email_2"]
