"""
Unit tests for identifier sanitization and quoting.
"""

import re

import pytest

from eform_gateway.errors import InvalidIdentifier
from eform_gateway.identifiers import (
    MAX_IDENTIFIER_LENGTH,
    normalize_identifier,
    quote_identifier,
    quoted_table_name,
    sanitize_identifier,
    sanitize_table_name,
)

SAMPLES = [
    "orders",
    "Orders",
    "Customer Name",
    "qty-2",
    "orders; DROP TABLE users; --",
    'evil"name',
    "  spaced  ",
    "客户名称",
    "___",
    "",
    "Ünïcödé_42",
]


class TestNormalizeIdentifier:
    """Tests for normalize_identifier."""

    def test_lowercases_and_strips(self):
        assert normalize_identifier("Customer Name!") == "customername"

    def test_injection_attempt_is_flattened(self):
        assert normalize_identifier("orders; DROP TABLE users; --") == "ordersdroptableusers"

    def test_keeps_digits_and_underscore(self):
        assert normalize_identifier("line_item_2") == "line_item_2"

    def test_non_string_is_empty(self):
        assert normalize_identifier(None) == ""
        assert normalize_identifier(42) == ""

    @pytest.mark.parametrize("name", SAMPLES)
    def test_idempotent(self, name):
        once = normalize_identifier(name)
        assert normalize_identifier(once) == once

    @pytest.mark.parametrize("name", SAMPLES)
    def test_output_alphabet(self, name):
        assert re.fullmatch(r"[a-z0-9_]*", normalize_identifier(name))


class TestSanitizeIdentifier:
    """Tests for sanitize_identifier."""

    def test_returns_safe_name(self):
        assert sanitize_identifier("Orders") == "orders"

    @pytest.mark.parametrize("name", ["", "!!!", "客户名称", None, "   "])
    def test_rejects_empty_result(self, name):
        with pytest.raises(InvalidIdentifier):
            sanitize_identifier(name)

    def test_error_names_the_kind(self):
        with pytest.raises(InvalidIdentifier, match="table"):
            sanitize_identifier("$$$", "table")

    def test_rejects_overlong_names(self):
        with pytest.raises(InvalidIdentifier):
            sanitize_identifier("a" * (MAX_IDENTIFIER_LENGTH + 1))

    def test_accepts_max_length(self):
        name = "a" * MAX_IDENTIFIER_LENGTH
        assert sanitize_identifier(name) == name

    def test_sanitized_value_is_stable(self):
        once = sanitize_identifier("Line Items (2024)")
        assert sanitize_identifier(once) == once


class TestQuoteIdentifier:
    """Tests for quote_identifier and quoted_table_name."""

    def test_quotes_reserved_word(self):
        assert quote_identifier("order") == '"order"'

    def test_escapes_embedded_quote(self):
        assert quote_identifier('a"b') == '"a""b"'

    def test_quoted_table_name_sanitizes_first(self):
        assert quoted_table_name('Evil"; DROP') == '"evildrop"'


class TestSanitizeTableName:
    """Tests for sanitize_table_name."""

    def test_ordinary_name(self):
        assert sanitize_table_name("Orders") == "orders"

    @pytest.mark.parametrize(
        "name",
        ["dynamic_tables", "dynamic_table_fields", "report_queries", "Report_Queries", " DYNAMIC_TABLES"],
    )
    def test_catalog_tables_rejected(self, name):
        with pytest.raises(InvalidIdentifier, match="reserved"):
            sanitize_table_name(name)

    def test_catalog_tables_rejected_when_quoting(self):
        with pytest.raises(InvalidIdentifier):
            quoted_table_name("dynamic_tables")

    def test_prefix_of_catalog_name_is_allowed(self):
        assert sanitize_table_name("dynamic_tables_archive") == "dynamic_tables_archive"
