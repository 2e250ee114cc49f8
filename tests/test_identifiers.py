"""Identifier validation and quoting."""

import pytest

from identifiers import (
    column_list,
    quote_identifier,
    quote_table,
    quote_temp_table,
    validate_identifier,
)


@pytest.mark.parametrize("name", ["CUSTTRANS", "_x", "a1_b2", "RECID", "x" * 128])
def test_valid_identifiers_pass_through(name):
    assert validate_identifier(name) == name


@pytest.mark.parametrize("name", [
    "",
    "1TABLE",
    "CUST TRANS",
    "CUSTTRANS]; DROP TABLE x--",
    "dbo.CUSTTRANS",
    "naïve",
    "x" * 129,
])
def test_invalid_identifiers_rejected(name):
    with pytest.raises(ValueError):
        validate_identifier(name)


def test_quote_table():
    assert quote_identifier("CUSTTRANS") == "[CUSTTRANS]"
    assert quote_table("dbo", "CUSTTRANS") == "[dbo].[CUSTTRANS]"


def test_quote_table_rejects_injection_in_schema():
    with pytest.raises(ValueError):
        quote_table("dbo]--", "CUSTTRANS")


def test_quote_temp_table():
    assert quote_temp_table("CUSTTRANS_cleanuptemp1") == "[##CUSTTRANS_cleanuptemp1]"
    with pytest.raises(ValueError):
        quote_temp_table("x" * 115)


def test_column_list():
    assert column_list(("A", "B")) == "[A], [B]"
    with pytest.raises(ValueError):
        column_list(())
