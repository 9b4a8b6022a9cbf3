"""Tests for supplier row field extraction."""
from app.services.field_extractor import (
    clean_cell,
    derive_reference,
    extract_field,
    normalize_row,
    parse_price,
    parse_stock,
)

HEADERS = ["Reference", "Designation", "EAN", "Prix"]


def test_clean_cell_strips_quotes_and_entities():
    assert clean_cell('  "Lampe &amp; abat-jour"  ') == "Lampe & abat-jour"
    assert clean_cell("'x'") == "x"
    assert clean_cell(None) == ""


def test_extract_field_by_index_and_header():
    row = ["REF-1", "Lampe", "3000000000001", "12,50"]
    assert extract_field(row, 0) == "REF-1"
    assert extract_field(row, "1") == "Lampe"
    assert extract_field(row, "ean", HEADERS) == "3000000000001"
    assert extract_field(row, "unknown", HEADERS) is None
    assert extract_field(row, 9) is None
    assert extract_field(row, None) is None


def test_extract_field_sub_column():
    row = ["REF-1", "Lampe|Noir|LED"]
    assert extract_field(row, {"col": 1, "sub": 1, "subDelimiter": "|"}) == "Noir"
    assert extract_field(row, {"col": 1, "sub": 5, "subDelimiter": "|"}) is None
    assert extract_field(row, {"col": None}) is None


def test_extract_field_from_json_row():
    row = {"ref": "A1", "title": " Casque "}
    assert extract_field(row, "title") == "Casque"
    assert extract_field(row, 0) is None


def test_parse_price_formats():
    assert parse_price("12,50 €") == 12.5
    assert parse_price("1.234,56") == 1234.56
    assert parse_price("1,234.56") == 1234.56
    assert parse_price("EUR 8") == 8.0
    assert parse_price("1.234", decimal=",") == 1234.0
    assert parse_price("n/a") is None
    assert parse_price(None) is None


def test_parse_stock():
    assert parse_stock("12") == 12
    assert parse_stock("3,0") == 3
    assert parse_stock("beaucoup") is None
    assert parse_stock("1e999") is None
    assert parse_stock("-inf") is None
    assert parse_stock("nan") is None


def test_derive_reference_fallbacks():
    assert derive_reference("REF-1", "300", "Lampe") == "REF-1"
    assert derive_reference(None, "300", "Lampe") == "300"
    assert derive_reference(None, None, "Lampe de bureau LED pro") == "AUTO_LAMPE_DE_BUREAU_LED"
    assert derive_reference(None, None, None) is None


def test_normalize_row():
    mapping = {"supplier_reference": "reference", "product_name": "designation", "ean": "ean", "purchase_price": "prix"}
    record = normalize_row(["REF-1", "Lampe", "3000000000001", "12,50"], mapping, HEADERS)

    assert record.supplier_reference == "REF-1"
    assert record.product_name == "Lampe"
    assert record.purchase_price == 12.5
    assert record.currency == "EUR"


def test_normalize_row_without_identity_is_dropped():
    mapping = {"supplier_reference": 0, "product_name": 1}
    assert normalize_row(["", ""], mapping) is None


def test_normalize_row_decimal_hint_and_currency():
    mapping = {"product_name": 0, "purchase_price": {"col": 1, "decimal": ","}, "currency": 2}
    record = normalize_row(["Casque", "1.299", "usd"], mapping)

    assert record.supplier_reference == "AUTO_CASQUE"
    assert record.purchase_price == 1299.0
    assert record.currency == "USD"
