"""Map one raw supplier row onto a normalized product record.

Pure functions only: no I/O, no logging. The streaming parser calls
`normalize_row` for every data line and drops rows that come back as None.
"""
import html
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Union

SUPPORTED_FIELDS = (
    "supplier_reference",
    "product_name",
    "ean",
    "description",
    "purchase_price",
    "stock_quantity",
    "brand",
    "category",
    "currency",
    "supplier_url",
)

_PRICE_CHARS = re.compile(r"[^0-9,.]")
_WHITESPACE = re.compile(r"\s+")
_QUOTES = "\"'"

Row = Union[List[str], Dict[str, Any]]


@dataclass
class SupplierRecord:
    """Normalized supplier row, serialized one per line into checkpoints."""

    supplier_reference: str
    product_name: Optional[str] = None
    ean: Optional[str] = None
    description: Optional[str] = None
    purchase_price: Optional[float] = None
    stock_quantity: Optional[int] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    currency: str = "EUR"
    supplier_url: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def clean_cell(value: Any) -> str:
    """Trim, strip one pair of matching quotes and decode HTML entities."""
    if value is None:
        return ""
    text = str(value).strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in _QUOTES:
        text = text[1:-1].strip()
    return html.unescape(text)


def _resolve_column(key: Any, headers: Optional[List[str]]) -> Optional[int]:
    if isinstance(key, bool):
        return None
    if isinstance(key, int):
        return key
    if isinstance(key, str):
        if key.isdigit():
            return int(key)
        if headers:
            wanted = key.strip().lower()
            for index, header in enumerate(headers):
                if header.strip().lower() == wanted:
                    return index
    return None


def _cell(row: Row, key: Any, headers: Optional[List[str]]) -> str:
    if isinstance(row, dict):
        return clean_cell(row.get(key)) if isinstance(key, str) else ""
    index = _resolve_column(key, headers)
    if index is None or index < 0 or index >= len(row):
        return ""
    return clean_cell(row[index])


def extract_field(row: Row, mapping: Any, headers: Optional[List[str]] = None) -> Optional[str]:
    """
    Read one mapped field from a row.

    A mapping is a column index, a header name (or key name for JSON rows),
    or an object ``{"col": ..., "sub": n, "subDelimiter": ","}`` selecting
    the n-th sub-field inside a cell.

    Returns:
        The cleaned value, or None when the mapping or the cell is empty.
    """
    if mapping is None:
        return None

    if isinstance(mapping, dict):
        if mapping.get("col") is None:
            return None
        value = _cell(row, mapping["col"], headers)
        if mapping.get("sub") is not None:
            parts = [part.strip() for part in value.split(mapping.get("subDelimiter") or ",")]
            sub = int(mapping["sub"])
            value = parts[sub] if 0 <= sub < len(parts) else ""
        return value or None

    return _cell(row, mapping, headers) or None


def parse_price(raw: Optional[str], decimal: Optional[str] = None) -> Optional[float]:
    """
    Parse a supplier price string such as ``"12,50 €"`` or ``"1.234,56"``.

    Everything but digits, commas and dots is dropped. When both separators
    appear the right-most one is the decimal separator; a lone comma is a
    decimal comma. Unparseable values give None instead of raising.
    """
    if raw is None:
        return None
    cleaned = _PRICE_CHARS.sub("", str(raw))
    if not cleaned:
        return None

    if decimal == ".":
        cleaned = cleaned.replace(",", "")
    elif decimal == ",":
        cleaned = cleaned.replace(".", "").replace(",", ".")
    elif "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    else:
        cleaned = cleaned.replace(",", ".")

    try:
        return float(cleaned)
    except ValueError:
        return None


def parse_stock(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(float(str(raw).replace(",", ".").strip()))
    except (ValueError, OverflowError):
        return None


def fallback_reference(name: str) -> str:
    return "AUTO_" + _WHITESPACE.sub("_", name[:20].strip()).upper()


def derive_reference(reference: Optional[str], ean: Optional[str], name: Optional[str]) -> Optional[str]:
    """Explicit reference, else EAN, else a truncated product name."""
    if reference:
        return reference
    if ean:
        return ean
    if name:
        return fallback_reference(name)
    return None


def normalize_row(
    row: Row,
    column_mapping: Dict[str, Any],
    headers: Optional[List[str]] = None,
    default_currency: str = "EUR",
) -> Optional[SupplierRecord]:
    """
    Build a SupplierRecord from a split CSV row or a decoded JSON object.

    Returns None for rows carrying neither a reference, a name nor an EAN.
    """
    values = {
        field: extract_field(row, column_mapping.get(field), headers)
        for field in SUPPORTED_FIELDS
        if field in column_mapping
    }

    name = values.get("product_name")
    ean = values.get("ean")
    reference = derive_reference(values.get("supplier_reference"), ean, name)
    if reference is None:
        return None

    price_mapping = column_mapping.get("purchase_price")
    decimal = price_mapping.get("decimal") if isinstance(price_mapping, dict) else None

    return SupplierRecord(
        supplier_reference=reference,
        product_name=name,
        ean=ean,
        description=values.get("description"),
        purchase_price=parse_price(values.get("purchase_price"), decimal),
        stock_quantity=parse_stock(values.get("stock_quantity")),
        brand=values.get("brand"),
        category=values.get("category"),
        currency=(values.get("currency") or default_currency).upper()[:3],
        supplier_url=values.get("supplier_url"),
    )
