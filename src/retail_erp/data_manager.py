"""Data access layer for the retail ERP.

This module provides low-level helpers that read from and write to the master
workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating or
   deleting individual rows.
"""


from __future__ import annotations

import configparser
import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import DEFAULT_LOG_LEVEL, log
from .constants import PaymentType, SheetName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
EXPENSES_SHEET = SheetName.EXPENSES.value
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value

DEFAULT_CURRENCY_SYMBOL = "₹"
DEFAULT_REORDER_LEVEL = "10"


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    currency_symbol: str = DEFAULT_CURRENCY_SYMBOL
    default_reorder_level: Decimal = Decimal(DEFAULT_REORDER_LEVEL)
    default_payment_type: PaymentType = PaymentType.CASH
    log_level: str = DEFAULT_LOG_LEVEL


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    category: Optional[str]
    unit: str
    quantity: Decimal
    buying_price: Decimal
    selling_price: Decimal
    reorder_level: Decimal


@dataclass(frozen=True)
class PartyRow:
    """In-memory view of a row from the ``Suppliers`` or ``Customers`` sheet.

    The credit columns only exist on the ``Customers`` sheet; supplier rows
    always carry zero for both.
    """

    party_id: str
    name: str
    contact_number: Optional[str]
    address: Optional[str]
    credit_limit: Decimal = Decimal("0")
    outstanding_balance: Decimal = Decimal("0")


@dataclass(frozen=True)
class HeaderRow:
    """In-memory view of a row from the ``Sales`` or ``Purchases`` sheet."""

    transaction_id: str
    number: Optional[str]
    date_iso: str
    party_id: Optional[str]
    payment_type: Optional[str]
    total_amount: Decimal
    external_ref: Optional[str]
    notes: Optional[str]
    request_key: Optional[str]
    created_at_iso: str


@dataclass(frozen=True)
class LineItemRow:
    """In-memory view of a row from the ``SaleItems`` or ``PurchaseItems`` sheet."""

    line_item_id: str
    transaction_id: str
    product_id: str
    quantity: Decimal
    unit_price: Decimal
    total_amount: Decimal


@dataclass(frozen=True)
class ExpenseRow:
    """In-memory view of a row from the ``Expenses`` sheet."""

    expense_id: str
    expense_type: str
    description: str
    amount: Decimal
    expense_date_iso: str
    payment_method: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the working
            directory or any of its parents.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Defaults]`` and ``[Logging]`` entries
    are optional and fall back to the module defaults. Relative ``DataFile`` paths are expanded
    against ``base_path`` (or the current working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a default value cannot be interpreted.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    currency_symbol = parser.get("Defaults", "CurrencySymbol", fallback=DEFAULT_CURRENCY_SYMBOL)
    reorder_raw = parser.get("Defaults", "DefaultReorderLevel", fallback=DEFAULT_REORDER_LEVEL)
    payment_raw = parser.get("Defaults", "PaymentType", fallback=PaymentType.CASH.value)

    try:
        default_reorder_level = Decimal(reorder_raw)
    except ArithmeticError as exc:
        raise ValueError(f"Invalid DefaultReorderLevel: {reorder_raw!r}") from exc
    default_payment_type = PaymentType(payment_raw.strip().lower())
    log_level = parser.get("Logging", "Level", fallback=DEFAULT_LOG_LEVEL).strip().upper()
    if log_level not in logging.getLevelNamesMapping():
        raise ValueError(f"Invalid logging Level: {log_level!r}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        currency_symbol=currency_symbol,
        default_reorder_level=default_reorder_level,
        default_payment_type=default_payment_type,
        log_level=log_level,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    The workbook is serialized next to the destination first and then moved
    into place with :func:`os.replace`, so readers never observe a partially
    written file. Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = dest.with_name(f".{dest.name}.tmp")
    try:
        workbook.save(staging)
        os.replace(staging, dest)
    finally:
        if staging.exists():
            staging.unlink()
    log.debug("Workbook written to '%s'", dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    Args:
        workbook (Workbook): Workbook containing the ``Products`` sheet.

    Yields:
        ProductRow: One structured row for each meaningful record in the sheet.
    """

    for raw in _iter_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_parties(workbook: Workbook, sheet_name: str) -> Iterable[PartyRow]:
    """Iterate over a party worksheet (suppliers or customers)."""

    for raw in _iter_rows(workbook, sheet_name):
        yield deserialize_party(raw)


def iter_headers(workbook: Workbook, sheet_name: str) -> Iterable[HeaderRow]:
    """Stream transaction headers from ``Sales`` or ``Purchases``.

    Args:
        workbook (Workbook): Workbook containing the header sheet.
        sheet_name (str): Name of the header worksheet.

    Yields:
        HeaderRow: Normalized header record for each populated row.
    """

    for raw in _iter_rows(workbook, sheet_name):
        yield deserialize_header(raw)


def iter_line_items(workbook: Workbook, sheet_name: str) -> Iterable[LineItemRow]:
    """Stream line items from ``SaleItems`` or ``PurchaseItems``."""

    for raw in _iter_rows(workbook, sheet_name):
        yield deserialize_line_item(raw)


def iter_expenses(workbook: Workbook) -> Iterable[ExpenseRow]:
    """Stream expense records from the ``Expenses`` worksheet."""

    for raw in _iter_rows(workbook, EXPENSES_SHEET):
        yield deserialize_expense(raw)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_party(workbook: Workbook, sheet_name: str, record: PartyRow) -> None:
    """Append a supplier or customer record to ``sheet_name``."""

    workbook[sheet_name].append(serialize_party(record, include_credit=sheet_name == CUSTOMERS_SHEET))


def append_header(workbook: Workbook, sheet_name: str, record: HeaderRow) -> None:
    """Append a transaction header to ``sheet_name``.

    Numerical fields remain :class:`~decimal.Decimal` instances after
    serialization, allowing Excel to preserve precision when the workbook is
    saved.
    """

    workbook[sheet_name].append(serialize_header(record))


def append_line_item(workbook: Workbook, sheet_name: str, record: LineItemRow) -> None:
    """Append a single line item to ``sheet_name``."""

    workbook[sheet_name].append(serialize_line_item(record))


def append_expense(workbook: Workbook, record: ExpenseRow) -> None:
    """Append an expense record to the ``Expenses`` worksheet."""

    workbook[EXPENSES_SHEET].append(serialize_expense(record))


def _header_map(workbook: Workbook, sheet_name: str) -> dict[Any, int]:
    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def update_row(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    *,
    field_values: dict[str, Any],
) -> None:
    """Update selected columns for the row whose ``key_column`` equals ``key_value``.

    Only the specified fields are modified, leaving other columns untouched.

    Args:
        workbook (Workbook): Workbook containing ``sheet_name``.
        sheet_name (str): Worksheet to modify.
        key_column (str): Header title of the identifier column.
        key_value (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the row or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"Row not found in {sheet_name}: {key_value}")

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    try:
        update_row(workbook, PRODUCTS_SHEET, "ProductID", product_id, field_values=field_values)
    except KeyError as exc:
        if locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id) is None:
            raise KeyError(f"Product not found: {product_id}") from exc
        raise



def update_party(workbook: Workbook, sheet_name: str, party_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing supplier or customer.

    Raises:
        KeyError: If the party or any referenced column cannot be found.
    """

    try:
        update_row(workbook, sheet_name, "PartyID", party_id, field_values=field_values)
    except KeyError as exc:
        if locate_row(workbook, sheet_name, "PartyID", party_id) is None:
            raise KeyError(f"Party not found in {sheet_name}: {party_id}") from exc
        raise


def delete_rows(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> int:
    """Delete every row whose ``key_column`` equals ``key_value``.

    Rows are removed bottom-up so earlier indices stay valid while deleting.

    Returns:
        int: Number of rows removed.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")
    key_col_index = header_map[key_column]

    matches = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[key_col_index - 1] == key_value
    ]
    for row_idx in reversed(matches):
        sheet.delete_rows(row_idx)
    return len(matches)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the ``Products`` column ordering."""

    return [
        record.product_id,
        record.name,
        record.category,
        record.unit,
        record.quantity,
        record.buying_price,
        record.selling_price,
        record.reorder_level,
    ]


def serialize_party(record: PartyRow, *, include_credit: bool = False) -> list[object]:
    """Convert a party dataclass into the party sheet column ordering.

    ``include_credit`` appends ``CreditLimit`` and ``OutstandingBalance`` for
    the ``Customers`` sheet.
    """

    values: list[object] = [record.party_id, record.name, record.contact_number, record.address]
    if include_credit:
        values.extend([record.credit_limit, record.outstanding_balance])
    return values


def serialize_header(record: HeaderRow) -> list[object]:
    """Convert a header dataclass into the header sheet column ordering."""

    return [
        record.transaction_id,
        record.number,
        record.date_iso,
        record.party_id,
        record.payment_type,
        record.total_amount,
        record.external_ref,
        record.notes,
        record.request_key,
        record.created_at_iso,
    ]


def serialize_line_item(record: LineItemRow) -> list[object]:
    """Convert a line item dataclass into the line item sheet column ordering."""

    return [
        record.line_item_id,
        record.transaction_id,
        record.product_id,
        record.quantity,
        record.unit_price,
        record.total_amount,
    ]


def serialize_expense(record: ExpenseRow) -> list[object]:
    """Convert an expense dataclass into the ``Expenses`` column ordering."""

    return [
        record.expense_id,
        record.expense_type,
        record.description,
        record.amount,
        record.expense_date_iso,
        record.payment_method,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Numeric cells become :class:`~decimal.Decimal` instances and id/name
    fields are coerced to ``str`` because Excel may reinterpret numeric-looking
    text.
    """

    (
        product_id,
        name,
        category,
        unit,
        quantity_raw,
        buying_raw,
        selling_raw,
        reorder_raw,
    ) = raw_row[:8]

    return ProductRow(
        product_id=str(product_id),
        name=str(name) if name is not None else "",
        category=_to_optional_str(category),
        unit=str(unit) if unit is not None else "pcs",
        quantity=_to_decimal(quantity_raw),
        buying_price=_to_decimal(buying_raw, "0.00"),
        selling_price=_to_decimal(selling_raw, "0.00"),
        reorder_level=_to_decimal(reorder_raw),
    )


def deserialize_party(raw_row: Sequence[object]) -> PartyRow:
    """Convert a raw worksheet row into a strongly typed party record.

    Rows from the ``Suppliers`` sheet have no credit columns and read as zero.
    """

    party_id, name, contact_number, address = raw_row[:4]
    credit_limit, outstanding = (list(raw_row[4:6]) + [None, None])[:2]
    return PartyRow(
        party_id=str(party_id),
        name=str(name) if name is not None else "",
        contact_number=_to_optional_str(contact_number),
        address=_to_optional_str(address),
        credit_limit=_to_decimal(credit_limit, "0.00"),
        outstanding_balance=_to_decimal(outstanding, "0.00"),
    )


def deserialize_header(raw_row: Sequence[object]) -> HeaderRow:
    """Convert a raw worksheet row into a strongly typed header record.

    Optional text columns remain ``None`` when blank; ``TotalAmount`` becomes a
    :class:`~decimal.Decimal`.
    """

    (
        transaction_id,
        number,
        date_iso,
        party_id,
        payment_type,
        total_raw,
        external_ref,
        notes,
        request_key,
        created_at_iso,
    ) = raw_row[:10]

    return HeaderRow(
        transaction_id=str(transaction_id),
        number=_to_optional_str(number),
        date_iso=str(date_iso) if date_iso is not None else "",
        party_id=_to_optional_str(party_id),
        payment_type=_to_optional_str(payment_type),
        total_amount=_to_decimal(total_raw, "0.00"),
        external_ref=_to_optional_str(external_ref),
        notes=_to_optional_str(notes),
        request_key=_to_optional_str(request_key),
        created_at_iso=str(created_at_iso) if created_at_iso is not None else "",
    )


def deserialize_line_item(raw_row: Sequence[object]) -> LineItemRow:
    """Convert a raw worksheet row into a strongly typed line item record."""

    line_item_id, transaction_id, product_id, quantity_raw, price_raw, total_raw = raw_row[:6]
    return LineItemRow(
        line_item_id=str(line_item_id),
        transaction_id=str(transaction_id),
        product_id=str(product_id),
        quantity=_to_decimal(quantity_raw),
        unit_price=_to_decimal(price_raw, "0.00"),
        total_amount=_to_decimal(total_raw, "0.00"),
    )


def deserialize_expense(raw_row: Sequence[object]) -> ExpenseRow:
    """Convert a raw worksheet row into a strongly typed expense record."""

    expense_id, expense_type, description, amount_raw, expense_date, payment_method = raw_row[:6]
    return ExpenseRow(
        expense_id=str(expense_id),
        expense_type=str(expense_type) if expense_type is not None else "",
        description=str(description) if description is not None else "",
        amount=_to_decimal(amount_raw, "0.00"),
        expense_date_iso=str(expense_date) if expense_date is not None else "",
        payment_method=str(payment_method) if payment_method is not None else "",
    )
