"""Data access layer for the billing ledger.

This module provides low-level helpers that read from and write to the ledger
workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending or updating
   individual rows.

Dates are persisted as ISO-8601 text so the workbook round-trips without Excel
reinterpreting them; monetary values and quantities are written as
:class:`~decimal.Decimal` and read back through ``Decimal(str(raw))``.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_LOW_STOCK_ALERT, ZERO, SheetName


CONFIG_FILE_NAME = "config.ini"
ITEMS_SHEET = SheetName.ITEMS.value
INVOICES_SHEET = SheetName.INVOICES.value
INVOICE_LINES_SHEET = SheetName.INVOICE_LINES.value
PAYMENTS_SHEET = SheetName.PAYMENTS.value
CASH_BANK_SHEET = SheetName.CASH_BANK.value

ITEM_COLUMNS: tuple[str, ...] = (
    "ItemID",
    "ItemName",
    "Unit",
    "HsnCode",
    "PurchasePrice",
    "SalePrice",
    "OpeningStock",
    "CurrentStock",
    "LowStockAlert",
    "IsDeleted",
)
INVOICE_COLUMNS: tuple[str, ...] = (
    "InvoiceID",
    "InvoiceType",
    "InvoiceNumber",
    "InvoiceDate",
    "DueDate",
    "PartyID",
    "Subtotal",
    "DiscountAmount",
    "TaxAmount",
    "TcsAmount",
    "TotalAmount",
    "PaidAmount",
    "BalanceDue",
    "Status",
    "IsDeleted",
    "DeletedAt",
    "Notes",
)
INVOICE_LINE_COLUMNS: tuple[str, ...] = (
    "LineID",
    "InvoiceID",
    "InvoiceType",
    "ItemID",
    "Quantity",
    "Rate",
    "DiscountAmount",
    "TaxRate",
    "NetAmount",
    "TaxAmount",
    "LineTotal",
    "StockReversed",
    "IsDeleted",
)
PAYMENT_COLUMNS: tuple[str, ...] = (
    "PaymentID",
    "PaymentNumber",
    "Direction",
    "PaymentDate",
    "PartyID",
    "InvoiceID",
    "PaymentMode",
    "Amount",
    "Notes",
    "InvoiceApplied",
    "MirrorTransactionID",
    "IsDeleted",
    "DeletedAt",
)
CASH_BANK_COLUMNS: tuple[str, ...] = (
    "TransactionID",
    "Account",
    "Direction",
    "Amount",
    "TransactionDate",
    "ReferenceType",
    "ReferenceID",
    "Description",
)


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    enable_tcs: bool = False
    tcs_percent: Decimal = ZERO
    default_low_stock_alert: Decimal = DEFAULT_LOW_STOCK_ALERT


@dataclass(frozen=True)
class ItemRow:
    """In-memory view of a row from the ``Items`` sheet."""

    item_id: str
    item_name: str
    unit: Optional[str]
    hsn_code: Optional[str]
    purchase_price: Decimal
    sale_price: Decimal
    opening_stock: Optional[Decimal]
    current_stock: Decimal
    low_stock_alert: Decimal
    is_deleted: bool


@dataclass(frozen=True)
class InvoiceRow:
    """In-memory view of a row from the ``Invoices`` sheet."""

    invoice_id: str
    invoice_type: str
    invoice_number: str
    invoice_date: date
    due_date: Optional[date]
    party_id: str
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    tcs_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    balance_due: Decimal
    status: str
    is_deleted: bool
    deleted_at: Optional[datetime]
    notes: Optional[str]


@dataclass(frozen=True)
class InvoiceLineRow:
    """In-memory view of a row from the ``InvoiceLines`` sheet."""

    line_id: str
    invoice_id: str
    invoice_type: str
    item_id: str
    quantity: Decimal
    rate: Decimal
    discount_amount: Decimal
    tax_rate: Decimal
    net_amount: Decimal
    tax_amount: Decimal
    line_total: Decimal
    stock_reversed: bool
    is_deleted: bool


@dataclass(frozen=True)
class PaymentRow:
    """In-memory view of a row from the ``Payments`` sheet."""

    payment_id: str
    payment_number: str
    direction: str
    payment_date: date
    party_id: str
    invoice_id: Optional[str]
    payment_mode: str
    amount: Decimal
    notes: Optional[str]
    invoice_applied: bool
    mirror_transaction_id: Optional[str]
    is_deleted: bool
    deleted_at: Optional[datetime]


@dataclass(frozen=True)
class CashBankTransactionRow:
    """In-memory view of a row from the ``CashBankTransactions`` sheet."""

    transaction_id: str
    account: str
    direction: str
    amount: Decimal
    transaction_date: date
    reference_type: str
    reference_id: Optional[str]
    description: Optional[str]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
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

    Callers receive the ``ConfigParser`` even if individual sections are
    missing; validation of required entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` entries are mandatory. ``[Tax]`` and ``[Stock]`` are
    optional and fall back to TCS disabled and a low-stock threshold of
    ``DEFAULT_LOW_STOCK_ALERT``. Relative ``DataFile`` paths are expanded
    against ``base_path`` when provided, or against the current working
    directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container with resolved data file
            path, business metadata, schema version, and tax/stock defaults.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If an optional numeric or boolean entry cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    enable_tcs = parser.getboolean("Tax", "EnableTcs", fallback=False)
    tcs_percent = _config_decimal(parser, "Tax", "TcsPercent", ZERO)
    low_stock_alert = _config_decimal(parser, "Stock", "DefaultLowStockAlert", DEFAULT_LOW_STOCK_ALERT)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        enable_tcs=enable_tcs,
        tcs_percent=tcs_percent,
        default_low_stock_alert=low_stock_alert,
    )


def _config_decimal(parser: configparser.ConfigParser, section: str, option: str, default: Decimal) -> Decimal:
    raw = parser.get(section, option, fallback=None)
    if raw is None or not raw.strip():
        return default
    try:
        return Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid decimal for [{section}] {option}: {raw!r}") from exc


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Callers must retain the resolved path and provide it back to
    :func:`save_workbook` when persisting changes.

    Args:
        data_file (Path): Filesystem path to the ledger workbook.

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

    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_items(workbook: Workbook) -> Iterable[ItemRow]:
    """Iterate over item records stored on the ``Items`` worksheet.

    The iterator skips the header row and any fully empty rows. Soft-deleted
    items are yielded too; filtering is the caller's decision.

    Args:
        workbook (Workbook): Workbook containing the ``Items`` sheet.

    Yields:
        ItemRow: One structured row for each meaningful record in the sheet.
    """

    for raw in _iter_sheet(workbook, ITEMS_SHEET):
        yield deserialize_item(raw)


def iter_invoices(workbook: Workbook) -> Iterable[InvoiceRow]:
    """Iterate over the ``Invoices`` worksheet and yield typed headers."""

    for raw in _iter_sheet(workbook, INVOICES_SHEET):
        yield deserialize_invoice(raw)


def iter_invoice_lines(workbook: Workbook) -> Iterable[InvoiceLineRow]:
    """Stream line items from the ``InvoiceLines`` worksheet in sheet order.

    Lines are never physically removed; superseded lines carry
    ``is_deleted`` and lines whose stock effect was undone carry
    ``stock_reversed``.

    Args:
        workbook (Workbook): Workbook containing the line item sheet.

    Yields:
        InvoiceLineRow: Normalized line record for each populated row.
    """

    for raw in _iter_sheet(workbook, INVOICE_LINES_SHEET):
        yield deserialize_invoice_line(raw)


def iter_payments(workbook: Workbook) -> Iterable[PaymentRow]:
    """Iterate over the ``Payments`` worksheet and yield typed records."""

    for raw in _iter_sheet(workbook, PAYMENTS_SHEET):
        yield deserialize_payment(raw)


def iter_cash_bank_transactions(workbook: Workbook) -> Iterable[CashBankTransactionRow]:
    """Stream the append-only ``CashBankTransactions`` worksheet."""

    for raw in _iter_sheet(workbook, CASH_BANK_SHEET):
        yield deserialize_cash_bank_transaction(raw)


def append_item(workbook: Workbook, record: ItemRow) -> None:
    """Append an item record to the ``Items`` worksheet.

    Args:
        workbook (Workbook): Workbook whose items sheet should be modified.
        record (ItemRow): Structured item data ready for persistence.
    """

    workbook[ITEMS_SHEET].append(serialize_item(record))


def append_invoice(workbook: Workbook, record: InvoiceRow) -> None:
    """Append an invoice header to the ``Invoices`` worksheet."""

    workbook[INVOICES_SHEET].append(serialize_invoice(record))


def append_invoice_line(workbook: Workbook, record: InvoiceLineRow) -> None:
    """Append a line item to the ``InvoiceLines`` worksheet."""

    workbook[INVOICE_LINES_SHEET].append(serialize_invoice_line(record))


def append_payment(workbook: Workbook, record: PaymentRow) -> None:
    """Append a payment record to the ``Payments`` worksheet.

    Numerical fields remain :class:`~decimal.Decimal` instances after
    serialization, allowing Excel to preserve precision when the workbook is
    saved.

    Args:
        workbook (Workbook): Workbook containing the payments sheet.
        record (PaymentRow): Payment to persist.
    """

    workbook[PAYMENTS_SHEET].append(serialize_payment(record))


def append_cash_bank_transaction(workbook: Workbook, record: CashBankTransactionRow) -> None:
    """Append a movement to the ``CashBankTransactions`` worksheet."""

    workbook[CASH_BANK_SHEET].append(serialize_cash_bank_transaction(record))


def _update_row(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    field_values: dict[str, Any],
    *,
    label: str,
) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{label.capitalize()} not found: {key_value}")

    sheet = workbook[sheet_name]
    headers = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(headers)}

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {label} field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=to_cell_value(value))
    log.debug("Updated %s '%s' fields: %s", label, key_value, ", ".join(field_values))


def update_item(workbook: Workbook, item_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing item.

    The function locates the row whose ``ItemID`` matches ``item_id``,
    validates that each requested field exists in the header row, and then
    writes the provided values into the corresponding cells. Only the
    specified fields are modified, leaving other columns untouched.

    Args:
        workbook (Workbook): Workbook containing the items sheet.
        item_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values. Enums, dates and datetimes are converted to their
            persisted text form.

    Raises:
        KeyError: If the item or any referenced column cannot be found.
    """

    _update_row(workbook, ITEMS_SHEET, "ItemID", item_id, field_values, label="item")


def update_invoice(workbook: Workbook, invoice_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns of the invoice identified by ``invoice_id``.

    Raises:
        KeyError: If the invoice or any referenced column is missing.
    """

    _update_row(workbook, INVOICES_SHEET, "InvoiceID", invoice_id, field_values, label="invoice")


def update_invoice_line(workbook: Workbook, line_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns of the line identified by ``line_id``.

    Raises:
        KeyError: If the line or any referenced column is missing.
    """

    _update_row(workbook, INVOICE_LINES_SHEET, "LineID", line_id, field_values, label="invoice line")


def update_payment(workbook: Workbook, payment_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns of the payment identified by ``payment_id``.

    Raises:
        KeyError: If the payment or any referenced column is missing.
    """

    _update_row(workbook, PAYMENTS_SHEET, "PaymentID", payment_id, field_values, label="payment")


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    The function constructs a mapping from header titles to column indices,
    verifies that ``key_column`` exists, and scans the worksheet for the first
    row whose value equals ``key_value``. The header row itself is not
    considered during matching.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def to_cell_value(value: Any) -> Any:
    """Convert a Python value into what the workbook stores for it."""

    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def serialize_item(record: ItemRow) -> list[object]:
    """Convert an item dataclass into the ``Items`` column ordering.

    Args:
        record (ItemRow): Structured item data to transform.

    Returns:
        list[object]: Values arranged as :data:`ITEM_COLUMNS`.
    """

    return [
        record.item_id,
        record.item_name,
        record.unit,
        record.hsn_code,
        record.purchase_price,
        record.sale_price,
        record.opening_stock,
        record.current_stock,
        record.low_stock_alert,
        record.is_deleted,
    ]


def serialize_invoice(record: InvoiceRow) -> list[object]:
    """Convert an invoice header into the ``Invoices`` column ordering."""

    return [
        record.invoice_id,
        record.invoice_type,
        record.invoice_number,
        to_cell_value(record.invoice_date),
        to_cell_value(record.due_date),
        record.party_id,
        record.subtotal,
        record.discount_amount,
        record.tax_amount,
        record.tcs_amount,
        record.total_amount,
        record.paid_amount,
        record.balance_due,
        record.status,
        record.is_deleted,
        to_cell_value(record.deleted_at),
        record.notes,
    ]


def serialize_invoice_line(record: InvoiceLineRow) -> list[object]:
    """Convert a line item into the ``InvoiceLines`` column ordering."""

    return [
        record.line_id,
        record.invoice_id,
        record.invoice_type,
        record.item_id,
        record.quantity,
        record.rate,
        record.discount_amount,
        record.tax_rate,
        record.net_amount,
        record.tax_amount,
        record.line_total,
        record.stock_reversed,
        record.is_deleted,
    ]


def serialize_payment(record: PaymentRow) -> list[object]:
    """Convert a payment into the ``Payments`` column ordering."""

    return [
        record.payment_id,
        record.payment_number,
        record.direction,
        to_cell_value(record.payment_date),
        record.party_id,
        record.invoice_id,
        record.payment_mode,
        record.amount,
        record.notes,
        record.invoice_applied,
        record.mirror_transaction_id,
        record.is_deleted,
        to_cell_value(record.deleted_at),
    ]


def serialize_cash_bank_transaction(record: CashBankTransactionRow) -> list[object]:
    """Convert a cash/bank movement into the worksheet column ordering."""

    return [
        record.transaction_id,
        record.account,
        record.direction,
        record.amount,
        to_cell_value(record.transaction_date),
        record.reference_type,
        record.reference_id,
        record.description,
    ]


def _cells(raw_row: Sequence[object], width: int) -> tuple[object, ...]:
    values = tuple(raw_row)[:width]
    return values + (None,) * (width - len(values))


def _decimal(raw: object, default: Decimal = ZERO) -> Decimal:
    return Decimal(str(raw)) if raw is not None else default


def _optional_decimal(raw: object) -> Optional[Decimal]:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    return Decimal(str(raw))


def _optional_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def _flag(raw: object) -> bool:
    # Excel edits may turn booleans into text.
    if isinstance(raw, str):
        return raw.strip().lower() in {"true", "1", "yes"}
    return bool(raw)


def _date(raw: object) -> Optional[date]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw)[:10])


def _datetime(raw: object) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


def deserialize_item(raw_row: Sequence[object]) -> ItemRow:
    """Convert a raw worksheet row into a strongly typed item record.

    The converter normalizes numeric values into :class:`~decimal.Decimal`
    instances and coerces id/name fields to ``str`` to avoid surprises caused
    by Excel automatically interpreting numbers. A blank ``OpeningStock`` stays
    ``None`` so valuation can flag the missing anchor; a blank
    ``LowStockAlert`` falls back to ``DEFAULT_LOW_STOCK_ALERT``.

    Args:
        raw_row (Sequence[object]): Raw cell values from the worksheet row.

    Returns:
        ItemRow: Dataclass containing consistent Python representations of the
            row contents.
    """

    (
        item_id,
        item_name,
        unit,
        hsn_code,
        purchase_raw,
        sale_raw,
        opening_raw,
        current_raw,
        alert_raw,
        is_deleted,
    ) = _cells(raw_row, len(ITEM_COLUMNS))

    return ItemRow(
        item_id=str(item_id),
        item_name=str(item_name) if item_name is not None else "",
        unit=_optional_text(unit),
        hsn_code=_optional_text(hsn_code),
        purchase_price=_decimal(purchase_raw),
        sale_price=_decimal(sale_raw),
        opening_stock=_optional_decimal(opening_raw),
        current_stock=_decimal(current_raw),
        low_stock_alert=_decimal(alert_raw, DEFAULT_LOW_STOCK_ALERT),
        is_deleted=_flag(is_deleted),
    )


def deserialize_invoice(raw_row: Sequence[object]) -> InvoiceRow:
    """Convert a raw worksheet row into a strongly typed invoice header.

    Decimal-compatible columns become :class:`~decimal.Decimal`, ISO text
    columns become ``date``/``datetime`` values, and optional text columns
    remain ``None`` when the sheet leaves them blank.

    Args:
        raw_row (Sequence[object]): Raw cell values in worksheet order.

    Returns:
        InvoiceRow: Dataclass reflecting the row contents.
    """

    (
        invoice_id,
        invoice_type,
        invoice_number,
        invoice_date,
        due_date,
        party_id,
        subtotal,
        discount_amount,
        tax_amount,
        tcs_amount,
        total_amount,
        paid_amount,
        balance_due,
        status,
        is_deleted,
        deleted_at,
        notes,
    ) = _cells(raw_row, len(INVOICE_COLUMNS))

    return InvoiceRow(
        invoice_id=str(invoice_id),
        invoice_type=str(invoice_type) if invoice_type is not None else "",
        invoice_number=str(invoice_number) if invoice_number is not None else "",
        invoice_date=_date(invoice_date),
        due_date=_date(due_date),
        party_id=str(party_id) if party_id is not None else "",
        subtotal=_decimal(subtotal),
        discount_amount=_decimal(discount_amount),
        tax_amount=_decimal(tax_amount),
        tcs_amount=_decimal(tcs_amount),
        total_amount=_decimal(total_amount),
        paid_amount=_decimal(paid_amount),
        balance_due=_decimal(balance_due),
        status=str(status) if status is not None else "",
        is_deleted=_flag(is_deleted),
        deleted_at=_datetime(deleted_at),
        notes=_optional_text(notes),
    )


def deserialize_invoice_line(raw_row: Sequence[object]) -> InvoiceLineRow:
    """Convert a raw worksheet row into a typed invoice line."""

    (
        line_id,
        invoice_id,
        invoice_type,
        item_id,
        quantity,
        rate,
        discount_amount,
        tax_rate,
        net_amount,
        tax_amount,
        line_total,
        stock_reversed,
        is_deleted,
    ) = _cells(raw_row, len(INVOICE_LINE_COLUMNS))

    return InvoiceLineRow(
        line_id=str(line_id),
        invoice_id=str(invoice_id),
        invoice_type=str(invoice_type) if invoice_type is not None else "",
        item_id=str(item_id),
        quantity=_decimal(quantity),
        rate=_decimal(rate),
        discount_amount=_decimal(discount_amount),
        tax_rate=_decimal(tax_rate),
        net_amount=_decimal(net_amount),
        tax_amount=_decimal(tax_amount),
        line_total=_decimal(line_total),
        stock_reversed=_flag(stock_reversed),
        is_deleted=_flag(is_deleted),
    )


def deserialize_payment(raw_row: Sequence[object]) -> PaymentRow:
    """Convert a raw worksheet row into a typed payment, saga markers included."""

    (
        payment_id,
        payment_number,
        direction,
        payment_date,
        party_id,
        invoice_id,
        payment_mode,
        amount,
        notes,
        invoice_applied,
        mirror_transaction_id,
        is_deleted,
        deleted_at,
    ) = _cells(raw_row, len(PAYMENT_COLUMNS))

    return PaymentRow(
        payment_id=str(payment_id),
        payment_number=str(payment_number) if payment_number is not None else "",
        direction=str(direction) if direction is not None else "",
        payment_date=_date(payment_date),
        party_id=str(party_id) if party_id is not None else "",
        invoice_id=_optional_text(invoice_id),
        payment_mode=str(payment_mode) if payment_mode is not None else "",
        amount=_decimal(amount),
        notes=_optional_text(notes),
        invoice_applied=_flag(invoice_applied),
        mirror_transaction_id=_optional_text(mirror_transaction_id),
        is_deleted=_flag(is_deleted),
        deleted_at=_datetime(deleted_at),
    )


def deserialize_cash_bank_transaction(raw_row: Sequence[object]) -> CashBankTransactionRow:
    """Convert a raw worksheet row into a typed cash/bank movement."""

    (
        transaction_id,
        account,
        direction,
        amount,
        transaction_date,
        reference_type,
        reference_id,
        description,
    ) = _cells(raw_row, len(CASH_BANK_COLUMNS))

    return CashBankTransactionRow(
        transaction_id=str(transaction_id),
        account=str(account) if account is not None else "",
        direction=str(direction) if direction is not None else "",
        amount=_decimal(amount),
        transaction_date=_date(transaction_date),
        reference_type=str(reference_type) if reference_type is not None else "",
        reference_id=_optional_text(reference_id),
        description=_optional_text(description),
    )
