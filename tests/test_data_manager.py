"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from billing_ledger import constants, data_manager  # noqa: E402


def _item(item_id: str = "IT1", **overrides) -> data_manager.ItemRow:
    values = {
        "item_id": item_id,
        "item_name": "Widget",
        "unit": "pcs",
        "hsn_code": None,
        "purchase_price": Decimal("40.00"),
        "sale_price": Decimal("55.00"),
        "opening_stock": Decimal("10"),
        "current_stock": Decimal("10"),
        "low_stock_alert": Decimal("5"),
        "is_deleted": False,
    }
    values.update(overrides)
    return data_manager.ItemRow(**values)


def _invoice(invoice_id: str = "IN1", **overrides) -> data_manager.InvoiceRow:
    values = {
        "invoice_id": invoice_id,
        "invoice_type": constants.InvoiceType.SALE.value,
        "invoice_number": "INV-0001",
        "invoice_date": date(2024, 3, 5),
        "due_date": None,
        "party_id": "CUST-1",
        "subtotal": Decimal("100.00"),
        "discount_amount": Decimal("0.00"),
        "tax_amount": Decimal("18.00"),
        "tcs_amount": Decimal("0.00"),
        "total_amount": Decimal("118.00"),
        "paid_amount": Decimal("0.00"),
        "balance_due": Decimal("118.00"),
        "status": constants.InvoiceStatus.UNPAID.value,
        "is_deleted": False,
        "deleted_at": None,
        "notes": None,
    }
    values.update(overrides)
    return data_manager.InvoiceRow(**values)


def _payment(payment_id: str = "PY1", **overrides) -> data_manager.PaymentRow:
    values = {
        "payment_id": payment_id,
        "payment_number": "REC-0001",
        "direction": constants.Direction.IN.value,
        "payment_date": date(2024, 3, 6),
        "party_id": "CUST-1",
        "invoice_id": "IN1",
        "payment_mode": constants.PaymentMode.CASH.value,
        "amount": Decimal("50.00"),
        "notes": None,
        "invoice_applied": False,
        "mirror_transaction_id": None,
        "is_deleted": False,
        "deleted_at": None,
    }
    values.update(overrides)
    return data_manager.PaymentRow(**values)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_cwd(tmp_path, monkeypatch):
    """Auto-discovery should locate config.ini in the working directory tree."""

    config_dir = tmp_path / "nested"
    child_dir = config_dir / "child"
    child_dir.mkdir(parents=True)
    config_file = config_dir / "config.ini"
    config_file.write_text("[System]\nDataFile=ledger_workbook.xlsx")
    monkeypatch.chdir(child_dir)

    result = data_manager.find_config_file()
    assert result == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "BusinessName") == "Test Traders"
    assert parser.get("Stock", "DefaultLowStockAlert") == "10"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True, enable_tcs=True, tcs_percent="0.1", low_stock_alert="3")
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.enable_tcs is True
    assert settings.tcs_percent == Decimal("0.1")
    assert settings.default_low_stock_alert == Decimal("3")


def test_parse_settings_defaults_optional_sections(tmp_path):
    """Tax and stock sections are optional."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=/tmp/ledger.xlsx\nBusinessName=Shop\nSchemaVersion=1.0.0\n")
    settings = data_manager.parse_settings(parser, base_path=tmp_path)
    assert settings.enable_tcs is False
    assert settings.tcs_percent == Decimal("0")
    assert settings.default_low_stock_alert == constants.DEFAULT_LOW_STOCK_ALERT


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_rejects_invalid_decimal(tmp_path):
    """Malformed numeric options should raise ValueError."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=ledger.xlsx\nBusinessName=Shop\nSchemaVersion=1.0.0\n"
        "[Tax]\nTcsPercent=one\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(ledger_workbook_path):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(ledger_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(workbook.sheetnames) == {sheet.value for sheet in constants.SheetName}


def test_open_workbook_missing_file_raises(tmp_path):
    """Missing workbook files should yield FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_with_destination_creates_copy(ledger_workbook_path, tmp_path):
    """Providing a destination should create a new file independent of the source."""

    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_item(workbook, _item("IT9"))
    copy_path = tmp_path / "nested" / "copy.xlsx"
    data_manager.save_workbook(workbook, destination=copy_path)

    copy = openpyxl.load_workbook(copy_path)
    rows = list(copy[data_manager.ITEMS_SHEET].iter_rows(min_row=2, values_only=True))
    assert rows[0][0] == "IT9"
    untouched = data_manager.open_workbook(ledger_workbook_path)
    assert list(data_manager.iter_items(untouched)) == []


def test_refresh_workbook_returns_new_instance(ledger_workbook_path):
    """refresh_workbook should discard unsaved edits."""

    original = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_item(original, _item("IT2"))

    refreshed = data_manager.refresh_workbook(ledger_workbook_path)
    assert refreshed is not original
    assert list(data_manager.iter_items(refreshed)) == []


# ---------------------------------------------------------------------------
# Sheet round trips through a saved file
# ---------------------------------------------------------------------------


def test_items_persist_through_save(ledger_workbook_path):
    """Items written and reloaded keep their values."""

    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_item(workbook, _item("IT1", opening_stock=None))
    data_manager.save_workbook(workbook, ledger_workbook_path)

    rows = list(data_manager.iter_items(data_manager.open_workbook(ledger_workbook_path)))
    assert len(rows) == 1
    assert rows[0].item_id == "IT1"
    assert rows[0].opening_stock is None
    assert rows[0].current_stock == Decimal("10")
    assert rows[0].sale_price == Decimal("55")


def test_invoices_and_lines_persist_dates_as_text(ledger_workbook_path):
    """Dates survive the workbook as ISO strings."""

    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_invoice(workbook, _invoice(due_date=date(2024, 4, 4)))
    data_manager.append_invoice_line(
        workbook,
        data_manager.InvoiceLineRow(
            line_id="IN1-L1",
            invoice_id="IN1",
            invoice_type="sale",
            item_id="IT1",
            quantity=Decimal("2"),
            rate=Decimal("50"),
            discount_amount=Decimal("0"),
            tax_rate=Decimal("18"),
            net_amount=Decimal("100"),
            tax_amount=Decimal("18"),
            line_total=Decimal("118"),
            stock_reversed=False,
            is_deleted=False,
        ),
    )
    data_manager.save_workbook(workbook, ledger_workbook_path)

    reloaded = data_manager.open_workbook(ledger_workbook_path)
    raw = next(reloaded[data_manager.INVOICES_SHEET].iter_rows(min_row=2, values_only=True))
    assert raw[3] == "2024-03-05"
    invoices = list(data_manager.iter_invoices(reloaded))
    assert invoices[0].invoice_date == date(2024, 3, 5)
    assert invoices[0].due_date == date(2024, 4, 4)
    lines = list(data_manager.iter_invoice_lines(reloaded))
    assert lines[0].line_total == Decimal("118")
    assert lines[0].stock_reversed is False


def test_payments_and_cash_bank_rows_round_trip(ledger_workbook_path):
    """Payments and cash/bank movements are readable after append."""

    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_payment(workbook, _payment())
    data_manager.append_cash_bank_transaction(
        workbook,
        data_manager.CashBankTransactionRow(
            transaction_id="MPY1",
            account="cash",
            direction="in",
            amount=Decimal("50.00"),
            transaction_date=date(2024, 3, 6),
            reference_type="payment_in",
            reference_id="PY1",
            description="Payment In REC-0001",
        ),
    )

    payments = list(data_manager.iter_payments(workbook))
    transactions = list(data_manager.iter_cash_bank_transactions(workbook))
    assert payments == [_payment()]
    assert transactions[0].reference_id == "PY1"
    assert transactions[0].transaction_date == date(2024, 3, 6)


# ---------------------------------------------------------------------------
# Updates and lookups
# ---------------------------------------------------------------------------


def test_update_invoice_converts_enums_and_datetimes(ledger_workbook_path):
    """update_invoice writes enum values and ISO timestamps."""

    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_invoice(workbook, _invoice())
    deleted_at = datetime(2024, 3, 7, 9, 30)

    data_manager.update_invoice(
        workbook,
        "IN1",
        field_values={
            "Status": constants.InvoiceStatus.PARTIAL,
            "PaidAmount": Decimal("18.00"),
            "IsDeleted": True,
            "DeletedAt": deleted_at,
        },
    )

    invoice = next(data_manager.iter_invoices(workbook))
    assert invoice.status == "partial"
    assert invoice.paid_amount == Decimal("18.00")
    assert invoice.is_deleted is True
    assert invoice.deleted_at == deleted_at


def test_update_item_missing_raises(ledger_workbook_path):
    """Updating a nonexistent item should surface a KeyError."""

    workbook = data_manager.open_workbook(ledger_workbook_path)
    with pytest.raises(KeyError):
        data_manager.update_item(workbook, "NOPE", field_values={"ItemName": "X"})


def test_update_payment_unknown_field_raises(ledger_workbook_path):
    """Unknown column names are rejected."""

    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_payment(workbook, _payment())
    with pytest.raises(KeyError):
        data_manager.update_payment(workbook, "PY1", field_values={"Colour": "red"})


def test_update_payment_sets_saga_markers(ledger_workbook_path):
    """Saga markers are plain columns on the payment row."""

    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_payment(workbook, _payment())

    data_manager.update_payment(
        workbook,
        "PY1",
        field_values={"InvoiceApplied": True, "MirrorTransactionID": "MPY1"},
    )

    payment = next(data_manager.iter_payments(workbook))
    assert payment.invoice_applied is True
    assert payment.mirror_transaction_id == "MPY1"


def test_locate_row_returns_row_index(ledger_workbook_path):
    """locate_row should return the worksheet index of the matching key."""

    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_item(workbook, _item("IT1"))
    data_manager.append_item(workbook, _item("IT2"))

    assert data_manager.locate_row(workbook, data_manager.ITEMS_SHEET, "ItemID", "IT2") == 3
    assert data_manager.locate_row(workbook, data_manager.ITEMS_SHEET, "ItemID", "NOPE") is None


def test_locate_row_unknown_column_raises(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, data_manager.ITEMS_SHEET, "Nope", "IT1")


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def test_serialize_payment_preserves_order():
    """serialize_payment should follow the Payments column order."""

    record = _payment(deleted_at=datetime(2024, 3, 8, 10, 0))
    assert data_manager.serialize_payment(record) == [
        "PY1",
        "REC-0001",
        "in",
        "2024-03-06",
        "CUST-1",
        "IN1",
        "cash",
        Decimal("50.00"),
        None,
        False,
        None,
        False,
        "2024-03-08T10:00:00",
    ]


def test_deserialize_item_coerces_numbers_and_blanks():
    """Numeric ids become text; blank alerts fall back to the default."""

    record = data_manager.deserialize_item([101, "Bolt", None, None, 1.5, "2.25", "", 7, None, "TRUE"])
    assert record.item_id == "101"
    assert record.purchase_price == Decimal("1.5")
    assert record.opening_stock is None
    assert record.current_stock == Decimal("7")
    assert record.low_stock_alert == constants.DEFAULT_LOW_STOCK_ALERT
    assert record.is_deleted is True


def test_deserialize_invoice_line_pads_short_rows():
    """Rows missing trailing cells read as unset markers."""

    record = data_manager.deserialize_invoice_line(["L1", "IN1", "purchase", "IT1", "3", "10"])
    assert record.quantity == Decimal("3")
    assert record.line_total == Decimal("0")
    assert record.stock_reversed is False
    assert record.is_deleted is False


def test_deserialize_cash_bank_transaction_accepts_datetime_cells():
    """Excel-typed dates are reduced to calendar dates."""

    record = data_manager.deserialize_cash_bank_transaction(
        ["ADJ1", "bank", "out", "12.5", datetime(2024, 5, 1, 0, 0), "balance_adjustment", None, None]
    )
    assert record.transaction_date == date(2024, 5, 1)
    assert record.reference_id is None
