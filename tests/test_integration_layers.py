"""Integration tests walking the CLI, business logic and data layers together.

Each scenario writes a real workbook through ``cli.main`` and reloads it from
disk, so every assertion reflects what was persisted rather than in-memory
state.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from billing_ledger import cli, constants, core_logic, data_manager, setup_excel


def _run(bundle, *argv: str) -> int:
    return cli.main(["--config", str(bundle.config_path), *argv])


def _reload(bundle) -> core_logic.RuntimeContext:
    return core_logic.load_runtime_context(bundle.config_path)


def _add_item(bundle, item_id: str, *, opening: str, cost: str, price: str) -> None:
    exit_code = _run(
        bundle,
        "add-item",
        "--item-id",
        item_id,
        "--item-name",
        f"Item {item_id}",
        "--purchase-price",
        cost,
        "--sale-price",
        price,
        "--opening-stock",
        opening,
    )
    assert exit_code == 0


def test_sale_payment_and_delete_flow(config_factory):
    """Sell, collect part of the money, then delete the invoice."""

    bundle = config_factory()
    _add_item(bundle, "A", opening="10", cost="50", price="100")

    assert _run(bundle, "invoice", "--type", "sale", "--party-id", "CUST-1", "--line", "A:3:100::18", "--date", "2024-03-10") == 0

    context = _reload(bundle)
    (invoice,) = core_logic.list_invoices(context)
    assert invoice.invoice_number == "INV-0001"
    assert invoice.invoice_date == date(2024, 3, 10)
    assert invoice.total_amount == Decimal("354")
    assert invoice.status == constants.InvoiceStatus.UNPAID.value
    assert core_logic.get_item(context, "A").current_stock == Decimal("7")

    assert (
        _run(
            bundle,
            "pay",
            "--direction",
            "in",
            "--party-id",
            "CUST-1",
            "--amount",
            "100",
            "--mode",
            "cash",
            "--invoice-id",
            invoice.invoice_id,
            "--date",
            "2024-03-12",
        )
        == 0
    )

    context = _reload(bundle)
    invoice = core_logic.get_invoice(context, invoice.invoice_id)
    (payment,) = core_logic.list_payments(context)
    assert payment.payment_number == "REC-0001"
    assert payment.invoice_applied is True
    assert payment.mirror_transaction_id == "M" + payment.payment_id
    assert invoice.paid_amount == Decimal("100")
    assert invoice.balance_due == Decimal("254")
    assert invoice.status == constants.InvoiceStatus.PARTIAL.value
    assert core_logic.calculate_account_balance(context, constants.LedgerAccount.CASH) == Decimal("100")

    assert _run(bundle, "delete-invoice", "--invoice-id", invoice.invoice_id) == 0

    context = _reload(bundle)
    assert core_logic.list_invoices(context) == []
    assert core_logic.get_invoice(context, invoice.invoice_id, include_deleted=True).is_deleted is True
    assert core_logic.get_item(context, "A").current_stock == Decimal("10")
    assert all(line.stock_reversed for line in core_logic.list_invoice_lines(context, invoice.invoice_id))
    # The payment and its cash movement outlive the invoice.
    assert len(core_logic.list_payments(context)) == 1
    assert core_logic.calculate_account_balance(context, "cash") == Decimal("100")


def test_purchase_feeds_stock_register(config_factory, capsys):
    """Purchases raise stock and drive the closing valuation."""

    bundle = config_factory()
    _add_item(bundle, "A", opening="10", cost="50", price="80")
    assert _run(bundle, "invoice", "--type", "purchase", "--party-id", "SUP-1", "--line", "A:5:60", "--date", "2024-03-05") == 0
    capsys.readouterr()

    assert _run(bundle, "stock-register", "--month", "2024-03") == 0
    output = capsys.readouterr().out
    assert "Stock register 2024-03-01 .. 2024-03-31" in output

    context = _reload(bundle)
    (invoice,) = core_logic.list_invoices(context)
    assert invoice.invoice_number == "PUR-0001"
    assert core_logic.get_item(context, "A").current_stock == Decimal("15")

    report = core_logic.build_stock_report(context, date(2024, 3, 1), date(2024, 3, 31))
    (row,) = report.rows
    assert row.opening_qty == Decimal("10")
    assert row.purchase_qty == Decimal("5")
    assert row.closing_qty == Decimal("15")
    assert row.closing_avg_price == Decimal("60.00")
    assert row.closing_amount == Decimal("900.00")


def test_balance_adjustment_round_trip(config_factory, capsys):
    """An adjustment lands the bank balance on the requested target."""

    bundle = config_factory()
    assert _run(bundle, "pay", "--direction", "out", "--party-id", "SUP-9", "--amount", "40", "--mode", "upi") == 0
    assert _run(bundle, "adjust-balance", "--account", "bank", "--target", "250", "--description", "Statement") == 0
    capsys.readouterr()

    assert _run(bundle, "balance", "--account", "bank") == 0
    assert "bank: 250" in capsys.readouterr().out

    context = _reload(bundle)
    payment_mirror, adjustment = core_logic.list_cash_bank_transactions(context)
    assert payment_mirror.reference_type == constants.ReferenceType.PAYMENT_OUT.value
    assert adjustment.reference_type == constants.ReferenceType.BALANCE_ADJUSTMENT.value
    assert adjustment.direction == constants.Direction.IN.value
    assert adjustment.amount == Decimal("290")
    assert adjustment.description == "Statement"

    # A second run at the same target changes nothing.
    assert _run(bundle, "adjust-balance", "--account", "bank", "--target", "250") == 0
    assert "already at" in capsys.readouterr().out
    assert len(core_logic.list_cash_bank_transactions(_reload(bundle))) == 2


def test_interrupted_payment_is_saved_and_resumed(config_factory, monkeypatch):
    """Committed steps survive a failed mirror and resume-payment finishes the job."""

    bundle = config_factory()
    _add_item(bundle, "A", opening="10", cost="5", price="10")
    assert _run(bundle, "invoice", "--type", "sale", "--party-id", "CUST-1", "--line", "A:2:10") == 0
    invoice_id = core_logic.list_invoices(_reload(bundle))[0].invoice_id

    def broken_append(*_args, **_kwargs):
        raise OSError("disk full")

    with monkeypatch.context() as patch:
        patch.setattr(data_manager, "append_cash_bank_transaction", broken_append)
        exit_code = _run(
            bundle,
            "pay",
            "--direction",
            "in",
            "--party-id",
            "CUST-1",
            "--amount",
            "20",
            "--mode",
            "bank",
            "--invoice-id",
            invoice_id,
        )
    assert exit_code == 2

    context = _reload(bundle)
    (payment,) = core_logic.list_payments(context)
    assert payment.invoice_applied is True
    assert payment.mirror_transaction_id is None
    assert core_logic.get_invoice(context, invoice_id).status == constants.InvoiceStatus.PAID.value
    assert core_logic.list_cash_bank_transactions(context) == []

    assert _run(bundle, "resume-payment", "--payment-id", payment.payment_id) == 0

    context = _reload(bundle)
    payment = core_logic.get_payment(context, payment.payment_id)
    assert payment.mirror_transaction_id == "M" + payment.payment_id
    assert core_logic.get_invoice(context, invoice_id).paid_amount == Decimal("20")
    assert core_logic.calculate_account_balance(context, "bank") == Decimal("20")


def test_business_rule_failures_leave_workbook_untouched(config_factory):
    """Rejected commands exit with code 2 and write nothing."""

    bundle = config_factory()
    _add_item(bundle, "A", opening="1", cost="5", price="10")

    assert _run(bundle, "invoice", "--type", "sale", "--party-id", "CUST-1", "--line", "A:1:10", "--line", "Z:1:10") == 2
    assert _run(bundle, "delete-payment", "--payment-id", "PY-missing") == 2

    context = _reload(bundle)
    assert core_logic.list_invoices(context, include_deleted=True) == []
    assert core_logic.list_invoice_lines(context, include_deleted=True) == []
    assert core_logic.get_item(context, "A").current_stock == Decimal("1")


def test_oversold_sale_is_saved_with_stock_clamped(config_factory):
    """Selling past the cached quantity succeeds and leaves zero on hand."""

    bundle = config_factory()
    _add_item(bundle, "A", opening="1", cost="5", price="10")

    assert _run(bundle, "invoice", "--type", "sale", "--party-id", "CUST-1", "--line", "A:5:10") == 0

    context = _reload(bundle)
    [invoice] = core_logic.list_invoices(context)
    assert invoice.total_amount == Decimal("50.00")
    assert core_logic.get_item(context, "A").current_stock == Decimal("0")


def test_drift_is_reported_and_repaired(config_factory, capsys):
    """A hand-edited stock figure is detected and recomputed from history."""

    bundle = config_factory()
    _add_item(bundle, "A", opening="10", cost="5", price="10")
    assert _run(bundle, "invoice", "--type", "sale", "--party-id", "CUST-1", "--line", "A:4:10") == 0

    context = _reload(bundle)
    data_manager.update_item(context.workbook, "A", field_values={"CurrentStock": Decimal("1")})
    core_logic.persist_context(context)
    capsys.readouterr()

    assert _run(bundle, "drift") == 0
    assert "A: cached 1, derived 6" in capsys.readouterr().out

    assert _run(bundle, "reconcile-stock") == 0
    assert core_logic.get_item(_reload(bundle), "A").current_stock == Decimal("6")
    assert core_logic.detect_stock_drift(_reload(bundle)) == []


def test_read_commands_do_not_save(config_factory):
    """Reports never rewrite the workbook file."""

    bundle = config_factory()
    _add_item(bundle, "A", opening="3", cost="5", price="10")
    before = bundle.workbook_path.stat().st_mtime_ns

    assert _run(bundle, "outstanding", "--party-id", "CUST-1") == 0
    assert _run(bundle, "balance", "--account", "cash") == 0
    assert _run(bundle, "stock-register", "--start", "2024-01-01", "--end", "2024-01-31") == 0

    assert bundle.workbook_path.stat().st_mtime_ns == before


def test_schema_mismatch_blocks_writes_but_allows_reports(config_factory):
    """A workbook from another schema version is read-only."""

    bundle = config_factory(schema_version="0.9")

    assert _run(bundle, "add-item", "--item-name", "Alpha", "--purchase-price", "1", "--sale-price", "2") == 1
    assert _run(bundle, "balance", "--account", "cash") == 0
    assert core_logic.list_items(_reload(bundle)) == []


def test_missing_config_exits_with_not_found(tmp_path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "drift"]) == 3


# ---------------------------------------------------------------------------
# Workbook bootstrap
# ---------------------------------------------------------------------------


def test_setup_script_creates_workbook_from_config(config_factory):
    """The setup script builds every sheet at the configured path."""

    bundle = config_factory()
    bundle.workbook_path.unlink()

    assert setup_excel.main(["--config", str(bundle.config_path)]) == 0

    workbook = data_manager.open_workbook(bundle.workbook_path)
    assert workbook.sheetnames == [sheet.value for sheet in constants.SheetName]
    assert workbook[constants.SheetName.PAYMENTS.value].cell(row=1, column=1).value == data_manager.PAYMENT_COLUMNS[0]


def test_setup_script_refuses_to_overwrite(config_factory, capsys):
    bundle = config_factory()

    assert setup_excel.main(["--config", str(bundle.config_path)]) == 1
    assert "--force" in capsys.readouterr().out
    assert setup_excel.main(["--config", str(bundle.config_path), "--force"]) == 0


def test_create_ledger_workbook_guards_existing_file(ledger_workbook_path):
    with pytest.raises(FileExistsError):
        setup_excel.create_ledger_workbook(ledger_workbook_path)
