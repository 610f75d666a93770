"""Command-line entry points for the billing ledger.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. Keeping the CLI thin lets tests, scripts, or any other front-end reuse
the same parser configuration.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, set_log_level
from .constants import DiscountKind, Direction, InvoiceType, LedgerAccount, PaymentMode
from .totals import LineItemInput
from .valuation import month_period


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def parse_decimal(raw: str) -> Decimal:
    """``argparse`` type converting text into :class:`~decimal.Decimal`."""
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Invalid number: {raw!r}") from exc


def parse_date(raw: str) -> date:
    """``argparse`` type accepting ISO dates (``YYYY-MM-DD``)."""
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date (expected YYYY-MM-DD): {raw!r}") from exc


def parse_line_spec(raw: str) -> LineItemInput:
    """Parse ``ITEM:QTY:RATE[:DISCOUNT[:TAX]]`` into a line item.

    The discount is a percentage unless it ends with ``a`` (for example
    ``25a``), in which case it is an absolute amount.
    """
    parts = raw.split(":")
    if not 3 <= len(parts) <= 5:
        raise argparse.ArgumentTypeError(f"Invalid line (expected ITEM:QTY:RATE[:DISCOUNT[:TAX]]): {raw!r}")
    item_id, quantity, rate = parts[0], parse_decimal(parts[1]), parse_decimal(parts[2])
    discount_raw = parts[3] if len(parts) > 3 and parts[3] else "0"
    kind = DiscountKind.PERCENT
    if discount_raw.lower().endswith("a"):
        kind = DiscountKind.AMOUNT
        discount_raw = discount_raw[:-1]
    tax_rate = parse_decimal(parts[4]) if len(parts) > 4 and parts[4] else Decimal("0")
    return LineItemInput(
        item_id=item_id,
        quantity=quantity,
        rate=rate,
        discount=parse_decimal(discount_raw),
        discount_kind=kind,
        tax_rate=tax_rate,
    )


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-cli",
        description="Command-line tools for the billing ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log cache and step activity at DEBUG level.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as invoices and payments."""
    specs = {
        "add-item": register_add_item_command(subparsers),
        "invoice": register_invoice_command(subparsers),
        "delete-invoice": register_delete_invoice_command(subparsers),
        "pay": register_pay_command(subparsers),
        "edit-payment": register_edit_payment_command(subparsers),
        "delete-payment": register_delete_payment_command(subparsers),
        "resume-payment": register_resume_payment_command(subparsers),
        "adjust-balance": register_adjust_balance_command(subparsers),
        "reconcile-stock": register_reconcile_stock_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock-register": register_stock_register_command(subparsers),
        "outstanding": register_outstanding_command(subparsers),
        "balance": register_balance_command(subparsers),
        "drift": register_drift_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""
    name = "add-item"
    help_text = "Register an item in the Items sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", default=None)
        parser.add_argument("--item-name", required=True)
        parser.add_argument("--purchase-price", type=parse_decimal, required=True)
        parser.add_argument("--sale-price", type=parse_decimal, required=True)
        parser.add_argument("--opening-stock", type=parse_decimal, default=None)
        parser.add_argument("--unit", default=None)
        parser.add_argument("--hsn-code", default=None)
        parser.add_argument("--low-stock-alert", type=parse_decimal, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item)


def register_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoice``."""
    name = "invoice"
    help_text = "Save a sale or purchase invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--type", dest="invoice_type", choices=[member.value for member in InvoiceType], required=True)
        parser.add_argument("--party-id", required=True)
        parser.add_argument(
            "--line",
            dest="lines",
            type=parse_line_spec,
            action="append",
            required=True,
            help="ITEM:QTY:RATE[:DISCOUNT[:TAX]]; repeat for each line.",
        )
        parser.add_argument("--discount", type=parse_decimal, default=Decimal("0"))
        parser.add_argument("--date", dest="invoice_date", type=parse_date, default=None)
        parser.add_argument("--due-date", type=parse_date, default=None)
        parser.add_argument("--number", dest="invoice_number", default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoice)


def register_delete_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-invoice``."""
    name = "delete-invoice"
    help_text = "Soft-delete an invoice and undo its stock movements."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_invoice)


def register_pay_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Record a payment in or out, optionally against an invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--direction", choices=[member.value for member in Direction], required=True)
        parser.add_argument("--party-id", required=True)
        parser.add_argument("--amount", type=parse_decimal, required=True)
        parser.add_argument("--mode", choices=[member.value for member in PaymentMode], required=True)
        parser.add_argument("--invoice-id", default=None)
        parser.add_argument("--date", dest="payment_date", type=parse_date, default=None)
        parser.add_argument("--number", dest="payment_number", default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay)


def register_edit_payment_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-payment``."""
    name = "edit-payment"
    help_text = "Change the amount of a recorded payment."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--payment-id", required=True)
        parser.add_argument("--amount", type=parse_decimal, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_payment)


def register_delete_payment_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-payment``."""
    name = "delete-payment"
    help_text = "Soft-delete a payment and reverse its invoice contribution."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--payment-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_payment)


def register_resume_payment_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``resume-payment``."""
    name = "resume-payment"
    help_text = "Finish the pending steps of a partially applied payment."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--payment-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_resume_payment)


def register_adjust_balance_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust-balance``."""
    name = "adjust-balance"
    help_text = "Post an adjustment bringing a cash/bank balance to a target."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--account", choices=[member.value for member in LedgerAccount], required=True)
        parser.add_argument("--target", type=parse_decimal, required=True)
        parser.add_argument("--date", dest="adjustment_date", type=parse_date, default=None)
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust_balance)


def register_reconcile_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reconcile-stock``."""
    name = "reconcile-stock"
    help_text = "Recompute cached stock from the invoice history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", default=None, help="Reconcile one item; defaults to every drifted item.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reconcile_stock)


def register_stock_register_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock-register``."""
    name = "stock-register"
    help_text = "Display opening, purchase, sale and closing stock for a period."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--month", default=None, help="Calendar month as YYYY-MM.")
        parser.add_argument("--start", type=parse_date, default=None)
        parser.add_argument("--end", type=parse_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_register, mutates=False)


def register_outstanding_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``outstanding``."""
    name = "outstanding"
    help_text = "Display a party's receivable and payable."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--party-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_outstanding, mutates=False)


def register_balance_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``balance``."""
    name = "balance"
    help_text = "Display the running cash or bank balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--account", choices=[member.value for member in LedgerAccount], required=True)
        parser.add_argument("--as-of", type=parse_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_balance, mutates=False)


def register_drift_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``drift``."""
    name = "drift"
    help_text = "List items whose cached stock differs from their history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_drift, mutates=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    if spec.mutates:
        core_logic.ensure_schema_version(context)
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def resolve_period(args: argparse.Namespace) -> tuple[date, date]:
    """Turn ``--month`` or ``--start``/``--end`` into an inclusive period."""
    if args.month:
        try:
            year_text, month_text = args.month.split("-")
            return month_period(int(year_text), int(month_text))
        except ValueError as exc:
            raise ValueError(f"Invalid month (expected YYYY-MM): {args.month}") from exc
    if args.start is None or args.end is None:
        raise ValueError("Provide --month or both --start and --end")
    return args.start, args.end


def translate_add_item(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-item request."""
    return {
        "item_id": args.item_id,
        "item_name": args.item_name,
        "purchase_price": args.purchase_price,
        "sale_price": args.sale_price,
        "opening_stock": args.opening_stock,
        "unit": args.unit,
        "hsn_code": args.hsn_code,
        "low_stock_alert": args.low_stock_alert,
    }


def translate_invoice(args: argparse.Namespace) -> core_logic.InvoiceCommand:
    """Translate CLI args into an invoice command object."""
    return core_logic.InvoiceCommand(
        invoice_type=InvoiceType(args.invoice_type),
        party_id=args.party_id,
        lines=tuple(args.lines),
        invoice_date=args.invoice_date,
        due_date=args.due_date,
        invoice_number=args.invoice_number,
        invoice_discount=args.discount,
        notes=args.notes,
    )


def translate_pay(args: argparse.Namespace) -> core_logic.PaymentCommand:
    """Translate CLI args into a payment command object."""
    return core_logic.PaymentCommand(
        direction=Direction(args.direction),
        party_id=args.party_id,
        amount=args.amount,
        payment_mode=PaymentMode(args.mode),
        invoice_id=args.invoice_id,
        payment_date=args.payment_date,
        payment_number=args.payment_number,
        notes=args.notes,
    )


def translate_adjust_balance(args: argparse.Namespace) -> core_logic.BalanceAdjustmentCommand:
    """Translate CLI args into a balance adjustment command object."""
    return core_logic.BalanceAdjustmentCommand(
        account=LedgerAccount(args.account),
        target_balance=args.target,
        adjustment_date=args.adjustment_date,
        description=args.description,
    )


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-item workflow in the BLL."""
    item = core_logic.add_item(context, **translate_add_item(args))
    print(f"Added item {item.item_id}")
    return 0


def run_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice workflow via the BLL."""
    invoice = core_logic.save_invoice(context, translate_invoice(args))
    print(f"Saved {invoice.invoice_type} invoice {invoice.invoice_number} ({invoice.invoice_id}) total {invoice.total_amount}")
    return 0


def run_delete_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice deletion saga via the BLL."""
    invoice = core_logic.delete_invoice(context, args.invoice_id)
    print(f"Deleted invoice {invoice.invoice_number}")
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment workflow via the BLL."""
    result = core_logic.record_payment(context, translate_pay(args))
    print(f"Recorded payment {result.payment.payment_number} ({result.payment.payment_id})")
    if result.updated_invoice is not None:
        print(
            f"Invoice {result.updated_invoice.invoice_number}: paid {result.updated_invoice.paid_amount}, "
            f"due {result.updated_invoice.balance_due}, status {result.updated_invoice.status}"
        )
    return 0


def run_edit_payment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment edit workflow via the BLL."""
    payment = core_logic.edit_payment(context, args.payment_id, args.amount)
    print(f"Payment {payment.payment_number} amount is now {payment.amount}")
    return 0


def run_delete_payment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment deletion workflow via the BLL."""
    payment = core_logic.delete_payment(context, args.payment_id)
    print(f"Deleted payment {payment.payment_number}")
    return 0


def run_resume_payment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment resume workflow via the BLL."""
    result = core_logic.resume_payment(context, args.payment_id)
    print(f"Payment {result.payment.payment_number} complete")
    return 0


def run_adjust_balance(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the balance adjustment workflow via the BLL."""
    result = core_logic.record_balance_adjustment(context, translate_adjust_balance(args))
    if result.transaction is None:
        print(f"{args.account} balance already at {result.plan.target_balance}")
    else:
        print(f"Posted {result.plan.direction.value} {result.plan.amount} to {args.account}")
    return 0


def run_reconcile_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reconciliation workflow via the BLL."""
    if args.item_id is not None:
        item_ids = [args.item_id]
    else:
        item_ids = [drift.item_id for drift in core_logic.detect_stock_drift(context)]
    for item_id in item_ids:
        drift = core_logic.reconcile_item_stock(context, item_id)
        print(f"{drift.item_id}: cached {drift.cached_stock}, derived {drift.derived_stock}")
    return 0


def run_stock_register(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock register report."""
    period_start, period_end = resolve_period(args)
    report = core_logic.build_stock_report(context, period_start, period_end)
    print(f"Stock register {report.period_start} .. {report.period_end}")
    for row in report.rows:
        flags = f" [{', '.join(flag.value for flag in row.data_quality)}]" if row.data_quality else ""
        print(
            f"{row.item_id}: open {row.opening_qty}@{row.opening_avg_price} "
            f"in {row.purchase_qty}@{row.purchase_avg_price} "
            f"out {row.sale_qty}@{row.sale_avg_price} "
            f"close {row.closing_qty}@{row.closing_avg_price} = {row.closing_amount} "
            f"({row.status.value}){flags}"
        )
    print(f"Closing value: {report.totals.closing_amount}")
    return 0


def run_outstanding(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the party outstanding report."""
    outstanding = core_logic.calculate_party_outstanding(context, args.party_id)
    print(f"{outstanding.party_id}: receivable {outstanding.receivable}, payable {outstanding.payable}")
    return 0


def run_balance(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the account balance report."""
    balance = core_logic.calculate_account_balance(context, LedgerAccount(args.account), as_of=args.as_of)
    print(f"{args.account}: {balance}")
    return 0


def run_drift(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock drift report."""
    for drift in core_logic.detect_stock_drift(context):
        print(f"{drift.item_id}: cached {drift.cached_stock}, derived {drift.derived_stock}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    if getattr(args, "verbose", False):
        set_log_level(logging.DEBUG)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except core_logic.PartialApplicationError as error:
        # Committed steps are saved so resume-payment or a repeated edit or delete can finish them.
        try:
            persist_workbook(context)
        except Exception as persist_error:
            return handle_cli_error(persist_error)
        return handle_cli_error(error)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
