"""Business logic layer for the billing ledger.

This module orchestrates the pure engines (:mod:`~billing_ledger.totals`,
:mod:`~billing_ledger.reconciliation`, :mod:`~billing_ledger.valuation` and
:mod:`~billing_ledger.cash_bank`) on top of the Data Access Layer. Every
mutation passes through the validation rules here before anything is written.

Multi-step writes (recording a payment, editing or deleting an invoice) are
sagas of independent writes. Each step leaves a marker on the record it
touched, so a failure part-way through raises :class:`PartialApplicationError`
and a later call can finish the remaining steps without repeating the
completed ones.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Collection, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar

from openpyxl.workbook import Workbook

from . import cash_bank, data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    ZERO,
    Direction,
    InvoiceType,
    LedgerAccount,
    PaymentMode,
)
from .reconciliation import (
    AdjustmentOutcome,
    BalanceAdjustment,
    InvoiceBalance,
    PartyOutstanding,
    apply_payment_amount,
    balance_for,
    invoice_type_for_direction,
    party_outstanding,
    plan_balance_adjustment,
    recompute_invoice_balance,
    reverse_payment_amount,
    revise_payment_amount,
)
from .totals import InvoiceTotals, LineItemInput, LineTotals, TcsConfig, compute_invoice_totals, round_money
from .valuation import (
    OpeningAnchor,
    StockLedgerRow,
    StockMovement,
    StockReportTotals,
    compute_stock_ledger,
    derive_current_stock,
    summarize_stock_report,
)


EnumT = TypeVar("EnumT", bound=Enum)

DOCUMENT_PREFIXES: Dict[str, str] = {
    InvoiceType.SALE.value: "INV",
    InvoiceType.PURCHASE.value: "PUR",
    Direction.IN.value: "REC",
    Direction.OUT.value: "PAY",
}

STEP_RECORD_PAYMENT = "record_payment"
STEP_APPLY_TO_INVOICE = "apply_to_invoice"
STEP_MIRROR_TRANSACTION = "mirror_transaction"
STEP_MARK_INVOICE_DELETED = "mark_invoice_deleted"
STEP_UPDATE_INVOICE_TOTALS = "update_invoice_totals"


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced item, invoice, or payment is unknown or deleted."""


class PartialApplicationError(BusinessRuleViolation):
    """Raised when a multi-step operation stopped after committing some steps.

    Nothing is rolled back. The attributes tell the caller which record is
    affected and which steps still have to run; ``resume_payment`` or a
    repeated ``delete_invoice`` or ``edit_invoice`` call finishes them.
    """

    def __init__(self, record_id: str, completed_steps: Sequence[str], pending_steps: Sequence[str]) -> None:
        self.record_id = record_id
        self.completed_steps = tuple(completed_steps)
        self.pending_steps = tuple(pending_steps)
        super().__init__(
            f"Operation on '{record_id}' partially applied; "
            f"completed: {', '.join(self.completed_steps) or 'none'}; "
            f"pending: {', '.join(self.pending_steps) or 'none'}"
        )


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL.

    ``_workbook_guard`` serializes cache population and payment writes;
    ``_invoice_locks`` hold one lock per invoice id.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _invoice_locks: Dict[str, threading.Lock] = field(default_factory=dict, repr=False, compare=False)
    _locks_guard: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    _workbook_guard: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


@dataclass(frozen=True)
class InvoiceCommand:
    """User intent for saving a new sale or purchase invoice."""

    invoice_type: InvoiceType
    party_id: str
    lines: Sequence[LineItemInput]
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    invoice_number: Optional[str] = None
    invoice_discount: Decimal = ZERO
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class InvoiceEditCommand:
    """Replacement lines and header fields for an existing invoice."""

    lines: Sequence[LineItemInput]
    invoice_discount: Decimal = ZERO
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class PaymentCommand:
    """User intent for recording a payment in or out."""

    direction: Direction
    party_id: str
    amount: Decimal
    payment_mode: PaymentMode
    invoice_id: Optional[str] = None
    payment_date: Optional[date] = None
    payment_number: Optional[str] = None
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class BalanceAdjustmentCommand:
    """User intent for forcing a cash/bank balance to a known figure."""

    account: LedgerAccount
    target_balance: Decimal
    adjustment_date: Optional[date] = None
    description: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentResult:
    """Everything a payment touched."""

    payment: data_manager.PaymentRow
    updated_invoice: Optional[data_manager.InvoiceRow]
    mirrored_transaction: Optional[data_manager.CashBankTransactionRow]


@dataclass(frozen=True)
class AdjustmentResult:
    """Outcome of a balance adjustment; ``transaction`` is ``None`` for a no-op."""

    outcome: AdjustmentOutcome
    plan: BalanceAdjustment
    transaction: Optional[data_manager.CashBankTransactionRow]


@dataclass(frozen=True)
class StockReport:
    """Stock register for one period: a row per item plus column totals."""

    period_start: date
    period_end: date
    rows: Tuple[StockLedgerRow, ...]
    totals: StockReportTotals


@dataclass(frozen=True)
class StockDrift:
    """Comparison between the cached and the derived on-hand quantity."""

    item_id: str
    cached_stock: Decimal
    derived_stock: Decimal
    repaired: bool = False

    @property
    def difference(self) -> Decimal:
        return self.cached_stock - self.derived_stock


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Resolve optional timestamps into consistent, timezone-aware values.

    Args:
        candidate (datetime | None): Caller-provided timestamp, usually sourced
            from a command object.

    Returns:
        datetime: ``candidate`` as-is when provided, otherwise the current UTC
            datetime generated via :func:`datetime.now`.
    """

    return candidate if candidate is not None else datetime.now(UTC)


def _coerce_enum(enum_type: Type[EnumT], value: Any, label: str) -> EnumT:
    try:
        return enum_type(value)
    except ValueError as exc:
        log.error("Unsupported %s provided: %s", label, value)
        raise BusinessRuleViolation(f"Unsupported {label}: {value}") from exc


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    The business logic layer maintains in-memory caches keyed by sheet
    (items, invoices, invoice lines, payments, cash/bank transactions). Buckets
    are simple dictionaries that store precomputed query results so repeated
    reads do not re-scan the workbook.

    Args:
        context (RuntimeContext): Runtime state carrying the shared cache
            dictionary.
        name (str): Logical bucket name to fetch or create.

    Returns:
        dict[str, Any]: Mutable mapping used to cache derived collections.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored so callers can request targeted invalidation
    without checking first.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_items_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the item cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` items, ``active`` (not
            deleted) items, and a ``by_id`` lookup dictionary.
    """

    with context._workbook_guard:
        bucket = _get_cache_bucket(context, "items")
        if "all" not in bucket:
            all_items = list(data_manager.iter_items(context.workbook))
            bucket["all"] = all_items
            bucket["active"] = [item for item in all_items if not item.is_deleted]
            bucket["by_id"] = {item.item_id: item for item in all_items}
            log.debug(
                "Populated items cache with %d entries (%d active)",
                len(all_items),
                len(bucket["active"]),
            )
    return bucket


def _ensure_invoices_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the invoice cache bucket with ``all``, ``active`` and ``by_id``."""

    with context._workbook_guard:
        bucket = _get_cache_bucket(context, "invoices")
        if "all" not in bucket:
            all_invoices = list(data_manager.iter_invoices(context.workbook))
            bucket["all"] = all_invoices
            bucket["active"] = [invoice for invoice in all_invoices if not invoice.is_deleted]
            bucket["by_id"] = {invoice.invoice_id: invoice for invoice in all_invoices}
            log.debug(
                "Populated invoices cache with %d entries (%d active)",
                len(all_invoices),
                len(bucket["active"]),
            )
    return bucket


def _ensure_invoice_lines_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the line item cache, grouped by invoice in ``by_invoice``."""

    with context._workbook_guard:
        bucket = _get_cache_bucket(context, "invoice_lines")
        if "all" not in bucket:
            all_lines = list(data_manager.iter_invoice_lines(context.workbook))
            by_invoice: Dict[str, List[data_manager.InvoiceLineRow]] = defaultdict(list)
            for line in all_lines:
                by_invoice[line.invoice_id].append(line)
            bucket["all"] = all_lines
            bucket["by_invoice"] = dict(by_invoice)
            bucket["by_id"] = {line.line_id: line for line in all_lines}
            log.debug("Populated invoice lines cache with %d entries", len(all_lines))
    return bucket


def _ensure_payments_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the payment cache, grouped by invoice in ``by_invoice``."""

    with context._workbook_guard:
        bucket = _get_cache_bucket(context, "payments")
        if "all" not in bucket:
            all_payments = list(data_manager.iter_payments(context.workbook))
            by_invoice: Dict[str, List[data_manager.PaymentRow]] = defaultdict(list)
            for payment in all_payments:
                if payment.invoice_id is not None:
                    by_invoice[payment.invoice_id].append(payment)
            bucket["all"] = all_payments
            bucket["by_invoice"] = dict(by_invoice)
            bucket["by_id"] = {payment.payment_id: payment for payment in all_payments}
            log.debug("Populated payments cache with %d entries", len(all_payments))
    return bucket


def _ensure_cash_bank_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the cash/bank cache bucket on demand.

    The sheet is append-only, so the bucket stores ``all`` rows and a
    ``by_id`` dictionary for primary key lookups.
    """

    with context._workbook_guard:
        bucket = _get_cache_bucket(context, "cash_bank")
        if "all" not in bucket:
            all_transactions = list(data_manager.iter_cash_bank_transactions(context.workbook))
            bucket["all"] = all_transactions
            bucket["by_id"] = {transaction.transaction_id: transaction for transaction in all_transactions}
            log.debug("Populated cash/bank cache with %d entries", len(all_transactions))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    The helper forms the foundation for all business logic calls by resolving
    ``config.ini``, parsing settings, and opening the Excel workbook that
    stores the ledger. The resulting :class:`RuntimeContext` bundles the
    immutable settings with a mutable workbook handle, an empty cache store
    and an empty per-invoice lock registry.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Args:
        context (RuntimeContext): Runtime context whose settings should be
            reused.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook and
            an empty cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def tcs_config_for(context: RuntimeContext) -> TcsConfig:
    """Build the TCS settings from the runtime configuration."""

    return TcsConfig(enabled=context.settings.enable_tcs, percent=context.settings.tcs_percent)


@contextmanager
def invoice_lock(context: RuntimeContext, invoice_id: str) -> Iterator[None]:
    """Serialize read-modify-write cycles on one invoice within the process."""

    with context._locks_guard:
        lock = context._invoice_locks.get(invoice_id)
        if lock is None:
            lock = threading.Lock()
            context._invoice_locks[invoice_id] = lock
    with lock:
        yield


def list_items(context: RuntimeContext, *, include_deleted: bool = False) -> List[data_manager.ItemRow]:
    """Return cached item rows, soft-deleted ones only on request."""
    cache = _ensure_items_cache(context)
    source = cache["all"] if include_deleted else cache["active"]
    return list(source)


def get_item(context: RuntimeContext, item_id: str, *, include_deleted: bool = False) -> data_manager.ItemRow:
    """Resolve an item record by its identifier.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        item_id (str): Identifier populated in the ``Items`` sheet.
        include_deleted (bool): Accept soft-deleted items.

    Returns:
        data_manager.ItemRow: Matching item dataclass sourced from cache.

    Raises:
        MissingReferenceError: If ``item_id`` is unknown, or soft-deleted while
            ``include_deleted`` is ``False``.
    """
    cache = _ensure_items_cache(context)
    item = cache["by_id"].get(item_id)
    if item is None or (item.is_deleted and not include_deleted):
        log.warning("Item lookup failed for id '%s'", item_id)
        raise MissingReferenceError(f"Unknown item id: {item_id}")
    return item


def list_invoices(
    context: RuntimeContext,
    *,
    invoice_type: Optional[InvoiceType] = None,
    party_id: Optional[str] = None,
    include_deleted: bool = False,
) -> List[data_manager.InvoiceRow]:
    """Return invoices in sheet order, optionally filtered.

    Soft-deleted invoices are hidden unless ``include_deleted`` is ``True``.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        invoice_type (InvoiceType | None): Restrict to sale or purchase
            invoices.
        party_id (str | None): Restrict to one party.
        include_deleted (bool): Also return soft-deleted invoices.

    Returns:
        list[data_manager.InvoiceRow]: Copy of the matching cached invoices.
    """
    cache = _ensure_invoices_cache(context)
    source = cache["all"] if include_deleted else cache["active"]
    result = list(source)
    if invoice_type is not None:
        result = [invoice for invoice in result if invoice.invoice_type == InvoiceType(invoice_type).value]
    if party_id is not None:
        result = [invoice for invoice in result if invoice.party_id == party_id]
    return result


def get_invoice(context: RuntimeContext, invoice_id: str, *, include_deleted: bool = False) -> data_manager.InvoiceRow:
    """Resolve an invoice header by its identifier.

    Raises:
        MissingReferenceError: If ``invoice_id`` is unknown, or soft-deleted
            while ``include_deleted`` is ``False``.
    """
    cache = _ensure_invoices_cache(context)
    invoice = cache["by_id"].get(invoice_id)
    if invoice is None or (invoice.is_deleted and not include_deleted):
        log.warning("Invoice lookup failed for id '%s'", invoice_id)
        raise MissingReferenceError(f"Unknown invoice id: {invoice_id}")
    return invoice


def list_invoice_lines(
    context: RuntimeContext,
    invoice_id: Optional[str] = None,
    *,
    include_deleted: bool = False,
) -> List[data_manager.InvoiceLineRow]:
    """Return line items, for one invoice or for all of them.

    Lines superseded by an invoice edit are hidden unless
    ``include_deleted`` is ``True``. Lines of a soft-deleted invoice are not
    hidden here; callers that need live movements filter by invoice.
    """
    cache = _ensure_invoice_lines_cache(context)
    source = cache["all"] if invoice_id is None else cache["by_invoice"].get(invoice_id, [])
    if include_deleted:
        return list(source)
    return [line for line in source if not line.is_deleted]


def list_payments(
    context: RuntimeContext,
    *,
    invoice_id: Optional[str] = None,
    include_deleted: bool = False,
) -> List[data_manager.PaymentRow]:
    """Return payments in sheet order, optionally only those linked to an invoice."""
    cache = _ensure_payments_cache(context)
    source = cache["all"] if invoice_id is None else cache["by_invoice"].get(invoice_id, [])
    if include_deleted:
        return list(source)
    return [payment for payment in source if not payment.is_deleted]


def get_payment(context: RuntimeContext, payment_id: str, *, include_deleted: bool = False) -> data_manager.PaymentRow:
    """Resolve a payment by its identifier.

    Raises:
        MissingReferenceError: If ``payment_id`` is unknown, or soft-deleted
            while ``include_deleted`` is ``False``.
    """
    cache = _ensure_payments_cache(context)
    payment = cache["by_id"].get(payment_id)
    if payment is None or (payment.is_deleted and not include_deleted):
        log.warning("Payment lookup failed for id '%s'", payment_id)
        raise MissingReferenceError(f"Unknown payment id: {payment_id}")
    return payment


def list_cash_bank_transactions(
    context: RuntimeContext,
    *,
    account: Optional[LedgerAccount] = None,
) -> List[data_manager.CashBankTransactionRow]:
    """Return the cash/bank ledger in sheet order, optionally for one account."""
    transactions = list(_ensure_cash_bank_cache(context)["all"])
    if account is None:
        return transactions
    account_value = LedgerAccount(account).value
    return [transaction for transaction in transactions if transaction.account == account_value]


def generate_transaction_id(*, prefix: str = "T", when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier using UTC timestamps.

    Args:
        prefix (str): Designator prepended to the identifier.
        when (datetime | None): Timestamp used for deterministically producing
            the identifier. When ``None`` the current UTC time is used.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}``.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


def _allocate_id(existing: Collection[str], *, prefix: str, when: datetime) -> str:
    # Bump by a microsecond until free so fixed test clocks still yield unique ids.
    candidate = generate_transaction_id(prefix=prefix, when=when)
    while candidate in existing:
        when = when + timedelta(microseconds=1)
        candidate = generate_transaction_id(prefix=prefix, when=when)
    return candidate


def _next_document_number(existing: Collection[str], prefix: str) -> str:
    sequence = len(existing) + 1
    candidate = f"{prefix}-{sequence:04d}"
    while candidate in existing:
        sequence += 1
        candidate = f"{prefix}-{sequence:04d}"
    return candidate


def require_positive_quantity(quantity: Decimal) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= ZERO:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def require_positive_amount(amount: Decimal) -> None:
    """Validate that a payment amount is strictly positive.

    Raises:
        ValueError: If ``amount`` is zero or negative.
    """
    if amount <= ZERO:
        log.error("Payment amount validation failed: %s", amount)
        raise ValueError("Payment amount must be greater than zero")


def require_party(party_id: Optional[str]) -> str:
    """Return the stripped party id or raise when it is blank."""
    if party_id is None or not str(party_id).strip():
        log.error("Party validation failed: no party supplied")
        raise BusinessRuleViolation("A party is required")
    return str(party_id).strip()


def _run_steps(
    record_id: str,
    steps: Sequence[Tuple[str, Callable[[], None]]],
    *,
    already_completed: Sequence[str] = (),
) -> List[str]:
    """Run saga steps in order, converting a mid-way failure into a partial error.

    ``already_completed`` lists steps committed before this call (for example
    the payment row itself). When nothing has been committed yet the original
    exception propagates unchanged.
    """

    completed: List[str] = list(already_completed)
    for index, (name, step) in enumerate(steps):
        try:
            step()
        except Exception as exc:
            if not completed:
                raise
            pending = [pending_name for pending_name, _ in steps[index:]]
            log.error(
                "Operation on '%s' stopped at step '%s': %s (completed: %s)",
                record_id,
                name,
                exc,
                ", ".join(completed),
            )
            raise PartialApplicationError(record_id, completed, pending) from exc
        completed.append(name)
    return completed


def _adjust_item_stock(context: RuntimeContext, item_id: str, delta: Decimal) -> Decimal:
    """Add ``delta`` to the cached on-hand quantity, clamping at zero."""

    item = get_item(context, item_id, include_deleted=True)
    updated = item.current_stock + delta
    if updated < ZERO:
        log.warning(
            "Stock of item '%s' would drop to %s; clamping at zero",
            item_id,
            updated,
        )
        updated = ZERO
    data_manager.update_item(context.workbook, item_id, field_values={"CurrentStock": updated})
    _invalidate_cache(context, "items")
    log.debug("Adjusted stock of item '%s' by %s to %s", item_id, delta, updated)
    return updated


def _stock_delta(invoice_type: InvoiceType | str, quantity: Decimal) -> Decimal:
    """Signed stock effect of a line: purchases add, sales remove."""

    return quantity if InvoiceType(invoice_type) is InvoiceType.PURCHASE else -quantity


def _validate_lines(
    context: RuntimeContext,
    invoice_type: InvoiceType,
    lines: Sequence[LineItemInput],
    *,
    released: Optional[Mapping[str, Decimal]] = None,
) -> None:
    """Check line items against the item master before any write.

    ``current_stock`` is a cache that may drift, so a sale larger than the
    cached quantity is only logged; the stock update clamps at zero.
    ``released`` holds quantities that an edit is about to hand back to stock.
    """

    if not lines:
        log.error("Invoice validation failed: no line items")
        raise BusinessRuleViolation("An invoice needs at least one line item")

    required: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    for line in lines:
        get_item(context, line.item_id)
        require_positive_quantity(line.quantity)
        required[line.item_id] += line.quantity

    if invoice_type is not InvoiceType.SALE:
        return
    released = released or {}
    for item_id, quantity in required.items():
        item = get_item(context, item_id)
        available = item.current_stock + released.get(item_id, ZERO)
        if quantity > available:
            log.warning(
                "Sale of item '%s' exceeds cached stock: requested %s, available %s; stock will clamp at zero",
                item_id,
                quantity,
                available,
            )


def _append_lines(
    context: RuntimeContext,
    invoice_id: str,
    invoice_type: InvoiceType,
    totals: InvoiceTotals,
    *,
    start_index: int = 1,
) -> List[data_manager.InvoiceLineRow]:
    rows: List[data_manager.InvoiceLineRow] = []
    for offset, line in enumerate(totals.lines):
        row = build_invoice_line(
            line_id=f"{invoice_id}-L{start_index + offset}",
            invoice_id=invoice_id,
            invoice_type=invoice_type,
            line=line,
        )
        data_manager.append_invoice_line(context.workbook, row)
        rows.append(row)
    _invalidate_cache(context, "invoice_lines")
    for row in rows:
        _adjust_item_stock(context, row.item_id, _stock_delta(invoice_type, row.quantity))
    return rows


def add_item(
    context: RuntimeContext,
    *,
    item_name: str,
    purchase_price: Decimal,
    sale_price: Decimal,
    opening_stock: Optional[Decimal] = None,
    unit: Optional[str] = None,
    hsn_code: Optional[str] = None,
    low_stock_alert: Optional[Decimal] = None,
    item_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.ItemRow:
    """Seed an item into the ``Items`` sheet.

    Items are reference data; this helper exists so a fresh workbook can be
    populated. ``current_stock`` starts at the opening stock.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        item_name (str): Display name, required.
        purchase_price (Decimal): Standard cost, used to value opening stock.
        sale_price (Decimal): Default selling rate.
        opening_stock (Decimal | None): Quantity held at the ledger epoch.
            ``None`` records a missing anchor.
        unit (str | None): Unit of measure label.
        hsn_code (str | None): Tax classification code.
        low_stock_alert (Decimal | None): Threshold for the ``low`` status.
            Defaults to the configured ``DefaultLowStockAlert``.
        item_id (str | None): Explicit identifier; generated when omitted.
        timestamp (datetime | None): Clock used for id generation.

    Returns:
        data_manager.ItemRow: Newly appended item.

    Raises:
        BusinessRuleViolation: If the name is blank or the id already exists.
        ValueError: If a price or the opening stock is negative.
    """
    if not item_name or not item_name.strip():
        raise BusinessRuleViolation("Item name is required")
    require_nonnegative_money(purchase_price)
    require_nonnegative_money(sale_price)
    if opening_stock is not None and opening_stock < ZERO:
        log.error("Opening stock validation failed: %s", opening_stock)
        raise ValueError("Opening stock must be zero or positive")

    existing = _ensure_items_cache(context)["by_id"]
    if item_id is None:
        item_id = _allocate_id(existing, prefix="IT", when=_resolve_timestamp(timestamp))
    elif item_id in existing:
        log.error("Duplicate item id '%s'", item_id)
        raise BusinessRuleViolation(f"Item id already exists: {item_id}")

    item = data_manager.ItemRow(
        item_id=item_id,
        item_name=item_name.strip(),
        unit=unit,
        hsn_code=hsn_code,
        purchase_price=purchase_price,
        sale_price=sale_price,
        opening_stock=opening_stock,
        current_stock=opening_stock if opening_stock is not None else ZERO,
        low_stock_alert=low_stock_alert if low_stock_alert is not None else context.settings.default_low_stock_alert,
        is_deleted=False,
    )
    data_manager.append_item(context.workbook, item)
    _invalidate_cache(context, "items")
    log.info("Added item '%s' (%s) with opening stock %s", item.item_id, item.item_name, opening_stock)
    return item


def save_invoice(context: RuntimeContext, command: InvoiceCommand) -> data_manager.InvoiceRow:
    """Validate, total and append a new invoice with its line items.

    The header starts with ``paid_amount`` zero and a status derived from the
    total (a zero-total invoice is ``paid`` straight away). Each line then
    moves stock: sales decrement ``current_stock`` and purchases increment it.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (InvoiceCommand): Structured invoice intent.

    Returns:
        data_manager.InvoiceRow: Newly appended invoice header.

    Raises:
        BusinessRuleViolation: If the party is missing, there are no lines or
            the invoice number is taken.
        MissingReferenceError: If a line references an unknown or deleted item.
        ValueError: When a quantity, rate, tax rate or discount is invalid.
    """
    invoice_type = _coerce_enum(InvoiceType, command.invoice_type, "invoice type")
    party_id = require_party(command.party_id)
    _validate_lines(context, invoice_type, command.lines)
    totals = compute_invoice_totals(command.lines, command.invoice_discount, tcs_config_for(context))

    timestamp = _resolve_timestamp(command.timestamp)
    invoices = _ensure_invoices_cache(context)
    numbers = {invoice.invoice_number for invoice in invoices["all"] if invoice.invoice_type == invoice_type.value}
    if command.invoice_number is not None:
        if command.invoice_number in numbers:
            log.error("Duplicate %s invoice number '%s'", invoice_type.value, command.invoice_number)
            raise BusinessRuleViolation(f"Invoice number already exists: {command.invoice_number}")
        invoice_number = command.invoice_number
    else:
        invoice_number = _next_document_number(numbers, DOCUMENT_PREFIXES[invoice_type.value])

    invoice_id = _allocate_id(invoices["by_id"], prefix="IN", when=timestamp)
    invoice = build_invoice(
        invoice_id=invoice_id,
        invoice_type=invoice_type,
        invoice_number=invoice_number,
        invoice_date=command.invoice_date or timestamp.date(),
        due_date=command.due_date,
        party_id=party_id,
        totals=totals,
        balance=balance_for(totals.total_amount, ZERO),
        notes=command.notes,
    )
    data_manager.append_invoice(context.workbook, invoice)
    _invalidate_cache(context, "invoices")
    _append_lines(context, invoice_id, invoice_type, totals)
    log.info(
        "Saved %s invoice '%s' (%s) for party '%s': %d lines, total=%s",
        invoice_type.value,
        invoice_number,
        invoice_id,
        party_id,
        len(totals.lines),
        totals.total_amount,
    )
    return get_invoice(context, invoice_id)


def edit_invoice(context: RuntimeContext, invoice_id: str, command: InvoiceEditCommand) -> data_manager.InvoiceRow:
    """Replace an invoice's lines and recompute its totals.

    The previous lines are superseded: their stock effect is undone and they
    are flagged ``is_deleted`` (the rows stay in the sheet for history). New
    lines are appended and applied to stock. ``paid_amount`` is preserved and
    the balance and status are recomputed against the new total.

    Steps: ``supersede_line:<id>`` per old line, ``append_line:<id>`` per new
    line, then ``update_invoice_totals``. After a
    :class:`PartialApplicationError`, repeating the same edit supersedes
    whatever lines are live (including any appended by the failed attempt) and
    converges on the requested state.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        invoice_id (str): Invoice to edit.
        command (InvoiceEditCommand): Replacement lines and header fields.

    Returns:
        data_manager.InvoiceRow: The updated invoice header.

    Raises:
        BusinessRuleViolation: If there are no lines.
        MissingReferenceError: If the invoice or an item is unknown or deleted.
        ValueError: When a line or the discount is invalid.
        PartialApplicationError: If a step failed after others committed.
    """
    invoice = get_invoice(context, invoice_id)
    invoice_type = InvoiceType(invoice.invoice_type)
    old_lines = list_invoice_lines(context, invoice_id)

    released: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    if invoice_type is InvoiceType.SALE:
        for line in old_lines:
            if not line.stock_reversed:
                released[line.item_id] += line.quantity
    _validate_lines(context, invoice_type, command.lines, released=released)
    totals = compute_invoice_totals(command.lines, command.invoice_discount, tcs_config_for(context))

    start_index = len(list_invoice_lines(context, invoice_id, include_deleted=True)) + 1
    new_rows = [
        build_invoice_line(
            line_id=f"{invoice_id}-L{start_index + offset}",
            invoice_id=invoice_id,
            invoice_type=invoice_type,
            line=line,
        )
        for offset, line in enumerate(totals.lines)
    ]
    balance = balance_for(totals.total_amount, invoice.paid_amount)

    def supersede_line(line: data_manager.InvoiceLineRow) -> Callable[[], None]:
        def step() -> None:
            if not line.stock_reversed:
                _adjust_item_stock(context, line.item_id, -_stock_delta(invoice_type, line.quantity))
            data_manager.update_invoice_line(
                context.workbook,
                line.line_id,
                field_values={"StockReversed": True, "IsDeleted": True},
            )
            _invalidate_cache(context, "invoice_lines")

        return step

    def append_line(row: data_manager.InvoiceLineRow) -> Callable[[], None]:
        def step() -> None:
            data_manager.append_invoice_line(context.workbook, row)
            _invalidate_cache(context, "invoice_lines")
            _adjust_item_stock(context, row.item_id, _stock_delta(invoice_type, row.quantity))

        return step

    def update_totals() -> None:
        field_values: Dict[str, Any] = {
            "Subtotal": totals.subtotal,
            "DiscountAmount": totals.discount_amount,
            "TaxAmount": totals.tax_amount,
            "TcsAmount": totals.tcs_amount,
            "TotalAmount": totals.total_amount,
            "PaidAmount": balance.paid_amount,
            "BalanceDue": balance.balance_due,
            "Status": balance.status,
        }
        if command.invoice_date is not None:
            field_values["InvoiceDate"] = command.invoice_date
        if command.due_date is not None:
            field_values["DueDate"] = command.due_date
        if command.notes is not None:
            field_values["Notes"] = command.notes
        data_manager.update_invoice(context.workbook, invoice_id, field_values=field_values)
        _invalidate_cache(context, "invoices")

    steps: List[Tuple[str, Callable[[], None]]] = [
        (f"supersede_line:{line.line_id}", supersede_line(line)) for line in old_lines
    ]
    steps.extend((f"append_line:{row.line_id}", append_line(row)) for row in new_rows)
    steps.append((STEP_UPDATE_INVOICE_TOTALS, update_totals))
    with invoice_lock(context, invoice_id):
        _run_steps(invoice_id, steps)
    log.info(
        "Edited invoice '%s': %d lines replaced by %d, total %s -> %s, status %s",
        invoice_id,
        len(old_lines),
        len(totals.lines),
        invoice.total_amount,
        totals.total_amount,
        balance.status.value,
    )
    return get_invoice(context, invoice_id)


def delete_invoice(context: RuntimeContext, invoice_id: str) -> data_manager.InvoiceRow:
    """Soft-delete an invoice after undoing its stock movements.

    Steps: for every live line not yet ``stock_reversed``, restore stock (sale)
    or remove it again (purchase, clamped at zero) and set the marker; then
    flag the invoice ``is_deleted`` with ``deleted_at``. Calling again after a
    :class:`PartialApplicationError` finishes the pending steps; calling on an
    already deleted invoice is a no-op.

    Payments linked to the invoice are left untouched; a warning is logged.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        invoice_id (str): Invoice to delete.

    Returns:
        data_manager.InvoiceRow: The deleted invoice header.

    Raises:
        MissingReferenceError: If the invoice does not exist.
        PartialApplicationError: If a step failed after others committed.
    """
    invoice = get_invoice(context, invoice_id, include_deleted=True)
    if invoice.is_deleted:
        log.info("Invoice '%s' is already deleted", invoice_id)
        return invoice

    linked = list_payments(context, invoice_id=invoice_id)
    if linked:
        log.warning(
            "Deleting invoice '%s' with %d linked payment(s); payments are kept",
            invoice_id,
            len(linked),
        )

    invoice_type = InvoiceType(invoice.invoice_type)
    lines = list_invoice_lines(context, invoice_id)
    done = [f"reverse_stock:{line.line_id}" for line in lines if line.stock_reversed]

    def reverse_line(line: data_manager.InvoiceLineRow) -> Callable[[], None]:
        def step() -> None:
            _adjust_item_stock(context, line.item_id, -_stock_delta(invoice_type, line.quantity))
            data_manager.update_invoice_line(context.workbook, line.line_id, field_values={"StockReversed": True})
            _invalidate_cache(context, "invoice_lines")

        return step

    def mark_deleted() -> None:
        data_manager.update_invoice(
            context.workbook,
            invoice_id,
            field_values={"IsDeleted": True, "DeletedAt": _resolve_timestamp(None)},
        )
        _invalidate_cache(context, "invoices")

    steps: List[Tuple[str, Callable[[], None]]] = [
        (f"reverse_stock:{line.line_id}", reverse_line(line)) for line in lines if not line.stock_reversed
    ]
    steps.append((STEP_MARK_INVOICE_DELETED, mark_deleted))
    _run_steps(invoice_id, steps, already_completed=done)
    log.info("Deleted %s invoice '%s' (%s)", invoice_type.value, invoice.invoice_number, invoice_id)
    return get_invoice(context, invoice_id, include_deleted=True)


def _resolve_payment_invoice(
    context: RuntimeContext,
    invoice_id: str,
    direction: Direction,
    party_id: str,
) -> data_manager.InvoiceRow:
    invoice = get_invoice(context, invoice_id)
    expected_type = invoice_type_for_direction(direction)
    if invoice.invoice_type != expected_type.value:
        log.error(
            "Payment direction '%s' cannot settle %s invoice '%s'",
            direction.value,
            invoice.invoice_type,
            invoice_id,
        )
        raise BusinessRuleViolation(
            f"A payment '{direction.value}' can only settle a {expected_type.value} invoice"
        )
    if invoice.party_id != party_id:
        log.error(
            "Payment party '%s' does not match invoice '%s' party '%s'",
            party_id,
            invoice_id,
            invoice.party_id,
        )
        raise BusinessRuleViolation(f"Invoice {invoice_id} belongs to a different party")
    return invoice


def _write_invoice_balance(context: RuntimeContext, invoice_id: str, balance: InvoiceBalance) -> data_manager.InvoiceRow:
    data_manager.update_invoice(
        context.workbook,
        invoice_id,
        field_values={
            "PaidAmount": balance.paid_amount,
            "BalanceDue": balance.balance_due,
            "Status": balance.status,
        },
    )
    _invalidate_cache(context, "invoices")
    return get_invoice(context, invoice_id, include_deleted=True)


def _complete_payment(context: RuntimeContext, payment_id: str, *, resumed: bool) -> PaymentResult:
    """Run the invoice and mirror steps of a payment that are still pending.

    A fresh payment applies its amount incrementally. A resumed one
    recomputes ``paid_amount`` from every applied payment instead, which gives
    the same answer whether or not the interrupted write had landed.
    """

    payment = get_payment(context, payment_id)
    updated_invoice: List[data_manager.InvoiceRow] = []
    mirrored: List[data_manager.CashBankTransactionRow] = []

    def apply_to_invoice() -> None:
        invoice = get_invoice(context, payment.invoice_id)
        if resumed:
            amounts = [
                other.amount
                for other in list_payments(context, invoice_id=invoice.invoice_id)
                if other.invoice_applied or other.payment_id == payment.payment_id
            ]
            balance = recompute_invoice_balance(invoice.total_amount, amounts)
        else:
            balance = apply_payment_amount(invoice.total_amount, invoice.paid_amount, payment.amount)
        updated_invoice.append(_write_invoice_balance(context, invoice.invoice_id, balance))
        data_manager.update_payment(context.workbook, payment.payment_id, field_values={"InvoiceApplied": True})
        _invalidate_cache(context, "payments")

    def mirror() -> None:
        existing = cash_bank.find_mirror(list_cash_bank_transactions(context), payment.payment_id)
        if existing is None:
            invoice_number = None
            if payment.invoice_id is not None:
                invoice_number = get_invoice(context, payment.invoice_id, include_deleted=True).invoice_number
            transaction = cash_bank.build_mirror_transaction(
                payment,
                transaction_id=cash_bank.mirror_transaction_id(payment.payment_id),
                invoice_number=invoice_number,
            )
            data_manager.append_cash_bank_transaction(context.workbook, transaction)
            _invalidate_cache(context, "cash_bank")
        else:
            log.info("Payment '%s' already mirrored by '%s'", payment.payment_id, existing.transaction_id)
            transaction = existing
        data_manager.update_payment(
            context.workbook,
            payment.payment_id,
            field_values={"MirrorTransactionID": transaction.transaction_id},
        )
        _invalidate_cache(context, "payments")
        mirrored.append(transaction)

    steps: List[Tuple[str, Callable[[], None]]] = []
    done = [STEP_RECORD_PAYMENT]
    if payment.invoice_id is not None:
        if payment.invoice_applied:
            done.append(STEP_APPLY_TO_INVOICE)
        else:
            steps.append((STEP_APPLY_TO_INVOICE, apply_to_invoice))
    if payment.mirror_transaction_id is None:
        steps.append((STEP_MIRROR_TRANSACTION, mirror))
    else:
        done.append(STEP_MIRROR_TRANSACTION)

    lock = invoice_lock(context, payment.invoice_id) if payment.invoice_id is not None else nullcontext()
    with lock, context._workbook_guard:
        _run_steps(payment.payment_id, steps, already_completed=done)

    invoice_row = updated_invoice[0] if updated_invoice else None
    if invoice_row is None and payment.invoice_id is not None:
        invoice_row = get_invoice(context, payment.invoice_id, include_deleted=True)
    mirror_row = mirrored[0] if mirrored else None
    if mirror_row is None and payment.mirror_transaction_id is not None:
        mirror_row = _ensure_cash_bank_cache(context)["by_id"].get(payment.mirror_transaction_id)
    return PaymentResult(
        payment=get_payment(context, payment.payment_id),
        updated_invoice=invoice_row,
        mirrored_transaction=mirror_row,
    )


def record_payment(context: RuntimeContext, command: PaymentCommand) -> PaymentResult:
    """Record a payment, apply it to its invoice and mirror it to cash/bank.

    Steps: validate, resolve the linked invoice, append the payment with
    ``invoice_applied`` unset, apply the amount to the invoice (under the
    invoice's lock) and set ``invoice_applied``, then append the mirrored
    cash/bank transaction and store its id on the payment. Validation and
    reference errors happen before any write, so an unresolved invoice link
    never produces a mirror.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (PaymentCommand): Structured payment intent.

    Returns:
        PaymentResult: The stored payment, the updated invoice (``None`` when
            the payment is not linked) and the mirrored transaction.

    Raises:
        ValueError: If the amount is not positive.
        BusinessRuleViolation: If the party is missing, the mode or direction
            is unsupported, the invoice does not match direction and party,
            or an explicit payment number is already taken.
        MissingReferenceError: If the linked invoice is unknown or deleted.
        PartialApplicationError: If a later step failed after the payment row
            was written; call :func:`resume_payment` to finish it.
    """
    require_positive_amount(command.amount)
    direction = _coerce_enum(Direction, command.direction, "payment direction")
    mode = _coerce_enum(PaymentMode, command.payment_mode, "payment mode")
    party_id = require_party(command.party_id)
    if command.invoice_id is not None:
        _resolve_payment_invoice(context, command.invoice_id, direction, party_id)

    timestamp = _resolve_timestamp(command.timestamp)
    with context._workbook_guard:
        payments = _ensure_payments_cache(context)
        numbers = {payment.payment_number for payment in payments["all"] if payment.direction == direction.value}
        if command.payment_number is not None:
            if command.payment_number in numbers:
                log.error("Duplicate %s payment number '%s'", direction.value, command.payment_number)
                raise BusinessRuleViolation(f"Payment number already exists: {command.payment_number}")
            payment_number = command.payment_number
        else:
            payment_number = _next_document_number(numbers, DOCUMENT_PREFIXES[direction.value])
        payment = data_manager.PaymentRow(
            payment_id=_allocate_id(payments["by_id"], prefix="PY", when=timestamp),
            payment_number=payment_number,
            direction=direction.value,
            payment_date=command.payment_date or timestamp.date(),
            party_id=party_id,
            invoice_id=command.invoice_id,
            payment_mode=mode.value,
            amount=round_money(command.amount),
            notes=command.notes,
            invoice_applied=False,
            mirror_transaction_id=None,
            is_deleted=False,
            deleted_at=None,
        )
        data_manager.append_payment(context.workbook, payment)
        _invalidate_cache(context, "payments")

    result = _complete_payment(context, payment.payment_id, resumed=False)
    log.info(
        "Recorded payment '%s' (%s %s via %s) for party '%s'%s",
        payment.payment_number,
        direction.value,
        payment.amount,
        mode.value,
        party_id,
        f" against invoice '{command.invoice_id}'" if command.invoice_id else "",
    )
    return result


def apply_payment(context: RuntimeContext, command: PaymentCommand) -> PaymentResult:
    """Alias of :func:`record_payment`."""
    return record_payment(context, command)


def resume_payment(context: RuntimeContext, payment_id: str) -> PaymentResult:
    """Finish the pending steps of a partially applied payment.

    Safe to call on a complete payment, in which case nothing is written.

    Raises:
        MissingReferenceError: If the payment or its invoice is unknown or
            deleted.
        PartialApplicationError: If a step fails again.
    """
    payment = get_payment(context, payment_id)
    invoice_pending = payment.invoice_id is not None and not payment.invoice_applied
    if not invoice_pending and payment.mirror_transaction_id is not None:
        log.info("Payment '%s' has no pending steps", payment_id)
    result = _complete_payment(context, payment_id, resumed=True)
    log.info("Resumed payment '%s'", payment_id)
    return result


def edit_payment(context: RuntimeContext, payment_id: str, new_amount: Decimal) -> data_manager.PaymentRow:
    """Change a payment's amount and shift its invoice by the difference.

    The mirrored cash/bank transaction keeps the original amount; a warning
    records the asymmetry.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        payment_id (str): Payment to edit.
        new_amount (Decimal): Replacement amount, strictly positive.

    Returns:
        data_manager.PaymentRow: The updated payment.

    Raises:
        ValueError: If ``new_amount`` is not positive.
        MissingReferenceError: If the payment is unknown or deleted.
        BusinessRuleViolation: If the payment still has pending saga steps.
    """
    require_positive_amount(new_amount)
    new_amount = round_money(new_amount)
    payment = get_payment(context, payment_id)
    if payment.invoice_id is not None and not payment.invoice_applied:
        log.error("Payment '%s' edit refused: invoice step pending", payment_id)
        raise BusinessRuleViolation(f"Payment {payment_id} has pending steps; resume it first")

    if payment.invoice_id is not None:
        with invoice_lock(context, payment.invoice_id):
            invoice = get_invoice(context, payment.invoice_id, include_deleted=True)
            if invoice.is_deleted:
                log.warning("Invoice '%s' of payment '%s' is deleted; not revising it", invoice.invoice_id, payment_id)
            else:
                balance = revise_payment_amount(invoice.total_amount, invoice.paid_amount, payment.amount, new_amount)
                _write_invoice_balance(context, invoice.invoice_id, balance)
            data_manager.update_payment(context.workbook, payment_id, field_values={"Amount": new_amount})
    else:
        data_manager.update_payment(context.workbook, payment_id, field_values={"Amount": new_amount})
    _invalidate_cache(context, "payments")

    if payment.mirror_transaction_id is not None:
        log.warning(
            "Payment '%s' changed from %s to %s; mirrored transaction '%s' keeps the original amount",
            payment_id,
            payment.amount,
            new_amount,
            payment.mirror_transaction_id,
        )
    log.info("Edited payment '%s': %s -> %s", payment_id, payment.amount, new_amount)
    return get_payment(context, payment_id)


def delete_payment(context: RuntimeContext, payment_id: str) -> data_manager.PaymentRow:
    """Soft-delete a payment and remove its contribution from the invoice.

    The mirrored cash/bank transaction is not reversed; a warning records the
    asymmetry.

    Raises:
        MissingReferenceError: If the payment is unknown or already deleted.
    """
    payment = get_payment(context, payment_id)

    def soft_delete() -> None:
        data_manager.update_payment(
            context.workbook,
            payment_id,
            field_values={"IsDeleted": True, "DeletedAt": _resolve_timestamp(None)},
        )
        _invalidate_cache(context, "payments")

    if payment.invoice_id is not None and payment.invoice_applied:
        with invoice_lock(context, payment.invoice_id):
            invoice = get_invoice(context, payment.invoice_id, include_deleted=True)
            if not invoice.is_deleted:
                balance = reverse_payment_amount(invoice.total_amount, invoice.paid_amount, payment.amount)
                _write_invoice_balance(context, invoice.invoice_id, balance)
            soft_delete()
    else:
        soft_delete()

    if payment.mirror_transaction_id is not None:
        log.warning(
            "Payment '%s' deleted; mirrored transaction '%s' is not reversed",
            payment_id,
            payment.mirror_transaction_id,
        )
    log.info("Deleted payment '%s' (%s)", payment.payment_number, payment_id)
    return get_payment(context, payment_id, include_deleted=True)


def reconcile_invoice_balance(context: RuntimeContext, invoice_id: str) -> data_manager.InvoiceRow:
    """Recompute an invoice's paid amount from its applied payments.

    Repairs drift between the stored ``paid_amount`` and the payments that
    point at the invoice. Nothing is written when they already agree.

    Raises:
        MissingReferenceError: If the invoice is unknown or deleted.
    """
    with invoice_lock(context, invoice_id):
        invoice = get_invoice(context, invoice_id)
        amounts = [payment.amount for payment in list_payments(context, invoice_id=invoice_id) if payment.invoice_applied]
        balance = recompute_invoice_balance(invoice.total_amount, amounts)
        if (
            balance.paid_amount == invoice.paid_amount
            and balance.balance_due == invoice.balance_due
            and balance.status.value == invoice.status
        ):
            log.debug("Invoice '%s' balance already consistent", invoice_id)
            return invoice
        log.warning(
            "Invoice '%s' paid amount drifted: stored %s, payments sum to %s",
            invoice_id,
            invoice.paid_amount,
            balance.paid_amount,
        )
        return _write_invoice_balance(context, invoice_id, balance)


def calculate_party_outstanding(context: RuntimeContext, party_id: str) -> PartyOutstanding:
    """Aggregate receivable and payable of a party over its live invoices."""
    outstanding = party_outstanding(list_invoices(context, party_id=party_id), party_id)
    log.debug(
        "Outstanding for party '%s': receivable=%s payable=%s",
        party_id,
        outstanding.receivable,
        outstanding.payable,
    )
    return outstanding


def calculate_account_balance(
    context: RuntimeContext,
    account: LedgerAccount,
    *,
    as_of: Optional[date] = None,
) -> Decimal:
    """Running balance of the cash or bank ledger."""
    account = _coerce_enum(LedgerAccount, account, "ledger account")
    return cash_bank.account_balance(list_cash_bank_transactions(context), account, as_of=as_of)


def record_balance_adjustment(context: RuntimeContext, command: BalanceAdjustmentCommand) -> AdjustmentResult:
    """Post the synthetic transaction that brings an account to a target balance.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (BalanceAdjustmentCommand): Account, target balance and
            optional date and description.

    Returns:
        AdjustmentResult: ``POSTED`` with the appended transaction, or
            ``ALREADY_AT_TARGET`` with no transaction when the balance already
            matches.
    """
    account = _coerce_enum(LedgerAccount, command.account, "ledger account")
    timestamp = _resolve_timestamp(command.timestamp)
    current = calculate_account_balance(context, account)
    plan = plan_balance_adjustment(current, command.target_balance)
    if plan.outcome is AdjustmentOutcome.ALREADY_AT_TARGET:
        log.info("%s balance already at %s; no adjustment posted", account.value.capitalize(), plan.target_balance)
        return AdjustmentResult(outcome=plan.outcome, plan=plan, transaction=None)

    transaction = cash_bank.build_adjustment_transaction(
        transaction_id=_allocate_id(_ensure_cash_bank_cache(context)["by_id"], prefix="ADJ", when=timestamp),
        account=account,
        direction=plan.direction,
        amount=plan.amount,
        transaction_date=command.adjustment_date or timestamp.date(),
        description=command.description,
    )
    data_manager.append_cash_bank_transaction(context.workbook, transaction)
    _invalidate_cache(context, "cash_bank")
    log.info(
        "Posted %s balance adjustment '%s': %s %s (from %s to %s)",
        account.value,
        transaction.transaction_id,
        plan.direction.value,
        plan.amount,
        plan.current_balance,
        plan.target_balance,
    )
    return AdjustmentResult(outcome=plan.outcome, plan=plan, transaction=transaction)


def opening_anchor_for(item: data_manager.ItemRow) -> OpeningAnchor:
    """Valuation anchor of an item: opening stock, standard cost, alert level."""
    return OpeningAnchor(
        quantity=item.opening_stock,
        standard_cost=item.purchase_price,
        low_stock_alert=item.low_stock_alert,
    )


def collect_stock_movements(context: RuntimeContext) -> Tuple[List[StockMovement], List[StockMovement]]:
    """Return the purchase and sale movements of every live invoice line.

    Lines superseded by an edit and lines of deleted invoices are skipped.
    """
    invoices = _ensure_invoices_cache(context)["by_id"]
    purchases: List[StockMovement] = []
    sales: List[StockMovement] = []
    for line in list_invoice_lines(context):
        invoice = invoices.get(line.invoice_id)
        if invoice is None or invoice.is_deleted:
            continue
        movement = StockMovement(
            item_id=line.item_id,
            movement_date=invoice.invoice_date,
            quantity=line.quantity,
            line_total=line.line_total,
        )
        if invoice.invoice_type == InvoiceType.PURCHASE.value:
            purchases.append(movement)
        else:
            sales.append(movement)
    return purchases, sales


def build_stock_report(
    context: RuntimeContext,
    period_start: date,
    period_end: date,
    *,
    opening_costs: Optional[Mapping[str, Decimal]] = None,
) -> StockReport:
    """Value every live item over ``[period_start, period_end]``.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        period_start (date): First day of the period.
        period_end (date): Last day of the period, inclusive.
        opening_costs (Mapping[str, Decimal] | None): Per-item override for
            the unit cost of opening stock; items not listed use their
            purchase price.

    Returns:
        StockReport: One row per item and the summed totals.

    Raises:
        ValueError: If ``period_end`` precedes ``period_start``.
    """
    opening_costs = opening_costs or {}
    purchases, sales = collect_stock_movements(context)
    rows = tuple(
        compute_stock_ledger(
            item.item_id,
            period_start,
            period_end,
            opening_anchor_for(item),
            purchases,
            sales,
            opening_unit_cost=opening_costs.get(item.item_id),
        )
        for item in list_items(context)
    )
    totals = summarize_stock_report(rows)
    log.info(
        "Built stock register for %s..%s: %d items, closing value %s",
        period_start,
        period_end,
        len(rows),
        totals.closing_amount,
    )
    return StockReport(period_start=period_start, period_end=period_end, rows=rows, totals=totals)


def _derive_stock(
    item: data_manager.ItemRow,
    purchases: Sequence[StockMovement],
    sales: Sequence[StockMovement],
) -> Decimal:
    return derive_current_stock(item.item_id, opening_anchor_for(item), purchases, sales, as_of=date.max)


def reconcile_item_stock(context: RuntimeContext, item_id: str) -> StockDrift:
    """Recompute ``current_stock`` from the line history and overwrite the cache.

    Raises:
        MissingReferenceError: If the item is unknown or deleted.
    """
    item = get_item(context, item_id)
    purchases, sales = collect_stock_movements(context)
    derived = _derive_stock(item, purchases, sales)
    if derived == item.current_stock:
        log.debug("Stock of item '%s' consistent at %s", item_id, derived)
        return StockDrift(item_id=item_id, cached_stock=item.current_stock, derived_stock=derived)

    data_manager.update_item(context.workbook, item_id, field_values={"CurrentStock": derived})
    _invalidate_cache(context, "items")
    log.warning(
        "Repaired stock of item '%s': cached %s, derived %s",
        item_id,
        item.current_stock,
        derived,
    )
    return StockDrift(item_id=item_id, cached_stock=item.current_stock, derived_stock=derived, repaired=True)


def detect_stock_drift(context: RuntimeContext) -> List[StockDrift]:
    """List live items whose cached stock differs from the derived quantity."""
    purchases, sales = collect_stock_movements(context)
    drifts: List[StockDrift] = []
    for item in list_items(context):
        derived = _derive_stock(item, purchases, sales)
        if derived != item.current_stock:
            drifts.append(StockDrift(item_id=item.item_id, cached_stock=item.current_stock, derived_stock=derived))
    if drifts:
        log.warning("Detected stock drift on %d item(s)", len(drifts))
    return drifts


def build_invoice(
    *,
    invoice_id: str,
    invoice_type: InvoiceType,
    invoice_number: str,
    invoice_date: date,
    due_date: Optional[date],
    party_id: str,
    totals: InvoiceTotals,
    balance: InvoiceBalance,
    notes: Optional[str],
) -> data_manager.InvoiceRow:
    """Materialize computed totals into a DAL invoice header row."""
    return data_manager.InvoiceRow(
        invoice_id=invoice_id,
        invoice_type=invoice_type.value,
        invoice_number=invoice_number,
        invoice_date=invoice_date,
        due_date=due_date,
        party_id=party_id,
        subtotal=totals.subtotal,
        discount_amount=totals.discount_amount,
        tax_amount=totals.tax_amount,
        tcs_amount=totals.tcs_amount,
        total_amount=totals.total_amount,
        paid_amount=balance.paid_amount,
        balance_due=balance.balance_due,
        status=balance.status.value,
        is_deleted=False,
        deleted_at=None,
        notes=notes,
    )


def build_invoice_line(
    *,
    line_id: str,
    invoice_id: str,
    invoice_type: InvoiceType,
    line: LineTotals,
) -> data_manager.InvoiceLineRow:
    """Materialize a computed :class:`LineTotals` into a DAL line row."""
    return data_manager.InvoiceLineRow(
        line_id=line_id,
        invoice_id=invoice_id,
        invoice_type=invoice_type.value,
        item_id=line.item_id,
        quantity=line.quantity,
        rate=line.rate,
        discount_amount=line.discount_amount,
        tax_rate=line.tax_rate,
        net_amount=line.net_amount,
        tax_amount=line.tax_amount,
        line_total=line.line_total,
        stock_reversed=False,
        is_deleted=False,
    )
