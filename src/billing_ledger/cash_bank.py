"""Cash/bank mirror.

Every payment produces exactly one movement in the cash or bank ledger. The
helpers here decide which ledger, build the mirrored row and compute running
balances; appending the row is left to :mod:`billing_ledger.core_logic`.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from . import log
from .constants import ZERO, Direction, LedgerAccount, PaymentMode, ReferenceType
from .data_manager import CashBankTransactionRow, PaymentRow


MIRROR_ID_PREFIX = "M"

_DIRECTION_LABELS = {
    Direction.IN: "Payment In",
    Direction.OUT: "Payment Out",
}


def account_for_mode(mode: PaymentMode | str) -> LedgerAccount:
    """Route a payment mode to its ledger: cash stays cash, the rest is bank.

    Raises:
        ValueError: If ``mode`` is not a known payment mode.
    """

    mode = PaymentMode(mode)
    if mode is PaymentMode.CASH:
        return LedgerAccount.CASH
    return LedgerAccount.BANK


def reference_type_for(direction: Direction | str) -> ReferenceType:
    """Return the reference type recorded on a mirrored payment."""

    if Direction(direction) is Direction.IN:
        return ReferenceType.PAYMENT_IN
    return ReferenceType.PAYMENT_OUT


def mirror_transaction_id(payment_id: str) -> str:
    """Deterministic id of the transaction mirroring ``payment_id``."""

    return f"{MIRROR_ID_PREFIX}{payment_id}"


def describe_payment(payment: PaymentRow, invoice_number: Optional[str] = None) -> str:
    """Render the description stored on a mirrored transaction.

    Examples: ``"Payment In REC-001 against INV-0007"`` or
    ``"Payment Out PAY-3"`` when the payment is not linked to an invoice.
    """

    label = _DIRECTION_LABELS[Direction(payment.direction)]
    text = f"{label} {payment.payment_number}"
    if invoice_number:
        text = f"{text} against {invoice_number}"
    return text


def build_mirror_transaction(
    payment: PaymentRow,
    *,
    transaction_id: Optional[str] = None,
    invoice_number: Optional[str] = None,
) -> CashBankTransactionRow:
    """Materialize the cash/bank movement mirroring ``payment``.

    Args:
        payment (PaymentRow): Payment that has just been recorded.
        transaction_id (str | None): Identifier for the new row. Defaults to
            :func:`mirror_transaction_id` of the payment.
        invoice_number (str | None): Number of the settled invoice, used only
            for the description.

    Returns:
        CashBankTransactionRow: Row with the payment's direction, amount and
            date, routed to the ledger implied by the payment mode.
    """

    return CashBankTransactionRow(
        transaction_id=transaction_id or mirror_transaction_id(payment.payment_id),
        account=account_for_mode(payment.payment_mode).value,
        direction=Direction(payment.direction).value,
        amount=payment.amount,
        transaction_date=payment.payment_date,
        reference_type=reference_type_for(payment.direction).value,
        reference_id=payment.payment_id,
        description=describe_payment(payment, invoice_number),
    )


def build_adjustment_transaction(
    *,
    transaction_id: str,
    account: LedgerAccount,
    direction: Direction,
    amount: Decimal,
    transaction_date: date,
    description: Optional[str] = None,
) -> CashBankTransactionRow:
    """Build the synthetic movement posted by a balance adjustment."""

    return CashBankTransactionRow(
        transaction_id=transaction_id,
        account=account.value,
        direction=direction.value,
        amount=amount,
        transaction_date=transaction_date,
        reference_type=ReferenceType.BALANCE_ADJUSTMENT.value,
        reference_id=None,
        description=description or f"Balance adjustment ({account.value})",
    )


def find_mirror(transactions: Iterable[CashBankTransactionRow], payment_id: str) -> Optional[CashBankTransactionRow]:
    """Return the transaction already mirroring ``payment_id``, if any."""

    for transaction in transactions:
        if transaction.reference_type == ReferenceType.BALANCE_ADJUSTMENT.value:
            continue
        if transaction.reference_id == payment_id:
            return transaction
    return None


def account_balance(
    transactions: Iterable[CashBankTransactionRow],
    account: LedgerAccount | str,
    *,
    as_of: Optional[date] = None,
) -> Decimal:
    """Running balance of ``account``: inflows minus outflows.

    Args:
        transactions (Iterable[CashBankTransactionRow]): Ledger rows of every
            account; rows of other accounts are skipped.
        account (LedgerAccount | str): Ledger to total.
        as_of (date | None): When given, only movements dated on or before it
            are counted.

    Returns:
        Decimal: Signed balance. It may be negative; the ledger does not stop
            an account from being overdrawn.
    """

    account = LedgerAccount(account)
    balance = ZERO
    for transaction in transactions:
        if transaction.account != account.value:
            continue
        if as_of is not None and transaction.transaction_date > as_of:
            continue
        if Direction(transaction.direction) is Direction.IN:
            balance += transaction.amount
        else:
            balance -= transaction.amount
    log.debug("Computed %s balance: %s", account.value, balance)
    return balance


__all__ = [
    "MIRROR_ID_PREFIX",
    "account_for_mode",
    "reference_type_for",
    "mirror_transaction_id",
    "describe_payment",
    "build_mirror_transaction",
    "build_adjustment_transaction",
    "find_mirror",
    "account_balance",
]
