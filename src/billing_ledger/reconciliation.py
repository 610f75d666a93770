"""Balance reconciliation engine.

The functions in this module are the per-invoice payment state machine. They
take the invoice's current figures and a payment event and return the new
``paid_amount``, ``balance_due`` and ``status``; writing the result back to
the Document Store is the orchestration layer's job (see
:mod:`billing_ledger.core_logic`).

Status is a pure function of the total and the paid amount:

* ``unpaid``  nothing has been paid and a balance remains
* ``partial`` something has been paid and a balance remains
* ``paid``    the balance due is zero (a zero-total invoice is paid)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional, Protocol

from . import log
from .constants import ZERO, Direction, InvoiceStatus, InvoiceType
from .totals import round_money


class InvoiceFigures(Protocol):
    """Anything exposing the invoice figures reconciliation reads."""

    invoice_type: InvoiceType | str
    party_id: str
    total_amount: Decimal
    paid_amount: Decimal
    is_deleted: bool


@dataclass(frozen=True)
class InvoiceBalance:
    """Paid amount, balance due and status of an invoice."""

    total_amount: Decimal
    paid_amount: Decimal
    balance_due: Decimal
    status: InvoiceStatus


@dataclass(frozen=True)
class PartyOutstanding:
    """Aggregate open balance of a party, computed on demand."""

    party_id: str
    receivable: Decimal
    payable: Decimal

    @property
    def net(self) -> Decimal:
        return self.receivable - self.payable


class AdjustmentOutcome(str, Enum):
    """Result of planning a balance adjustment."""

    POSTED = "posted"
    ALREADY_AT_TARGET = "already_at_target"


@dataclass(frozen=True)
class BalanceAdjustment:
    """Synthetic movement that forces a running balance to a target."""

    outcome: AdjustmentOutcome
    current_balance: Decimal
    target_balance: Decimal
    direction: Optional[Direction] = None
    amount: Decimal = ZERO


def compute_balance_due(total_amount: Decimal, paid_amount: Decimal) -> Decimal:
    """Return ``max(0, total_amount - paid_amount)``."""

    return max(ZERO, total_amount - paid_amount)


def derive_status(total_amount: Decimal, paid_amount: Decimal) -> InvoiceStatus:
    """Map paid vs. total onto the invoice status."""

    if compute_balance_due(total_amount, paid_amount) <= ZERO:
        return InvoiceStatus.PAID
    if paid_amount > ZERO:
        return InvoiceStatus.PARTIAL
    return InvoiceStatus.UNPAID


def balance_for(total_amount: Decimal, paid_amount: Decimal) -> InvoiceBalance:
    """Build the :class:`InvoiceBalance` for the given figures."""

    paid_amount = round_money(paid_amount)
    return InvoiceBalance(
        total_amount=total_amount,
        paid_amount=paid_amount,
        balance_due=compute_balance_due(total_amount, paid_amount),
        status=derive_status(total_amount, paid_amount),
    )


def apply_payment_amount(total_amount: Decimal, paid_amount: Decimal, amount: Decimal) -> InvoiceBalance:
    """Apply a new payment of ``amount`` to an invoice.

    Args:
        total_amount (Decimal): Invoice total.
        paid_amount (Decimal): Amount already paid before this payment.
        amount (Decimal): Positive payment amount.

    Returns:
        InvoiceBalance: Figures after the payment. Overpayment is accepted; the
            balance due is clamped at zero and the excess stays visible in
            ``paid_amount``.

    Raises:
        ValueError: If ``amount`` is not positive.
    """

    if amount <= ZERO:
        log.error("Payment amount validation failed: %s", amount)
        raise ValueError("Payment amount must be greater than zero")
    result = balance_for(total_amount, paid_amount + amount)
    if result.paid_amount > total_amount:
        log.warning(
            "Payment of %s overpays invoice total %s (paid now %s)",
            amount,
            total_amount,
            result.paid_amount,
        )
    return result


def revise_payment_amount(
    total_amount: Decimal,
    paid_amount: Decimal,
    old_amount: Decimal,
    new_amount: Decimal,
) -> InvoiceBalance:
    """Re-apply an edited payment by shifting ``paid_amount`` by the delta."""

    if new_amount <= ZERO:
        log.error("Edited payment amount validation failed: %s", new_amount)
        raise ValueError("Payment amount must be greater than zero")
    return balance_for(total_amount, max(ZERO, paid_amount + (new_amount - old_amount)))


def reverse_payment_amount(total_amount: Decimal, paid_amount: Decimal, amount: Decimal) -> InvoiceBalance:
    """Remove a payment's contribution from an invoice."""

    remaining = paid_amount - amount
    if remaining < ZERO:
        log.warning(
            "Reversing %s from paid amount %s would go negative; clamping at zero",
            amount,
            paid_amount,
        )
    return balance_for(total_amount, max(ZERO, remaining))


def recompute_invoice_balance(total_amount: Decimal, payment_amounts: Iterable[Decimal]) -> InvoiceBalance:
    """Rebuild the figures from every payment applied to the invoice.

    Unlike the incremental transitions this is idempotent, which makes it the
    safe choice when resuming an interrupted payment or repairing drift.
    """

    return balance_for(total_amount, sum(payment_amounts, ZERO))


def invoice_type_for_direction(direction: Direction) -> InvoiceType:
    """Return the invoice family a payment direction may settle."""

    return InvoiceType.SALE if direction is Direction.IN else InvoiceType.PURCHASE


def party_outstanding(invoices: Iterable[InvoiceFigures], party_id: str) -> PartyOutstanding:
    """Sum ``total - paid`` over a party's non-deleted invoices.

    Sale invoices contribute to the receivable, purchase invoices to the
    payable. Overpaid invoices contribute their negative remainder, so an
    advance on one invoice offsets what is due on another.
    """

    receivable = ZERO
    payable = ZERO
    for invoice in invoices:
        if invoice.party_id != party_id or invoice.is_deleted:
            continue
        open_amount = invoice.total_amount - invoice.paid_amount
        if InvoiceType(invoice.invoice_type) is InvoiceType.SALE:
            receivable += open_amount
        else:
            payable += open_amount
    return PartyOutstanding(party_id=party_id, receivable=receivable, payable=payable)


def plan_balance_adjustment(current_balance: Decimal, target_balance: Decimal) -> BalanceAdjustment:
    """Plan the synthetic transaction that moves a balance to ``target_balance``.

    Args:
        current_balance (Decimal): Balance computed from the ledger.
        target_balance (Decimal): Balance the user says is correct.

    Returns:
        BalanceAdjustment: ``ALREADY_AT_TARGET`` with no direction when the
            balances match; otherwise ``POSTED`` with amount
            ``|target - current|`` and the direction that lands exactly on the
            target (``in`` raises the balance, ``out`` lowers it).
    """

    current_balance = round_money(current_balance)
    target_balance = round_money(target_balance)
    difference = target_balance - current_balance
    if difference == ZERO:
        return BalanceAdjustment(
            outcome=AdjustmentOutcome.ALREADY_AT_TARGET,
            current_balance=current_balance,
            target_balance=target_balance,
        )
    return BalanceAdjustment(
        outcome=AdjustmentOutcome.POSTED,
        current_balance=current_balance,
        target_balance=target_balance,
        direction=Direction.IN if difference > ZERO else Direction.OUT,
        amount=abs(difference),
    )


__all__ = [
    "InvoiceBalance",
    "PartyOutstanding",
    "AdjustmentOutcome",
    "BalanceAdjustment",
    "compute_balance_due",
    "derive_status",
    "balance_for",
    "apply_payment_amount",
    "revise_payment_amount",
    "reverse_payment_amount",
    "recompute_invoice_balance",
    "invoice_type_for_direction",
    "party_outstanding",
    "plan_balance_adjustment",
]
