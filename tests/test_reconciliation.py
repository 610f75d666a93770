"""Unit tests for the balance reconciliation engine."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

import pytest

from billing_ledger import reconciliation
from billing_ledger.constants import Direction, InvoiceStatus, InvoiceType


@dataclass(frozen=True)
class _Invoice:
    invoice_type: str
    party_id: str
    total_amount: Decimal
    paid_amount: Decimal
    is_deleted: bool = False


# ---------------------------------------------------------------------------
# Status derivation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("total", "paid", "expected"),
    [
        ("100", "0", InvoiceStatus.UNPAID),
        ("100", "40", InvoiceStatus.PARTIAL),
        ("100", "100", InvoiceStatus.PAID),
        ("100", "120", InvoiceStatus.PAID),
        ("0", "0", InvoiceStatus.PAID),
    ],
)
def test_derive_status_maps_paid_against_total(total, paid, expected):
    """Status follows the balance due, and a zero total counts as paid."""

    assert reconciliation.derive_status(Decimal(total), Decimal(paid)) is expected


def test_compute_balance_due_never_goes_negative():
    """An overpaid invoice has nothing left to pay."""

    assert reconciliation.compute_balance_due(Decimal("50"), Decimal("70")) == Decimal("0")


# ---------------------------------------------------------------------------
# Payment transitions
# ---------------------------------------------------------------------------


def test_apply_payment_amount_updates_balance_and_status():
    """Applying a payment raises paid and lowers the balance due."""

    result = reconciliation.apply_payment_amount(Decimal("1000"), Decimal("0"), Decimal("400"))

    assert result.paid_amount == Decimal("400")
    assert result.balance_due == Decimal("600")
    assert result.status is InvoiceStatus.PARTIAL

    settled = reconciliation.apply_payment_amount(result.total_amount, result.paid_amount, Decimal("600"))

    assert settled.balance_due == Decimal("0")
    assert settled.status is InvoiceStatus.PAID


def test_payments_commute():
    """Two payments land on the same figures regardless of order."""

    total = Decimal("500")
    first = reconciliation.apply_payment_amount(total, Decimal("0"), Decimal("120.50"))
    first = reconciliation.apply_payment_amount(total, first.paid_amount, Decimal("79.50"))
    second = reconciliation.apply_payment_amount(total, Decimal("0"), Decimal("79.50"))
    second = reconciliation.apply_payment_amount(total, second.paid_amount, Decimal("120.50"))

    assert first == second
    assert first.paid_amount == Decimal("200.00")


@pytest.mark.parametrize("amount", ["0", "-5"])
def test_apply_payment_amount_rejects_non_positive_amount(amount):
    """Payments must move money."""

    with pytest.raises(ValueError):
        reconciliation.apply_payment_amount(Decimal("100"), Decimal("0"), Decimal(amount))


def test_apply_payment_amount_accepts_overpayment_with_warning(caplog):
    """Overpayment is kept in paid_amount and logged."""

    with caplog.at_level("WARNING", logger="billing_ledger"):
        result = reconciliation.apply_payment_amount(Decimal("100"), Decimal("90"), Decimal("30"))

    assert result.paid_amount == Decimal("120")
    assert result.balance_due == Decimal("0")
    assert result.status is InvoiceStatus.PAID
    assert "overpays" in caplog.text


def test_revise_payment_amount_applies_delta():
    """Editing a payment shifts paid_amount by new minus old."""

    result = reconciliation.revise_payment_amount(
        Decimal("300"), Decimal("300"), Decimal("200"), Decimal("50")
    )

    assert result.paid_amount == Decimal("150")
    assert result.status is InvoiceStatus.PARTIAL

    with pytest.raises(ValueError):
        reconciliation.revise_payment_amount(Decimal("300"), Decimal("300"), Decimal("200"), Decimal("0"))


def test_reverse_payment_amount_clamps_at_zero():
    """Reversing more than was paid leaves the invoice unpaid."""

    result = reconciliation.reverse_payment_amount(Decimal("100"), Decimal("30"), Decimal("50"))

    assert result.paid_amount == Decimal("0")
    assert result.balance_due == Decimal("100")
    assert result.status is InvoiceStatus.UNPAID


def test_recompute_invoice_balance_sums_all_payments():
    """Recomputing from scratch is independent of the stored paid amount."""

    result = reconciliation.recompute_invoice_balance(
        Decimal("90"), [Decimal("30"), Decimal("30"), Decimal("30")]
    )

    assert result.paid_amount == Decimal("90")
    assert result.status is InvoiceStatus.PAID


def test_invoice_type_for_direction():
    """Money in settles sales, money out settles purchases."""

    assert reconciliation.invoice_type_for_direction(Direction.IN) is InvoiceType.SALE
    assert reconciliation.invoice_type_for_direction(Direction.OUT) is InvoiceType.PURCHASE


# ---------------------------------------------------------------------------
# Party outstanding
# ---------------------------------------------------------------------------


def test_party_outstanding_splits_receivable_and_payable():
    """Sales feed the receivable and purchases the payable."""

    invoices = [
        _Invoice("sale", "P1", Decimal("100"), Decimal("40")),
        _Invoice("sale", "P1", Decimal("50"), Decimal("60")),
        _Invoice("purchase", "P1", Decimal("80"), Decimal("0")),
        _Invoice("sale", "P1", Decimal("999"), Decimal("0"), is_deleted=True),
        _Invoice("sale", "P2", Decimal("500"), Decimal("0")),
    ]

    outstanding = reconciliation.party_outstanding(invoices, "P1")

    assert outstanding.receivable == Decimal("50")
    assert outstanding.payable == Decimal("80")
    assert outstanding.net == Decimal("-30")


def test_party_outstanding_without_invoices_is_zero():
    """A party with no invoices owes nothing either way."""

    outstanding = reconciliation.party_outstanding([], "P9")

    assert outstanding.receivable == outstanding.payable == Decimal("0")


# ---------------------------------------------------------------------------
# Balance adjustments
# ---------------------------------------------------------------------------


def test_plan_balance_adjustment_at_target_is_noop():
    """Matching balances produce an explicit already-at-target outcome."""

    plan = reconciliation.plan_balance_adjustment(Decimal("250.00"), Decimal("250"))

    assert plan.outcome is reconciliation.AdjustmentOutcome.ALREADY_AT_TARGET
    assert plan.direction is None
    assert plan.amount == Decimal("0")


@pytest.mark.parametrize(
    ("current", "target", "direction", "amount"),
    [
        ("100", "175.25", Direction.IN, "75.25"),
        ("100", "40", Direction.OUT, "60"),
        ("-20", "0", Direction.IN, "20"),
    ],
)
def test_plan_balance_adjustment_lands_on_target(current, target, direction, amount):
    """The planned movement moves the balance exactly onto the target."""

    plan = reconciliation.plan_balance_adjustment(Decimal(current), Decimal(target))

    assert plan.outcome is reconciliation.AdjustmentOutcome.POSTED
    assert plan.direction is direction
    assert plan.amount == Decimal(amount)
    signed = plan.amount if direction is Direction.IN else -plan.amount
    assert plan.current_balance + signed == plan.target_balance
