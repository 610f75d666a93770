"""Invoice totals calculator.

Pure functions that turn invoice line items into the monetary figures stored
on the invoice header. Every value is rounded to the smallest currency unit at
the line level before it is summed, so header totals are always the exact sum
of the rounded lines and never drift by a cent across lines.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Tuple

from . import log
from .constants import MONEY_QUANTUM, ZERO, DiscountKind


HUNDRED = Decimal("100")


@dataclass(frozen=True)
class TcsConfig:
    """Tax-collected-at-source settings applied on top of the invoice total."""

    enabled: bool = False
    percent: Decimal = ZERO


@dataclass(frozen=True)
class LineItemInput:
    """One invoice line as entered by the user."""

    item_id: str
    quantity: Decimal
    rate: Decimal
    discount: Decimal = ZERO
    discount_kind: DiscountKind = DiscountKind.PERCENT
    tax_rate: Decimal = ZERO


@dataclass(frozen=True)
class LineTotals:
    """Rounded monetary breakdown of a single line."""

    item_id: str
    quantity: Decimal
    rate: Decimal
    gross_amount: Decimal
    discount_amount: Decimal
    net_amount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class InvoiceTotals:
    """Header figures produced for an invoice at save time."""

    lines: Tuple[LineTotals, ...]
    subtotal: Decimal
    line_discount_total: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    tcs_amount: Decimal
    total_amount: Decimal


def round_money(value: Decimal) -> Decimal:
    """Quantize ``value`` to the currency unit using half-up rounding."""

    return Decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def resolve_line_discount(gross_amount: Decimal, discount: Decimal, kind: DiscountKind) -> Decimal:
    """Convert a line discount into a rounded amount.

    Args:
        gross_amount (Decimal): Rounded ``quantity * rate`` for the line.
        discount (Decimal): Raw discount value entered by the user.
        kind (DiscountKind): Whether ``discount`` is a percentage of the gross
            amount or an absolute amount.

    Returns:
        Decimal: Discount amount rounded to the currency unit.

    Raises:
        ValueError: If the discount is negative or larger than the gross
            amount.
    """

    if discount < ZERO:
        log.error("Line discount validation failed: %s", discount)
        raise ValueError("Discount must be zero or positive")
    if kind is DiscountKind.PERCENT:
        if discount > HUNDRED:
            log.error("Line discount percent validation failed: %s", discount)
            raise ValueError("Discount percent cannot exceed 100")
        amount = round_money(gross_amount * discount / HUNDRED)
    else:
        amount = round_money(discount)
    if amount > gross_amount:
        log.error("Line discount %s exceeds gross amount %s", amount, gross_amount)
        raise ValueError("Discount cannot exceed the line amount")
    return amount


def compute_line_totals(line: LineItemInput) -> LineTotals:
    """Compute the rounded breakdown for one line item.

    Args:
        line (LineItemInput): Quantity, rate, discount and tax rate of the
            line.

    Returns:
        LineTotals: Gross, discount, net, tax and total amounts. The line total
            is ``net + tax`` and is what the stock register sums as purchase or
            sale value.

    Raises:
        ValueError: When the quantity is not positive or the rate, discount or
            tax rate is negative.
    """

    if line.quantity <= ZERO:
        log.error("Quantity validation failed for item '%s': %s", line.item_id, line.quantity)
        raise ValueError("Quantity must be greater than zero")
    if line.rate < ZERO:
        log.error("Rate validation failed for item '%s': %s", line.item_id, line.rate)
        raise ValueError("Rate must be zero or positive")
    if line.tax_rate < ZERO:
        log.error("Tax rate validation failed for item '%s': %s", line.item_id, line.tax_rate)
        raise ValueError("Tax rate must be zero or positive")

    gross_amount = round_money(line.quantity * line.rate)
    discount_amount = resolve_line_discount(gross_amount, line.discount, line.discount_kind)
    net_amount = gross_amount - discount_amount
    tax_amount = round_money(net_amount * line.tax_rate / HUNDRED)
    return LineTotals(
        item_id=line.item_id,
        quantity=line.quantity,
        rate=line.rate,
        gross_amount=gross_amount,
        discount_amount=discount_amount,
        net_amount=net_amount,
        tax_rate=line.tax_rate,
        tax_amount=tax_amount,
        line_total=net_amount + tax_amount,
    )


def compute_tcs(taxable_total: Decimal, tcs_config: Optional[TcsConfig]) -> Decimal:
    """Return the TCS levied on ``taxable_total`` or zero when disabled."""

    if tcs_config is None or not tcs_config.enabled or tcs_config.percent <= ZERO:
        return ZERO
    return round_money(taxable_total * tcs_config.percent / HUNDRED)


def compute_invoice_totals(
    line_items: Iterable[LineItemInput],
    invoice_discount: Decimal = ZERO,
    tcs_config: Optional[TcsConfig] = None,
) -> InvoiceTotals:
    """Compute the header totals of an invoice from its line items.

    ``subtotal`` is the sum of the line net amounts (after line discounts),
    ``tax_amount`` the sum of the line taxes, and the invoice-level discount is
    taken off after tax. TCS, when enabled, is charged on the discounted
    tax-inclusive amount. The invariant
    ``total_amount == subtotal - discount_amount + tax_amount + tcs_amount``
    holds exactly because every component is already rounded.

    Args:
        line_items (Iterable[LineItemInput]): Ordered invoice lines. May be
            empty, in which case every total is zero.
        invoice_discount (Decimal): Absolute discount on the whole invoice.
        tcs_config (TcsConfig | None): TCS settings; ``None`` disables TCS.

    Returns:
        InvoiceTotals: Rounded line breakdowns and header totals.

    Raises:
        ValueError: If a line is invalid or the invoice discount is negative or
            exceeds the tax-inclusive subtotal.
    """

    lines: List[LineTotals] = [compute_line_totals(line) for line in line_items]
    subtotal = sum((line.net_amount for line in lines), ZERO)
    line_discount_total = sum((line.discount_amount for line in lines), ZERO)
    tax_amount = sum((line.tax_amount for line in lines), ZERO)

    discount_amount = round_money(invoice_discount)
    if discount_amount < ZERO:
        log.error("Invoice discount validation failed: %s", invoice_discount)
        raise ValueError("Invoice discount must be zero or positive")
    if discount_amount > subtotal + tax_amount:
        log.error(
            "Invoice discount %s exceeds subtotal %s plus tax %s",
            discount_amount,
            subtotal,
            tax_amount,
        )
        raise ValueError("Invoice discount cannot exceed the invoice amount")

    tcs_amount = compute_tcs(subtotal - discount_amount + tax_amount, tcs_config)
    total_amount = subtotal - discount_amount + tax_amount + tcs_amount
    log.debug(
        "Computed invoice totals: lines=%d subtotal=%s tax=%s discount=%s tcs=%s total=%s",
        len(lines),
        subtotal,
        tax_amount,
        discount_amount,
        tcs_amount,
        total_amount,
    )
    return InvoiceTotals(
        lines=tuple(lines),
        subtotal=subtotal,
        line_discount_total=line_discount_total,
        discount_amount=discount_amount,
        tax_amount=tax_amount,
        tcs_amount=tcs_amount,
        total_amount=total_amount,
    )


__all__ = [
    "TcsConfig",
    "LineItemInput",
    "LineTotals",
    "InvoiceTotals",
    "round_money",
    "resolve_line_discount",
    "compute_line_totals",
    "compute_tcs",
    "compute_invoice_totals",
]
