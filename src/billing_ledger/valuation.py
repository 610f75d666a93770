"""Stock valuation engine.

Reconstructs point-in-time inventory for an item by replaying its invoice line
history. Nothing here reads or writes the workbook: callers hand over the
item's opening anchor and every non-deleted purchase and sale movement, and
receive a :class:`StockLedgerRow` describing opening, purchase, sale and
closing quantities with weighted-average prices.

Costing is a simplified weighted average recomputed per period. Stock that
predates the ledger epoch has no cost trail, so it is valued at the item's
current standard cost unless the caller supplies an override. The same rule is
applied to every item so a report stays internally consistent.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from . import log
from .constants import (
    DEFAULT_LOW_STOCK_ALERT,
    ZERO,
    DataQualityFlag,
    StockStatus,
)
from .totals import round_money


@dataclass(frozen=True)
class OpeningAnchor:
    """Static item facts anchoring the replay at the ledger epoch."""

    quantity: Optional[Decimal]
    standard_cost: Decimal
    low_stock_alert: Decimal = DEFAULT_LOW_STOCK_ALERT


@dataclass(frozen=True)
class StockMovement:
    """A purchase or sale line reduced to what valuation needs."""

    item_id: str
    movement_date: date
    quantity: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class StockLedgerRow:
    """Valuation of one item over one reporting period."""

    item_id: str
    period_start: date
    period_end: date
    opening_qty: Decimal
    opening_avg_price: Decimal
    opening_amount: Decimal
    purchase_qty: Decimal
    purchase_avg_price: Decimal
    purchase_amount: Decimal
    sale_qty: Decimal
    sale_avg_price: Decimal
    sale_amount: Decimal
    closing_qty: Decimal
    closing_avg_price: Decimal
    closing_amount: Decimal
    status: StockStatus
    data_quality: Tuple[DataQualityFlag, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class StockReportTotals:
    """Column totals of a stock register; sums only, never averages."""

    opening_qty: Decimal
    opening_amount: Decimal
    purchase_qty: Decimal
    purchase_amount: Decimal
    sale_qty: Decimal
    sale_amount: Decimal
    closing_qty: Decimal
    closing_amount: Decimal


@dataclass(frozen=True)
class _Buckets:
    before_qty: Decimal
    within_qty: Decimal
    within_amount: Decimal


def month_period(year: int, month: int) -> Tuple[date, date]:
    """Return the first and last calendar day of ``month`` in ``year``."""

    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def _partition(
    item_id: str,
    movements: Iterable[StockMovement],
    period_start: date,
    period_end: date,
) -> _Buckets:
    before_qty = ZERO
    within_qty = ZERO
    within_amount = ZERO
    for movement in movements:
        if movement.item_id != item_id:
            continue
        if movement.movement_date < period_start:
            before_qty += movement.quantity
        elif movement.movement_date <= period_end:
            within_qty += movement.quantity
            within_amount += movement.line_total
        # Movements after the period do not affect this report.
    return _Buckets(before_qty=before_qty, within_qty=within_qty, within_amount=round_money(within_amount))


def average_price(amount: Decimal, quantity: Decimal) -> Decimal:
    """Return ``amount / quantity`` rounded, or zero when nothing moved."""

    if quantity <= ZERO:
        return ZERO
    return round_money(amount / quantity)


def classify_stock(closing_qty: Decimal, low_stock_alert: Decimal) -> StockStatus:
    """Classify a closing quantity for the stock register."""

    if closing_qty <= ZERO:
        return StockStatus.OUT
    if closing_qty < low_stock_alert:
        return StockStatus.LOW
    return StockStatus.IN_STOCK


def compute_stock_ledger(
    item_id: str,
    period_start: date,
    period_end: date,
    opening_anchor: OpeningAnchor,
    purchase_lines: Iterable[StockMovement],
    sale_lines: Iterable[StockMovement],
    *,
    opening_unit_cost: Optional[Decimal] = None,
) -> StockLedgerRow:
    """Derive the stock register row of an item for a reporting period.

    Movements are split into three date buckets: before ``period_start``,
    within the inclusive ``[period_start, period_end]`` range, and after
    ``period_end`` (ignored). Opening stock is the anchor plus earlier
    purchases minus earlier sales; closing stock adds the period's purchases
    and removes its sales. Both are clamped at zero and the clamp is reported
    through ``data_quality`` rather than raised.

    Args:
        item_id (str): Item being valued; movements of other items are skipped.
        period_start (date): First day of the reporting period.
        period_end (date): Last day of the reporting period (inclusive).
        opening_anchor (OpeningAnchor): Quantity held at the ledger epoch, the
            item's standard cost and its low-stock threshold.
        purchase_lines (Iterable[StockMovement]): Non-deleted purchase lines.
        sale_lines (Iterable[StockMovement]): Non-deleted sale lines.
        opening_unit_cost (Decimal | None): Optional override for the cost of
            opening stock. Defaults to ``opening_anchor.standard_cost``.

    Returns:
        StockLedgerRow: Quantities, rounded amounts, average prices, stock
            status and any data-quality flags.

    Raises:
        ValueError: If ``period_end`` precedes ``period_start``.
    """

    if period_end < period_start:
        log.error("Invalid valuation period %s..%s for item '%s'", period_start, period_end, item_id)
        raise ValueError("Period end must not precede period start")

    flags: List[DataQualityFlag] = []
    anchor_qty = opening_anchor.quantity
    if anchor_qty is None:
        flags.append(DataQualityFlag.MISSING_OPENING_ANCHOR)
        anchor_qty = ZERO

    purchases = _partition(item_id, purchase_lines, period_start, period_end)
    sales = _partition(item_id, sale_lines, period_start, period_end)

    implied_opening = anchor_qty + purchases.before_qty - sales.before_qty
    if implied_opening < ZERO:
        flags.append(DataQualityFlag.NEGATIVE_OPENING_STOCK)
    opening_qty = max(ZERO, implied_opening)

    unit_cost = opening_anchor.standard_cost if opening_unit_cost is None else opening_unit_cost
    opening_avg_price = round_money(unit_cost) if opening_qty > ZERO else ZERO

    purchase_avg_price = average_price(purchases.within_amount, purchases.within_qty)
    sale_avg_price = average_price(sales.within_amount, sales.within_qty)

    implied_closing = opening_qty + purchases.within_qty - sales.within_qty
    if implied_closing < ZERO:
        flags.append(DataQualityFlag.NEGATIVE_CLOSING_STOCK)
    closing_qty = max(ZERO, implied_closing)

    closing_avg_price = purchase_avg_price if purchases.within_qty > ZERO else opening_avg_price

    if flags:
        log.warning(
            "Stock data-quality conditions for item '%s' in %s..%s: %s",
            item_id,
            period_start,
            period_end,
            ", ".join(flag.value for flag in flags),
        )

    return StockLedgerRow(
        item_id=item_id,
        period_start=period_start,
        period_end=period_end,
        opening_qty=opening_qty,
        opening_avg_price=opening_avg_price,
        opening_amount=round_money(opening_qty * opening_avg_price),
        purchase_qty=purchases.within_qty,
        purchase_avg_price=purchase_avg_price,
        purchase_amount=purchases.within_amount,
        sale_qty=sales.within_qty,
        sale_avg_price=sale_avg_price,
        sale_amount=sales.within_amount,
        closing_qty=closing_qty,
        closing_avg_price=closing_avg_price,
        closing_amount=round_money(closing_qty * closing_avg_price),
        status=classify_stock(closing_qty, opening_anchor.low_stock_alert),
        data_quality=tuple(flags),
    )


def summarize_stock_report(rows: Sequence[StockLedgerRow]) -> StockReportTotals:
    """Sum the already-rounded columns of a stock register."""

    return StockReportTotals(
        opening_qty=sum((row.opening_qty for row in rows), ZERO),
        opening_amount=sum((row.opening_amount for row in rows), ZERO),
        purchase_qty=sum((row.purchase_qty for row in rows), ZERO),
        purchase_amount=sum((row.purchase_amount for row in rows), ZERO),
        sale_qty=sum((row.sale_qty for row in rows), ZERO),
        sale_amount=sum((row.sale_amount for row in rows), ZERO),
        closing_qty=sum((row.closing_qty for row in rows), ZERO),
        closing_amount=sum((row.closing_amount for row in rows), ZERO),
    )


def derive_current_stock(
    item_id: str,
    opening_anchor: OpeningAnchor,
    purchase_lines: Iterable[StockMovement],
    sale_lines: Iterable[StockMovement],
    *,
    as_of: date,
) -> Decimal:
    """Return the on-hand quantity implied by the full history up to ``as_of``.

    This is the closing quantity of a period that starts at the beginning of
    the calendar, so the anchor is the only opening balance.
    """

    row = compute_stock_ledger(
        item_id,
        date.min,
        as_of,
        opening_anchor,
        purchase_lines,
        sale_lines,
    )
    return row.closing_qty


__all__ = [
    "OpeningAnchor",
    "StockMovement",
    "StockLedgerRow",
    "StockReportTotals",
    "month_period",
    "average_price",
    "classify_stock",
    "compute_stock_ledger",
    "summarize_stock_report",
    "derive_current_stock",
]
