"""Enumerations and numeric conventions shared by the ledger core.

The Document Store adapter, the pure engines (totals, valuation,
reconciliation, cash/bank mirror) and the CLI all rely on these identifiers
so that the text persisted in the workbook has a single source of truth.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Smallest currency unit; every monetary value is quantized to it.
MONEY_QUANTUM = Decimal("0.01")
ZERO = Decimal("0")

DEFAULT_LOW_STOCK_ALERT = Decimal("10")


class InvoiceType(str, Enum):
    """Document families sharing the invoice shape."""

    SALE = "sale"
    PURCHASE = "purchase"


class InvoiceStatus(str, Enum):
    """Payment status of an invoice, derived from paid vs. total amounts."""

    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


class Direction(str, Enum):
    """Direction of a cash movement relative to the business."""

    IN = "in"
    OUT = "out"


class PaymentMode(str, Enum):
    """Supported payment mechanisms."""

    CASH = "cash"
    BANK = "bank"
    UPI = "upi"
    CHEQUE = "cheque"
    CARD = "card"


class LedgerAccount(str, Enum):
    """Cash/bank ledgers a mirrored transaction can land in."""

    CASH = "cash"
    BANK = "bank"


class ReferenceType(str, Enum):
    """Origin recorded on every cash/bank transaction."""

    PAYMENT_IN = "payment_in"
    PAYMENT_OUT = "payment_out"
    BALANCE_ADJUSTMENT = "balance_adjustment"


class DiscountKind(str, Enum):
    """How a line discount value should be interpreted."""

    PERCENT = "percent"
    AMOUNT = "amount"


class StockStatus(str, Enum):
    """Stock level classification used by the stock register."""

    OUT = "out"
    LOW = "low"
    IN_STOCK = "in-stock"


class DataQualityFlag(str, Enum):
    """Conditions the valuation engine clamps or defaults instead of raising."""

    MISSING_OPENING_ANCHOR = "missing_opening_anchor"
    NEGATIVE_OPENING_STOCK = "negative_opening_stock"
    NEGATIVE_CLOSING_STOCK = "negative_closing_stock"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    ITEMS = "Items"
    INVOICES = "Invoices"
    INVOICE_LINES = "InvoiceLines"
    PAYMENTS = "Payments"
    CASH_BANK = "CashBankTransactions"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MONEY_QUANTUM",
    "ZERO",
    "DEFAULT_LOW_STOCK_ALERT",
    "InvoiceType",
    "InvoiceStatus",
    "Direction",
    "PaymentMode",
    "LedgerAccount",
    "ReferenceType",
    "DiscountKind",
    "StockStatus",
    "DataQualityFlag",
    "SheetName",
]
