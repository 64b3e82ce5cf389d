"""Enumerations shared across the retail ERP modules.

Keeps sheet names, payment methods and transaction kinds in one place so the
data access layer, the repositories and the business layer agree on the exact
strings stored in the workbook.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.1.0"

# Upper bound for compare-and-set retries when two writers race on one product.
MAX_STOCK_UPDATE_ATTEMPTS = 5

ZERO = Decimal("0")


class PaymentType(str, Enum):
    """Enumerate supported payment mechanisms for sales."""

    CASH = "cash"
    UPI = "upi"
    CREDIT = "credit"


class PaymentMethod(str, Enum):
    """Enumerate how an expense was paid."""

    CASH = "cash"
    UPI = "upi"
    BANK = "bank"


class ExpenseType(str, Enum):
    """Enumerate the expense categories tracked by the shop."""

    RENT = "rent"
    ELECTRICITY = "electricity"
    WAGES = "wages"
    DELIVERY = "delivery"
    MISC = "misc"


class TransactionType(str, Enum):
    """Enumerate the transaction kinds written by the recorder."""

    SALE = "SALE"
    PURCHASE = "PURCHASE"


class PartyKind(str, Enum):
    """Enumerate the counterparties a transaction may reference."""

    SUPPLIER = "SUPPLIER"
    CUSTOMER = "CUSTOMER"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    SUPPLIERS = "Suppliers"
    CUSTOMERS = "Customers"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    PURCHASES = "Purchases"
    PURCHASE_ITEMS = "PurchaseItems"
    EXPENSES = "Expenses"


# Header/line sheets and number prefixes used for each transaction kind.
HEADER_SHEETS = {
    TransactionType.SALE: SheetName.SALES,
    TransactionType.PURCHASE: SheetName.PURCHASES,
}
LINE_ITEM_SHEETS = {
    TransactionType.SALE: SheetName.SALE_ITEMS,
    TransactionType.PURCHASE: SheetName.PURCHASE_ITEMS,
}
NUMBER_PREFIXES = {
    TransactionType.SALE: "BILL",
    TransactionType.PURCHASE: "PUR",
}
PARTY_SHEETS = {
    PartyKind.SUPPLIER: SheetName.SUPPLIERS,
    PartyKind.CUSTOMER: SheetName.CUSTOMERS,
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MAX_STOCK_UPDATE_ATTEMPTS",
    "ZERO",
    "PaymentType",
    "PaymentMethod",
    "ExpenseType",
    "TransactionType",
    "PartyKind",
    "SheetName",
    "HEADER_SHEETS",
    "LINE_ITEM_SHEETS",
    "NUMBER_PREFIXES",
    "PARTY_SHEETS",
]
