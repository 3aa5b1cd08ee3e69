"""Enumerations and fixed values shared across the distributor ledger.

Keeps the workbook layout, ledger vocabulary, and the few business constants
in one place so the data layer, the business layer, and the CLI agree on
identifiers.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_PAGE_SIZE = 50

# Production cost assumed when no pricing quote exists for a SKU: half of the
# billed unit price. Kept as a fixed value for compatibility with existing books.
COST_FALLBACK_RATIO = Decimal("0.5")

CENT = Decimal("0.01")


class TransactionType(str, Enum):
    """Enumerate the entry types recorded in the sales and factory ledgers."""

    SALE = "sale"
    PAYMENT = "payment"
    PRODUCTION = "production"


class ExpenseGroup(str, Enum):
    """Enumerate expense groups written to the transport ledger."""

    CLIENT_SALE_TRANSPORT = "Client Sale Transport"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    CUSTOMERS = "Customers"
    SALES_TRANSACTIONS = "SalesTransactions"
    FACTORY_PAYABLES = "FactoryPayables"
    TRANSPORT_EXPENSES = "TransportExpenses"
    FACTORY_PRICING = "FactoryPricing"


class SortDirection(str, Enum):
    """Enumerate column sort directions understood by the list pipeline."""

    ASC = "asc"
    DESC = "desc"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_PAGE_SIZE",
    "COST_FALLBACK_RATIO",
    "CENT",
    "TransactionType",
    "ExpenseGroup",
    "SheetName",
    "SortDirection",
]
