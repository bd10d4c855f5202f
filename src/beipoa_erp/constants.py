"""Enumerations and registries shared across BeiPoa modules.

The data access layer, the inventory ledger, the sale pipeline and the CLI all
read sheet names, status values, ID prefixes and cache families from here so
that a renamed column or a new entity type is a one-line change.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Mapping


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.0.0"

MONEY_QUANTUM = Decimal("0.01")
SEQUENCE_WIDTH = 6


class PaymentMode(str, Enum):
    """Enumerate the ways a customer can settle a sale."""

    CASH = "Cash"
    MOBILE_MONEY = "Mobile Money"
    BANK = "Bank"
    CREDIT = "Credit"


class TransactionType(str, Enum):
    """Header types stored in the ``Sales`` sheet."""

    SALE = "Sale"
    QUOTATION = "Quotation"


class SaleStatus(str, Enum):
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    PARTIALLY_RETURNED = "PartiallyReturned"
    RETURNED = "Returned"


class QuotationStatus(str, Enum):
    DRAFT = "Draft"
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    CONVERTED = "Converted"
    DELETED = "Deleted"


# Allowed status transitions; anything absent is rejected.
SALE_TRANSITIONS: Mapping[SaleStatus, frozenset] = {
    SaleStatus.COMPLETED: frozenset(
        {SaleStatus.CANCELLED, SaleStatus.PARTIALLY_RETURNED, SaleStatus.RETURNED}
    ),
    SaleStatus.PARTIALLY_RETURNED: frozenset(
        {SaleStatus.PARTIALLY_RETURNED, SaleStatus.RETURNED}
    ),
    SaleStatus.CANCELLED: frozenset(),
    SaleStatus.RETURNED: frozenset(),
}

QUOTATION_TRANSITIONS: Mapping[QuotationStatus, frozenset] = {
    QuotationStatus.DRAFT: frozenset({QuotationStatus.PENDING, QuotationStatus.DELETED}),
    QuotationStatus.PENDING: frozenset(
        {
            QuotationStatus.ACCEPTED,
            QuotationStatus.REJECTED,
            QuotationStatus.CONVERTED,
            QuotationStatus.DELETED,
        }
    ),
    QuotationStatus.ACCEPTED: frozenset({QuotationStatus.CONVERTED, QuotationStatus.DELETED}),
    QuotationStatus.REJECTED: frozenset({QuotationStatus.DELETED}),
    QuotationStatus.CONVERTED: frozenset(),
    QuotationStatus.DELETED: frozenset(),
}


class MovementType(str, Enum):
    """Reasons a stock batch quantity changed."""

    RECEIPT = "RECEIPT"
    SALE = "SALE"
    CANCEL = "CANCEL"
    RETURN = "RETURN"
    SYNTHETIC_RESTORE = "SYNTHETIC_RESTORE"


class LedgerEntryType(str, Enum):
    SALE = "SALE"
    CANCELLATION = "CANCELLATION"
    REFUND = "REFUND"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    STOCK_BATCHES = "StockBatches"
    STOCK_MOVEMENTS = "StockMovements"
    CUSTOMERS = "Customers"
    SUPPLIERS = "Suppliers"
    SALES = "Sales"
    SALE_LINES = "SaleLines"
    STATUS_LOG = "StatusLog"
    RETURNS = "Returns"
    ACCOUNTS = "Accounts"
    LEDGER = "Ledger"
    AUDIT_LOG = "AuditLog"


class EntityType(str, Enum):
    """Entity kinds that receive identifiers from the sequence allocator."""

    SALE = "SALE"
    QUOTATION = "QUOTATION"
    RETURN = "RETURN"
    CUSTOMER = "CUSTOMER"
    SUPPLIER = "SUPPLIER"
    PRODUCT = "PRODUCT"
    BATCH = "BATCH"
    MOVEMENT = "MOVEMENT"
    LEDGER_ENTRY = "LEDGER_ENTRY"


@dataclass(frozen=True)
class EntitySequence:
    """Where the identifiers of one entity type live and how they look."""

    prefix: str
    sheet: SheetName
    key_column: str


ENTITY_SEQUENCES: Mapping[EntityType, EntitySequence] = {
    EntityType.SALE: EntitySequence("SALE", SheetName.SALES, "TransactionID"),
    EntityType.QUOTATION: EntitySequence("QUOT", SheetName.SALES, "TransactionID"),
    EntityType.RETURN: EntitySequence("RET", SheetName.RETURNS, "ReturnID"),
    EntityType.CUSTOMER: EntitySequence("CUST", SheetName.CUSTOMERS, "CustomerID"),
    EntityType.SUPPLIER: EntitySequence("SUPP", SheetName.SUPPLIERS, "SupplierID"),
    EntityType.PRODUCT: EntitySequence("ITEM", SheetName.PRODUCTS, "ProductID"),
    EntityType.BATCH: EntitySequence("BATCH", SheetName.STOCK_BATCHES, "BatchID"),
    EntityType.MOVEMENT: EntitySequence("MOVE", SheetName.STOCK_MOVEMENTS, "MovementID"),
    EntityType.LEDGER_ENTRY: EntitySequence("LEDG", SheetName.LEDGER, "EntryID"),
}


# Payment accounts seeded into every workbook.
PAYMENT_ACCOUNTS: Mapping[PaymentMode, tuple[str, str]] = {
    PaymentMode.CASH: ("ACC-CASH", "Cash Drawer"),
    PaymentMode.MOBILE_MONEY: ("ACC-MOBILE", "Mobile Money"),
    PaymentMode.BANK: ("ACC-BANK", "Bank"),
    PaymentMode.CREDIT: ("ACC-AR", "Accounts Receivable"),
}

WALK_IN_CUSTOMER_ID = "CUST-000000"


class CacheFamily(str, Enum):
    """Groups of cache keys invalidated together."""

    INVENTORY = "inventory"
    CUSTOMERS = "customers"
    SUPPLIERS = "suppliers"
    SALES = "sales"
    DASHBOARD = "dashboard"
    ACCOUNTS = "accounts"
    REFERENCE = "reference"


class CacheKey(str, Enum):
    """Logical cache keys; the text before the first dot names the family."""

    PRODUCTS = "inventory.products"
    INVENTORY_SNAPSHOT = "inventory.snapshot"
    LOW_STOCK = "inventory.low_stock"
    CUSTOMERS = "customers.all"
    CUSTOMER_DETAIL = "customers.detail"
    SUPPLIERS = "suppliers.all"
    RECENT_SALES = "sales.recent"
    QUOTATIONS = "sales.quotations"
    SALE_DETAIL = "sales.detail"
    DASHBOARD = "dashboard.summary"
    ACCOUNT_BALANCES = "accounts.balances"
    CATEGORIES = "reference.categories"


# Seconds; shorter for financial aggregates, longer for reference data.
DEFAULT_CACHE_TTLS: Mapping[CacheFamily, int] = {
    CacheFamily.INVENTORY: 180,
    CacheFamily.CUSTOMERS: 300,
    CacheFamily.SUPPLIERS: 300,
    CacheFamily.SALES: 120,
    CacheFamily.DASHBOARD: 60,
    CacheFamily.ACCOUNTS: 3600,
    CacheFamily.REFERENCE: 3600,
}

DEFAULT_LOCK_WAIT_SECONDS = 30.0
DEFAULT_QUOTATION_VALIDITY_DAYS = 14


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MONEY_QUANTUM",
    "SEQUENCE_WIDTH",
    "PaymentMode",
    "TransactionType",
    "SaleStatus",
    "QuotationStatus",
    "SALE_TRANSITIONS",
    "QUOTATION_TRANSITIONS",
    "MovementType",
    "LedgerEntryType",
    "SheetName",
    "EntityType",
    "EntitySequence",
    "ENTITY_SEQUENCES",
    "PAYMENT_ACCOUNTS",
    "WALK_IN_CUSTOMER_ID",
    "CacheFamily",
    "CacheKey",
    "DEFAULT_CACHE_TTLS",
    "DEFAULT_LOCK_WAIT_SECONDS",
    "DEFAULT_QUOTATION_VALIDITY_DAYS",
]
