"""Customers, suppliers, product master data and payment-account postings.

Functions that create rows allocate identifiers and therefore must run inside
the mutation lock; :class:`~beipoa_erp.sequence.SequenceAllocator` enforces it.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from . import log
from .constants import MONEY_QUANTUM, PAYMENT_ACCOUNTS, EntityType, LedgerEntryType, PaymentMode, SheetName
from .data_manager import (
    AccountRow,
    CustomerRow,
    ProductRow,
    Row,
    SupplierRow,
    WorkbookStore,
    deserialize_row,
    iter_rows,
    serialize_row,
    to_decimal,
)
from .errors import CreditLimitExceeded, InvalidInput, MissingReferenceError
from .sequence import SequenceAllocator


ZERO = Decimal("0")


def require_nonnegative_money(amount: Decimal, *, label: str = "Amount") -> Decimal:
    """Validate that a monetary value is nonnegative and round it to cents.

    Raises:
        InvalidInput: If ``amount`` is less than zero or not a number.
    """

    try:
        value = to_decimal(amount)
    except ValueError as exc:
        raise InvalidInput(f"{label} is not a number: {amount!r}") from exc
    if value < ZERO:
        log.error("Monetary value validation failed for %s: %s", label, value)
        raise InvalidInput(f"{label} must be zero or positive")
    return value.quantize(MONEY_QUANTUM)


def _require_name(value: Optional[str], label: str) -> str:
    if value is None or not str(value).strip():
        raise InvalidInput(f"{label} is required")
    return str(value).strip()


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


def get_customer(store: WorkbookStore, customer_id: str) -> CustomerRow:
    raw = store.find_by_key(SheetName.CUSTOMERS, "CustomerID", customer_id)
    if raw is None:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise MissingReferenceError(f"Unknown customer id: {customer_id}")
    return deserialize_row(CustomerRow, raw)


def list_customers(store: WorkbookStore, *, include_inactive: bool = False) -> List[CustomerRow]:
    customers = list(iter_rows(store, SheetName.CUSTOMERS, CustomerRow))
    if include_inactive:
        return customers
    return [customer for customer in customers if customer.is_active]


def add_customer(
    store: WorkbookStore,
    allocator: SequenceAllocator,
    *,
    customer_name: str,
    phone: Optional[str] = None,
    email: Optional[str] = None,
    credit_limit: Decimal = ZERO,
) -> CustomerRow:
    customer = CustomerRow(
        customer_id=allocator.next_id(EntityType.CUSTOMER),
        customer_name=_require_name(customer_name, "Customer name"),
        phone=phone,
        email=email,
        credit_limit=require_nonnegative_money(credit_limit, label="Credit limit"),
        current_balance=ZERO.quantize(MONEY_QUANTUM),
        total_purchases=ZERO.quantize(MONEY_QUANTUM),
        last_purchase_date=None,
        is_active=True,
    )
    store.append_rows(SheetName.CUSTOMERS, [serialize_row(customer)])
    log.info("Registered customer '%s' (%s)", customer.customer_id, customer.customer_name)
    return customer


def check_credit(customer: CustomerRow, amount: Decimal) -> None:
    """Reject a credit sale that would take the balance past the credit limit.

    Raises:
        CreditLimitExceeded: If ``current_balance + amount > credit_limit``.
    """

    if customer.current_balance + amount > customer.credit_limit:
        log.warning(
            "Credit limit exceeded for '%s': balance=%s amount=%s limit=%s",
            customer.customer_id,
            customer.current_balance,
            amount,
            customer.credit_limit,
        )
        raise CreditLimitExceeded(
            customer.customer_id,
            customer.current_balance,
            customer.credit_limit,
            amount,
        )


def adjust_customer_balance(store: WorkbookStore, customer_id: str, delta: Decimal) -> Tuple[Row, Row]:
    """Move a customer's outstanding credit balance by ``delta``.

    Returns:
        tuple[dict, dict]: The customer row before and after the change.
    """

    customer = get_customer(store, customer_id)
    return store.update_by_key(
        SheetName.CUSTOMERS,
        "CustomerID",
        customer_id,
        {"CurrentBalance": (customer.current_balance + delta).quantize(MONEY_QUANTUM)},
    )


def record_customer_purchase(
    store: WorkbookStore,
    customer_id: str,
    amount: Decimal,
    *,
    when: Optional[datetime] = None,
) -> Tuple[Row, Row]:
    """Add ``amount`` to lifetime purchases; negative amounts undo a sale."""

    customer = get_customer(store, customer_id)
    patch: Dict[str, object] = {
        "TotalPurchases": (customer.total_purchases + amount).quantize(MONEY_QUANTUM),
    }
    if when is not None and amount > ZERO:
        patch["LastPurchaseDate"] = when.isoformat()
    return store.update_by_key(SheetName.CUSTOMERS, "CustomerID", customer_id, patch)


# ---------------------------------------------------------------------------
# Suppliers and products
# ---------------------------------------------------------------------------


def get_supplier(store: WorkbookStore, supplier_id: str) -> SupplierRow:
    raw = store.find_by_key(SheetName.SUPPLIERS, "SupplierID", supplier_id)
    if raw is None:
        log.warning("Supplier lookup failed for id '%s'", supplier_id)
        raise MissingReferenceError(f"Unknown supplier id: {supplier_id}")
    return deserialize_row(SupplierRow, raw)


def list_suppliers(store: WorkbookStore) -> List[SupplierRow]:
    return [supplier for supplier in iter_rows(store, SheetName.SUPPLIERS, SupplierRow) if supplier.is_active]


def add_supplier(
    store: WorkbookStore,
    allocator: SequenceAllocator,
    *,
    supplier_name: str,
    phone: Optional[str] = None,
    email: Optional[str] = None,
) -> SupplierRow:
    supplier = SupplierRow(
        supplier_id=allocator.next_id(EntityType.SUPPLIER),
        supplier_name=_require_name(supplier_name, "Supplier name"),
        phone=phone,
        email=email,
        is_active=True,
    )
    store.append_rows(SheetName.SUPPLIERS, [serialize_row(supplier)])
    log.info("Registered supplier '%s' (%s)", supplier.supplier_id, supplier.supplier_name)
    return supplier


def add_product(
    store: WorkbookStore,
    allocator: SequenceAllocator,
    *,
    product_name: str,
    sell_price: Decimal,
    category: str = "General",
    reorder_level: Decimal = ZERO,
    supplier_id: Optional[str] = None,
    product_id: Optional[str] = None,
    is_active: bool = True,
) -> ProductRow:
    """Register a product; stock arrives later through batch receipts.

    Raises:
        InvalidInput: If the name is blank, the price negative, or an explicit
            ``product_id`` already exists.
        MissingReferenceError: If ``supplier_id`` is unknown.
    """

    if supplier_id is not None:
        get_supplier(store, supplier_id)
    if product_id is not None:
        if store.find_by_key(SheetName.PRODUCTS, "ProductID", product_id) is not None:
            raise InvalidInput(f"Product id already exists: {product_id}")
    else:
        product_id = allocator.next_id(EntityType.PRODUCT)

    product = ProductRow(
        product_id=product_id,
        product_name=_require_name(product_name, "Product name"),
        category=category or "General",
        sell_price=require_nonnegative_money(sell_price, label="Sell price"),
        last_cost=ZERO.quantize(MONEY_QUANTUM),
        stock_quantity=ZERO,
        reorder_level=to_decimal(reorder_level),
        supplier_id=supplier_id,
        is_active=is_active,
    )
    store.append_rows(SheetName.PRODUCTS, [serialize_row(product)])
    log.info("Registered product '%s' (%s)", product.product_id, product.product_name)
    return product


def list_products(store: WorkbookStore, *, include_inactive: bool = False) -> List[ProductRow]:
    products = list(iter_rows(store, SheetName.PRODUCTS, ProductRow))
    if include_inactive:
        return products
    return [product for product in products if product.is_active]


# ---------------------------------------------------------------------------
# Payment accounts and ledger
# ---------------------------------------------------------------------------


def payment_account_for(mode: PaymentMode) -> str:
    return PAYMENT_ACCOUNTS[mode][0]


def get_account(store: WorkbookStore, account_id: str) -> AccountRow:
    raw = store.find_by_key(SheetName.ACCOUNTS, "AccountID", account_id)
    if raw is None:
        raise MissingReferenceError(f"Unknown account id: {account_id}")
    return deserialize_row(AccountRow, raw)


def account_balances(store: WorkbookStore) -> Dict[str, Decimal]:
    return {account.account_id: account.balance for account in iter_rows(store, SheetName.ACCOUNTS, AccountRow)}


def post_ledger_entry(
    store: WorkbookStore,
    allocator: SequenceAllocator,
    *,
    account_id: str,
    amount: Decimal,
    transaction_id: str,
    entry_type: LedgerEntryType,
    description: str,
    user: str,
    when: datetime,
) -> Row:
    """Append a ledger row and move the account balance by ``amount``.

    Reversals post the negated amount as a new row; ledger rows are never
    edited.
    """

    account = get_account(store, account_id)
    entry = {
        "EntryID": allocator.next_id(EntityType.LEDGER_ENTRY),
        "DateTime": when.isoformat(),
        "AccountID": account_id,
        "TransactionID": transaction_id,
        "Amount": amount.quantize(MONEY_QUANTUM),
        "EntryType": entry_type.value,
        "Description": description,
        "CreatedBy": user,
    }
    store.append_rows(SheetName.LEDGER, [entry])
    store.update_by_key(
        SheetName.ACCOUNTS,
        "AccountID",
        account_id,
        {"Balance": (account.balance + amount).quantize(MONEY_QUANTUM)},
    )
    return entry
