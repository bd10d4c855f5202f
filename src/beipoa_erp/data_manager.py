"""Data access layer for the BeiPoa back-office.

This module provides low-level helpers that read from and write to the
``master_workbook.xlsx`` workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Record store: :class:`WorkbookStore` exposes each worksheet as a keyed
   collection with scan, lookup, batched append, and keyed update. Typed row
   dataclasses convert the raw ``{column: value}`` mappings into Python values.
"""


from __future__ import annotations

import configparser
import threading
from dataclasses import dataclass, field, fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar, Union

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import (
    DEFAULT_CACHE_TTLS,
    DEFAULT_LOCK_WAIT_SECONDS,
    DEFAULT_QUOTATION_VALIDITY_DAYS,
    MONEY_QUANTUM,
    CacheFamily,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"

Collection = Union[SheetName, str]
Row = Dict[str, Any]

# Column layout of every worksheet; row 1 of each sheet holds these headers.
SHEET_COLUMNS: Mapping[SheetName, Sequence[str]] = {
    SheetName.PRODUCTS: [
        "ProductID",
        "ProductName",
        "Category",
        "SellPrice",
        "LastCost",
        "StockQuantity",
        "ReorderLevel",
        "SupplierID",
        "IsActive",
    ],
    SheetName.STOCK_BATCHES: [
        "BatchID",
        "ProductID",
        "QuantityReceived",
        "QuantityRemaining",
        "UnitCost",
        "ReceivedAt",
        "SupplierID",
        "SourceRef",
    ],
    SheetName.STOCK_MOVEMENTS: [
        "MovementID",
        "DateTime",
        "TransactionID",
        "ProductID",
        "BatchID",
        "QuantityChange",
        "UnitCost",
        "MovementType",
    ],
    SheetName.CUSTOMERS: [
        "CustomerID",
        "CustomerName",
        "Phone",
        "Email",
        "CreditLimit",
        "CurrentBalance",
        "TotalPurchases",
        "LastPurchaseDate",
        "IsActive",
    ],
    SheetName.SUPPLIERS: [
        "SupplierID",
        "SupplierName",
        "Phone",
        "Email",
        "IsActive",
    ],
    SheetName.SALES: [
        "TransactionID",
        "DateTime",
        "Type",
        "CustomerID",
        "PaymentMode",
        "Status",
        "Subtotal",
        "DeliveryCharge",
        "Discount",
        "GrandTotal",
        "CreatedBy",
        "ValidUntil",
        "ConvertedSaleID",
        "SourceQuotationID",
    ],
    SheetName.SALE_LINES: [
        "TransactionID",
        "LineNo",
        "ProductID",
        "Quantity",
        "UnitPrice",
        "LineTotal",
        "CostOfGoodsSold",
    ],
    SheetName.STATUS_LOG: [
        "TransactionID",
        "DateTime",
        "FromStatus",
        "ToStatus",
        "Reason",
        "ChangedBy",
    ],
    SheetName.RETURNS: [
        "ReturnID",
        "DateTime",
        "SaleID",
        "ProductID",
        "Quantity",
        "RefundAmount",
        "CostReversed",
        "Reason",
        "CreatedBy",
    ],
    SheetName.ACCOUNTS: [
        "AccountID",
        "AccountName",
        "Balance",
    ],
    SheetName.LEDGER: [
        "EntryID",
        "DateTime",
        "AccountID",
        "TransactionID",
        "Amount",
        "EntryType",
        "Description",
        "CreatedBy",
    ],
    SheetName.AUDIT_LOG: [
        "Timestamp",
        "User",
        "Module",
        "Action",
        "Details",
        "Before",
        "After",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    default_user: str
    currency: str = "USD"
    quotation_validity_days: int = DEFAULT_QUOTATION_VALIDITY_DAYS
    lock_wait_seconds: float = DEFAULT_LOCK_WAIT_SECONDS
    cache_ttls: Mapping[CacheFamily, int] = field(default_factory=lambda: dict(DEFAULT_CACHE_TTLS))


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Defaults] DefaultUser`` are mandatory. ``[Locking]``
    and ``[Cache]`` are optional; absent options fall back to the package
    defaults. Relative ``DataFile`` entries are anchored at ``base_path`` (or
    the current working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If a numeric option cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
        default_user = parser.get("Defaults", "DefaultUser")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    currency = parser.get("System", "Currency", fallback="USD")
    validity_days = parser.getint(
        "Defaults", "QuotationValidityDays", fallback=DEFAULT_QUOTATION_VALIDITY_DAYS)
    lock_wait = parser.getfloat(
        "Locking", "WaitSeconds", fallback=DEFAULT_LOCK_WAIT_SECONDS)

    cache_ttls: Dict[CacheFamily, int] = dict(DEFAULT_CACHE_TTLS)
    if parser.has_section("Cache"):
        for family in CacheFamily:
            # configparser lower-cases option names, family values already are.
            if parser.has_option("Cache", family.value):
                cache_ttls[family] = parser.getint("Cache", family.value)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        default_user=default_user,
        currency=currency,
        quotation_validity_days=validity_days,
        lock_wait_seconds=lock_wait,
        cache_ttls=cache_ttls,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _collection_name(collection: Collection) -> str:
    return collection.value if isinstance(collection, SheetName) else str(collection)


def header_map(sheet: Worksheet) -> Dict[str, int]:
    """Map header titles on row 1 to their 1-based column indices."""

    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def locate_row(workbook: Workbook, sheet_name: Collection, key_column: str, key_value: Any) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Values are compared as text so that a numeric-looking identifier Excel
    stored as a number still matches its string form.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[_collection_name(sheet_name)]
    columns = header_map(sheet)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = columns[key_column]
    wanted = str(key_value)

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == wanted:
            return row_idx

    return None


class WorkbookStore:
    """Record store over an ``openpyxl`` workbook.

    Each worksheet is a collection whose first row names the columns. Rows go
    in and come out as ``{column: value}`` dictionaries. The store offers no
    multi-row transactions: :meth:`append_rows` writes a whole batch in one
    call and :meth:`flush` saves the workbook in one file write, which is the
    closest thing to an atomic commit the medium allows.

    An internal re-entrant guard serializes the primitives so that concurrent
    readers never see a half-appended batch. It is an I/O guard, not the
    business mutation lock.
    """

    def __init__(self, workbook: Workbook, data_file: Optional[Path] = None) -> None:
        self.workbook = workbook
        self.data_file = data_file
        self._guard = threading.RLock()
        self._indexes: Dict[Tuple[str, str], Tuple[Dict[str, int], int]] = {}

    def _sheet(self, collection: Collection) -> Worksheet:
        name = _collection_name(collection)
        if name not in self.workbook.sheetnames:
            raise KeyError(f"Unknown collection: {name}")
        return self.workbook[name]

    def columns(self, collection: Collection) -> List[str]:
        with self._guard:
            return list(header_map(self._sheet(collection)))

    def scan(self, collection: Collection) -> List[Row]:
        """Return every non-empty row of ``collection`` in sheet order."""

        with self._guard:
            sheet = self._sheet(collection)
            headers = [cell.value for cell in sheet[1]]
            rows: List[Row] = []
            for raw in sheet.iter_rows(min_row=2, values_only=True):
                if not any(cell is not None for cell in raw):
                    continue
                rows.append({
                    header: (raw[idx] if idx < len(raw) else None)
                    for idx, header in enumerate(headers)
                    if header is not None
                })
            return rows

    def key_values(self, collection: Collection, key_column: str, start_row: int = 2) -> Tuple[List[Any], int]:
        """Read one column from ``start_row`` to the last row.

        Rows are append-only, so a caller can pass the returned row number
        back in later to read only what was appended since.

        Returns:
            tuple[list, int]: The column values and the first row not read.

        Raises:
            KeyError: If ``key_column`` is not present in the header.
        """

        with self._guard:
            sheet = self._sheet(collection)
            column = self._key_column(sheet, key_column)
            values = [
                row[0]
                for row in sheet.iter_rows(min_row=start_row, min_col=column, max_col=column, values_only=True)
            ]
            return values, max(start_row, sheet.max_row + 1)

    @staticmethod
    def _key_column(sheet: Worksheet, key_column: str) -> int:
        column = header_map(sheet).get(key_column)
        if column is None:
            raise KeyError(f"Unknown column: {key_column}")
        return column

    def _row_of(self, collection: Collection, key_column: str, key_value: Any) -> Optional[int]:
        # Caller holds _guard. Same matching rules as locate_row.
        sheet = self._sheet(collection)
        column = self._key_column(sheet, key_column)
        wanted = str(key_value)
        slot = (sheet.title, key_column)
        keys, next_row = self._indexes.get(slot, ({}, 2))
        for offset, (value,) in enumerate(
                sheet.iter_rows(min_row=next_row, min_col=column, max_col=column, values_only=True)):
            if value is not None:
                keys.setdefault(str(value), next_row + offset)
        self._indexes[slot] = (keys, max(next_row, sheet.max_row + 1))

        row_index = keys.get(wanted)
        if row_index is None:
            return None
        current = sheet.cell(row=row_index, column=column).value
        if current is not None and str(current) == wanted:
            return row_index
        # Key cell rewritten outside update_by_key; search the sheet instead.
        self._indexes.pop(slot, None)
        return locate_row(self.workbook, collection, key_column, key_value)

    def find_by_key(self, collection: Collection, key_column: str, key_value: Any) -> Optional[Row]:
        with self._guard:
            row_index = self._row_of(collection, key_column, key_value)
            if row_index is None:
                return None
            return self._read_row(self._sheet(collection), row_index)

    def append_rows(self, collection: Collection, rows: Iterable[Mapping[str, Any]]) -> None:
        """Append ``rows`` to ``collection`` in a single call.

        Every row is checked against the header before the first one is
        written, so a bad column name leaves the sheet untouched.

        Raises:
            KeyError: If a row names a column the sheet does not have.
        """

        with self._guard:
            sheet = self._sheet(collection)
            columns = header_map(sheet)
            width = max(columns.values(), default=0)
            prepared: List[List[Any]] = []
            for row in rows:
                unknown = set(row) - set(columns)
                if unknown:
                    raise KeyError(
                        f"Unknown {_collection_name(collection)} column(s): {', '.join(sorted(unknown))}")
                values: List[Any] = [None] * width
                for column, value in row.items():
                    values[columns[column] - 1] = value
                prepared.append(values)
            for values in prepared:
                sheet.append(values)

    def update_by_key(
        self,
        collection: Collection,
        key_column: str,
        key_value: Any,
        patch: Mapping[str, Any],
    ) -> Tuple[Row, Row]:
        """Overwrite selected columns of the row whose ``key_column`` matches.

        Returns:
            tuple[dict, dict]: The row before and after the patch.

        Raises:
            KeyError: If the row or any referenced column cannot be found.
        """

        with self._guard:
            sheet = self._sheet(collection)
            row_index = self._row_of(collection, key_column, key_value)
            if row_index is None:
                raise KeyError(f"{_collection_name(collection)} row not found: {key_value}")

            columns = header_map(sheet)
            for column in patch:
                if column not in columns:
                    raise KeyError(f"Unknown {_collection_name(collection)} field: {column}")

            before = self._read_row(sheet, row_index)
            for column, value in patch.items():
                sheet.cell(row=row_index, column=columns[column], value=value)
            for column in patch:
                self._indexes.pop((sheet.title, column), None)
            after = self._read_row(sheet, row_index)
            return before, after

    def flush(self) -> None:
        """Save the workbook to ``data_file``; a store without a file is memory-only."""

        if self.data_file is None:
            return
        with self._guard:
            save_workbook(self.workbook, self.data_file)
        log.debug("Flushed workbook to '%s'", self.data_file)

    @staticmethod
    def _read_row(sheet: Worksheet, row_index: int) -> Row:
        headers = [cell.value for cell in sheet[1]]
        return {
            header: sheet.cell(row=row_index, column=idx + 1).value
            for idx, header in enumerate(headers)
            if header is not None
        }


# ---------------------------------------------------------------------------
# Typed rows
# ---------------------------------------------------------------------------


def to_decimal(value: Any) -> Decimal:
    """Coerce a cell value to :class:`Decimal`, treating blanks as zero."""

    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Not a number: {value!r}") from exc


def to_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(MONEY_QUANTUM)


def to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "y"}
    return bool(value)


def to_text(value: Any) -> str:
    return "" if value is None else str(value)


def to_optional_text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def to_int(value: Any) -> int:
    return int(to_decimal(value))


def _col(name: str, parse: Callable[[Any], Any] = to_text) -> Any:
    return field(metadata={"column": name, "parse": parse})


RowT = TypeVar("RowT")


def deserialize_row(row_type: Type[RowT], raw: Mapping[str, Any]) -> RowT:
    """Build a typed row from a raw ``{column: value}`` mapping."""

    values = {
        f.name: f.metadata["parse"](raw.get(f.metadata["column"]))
        for f in fields(row_type)  # type: ignore[arg-type]
    }
    return row_type(**values)


def serialize_row(record: Any) -> Row:
    """Convert a typed row back into the ``{column: value}`` form the store writes."""

    return {f.metadata["column"]: getattr(record, f.name) for f in fields(record)}


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str = _col("ProductID")
    product_name: str = _col("ProductName")
    category: str = _col("Category")
    sell_price: Decimal = _col("SellPrice", to_money)
    last_cost: Decimal = _col("LastCost", to_money)
    stock_quantity: Decimal = _col("StockQuantity", to_decimal)
    reorder_level: Decimal = _col("ReorderLevel", to_decimal)
    supplier_id: Optional[str] = _col("SupplierID", to_optional_text)
    is_active: bool = _col("IsActive", to_bool)


@dataclass(frozen=True)
class StockBatchRow:
    """One received lot of a product, consumed oldest-first."""

    batch_id: str = _col("BatchID")
    product_id: str = _col("ProductID")
    quantity_received: Decimal = _col("QuantityReceived", to_decimal)
    quantity_remaining: Decimal = _col("QuantityRemaining", to_decimal)
    unit_cost: Decimal = _col("UnitCost", to_money)
    received_at: str = _col("ReceivedAt")
    supplier_id: Optional[str] = _col("SupplierID", to_optional_text)
    source_ref: Optional[str] = _col("SourceRef", to_optional_text)


@dataclass(frozen=True)
class StockMovementRow:
    """Signed change to one batch caused by a receipt, sale, or reversal."""

    movement_id: str = _col("MovementID")
    date_time: str = _col("DateTime")
    transaction_id: Optional[str] = _col("TransactionID", to_optional_text)
    product_id: str = _col("ProductID")
    batch_id: str = _col("BatchID")
    quantity_change: Decimal = _col("QuantityChange", to_decimal)
    unit_cost: Decimal = _col("UnitCost", to_money)
    movement_type: str = _col("MovementType")


@dataclass(frozen=True)
class CustomerRow:
    customer_id: str = _col("CustomerID")
    customer_name: str = _col("CustomerName")
    phone: Optional[str] = _col("Phone", to_optional_text)
    email: Optional[str] = _col("Email", to_optional_text)
    credit_limit: Decimal = _col("CreditLimit", to_money)
    current_balance: Decimal = _col("CurrentBalance", to_money)
    total_purchases: Decimal = _col("TotalPurchases", to_money)
    last_purchase_date: Optional[str] = _col("LastPurchaseDate", to_optional_text)
    is_active: bool = _col("IsActive", to_bool)


@dataclass(frozen=True)
class SupplierRow:
    supplier_id: str = _col("SupplierID")
    supplier_name: str = _col("SupplierName")
    phone: Optional[str] = _col("Phone", to_optional_text)
    email: Optional[str] = _col("Email", to_optional_text)
    is_active: bool = _col("IsActive", to_bool)


@dataclass(frozen=True)
class SaleHeaderRow:
    """Header of a sale or quotation from the ``Sales`` sheet."""

    transaction_id: str = _col("TransactionID")
    date_time: str = _col("DateTime")
    transaction_type: str = _col("Type")
    customer_id: Optional[str] = _col("CustomerID", to_optional_text)
    payment_mode: Optional[str] = _col("PaymentMode", to_optional_text)
    status: str = _col("Status")
    subtotal: Decimal = _col("Subtotal", to_money)
    delivery_charge: Decimal = _col("DeliveryCharge", to_money)
    discount: Decimal = _col("Discount", to_money)
    grand_total: Decimal = _col("GrandTotal", to_money)
    created_by: str = _col("CreatedBy")
    valid_until: Optional[str] = _col("ValidUntil", to_optional_text)
    converted_sale_id: Optional[str] = _col("ConvertedSaleID", to_optional_text)
    source_quotation_id: Optional[str] = _col("SourceQuotationID", to_optional_text)


@dataclass(frozen=True)
class SaleLineRow:
    transaction_id: str = _col("TransactionID")
    line_no: int = _col("LineNo", to_int)
    product_id: str = _col("ProductID")
    quantity: Decimal = _col("Quantity", to_decimal)
    unit_price: Decimal = _col("UnitPrice", to_money)
    line_total: Decimal = _col("LineTotal", to_money)
    cost_of_goods_sold: Decimal = _col("CostOfGoodsSold", to_money)


@dataclass(frozen=True)
class ReturnRow:
    return_id: str = _col("ReturnID")
    date_time: str = _col("DateTime")
    sale_id: str = _col("SaleID")
    product_id: str = _col("ProductID")
    quantity: Decimal = _col("Quantity", to_decimal)
    refund_amount: Decimal = _col("RefundAmount", to_money)
    cost_reversed: Decimal = _col("CostReversed", to_money)
    reason: Optional[str] = _col("Reason", to_optional_text)
    created_by: str = _col("CreatedBy")


@dataclass(frozen=True)
class AccountRow:
    account_id: str = _col("AccountID")
    account_name: str = _col("AccountName")
    balance: Decimal = _col("Balance", to_money)


def iter_rows(store: WorkbookStore, collection: Collection, row_type: Type[RowT]) -> Iterable[RowT]:
    """Scan ``collection`` and yield each row converted to ``row_type``."""

    for raw in store.scan(collection):
        yield deserialize_row(row_type, raw)
