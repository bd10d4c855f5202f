"""Business logic layer for the BeiPoa back-office.

Every mutating entry point runs the same pipeline::

    Validating -> Locked -> Committing -> Invalidating -> Auditing -> Done

``Aborted`` is reachable from ``Validating`` and ``Locked`` only. Input checks
happen before the mutation lock is requested. Stock staging, credit checks and
ID allocation happen inside it, followed by the commit: batched appends, keyed
updates and a single workbook save. Business-rule failures and lock timeouts
come back as :class:`OperationResult` values. A failure after the commit has
started is raised as :class:`~beipoa_erp.errors.StoreWriteFailure` because the
workbook may then hold part of the change.

Reads go through the :class:`~beipoa_erp.cache.CacheLayer` and never take the
mutation lock.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from openpyxl.workbook import Workbook

from . import accounts, data_manager, log
from .audit import AuditTrail, WorkbookAuditTrail
from .cache import CacheLayer, cache_key
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    MONEY_QUANTUM,
    QUOTATION_TRANSITIONS,
    SALE_TRANSITIONS,
    WALK_IN_CUSTOMER_ID,
    CacheFamily,
    CacheKey,
    EntityType,
    LedgerEntryType,
    MovementType,
    PaymentMode,
    QuotationStatus,
    SaleStatus,
    SheetName,
    TransactionType,
)
from .data_manager import (
    CustomerRow,
    ProductRow,
    ReturnRow,
    Row,
    SaleHeaderRow,
    SaleLineRow,
    SupplierRow,
    iter_rows,
    serialize_row,
    to_decimal,
)
from .errors import (
    BusinessRuleViolation,
    Busy,
    InvalidInput,
    InvalidStatusTransition,
    MissingReferenceError,
    PipelineError,
    StoreWriteFailure,
)
from .inventory_ledger import ConsumptionResult, InventoryLedger, StockStaging
from .sequence import MutationLock, SequenceAllocator


ZERO = Decimal("0")


@dataclass(frozen=True)
class RuntimeContext:
    """Configuration plus the collaborators every operation works through."""

    settings: data_manager.ConfigSettings
    store: data_manager.WorkbookStore
    lock: MutationLock
    allocator: SequenceAllocator
    ledger: InventoryLedger
    cache: CacheLayer
    audit: AuditTrail

    @property
    def workbook(self) -> Workbook:
        return self.store.workbook


class PipelineState(str, Enum):
    VALIDATING = "Validating"
    LOCKED = "Locked"
    COMMITTING = "Committing"
    INVALIDATING = "Invalidating"
    AUDITING = "Auditing"
    DONE = "Done"
    ABORTED = "Aborted"


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a pipeline entry point.

    ``value`` carries the payload on success. On failure ``error`` is the
    message, ``error_kind`` names the error class, and ``retryable`` is only
    ``True`` for a lock timeout.
    """

    ok: bool
    value: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    retryable: bool = False
    state: PipelineState = PipelineState.DONE
    exception: Optional[PipelineError] = field(default=None, repr=False, compare=False)

    @classmethod
    def failure(cls, exc: PipelineError, *, state: PipelineState = PipelineState.ABORTED) -> "OperationResult":
        return cls(
            ok=False,
            error=str(exc),
            error_kind=exc.kind,
            retryable=exc.retryable,
            state=state,
            exception=exc,
        )


@dataclass(frozen=True)
class SaleLine:
    """One requested line; ``unit_price`` defaults to the product's sell price."""

    product_id: str
    quantity: Decimal
    unit_price: Optional[Decimal] = None


@dataclass(frozen=True)
class SaleCommand:
    """User intent for creating a completed sale."""

    lines: Sequence[SaleLine]
    payment_mode: PaymentMode
    customer_id: Optional[str] = None
    delivery_charge: Decimal = ZERO
    discount: Decimal = ZERO
    user: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class CancelSaleCommand:
    transaction_id: str
    reason: Optional[str] = None
    user: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ReturnLine:
    product_id: str
    quantity: Decimal


@dataclass(frozen=True)
class ReturnCommand:
    """User intent for returning some or all of a sale's goods."""

    sale_id: str
    lines: Sequence[ReturnLine]
    reason: Optional[str] = None
    user: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class QuotationCommand:
    """User intent for a non-binding price offer; stock is never touched."""

    lines: Sequence[SaleLine]
    customer_id: Optional[str] = None
    delivery_charge: Decimal = ZERO
    discount: Decimal = ZERO
    valid_until: Optional[datetime] = None
    draft: bool = False
    user: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ConvertQuotationCommand:
    quotation_id: str
    payment_mode: PaymentMode
    customer_id: Optional[str] = None
    user: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SaleDetail:
    header: SaleHeaderRow
    lines: Tuple[SaleLineRow, ...]
    status_history: Tuple[Row, ...]


@dataclass(frozen=True)
class DashboardSummary:
    sales_count: int
    revenue: Decimal
    cost_of_goods_sold: Decimal
    gross_profit: Decimal
    open_quotations: int
    low_stock_count: int
    receivables: Decimal


# Cache families each mutating operation makes stale.
INVALIDATION_SETS: Mapping[str, frozenset] = {
    "create_sale": frozenset({
        CacheFamily.SALES,
        CacheFamily.INVENTORY,
        CacheFamily.CUSTOMERS,
        CacheFamily.DASHBOARD,
        CacheFamily.ACCOUNTS,
    }),
    "cancel_sale": frozenset({
        CacheFamily.SALES,
        CacheFamily.INVENTORY,
        CacheFamily.CUSTOMERS,
        CacheFamily.DASHBOARD,
        CacheFamily.ACCOUNTS,
    }),
    "return_sale": frozenset({
        CacheFamily.SALES,
        CacheFamily.INVENTORY,
        CacheFamily.CUSTOMERS,
        CacheFamily.DASHBOARD,
        CacheFamily.ACCOUNTS,
    }),
    "convert_quotation_to_sale": frozenset({
        CacheFamily.SALES,
        CacheFamily.INVENTORY,
        CacheFamily.CUSTOMERS,
        CacheFamily.DASHBOARD,
        CacheFamily.ACCOUNTS,
    }),
    "create_quotation": frozenset({CacheFamily.SALES, CacheFamily.DASHBOARD}),
    "update_quotation_status": frozenset({CacheFamily.SALES, CacheFamily.DASHBOARD}),
    "delete_quotation": frozenset({CacheFamily.SALES, CacheFamily.DASHBOARD}),
    "add_product": frozenset({CacheFamily.INVENTORY, CacheFamily.REFERENCE, CacheFamily.DASHBOARD}),
    "receive_stock": frozenset({CacheFamily.INVENTORY, CacheFamily.DASHBOARD}),
    "add_customer": frozenset({CacheFamily.CUSTOMERS}),
    "add_supplier": frozenset({CacheFamily.SUPPLIERS}),
}


# ---------------------------------------------------------------------------
# Context lifecycle
# ---------------------------------------------------------------------------


def build_runtime_context(
    settings: data_manager.ConfigSettings,
    workbook: Workbook,
    *,
    audit: Optional[AuditTrail] = None,
    lock: Optional[MutationLock] = None,
    clock: Callable[[], float] = time.monotonic,
) -> RuntimeContext:
    """Wire the store, lock, allocator, ledger, cache and audit trail together.

    The cache is told to bypass itself whenever the calling thread holds the
    mutation lock, so nothing computed mid-transaction is ever cached.
    """

    store = data_manager.WorkbookStore(workbook, settings.data_file)
    lock = lock or MutationLock(settings.lock_wait_seconds)
    allocator = SequenceAllocator(store, lock)
    return RuntimeContext(
        settings=settings,
        store=store,
        lock=lock,
        allocator=allocator,
        ledger=InventoryLedger(store, allocator),
        cache=CacheLayer(settings.cache_ttls, clock=clock, bypass_when=lock.held_by_current_thread),
        audit=audit if audit is not None else WorkbookAuditTrail(store),
    )


def load_runtime_context(config_path: Optional[Path] = None, *, audit: Optional[AuditTrail] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the pipeline.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        audit (AuditTrail | None): Audit collaborator; defaults to the
            workbook's ``AuditLog`` sheet.

    Returns:
        RuntimeContext: Fully wired context ready for the entry points.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_runtime_context(settings, workbook, audit=audit)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Save the in-memory workbook to the configured data file."""

    context.store.flush()
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk, dropping unsaved edits and cached reads.

    The returned context shares the mutation lock of ``context`` so callers
    that still hold the old context stay serialized with the new one. Use
    this after a :class:`~beipoa_erp.errors.StoreWriteFailure` to reconcile
    from what actually reached the file.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    audit = None if isinstance(context.audit, WorkbookAuditTrail) else context.audit
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return build_runtime_context(context.settings, workbook, audit=audit, lock=context.lock)


# ---------------------------------------------------------------------------
# Pipeline machinery
# ---------------------------------------------------------------------------


class PipelineTrace:
    """Tracks and logs the state of one pipeline run."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        self.state = PipelineState.VALIDATING
        self.history: List[PipelineState] = [self.state]

    def advance(self, state: PipelineState) -> None:
        log.debug("%s: %s -> %s", self.operation, self.state.value, state.value)
        self.state = state
        self.history.append(state)


@dataclass
class _Outcome:
    value: Dict[str, Any]
    module: str
    details: Any
    before: Any = None
    after: Any = None


@dataclass
class _Plan:
    """What :func:`_run_pipeline` commits once the locked checks have passed."""

    commit: Callable[[], _Outcome]
    transaction_id: Optional[str] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def _resolve_user(context: RuntimeContext, user: Optional[str]) -> str:
    return user or context.settings.default_user


def _run_pipeline(
    context: RuntimeContext,
    operation: str,
    *,
    user: str,
    validate: Callable[[], None],
    prepare: Callable[[], _Plan],
) -> OperationResult:
    """Drive one mutating operation through the pipeline states.

    ``validate`` runs without the lock. ``prepare`` runs inside it and may
    stage work and raise business errors; nothing it does reaches the
    workbook. The returned plan's ``commit`` performs every write, after which
    the workbook is saved once.

    Raises:
        StoreWriteFailure: If anything fails once the commit has started.
    """

    trace = PipelineTrace(operation)
    commit_started = False
    outcome: Optional[_Outcome] = None
    try:
        validate()
        with context.lock.hold(operation):
            trace.advance(PipelineState.LOCKED)
            plan = prepare()
            trace.advance(PipelineState.COMMITTING)
            commit_started = True
            try:
                outcome = plan.commit()
                context.store.flush()
            except Exception as exc:
                log.exception(
                    "Commit of '%s' (transaction '%s') failed; reconcile the workbook",
                    operation,
                    plan.transaction_id,
                )
                raise StoreWriteFailure(
                    f"{operation} may not have completed: {exc}",
                    transaction_id=plan.transaction_id,
                ) from exc
    except (BusinessRuleViolation, Busy) as exc:
        trace.advance(PipelineState.ABORTED)
        log.warning("%s aborted: %s", operation, exc)
        return OperationResult.failure(exc, state=trace.state)
    finally:
        if commit_started:
            trace.advance(PipelineState.INVALIDATING)
            _invalidate(context, operation)

    trace.advance(PipelineState.AUDITING)
    _emit_audit(context, user, operation, outcome)
    trace.advance(PipelineState.DONE)
    return OperationResult(ok=True, value=outcome.value, state=trace.state)


def _invalidate(context: RuntimeContext, operation: str) -> None:
    try:
        context.cache.invalidate_families(INVALIDATION_SETS[operation])
    except Exception:
        log.warning("Cache invalidation after '%s' failed", operation, exc_info=True)


def _emit_audit(context: RuntimeContext, user: str, operation: str, outcome: _Outcome) -> None:
    try:
        context.audit.record(user, outcome.module, operation, outcome.details, outcome.before, outcome.after)
    except Exception:
        log.warning("Audit record for '%s' was not written", operation, exc_info=True)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _decimal_input(value: Any, label: str) -> Decimal:
    try:
        return to_decimal(value)
    except ValueError as exc:
        raise InvalidInput(f"{label} is not a number: {value!r}") from exc


def require_positive_quantity(quantity: Any, *, label: str = "Quantity") -> Decimal:
    """Validate that a quantity is strictly positive.

    Raises:
        InvalidInput: If ``quantity`` is zero, negative, or not a number.
    """

    value = _decimal_input(quantity, label)
    if value <= ZERO:
        log.error("Quantity validation failed for %s: %s", label, value)
        raise InvalidInput(f"{label} must be greater than zero")
    return value


def _require_text(value: Optional[str], label: str) -> str:
    if value is None or not str(value).strip():
        raise InvalidInput(f"{label} is required")
    return str(value).strip()


def _coerce_payment_mode(mode: Union[PaymentMode, str]) -> PaymentMode:
    if isinstance(mode, PaymentMode):
        return mode
    try:
        return PaymentMode(mode)
    except ValueError as exc:
        log.error("Unsupported payment mode provided: %s", mode)
        raise InvalidInput(f"Unsupported payment mode: {mode}") from exc


def _normalize_lines(lines: Sequence[SaleLine]) -> Tuple[SaleLine, ...]:
    if not lines:
        raise InvalidInput("At least one line is required")
    normalized = []
    for number, line in enumerate(lines, start=1):
        product_id = _require_text(line.product_id, f"Line {number} product")
        quantity = require_positive_quantity(line.quantity, label=f"Line {number} quantity")
        unit_price = None
        if line.unit_price is not None:
            unit_price = accounts.require_nonnegative_money(line.unit_price, label=f"Line {number} unit price")
        normalized.append(SaleLine(product_id, quantity, unit_price))
    return tuple(normalized)


def _normalize_sale_command(command: SaleCommand) -> SaleCommand:
    mode = _coerce_payment_mode(command.payment_mode)
    if mode is PaymentMode.CREDIT and not command.customer_id:
        raise InvalidInput("A credit sale requires a customer")
    return replace(
        command,
        lines=_normalize_lines(command.lines),
        payment_mode=mode,
        delivery_charge=accounts.require_nonnegative_money(command.delivery_charge, label="Delivery charge"),
        discount=accounts.require_nonnegative_money(command.discount, label="Discount"),
    )


def _check_transition(
    transitions: Mapping[Any, frozenset],
    status_type: type,
    current: str,
    target: Enum,
    transaction_id: str,
) -> Enum:
    try:
        current_status = status_type(current)
    except ValueError as exc:
        raise InvalidStatusTransition(
            f"'{transaction_id}' has unrecognised status '{current}'") from exc
    if target not in transitions.get(current_status, frozenset()):
        log.warning(
            "Rejected status change of '%s' from %s to %s",
            transaction_id,
            current_status.value,
            target.value,
        )
        raise InvalidStatusTransition(
            f"'{transaction_id}' cannot move from {current_status.value} to {target.value}")
    return current_status


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _get_header(context: RuntimeContext, transaction_id: str) -> SaleHeaderRow:
    raw = context.store.find_by_key(SheetName.SALES, "TransactionID", transaction_id)
    if raw is None:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise MissingReferenceError(f"Unknown transaction id: {transaction_id}")
    return data_manager.deserialize_row(SaleHeaderRow, raw)


def _lines_of(context: RuntimeContext, transaction_id: str) -> List[SaleLineRow]:
    lines = [
        line for line in iter_rows(context.store, SheetName.SALE_LINES, SaleLineRow)
        if line.transaction_id == transaction_id
    ]
    return sorted(lines, key=lambda line: line.line_no)


def _status_row(
    transaction_id: str,
    from_status: Optional[Enum],
    to_status: Enum,
    *,
    reason: Optional[str],
    user: str,
    when: datetime,
) -> Row:
    return {
        "TransactionID": transaction_id,
        "DateTime": when.isoformat(),
        "FromStatus": from_status.value if from_status is not None else None,
        "ToStatus": to_status.value,
        "Reason": reason,
        "ChangedBy": user,
    }


def _set_status(
    context: RuntimeContext,
    transaction_id: str,
    from_status: Optional[Enum],
    to_status: Enum,
    *,
    reason: Optional[str],
    user: str,
    when: datetime,
    extra: Optional[Mapping[str, Any]] = None,
) -> None:
    patch: Dict[str, Any] = {"Status": to_status.value}
    if extra:
        patch.update(extra)
    context.store.update_by_key(SheetName.SALES, "TransactionID", transaction_id, patch)
    context.store.append_rows(SheetName.STATUS_LOG, [
        _status_row(transaction_id, from_status, to_status, reason=reason, user=user, when=when)
    ])


def _is_named_customer(customer_id: Optional[str]) -> bool:
    return bool(customer_id) and customer_id != WALK_IN_CUSTOMER_ID


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _PricedLine:
    product_id: str
    quantity: Decimal
    unit_price: Decimal
    line_total: Decimal
    consumption: Optional[ConsumptionResult] = None


@dataclass
class _StagedSale:
    command: SaleCommand
    lines: List[_PricedLine]
    subtotal: Decimal
    grand_total: Decimal
    customer: Optional[CustomerRow]
    staging: Optional[StockStaging] = None


def _resolve_customer(context: RuntimeContext, customer_id: Optional[str]) -> Optional[CustomerRow]:
    if not customer_id:
        return None
    customer = accounts.get_customer(context.store, customer_id)
    if not customer.is_active:
        log.warning("Attempted transaction with inactive customer '%s'", customer_id)
        raise BusinessRuleViolation(f"Customer '{customer_id}' is inactive")
    return customer


def _price_lines(
    context: RuntimeContext,
    lines: Sequence[SaleLine],
    staging: Optional[StockStaging] = None,
) -> List[_PricedLine]:
    priced = []
    for line in lines:
        product = context.ledger.get_product(line.product_id)
        if not product.is_active:
            log.warning("Attempted transaction on inactive product '%s'", line.product_id)
            raise BusinessRuleViolation(f"Product '{line.product_id}' is inactive")
        consumption = staging.consume(line.product_id, line.quantity) if staging is not None else None
        unit_price = line.unit_price if line.unit_price is not None else product.sell_price
        priced.append(_PricedLine(
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price=unit_price,
            line_total=(unit_price * line.quantity).quantize(MONEY_QUANTUM),
            consumption=consumption,
        ))
    return priced


def _totals(lines: Sequence[_PricedLine], delivery_charge: Decimal, discount: Decimal) -> Tuple[Decimal, Decimal]:
    subtotal = sum((line.line_total for line in lines), ZERO).quantize(MONEY_QUANTUM)
    grand_total = (subtotal + delivery_charge - discount).quantize(MONEY_QUANTUM)
    if grand_total < ZERO:
        raise InvalidInput("Discount cannot exceed the subtotal plus delivery charge")
    return subtotal, grand_total


def _stage_sale(context: RuntimeContext, command: SaleCommand) -> _StagedSale:
    """Consume stock on a working copy and run the credit check.

    The first :class:`~beipoa_erp.errors.InsufficientStock` aborts the whole
    sale. The staging object is discarded, so no line's stock changes.
    """

    customer = _resolve_customer(context, command.customer_id)
    staging = context.ledger.stage()
    lines = _price_lines(context, command.lines, staging)
    subtotal, grand_total = _totals(lines, command.delivery_charge, command.discount)
    if command.payment_mode is PaymentMode.CREDIT:
        accounts.check_credit(customer, grand_total)
    return _StagedSale(
        command=command,
        lines=lines,
        subtotal=subtotal,
        grand_total=grand_total,
        customer=customer,
        staging=staging,
    )


def _commit_sale(
    context: RuntimeContext,
    staged: _StagedSale,
    *,
    transaction_id: str,
    user: str,
    when: datetime,
    source_quotation_id: Optional[str] = None,
) -> Tuple[Optional[Row], Optional[Row]]:
    """Write header, lines, batch movements, balances and the ledger entry."""

    command = staged.command
    customer_id = command.customer_id or WALK_IN_CUSTOMER_ID
    header = SaleHeaderRow(
        transaction_id=transaction_id,
        date_time=when.isoformat(),
        transaction_type=TransactionType.SALE.value,
        customer_id=customer_id,
        payment_mode=command.payment_mode.value,
        status=SaleStatus.COMPLETED.value,
        subtotal=staged.subtotal,
        delivery_charge=command.delivery_charge,
        discount=command.discount,
        grand_total=staged.grand_total,
        created_by=user,
        valid_until=None,
        converted_sale_id=None,
        source_quotation_id=source_quotation_id,
    )
    context.store.append_rows(SheetName.SALES, [serialize_row(header)])
    context.store.append_rows(SheetName.SALE_LINES, [
        serialize_row(SaleLineRow(
            transaction_id=transaction_id,
            line_no=number,
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price=line.unit_price,
            line_total=line.line_total,
            cost_of_goods_sold=line.consumption.cost_of_goods_sold if line.consumption else ZERO,
        ))
        for number, line in enumerate(staged.lines, start=1)
    ])
    staged.staging.commit(transaction_id, timestamp=when)
    context.store.append_rows(SheetName.STATUS_LOG, [
        _status_row(transaction_id, None, SaleStatus.COMPLETED, reason="Created", user=user, when=when)
    ])

    before = after = None
    if _is_named_customer(command.customer_id):
        if command.payment_mode is PaymentMode.CREDIT:
            before, after = accounts.adjust_customer_balance(context.store, customer_id, staged.grand_total)
        accounts.record_customer_purchase(context.store, customer_id, staged.grand_total, when=when)

    accounts.post_ledger_entry(
        context.store,
        context.allocator,
        account_id=accounts.payment_account_for(command.payment_mode),
        amount=staged.grand_total,
        transaction_id=transaction_id,
        entry_type=LedgerEntryType.SALE,
        description=f"Sale {transaction_id}",
        user=user,
        when=when,
    )
    return before, after


def _sale_details(transaction_id: str, staged: _StagedSale) -> Dict[str, Any]:
    return {
        "transaction_id": transaction_id,
        "customer_id": staged.command.customer_id,
        "payment_mode": staged.command.payment_mode.value,
        "grand_total": staged.grand_total,
        "cost_of_goods_sold": staged.staging.cost_of_goods_sold,
        "lines": [
            {"product_id": line.product_id, "quantity": line.quantity, "unit_price": line.unit_price}
            for line in staged.lines
        ],
    }


def create_sale(context: RuntimeContext, command: SaleCommand) -> OperationResult:
    """Record a completed sale.

    Stock for every line is consumed FIFO on a staging copy. For credit sales
    the customer's balance plus the grand total must stay within the credit
    limit. The transaction ID is allocated inside the same lock acquisition
    as the writes that use it.

    Args:
        context (RuntimeContext): Runtime context.
        command (SaleCommand): Lines, payment mode, optional customer, and
            delivery charge/discount.

    Returns:
        OperationResult: ``value`` holds ``transaction_id`` and
            ``grand_total`` on success. Failures carry ``InvalidInput``,
            ``InsufficientStock``, ``CreditLimitExceeded`` or ``Busy``.

    Raises:
        StoreWriteFailure: If the commit fails after it started.
    """

    user = _resolve_user(context, command.user)
    when = _resolve_timestamp(command.timestamp)
    normalized: List[SaleCommand] = []

    def validate() -> None:
        normalized.append(_normalize_sale_command(command))

    def prepare() -> _Plan:
        staged = _stage_sale(context, normalized[0])
        transaction_id = context.allocator.next_id(EntityType.SALE)

        def commit() -> _Outcome:
            before, after = _commit_sale(context, staged, transaction_id=transaction_id, user=user, when=when)
            log.info(
                "Recorded sale '%s' (%d lines, total=%s, cogs=%s)",
                transaction_id,
                len(staged.lines),
                staged.grand_total,
                staged.staging.cost_of_goods_sold,
            )
            return _Outcome(
                value={"transaction_id": transaction_id, "grand_total": staged.grand_total},
                module="Sales",
                details=_sale_details(transaction_id, staged),
                before=before,
                after=after,
            )

        return _Plan(commit=commit, transaction_id=transaction_id)

    return _run_pipeline(context, "create_sale", user=user, validate=validate, prepare=prepare)


def _quantities_by_product(lines: Sequence[SaleLineRow]) -> "OrderedDict[str, Decimal]":
    totals: "OrderedDict[str, Decimal]" = OrderedDict()
    for line in lines:
        totals[line.product_id] = totals.get(line.product_id, ZERO) + line.quantity
    return totals


def _average_unit_cost(lines: Sequence[SaleLineRow], product_id: str) -> Optional[Decimal]:
    quantity = sum((line.quantity for line in lines if line.product_id == product_id), ZERO)
    if quantity <= ZERO:
        return None
    cost = sum((line.cost_of_goods_sold for line in lines if line.product_id == product_id), ZERO)
    return (cost / quantity).quantize(MONEY_QUANTUM)


def _goods_share(header: SaleHeaderRow) -> Decimal:
    """Fraction of each line price the customer actually paid after the discount."""

    if header.subtotal <= ZERO:
        return Decimal("1")
    return max(ZERO, (header.subtotal - header.discount) / header.subtotal)


def _require_sale(header: SaleHeaderRow) -> None:
    if header.transaction_type != TransactionType.SALE.value:
        raise InvalidInput(f"'{header.transaction_id}' is not a sale")


def cancel_sale(context: RuntimeContext, command: CancelSaleCommand) -> OperationResult:
    """Reverse a completed sale.

    Every line's stock goes back to the batches it was taken from, at those
    batches' costs. A credit sale's balance increase is reversed, a negating
    ledger entry is posted, and the status history gains a ``Cancelled``
    row. Only ``Completed`` sales can be cancelled.

    Raises:
        StoreWriteFailure: If the commit fails after it started.
    """

    user = _resolve_user(context, command.user)
    when = _resolve_timestamp(command.timestamp)
    transaction_id = command.transaction_id

    def validate() -> None:
        _require_text(transaction_id, "Transaction id")

    def prepare() -> _Plan:
        header = _get_header(context, transaction_id)
        _require_sale(header)
        current = _check_transition(
            SALE_TRANSITIONS, SaleStatus, header.status, SaleStatus.CANCELLED, transaction_id)
        lines = _lines_of(context, transaction_id)

        def commit() -> _Outcome:
            breakdown = context.ledger.breakdown_for(transaction_id)
            restored = []
            for product_id, quantity in _quantities_by_product(lines).items():
                result = context.ledger.restore(
                    product_id,
                    quantity,
                    _average_unit_cost(lines, product_id),
                    breakdown=breakdown.get(product_id, ()),
                    transaction_id=transaction_id,
                    movement_type=MovementType.CANCEL,
                    timestamp=when,
                )
                restored.append({"product_id": product_id, "quantity": quantity, "synthetic": result.synthetic})

            before = after = None
            if _is_named_customer(header.customer_id):
                if header.payment_mode == PaymentMode.CREDIT.value:
                    before, after = accounts.adjust_customer_balance(
                        context.store, header.customer_id, -header.grand_total)
                accounts.record_customer_purchase(context.store, header.customer_id, -header.grand_total)

            accounts.post_ledger_entry(
                context.store,
                context.allocator,
                account_id=accounts.payment_account_for(_coerce_payment_mode(header.payment_mode)),
                amount=-header.grand_total,
                transaction_id=transaction_id,
                entry_type=LedgerEntryType.CANCELLATION,
                description=f"Cancellation of {transaction_id}",
                user=user,
                when=when,
            )
            _set_status(
                context,
                transaction_id,
                current,
                SaleStatus.CANCELLED,
                reason=command.reason,
                user=user,
                when=when,
            )
            log.info("Cancelled sale '%s' (total=%s)", transaction_id, header.grand_total)
            return _Outcome(
                value={"transaction_id": transaction_id},
                module="Sales",
                details={"transaction_id": transaction_id, "reason": command.reason, "restored": restored},
                before=before,
                after=after,
            )

        return _Plan(commit=commit, transaction_id=transaction_id)

    return _run_pipeline(context, "cancel_sale", user=user, validate=validate, prepare=prepare)


def return_sale(context: RuntimeContext, command: ReturnCommand) -> OperationResult:
    """Take back part or all of a sale's goods and refund them.

    Each product may be returned up to the quantity sold minus what earlier
    returns already took back. Stock goes back into the most recently
    consumed batches of the sale first. The refund is the returned quantity
    at the average unit price of the product's lines, reduced by the share
    of the sale discount, and is capped at what remains of the grand total.
    The return that brings the sale to fully returned refunds whatever
    remains of the grand total, so delivery charges settle exactly.

    Returns:
        OperationResult: ``value`` holds ``return_ids``, ``refund_total`` and
            the new ``status``.
    """

    user = _resolve_user(context, command.user)
    when = _resolve_timestamp(command.timestamp)
    sale_id = command.sale_id
    requested: "OrderedDict[str, Decimal]" = OrderedDict()

    def validate() -> None:
        _require_text(sale_id, "Sale id")
        if not command.lines:
            raise InvalidInput("At least one return line is required")
        for number, line in enumerate(command.lines, start=1):
            product_id = _require_text(line.product_id, f"Return line {number} product")
            quantity = require_positive_quantity(line.quantity, label=f"Return line {number} quantity")
            requested[product_id] = requested.get(product_id, ZERO) + quantity

    def prepare() -> _Plan:
        header = _get_header(context, sale_id)
        _require_sale(header)
        lines = _lines_of(context, sale_id)
        sold = _quantities_by_product(lines)
        earlier = [ret for ret in iter_rows(context.store, SheetName.RETURNS, ReturnRow) if ret.sale_id == sale_id]
        returned: Dict[str, Decimal] = {}
        for ret in earlier:
            returned[ret.product_id] = returned.get(ret.product_id, ZERO) + ret.quantity

        for product_id, quantity in requested.items():
            if product_id not in sold:
                raise InvalidInput(f"'{product_id}' is not part of sale '{sale_id}'")
            returnable = sold[product_id] - returned.get(product_id, ZERO)
            if quantity > returnable:
                raise InvalidInput(
                    f"Cannot return {quantity} x '{product_id}' from '{sale_id}'; {returnable} returnable")

        fully_returned = all(
            returned.get(product_id, ZERO) + requested.get(product_id, ZERO) >= quantity
            for product_id, quantity in sold.items()
        )
        target = SaleStatus.RETURNED if fully_returned else SaleStatus.PARTIALLY_RETURNED
        current = _check_transition(SALE_TRANSITIONS, SaleStatus, header.status, target, sale_id)

        # Goods are refunded net of the sale discount; never more than was paid.
        goods_share = _goods_share(header)
        already_refunded = sum((ret.refund_amount for ret in earlier), ZERO)
        refundable = max(ZERO, header.grand_total - already_refunded)
        refunds: "OrderedDict[str, Decimal]" = OrderedDict()
        for product_id, quantity in requested.items():
            product_lines = [line for line in lines if line.product_id == product_id]
            line_total = sum((line.line_total for line in product_lines), ZERO)
            refund = (line_total * goods_share / sold[product_id] * quantity).quantize(MONEY_QUANTUM)
            refunds[product_id] = max(ZERO, min(refund, refundable - sum(refunds.values(), ZERO)))
        if fully_returned:
            last_product = next(reversed(refunds))
            refunds[last_product] += refundable - sum(refunds.values(), ZERO)
        refund_total = sum(refunds.values(), ZERO).quantize(MONEY_QUANTUM)
        return_ids = [context.allocator.next_id(EntityType.RETURN) for _ in requested]

        def commit() -> _Outcome:
            breakdown = context.ledger.breakdown_for(sale_id)
            rows = []
            for return_id, (product_id, quantity) in zip(return_ids, requested.items()):
                result = context.ledger.restore(
                    product_id,
                    quantity,
                    _average_unit_cost(lines, product_id),
                    breakdown=list(reversed(breakdown.get(product_id, []))),
                    transaction_id=sale_id,
                    movement_type=MovementType.RETURN,
                    timestamp=when,
                )
                rows.append(serialize_row(ReturnRow(
                    return_id=return_id,
                    date_time=when.isoformat(),
                    sale_id=sale_id,
                    product_id=product_id,
                    quantity=quantity,
                    refund_amount=refunds[product_id],
                    cost_reversed=result.cost_restored,
                    reason=command.reason,
                    created_by=user,
                )))
            context.store.append_rows(SheetName.RETURNS, rows)

            before = after = None
            if _is_named_customer(header.customer_id):
                if header.payment_mode == PaymentMode.CREDIT.value:
                    before, after = accounts.adjust_customer_balance(
                        context.store, header.customer_id, -refund_total)
                accounts.record_customer_purchase(context.store, header.customer_id, -refund_total)

            accounts.post_ledger_entry(
                context.store,
                context.allocator,
                account_id=accounts.payment_account_for(_coerce_payment_mode(header.payment_mode)),
                amount=-refund_total,
                transaction_id=sale_id,
                entry_type=LedgerEntryType.REFUND,
                description=f"Refund on {sale_id}",
                user=user,
                when=when,
            )
            _set_status(context, sale_id, current, target, reason=command.reason, user=user, when=when)
            log.info("Recorded return on sale '%s' (refund=%s, status=%s)", sale_id, refund_total, target.value)
            return _Outcome(
                value={"return_ids": return_ids, "refund_total": refund_total, "status": target.value},
                module="Sales",
                details={
                    "sale_id": sale_id,
                    "return_ids": return_ids,
                    "refund_total": refund_total,
                    "lines": [{"product_id": pid, "quantity": qty} for pid, qty in requested.items()],
                },
                before=before,
                after=after,
            )

        return _Plan(commit=commit, transaction_id=sale_id)

    return _run_pipeline(context, "return_sale", user=user, validate=validate, prepare=prepare)


# ---------------------------------------------------------------------------
# Quotations
# ---------------------------------------------------------------------------


def create_quotation(context: RuntimeContext, command: QuotationCommand) -> OperationResult:
    """Record a price offer without consuming or checking stock.

    ``ValidUntil`` defaults to the creation time plus the configured
    ``QuotationValidityDays``. New quotations start ``Pending`` unless
    ``draft`` is set.
    """

    user = _resolve_user(context, command.user)
    when = _resolve_timestamp(command.timestamp)
    normalized: List[QuotationCommand] = []

    def validate() -> None:
        normalized.append(replace(
            command,
            lines=_normalize_lines(command.lines),
            delivery_charge=accounts.require_nonnegative_money(command.delivery_charge, label="Delivery charge"),
            discount=accounts.require_nonnegative_money(command.discount, label="Discount"),
        ))

    def prepare() -> _Plan:
        quote = normalized[0]
        _resolve_customer(context, quote.customer_id)
        lines = _price_lines(context, quote.lines)
        subtotal, grand_total = _totals(lines, quote.delivery_charge, quote.discount)
        valid_until = quote.valid_until or when + timedelta(days=context.settings.quotation_validity_days)
        status = QuotationStatus.DRAFT if quote.draft else QuotationStatus.PENDING
        transaction_id = context.allocator.next_id(EntityType.QUOTATION)

        def commit() -> _Outcome:
            header = SaleHeaderRow(
                transaction_id=transaction_id,
                date_time=when.isoformat(),
                transaction_type=TransactionType.QUOTATION.value,
                customer_id=quote.customer_id,
                payment_mode=None,
                status=status.value,
                subtotal=subtotal,
                delivery_charge=quote.delivery_charge,
                discount=quote.discount,
                grand_total=grand_total,
                created_by=user,
                valid_until=valid_until.isoformat(),
                converted_sale_id=None,
                source_quotation_id=None,
            )
            context.store.append_rows(SheetName.SALES, [serialize_row(header)])
            context.store.append_rows(SheetName.SALE_LINES, [
                serialize_row(SaleLineRow(
                    transaction_id=transaction_id,
                    line_no=number,
                    product_id=line.product_id,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    line_total=line.line_total,
                    cost_of_goods_sold=ZERO,
                ))
                for number, line in enumerate(lines, start=1)
            ])
            context.store.append_rows(SheetName.STATUS_LOG, [
                _status_row(transaction_id, None, status, reason="Created", user=user, when=when)
            ])
            log.info("Recorded quotation '%s' (total=%s, valid until %s)", transaction_id, grand_total, valid_until)
            return _Outcome(
                value={"transaction_id": transaction_id, "grand_total": grand_total},
                module="Quotations",
                details={"transaction_id": transaction_id, "customer_id": quote.customer_id, "grand_total": grand_total},
            )

        return _Plan(commit=commit, transaction_id=transaction_id)

    return _run_pipeline(context, "create_quotation", user=user, validate=validate, prepare=prepare)


def _require_quotation(header: SaleHeaderRow) -> None:
    if header.transaction_type != TransactionType.QUOTATION.value:
        raise InvalidInput(f"'{header.transaction_id}' is not a quotation")


def _is_expired(header: SaleHeaderRow, when: datetime) -> bool:
    if header.valid_until is None:
        return False
    now = when if when.tzinfo is not None else when.replace(tzinfo=UTC)
    return _parse_timestamp(header.valid_until) < now


def _change_quotation_status(
    context: RuntimeContext,
    operation: str,
    quotation_id: str,
    new_status: Union[QuotationStatus, str],
    *,
    user: Optional[str],
    reason: Optional[str],
    timestamp: Optional[datetime],
) -> OperationResult:
    actor = _resolve_user(context, user)
    when = _resolve_timestamp(timestamp)
    targets: List[QuotationStatus] = []

    def validate() -> None:
        _require_text(quotation_id, "Quotation id")
        try:
            target = QuotationStatus(new_status)
        except ValueError as exc:
            raise InvalidInput(f"Unknown quotation status: {new_status}") from exc
        if target is QuotationStatus.CONVERTED:
            raise InvalidInput("Quotations are converted through convert_quotation_to_sale")
        targets.append(target)

    def prepare() -> _Plan:
        target = targets[0]
        header = _get_header(context, quotation_id)
        _require_quotation(header)
        current = _check_transition(
            QUOTATION_TRANSITIONS, QuotationStatus, header.status, target, quotation_id)
        if target is QuotationStatus.ACCEPTED and _is_expired(header, when):
            log.warning("Rejected acceptance of expired quotation '%s'", quotation_id)
            raise InvalidStatusTransition(f"Quotation '{quotation_id}' expired on {header.valid_until}")

        def commit() -> _Outcome:
            _set_status(context, quotation_id, current, target, reason=reason, user=actor, when=when)
            log.info("Quotation '%s' moved from %s to %s", quotation_id, current.value, target.value)
            return _Outcome(
                value={"transaction_id": quotation_id, "status": target.value},
                module="Quotations",
                details={"transaction_id": quotation_id, "reason": reason},
                before={"Status": current.value},
                after={"Status": target.value},
            )

        return _Plan(commit=commit, transaction_id=quotation_id)

    return _run_pipeline(context, operation, user=actor, validate=validate, prepare=prepare)


def update_quotation_status(
    context: RuntimeContext,
    quotation_id: str,
    new_status: Union[QuotationStatus, str],
    *,
    user: Optional[str] = None,
    reason: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> OperationResult:
    """Move a quotation along Draft -> Pending -> Accepted/Rejected.

    The header's ``Status`` column holds the current state and every change
    appends a ``StatusLog`` row. Accepting an expired quotation is rejected.
    """

    return _change_quotation_status(
        context,
        "update_quotation_status",
        quotation_id,
        new_status,
        user=user,
        reason=reason,
        timestamp=timestamp,
    )


def delete_quotation(
    context: RuntimeContext,
    quotation_id: str,
    *,
    user: Optional[str] = None,
    reason: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> OperationResult:
    """Mark a quotation ``Deleted``; its rows stay in the workbook."""

    return _change_quotation_status(
        context,
        "delete_quotation",
        quotation_id,
        QuotationStatus.DELETED,
        user=user,
        reason=reason,
        timestamp=timestamp,
    )


def convert_quotation_to_sale(context: RuntimeContext, command: ConvertQuotationCommand) -> OperationResult:
    """Turn a ``Pending`` or ``Accepted`` quotation into a completed sale.

    The quotation must not be expired or already converted. Its lines, prices,
    delivery charge and discount become a sale that goes through the same
    stock and credit checks as :func:`create_sale`, all inside one lock
    acquisition. The quotation is stamped ``Converted`` with
    ``ConvertedSaleID`` and the sale records ``SourceQuotationID``.

    Returns:
        OperationResult: ``value`` holds ``sale_id``, ``quotation_id`` and
            ``grand_total``.
    """

    user = _resolve_user(context, command.user)
    when = _resolve_timestamp(command.timestamp)
    quotation_id = command.quotation_id
    modes: List[PaymentMode] = []

    def validate() -> None:
        _require_text(quotation_id, "Quotation id")
        modes.append(_coerce_payment_mode(command.payment_mode))

    def prepare() -> _Plan:
        header = _get_header(context, quotation_id)
        _require_quotation(header)
        if header.converted_sale_id:
            raise InvalidStatusTransition(
                f"Quotation '{quotation_id}' was already converted to '{header.converted_sale_id}'")
        current = _check_transition(
            QUOTATION_TRANSITIONS, QuotationStatus, header.status, QuotationStatus.CONVERTED, quotation_id)
        if _is_expired(header, when):
            log.warning("Rejected conversion of expired quotation '%s'", quotation_id)
            raise InvalidStatusTransition(f"Quotation '{quotation_id}' expired on {header.valid_until}")

        customer_id = command.customer_id or header.customer_id
        if not _is_named_customer(customer_id):
            customer_id = None
        sale_command = _normalize_sale_command(SaleCommand(
            lines=[
                SaleLine(line.product_id, line.quantity, line.unit_price)
                for line in _lines_of(context, quotation_id)
            ],
            payment_mode=modes[0],
            customer_id=customer_id,
            delivery_charge=header.delivery_charge,
            discount=header.discount,
            user=user,
            timestamp=when,
        ))
        staged = _stage_sale(context, sale_command)
        sale_id = context.allocator.next_id(EntityType.SALE)

        def commit() -> _Outcome:
            before, after = _commit_sale(
                context,
                staged,
                transaction_id=sale_id,
                user=user,
                when=when,
                source_quotation_id=quotation_id,
            )
            _set_status(
                context,
                quotation_id,
                current,
                QuotationStatus.CONVERTED,
                reason=f"Converted to {sale_id}",
                user=user,
                when=when,
                extra={"ConvertedSaleID": sale_id},
            )
            log.info("Converted quotation '%s' into sale '%s' (total=%s)", quotation_id, sale_id, staged.grand_total)
            details = _sale_details(sale_id, staged)
            details["quotation_id"] = quotation_id
            return _Outcome(
                value={"sale_id": sale_id, "quotation_id": quotation_id, "grand_total": staged.grand_total},
                module="Quotations",
                details=details,
                before=before,
                after=after,
            )

        return _Plan(commit=commit, transaction_id=sale_id)

    return _run_pipeline(context, "convert_quotation_to_sale", user=user, validate=validate, prepare=prepare)


# ---------------------------------------------------------------------------
# Master data
# ---------------------------------------------------------------------------


def add_product(
    context: RuntimeContext,
    *,
    product_name: str,
    sell_price: Decimal,
    category: str = "General",
    reorder_level: Decimal = ZERO,
    supplier_id: Optional[str] = None,
    product_id: Optional[str] = None,
    user: Optional[str] = None,
) -> OperationResult:
    actor = _resolve_user(context, user)
    prices: List[Decimal] = []

    def validate() -> None:
        _require_text(product_name, "Product name")
        prices.append(accounts.require_nonnegative_money(sell_price, label="Sell price"))
        if _decimal_input(reorder_level, "Reorder level") < ZERO:
            raise InvalidInput("Reorder level must be zero or positive")

    def prepare() -> _Plan:
        if supplier_id is not None:
            accounts.get_supplier(context.store, supplier_id)
        if product_id is not None and context.store.find_by_key(SheetName.PRODUCTS, "ProductID", product_id):
            raise InvalidInput(f"Product id already exists: {product_id}")

        def commit() -> _Outcome:
            product = accounts.add_product(
                context.store,
                context.allocator,
                product_name=product_name,
                sell_price=prices[0],
                category=category,
                reorder_level=reorder_level,
                supplier_id=supplier_id,
                product_id=product_id,
            )
            return _Outcome(
                value={"product_id": product.product_id},
                module="Inventory",
                details=serialize_row(product),
            )

        return _Plan(commit=commit, transaction_id=product_id)

    return _run_pipeline(context, "add_product", user=actor, validate=validate, prepare=prepare)


def receive_stock(
    context: RuntimeContext,
    product_id: str,
    quantity: Decimal,
    unit_cost: Decimal,
    *,
    supplier_id: Optional[str] = None,
    source_ref: Optional[str] = None,
    user: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> OperationResult:
    """Book a delivery as a new FIFO batch at ``unit_cost``."""

    actor = _resolve_user(context, user)
    when = _resolve_timestamp(timestamp)
    values: List[Decimal] = []

    def validate() -> None:
        _require_text(product_id, "Product id")
        values.append(require_positive_quantity(quantity))
        values.append(accounts.require_nonnegative_money(unit_cost, label="Unit cost"))

    def prepare() -> _Plan:
        context.ledger.get_product(product_id)
        if supplier_id is not None:
            accounts.get_supplier(context.store, supplier_id)

        def commit() -> _Outcome:
            batch = context.ledger.receive(
                product_id,
                values[0],
                values[1],
                supplier_id=supplier_id,
                source_ref=source_ref,
                timestamp=when,
            )
            return _Outcome(
                value={"batch_id": batch.batch_id, "product_id": product_id},
                module="Inventory",
                details=serialize_row(batch),
            )

        return _Plan(commit=commit)

    return _run_pipeline(context, "receive_stock", user=actor, validate=validate, prepare=prepare)


def add_customer(
    context: RuntimeContext,
    *,
    customer_name: str,
    phone: Optional[str] = None,
    email: Optional[str] = None,
    credit_limit: Decimal = ZERO,
    user: Optional[str] = None,
) -> OperationResult:
    actor = _resolve_user(context, user)
    limits: List[Decimal] = []

    def validate() -> None:
        _require_text(customer_name, "Customer name")
        limits.append(accounts.require_nonnegative_money(credit_limit, label="Credit limit"))

    def prepare() -> _Plan:
        def commit() -> _Outcome:
            customer = accounts.add_customer(
                context.store,
                context.allocator,
                customer_name=customer_name,
                phone=phone,
                email=email,
                credit_limit=limits[0],
            )
            return _Outcome(
                value={"customer_id": customer.customer_id},
                module="Customers",
                details=serialize_row(customer),
            )

        return _Plan(commit=commit)

    return _run_pipeline(context, "add_customer", user=actor, validate=validate, prepare=prepare)


def add_supplier(
    context: RuntimeContext,
    *,
    supplier_name: str,
    phone: Optional[str] = None,
    email: Optional[str] = None,
    user: Optional[str] = None,
) -> OperationResult:
    actor = _resolve_user(context, user)

    def validate() -> None:
        _require_text(supplier_name, "Supplier name")

    def prepare() -> _Plan:
        def commit() -> _Outcome:
            supplier = accounts.add_supplier(
                context.store,
                context.allocator,
                supplier_name=supplier_name,
                phone=phone,
                email=email,
            )
            return _Outcome(
                value={"supplier_id": supplier.supplier_id},
                module="Suppliers",
                details=serialize_row(supplier),
            )

        return _Plan(commit=commit)

    return _run_pipeline(context, "add_supplier", user=actor, validate=validate, prepare=prepare)


# ---------------------------------------------------------------------------
# Cached reads
# ---------------------------------------------------------------------------


def _headers(context: RuntimeContext, transaction_type: TransactionType) -> List[SaleHeaderRow]:
    return [
        header for header in iter_rows(context.store, SheetName.SALES, SaleHeaderRow)
        if header.transaction_type == transaction_type.value
    ]


def list_recent_sales(
    context: RuntimeContext,
    *,
    limit: int = 20,
    force_refresh: bool = False,
) -> List[SaleHeaderRow]:
    """Newest sales first, cached per ``limit``."""

    def load() -> Tuple[SaleHeaderRow, ...]:
        sales = _headers(context, TransactionType.SALE)
        sales.sort(key=lambda header: (header.date_time, header.transaction_id), reverse=True)
        return tuple(sales[:limit])

    key = cache_key(CacheKey.RECENT_SALES, str(limit))
    return list(context.cache.get_or_load(key, load, force_refresh=force_refresh))


def list_quotations(
    context: RuntimeContext,
    *,
    status: Optional[QuotationStatus] = None,
    force_refresh: bool = False,
) -> List[SaleHeaderRow]:
    def load() -> Tuple[SaleHeaderRow, ...]:
        return tuple(_headers(context, TransactionType.QUOTATION))

    quotations = context.cache.get_or_load(CacheKey.QUOTATIONS, load, force_refresh=force_refresh)
    if status is None:
        return list(quotations)
    wanted = QuotationStatus(status).value
    return [quotation for quotation in quotations if quotation.status == wanted]


def get_sale(context: RuntimeContext, transaction_id: str, *, force_refresh: bool = False) -> SaleDetail:
    """Header, lines and status history of a sale or quotation.

    Raises:
        MissingReferenceError: If ``transaction_id`` is unknown.
    """

    def load() -> SaleDetail:
        header = _get_header(context, transaction_id)
        history = tuple(
            row for row in context.store.scan(SheetName.STATUS_LOG)
            if row.get("TransactionID") == transaction_id
        )
        return SaleDetail(header=header, lines=tuple(_lines_of(context, transaction_id)), status_history=history)

    key = cache_key(CacheKey.SALE_DETAIL, transaction_id)
    return context.cache.get_or_load(key, load, force_refresh=force_refresh)


def list_products(
    context: RuntimeContext,
    *,
    include_inactive: bool = False,
    force_refresh: bool = False,
) -> List[ProductRow]:
    products = context.cache.get_or_load(
        CacheKey.PRODUCTS,
        lambda: tuple(accounts.list_products(context.store, include_inactive=True)),
        force_refresh=force_refresh,
    )
    if include_inactive:
        return list(products)
    return [product for product in products if product.is_active]


def list_categories(context: RuntimeContext, *, force_refresh: bool = False) -> List[str]:
    def load() -> Tuple[str, ...]:
        return tuple(sorted({product.category for product in accounts.list_products(context.store) if product.category}))

    return list(context.cache.get_or_load(CacheKey.CATEGORIES, load, force_refresh=force_refresh))


def _snapshot(context: RuntimeContext) -> Dict[str, Decimal]:
    levels = context.ledger.stock_levels()
    return {
        product.product_id: levels.get(product.product_id, ZERO)
        for product in accounts.list_products(context.store)
    }


def _low_stock(context: RuntimeContext) -> List[ProductRow]:
    levels = _snapshot(context)
    return [
        product for product in accounts.list_products(context.store)
        if levels.get(product.product_id, ZERO) <= product.reorder_level
    ]


def inventory_snapshot(context: RuntimeContext, *, force_refresh: bool = False) -> Dict[str, Decimal]:
    """On-hand quantity per active product, summed from remaining batches."""

    return dict(context.cache.get_or_load(
        CacheKey.INVENTORY_SNAPSHOT, lambda: _snapshot(context), force_refresh=force_refresh))


def low_stock_items(context: RuntimeContext, *, force_refresh: bool = False) -> List[ProductRow]:
    """Active products whose on-hand quantity is at or below their reorder level."""

    return list(context.cache.get_or_load(
        CacheKey.LOW_STOCK, lambda: tuple(_low_stock(context)), force_refresh=force_refresh))


def list_customers(context: RuntimeContext, *, force_refresh: bool = False) -> List[CustomerRow]:
    return list(context.cache.get_or_load(
        CacheKey.CUSTOMERS,
        lambda: tuple(accounts.list_customers(context.store)),
        force_refresh=force_refresh,
    ))


def get_customer(context: RuntimeContext, customer_id: str, *, force_refresh: bool = False) -> CustomerRow:
    key = cache_key(CacheKey.CUSTOMER_DETAIL, customer_id)
    return context.cache.get_or_load(
        key, lambda: accounts.get_customer(context.store, customer_id), force_refresh=force_refresh)


def list_suppliers(context: RuntimeContext, *, force_refresh: bool = False) -> List[SupplierRow]:
    return list(context.cache.get_or_load(
        CacheKey.SUPPLIERS,
        lambda: tuple(accounts.list_suppliers(context.store)),
        force_refresh=force_refresh,
    ))


def account_balances(context: RuntimeContext, *, force_refresh: bool = False) -> Dict[str, Decimal]:
    return dict(context.cache.get_or_load(
        CacheKey.ACCOUNT_BALANCES,
        lambda: accounts.account_balances(context.store),
        force_refresh=force_refresh,
    ))


def dashboard_summary(context: RuntimeContext, *, force_refresh: bool = False) -> DashboardSummary:
    """Headline figures: net revenue, COGS and profit after returns and
    cancellations, open quotations, low-stock count and receivables.

    Quotations past their ``ValidUntil`` no longer count as open.
    """

    def load() -> DashboardSummary:
        live = {
            header.transaction_id: header
            for header in _headers(context, TransactionType.SALE)
            if header.status != SaleStatus.CANCELLED.value
        }
        returns = [ret for ret in iter_rows(context.store, SheetName.RETURNS, ReturnRow) if ret.sale_id in live]
        revenue = sum((header.grand_total for header in live.values()), ZERO)
        revenue -= sum((ret.refund_amount for ret in returns), ZERO)
        cogs = sum(
            (line.cost_of_goods_sold
             for line in iter_rows(context.store, SheetName.SALE_LINES, SaleLineRow)
             if line.transaction_id in live),
            ZERO,
        )
        cogs -= sum((ret.cost_reversed for ret in returns), ZERO)
        open_statuses = {QuotationStatus.DRAFT.value, QuotationStatus.PENDING.value, QuotationStatus.ACCEPTED.value}
        now = datetime.now(UTC)
        open_quotations = sum(
            1 for quotation in _headers(context, TransactionType.QUOTATION)
            if quotation.status in open_statuses and not _is_expired(quotation, now)
        )
        receivables = sum((customer.current_balance for customer in accounts.list_customers(context.store)), ZERO)
        return DashboardSummary(
            sales_count=len(live),
            revenue=revenue.quantize(MONEY_QUANTUM),
            cost_of_goods_sold=cogs.quantize(MONEY_QUANTUM),
            gross_profit=(revenue - cogs).quantize(MONEY_QUANTUM),
            open_quotations=open_quotations,
            low_stock_count=len(_low_stock(context)),
            receivables=receivables.quantize(MONEY_QUANTUM),
        )

    return context.cache.get_or_load(CacheKey.DASHBOARD, load, force_refresh=force_refresh)


_REFRESHERS: Mapping[CacheFamily, Callable[..., Any]] = {
    CacheFamily.INVENTORY: inventory_snapshot,
    CacheFamily.CUSTOMERS: list_customers,
    CacheFamily.SUPPLIERS: list_suppliers,
    CacheFamily.SALES: list_recent_sales,
    CacheFamily.DASHBOARD: dashboard_summary,
    CacheFamily.ACCOUNTS: account_balances,
    CacheFamily.REFERENCE: list_categories,
}


def force_refresh_data(context: RuntimeContext, domain: Union[CacheFamily, str]) -> Any:
    """Drop a family's cached values and return its primary read, freshly loaded.

    Raises:
        InvalidInput: If ``domain`` does not name a cache family.
    """

    try:
        family = CacheFamily(domain.value if isinstance(domain, CacheFamily) else str(domain).lower())
    except ValueError as exc:
        raise InvalidInput(f"Unknown data domain: {domain}") from exc
    context.cache.invalidate_families([family])
    log.info("Forced refresh of '%s' data", family.value)
    return _REFRESHERS[family](context, force_refresh=True)
