"""Unit tests for the business pipeline over an in-memory workbook."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from beipoa_erp import constants, core_logic, data_manager
from beipoa_erp.constants import PaymentMode, QuotationStatus, SaleStatus
from beipoa_erp.errors import InvalidInput, MissingReferenceError, StoreWriteFailure


def _sale(*lines, payment_mode=PaymentMode.CASH, customer_id=None, **kwargs) -> core_logic.SaleCommand:
    return core_logic.SaleCommand(
        lines=[core_logic.SaleLine(product_id, Decimal(quantity)) for product_id, quantity in lines],
        payment_mode=payment_mode,
        customer_id=customer_id,
        **kwargs,
    )


def _quote(*lines, **kwargs) -> core_logic.QuotationCommand:
    return core_logic.QuotationCommand(
        lines=[core_logic.SaleLine(product_id, Decimal(quantity)) for product_id, quantity in lines],
        **kwargs,
    )


def _stock(context, item_id):
    return context.ledger.current_stock(item_id)


def _customer(context, customer_id="CUST-000001"):
    return core_logic.accounts.get_customer(context.store, customer_id)


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_wires_collaborators(config_file, audit):
    """load_runtime_context should assemble settings, store and helpers."""

    context = core_logic.load_runtime_context(config_file, audit=audit)

    assert context.settings.shop_name == "Test Shop"
    assert context.store.data_file == context.settings.data_file
    assert context.allocator.lock is context.lock
    assert context.ledger.store is context.store
    assert context.audit is audit
    assert context.workbook is context.store.workbook


def test_ensure_schema_version_rejects_mismatch(memory_context):
    context = replace(memory_context, settings=replace(memory_context.settings, schema_version="1.0.0"))

    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(context)


def test_ensure_schema_version_accepts_expected(memory_context):
    core_logic.ensure_schema_version(memory_context)


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def test_create_sale_consumes_fifo_and_records_rows(stocked_context, audit):
    context = stocked_context

    result = core_logic.create_sale(context, _sale(("ITEM-000001", "7"), user="amina"))

    assert result.ok is True
    assert result.state is core_logic.PipelineState.DONE
    assert result.value == {"transaction_id": "SALE-000001", "grand_total": Decimal("140.00")}
    assert _stock(context, "ITEM-000001") == Decimal("3")

    detail = core_logic.get_sale(context, "SALE-000001")
    assert detail.header.status == SaleStatus.COMPLETED.value
    assert detail.header.customer_id == constants.WALK_IN_CUSTOMER_ID
    assert detail.header.created_by == "amina"
    assert [line.cost_of_goods_sold for line in detail.lines] == [Decimal("74.00")]
    assert [row["ToStatus"] for row in detail.status_history] == ["Completed"]
    assert core_logic.account_balances(context)["ACC-CASH"] == Decimal("140.00")
    audit.record.assert_called_once()
    assert audit.record.call_args.args[:3] == ("amina", "Sales", "create_sale")


def test_create_sale_uses_default_user(stocked_context):
    core_logic.create_sale(stocked_context, _sale(("ITEM-000002", "1")))

    assert core_logic.get_sale(stocked_context, "SALE-000001").header.created_by == "tester"


def test_sale_totals_apply_delivery_and_discount(stocked_context):
    command = replace(
        _sale(("ITEM-000002", "2")),
        delivery_charge=Decimal("3.50"),
        discount=Decimal("1.00"),
    )

    result = core_logic.create_sale(stocked_context, command)

    header = core_logic.get_sale(stocked_context, result.value["transaction_id"]).header
    assert header.subtotal == Decimal("10.00")
    assert header.grand_total == Decimal("12.50")


def test_line_unit_price_overrides_sell_price(stocked_context):
    command = core_logic.SaleCommand(
        lines=[core_logic.SaleLine("ITEM-000001", Decimal("1"), Decimal("18.00"))],
        payment_mode=PaymentMode.MOBILE_MONEY,
    )

    result = core_logic.create_sale(stocked_context, command)

    assert result.value["grand_total"] == Decimal("18.00")
    assert core_logic.account_balances(stocked_context)["ACC-MOBILE"] == Decimal("18.00")


def test_failed_line_leaves_every_line_untouched(stocked_context):
    """Insufficient stock on one line aborts the whole sale."""

    context = stocked_context

    result = core_logic.create_sale(
        context, _sale(("ITEM-000002", "2"), ("ITEM-000003", "5"), ("ITEM-000001", "1")))

    assert result.ok is False
    assert result.error_kind == "InsufficientStock"
    assert result.retryable is False
    assert result.state is core_logic.PipelineState.ABORTED
    assert _stock(context, "ITEM-000001") == Decimal("10")
    assert _stock(context, "ITEM-000002") == Decimal("10")
    assert _stock(context, "ITEM-000003") == Decimal("1")
    assert core_logic.list_recent_sales(context) == []


def test_credit_sale_over_limit_is_rejected(stocked_context):
    """Balance 900 plus a 150 sale exceeds the 1000 limit."""

    context = stocked_context
    command = replace(
        _sale(("ITEM-000001", "7"), payment_mode=PaymentMode.CREDIT, customer_id="CUST-000001"),
        delivery_charge=Decimal("10.00"),
    )

    result = core_logic.create_sale(context, command)

    assert result.ok is False
    assert result.error_kind == "CreditLimitExceeded"
    assert _customer(context).current_balance == Decimal("900.00")
    assert _stock(context, "ITEM-000001") == Decimal("10")


def test_credit_sale_up_to_limit_is_accepted(stocked_context):
    context = stocked_context

    result = core_logic.create_sale(
        context, _sale(("ITEM-000003", "1"), payment_mode=PaymentMode.CREDIT, customer_id="CUST-000001"))

    assert result.ok is True
    customer = _customer(context)
    assert customer.current_balance == Decimal("1000.00")
    assert customer.total_purchases == Decimal("100.00")
    assert customer.last_purchase_date is not None
    assert core_logic.account_balances(context)["ACC-AR"] == Decimal("100.00")


def test_cash_sale_to_named_customer_keeps_balance(stocked_context):
    context = stocked_context

    core_logic.create_sale(context, _sale(("ITEM-000002", "2"), customer_id="CUST-000001"))

    customer = _customer(context)
    assert customer.current_balance == Decimal("900.00")
    assert customer.total_purchases == Decimal("10.00")


def test_walk_in_customer_is_never_updated(stocked_context):
    context = stocked_context

    core_logic.create_sale(context, _sale(("ITEM-000002", "2"), customer_id=constants.WALK_IN_CUSTOMER_ID))

    assert _customer(context, constants.WALK_IN_CUSTOMER_ID).total_purchases == Decimal("0.00")


@pytest.mark.parametrize(
    "command, kind",
    [
        (_sale(("ITEM-000001", "0")), "InvalidInput"),
        (_sale(("ITEM-000001", "-2")), "InvalidInput"),
        (_sale(), "InvalidInput"),
        (_sale(("ITEM-000001", "1"), payment_mode=PaymentMode.CREDIT), "InvalidInput"),
        (_sale(("ITEM-000001", "1"), payment_mode="Barter"), "InvalidInput"),
        (_sale(("ITEM-000001", "1"), discount=Decimal("-1")), "InvalidInput"),
        (_sale(("ITEM-000001", "1"), discount=Decimal("50")), "InvalidInput"),
        (_sale(("ITEM-999999", "1")), "MissingReference"),
        (_sale(("ITEM-000001", "1"), customer_id="CUST-999999"), "MissingReference"),
    ],
)
def test_create_sale_rejects_invalid_commands(stocked_context, command, kind):
    result = core_logic.create_sale(stocked_context, command)

    assert result.ok is False
    assert result.error_kind == kind
    assert _stock(stocked_context, "ITEM-000001") == Decimal("10")


def test_inactive_product_cannot_be_sold(stocked_context):
    context = stocked_context
    context.store.update_by_key(constants.SheetName.PRODUCTS, "ProductID", "ITEM-000002", {"IsActive": False})

    result = core_logic.create_sale(context, _sale(("ITEM-000002", "1")))

    assert result.ok is False
    assert result.error_kind == "BusinessRuleViolation"


def test_recent_sales_cache_reflects_new_sale(stocked_context):
    """A read cached before a sale is invalidated by the sale's commit."""

    context = stocked_context
    assert core_logic.list_recent_sales(context) == []

    core_logic.create_sale(context, _sale(("ITEM-000002", "1")))

    assert [sale.transaction_id for sale in core_logic.list_recent_sales(context)] == ["SALE-000001"]


def test_read_overlapping_a_sale_does_not_cache_stale_rows(stocked_context, monkeypatch):
    """A lock-free read racing a commit must not pin pre-commit rows in the cache."""

    context = stocked_context
    original = core_logic._headers
    sold = []

    def headers_then_sell(ctx, transaction_type):
        rows = original(ctx, transaction_type)
        if not sold:
            cashier = threading.Thread(
                target=lambda: sold.append(core_logic.create_sale(context, _sale(("ITEM-000002", "1")))))
            cashier.start()
            cashier.join()
        return rows

    monkeypatch.setattr(core_logic, "_headers", headers_then_sell)

    assert core_logic.list_recent_sales(context) == []
    assert sold[0].ok is True
    assert [sale.transaction_id for sale in core_logic.list_recent_sales(context)] == ["SALE-000001"]


def test_recent_sales_newest_first_and_limited(stocked_context):
    context = stocked_context
    base = datetime(2024, 2, 1, 9, 0, tzinfo=UTC)
    for minute in range(3):
        core_logic.create_sale(context, _sale(("ITEM-000002", "1"), timestamp=base + timedelta(minutes=minute)))

    recent = core_logic.list_recent_sales(context, limit=2)

    assert [sale.transaction_id for sale in recent] == ["SALE-000003", "SALE-000002"]


def test_busy_lock_returns_retryable_result(stocked_context):
    """A held lock yields a retryable Busy result and no writes."""

    context = stocked_context
    context.lock.wait_seconds = 0.05
    acquired = threading.Event()
    release = threading.Event()

    def holder():
        with context.lock.hold("long_report"):
            acquired.set()
            release.wait(timeout=5)

    worker = threading.Thread(target=holder)
    worker.start()
    try:
        assert acquired.wait(timeout=5)
        result = core_logic.create_sale(context, _sale(("ITEM-000002", "1")))
    finally:
        release.set()
        worker.join()

    assert result.ok is False
    assert result.error_kind == "Busy"
    assert result.retryable is True
    assert _stock(context, "ITEM-000002") == Decimal("10")


def test_store_write_failure_propagates_and_invalidates(stocked_context, monkeypatch, audit):
    """A failed save raises, releases the lock and still drops stale reads."""

    context = stocked_context
    core_logic.list_recent_sales(context)

    def broken_flush():
        raise OSError("disk full")

    monkeypatch.setattr(context.store, "flush", broken_flush)

    with pytest.raises(StoreWriteFailure) as excinfo:
        core_logic.create_sale(context, _sale(("ITEM-000002", "1")))

    assert excinfo.value.transaction_id == "SALE-000001"
    assert not context.lock.held_by_current_thread()
    assert context.cache.get(core_logic.cache_key(constants.CacheKey.RECENT_SALES, "20")) == (None, False)
    audit.record.assert_not_called()


def test_audit_failure_does_not_fail_the_sale(stocked_context, audit):
    audit.record.side_effect = RuntimeError("audit sink offline")

    result = core_logic.create_sale(stocked_context, _sale(("ITEM-000002", "1")))

    assert result.ok is True
    assert _stock(stocked_context, "ITEM-000002") == Decimal("9")


def test_audit_runs_after_the_lock_is_released(stocked_context, audit):
    context = stocked_context
    held = []
    audit.record.side_effect = lambda *args, **kwargs: held.append(context.lock.held_by_current_thread())

    core_logic.create_sale(context, _sale(("ITEM-000002", "1")))

    assert held == [False]


# ---------------------------------------------------------------------------
# Cancellations and returns
# ---------------------------------------------------------------------------


def test_cancel_sale_restores_batches_and_balance(stocked_context):
    context = stocked_context
    sale = core_logic.create_sale(
        context, _sale(("ITEM-000001", "4"), payment_mode=PaymentMode.CREDIT, customer_id="CUST-000001"))
    assert _customer(context).current_balance == Decimal("980.00")

    result = core_logic.cancel_sale(
        context, core_logic.CancelSaleCommand(sale.value["transaction_id"], reason="Wrong item"))

    assert result.ok is True
    assert [batch.quantity_remaining for batch in context.ledger.batches_for("ITEM-000001")] == [
        Decimal("5"), Decimal("5")]
    customer = _customer(context)
    assert customer.current_balance == Decimal("900.00")
    assert customer.total_purchases == Decimal("0.00")
    assert core_logic.account_balances(context)["ACC-AR"] == Decimal("0.00")
    detail = core_logic.get_sale(context, "SALE-000001")
    assert detail.header.status == SaleStatus.CANCELLED.value
    assert detail.status_history[-1]["Reason"] == "Wrong item"


def test_cancel_twice_is_rejected(stocked_context):
    context = stocked_context
    core_logic.create_sale(context, _sale(("ITEM-000002", "1")))
    core_logic.cancel_sale(context, core_logic.CancelSaleCommand("SALE-000001"))

    result = core_logic.cancel_sale(context, core_logic.CancelSaleCommand("SALE-000001"))

    assert result.ok is False
    assert result.error_kind == "InvalidStatusTransition"
    assert _stock(context, "ITEM-000002") == Decimal("10")


def test_cancel_unknown_sale_is_rejected(stocked_context):
    result = core_logic.cancel_sale(stocked_context, core_logic.CancelSaleCommand("SALE-000042"))

    assert result.error_kind == "MissingReference"


def test_partial_return_restores_latest_batches_first(stocked_context):
    context = stocked_context
    core_logic.create_sale(context, _sale(("ITEM-000001", "7")))

    result = core_logic.return_sale(context, core_logic.ReturnCommand(
        "SALE-000001", [core_logic.ReturnLine("ITEM-000001", Decimal("2"))], reason="Damaged box"))

    assert result.ok is True
    assert result.value == {
        "return_ids": ["RET-000001"],
        "refund_total": Decimal("40.00"),
        "status": SaleStatus.PARTIALLY_RETURNED.value,
    }
    assert [batch.quantity_remaining for batch in context.ledger.batches_for("ITEM-000001")] == [
        Decimal("0"), Decimal("5")]
    assert core_logic.account_balances(context)["ACC-CASH"] == Decimal("100.00")


def test_final_return_settles_remaining_total(stocked_context):
    """The return that completes a sale refunds what is left of the grand total."""

    context = stocked_context
    command = replace(_sale(("ITEM-000001", "2"), ("ITEM-000002", "1")), delivery_charge=Decimal("3.00"))
    core_logic.create_sale(context, command)
    core_logic.return_sale(context, core_logic.ReturnCommand(
        "SALE-000001", [core_logic.ReturnLine("ITEM-000001", Decimal("1"))]))

    result = core_logic.return_sale(context, core_logic.ReturnCommand(
        "SALE-000001",
        [core_logic.ReturnLine("ITEM-000001", Decimal("1")), core_logic.ReturnLine("ITEM-000002", Decimal("1"))],
    ))

    assert result.value["status"] == SaleStatus.RETURNED.value
    assert result.value["refund_total"] == Decimal("28.00")
    assert core_logic.account_balances(context)["ACC-CASH"] == Decimal("0.00")
    assert _stock(context, "ITEM-000001") == Decimal("10")


def test_return_more_than_sold_is_rejected(stocked_context):
    context = stocked_context
    core_logic.create_sale(context, _sale(("ITEM-000001", "2")))
    core_logic.return_sale(context, core_logic.ReturnCommand(
        "SALE-000001", [core_logic.ReturnLine("ITEM-000001", Decimal("1"))]))

    result = core_logic.return_sale(context, core_logic.ReturnCommand(
        "SALE-000001", [core_logic.ReturnLine("ITEM-000001", Decimal("2"))]))

    assert result.ok is False
    assert result.error_kind == "InvalidInput"


def test_return_of_foreign_product_is_rejected(stocked_context):
    context = stocked_context
    core_logic.create_sale(context, _sale(("ITEM-000001", "2")))

    result = core_logic.return_sale(context, core_logic.ReturnCommand(
        "SALE-000001", [core_logic.ReturnLine("ITEM-000002", Decimal("1"))]))

    assert result.error_kind == "InvalidInput"


def test_partially_returned_sale_cannot_be_cancelled(stocked_context):
    context = stocked_context
    core_logic.create_sale(context, _sale(("ITEM-000001", "2")))
    core_logic.return_sale(context, core_logic.ReturnCommand(
        "SALE-000001", [core_logic.ReturnLine("ITEM-000001", Decimal("1"))]))

    result = core_logic.cancel_sale(context, core_logic.CancelSaleCommand("SALE-000001"))

    assert result.error_kind == "InvalidStatusTransition"


def test_credit_return_reduces_customer_balance(stocked_context):
    context = stocked_context
    core_logic.create_sale(
        context, _sale(("ITEM-000002", "4"), payment_mode=PaymentMode.CREDIT, customer_id="CUST-000001"))

    core_logic.return_sale(context, core_logic.ReturnCommand(
        "SALE-000001", [core_logic.ReturnLine("ITEM-000002", Decimal("1"))]))

    assert _customer(context).current_balance == Decimal("915.00")


def _return_one(context, product_id="ITEM-000001", sale_id="SALE-000001"):
    return core_logic.return_sale(context, core_logic.ReturnCommand(
        sale_id, [core_logic.ReturnLine(product_id, Decimal("1"))]))


def test_partial_return_on_discounted_credit_sale_refunds_net_price(stocked_context):
    """A discounted sale never refunds more than the customer was charged."""

    context = stocked_context
    sale = core_logic.create_sale(context, _sale(
        ("ITEM-000001", "2"),
        payment_mode=PaymentMode.CREDIT,
        customer_id="CUST-000001",
        discount=Decimal("30"),
    ))
    assert sale.value["grand_total"] == Decimal("10.00")
    assert _customer(context).current_balance == Decimal("910.00")

    partial = _return_one(context)

    assert partial.value["refund_total"] == Decimal("5.00")
    assert partial.value["status"] == SaleStatus.PARTIALLY_RETURNED.value
    assert _customer(context).current_balance == Decimal("905.00")
    assert core_logic.account_balances(context)["ACC-AR"] == Decimal("5.00")

    final = _return_one(context)

    assert final.value["refund_total"] == Decimal("5.00")
    assert _customer(context).current_balance == Decimal("900.00")
    assert core_logic.account_balances(context)["ACC-AR"] == Decimal("0.00")


def test_successive_returns_refund_exactly_the_grand_total(stocked_context):
    context = stocked_context
    core_logic.create_sale(context, _sale(("ITEM-000001", "3"), discount=Decimal("10")))

    refunds = [_return_one(context).value["refund_total"] for _ in range(3)]

    assert refunds == [Decimal("16.67"), Decimal("16.67"), Decimal("16.66")]
    assert sum(refunds) == core_logic.get_sale(context, "SALE-000001").header.grand_total
    assert core_logic.account_balances(context)["ACC-CASH"] == Decimal("0.00")
    recorded = [row["RefundAmount"] for row in context.store.scan(constants.SheetName.RETURNS)]
    assert sum(Decimal(str(amount)) for amount in recorded) == Decimal("50.00")


def test_discount_beyond_goods_leaves_only_delivery_refundable(stocked_context):
    context = stocked_context
    core_logic.create_sale(context, _sale(
        ("ITEM-000002", "2"), delivery_charge=Decimal("10"), discount=Decimal("12")))

    first = _return_one(context, "ITEM-000002")
    second = _return_one(context, "ITEM-000002")

    assert first.value["refund_total"] == Decimal("0.00")
    assert second.value["refund_total"] == Decimal("8.00")
    assert core_logic.account_balances(context)["ACC-CASH"] == Decimal("0.00")


# ---------------------------------------------------------------------------
# Quotations
# ---------------------------------------------------------------------------


def test_quotation_create_and_delete_never_touch_stock(stocked_context):
    context = stocked_context

    created = core_logic.create_quotation(context, _quote(("ITEM-000003", "5")))
    assert created.ok is True
    quotation_id = created.value["transaction_id"]
    assert quotation_id == "QUOT-000001"
    assert _stock(context, "ITEM-000003") == Decimal("1")

    deleted = core_logic.delete_quotation(context, quotation_id, reason="Customer left")

    assert deleted.ok is True
    header = core_logic.get_sale(context, quotation_id).header
    assert header.status == QuotationStatus.DELETED.value
    assert _stock(context, "ITEM-000003") == Decimal("1")


def test_quotation_defaults_validity_and_status(stocked_context):
    context = stocked_context
    created_at = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

    core_logic.create_quotation(context, _quote(("ITEM-000002", "2"), timestamp=created_at))
    core_logic.create_quotation(context, _quote(("ITEM-000002", "2"), draft=True))

    pending, draft = core_logic.list_quotations(context)
    assert pending.status == QuotationStatus.PENDING.value
    assert pending.valid_until == (created_at + timedelta(days=14)).isoformat()
    assert draft.status == QuotationStatus.DRAFT.value
    assert [quote.transaction_id for quote in core_logic.list_quotations(context, status=QuotationStatus.DRAFT)] == [
        "QUOT-000002"]


def test_quotation_status_follows_allowed_transitions(stocked_context):
    context = stocked_context
    core_logic.create_quotation(context, _quote(("ITEM-000002", "2"), draft=True))

    assert core_logic.update_quotation_status(context, "QUOT-000001", QuotationStatus.PENDING).ok
    assert core_logic.update_quotation_status(context, "QUOT-000001", "Accepted").ok
    rejected = core_logic.update_quotation_status(context, "QUOT-000001", QuotationStatus.REJECTED)

    assert rejected.error_kind == "InvalidStatusTransition"
    history = core_logic.get_sale(context, "QUOT-000001").status_history
    assert [(row["FromStatus"], row["ToStatus"]) for row in history] == [
        (None, "Draft"), ("Draft", "Pending"), ("Pending", "Accepted")]


def test_quotation_status_cannot_be_set_to_converted_directly(stocked_context):
    context = stocked_context
    core_logic.create_quotation(context, _quote(("ITEM-000002", "2")))

    result = core_logic.update_quotation_status(context, "QUOT-000001", QuotationStatus.CONVERTED)

    assert result.error_kind == "InvalidInput"


def test_status_change_on_a_sale_is_rejected(stocked_context):
    context = stocked_context
    core_logic.create_sale(context, _sale(("ITEM-000002", "1")))

    result = core_logic.delete_quotation(context, "SALE-000001")

    assert result.error_kind == "InvalidInput"


def test_convert_quotation_creates_linked_sale(stocked_context):
    context = stocked_context
    core_logic.create_quotation(context, _quote(("ITEM-000002", "3"), discount=Decimal("1.00")))

    result = core_logic.convert_quotation_to_sale(
        context, core_logic.ConvertQuotationCommand("QUOT-000001", PaymentMode.CASH))

    assert result.ok is True
    assert result.value == {"sale_id": "SALE-000001", "quotation_id": "QUOT-000001", "grand_total": Decimal("14.00")}
    quotation = core_logic.get_sale(context, "QUOT-000001").header
    sale = core_logic.get_sale(context, "SALE-000001").header
    assert quotation.status == QuotationStatus.CONVERTED.value
    assert quotation.converted_sale_id == "SALE-000001"
    assert sale.source_quotation_id == "QUOT-000001"
    assert _stock(context, "ITEM-000002") == Decimal("7")


def test_convert_twice_is_rejected(stocked_context):
    context = stocked_context
    core_logic.create_quotation(context, _quote(("ITEM-000002", "3")))
    command = core_logic.ConvertQuotationCommand("QUOT-000001", PaymentMode.CASH)
    core_logic.convert_quotation_to_sale(context, command)

    result = core_logic.convert_quotation_to_sale(context, command)

    assert result.error_kind == "InvalidStatusTransition"
    assert _stock(context, "ITEM-000002") == Decimal("7")


def test_expired_quotation_cannot_be_converted(stocked_context):
    context = stocked_context
    core_logic.create_quotation(
        context, _quote(("ITEM-000002", "1"), timestamp=datetime(2024, 1, 1, tzinfo=UTC)))

    result = core_logic.convert_quotation_to_sale(
        context, core_logic.ConvertQuotationCommand("QUOT-000001", PaymentMode.CASH))

    assert result.ok is False
    assert result.error_kind == "InvalidStatusTransition"
    assert core_logic.list_recent_sales(context) == []


def test_expired_quotation_cannot_be_accepted(stocked_context):
    context = stocked_context
    core_logic.create_quotation(
        context, _quote(("ITEM-000002", "1"), timestamp=datetime(2024, 1, 1, tzinfo=UTC)))

    result = core_logic.update_quotation_status(context, "QUOT-000001", QuotationStatus.ACCEPTED)

    assert result.error_kind == "InvalidStatusTransition"


def test_conversion_runs_stock_and_credit_checks(stocked_context):
    context = stocked_context
    core_logic.create_quotation(context, _quote(("ITEM-000003", "2")))

    result = core_logic.convert_quotation_to_sale(
        context, core_logic.ConvertQuotationCommand("QUOT-000001", PaymentMode.CASH))

    assert result.error_kind == "InsufficientStock"
    assert core_logic.get_sale(context, "QUOT-000001").header.status == QuotationStatus.PENDING.value


# ---------------------------------------------------------------------------
# Master data and reads
# ---------------------------------------------------------------------------


def test_add_product_and_receive_stock(stocked_context):
    context = stocked_context

    added = core_logic.add_product(
        context, product_name="Soap", sell_price=Decimal("3.00"), category="Household", reorder_level=Decimal("5"))
    received = core_logic.receive_stock(context, "ITEM-000004", Decimal("12"), Decimal("1.80"))

    assert added.value == {"product_id": "ITEM-000004"}
    assert received.value == {"batch_id": "BATCH-000005", "product_id": "ITEM-000004"}
    assert core_logic.inventory_snapshot(context)["ITEM-000004"] == Decimal("12")
    assert "Household" in core_logic.list_categories(context)


def test_add_product_with_duplicate_id_is_rejected(stocked_context):
    result = core_logic.add_product(
        stocked_context, product_name="Copy", sell_price=Decimal("1"), product_id="ITEM-000001")

    assert result.error_kind == "InvalidInput"


def test_receive_stock_for_unknown_supplier_is_rejected(stocked_context):
    result = core_logic.receive_stock(
        stocked_context, "ITEM-000001", Decimal("1"), Decimal("1"), supplier_id="SUPP-000009")

    assert result.error_kind == "MissingReference"


def test_add_customer_and_supplier(stocked_context):
    context = stocked_context
    assert len(core_logic.list_customers(context)) == 2

    customer = core_logic.add_customer(context, customer_name="Baraka", credit_limit=Decimal("50"))
    supplier = core_logic.add_supplier(context, supplier_name="Wholesale Ltd", phone="0700")

    assert customer.value == {"customer_id": "CUST-000002"}
    assert supplier.value == {"supplier_id": "SUPP-000001"}
    assert len(core_logic.list_customers(context)) == 3
    assert [row.supplier_name for row in core_logic.list_suppliers(context)] == ["Wholesale Ltd"]
    assert core_logic.get_customer(context, "CUST-000002").credit_limit == Decimal("50.00")


def test_low_stock_items_use_reorder_level(stocked_context):
    context = stocked_context
    assert [product.product_id for product in core_logic.low_stock_items(context)] == ["ITEM-000003"]

    core_logic.create_sale(context, _sale(("ITEM-000002", "8")))

    assert [product.product_id for product in core_logic.low_stock_items(context)] == [
        "ITEM-000002", "ITEM-000003"]


def test_dashboard_summary_nets_returns(stocked_context):
    context = stocked_context
    core_logic.create_sale(context, _sale(("ITEM-000001", "7")))
    core_logic.create_quotation(context, _quote(("ITEM-000002", "1")))
    core_logic.return_sale(context, core_logic.ReturnCommand(
        "SALE-000001", [core_logic.ReturnLine("ITEM-000001", Decimal("2"))]))

    summary = core_logic.dashboard_summary(context)

    assert summary.sales_count == 1
    assert summary.revenue == Decimal("100.00")
    assert summary.cost_of_goods_sold == Decimal("50.00")
    assert summary.gross_profit == Decimal("50.00")
    assert summary.open_quotations == 1
    assert summary.low_stock_count == 1
    assert summary.receivables == Decimal("900.00")


def test_dashboard_ignores_expired_quotations(stocked_context):
    context = stocked_context
    core_logic.create_quotation(
        context, _quote(("ITEM-000002", "1"), timestamp=datetime(2024, 1, 1, tzinfo=UTC)))
    core_logic.create_quotation(context, _quote(("ITEM-000002", "1")))

    assert core_logic.dashboard_summary(context).open_quotations == 1


def test_force_refresh_data_reloads_family(stocked_context):
    context = stocked_context
    core_logic.inventory_snapshot(context)
    context.store.update_by_key(
        constants.SheetName.STOCK_BATCHES, "BatchID", "BATCH-000004", {"QuantityRemaining": Decimal("0")})
    assert core_logic.inventory_snapshot(context)["ITEM-000003"] == Decimal("1")

    refreshed = core_logic.force_refresh_data(context, "Inventory")

    assert refreshed["ITEM-000003"] == Decimal("0")
    assert core_logic.inventory_snapshot(context)["ITEM-000003"] == Decimal("0")


def test_force_refresh_data_rejects_unknown_domain(stocked_context):
    with pytest.raises(InvalidInput):
        core_logic.force_refresh_data(stocked_context, "payroll")


def test_get_sale_unknown_id_raises(stocked_context):
    with pytest.raises(MissingReferenceError):
        core_logic.get_sale(stocked_context, "SALE-000404")


def test_movements_record_sale_breakdown(stocked_context):
    context = stocked_context
    core_logic.create_sale(context, _sale(("ITEM-000001", "7")))

    movements = [
        (row.batch_id, row.quantity_change)
        for row in data_manager.iter_rows(
            context.store, constants.SheetName.STOCK_MOVEMENTS, data_manager.StockMovementRow)
        if row.transaction_id == "SALE-000001"
    ]

    assert movements == [("BATCH-000001", Decimal("-5")), ("BATCH-000002", Decimal("-2"))]
