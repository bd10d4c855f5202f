"""FIFO stock batches and cost-of-goods-sold.

Each product's stock is the sum of its ``StockBatches`` rows. Sales consume
the oldest batches first and price the taken quantity at each batch's own unit
cost. Batches are never deleted; a drained batch stays at zero remaining so
its cost history remains auditable. Every change is mirrored by a row in
``StockMovements``, which is also where a sale's per-batch breakdown is read
back from when the sale is cancelled or returned.

All writes here expect the caller to hold the mutation lock.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import log
from .constants import MONEY_QUANTUM, EntityType, MovementType, SheetName
from .data_manager import (
    ProductRow,
    StockBatchRow,
    StockMovementRow,
    WorkbookStore,
    deserialize_row,
    iter_rows,
    serialize_row,
    to_decimal,
)
from .errors import InsufficientStock, InvalidInput, MissingReferenceError
from .sequence import SequenceAllocator


ZERO = Decimal("0")


@dataclass(frozen=True)
class BatchConsumption:
    """Quantity taken from (or given back to) one batch at that batch's cost."""

    batch_id: str
    quantity: Decimal
    unit_cost: Decimal

    @property
    def cost(self) -> Decimal:
        return self.quantity * self.unit_cost


@dataclass(frozen=True)
class ConsumptionResult:
    item_id: str
    quantity: Decimal
    success: bool
    cost_of_goods_sold: Decimal
    per_batch: Tuple[BatchConsumption, ...] = ()


@dataclass(frozen=True)
class RestoreResult:
    item_id: str
    quantity: Decimal
    cost_restored: Decimal
    synthetic: bool
    per_batch: Tuple[BatchConsumption, ...] = ()


@dataclass
class _WorkingBatch:
    row: StockBatchRow
    remaining: Decimal


def _now() -> datetime:
    return datetime.now(UTC)


def _require_quantity(item_id: str, quantity: Decimal) -> Decimal:
    quantity = to_decimal(quantity)
    if quantity <= ZERO:
        log.error("Quantity validation failed for '%s': %s", item_id, quantity)
        raise InvalidInput(f"Quantity for '{item_id}' must be greater than zero")
    return quantity


class StockStaging:
    """Working copy of the batches touched by one transaction.

    :meth:`consume` only changes the working copy. A failed consume leaves the
    item exactly as it was, and nothing reaches the workbook until
    :meth:`commit`. Discarding the staging object is the rollback.
    """

    def __init__(self, ledger: "InventoryLedger") -> None:
        self._ledger = ledger
        self._working: Dict[str, List[_WorkingBatch]] = {}
        self._consumptions: List[ConsumptionResult] = []

    @property
    def consumptions(self) -> Tuple[ConsumptionResult, ...]:
        return tuple(self._consumptions)

    @property
    def cost_of_goods_sold(self) -> Decimal:
        return sum((result.cost_of_goods_sold for result in self._consumptions), ZERO)

    def _batches(self, item_id: str) -> List[_WorkingBatch]:
        if item_id not in self._working:
            self._ledger.get_product(item_id)
            self._working[item_id] = [
                _WorkingBatch(row=batch, remaining=batch.quantity_remaining)
                for batch in self._ledger.batches_for(item_id)
            ]
        return self._working[item_id]

    def available(self, item_id: str) -> Decimal:
        return sum((batch.remaining for batch in self._batches(item_id)), ZERO)

    def consume(self, item_id: str, quantity: Decimal) -> ConsumptionResult:
        """Take ``quantity`` of ``item_id`` from the oldest batches first.

        Raises:
            InvalidInput: If ``quantity`` is not positive.
            MissingReferenceError: If the product is unknown.
            InsufficientStock: If the batches cannot cover ``quantity``. The
                working copy for the item is left untouched.
        """

        quantity = _require_quantity(item_id, quantity)
        batches = self._batches(item_id)
        available = sum((batch.remaining for batch in batches), ZERO)
        if available < quantity:
            log.warning(
                "Insufficient stock for '%s': requested %s, available %s",
                item_id,
                quantity,
                available,
            )
            raise InsufficientStock(item_id, quantity, available)

        still_needed = quantity
        taken: List[BatchConsumption] = []
        for batch in batches:
            if still_needed <= ZERO:
                break
            if batch.remaining <= ZERO:
                continue
            take = min(batch.remaining, still_needed)
            batch.remaining -= take
            still_needed -= take
            taken.append(BatchConsumption(batch.row.batch_id, take, batch.row.unit_cost))

        cogs = sum((part.cost for part in taken), ZERO).quantize(MONEY_QUANTUM)
        result = ConsumptionResult(
            item_id=item_id,
            quantity=quantity,
            success=True,
            cost_of_goods_sold=cogs,
            per_batch=tuple(taken),
        )
        self._consumptions.append(result)
        return result

    def commit(self, transaction_id: str, *, timestamp: Optional[datetime] = None) -> None:
        """Write the staged batch quantities and their movement rows."""

        if not self._consumptions:
            return
        when = (timestamp or _now()).isoformat()
        changed = {
            batch.row.batch_id: batch.remaining
            for batches in self._working.values()
            for batch in batches
            if batch.remaining != batch.row.quantity_remaining
        }
        for batch_id, remaining in changed.items():
            self._ledger.store.update_by_key(
                SheetName.STOCK_BATCHES, "BatchID", batch_id, {"QuantityRemaining": remaining})

        movements = [
            self._ledger.movement_row(
                transaction_id=transaction_id,
                item_id=result.item_id,
                part=part,
                sign=-1,
                movement_type=MovementType.SALE,
                when=when,
            )
            for result in self._consumptions
            for part in result.per_batch
        ]
        self._ledger.store.append_rows(SheetName.STOCK_MOVEMENTS, movements)
        self._ledger.sync_stock_quantity(self._working.keys())


class InventoryLedger:
    """Batch-level stock keeping over the workbook store."""

    def __init__(self, store: WorkbookStore, allocator: SequenceAllocator) -> None:
        self.store = store
        self.allocator = allocator

    # -- reads ---------------------------------------------------------------

    def get_product(self, item_id: str) -> ProductRow:
        raw = self.store.find_by_key(SheetName.PRODUCTS, "ProductID", item_id)
        if raw is None:
            log.warning("Product lookup failed for id '%s'", item_id)
            raise MissingReferenceError(f"Unknown product id: {item_id}")
        return deserialize_row(ProductRow, raw)

    def batches_for(self, item_id: str) -> List[StockBatchRow]:
        """Batches of ``item_id``, oldest received first."""

        batches = [
            batch for batch in iter_rows(self.store, SheetName.STOCK_BATCHES, StockBatchRow)
            if batch.product_id == item_id
        ]
        return sorted(batches, key=lambda batch: (batch.received_at, batch.batch_id))

    def current_stock(self, item_id: str) -> Decimal:
        return sum((batch.quantity_remaining for batch in self.batches_for(item_id)), ZERO)

    def stock_levels(self) -> Dict[str, Decimal]:
        levels: Dict[str, Decimal] = {}
        for batch in iter_rows(self.store, SheetName.STOCK_BATCHES, StockBatchRow):
            levels[batch.product_id] = levels.get(batch.product_id, ZERO) + batch.quantity_remaining
        return levels

    def breakdown_for(self, transaction_id: str) -> Dict[str, List[BatchConsumption]]:
        """Per-item batch quantities still consumed by ``transaction_id``.

        Sale movements are negative and reversals positive, so the net of the
        two is what a later cancellation or return may give back. Items map to
        their batches in the order they were consumed.
        """

        net: "OrderedDict[Tuple[str, str], List[Decimal]]" = OrderedDict()
        for movement in iter_rows(self.store, SheetName.STOCK_MOVEMENTS, StockMovementRow):
            if movement.transaction_id != transaction_id:
                continue
            key = (movement.product_id, movement.batch_id)
            entry = net.setdefault(key, [ZERO, movement.unit_cost])
            entry[0] -= movement.quantity_change

        breakdown: Dict[str, List[BatchConsumption]] = {}
        for (item_id, batch_id), (quantity, unit_cost) in net.items():
            if quantity > ZERO:
                breakdown.setdefault(item_id, []).append(
                    BatchConsumption(batch_id, quantity, unit_cost))
        return breakdown

    # -- writes --------------------------------------------------------------

    def stage(self) -> StockStaging:
        return StockStaging(self)

    def consume(
        self,
        item_id: str,
        quantity: Decimal,
        *,
        transaction_id: str,
        timestamp: Optional[datetime] = None,
    ) -> ConsumptionResult:
        """Consume one item immediately; all-or-nothing for that item."""

        staging = self.stage()
        result = staging.consume(item_id, quantity)
        staging.commit(transaction_id, timestamp=timestamp)
        return result

    def receive(
        self,
        item_id: str,
        quantity: Decimal,
        unit_cost: Decimal,
        *,
        supplier_id: Optional[str] = None,
        source_ref: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> StockBatchRow:
        """Record a purchase/receipt as a new batch and update the product's last cost."""

        quantity = _require_quantity(item_id, quantity)
        unit_cost = to_decimal(unit_cost).quantize(MONEY_QUANTUM)
        if unit_cost < ZERO:
            raise InvalidInput("Unit cost must be zero or positive")
        self.get_product(item_id)

        when = (timestamp or _now()).isoformat()
        batch = StockBatchRow(
            batch_id=self.allocator.next_id(EntityType.BATCH),
            product_id=item_id,
            quantity_received=quantity,
            quantity_remaining=quantity,
            unit_cost=unit_cost,
            received_at=when,
            supplier_id=supplier_id,
            source_ref=source_ref,
        )
        self._append_batch(batch)
        self.store.append_rows(SheetName.STOCK_MOVEMENTS, [
            self.movement_row(
                transaction_id=source_ref,
                item_id=item_id,
                part=BatchConsumption(batch.batch_id, quantity, unit_cost),
                sign=1,
                movement_type=MovementType.RECEIPT,
                when=when,
            )
        ])
        self.store.update_by_key(SheetName.PRODUCTS, "ProductID", item_id, {"LastCost": unit_cost})
        self.sync_stock_quantity([item_id])
        log.info("Received %s x '%s' at %s into batch '%s'", quantity, item_id, unit_cost, batch.batch_id)
        return batch

    def restore(
        self,
        item_id: str,
        quantity: Decimal,
        unit_cost: Optional[Decimal] = None,
        *,
        breakdown: Optional[Sequence[BatchConsumption]] = None,
        transaction_id: Optional[str] = None,
        movement_type: MovementType = MovementType.CANCEL,
        timestamp: Optional[datetime] = None,
    ) -> RestoreResult:
        """Give ``quantity`` of ``item_id`` back to stock.

        With a recorded ``breakdown`` the exact batches are re-credited at
        their own costs, which keeps cost history intact. Without one a
        synthetic batch is created at ``unit_cost`` (or the product's last
        known cost) and a warning is logged, because that can skew later
        COGS. Breakdown batches that no longer exist fall back the same way.
        """

        quantity = _require_quantity(item_id, quantity)
        product = self.get_product(item_id)
        when = (timestamp or _now()).isoformat()

        parts: List[BatchConsumption] = []
        leftover = quantity
        movements = []
        for part in breakdown or ():
            if leftover <= ZERO:
                break
            give = min(part.quantity, leftover)
            raw = self.store.find_by_key(SheetName.STOCK_BATCHES, "BatchID", part.batch_id)
            if raw is None:
                log.warning("Recorded batch '%s' for '%s' no longer exists", part.batch_id, item_id)
                continue
            batch = deserialize_row(StockBatchRow, raw)
            self.store.update_by_key(
                SheetName.STOCK_BATCHES,
                "BatchID",
                batch.batch_id,
                {"QuantityRemaining": batch.quantity_remaining + give},
            )
            restored = BatchConsumption(batch.batch_id, give, part.unit_cost)
            parts.append(restored)
            movements.append(self.movement_row(
                transaction_id=transaction_id,
                item_id=item_id,
                part=restored,
                sign=1,
                movement_type=movement_type,
                when=when,
            ))
            leftover -= give

        synthetic = leftover > ZERO
        if synthetic:
            cost = to_decimal(unit_cost if unit_cost is not None else product.last_cost).quantize(MONEY_QUANTUM)
            log.warning(
                "No batch breakdown for %s x '%s' (transaction '%s'); restoring into a "
                "synthetic batch at last known cost %s",
                leftover,
                item_id,
                transaction_id,
                cost,
            )
            batch = StockBatchRow(
                batch_id=self.allocator.next_id(EntityType.BATCH),
                product_id=item_id,
                quantity_received=leftover,
                quantity_remaining=leftover,
                unit_cost=cost,
                received_at=when,
                supplier_id=None,
                source_ref=transaction_id,
            )
            self._append_batch(batch)
            restored = BatchConsumption(batch.batch_id, leftover, cost)
            parts.append(restored)
            movements.append(self.movement_row(
                transaction_id=transaction_id,
                item_id=item_id,
                part=restored,
                sign=1,
                movement_type=MovementType.SYNTHETIC_RESTORE,
                when=when,
            ))

        self.store.append_rows(SheetName.STOCK_MOVEMENTS, movements)
        self.sync_stock_quantity([item_id])
        cost_restored = sum((part.cost for part in parts), ZERO).quantize(MONEY_QUANTUM)
        return RestoreResult(
            item_id=item_id,
            quantity=quantity,
            cost_restored=cost_restored,
            synthetic=synthetic,
            per_batch=tuple(parts),
        )

    def sync_stock_quantity(self, item_ids: Iterable[str]) -> None:
        """Rewrite ``Products.StockQuantity`` as the sum of remaining batch quantities."""

        levels = self.stock_levels()
        for item_id in item_ids:
            self.store.update_by_key(
                SheetName.PRODUCTS, "ProductID", item_id, {"StockQuantity": levels.get(item_id, ZERO)})

    def movement_row(
        self,
        *,
        transaction_id: Optional[str],
        item_id: str,
        part: BatchConsumption,
        sign: int,
        movement_type: MovementType,
        when: str,
    ) -> Dict[str, object]:
        return {
            "MovementID": self.allocator.next_id(EntityType.MOVEMENT),
            "DateTime": when,
            "TransactionID": transaction_id,
            "ProductID": item_id,
            "BatchID": part.batch_id,
            "QuantityChange": part.quantity * sign,
            "UnitCost": part.unit_cost,
            "MovementType": movement_type.value,
        }

    def _append_batch(self, batch: StockBatchRow) -> None:
        self.store.append_rows(SheetName.STOCK_BATCHES, [serialize_row(batch)])
