"""
FIFO batch allocation.

Given the batches of one inventory item and a requested quantity, compute
which batches to draw from and how much, earliest expiry first. This module
does no I/O; InventoryLedger applies the resulting plan inside a transaction.

Ordering:
- ascending expiry_date, undated batches after every dated batch
- ties by ascending received_date, then ascending batch id

The plan is all-or-nothing: if the batches cannot cover the request,
InsufficientStockError is raised and no plan is produced.
"""

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Protocol, Sequence

from stockledger.core.errors import InsufficientStockError, ValidationError


class AllocatableBatch(Protocol):
    id: str
    quantity: int
    expiry_date: date | None
    received_date: date


@dataclass(frozen=True)
class BatchCandidate:
    id: str
    quantity: int
    received_date: date
    expiry_date: date | None = None


@dataclass(frozen=True)
class AllocationLine:
    batch_id: str
    quantity_to_subtract: int
    resulting_quantity: int


@dataclass(frozen=True)
class AllocationPlan:
    requested: int
    lines: tuple[AllocationLine, ...]

    @property
    def total_allocated(self) -> int:
        return sum(line.quantity_to_subtract for line in self.lines)

    @property
    def batch_ids(self) -> list[str]:
        return [line.batch_id for line in self.lines]


def _fifo_key(batch: AllocatableBatch) -> tuple:
    # (False, date) sorts before (True, date.max): undated stock goes last.
    undated = batch.expiry_date is None
    return (undated, batch.expiry_date or date.max, batch.received_date, str(batch.id))


class BatchAllocator:
    @staticmethod
    def order(batches: Iterable[AllocatableBatch]) -> list[AllocatableBatch]:
        return sorted(batches, key=_fifo_key)

    @classmethod
    def plan(cls, batches: Sequence[AllocatableBatch], quantity: int) -> AllocationPlan:
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError("quantity must be a whole integer unit", field="quantity")
        if quantity <= 0:
            raise ValidationError("quantity must be greater than zero", field="quantity")

        remaining = quantity
        lines: list[AllocationLine] = []
        for batch in cls.order(batches):
            if remaining == 0:
                break
            available = int(batch.quantity)
            if available <= 0:
                continue
            taken = min(remaining, available)
            lines.append(
                AllocationLine(
                    batch_id=batch.id,
                    quantity_to_subtract=taken,
                    resulting_quantity=available - taken,
                )
            )
            remaining -= taken

        if remaining > 0:
            available_total = sum(max(int(batch.quantity), 0) for batch in batches)
            raise InsufficientStockError(requested=quantity, available=available_total)

        return AllocationPlan(requested=quantity, lines=tuple(lines))
