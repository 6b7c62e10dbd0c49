from datetime import date

import pytest

from stockledger.core.errors import InsufficientStockError, ValidationError
from stockledger.services.allocator import AllocationLine, BatchAllocator, BatchCandidate


def _batch(batch_id: str, qty: int, expiry: date | None, received: date = date(2023, 12, 1)) -> BatchCandidate:
    return BatchCandidate(id=batch_id, quantity=qty, received_date=received, expiry_date=expiry)


def test_plan_consumes_earliest_expiry_first():
    a = _batch("a", 10, date(2024, 1, 1))
    b = _batch("b", 5, date(2024, 2, 1))

    plan = BatchAllocator.plan([b, a], 12)

    assert plan.requested == 12
    assert list(plan.lines) == [
        AllocationLine(batch_id="a", quantity_to_subtract=10, resulting_quantity=0),
        AllocationLine(batch_id="b", quantity_to_subtract=2, resulting_quantity=3),
    ]
    assert plan.total_allocated == 12


def test_plan_stops_once_request_is_covered():
    batches = [
        _batch("a", 10, date(2024, 1, 1)),
        _batch("b", 5, date(2024, 2, 1)),
        _batch("c", 5, date(2024, 3, 1)),
    ]

    plan = BatchAllocator.plan(batches, 4)

    assert plan.batch_ids == ["a"]
    assert plan.lines[0].resulting_quantity == 6


def test_undated_batches_are_consumed_after_dated_ones():
    undated = _batch("undated", 50, None, received=date(2023, 1, 1))
    dated = _batch("dated", 3, date(2030, 1, 1), received=date(2024, 1, 1))

    plan = BatchAllocator.plan([undated, dated], 5)

    assert plan.batch_ids == ["dated", "undated"]
    assert plan.lines[1].quantity_to_subtract == 2


def test_ties_break_on_received_date_then_id():
    expiry = date(2024, 6, 1)
    late = _batch("a-late", 1, expiry, received=date(2024, 1, 5))
    early_b = _batch("b-early", 1, expiry, received=date(2024, 1, 1))
    early_a = _batch("a-early", 1, expiry, received=date(2024, 1, 1))

    ordered = BatchAllocator.order([late, early_b, early_a])

    assert [batch.id for batch in ordered] == ["a-early", "b-early", "a-late"]


def test_exhausted_batches_produce_no_plan_lines():
    plan = BatchAllocator.plan(
        [_batch("empty", 0, date(2024, 1, 1)), _batch("full", 4, date(2024, 2, 1))],
        4,
    )

    assert plan.batch_ids == ["full"]


def test_insufficient_stock_reports_shortfall():
    batches = [_batch("a", 10, date(2024, 1, 1)), _batch("b", 5, date(2024, 2, 1))]

    with pytest.raises(InsufficientStockError) as exc_info:
        BatchAllocator.plan(batches, 20)

    err = exc_info.value
    assert (err.requested, err.available, err.shortfall) == (20, 15, 5)
    assert err.code == "insufficient_stock"


def test_plan_with_no_batches_is_insufficient():
    with pytest.raises(InsufficientStockError) as exc_info:
        BatchAllocator.plan([], 1)

    assert exc_info.value.shortfall == 1


@pytest.mark.parametrize("quantity", [0, -3, 1.5, "2", True])
def test_plan_rejects_non_positive_or_non_integer_quantity(quantity):
    with pytest.raises(ValidationError):
        BatchAllocator.plan([_batch("a", 10, date(2024, 1, 1))], quantity)


def test_plan_does_not_mutate_input_batches():
    a = _batch("a", 10, date(2024, 1, 1))

    BatchAllocator.plan([a], 7)

    assert a.quantity == 10
