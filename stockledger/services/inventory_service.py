"""
Batch inventory ledger.

InventoryLedger is the only writer of InventoryItem and InventoryBatch rows.
Every mutating operation for a (store, product) pair:

1. validates its input before touching the database,
2. takes the pair's lock from ItemLockRegistry (bounded wait),
3. opens one transaction and re-reads the rows it changes FOR UPDATE,
4. applies the change, appends the matching audit entries and recomputes
   the item total with recompute_item_quantity(),
5. commits, or rolls back everything on any error.
"""

import logging
from contextlib import contextmanager
from datetime import date, timedelta
from typing import Any, Callable, Iterator

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from stockledger.core.config import settings
from stockledger.core.errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    StockLedgerError,
    StorageError,
    ValidationError,
)
from stockledger.core.id_utils import generate_batch_number, generate_id
from stockledger.core.observability import log_event
from stockledger.models.inventory import InventoryBatch, InventoryItem
from stockledger.schemas.common import parse_input
from stockledger.schemas.inventory import (
    AllocationLineOut,
    AuditLogEntryOut,
    BatchCreate,
    BatchOut,
    BatchUpdate,
    FifoSaleOut,
    InventoryItemOut,
)
from stockledger.services.allocator import BatchAllocator
from stockledger.services.audit_service import AuditTrail
from stockledger.services.locking import ItemLockRegistry

# SQLSTATEs for deadlock, serialization failure and lock_not_available.
_LOCK_FAILURE_SQLSTATES = {"40P01", "40001", "55P03"}


def _is_lock_failure(exc: SQLAlchemyError) -> bool:
    if not isinstance(exc, DBAPIError) or exc.orig is None:
        return False
    sqlstate = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
    if sqlstate in _LOCK_FAILURE_SQLSTATES:
        return True
    return "database is locked" in str(exc.orig).lower()


def _require_id(value: Any, field: str) -> str:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required", field=field)
    cleaned = str(value).strip()
    if not cleaned:
        raise ValidationError(f"{field} is required", field=field)
    return cleaned


def _require_int(value: Any, field: str) -> int:
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be a whole integer unit", field=field)
    return value


def _require_positive_qty(value: Any, field: str = "quantity") -> int:
    qty = _require_int(value, field)
    if qty <= 0:
        raise ValidationError(f"{field} must be greater than zero", field=field)
    return qty


def _not_expired(today: date):
    return or_(InventoryBatch.expiry_date.is_(None), InventoryBatch.expiry_date >= today)


def recompute_item_quantity(db: Session, inventory_id: str) -> int:
    """Write SUM(batch.quantity) back to the item and return it."""
    db.flush()
    total = db.execute(
        select(func.coalesce(func.sum(InventoryBatch.quantity), 0)).where(
            InventoryBatch.inventory_id == inventory_id,
        )
    ).scalar_one()
    item = db.get(InventoryItem, inventory_id)
    if item is None:
        raise NotFoundError("InventoryItem", inventory_id)
    item.quantity = int(total)
    return item.quantity


def get_item_for_pair(
    db: Session,
    *,
    store_id: str,
    product_id: str,
    for_update: bool = False,
) -> InventoryItem | None:
    stmt = select(InventoryItem).where(
        InventoryItem.store_id == store_id,
        InventoryItem.product_id == product_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


class InventoryLedger:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        locks: ItemLockRegistry | None = None,
        audit_trail: AuditTrail | None = None,
        clock: Callable[[], date] = date.today,
        default_user_id: str | None = None,
        fifo_skip_expired: bool | None = None,
    ):
        self._session_factory = session_factory
        self.locks = locks or ItemLockRegistry()
        self.audit = audit_trail or AuditTrail(session_factory)
        self._clock = clock
        self._default_user_id = default_user_id or settings.system_user_id
        self._fifo_skip_expired = (
            settings.fifo_skip_expired if fifo_skip_expired is None else fifo_skip_expired
        )

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except StockLedgerError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            if _is_lock_failure(exc):
                log_event("lock_conflict", level=logging.WARNING, error=str(exc.orig))
                raise ConflictError("busy, retry") from exc
            log_event("storage_error", level=logging.ERROR, error=str(exc))
            raise StorageError("Inventory storage operation failed") from exc
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @contextmanager
    def _read(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as exc:
            log_event("storage_error", level=logging.ERROR, error=str(exc))
            raise StorageError("Inventory storage read failed") from exc
        finally:
            db.close()

    def _user(self, user_id: str | None) -> str:
        return _require_id(user_id, "user_id") if user_id is not None else self._default_user_id

    @staticmethod
    def _get_batch(db: Session, batch_id: str, *, for_update: bool = False) -> InventoryBatch:
        stmt = select(InventoryBatch).where(InventoryBatch.id == batch_id)
        if for_update:
            stmt = stmt.with_for_update()
        batch = db.execute(stmt).scalar_one_or_none()
        if batch is None:
            raise NotFoundError("InventoryBatch", batch_id)
        return batch

    def _lock_batch(self, db: Session, batch_id: str) -> InventoryBatch:
        """Lock the owning item row, then the batch row, in the FIFO path's order."""
        inventory_id = db.execute(
            select(InventoryBatch.inventory_id).where(InventoryBatch.id == batch_id)
        ).scalar_one_or_none()
        if inventory_id is None:
            raise NotFoundError("InventoryBatch", batch_id)
        db.execute(select(InventoryItem).where(InventoryItem.id == inventory_id).with_for_update()).scalar_one()
        return self._get_batch(db, batch_id, for_update=True)

    def _resolve_pair(self, batch_id: str) -> tuple[str, str]:
        with self._read() as db:
            row = db.execute(
                select(InventoryItem.store_id, InventoryItem.product_id)
                .join(InventoryBatch, InventoryBatch.inventory_id == InventoryItem.id)
                .where(InventoryBatch.id == batch_id)
            ).one_or_none()
        if row is None:
            raise NotFoundError("InventoryBatch", batch_id)
        return row[0], row[1]

    def _apply_delta(
        self,
        db: Session,
        batch: InventoryBatch,
        delta: int,
        *,
        action: str,
        user_id: str,
        details: dict[str, Any],
    ) -> int:
        before = int(batch.quantity)
        after = before + delta
        if after < 0:
            raise ValidationError(
                f"Adjustment would result in negative stock. Remaining: {before}, Requested: {delta}",
                field="delta",
            )
        batch.quantity = after
        self.audit.append(
            db,
            batch_id=batch.id,
            user_id=user_id,
            action=action,
            quantity_before=before,
            quantity_after=after,
            details=details,
        )
        return recompute_item_quantity(db, batch.inventory_id)

    def add_batch(self, store_id: str, product_id: str, batch_data: BatchCreate | dict[str, Any]) -> BatchOut:
        store_id = _require_id(store_id, "store_id")
        product_id = _require_id(product_id, "product_id")
        data = parse_input(BatchCreate, batch_data)

        with self.locks.hold(store_id, product_id), self._transaction() as db:
            item = get_item_for_pair(db, store_id=store_id, product_id=product_id, for_update=True)
            if item is None:
                item = InventoryItem(
                    id=generate_id(),
                    store_id=store_id,
                    product_id=product_id,
                    quantity=0,
                    min_stock=settings.default_min_stock,
                )
                db.add(item)
                db.flush()

            batch = InventoryBatch(
                id=generate_id(),
                inventory_id=item.id,
                batch_number=data.batch_number or generate_batch_number(),
                quantity=data.quantity,
                received_date=data.received_date or self._clock(),
                manufacturing_date=data.manufacturing_date,
                expiry_date=data.expiry_date,
                cost_per_unit=data.cost_per_unit,
            )
            db.add(batch)
            total = recompute_item_quantity(db, item.id)
            result = BatchOut.model_validate(batch)

        log_event(
            "batch_added",
            store_id=store_id,
            product_id=product_id,
            batch_id=result.id,
            quantity=result.quantity,
            inventory_quantity=total,
        )
        return result

    def _change_batch_quantity(
        self,
        batch_id: str,
        delta: int,
        *,
        action: str,
        reason: str,
        user_id: str | None,
    ) -> BatchOut:
        batch_id = _require_id(batch_id, "batch_id")
        actor = self._user(user_id)
        store_id, product_id = self._resolve_pair(batch_id)

        with self.locks.hold(store_id, product_id), self._transaction() as db:
            batch = self._lock_batch(db, batch_id)
            before = int(batch.quantity)
            total = self._apply_delta(
                db,
                batch,
                delta,
                action=action,
                user_id=actor,
                details={"reason": reason, "delta": delta},
            )
            result = BatchOut.model_validate(batch)

        log_event(
            "batch_adjusted",
            action=action,
            batch_id=batch_id,
            quantity_before=before,
            quantity_after=result.quantity,
            inventory_quantity=total,
            user_id=actor,
        )
        return result

    def adjust_batch_stock(self, batch_id: str, delta: int, reason: str, *, user_id: str | None = None) -> BatchOut:
        delta = _require_int(delta, "delta")
        if delta == 0:
            raise ValidationError("delta cannot be 0", field="delta")
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("reason is required", field="reason")
        return self._change_batch_quantity(
            batch_id,
            delta,
            action="adjust",
            reason=reason.strip(),
            user_id=user_id,
        )

    def sell_from_batch(self, batch_id: str, quantity: int, *, user_id: str | None = None) -> BatchOut:
        qty = _require_positive_qty(quantity)
        return self._change_batch_quantity(batch_id, -qty, action="sell", reason="sale", user_id=user_id)

    def return_to_batch(self, batch_id: str, quantity: int, *, user_id: str | None = None) -> BatchOut:
        qty = _require_positive_qty(quantity)
        return self._change_batch_quantity(batch_id, qty, action="return", reason="return", user_id=user_id)

    def sell_from_batches_fifo(
        self,
        store_id: str,
        product_id: str,
        quantity: int,
        *,
        user_id: str | None = None,
        reference_id: str | None = None,
    ) -> FifoSaleOut:
        store_id = _require_id(store_id, "store_id")
        product_id = _require_id(product_id, "product_id")
        qty = _require_positive_qty(quantity)
        actor = self._user(user_id)

        with self.locks.hold(store_id, product_id), self._transaction() as db:
            item = get_item_for_pair(db, store_id=store_id, product_id=product_id, for_update=True)
            if item is None:
                log_event("fifo_sale_rejected", store_id=store_id, product_id=product_id, requested=qty, available=0)
                raise InsufficientStockError(requested=qty, available=0)

            stmt = select(InventoryBatch).where(
                InventoryBatch.inventory_id == item.id,
                InventoryBatch.quantity > 0,
            )
            if self._fifo_skip_expired:
                stmt = stmt.where(_not_expired(self._clock()))
            batches = list(db.execute(stmt.with_for_update()).scalars().all())

            try:
                plan = BatchAllocator.plan(batches, qty)
            except InsufficientStockError as exc:
                log_event(
                    "fifo_sale_rejected",
                    store_id=store_id,
                    product_id=product_id,
                    requested=exc.requested,
                    available=exc.available,
                    shortfall=exc.shortfall,
                )
                raise

            by_id = {batch.id: batch for batch in batches}
            for line in plan.lines:
                batch = by_id[line.batch_id]
                before = int(batch.quantity)
                batch.quantity = line.resulting_quantity
                self.audit.append(
                    db,
                    batch_id=batch.id,
                    user_id=actor,
                    action="sell",
                    quantity_before=before,
                    quantity_after=line.resulting_quantity,
                    details={
                        "reason": "sale",
                        "fifo": True,
                        "quantity": line.quantity_to_subtract,
                        "reference_id": reference_id,
                    },
                )

            total = recompute_item_quantity(db, item.id)
            result = FifoSaleOut(
                allocations=[AllocationLineOut.model_validate(line) for line in plan.lines],
                batches=[BatchOut.model_validate(by_id[line.batch_id]) for line in plan.lines],
                inventory_quantity=total,
            )

        log_event(
            "fifo_sale",
            store_id=store_id,
            product_id=product_id,
            requested=qty,
            batches=plan.batch_ids,
            inventory_quantity=total,
            reference_id=reference_id,
            user_id=actor,
        )
        return result

    def return_product(
        self,
        store_id: str,
        product_id: str,
        quantity: int,
        *,
        batch_id: str | None = None,
        expiry_date: date | None = None,
        user_id: str | None = None,
    ) -> BatchOut:
        """Return stock to a named batch of the pair, or to a new RETURN-* batch."""
        store_id = _require_id(store_id, "store_id")
        product_id = _require_id(product_id, "product_id")
        qty = _require_positive_qty(quantity)
        actor = self._user(user_id)
        if batch_id is not None:
            batch_id = _require_id(batch_id, "batch_id")
        if expiry_date is not None and not isinstance(expiry_date, date):
            raise ValidationError("expiry_date must be a date", field="expiry_date")

        with self.locks.hold(store_id, product_id), self._transaction() as db:
            item = get_item_for_pair(db, store_id=store_id, product_id=product_id, for_update=True)
            if item is None:
                raise NotFoundError("InventoryItem", f"{store_id}/{product_id}")

            if batch_id is not None:
                batch = self._get_batch(db, batch_id, for_update=True)
                if batch.inventory_id != item.id:
                    raise NotFoundError("InventoryBatch", batch_id)
                total = self._apply_delta(
                    db,
                    batch,
                    qty,
                    action="return",
                    user_id=actor,
                    details={"reason": "return", "delta": qty},
                )
            else:
                batch = InventoryBatch(
                    id=generate_id(),
                    inventory_id=item.id,
                    batch_number=generate_batch_number("RETURN"),
                    quantity=qty,
                    received_date=self._clock(),
                    expiry_date=expiry_date,
                )
                db.add(batch)
                self.audit.append(
                    db,
                    batch_id=batch.id,
                    user_id=actor,
                    action="return",
                    quantity_before=0,
                    quantity_after=qty,
                    details={"reason": "return", "delta": qty, "new_batch": True},
                )
                total = recompute_item_quantity(db, item.id)
            result = BatchOut.model_validate(batch)

        log_event(
            "batch_adjusted",
            action="return",
            batch_id=result.id,
            quantity_after=result.quantity,
            inventory_quantity=total,
            user_id=actor,
        )
        return result

    def update_batch(self, batch_id: str, fields: BatchUpdate | dict[str, Any]) -> BatchOut:
        batch_id = _require_id(batch_id, "batch_id")
        data = parse_input(BatchUpdate, fields)
        changes = data.model_dump(exclude_unset=True)
        store_id, product_id = self._resolve_pair(batch_id)

        with self.locks.hold(store_id, product_id), self._transaction() as db:
            batch = self._lock_batch(db, batch_id)
            manufacturing_date = changes.get("manufacturing_date", batch.manufacturing_date)
            expiry_date = changes.get("expiry_date", batch.expiry_date)
            if manufacturing_date and expiry_date and expiry_date < manufacturing_date:
                raise ValidationError("expiry_date cannot be before manufacturing_date", field="expiry_date")
            for name, value in changes.items():
                setattr(batch, name, value)
            result = BatchOut.model_validate(batch)

        log_event("batch_updated", batch_id=batch_id, fields=sorted(changes))
        return result

    def delete_batch(self, batch_id: str, force: bool = False, *, user_id: str | None = None) -> None:
        batch_id = _require_id(batch_id, "batch_id")
        if not isinstance(force, bool):
            raise ValidationError("force must be a boolean", field="force")
        actor = self._user(user_id)
        store_id, product_id = self._resolve_pair(batch_id)

        with self.locks.hold(store_id, product_id), self._transaction() as db:
            batch = self._lock_batch(db, batch_id)
            lost = int(batch.quantity)
            if lost > 0 and not force:
                raise ConflictError("non-zero quantity")

            inventory_id = batch.inventory_id
            self.audit.append(
                db,
                batch_id=batch.id,
                user_id=actor,
                action="delete",
                quantity_before=lost,
                quantity_after=0,
                details={"forced": force, "batch_number": batch.batch_number},
            )
            db.delete(batch)
            total = recompute_item_quantity(db, inventory_id)

        log_event(
            "batch_deleted",
            batch_id=batch_id,
            forced=force,
            quantity_lost=lost,
            inventory_quantity=total,
            user_id=actor,
            level=logging.WARNING if lost else logging.INFO,
        )

    def set_min_stock(self, store_id: str, product_id: str, min_stock: int) -> InventoryItemOut:
        store_id = _require_id(store_id, "store_id")
        product_id = _require_id(product_id, "product_id")
        min_stock = _require_int(min_stock, "min_stock")
        if min_stock < 0:
            raise ValidationError("min_stock cannot be negative", field="min_stock")

        with self.locks.hold(store_id, product_id), self._transaction() as db:
            item = get_item_for_pair(db, store_id=store_id, product_id=product_id, for_update=True)
            if item is None:
                raise NotFoundError("InventoryItem", f"{store_id}/{product_id}")
            item.min_stock = min_stock
            return InventoryItemOut.model_validate(item)

    def get_batches(self, store_id: str, product_id: str, include_expired: bool = False) -> list[BatchOut]:
        store_id = _require_id(store_id, "store_id")
        product_id = _require_id(product_id, "product_id")
        with self._read() as db:
            item = get_item_for_pair(db, store_id=store_id, product_id=product_id)
            if item is None:
                return []
            stmt = select(InventoryBatch).where(InventoryBatch.inventory_id == item.id)
            if not include_expired:
                stmt = stmt.where(_not_expired(self._clock()))
            rows = db.execute(stmt).scalars().all()
            return [BatchOut.model_validate(row) for row in BatchAllocator.order(rows)]

    def get_batch_by_id(self, batch_id: str) -> BatchOut:
        batch_id = _require_id(batch_id, "batch_id")
        with self._read() as db:
            return BatchOut.model_validate(self._get_batch(db, batch_id))

    def get_batch_audit_logs(self, batch_id: str) -> list[AuditLogEntryOut]:
        return self.audit.get_batch_audit_logs(_require_id(batch_id, "batch_id"))

    def get_inventory_item(self, store_id: str, product_id: str) -> InventoryItemOut:
        store_id = _require_id(store_id, "store_id")
        product_id = _require_id(product_id, "product_id")
        with self._read() as db:
            item = get_item_for_pair(db, store_id=store_id, product_id=product_id)
            if item is None:
                raise NotFoundError("InventoryItem", f"{store_id}/{product_id}")
            return InventoryItemOut.model_validate(item)

    def get_low_stock_items(self, store_id: str | None = None) -> list[InventoryItemOut]:
        stmt = select(InventoryItem).where(InventoryItem.quantity <= InventoryItem.min_stock)
        if store_id is not None:
            stmt = stmt.where(InventoryItem.store_id == _require_id(store_id, "store_id"))
        stmt = stmt.order_by(InventoryItem.quantity.asc(), InventoryItem.id.asc())
        with self._read() as db:
            return [InventoryItemOut.model_validate(row) for row in db.execute(stmt).scalars().all()]

    def _batches_with_stock(self, condition, store_id: str | None) -> list[BatchOut]:
        stmt = select(InventoryBatch).where(
            InventoryBatch.quantity > 0,
            InventoryBatch.expiry_date.is_not(None),
            condition,
        )
        if store_id is not None:
            stmt = stmt.join(InventoryItem, InventoryItem.id == InventoryBatch.inventory_id).where(
                InventoryItem.store_id == _require_id(store_id, "store_id"),
            )
        stmt = stmt.order_by(InventoryBatch.expiry_date.asc(), InventoryBatch.received_date.asc(), InventoryBatch.id.asc())
        with self._read() as db:
            return [BatchOut.model_validate(row) for row in db.execute(stmt).scalars().all()]

    def get_expiring_batches(self, days: int | None = None, store_id: str | None = None) -> list[BatchOut]:
        window = settings.expiring_window_days if days is None else _require_positive_qty(days, "days")
        today = self._clock()
        return self._batches_with_stock(
            and_(InventoryBatch.expiry_date >= today, InventoryBatch.expiry_date <= today + timedelta(days=window)),
            store_id,
        )

    def get_expired_batches(self, store_id: str | None = None) -> list[BatchOut]:
        return self._batches_with_stock(InventoryBatch.expiry_date < self._clock(), store_id)
