from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stockledger.db.base import Base


class InventoryItem(Base):
    """
    Aggregate stock record for one (store, product) pair.
    quantity is derived: it always equals the sum of the item's batch quantities.
    """
    __tablename__ = "inventory_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    store_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    min_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=10, server_default="10")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    batches: Mapped[list["InventoryBatch"]] = relationship(back_populates="inventory_item")

    __table_args__ = (
        UniqueConstraint("store_id", "product_id", name="uq_inventory_items_store_product"),
        CheckConstraint("quantity >= 0", name="chk_inventory_items_quantity_gte_zero"),
        CheckConstraint("min_stock >= 0", name="chk_inventory_items_min_stock_gte_zero"),
    )


class InventoryBatch(Base):
    """
    One discrete, dated lot of stock. Exhausted batches (quantity == 0) stay until deleted.
    """
    __tablename__ = "inventory_batches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    inventory_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("inventory_items.id"),
        nullable=False,
        index=True,
    )
    batch_number: Mapped[str] = mapped_column(String(128), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    received_date: Mapped[date] = mapped_column(Date, nullable=False)
    manufacturing_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    expiry_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    cost_per_unit: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    inventory_item: Mapped[InventoryItem] = relationship(back_populates="batches")

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="chk_inventory_batches_quantity_gte_zero"),
        Index("ix_inventory_batches_inventory_expiry_date", "inventory_id", "expiry_date"),
        Index("ix_inventory_batches_inventory_received_date", "inventory_id", "received_date"),
    )
