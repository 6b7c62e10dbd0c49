"""add batch inventory tables

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261017_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _index_exists(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    return index_name in {index["name"] for index in inspector.get_indexes(table_name)}


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _table_exists(inspector, "inventory_items"):
        op.create_table(
            "inventory_items",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("store_id", sa.String(length=36), nullable=False),
            sa.Column("product_id", sa.String(length=36), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("min_stock", sa.Integer(), nullable=False, server_default="10"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
            sa.CheckConstraint("quantity >= 0", name="chk_inventory_items_quantity_gte_zero"),
            sa.CheckConstraint("min_stock >= 0", name="chk_inventory_items_min_stock_gte_zero"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("store_id", "product_id", name="uq_inventory_items_store_product"),
        )

    if not _table_exists(inspector, "inventory_batches"):
        op.create_table(
            "inventory_batches",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("inventory_id", sa.String(length=36), nullable=False),
            sa.Column("batch_number", sa.String(length=128), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("received_date", sa.Date(), nullable=False),
            sa.Column("manufacturing_date", sa.Date(), nullable=True),
            sa.Column("expiry_date", sa.Date(), nullable=True),
            sa.Column("cost_per_unit", sa.Numeric(precision=12, scale=2), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
            sa.CheckConstraint("quantity >= 0", name="chk_inventory_batches_quantity_gte_zero"),
            sa.ForeignKeyConstraint(["inventory_id"], ["inventory_items.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "batch_audit_logs"):
        op.create_table(
            "batch_audit_logs",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("batch_id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=20), nullable=False),
            sa.Column("quantity_before", sa.Integer(), nullable=False),
            sa.Column("quantity_after", sa.Integer(), nullable=False),
            sa.Column("details", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
            sa.PrimaryKeyConstraint("id"),
        )

    inspector = sa.inspect(bind)
    indexes = [
        ("inventory_items", "ix_inventory_items_store_id", ["store_id"]),
        ("inventory_items", "ix_inventory_items_product_id", ["product_id"]),
        ("inventory_batches", "ix_inventory_batches_inventory_id", ["inventory_id"]),
        ("inventory_batches", "ix_inventory_batches_inventory_expiry_date", ["inventory_id", "expiry_date"]),
        ("inventory_batches", "ix_inventory_batches_inventory_received_date", ["inventory_id", "received_date"]),
        ("batch_audit_logs", "ix_batch_audit_logs_batch_id", ["batch_id"]),
        ("batch_audit_logs", "ix_batch_audit_logs_user_id", ["user_id"]),
        ("batch_audit_logs", "ix_batch_audit_logs_batch_created_at", ["batch_id", "created_at"]),
    ]
    for table_name, index_name, columns in indexes:
        if not _index_exists(inspector, table_name, index_name):
            op.create_index(index_name, table_name, columns, unique=False)


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    for table_name in ("batch_audit_logs", "inventory_batches", "inventory_items"):
        if _table_exists(inspector, table_name):
            op.drop_table(table_name)
