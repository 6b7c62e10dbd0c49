import os
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from pathlib import Path
from threading import Barrier
from uuid import uuid4

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker

from stockledger.core.errors import InsufficientStockError
from stockledger.services.inventory_service import InventoryLedger
from stockledger.services.locking import ItemLockRegistry


def _test_pg_url() -> str | None:
    return os.getenv("TEST_POSTGRES_DATABASE_URL")


def _alembic_config() -> Config:
    project_root = Path(__file__).resolve().parents[1]
    return Config(str(project_root / "alembic.ini"))


@pytest.fixture()
def pg_url(monkeypatch):
    url = _test_pg_url()
    if not url:
        pytest.skip("Set TEST_POSTGRES_DATABASE_URL to run Postgres integration tests.")
    monkeypatch.setenv("DATABASE_URL", url)
    command.upgrade(_alembic_config(), "head")
    return url


@pytest.mark.integration
def test_postgres_connection_and_core_tables(pg_url):
    engine = create_engine(pg_url, pool_pre_ping=True)
    with engine.connect() as conn:
        assert conn.execute(text("SELECT 1")).scalar_one() == 1

    table_names = set(inspect(engine).get_table_names())
    assert {"inventory_items", "inventory_batches", "batch_audit_logs"} <= table_names
    engine.dispose()


@pytest.mark.integration
def test_alembic_upgrade_downgrade_smoke(pg_url):
    if os.getenv("ALLOW_DESTRUCTIVE_MIGRATION_TESTS") != "1":
        pytest.skip("Set ALLOW_DESTRUCTIVE_MIGRATION_TESTS=1 for downgrade smoke test.")

    alembic_cfg = _alembic_config()
    command.downgrade(alembic_cfg, "base")
    command.upgrade(alembic_cfg, "head")


@pytest.mark.integration
def test_row_locks_serialize_ledgers_in_separate_processes(pg_url):
    """Two ledgers with independent lock registries still cannot oversell."""
    engine = create_engine(pg_url, pool_pre_ping=True, pool_size=4)
    session_local = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    ledgers = [
        InventoryLedger(session_local, locks=ItemLockRegistry(timeout_seconds=10)),
        InventoryLedger(session_local, locks=ItemLockRegistry(timeout_seconds=10)),
    ]
    store_id, product_id = str(uuid4()), str(uuid4())
    ledgers[0].add_batch(store_id, product_id, {"quantity": 10, "expiry_date": date(2030, 1, 1)})

    def sell(ledger):
        try:
            return ledger.sell_from_batches_fifo(store_id, product_id, 6)
        except InsufficientStockError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(pool.map(sell, ledgers))

    assert sum(not isinstance(outcome, Exception) for outcome in outcomes) == 1
    assert ledgers[0].get_inventory_item(store_id, product_id).quantity == 4
    engine.dispose()


@pytest.mark.integration
def test_sibling_batch_adjustments_keep_item_total_across_processes(pg_url):
    """Batch-id operations lock the item row first, so totals never go stale."""
    engine = create_engine(pg_url, pool_pre_ping=True, pool_size=4)
    session_local = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    ledgers = [
        InventoryLedger(session_local, locks=ItemLockRegistry(timeout_seconds=10)),
        InventoryLedger(session_local, locks=ItemLockRegistry(timeout_seconds=10)),
    ]
    store_id, product_id = str(uuid4()), str(uuid4())
    first = ledgers[0].add_batch(store_id, product_id, {"quantity": 100, "expiry_date": date(2030, 1, 1)})
    second = ledgers[1].add_batch(store_id, product_id, {"quantity": 100, "expiry_date": date(2030, 2, 1)})
    barrier = Barrier(2)

    def adjust(args):
        ledger, batch_id = args
        barrier.wait()
        for _ in range(20):
            ledger.adjust_batch_stock(batch_id, -1, "count")

    with ThreadPoolExecutor(max_workers=2) as pool:
        list(pool.map(adjust, [(ledgers[0], first.id), (ledgers[1], second.id)]))

    batches = ledgers[0].get_batches(store_id, product_id, include_expired=True)
    assert sorted(batch.quantity for batch in batches) == [80, 80]
    assert ledgers[0].get_inventory_item(store_id, product_id).quantity == 160
    engine.dispose()
