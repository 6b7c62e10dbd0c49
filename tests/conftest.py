import os
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")

import stockledger.models  # noqa: F401
from stockledger.db.base import Base
from stockledger.services.inventory_service import InventoryLedger
from stockledger.services.locking import ItemLockRegistry

TODAY = date(2024, 1, 10)


@pytest.fixture()
def ledger_context():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    session_local = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    ledger = InventoryLedger(
        session_local,
        locks=ItemLockRegistry(timeout_seconds=2),
        clock=lambda: TODAY,
    )

    yield ledger, session_local

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def ledger(ledger_context):
    return ledger_context[0]
