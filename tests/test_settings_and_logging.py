import json
import logging
from datetime import date

import pytest
from pydantic import ValidationError as SettingsValidationError
from sqlalchemy.exc import OperationalError

from stockledger.core.config import Settings
from stockledger.core.errors import ConflictError, InsufficientStockError, StorageError
from stockledger.core.observability import log_event, setup_observability
from stockledger.db.session import build_engine


def _events(caplog) -> list[dict]:
    return [json.loads(record.getMessage()) for record in caplog.records if record.name == "stockledger.ledger"]


def test_settings_defaults_and_env_overrides(monkeypatch):
    monkeypatch.setenv("LOCK_TIMEOUT_SECONDS", "1.5")
    monkeypatch.setenv("FIFO_SKIP_EXPIRED", "true")
    monkeypatch.setenv("LOG_LEVEL", " debug ")

    configured = Settings(_env_file=None)

    assert configured.lock_timeout_seconds == 1.5
    assert configured.fifo_skip_expired is True
    assert configured.log_level == "DEBUG"
    assert configured.default_min_stock == 10
    assert configured.expiring_window_days == 30


@pytest.mark.parametrize(
    ("name", "value"),
    [("LOG_LEVEL", "chatty"), ("LOCK_TIMEOUT_SECONDS", "0"), ("SYSTEM_USER_ID", "  ")],
)
def test_settings_reject_invalid_values(monkeypatch, name, value):
    monkeypatch.setenv(name, value)

    with pytest.raises(SettingsValidationError):
        Settings(_env_file=None)


def test_log_event_emits_one_json_line(caplog):
    caplog.set_level(logging.INFO, logger="stockledger.ledger")

    log_event("fifo_sale", batches=["a", "b"], on=date(2024, 1, 1))

    assert _events(caplog) == [{"event": "fifo_sale", "batches": ["a", "b"], "on": "2024-01-01"}]


def test_ledger_logs_sales_and_rejections(ledger, caplog):
    caplog.set_level(logging.INFO, logger="stockledger.ledger")
    ledger.add_batch("s", "p", {"quantity": 4})

    ledger.sell_from_batches_fifo("s", "p", 3, reference_id="sale-1")
    with pytest.raises(InsufficientStockError):
        ledger.sell_from_batches_fifo("s", "p", 3)

    events = _events(caplog)
    assert [event["event"] for event in events] == ["batch_added", "fifo_sale", "fifo_sale_rejected"]
    assert events[1]["reference_id"] == "sale-1"
    assert events[2]["shortfall"] == 2


def test_storage_failures_surface_as_storage_error(ledger, monkeypatch):
    batch = ledger.add_batch("s", "p", {"quantity": 4})

    def broken_recompute(db, inventory_id):
        raise OperationalError("UPDATE inventory_items", {}, Exception("disk I/O error"))

    monkeypatch.setattr("stockledger.services.inventory_service.recompute_item_quantity", broken_recompute)

    with pytest.raises(StorageError):
        ledger.adjust_batch_stock(batch.id, -1, "count")

    monkeypatch.undo()
    assert ledger.get_batch_by_id(batch.id).quantity == 4
    assert ledger.get_batch_audit_logs(batch.id) == []


def test_database_lock_failures_surface_as_conflict(ledger, monkeypatch, caplog):
    caplog.set_level(logging.INFO, logger="stockledger.ledger")
    batch = ledger.add_batch("s", "p", {"quantity": 4})

    def locked_recompute(db, inventory_id):
        raise OperationalError("UPDATE inventory_items", {}, Exception("database is locked"))

    monkeypatch.setattr("stockledger.services.inventory_service.recompute_item_quantity", locked_recompute)

    with pytest.raises(ConflictError):
        ledger.sell_from_batch(batch.id, 1)

    assert _events(caplog)[-1]["event"] == "lock_conflict"


def test_build_engine_shares_in_memory_database():
    engine = build_engine("sqlite://")

    assert engine.pool.__class__.__name__ == "StaticPool"
    engine.dispose()


def test_setup_observability_installs_one_json_handler(monkeypatch, capsys):
    ledger_logger = logging.getLogger("stockledger.ledger")
    monkeypatch.setattr(ledger_logger, "handlers", [])
    monkeypatch.setattr(ledger_logger, "propagate", True)
    monkeypatch.setattr(ledger_logger, "level", logging.NOTSET)

    setup_observability()
    setup_observability()

    assert len(ledger_logger.handlers) == 1
    assert ledger_logger.propagate is False
    log_event("batch_added", batch_id="b-1")
    assert json.loads(capsys.readouterr().err.strip()) == {"event": "batch_added", "batch_id": "b-1"}
