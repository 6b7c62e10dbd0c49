"""
Typed errors raised by the stock ledger.

Every error carries a machine-readable ``code`` and an ``http_status`` hint so
request handlers in front of the ledger can map them without parsing messages.
Business outcomes (validation, insufficient stock) and system failures
(conflicts, storage) share one base class so callers can catch the group.
"""


class StockLedgerError(Exception):
    code: str = "stock_ledger_error"
    http_status: int = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(StockLedgerError):
    """Malformed input. Raised before any persisted state is read."""

    code = "validation_error"
    http_status = 422

    def __init__(self, message: str, *, field: str | None = None, issues: list | None = None):
        self.field = field
        self.issues = issues or []
        super().__init__(message)


class NotFoundError(StockLedgerError):
    code = "not_found"
    http_status = 404

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class InsufficientStockError(StockLedgerError):
    """A FIFO allocation could not be satisfied from the available batches."""

    code = "insufficient_stock"
    http_status = 409

    def __init__(self, *, requested: int, available: int):
        self.requested = requested
        self.available = available
        self.shortfall = requested - available
        super().__init__(
            f"Insufficient stock. Requested: {requested}, "
            f"Available: {available}, Shortfall: {self.shortfall}"
        )


class ConflictError(StockLedgerError):
    """Concurrent modification, lock timeout, or a state conflict. Retryable."""

    code = "conflict"
    http_status = 409


class StorageError(StockLedgerError):
    code = "storage_error"
    http_status = 500
