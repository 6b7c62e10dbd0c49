from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from stockledger.core.errors import StorageError, ValidationError
from stockledger.models.audit_log import BatchAuditLog
from stockledger.schemas.inventory import AuditLogEntryOut

AUDIT_ACTIONS = frozenset({"adjust", "sell", "return", "delete"})


class AuditTrail:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @staticmethod
    def append(
        db: Session,
        *,
        batch_id: str,
        user_id: str,
        action: str,
        quantity_before: int,
        quantity_after: int,
        details: dict[str, Any] | None = None,
    ) -> BatchAuditLog:
        """Stage one entry on the caller's session; it commits with the mutation it describes."""
        if action not in AUDIT_ACTIONS:
            raise ValidationError(f"Unknown audit action: {action}", field="action")
        entry = BatchAuditLog(
            batch_id=batch_id,
            user_id=user_id,
            action=action,
            quantity_before=quantity_before,
            quantity_after=quantity_after,
            details=details,
        )
        db.add(entry)
        return entry

    def get_batch_audit_logs(self, batch_id: str) -> list[AuditLogEntryOut]:
        stmt = (
            select(BatchAuditLog)
            .where(BatchAuditLog.batch_id == batch_id)
            .order_by(BatchAuditLog.created_at.asc(), BatchAuditLog.id.asc())
        )
        try:
            with self._session_factory() as db:
                rows = db.execute(stmt).scalars().all()
                return [AuditLogEntryOut.model_validate(row) for row in rows]
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to read audit history for batch {batch_id}") from exc
