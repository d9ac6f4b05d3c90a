"""
CRUD operations for the pending void log outbox
"""
from sqlalchemy.orm import Session
from typing import Any, Dict, List
import json

from app.modules.voids.models import PendingVoidLog


class PendingVoidLogCRUD:
    """CRUD operations for pending void logs"""

    def enqueue(self, db: Session, terminal_key: str, void_id: str, payload: Dict[str, Any],
                error: str = "") -> PendingVoidLog:
        entry = PendingVoidLog(
            terminal_key=terminal_key,
            void_id=void_id,
            payload=json.dumps(payload),
            attempts=1,
            last_error=error
        )
        db.add(entry)
        db.commit()
        db.refresh(entry)
        return entry

    def list_unsent(self, db: Session, limit: int = 50) -> List[PendingVoidLog]:
        return db.query(PendingVoidLog).filter(
            PendingVoidLog.resolved_at.is_(None)
        ).order_by(PendingVoidLog.created_at.asc(), PendingVoidLog.id.asc()).limit(limit).all()

    def mark_sent(self, db: Session, entry: PendingVoidLog) -> None:
        entry.resolve()
        db.commit()

    def mark_failed(self, db: Session, entry: PendingVoidLog, error: str) -> None:
        entry.attempts = (entry.attempts or 0) + 1
        entry.last_error = error
        db.commit()


pending_void_log_crud = PendingVoidLogCRUD()
