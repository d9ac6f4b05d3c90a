"""
CRUD operations for reconciliation issues
"""
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
import json

from app.modules.checkout.models import ReconciliationIssue


class ReconciliationIssueCRUD:
    """CRUD operations for reconciliation issues"""

    def create(self, db: Session, terminal_key: str, transaction_id: str, receipt_number: str,
               stock_deltas: List[Dict[str, Any]], error: str,
               performed_by_id: Optional[str] = None,
               performed_by_name: Optional[str] = None) -> ReconciliationIssue:
        issue = ReconciliationIssue(
            terminal_key=terminal_key,
            transaction_id=transaction_id,
            receipt_number=receipt_number,
            stock_deltas=json.dumps(stock_deltas),
            error=error,
            performed_by_id=performed_by_id,
            performed_by_name=performed_by_name
        )
        db.add(issue)
        db.commit()
        db.refresh(issue)
        return issue

    def get(self, db: Session, issue_id: int) -> Optional[ReconciliationIssue]:
        return db.get(ReconciliationIssue, issue_id)

    def list_issues(self, db: Session, terminal_key: Optional[str] = None,
                    include_resolved: bool = False) -> List[ReconciliationIssue]:
        query = db.query(ReconciliationIssue)
        if terminal_key:
            query = query.filter(ReconciliationIssue.terminal_key == terminal_key)
        if not include_resolved:
            query = query.filter(ReconciliationIssue.resolved_at.is_(None))
        return query.order_by(ReconciliationIssue.created_at.desc(), ReconciliationIssue.id.desc()).all()

    def resolve(self, db: Session, issue: ReconciliationIssue) -> ReconciliationIssue:
        issue.resolve()
        db.commit()
        db.refresh(issue)
        return issue


reconciliation_issue_crud = ReconciliationIssueCRUD()
