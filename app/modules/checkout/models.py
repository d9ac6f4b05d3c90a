"""
Modelo local de incidencias de conciliación de inventario

Se crea cuando una venta quedó registrada pero el descuento de stock falló.
La venta no se deshace; la incidencia queda para corrección manual.
"""
from sqlalchemy import Column, Integer, String, Text
from app.database.database import Base
from app.common.mixins import TerminalMixin, TimestampMixin, ResolvableMixin


class ReconciliationIssue(Base, TerminalMixin, TimestampMixin, ResolvableMixin):
    """Descuento de stock pendiente tras una venta registrada"""
    __tablename__ = "reconciliation_issues"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(100), nullable=False, index=True)
    receipt_number = Column(String(40), nullable=False, default="")
    stock_deltas = Column(Text, nullable=False)  # JSON list of {productId, size, quantity}
    error = Column(Text, nullable=False, default="")
    performed_by_id = Column(String(100), nullable=True)
    performed_by_name = Column(String(255), nullable=True)

    def __repr__(self):
        return f"<ReconciliationIssue(transaction_id='{self.transaction_id}', resolved={self.is_resolved})>"
