"""
Cola local de bitácoras de anulación

Una anulación cuya mutación del carrito ya ocurrió pero cuyo envío a la
bitácora falló se guarda aquí y la reintenta la tarea submit_pending_void_logs.
"""
from sqlalchemy import Column, Integer, String, Text
from app.database.database import Base
from app.common.mixins import TerminalMixin, TimestampMixin, ResolvableMixin


class PendingVoidLog(Base, TerminalMixin, TimestampMixin, ResolvableMixin):
    """Bitácora de anulación pendiente de envío"""
    __tablename__ = "pending_void_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    void_id = Column(String(20), nullable=False, unique=True, index=True)
    payload = Column(Text, nullable=False)  # JSON body for POST /void-logs
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    def __repr__(self):
        return f"<PendingVoidLog(void_id='{self.void_id}', attempts={self.attempts})>"
