"""
Modelo local del carrito de la terminal

Espejo local del carrito compartido: si el almacén remoto está vacío o no
responde, la terminal se rehidrata desde aquí.
"""
from sqlalchemy import Column, String, Text, Boolean
from app.database.database import Base
from app.common.mixins import TimestampMixin


class LocalCart(Base, TimestampMixin):
    """
    Última lista de ítems conocida para una terminal.
    remote_dirty indica que el almacén remoto no tiene esta versión.
    """
    __tablename__ = "local_carts"

    terminal_key = Column(String(100), primary_key=True)
    items = Column(Text, nullable=False, default="[]")  # JSON string of line items
    remote_dirty = Column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<LocalCart(terminal_key='{self.terminal_key}', dirty={self.remote_dirty})>"
