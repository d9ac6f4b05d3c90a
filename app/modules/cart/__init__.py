"""
Módulo de Carrito - Terminal POS

Carrito compartido por terminal (no por usuario). Cada mutación se escribe
de inmediato en la base local y se guarda en el back-office con debounce;
si el guardado remoto falla, el carrito queda marcado y Celery reintenta.

Componentes:
- schemas.py: LineItem, ItemKey y modelos de respuesta
- service.py: CartStore (mutaciones, validación de stock, persistencia)
- models.py / crud.py: espejo local del carrito
- tasks.py: reintento en segundo plano del guardado remoto
- router.py: endpoints /terminal/cart
"""

from .schemas import (
    ItemKey, LineItem, AddItemStatus, AddItemResult, CartTotals, CartOut, PersistenceStatus
)
from .service import CartStore

__all__ = [
    "ItemKey",
    "LineItem",
    "AddItemStatus",
    "AddItemResult",
    "CartTotals",
    "CartOut",
    "PersistenceStatus",
    "CartStore"
]
