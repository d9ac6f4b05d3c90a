"""
Módulo de Anulaciones - Terminal POS

Los aumentos de cantidad se aplican al confirmar; las disminuciones y
eliminaciones requieren motivo y PIN de un gerente. Cada anulación aplicada
genera un VoidRecord; si el back-office no lo recibe, queda en un outbox
local que Celery reenvía.
"""

from .schemas import (
    VoidReason, QuantityChangeState, VoidSource, PendingQuantityChange,
    Approver, VoidedItem, VoidRecord, VoidOutcome
)
from .service import QuantityChangeFlow, BulkVoid

__all__ = [
    "VoidReason",
    "QuantityChangeState",
    "VoidSource",
    "PendingQuantityChange",
    "Approver",
    "VoidedItem",
    "VoidRecord",
    "VoidOutcome",
    "QuantityChangeFlow",
    "BulkVoid"
]
