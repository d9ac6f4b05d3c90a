"""
Módulo de Cobro - Terminal POS

Registra la venta en el back-office, limpia el carrito solo si el registro
fue exitoso y luego descuenta el stock. Una falla de stock no revierte la
venta: se guarda una incidencia de conciliación para revisión manual.
"""

from .schemas import (
    PaymentMethod, PaymentMeta, TransactionStatus, TransactionDraft,
    TransactionRecord, CheckoutResult, generate_receipt_number
)
from .service import CheckoutFinalizer, stock_deltas

__all__ = [
    "PaymentMethod",
    "PaymentMeta",
    "TransactionStatus",
    "TransactionDraft",
    "TransactionRecord",
    "CheckoutResult",
    "generate_receipt_number",
    "CheckoutFinalizer",
    "stock_deltas"
]
