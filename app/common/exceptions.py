"""
Taxonomía de errores de la terminal POS

- ValidationError: entrada incorrecta (talla, stock, código), no reintentable sin corrección
- AuthorizationError: PIN rechazado o verificación fallida, reintentable
- TransactionError: la venta no se registró, el carrito se restaura, reintentable
- ReconciliationWarning / PersistenceWarning: no bloquean, solo se registran

Los routers no capturan estas excepciones: main.py registra un handler que
las traduce a respuestas JSON con `detail` y `code`.
"""

from typing import Any, Dict, Optional

from fastapi import status


class errmsg:
    """Mensajes de error de la terminal."""

    CART_EMPTY = "El carrito está vacío"
    PRODUCT_NOT_FOUND = "Producto no encontrado"
    ITEM_NOT_IN_CART = "El producto no está en el carrito"
    INVALID_SIZE = "Talla no válida para este producto"
    SIZE_REQUIRED = "Debe seleccionar una talla"
    QUANTITY_POSITIVE = "La cantidad debe ser mayor a cero"
    INSUFFICIENT_STOCK = "Stock insuficiente"
    DISCOUNT_NOT_FOUND = "Código de descuento no encontrado"
    DISCOUNT_CODE_INVALID = "Código de descuento mal formado"
    INVALID_PIN_FORMAT = "Ingrese un PIN de 6 dígitos"
    INVALID_PIN = "PIN inválido. Intente de nuevo."
    PIN_SERVICE_UNAVAILABLE = "No se pudo verificar el PIN. Intente de nuevo."
    NO_PENDING_CHANGE = "No hay un cambio de cantidad pendiente"
    AUTH_IN_PROGRESS = "Ya hay una autorización en curso"
    CHECKOUT_IN_PROGRESS = "Ya hay un cobro en curso para esta terminal"
    VOID_NOT_APPLIED = "El carrito no cambió; la anulación no se registró"
    TRANSACTION_FAILED = "No se pudo registrar la venta"


class TerminalError(Exception):
    """Error base de la terminal."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "terminal_error"

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message}: {self.cause}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class ValidationError(TerminalError):
    """Entrada inválida; requiere corrección del usuario."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "validation_error"


class InsufficientStockError(ValidationError):
    """La cantidad solicitada supera el stock disponible."""

    status_code = status.HTTP_409_CONFLICT
    code = "insufficient_stock"

    def __init__(self, requested: int, in_cart: int, available: int):
        super().__init__(
            f"{errmsg.INSUFFICIENT_STOCK}: {in_cart} ya en el carrito, {available} disponibles"
        )
        self.requested = requested
        self.in_cart = in_cart
        self.available = available

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "requested": self.requested,
            "in_cart": self.in_cart,
            "available": self.available,
        })
        return data


class ProductNotFoundError(ValidationError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "product_not_found"


class DiscountNotApplicableError(ValidationError):
    """El descuento no aplica al contenido actual del carrito."""

    status_code = status.HTTP_409_CONFLICT
    code = "discount_not_applicable"


class DiscountNotFoundError(ValidationError):
    """No existe un descuento activo con ese código o id."""

    status_code = status.HTTP_404_NOT_FOUND
    code = "discount_not_found"


class AuthorizationError(TerminalError):
    """Verificación de PIN fallida. `clear_pin` indica si la UI debe limpiar el campo."""

    status_code = status.HTTP_401_UNAUTHORIZED
    code = "authorization_failed"

    def __init__(self, message: str, clear_pin: bool, cause: Optional[Exception] = None):
        super().__init__(message, cause)
        self.clear_pin = clear_pin

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["clear_pin"] = self.clear_pin
        data["retryable"] = True
        return data


class AuthorizationInProgressError(TerminalError):
    """Segundo intento concurrente de autorizar la misma acción."""

    status_code = status.HTTP_409_CONFLICT
    code = "authorization_in_progress"


class CheckoutInProgressError(TerminalError):
    """Segundo cobro concurrente en la misma terminal."""

    status_code = status.HTTP_409_CONFLICT
    code = "checkout_in_progress"


class NoPendingChangeError(TerminalError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "no_pending_change"


class InvalidStateError(TerminalError):
    """Operación no permitida en el estado actual del flujo."""

    status_code = status.HTTP_409_CONFLICT
    code = "invalid_state"


class VoidNotAppliedError(TerminalError):
    """La lectura posterior a la mutación no mostró cambios en el carrito."""

    status_code = status.HTTP_409_CONFLICT
    code = "void_not_applied"


class TransactionError(TerminalError):
    """La venta no se pudo registrar; el carrito queda intacto."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "transaction_failed"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retryable"] = True
        if self.cause:
            data["cause"] = str(self.cause)
        return data


class BackofficeError(TerminalError):
    """Respuesta de error del back-office."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "backoffice_error"

    def __init__(self, message: str, http_status: Optional[int] = None, cause: Optional[Exception] = None):
        super().__init__(message, cause)
        self.http_status = http_status


class BackofficeUnavailableError(BackofficeError):
    """Timeout o error de red hacia el back-office."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "backoffice_unavailable"


class PinRejectedError(BackofficeError):
    """El servicio de PIN rechazó el código."""

    status_code = status.HTTP_401_UNAUTHORIZED
    code = "pin_rejected"


class ReconciliationWarning(UserWarning):
    """El stock no se descontó tras una venta registrada."""


class PersistenceWarning(UserWarning):
    """El carrito no se pudo guardar en el almacén remoto."""
