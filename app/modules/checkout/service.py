"""
Checkout Finalizer

Secuencia estricta (no reordenable):
1. Registrar la venta completa en el servicio de transacciones
2. Si falla: el carrito queda intacto (se restaura el snapshot si algo cambió),
   no se toca el stock y se lanza TransactionError; se puede reintentar
3. Si tiene éxito: vaciar el carrito y los descuentos, invalidar cachés
4. Descontar el stock de cada línea
5. Si falla: NO se deshace la venta ni se restaura el carrito; se registra
   una incidencia de conciliación y se devuelve una advertencia no bloqueante

No arranca mientras una anulación verifica PIN o muta el carrito. Si la
respuesta del registro trae campos ilegibles, el recibo se arma con los
datos del borrador: la venta ya existe y el carrito se vacía igual.
"""

from typing import Any, Callable, Dict, List, Optional
import asyncio
import logging
import warnings

from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.database.database import SessionLocal
from app.common.exceptions import (
    AuthorizationInProgressError, BackofficeError, CheckoutInProgressError, ReconciliationWarning,
    TransactionError, ValidationError, errmsg
)
from app.modules.auth.schemas import Performer
from app.modules.cart.schemas import LineItem
from app.modules.cart.service import CartStore
from app.modules.checkout.crud import reconciliation_issue_crud
from app.modules.checkout.schemas import (
    CheckoutResult, PaymentMeta, PaymentMethod, TransactionDraft, TransactionLine,
    TransactionRecord, TransactionStatus
)
from app.modules.discounts.service import AppliedDiscountSet, quantize_money

logger = logging.getLogger(__name__)

RECONCILIATION_NOTICE = (
    "La venta se registró pero el inventario no se actualizó. "
    "Se generó una incidencia de conciliación."
)


def stock_deltas(items: List[LineItem]) -> List[Dict[str, Any]]:
    """Descuentos de stock por línea: {productId, size, quantity}"""
    return [
        {"productId": item.product_id, "size": item.selected_size, "quantity": item.quantity}
        for item in items
    ]


class CheckoutFinalizer:
    """Cobro de la venta en curso de una terminal"""

    def __init__(self, cart: CartStore, discounts: AppliedDiscountSet, backoffice,
                 catalog=None, discount_catalog=None, session_factory=SessionLocal,
                 transaction_timeout: Optional[float] = None,
                 voids_in_flight: Optional[Callable[[], bool]] = None):
        self.cart = cart
        self.voids_in_flight = voids_in_flight
        self.discounts = discounts
        self.backoffice = backoffice
        self.catalog = catalog
        self.discount_catalog = discount_catalog
        self.session_factory = session_factory
        self.transaction_timeout = (
            transaction_timeout if transaction_timeout is not None
            else settings.TRANSACTION_TIMEOUT_SECONDS
        )
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def finalize(self, payment: PaymentMeta, performer: Optional[Performer] = None) -> CheckoutResult:
        """
        Cobrar el carrito.

        Raises:
            CheckoutInProgressError: ya hay un cobro en curso en la terminal
            AuthorizationInProgressError: una anulación está verificando PIN o mutando el carrito
            ValidationError: carrito vacío o monto recibido insuficiente
            TransactionError: la venta no se registró; el carrito queda como estaba
        """
        if self._in_flight:
            raise CheckoutInProgressError(errmsg.CHECKOUT_IN_PROGRESS)
        if self.voids_in_flight is not None and self.voids_in_flight():
            raise AuthorizationInProgressError(errmsg.AUTH_IN_PROGRESS)
        if self.cart.is_empty:
            raise ValidationError(errmsg.CART_EMPTY)

        self._in_flight = True
        try:
            performer = performer or Performer()
            snapshot = self.cart.snapshot()
            items = self.cart.items

            self.discounts.revalidate(items)
            subtotal = quantize_money(self.cart.subtotal())
            discount_amount = self.discounts.discount_amount(subtotal)
            total = quantize_money(subtotal - discount_amount)

            change_given = None
            if payment.method == PaymentMethod.CASH:
                if payment.amount_received < total:
                    raise ValidationError(
                        f"Monto recibido insuficiente: {quantize_money(payment.amount_received)} < {total}"
                    )
                change_given = quantize_money(payment.amount_received - total)

            draft = TransactionDraft(
                items=[TransactionLine.from_line(item) for item in items],
                payment_method=payment.method,
                status=TransactionStatus.COMPLETED,
                subtotal=subtotal,
                discount_amount=discount_amount,
                total=total,
                performer=performer,
                terminal_key=self.cart.terminal_key,
                reference_no=payment.reference_no,
                amount_received=payment.amount_received,
                change_given=change_given,
                discount_ids=self.discounts.ids,
            )

            # Paso 1: registrar la venta
            try:
                data = await asyncio.wait_for(
                    self.backoffice.record_transaction(draft.to_wire()),
                    timeout=self.transaction_timeout
                )
            except asyncio.TimeoutError as e:
                self._restore_if_changed(snapshot)
                logger.error(f"Registro de venta excedió {self.transaction_timeout}s; carrito intacto")
                raise TransactionError(f"{errmsg.TRANSACTION_FAILED}: tiempo de espera agotado", cause=e)
            except BackofficeError as e:
                self._restore_if_changed(snapshot)
                logger.error(f"Registro de venta fallido; carrito intacto: {e}")
                raise TransactionError(f"{errmsg.TRANSACTION_FAILED}: {e.message}", cause=e)

            # Paso 3: la transacción es ahora la fuente de verdad
            self.cart.clear()
            self.discounts.clear()
            if self.catalog is not None:
                self.catalog.invalidate()
            if self.discount_catalog is not None:
                self.discount_catalog.invalidate()

            transaction = TransactionRecord.from_response(data, draft)
            logger.info(
                f"Venta registrada {transaction.id or '-'} recibo {transaction.receipt_number} "
                f"total {total} ({payment.method.value})"
            )

            # Paso 4: descontar stock, sin deshacer la venta si falla
            result = CheckoutResult(transaction=transaction, change_given=change_given)
            deltas = stock_deltas(items)
            try:
                await asyncio.wait_for(
                    self.backoffice.update_stock(deltas, performer.name, performer.id),
                    timeout=self.transaction_timeout
                )
            except (asyncio.TimeoutError, BackofficeError) as e:
                error = str(e) or "tiempo de espera agotado"
                logger.warning(
                    f"Conciliación requerida: transacción {transaction.id or transaction.receipt_number} "
                    f"registrada pero el stock no se descontó: {error}"
                )
                warnings.warn(
                    f"Stock no descontado para {transaction.receipt_number}", ReconciliationWarning
                )
                result.reconciliation_issue_id = self._record_reconciliation_issue(
                    transaction, deltas, error, performer
                )
                result.warnings.append(RECONCILIATION_NOTICE)

            return result
        finally:
            self._in_flight = False

    def _restore_if_changed(self, snapshot: List[Dict[str, Any]]) -> None:
        if self.cart.snapshot() != snapshot:
            logger.info(f"Restaurando carrito {self.cart.terminal_key} al estado previo al cobro")
            self.cart.restore(snapshot)

    def _record_reconciliation_issue(self, transaction: TransactionRecord, deltas: List[Dict[str, Any]],
                                     error: str, performer: Performer) -> Optional[int]:
        db = self.session_factory()
        try:
            issue = reconciliation_issue_crud.create(
                db,
                terminal_key=self.cart.terminal_key,
                transaction_id=transaction.id or transaction.receipt_number,
                receipt_number=transaction.receipt_number,
                stock_deltas=deltas,
                error=error,
                performed_by_id=performer.id,
                performed_by_name=performer.name
            )
            return issue.id
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"No se pudo guardar la incidencia de conciliación: {e}; deltas={deltas}")
            return None
        finally:
            db.close()
