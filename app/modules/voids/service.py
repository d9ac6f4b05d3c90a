"""
Flujo de autorización de cambios de cantidad

Máquina de estados por línea del carrito:

    COMMITTED -> PENDING -> COMMITTED      (cancelado, sin cambio o aumento confirmado)
                         -> AWAITING_AUTH  (disminución confirmada)
    AWAITING_AUTH -> VOIDED                (PIN válido y mutación verificada)
                  -> AWAITING_AUTH         (PIN rechazado o servicio caído; se reintenta)

Orden obligatorio en la autorización:
1. Verificar el PIN
2. Mutar el carrito
3. Releer la línea y comprobar que la cantidad bajó (o que ya no está)
4. Recién entonces emitir el VoidRecord a la bitácora

Si la relectura muestra la línea sin cambios se aborta sin registrar nada.
Un cobro en curso bloquea la autorización antes y después de verificar el PIN.
La variante masiva (bulk) agrupa varias líneas en un único ciclo de PIN.
"""

from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Set
import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.database.database import SessionLocal
from app.common.exceptions import (
    AuthorizationError, AuthorizationInProgressError, BackofficeError, InvalidStateError,
    NoPendingChangeError, PinRejectedError, ValidationError, VoidNotAppliedError, errmsg
)
from app.common.validators import validate_pin
from app.modules.auth.schemas import Performer
from app.modules.cart.schemas import ItemKey, LineItem
from app.modules.cart.service import CartStore
from app.modules.checkout.schemas import (
    PaymentMethod, TransactionDraft, TransactionLine, TransactionStatus
)
from app.modules.voids.crud import pending_void_log_crud
from app.modules.voids.schemas import (
    Approver, PendingQuantityChange, QuantityChangeState, VoidedItem, VoidOutcome,
    VoidReason, VoidRecord, VoidSource
)

logger = logging.getLogger(__name__)

BULK_FLIGHT_KEY = "bulk"


class BulkVoid:
    """Selección de líneas a anular en un solo ciclo de autorización"""

    def __init__(self, items: List[LineItem]):
        self.items = items
        self.state = QuantityChangeState.AWAITING_AUTH

    @property
    def keys(self) -> List[ItemKey]:
        return [item.key for item in self.items]

    @property
    def total_amount(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0"))


class QuantityChangeFlow:
    """Cambios de cantidad pendientes y su autorización con PIN"""

    def __init__(self, cart: CartStore, backoffice, session_factory=SessionLocal,
                 pin_timeout: Optional[float] = None,
                 cart_guard: Optional[Callable[[], None]] = None):
        self.cart = cart
        # Lanza si otra operación tiene el carrito tomado (cobro en curso)
        self.cart_guard = cart_guard
        self.backoffice = backoffice
        self.session_factory = session_factory
        self.pin_timeout = pin_timeout if pin_timeout is not None else settings.PIN_VERIFY_TIMEOUT_SECONDS

        self._pending: Dict[ItemKey, PendingQuantityChange] = {}
        self._bulk: Optional[BulkVoid] = None
        self._in_flight: Set[object] = set()

    # ===== CONSULTA =====

    def get_pending(self, key: ItemKey) -> Optional[PendingQuantityChange]:
        return self._pending.get(key)

    @property
    def pending_changes(self) -> List[PendingQuantityChange]:
        return list(self._pending.values())

    @property
    def bulk(self) -> Optional[BulkVoid]:
        return self._bulk

    def is_in_flight(self, key: object) -> bool:
        return key in self._in_flight

    @property
    def authorizing(self) -> bool:
        """Hay al menos una verificación de PIN o mutación de anulación en curso"""
        return bool(self._in_flight)

    # ===== PROPUESTAS =====

    def adjust(self, key: ItemKey, delta: int) -> PendingQuantityChange:
        """Sumar/restar unidades a la cantidad propuesta (o a la comprometida si no hay propuesta)"""
        item = self._require_item(key)
        pending = self._pending.get(key)
        base = pending.proposed_quantity if pending and pending.proposed_quantity > 0 else item.quantity
        return self._set_proposal(item, base + delta)

    def propose(self, key: ItemKey, quantity: int) -> PendingQuantityChange:
        item = self._require_item(key)
        return self._set_proposal(item, quantity)

    def _set_proposal(self, item: LineItem, quantity: int) -> PendingQuantityChange:
        key = item.key
        self._ensure_not_in_flight(key)

        # Rango permitido: [1, stock disponible]
        upper = max(item.available_stock(), 1)
        proposed = min(max(quantity, 1), upper)

        pending = PendingQuantityChange(
            key=key,
            committed_quantity=item.quantity,
            proposed_quantity=proposed,
            unit_price=item.unit_price,
            state=QuantityChangeState.PENDING
        )
        self._pending[key] = pending
        return pending

    def request_removal(self, key: ItemKey) -> PendingQuantityChange:
        """Eliminar la línea completa: pasa directo a esperar autorización"""
        item = self._require_item(key)
        self._ensure_not_in_flight(key)

        pending = PendingQuantityChange(
            key=key,
            committed_quantity=item.quantity,
            proposed_quantity=0,
            unit_price=item.unit_price,
            state=QuantityChangeState.AWAITING_AUTH
        )
        self._pending[key] = pending
        return pending

    def confirm(self, key: ItemKey) -> PendingQuantityChange:
        """
        Confirmar la propuesta.

        - Aumento: se compromete directamente, sin autorización
        - Igual: vuelve a COMMITTED sin cambios
        - Disminución: pasa a AWAITING_AUTH
        """
        pending = self._pending.get(key)
        if pending is None:
            raise NoPendingChangeError(errmsg.NO_PENDING_CHANGE)
        if pending.state != QuantityChangeState.PENDING:
            raise InvalidStateError(f"El cambio está en estado {pending.state.value}")

        item = self._require_item(key)
        pending.committed_quantity = item.quantity

        if pending.proposed_quantity > item.quantity:
            self.cart.set_quantity(key, pending.proposed_quantity)
            del self._pending[key]
            pending.state = QuantityChangeState.COMMITTED
            return pending

        if pending.proposed_quantity == item.quantity:
            del self._pending[key]
            pending.state = QuantityChangeState.COMMITTED
            return pending

        pending.state = QuantityChangeState.AWAITING_AUTH
        return pending

    def cancel(self, key: ItemKey) -> bool:
        """
        Descartar la propuesta sin efectos.
        Una autorización en curso que termine después no mutará el carrito.
        """
        cancelled = self._pending.pop(key, None) is not None
        if cancelled and key in self._in_flight:
            logger.info(f"Cambio de cantidad cancelado durante la autorización: {key}")
        return cancelled

    # ===== AUTORIZACIÓN =====

    async def authorize(self, key: ItemKey, reason, pin: str,
                        performer: Optional[Performer] = None, notes: str = "",
                        approver_hint: Optional[str] = None) -> VoidOutcome:
        """
        Autorizar la disminución pendiente con motivo y PIN.

        Raises:
            NoPendingChangeError / InvalidStateError: no hay nada que autorizar
            ValidationError: motivo fuera del catálogo o PIN mal formado
            AuthorizationError: PIN rechazado (clear_pin=True) o verificación fallida (clear_pin=False)
            AuthorizationInProgressError: ya hay una autorización en curso para la línea
            CheckoutInProgressError: hay un cobro en curso; el cambio sigue esperando autorización
            VoidNotAppliedError: la relectura no mostró la disminución
        """
        pending = self._pending.get(key)
        if pending is None:
            raise NoPendingChangeError(errmsg.NO_PENDING_CHANGE)
        if pending.state != QuantityChangeState.AWAITING_AUTH:
            raise InvalidStateError("Confirme el cambio antes de autorizarlo")

        reason = self._parse_reason(reason)
        self._check_pin_format(pin)

        if key in self._in_flight:
            raise AuthorizationInProgressError(errmsg.AUTH_IN_PROGRESS)
        self._check_cart_free()
        self._in_flight.add(key)
        try:
            approver = await self._verify_pin(pin, approver_hint)

            if self._pending.get(key) is not pending:
                raise InvalidStateError("El cambio fue cancelado antes de completar la autorización")
            # El cobro pudo empezar mientras se verificaba el PIN
            self._check_cart_free()

            before = self.cart.get_item(key)
            if before is None or before.quantity <= pending.proposed_quantity:
                self._pending.pop(key, None)
                logger.error(f"Anulación abortada para {key}: la línea ya no tiene unidades que anular")
                raise VoidNotAppliedError(errmsg.VOID_NOT_APPLIED)

            self.cart.set_quantity(key, pending.proposed_quantity)

            after = self.cart.get_item(key)
            remaining = after.quantity if after else 0
            if remaining >= before.quantity:
                self._pending.pop(key, None)
                logger.error(f"Anulación abortada para {key}: el carrito no reflejó la disminución")
                raise VoidNotAppliedError(errmsg.VOID_NOT_APPLIED)

            voided_quantity = before.quantity - remaining
            voided = VoidedItem.from_line(before, voided_quantity)
            record = VoidRecord(
                items=[voided],
                total_amount=voided.amount,
                reason=reason,
                approver=approver,
                performer=performer or Performer(),
                source=VoidSource.CART,
                terminal_key=self.cart.terminal_key,
                notes=notes,
            )
            self._pending.pop(key, None)
            pending.state = QuantityChangeState.VOIDED

            logged = await self._submit_void_log(record)
            logger.info(
                f"Anulación {record.void_id}: {voided_quantity} x {before.name or before.product_id} "
                f"autorizada por {approver.name or approver.id}"
            )
            return VoidOutcome(record=record, logged=logged, remaining_quantity=remaining)
        finally:
            self._in_flight.discard(key)

    # ===== ANULACIÓN MASIVA =====

    def begin_bulk(self, keys: Iterable[ItemKey]) -> BulkVoid:
        """Seleccionar varias líneas para eliminarlas con una sola autorización"""
        if BULK_FLIGHT_KEY in self._in_flight:
            raise AuthorizationInProgressError(errmsg.AUTH_IN_PROGRESS)

        items = []
        seen = set()
        for key in keys:
            if key in seen:
                continue
            seen.add(key)
            items.append(self._require_item(key))
        if not items:
            raise ValidationError(errmsg.CART_EMPTY)

        self._bulk = BulkVoid(items)
        return self._bulk

    def cancel_bulk(self) -> bool:
        cancelled = self._bulk is not None
        self._bulk = None
        return cancelled

    async def authorize_bulk(self, reason, pin: str, performer: Optional[Performer] = None,
                             notes: str = "", approver_hint: Optional[str] = None) -> VoidOutcome:
        """
        Autorizar la anulación masiva.

        Cada línea se elimina directamente (sin pasar por su propia propuesta) y
        se escriben una transacción 'Voided' agregada y un único VoidRecord.
        """
        bulk = self._bulk
        if bulk is None:
            raise NoPendingChangeError(errmsg.NO_PENDING_CHANGE)

        reason = self._parse_reason(reason)
        self._check_pin_format(pin)

        if BULK_FLIGHT_KEY in self._in_flight:
            raise AuthorizationInProgressError(errmsg.AUTH_IN_PROGRESS)
        self._check_cart_free()
        self._in_flight.add(BULK_FLIGHT_KEY)
        try:
            approver = await self._verify_pin(pin, approver_hint)

            if self._bulk is not bulk:
                raise InvalidStateError("La anulación masiva fue cancelada")
            self._check_cart_free()

            voided: List[VoidedItem] = []
            for key in bulk.keys:
                before = self.cart.get_item(key)
                if before is None:
                    logger.warning(f"Línea {key} ya no estaba en el carrito; se omite de la anulación")
                    continue
                self.cart.remove_item(key)
                if self.cart.get_item(key) is not None:
                    logger.error(f"La línea {key} sigue en el carrito tras eliminarla; se omite")
                    continue
                self._pending.pop(key, None)
                voided.append(VoidedItem.from_line(before, before.quantity))

            self._bulk = None
            if not voided:
                logger.error("Anulación masiva abortada: ninguna línea se eliminó")
                raise VoidNotAppliedError(errmsg.VOID_NOT_APPLIED)

            performer = performer or Performer()
            total = sum((item.amount for item in voided), Decimal("0"))
            transaction_id = await self._record_void_transaction(voided, total, performer)

            record = VoidRecord(
                items=voided,
                total_amount=total,
                reason=reason,
                approver=approver,
                performer=performer,
                source=VoidSource.BULK,
                terminal_key=self.cart.terminal_key,
                transaction_id=transaction_id,
                notes=notes,
            )
            bulk.state = QuantityChangeState.VOIDED
            logged = await self._submit_void_log(record)
            logger.info(f"Anulación masiva {record.void_id}: {len(voided)} líneas, total {total}")
            return VoidOutcome(record=record, logged=logged, remaining_quantity=0)
        finally:
            self._in_flight.discard(BULK_FLIGHT_KEY)

    # ===== AUXILIARES =====

    def _require_item(self, key: ItemKey) -> LineItem:
        item = self.cart.get_item(key)
        if item is None:
            raise ValidationError(errmsg.ITEM_NOT_IN_CART)
        return item

    def _check_cart_free(self) -> None:
        if self.cart_guard is not None:
            self.cart_guard()

    def _ensure_not_in_flight(self, key: ItemKey) -> None:
        if key in self._in_flight:
            raise AuthorizationInProgressError(errmsg.AUTH_IN_PROGRESS)

    @staticmethod
    def _parse_reason(reason) -> VoidReason:
        try:
            return VoidReason(reason)
        except ValueError:
            raise ValidationError(f"Motivo de anulación no válido: {reason}")

    @staticmethod
    def _check_pin_format(pin: str) -> None:
        if not validate_pin(pin):
            raise ValidationError(errmsg.INVALID_PIN_FORMAT)

    async def _verify_pin(self, pin: str, approver_hint: Optional[str] = None) -> Approver:
        try:
            data = await asyncio.wait_for(
                self.backoffice.verify_pin(pin, approver_hint),
                timeout=self.pin_timeout
            )
        except PinRejectedError as e:
            logger.info(f"PIN rechazado en terminal {self.cart.terminal_key}")
            raise AuthorizationError(errmsg.INVALID_PIN, clear_pin=True, cause=e)
        except asyncio.TimeoutError as e:
            logger.warning(f"Verificación de PIN excedió {self.pin_timeout}s")
            raise AuthorizationError(errmsg.PIN_SERVICE_UNAVAILABLE, clear_pin=False, cause=e)
        except BackofficeError as e:
            logger.warning(f"Servicio de PIN no disponible: {e}")
            raise AuthorizationError(errmsg.PIN_SERVICE_UNAVAILABLE, clear_pin=False, cause=e)

        return Approver.model_validate(data or {})

    async def _record_void_transaction(self, voided: List[VoidedItem], total: Decimal,
                                       performer: Performer) -> Optional[str]:
        draft = TransactionDraft(
            items=[
                TransactionLine(
                    product_id=item.product_id,
                    name=item.name,
                    sku=item.sku,
                    selected_size=item.selected_size,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
                for item in voided
            ],
            payment_method=PaymentMethod.VOID,
            status=TransactionStatus.VOIDED,
            subtotal=total,
            total=total,
            performer=performer,
            terminal_key=self.cart.terminal_key,
        )
        try:
            data = await self.backoffice.record_transaction(draft.to_wire())
        except BackofficeError as e:
            logger.warning(f"No se pudo registrar la transacción de anulación masiva: {e}")
            return None
        transaction_id = (data or {}).get("_id") or (data or {}).get("id")
        return str(transaction_id) if transaction_id else None

    async def _submit_void_log(self, record: VoidRecord) -> bool:
        """Enviar a la bitácora; si falla queda en la cola local para reintento"""
        payload = record.to_wire()
        try:
            await self.backoffice.create_void_log(payload)
            return True
        except BackofficeError as e:
            logger.warning(f"Bitácora de anulación {record.void_id} no enviada; se encola: {e}")
            self._enqueue_void_log(record, payload, str(e))
            return False

    def _enqueue_void_log(self, record: VoidRecord, payload: dict, error: str) -> None:
        db = self.session_factory()
        try:
            pending_void_log_crud.enqueue(
                db, self.cart.terminal_key, record.void_id, payload, error=error
            )
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"No se pudo encolar la anulación {record.void_id}: {e}; payload={payload}")
        finally:
            db.close()
