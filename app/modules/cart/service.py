"""
Cart Store de la terminal

Lista autoritativa de líneas de venta para una terminal (no por usuario).

Persistencia:
- Local (SQLite): se escribe en cada mutación, de forma inmediata
- Remota (back-office, PUT de la lista completa): con debounce, sin bloquear
  la mutación; si falla queda marcada como pendiente y se reintenta en el
  siguiente persist y mediante la tarea Celery sync_cart_to_remote

Carga: primero el almacén remoto; si está vacío o no responde, el espejo local.
"""

from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Set
import asyncio
import logging
import warnings

from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.database.database import SessionLocal
from app.common.exceptions import (
    BackofficeError, InsufficientStockError, PersistenceWarning, ValidationError, errmsg
)
from app.modules.catalog.schemas import Product
from app.modules.cart.crud import local_cart_crud
from app.modules.cart.schemas import (
    AddItemResult, AddItemStatus, ItemKey, LineItem, PersistenceStatus
)

logger = logging.getLogger(__name__)

CartListener = Callable[[List[LineItem]], None]


class CartStore:
    """Carrito compartido de una terminal"""

    def __init__(self, terminal_key: str, backoffice, session_factory=SessionLocal,
                 debounce_seconds: Optional[float] = None, warning_threshold: Optional[int] = None):
        self.terminal_key = terminal_key
        self.backoffice = backoffice
        self.session_factory = session_factory
        self.debounce_seconds = (
            debounce_seconds if debounce_seconds is not None
            else settings.CART_PERSIST_DEBOUNCE_SECONDS
        )
        self.warning_threshold = (
            warning_threshold if warning_threshold is not None
            else settings.CART_SYNC_WARNING_THRESHOLD
        )

        self._items: Dict[ItemKey, LineItem] = {}
        self._listeners: List[CartListener] = []
        self._pending_tasks: Set[asyncio.Task] = set()
        self._generation = 0

        self.loaded_from: Optional[str] = None
        self.remote_failures = 0
        self.remote_dirty = False

    # ===== LECTURA =====

    @property
    def items(self) -> List[LineItem]:
        return [item.model_copy() for item in self._items.values()]

    @property
    def is_empty(self) -> bool:
        return not self._items

    def get_item(self, key: ItemKey) -> Optional[LineItem]:
        item = self._items.get(key)
        return item.model_copy() if item else None

    def subtotal(self) -> Decimal:
        return sum((item.line_total for item in self._items.values()), Decimal("0"))

    def snapshot(self) -> List[Dict[str, Any]]:
        """Lista de ítems en formato de almacenamiento"""
        return [item.to_wire() for item in self._items.values()]

    # ===== CARGA =====

    async def load(self) -> List[LineItem]:
        """
        Rehidrata el carrito.

        El almacén remoto tiene prioridad; un carrito remoto vacío o
        inalcanzable cae al espejo local.
        """
        raw_items: List[Dict[str, Any]] = []
        source = "remote"
        try:
            raw_items = await self.backoffice.get_cart(self.terminal_key)
        except BackofficeError as e:
            logger.warning(f"Carrito remoto no disponible para {self.terminal_key}: {e}")

        if not raw_items:
            raw_items = self._read_local()
            source = "local" if raw_items else "empty"
            if raw_items:
                # El remoto no tiene esta versión
                self.remote_dirty = True

        self._items = self._parse_items(raw_items)
        self.loaded_from = source
        logger.info(f"Carrito {self.terminal_key} cargado desde {source}: {len(self._items)} ítems")
        return self.items

    def _parse_items(self, raw_items: List[Dict[str, Any]]) -> Dict[ItemKey, LineItem]:
        items: Dict[ItemKey, LineItem] = {}
        for raw in raw_items:
            try:
                item = LineItem.model_validate(raw)
            except ValueError as e:
                logger.warning(f"Ítem de carrito ignorado por datos inválidos: {e}")
                continue
            if item.key in items:
                logger.warning(f"Ítem duplicado en carrito almacenado, se conserva el primero: {item.key}")
                continue
            items[item.key] = item
        return items

    # ===== MUTACIONES =====

    def add_listener(self, listener: CartListener) -> None:
        """Registrar un callback que recibe la lista de ítems tras cada cambio"""
        self._listeners.append(listener)

    def add_item(self, product: Product, quantity: int = 1, size: Optional[str] = None) -> AddItemResult:
        """
        Agregar un producto al carrito.

        Si ya existe una línea con el mismo (producto, talla) no suma: devuelve
        DUPLICATE con la cantidad existente y el llamador decide si hace merge.
        """
        if quantity <= 0:
            raise ValidationError(errmsg.QUANTITY_POSITIVE)

        item = LineItem.from_product(product, quantity, size)
        existing = self._items.get(item.key)
        if existing:
            return AddItemResult(
                status=AddItemStatus.DUPLICATE,
                item=existing.model_copy(),
                existing_quantity=existing.quantity,
                requested_quantity=quantity
            )

        available = item.available_stock()
        if quantity > available:
            raise InsufficientStockError(requested=quantity, in_cart=0, available=available)

        self._items[item.key] = item
        self._changed()
        return AddItemResult(
            status=AddItemStatus.ADDED,
            item=item.model_copy(),
            requested_quantity=quantity
        )

    def merge_item(self, key: ItemKey, quantity: int) -> AddItemResult:
        """Merge explícito: suma `quantity` a la línea existente"""
        if quantity <= 0:
            raise ValidationError(errmsg.QUANTITY_POSITIVE)

        existing = self._require(key)
        new_quantity = existing.quantity + quantity
        available = existing.available_stock()
        if new_quantity > available:
            raise InsufficientStockError(
                requested=new_quantity, in_cart=existing.quantity, available=available
            )

        previous = existing.quantity
        existing.quantity = new_quantity
        self._changed()
        return AddItemResult(
            status=AddItemStatus.MERGED,
            item=existing.model_copy(),
            existing_quantity=previous,
            requested_quantity=quantity
        )

    def set_quantity(self, key: ItemKey, quantity: int) -> Optional[LineItem]:
        """Fijar la cantidad comprometida; 0 o negativo elimina la línea"""
        if quantity <= 0:
            self.remove_item(key)
            return None

        existing = self._require(key)
        available = existing.available_stock()
        if quantity > available:
            raise InsufficientStockError(
                requested=quantity, in_cart=existing.quantity, available=available
            )

        if quantity != existing.quantity:
            existing.quantity = quantity
            self._changed()
        return existing.model_copy()

    def remove_item(self, key: ItemKey) -> Optional[LineItem]:
        item = self._items.pop(key, None)
        if item is not None:
            self._changed()
        return item

    def clear(self) -> None:
        self._items = {}
        self._changed()

    def restore(self, snapshot: List[Dict[str, Any]]) -> None:
        """Volver a un snapshot previo (checkout fallido)"""
        self._items = self._parse_items(snapshot)
        self._changed()

    def _require(self, key: ItemKey) -> LineItem:
        item = self._items.get(key)
        if item is None:
            raise ValidationError(errmsg.ITEM_NOT_IN_CART)
        return item

    def _changed(self) -> None:
        items = self.items
        for listener in list(self._listeners):
            listener(items)

        self.remote_dirty = True
        self._write_local(self.snapshot(), remote_dirty=True)
        self._schedule_persist()

    # ===== PERSISTENCIA =====

    def _read_local(self) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            return local_cart_crud.read_items(db, self.terminal_key)
        except (SQLAlchemyError, ValueError) as e:
            logger.warning(f"No se pudo leer el carrito local {self.terminal_key}: {e}")
            return []
        finally:
            db.close()

    def _write_local(self, items: List[Dict[str, Any]], remote_dirty: Optional[bool] = None) -> None:
        db = self.session_factory()
        try:
            local_cart_crud.save_items(db, self.terminal_key, items, remote_dirty=remote_dirty)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"No se pudo guardar el carrito local {self.terminal_key}: {e}")
        finally:
            db.close()

    def _schedule_persist(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"Sin event loop; carrito {self.terminal_key} queda solo en local")
            return

        self._generation += 1
        task = loop.create_task(self._debounced_persist(self._generation))
        self._pending_tasks.add(task)
        task.add_done_callback(self._pending_tasks.discard)

    async def _debounced_persist(self, generation: int) -> None:
        await asyncio.sleep(self.debounce_seconds)
        # Una mutación posterior reprogramó el guardado
        if generation != self._generation:
            return
        await self.persist()

    async def persist(self) -> bool:
        """
        Guardar el carrito completo en el almacén remoto.

        Nunca lanza: un fallo incrementa el contador de fallos consecutivos y
        deja el carrito marcado como pendiente de sincronizar.
        """
        items = self.snapshot()
        try:
            await self.backoffice.save_cart(self.terminal_key, items)
        except BackofficeError as e:
            self.remote_failures += 1
            self.remote_dirty = True
            logger.warning(
                f"Persistencia remota fallida para {self.terminal_key} "
                f"({self.remote_failures} consecutivas): {e}"
            )
            if self.remote_failures == 1:
                self._enqueue_background_sync()
            if self.remote_failures == self.warning_threshold:
                warnings.warn(
                    f"Carrito {self.terminal_key} sin sincronizar tras {self.remote_failures} intentos",
                    PersistenceWarning
                )
            return False

        if self.remote_failures:
            logger.info(f"Carrito {self.terminal_key} sincronizado tras {self.remote_failures} fallos")
        self.remote_failures = 0
        self.remote_dirty = False
        self._mark_local_synced()
        return True

    def _mark_local_synced(self) -> None:
        db = self.session_factory()
        try:
            local_cart_crud.mark_remote_dirty(db, self.terminal_key, False)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"No se pudo actualizar el carrito local {self.terminal_key}: {e}")
        finally:
            db.close()

    def _enqueue_background_sync(self) -> None:
        if not settings.BACKGROUND_RETRY_ENABLED:
            return
        from app.modules.cart.tasks import sync_cart_to_remote
        try:
            sync_cart_to_remote.delay(self.terminal_key)
        except Exception as e:
            logger.error(f"No se pudo encolar la sincronización del carrito {self.terminal_key}: {e}")

    async def flush(self) -> bool:
        """
        Descarta los guardados con debounce pendientes y persiste ya si hace falta.
        Se usa al apagar la aplicación.
        """
        self._generation += 1
        pending = [task for task in self._pending_tasks if task is not asyncio.current_task()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if self.remote_dirty:
            return await self.persist()
        return True

    def persistence_status(self) -> PersistenceStatus:
        return PersistenceStatus(
            remote_failures=self.remote_failures,
            remote_dirty=self.remote_dirty,
            degraded=self.remote_failures >= self.warning_threshold
        )

    @property
    def cashier_warnings(self) -> List[str]:
        """Avisos visibles para el cajero; solo si la falla persiste"""
        if self.persistence_status().degraded:
            return [
                f"El carrito no se ha podido sincronizar con el servidor "
                f"({self.remote_failures} intentos). Se conserva localmente."
            ]
        return []
