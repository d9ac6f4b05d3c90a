"""
Sesión de terminal

Un TerminalSession conecta, para una sola terminal, el Cart Store, los
descuentos aplicados, el flujo de anulaciones y el cobro. Hay un único
escritor lógico por terminal: el TerminalRegistry del proceso entrega
siempre la misma sesión para la misma clave.
"""

from typing import Dict, List, Optional
import asyncio
import logging

from app.database.database import SessionLocal
from app.common.exceptions import (
    BackofficeError, CheckoutInProgressError, ProductNotFoundError, errmsg
)
from app.modules.cart.schemas import AddItemResult, CartOut, CartTotals, ItemKey, LineItem
from app.modules.cart.service import CartStore
from app.modules.catalog.service import CatalogService
from app.modules.checkout.service import CheckoutFinalizer
from app.modules.discounts.schemas import DiscountDefinition
from app.modules.discounts.service import (
    AppliedDiscountSet, DiscountCatalogService, DiscountEngine, quantize_money
)
from app.modules.voids.service import QuantityChangeFlow

logger = logging.getLogger(__name__)


class TerminalSession:
    """Estado de venta de una terminal"""

    def __init__(self, terminal_key: str, backoffice, catalog: CatalogService,
                 discount_catalog: DiscountCatalogService, engine: Optional[DiscountEngine] = None,
                 session_factory=SessionLocal, debounce_seconds: Optional[float] = None):
        self.terminal_key = terminal_key
        self.catalog = catalog
        self.discount_catalog = discount_catalog

        self.cart = CartStore(
            terminal_key, backoffice,
            session_factory=session_factory,
            debounce_seconds=debounce_seconds
        )
        self.discounts = AppliedDiscountSet(engine or DiscountEngine(catalog), discount_catalog)
        # Anulación y cobro se excluyen entre sí sobre el mismo carrito
        self.flow = QuantityChangeFlow(
            self.cart, backoffice,
            session_factory=session_factory,
            cart_guard=self.ensure_idle
        )
        self.finalizer = CheckoutFinalizer(
            self.cart, self.discounts, backoffice,
            catalog=catalog,
            discount_catalog=discount_catalog,
            session_factory=session_factory,
            voids_in_flight=lambda: self.flow.authorizing
        )

        self.last_evicted: List[DiscountDefinition] = []
        self.cart.add_listener(self._on_cart_changed)

    def _on_cart_changed(self, items: List[LineItem]) -> None:
        self.last_evicted = self.discounts.revalidate(items)

    async def load(self) -> None:
        await self.cart.load()
        # El catálogo sirve para resolver categorías de ítems que no la traen
        if self.catalog.is_stale:
            try:
                await self.catalog.list_products()
            except BackofficeError as e:
                logger.warning(f"Catálogo no disponible al abrir la terminal {self.terminal_key}: {e}")

    def ensure_idle(self) -> None:
        """El carrito no se modifica mientras hay un cobro en curso"""
        if self.finalizer.in_flight:
            raise CheckoutInProgressError(errmsg.CHECKOUT_IN_PROGRESS)

    async def add_product(self, product_id: str, quantity: int = 1,
                          size: Optional[str] = None) -> AddItemResult:
        self.ensure_idle()
        product = await self.catalog.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(f"{errmsg.PRODUCT_NOT_FOUND}: {product_id}")
        return self.cart.add_item(product, quantity, size)

    def merge_product(self, product_id: str, quantity: int, size: Optional[str] = None) -> AddItemResult:
        self.ensure_idle()
        return self.cart.merge_item(ItemKey.of(product_id, size), quantity)

    def totals(self) -> CartTotals:
        subtotal = quantize_money(self.cart.subtotal())
        discount = self.discounts.discount_amount(subtotal)
        return CartTotals(subtotal=subtotal, discount=discount, total=quantize_money(subtotal - discount))

    def to_out(self) -> CartOut:
        return CartOut(
            terminal_key=self.terminal_key,
            items=self.cart.items,
            totals=self.totals(),
            applied_discount_ids=self.discounts.ids,
            persistence=self.cart.persistence_status(),
            warnings=self.cart.cashier_warnings,
        )

    async def close(self) -> None:
        await self.cart.flush()


class TerminalRegistry:
    """Sesiones de terminal del proceso, una por clave"""

    def __init__(self, backoffice, session_factory=SessionLocal,
                 catalog: Optional[CatalogService] = None,
                 discount_catalog: Optional[DiscountCatalogService] = None,
                 debounce_seconds: Optional[float] = None):
        self.backoffice = backoffice
        self.session_factory = session_factory
        self.debounce_seconds = debounce_seconds
        self.catalog = catalog or CatalogService(backoffice)
        self.engine = DiscountEngine(self.catalog)
        self.discount_catalog = discount_catalog or DiscountCatalogService(backoffice, self.engine)
        self._sessions: Dict[str, TerminalSession] = {}
        self._lock = asyncio.Lock()

    async def get(self, terminal_key: str) -> TerminalSession:
        """Sesión de la terminal; se carga en el primer acceso"""
        session = self._sessions.get(terminal_key)
        if session is not None:
            return session

        async with self._lock:
            session = self._sessions.get(terminal_key)
            if session is None:
                session = TerminalSession(
                    terminal_key, self.backoffice, self.catalog, self.discount_catalog,
                    engine=self.engine,
                    session_factory=self.session_factory,
                    debounce_seconds=self.debounce_seconds
                )
                await session.load()
                self._sessions[terminal_key] = session
                logger.info(f"Terminal {terminal_key} abierta")
        return session

    @property
    def terminal_keys(self) -> List[str]:
        return list(self._sessions.keys())

    async def close(self) -> None:
        for session in self._sessions.values():
            await session.close()
        self._sessions = {}
