"""
Motor de validación de descuentos

- DiscountEngine: decide si un descuento aplica al carrito actual y calcula
  el monto total de los descuentos aplicados
- AppliedDiscountSet: descuentos adjuntos al carrito (únicos por id); se
  revalidan en cada cambio del carrito y los que dejan de aplicar se quitan
- DiscountCatalogService: lectura del catálogo de descuentos con caché

Política de combinación (DISCOUNT_STACKING_POLICY):
- additive: se suman todos los descuentos aplicados
- best_only: solo cuenta el de mayor monto
DISCOUNT_MAX_TOTAL_PERCENT limita opcionalmente el total como porcentaje del subtotal.
"""

from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Iterable, List, Optional, Sequence
import logging
import time

from app.core.config import settings
from app.common.exceptions import (
    DiscountNotApplicableError, DiscountNotFoundError, ValidationError, errmsg
)
from app.common.validators import normalize_discount_code
from app.modules.cart.schemas import LineItem
from app.modules.discounts.schemas import (
    ApplicabilityResult, DiscountDefinition, DiscountScope
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
STACKING_POLICIES = ("additive", "best_only")


def quantize_money(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


class DiscountEngine:
    """Validación y cálculo de descuentos"""

    def __init__(self, catalog=None, stacking_policy: Optional[str] = None,
                 max_total_percent: Optional[Decimal] = None,
                 today: Optional[Callable[[], date]] = None):
        self.catalog = catalog
        self.stacking_policy = stacking_policy or settings.DISCOUNT_STACKING_POLICY
        if self.stacking_policy not in STACKING_POLICIES:
            raise ValueError(f"Política de descuentos desconocida: {self.stacking_policy}")
        self.max_total_percent = (
            max_total_percent if max_total_percent is not None
            else settings.DISCOUNT_MAX_TOTAL_PERCENT
        )
        self._today = today or date.today

    def resolve_category(self, item: LineItem) -> Optional[str]:
        """Categoría de la línea; si no la trae, se busca en el catálogo por id"""
        if item.category:
            return item.category
        if self.catalog is None:
            return None
        product = self.catalog.cached_product(item.product_id)
        return product.category if product else None

    def is_applicable(self, discount: DiscountDefinition, items: Sequence[LineItem]) -> ApplicabilityResult:
        """
        Verifica un descuento contra el contenido actual del carrito.

        Orden de verificación: estado, vigencia, usos, alcance y montos de compra.
        """
        if not discount.is_active:
            return ApplicabilityResult(valid=False, reason="El descuento está inactivo")

        today = self._today()
        if discount.valid_from and today < discount.valid_from:
            return ApplicabilityResult(
                valid=False, reason=f"El descuento es válido desde {discount.valid_from.isoformat()}"
            )
        if not discount.no_expiration and discount.valid_to and today > discount.valid_to:
            return ApplicabilityResult(
                valid=False, reason=f"El descuento venció el {discount.valid_to.isoformat()}"
            )

        if discount.usage_limit is not None and discount.usage_count >= discount.usage_limit:
            return ApplicabilityResult(valid=False, reason="El descuento alcanzó su límite de usos")

        scope_result = self._check_scope(discount, items)
        if not scope_result.valid:
            return scope_result

        subtotal = sum((item.line_total for item in items), Decimal("0"))
        if subtotal < discount.min_purchase_amount:
            return ApplicabilityResult(
                valid=False,
                reason=f"Compra mínima de {quantize_money(discount.min_purchase_amount)} no alcanzada"
            )
        if discount.max_purchase_amount is not None and subtotal > discount.max_purchase_amount:
            return ApplicabilityResult(
                valid=False,
                reason=f"La compra supera el máximo de {quantize_money(discount.max_purchase_amount)}"
            )

        return ApplicabilityResult(valid=True)

    def _check_scope(self, discount: DiscountDefinition, items: Sequence[LineItem]) -> ApplicabilityResult:
        if discount.applies_to == DiscountScope.ALL:
            return ApplicabilityResult(valid=True)

        # Un carrito vacío solo acepta descuentos para todos los productos
        if not items:
            return ApplicabilityResult(valid=False, reason=errmsg.CART_EMPTY)

        if discount.applies_to == DiscountScope.CATEGORY:
            if not discount.category:
                return ApplicabilityResult(valid=False, reason="El descuento no tiene categoría")
            mismatched = []
            for item in items:
                category = self.resolve_category(item) or "Sin categoría"
                if category != discount.category and category not in mismatched:
                    mismatched.append(category)
            if mismatched:
                return ApplicabilityResult(
                    valid=False,
                    reason=(
                        f"Solo aplica a la categoría {discount.category}; "
                        f"el carrito contiene: {', '.join(mismatched)}"
                    )
                )
            return ApplicabilityResult(valid=True)

        allowed = set(discount.product_ids)
        outside = [item.name or item.product_id for item in items if item.product_id not in allowed]
        if outside:
            return ApplicabilityResult(
                valid=False,
                reason=f"No aplica a: {', '.join(dict.fromkeys(outside))}"
            )
        return ApplicabilityResult(valid=True)

    def compute_discount_amount(self, applied: Iterable[DiscountDefinition], subtotal: Decimal) -> Decimal:
        """
        Monto total de descuento para el subtotal dado.

        Valores no interpretables aportan cero. El total nunca supera el subtotal.
        """
        subtotal = Decimal(subtotal)
        amounts = [
            discount.discount_value.amount_for(subtotal)
            for discount in applied
            if discount.discount_value is not None
        ]
        if not amounts:
            return Decimal("0.00")

        if self.stacking_policy == "best_only":
            total = max(amounts)
        else:
            total = sum(amounts, Decimal("0"))

        if self.max_total_percent is not None:
            total = min(total, subtotal * Decimal(self.max_total_percent) / Decimal("100"))

        total = max(min(total, subtotal), Decimal("0"))
        return quantize_money(total)


class AppliedDiscountSet:
    """Descuentos adjuntos al carrito de una terminal"""

    def __init__(self, engine: DiscountEngine, discount_catalog=None):
        self.engine = engine
        self.discount_catalog = discount_catalog
        self._applied: Dict[str, DiscountDefinition] = {}

    @property
    def discounts(self) -> List[DiscountDefinition]:
        return list(self._applied.values())

    @property
    def ids(self) -> List[str]:
        return list(self._applied.keys())

    def __contains__(self, discount_id: str) -> bool:
        return discount_id in self._applied

    def __len__(self) -> int:
        return len(self._applied)

    def apply(self, discount: DiscountDefinition, items: Sequence[LineItem]) -> DiscountDefinition:
        """Adjuntar un descuento; falla si no aplica al carrito actual"""
        if discount.id in self._applied:
            return self._applied[discount.id]

        result = self.engine.is_applicable(discount, items)
        if not result.valid:
            raise DiscountNotApplicableError(result.reason or "El descuento no aplica al carrito")

        self._applied[discount.id] = discount
        logger.debug(f"Descuento aplicado: {discount.title} ({discount.id})")
        return discount

    async def apply_by_id(self, discount_id: str, items: Sequence[LineItem]) -> DiscountDefinition:
        if self.discount_catalog is None:
            raise DiscountNotFoundError(errmsg.DISCOUNT_NOT_FOUND)
        discount = await self.discount_catalog.get_discount(discount_id)
        if discount is None:
            raise DiscountNotFoundError(errmsg.DISCOUNT_NOT_FOUND)
        return self.apply(discount, items)

    async def apply_code(self, code: str, items: Sequence[LineItem]) -> DiscountDefinition:
        """Buscar un descuento activo por código (sin distinguir mayúsculas) y aplicarlo"""
        if normalize_discount_code(code) is None:
            raise ValidationError(errmsg.DISCOUNT_CODE_INVALID)
        if self.discount_catalog is None:
            raise DiscountNotFoundError(errmsg.DISCOUNT_NOT_FOUND)

        discount = await self.discount_catalog.find_by_code(code)
        if discount is None:
            raise DiscountNotFoundError(f"{errmsg.DISCOUNT_NOT_FOUND}: {code.strip()}")
        return self.apply(discount, items)

    def remove(self, discount_id: str) -> bool:
        return self._applied.pop(discount_id, None) is not None

    def clear(self) -> None:
        self._applied = {}

    def revalidate(self, items: Sequence[LineItem]) -> List[DiscountDefinition]:
        """Quitar los descuentos que ya no aplican al carrito; retorna los quitados"""
        evicted = []
        for discount in list(self._applied.values()):
            result = self.engine.is_applicable(discount, items)
            if not result.valid:
                del self._applied[discount.id]
                evicted.append(discount)
                logger.info(f"Descuento '{discount.title}' retirado del carrito: {result.reason}")
        return evicted

    def discount_amount(self, subtotal: Decimal) -> Decimal:
        return self.engine.compute_discount_amount(self._applied.values(), subtotal)


class DiscountCatalogService:
    """Catálogo de descuentos activos con caché"""

    def __init__(self, backoffice, engine: Optional[DiscountEngine] = None,
                 ttl_seconds: Optional[float] = None):
        self.backoffice = backoffice
        self.engine = engine or DiscountEngine()
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.CATALOG_CACHE_TTL_SECONDS
        self._discounts: Dict[str, DiscountDefinition] = {}
        self._loaded_at: Optional[float] = None

    @property
    def is_stale(self) -> bool:
        if self._loaded_at is None:
            return True
        return (time.monotonic() - self._loaded_at) > self.ttl_seconds

    async def list_active(self, force: bool = False) -> List[DiscountDefinition]:
        if force or self.is_stale:
            raw_discounts = await self.backoffice.list_discounts()
            discounts = {}
            for raw in raw_discounts:
                try:
                    discount = DiscountDefinition.model_validate(raw)
                except ValueError as e:
                    logger.warning(f"Descuento ignorado por datos inválidos: {e}")
                    continue
                if discount.discount_value is None:
                    logger.warning(f"Descuento '{discount.title}' con valor no interpretable; aportará cero")
                if discount.is_active:
                    discounts[discount.id] = discount

            self._discounts = discounts
            self._loaded_at = time.monotonic()
            logger.debug(f"Catálogo de descuentos cargado: {len(discounts)} activos")

        return list(self._discounts.values())

    async def get_discount(self, discount_id: str) -> Optional[DiscountDefinition]:
        await self.list_active()
        return self._discounts.get(str(discount_id))

    async def find_by_code(self, code: str) -> Optional[DiscountDefinition]:
        """Coincidencia exacta sin distinguir mayúsculas entre descuentos activos"""
        wanted = (code or "").strip().upper()
        if not wanted:
            return None
        for discount in await self.list_active():
            if discount.code and discount.code == wanted:
                return discount
        return None

    async def available_for(self, items: Sequence[LineItem],
                            applied_ids: Iterable[str] = ()) -> List[DiscountDefinition]:
        """Descuentos aplicables al carrito que aún no están adjuntos (selector)"""
        applied_ids = set(applied_ids)
        return [
            discount for discount in await self.list_active()
            if discount.id not in applied_ids and self.engine.is_applicable(discount, items).valid
        ]

    def invalidate(self) -> None:
        self._loaded_at = None
        logger.debug("Caché de descuentos invalidada")
