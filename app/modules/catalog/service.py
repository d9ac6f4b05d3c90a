"""
Servicio de catálogo de productos

Mantiene una caché en memoria con TTL de los productos del back-office.
El Checkout Finalizer la invalida después de cada venta registrada para que
la siguiente lectura refleje el stock actualizado.
"""

from typing import Dict, List, Optional
import logging
import time

from app.core.config import settings
from app.modules.catalog.schemas import Product

logger = logging.getLogger(__name__)


class CatalogService:
    """Lectura del catálogo con caché"""

    def __init__(self, backoffice, ttl_seconds: Optional[float] = None):
        self.backoffice = backoffice
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.CATALOG_CACHE_TTL_SECONDS
        self._products: Dict[str, Product] = {}
        self._loaded_at: Optional[float] = None

    @property
    def is_stale(self) -> bool:
        if self._loaded_at is None:
            return True
        return (time.monotonic() - self._loaded_at) > self.ttl_seconds

    async def list_products(self, force: bool = False) -> List[Product]:
        """Obtener productos del catálogo, refrescando si la caché expiró"""
        if force or self.is_stale:
            raw_products = await self.backoffice.list_products()
            products = {}
            for raw in raw_products:
                try:
                    product = Product.model_validate(raw)
                except ValueError as e:
                    logger.warning(f"Producto ignorado por datos inválidos: {e}")
                    continue
                products[product.id] = product

            self._products = products
            self._loaded_at = time.monotonic()
            logger.debug(f"Catálogo cargado: {len(products)} productos")

        return list(self._products.values())

    async def get_product(self, product_id: str) -> Optional[Product]:
        product_id = str(product_id)
        if self.is_stale or product_id not in self._products:
            await self.list_products(force=True)
        return self._products.get(product_id)

    def cached_product(self, product_id: str) -> Optional[Product]:
        """Consulta sin red; usada por la validación de descuentos"""
        return self._products.get(str(product_id))

    def invalidate(self) -> None:
        self._loaded_at = None
        logger.debug("Caché de catálogo invalidada")
