"""
Módulo de Descuentos - Terminal POS

Valida cada descuento contra el carrito (estado, vigencia, uso, alcance y
montos mínimo/máximo), calcula el monto combinado y retira automáticamente
los descuentos que dejan de aplicar cuando cambia el carrito.
"""

from .schemas import (
    DiscountDefinition, DiscountValue, DiscountUnit, DiscountScope, DiscountStatus,
    ApplicabilityResult, parse_discount_value, parse_scope
)
from .service import DiscountEngine, AppliedDiscountSet, DiscountCatalogService, quantize_money

__all__ = [
    # Schemas
    "DiscountDefinition",
    "DiscountValue",
    "DiscountUnit",
    "DiscountScope",
    "DiscountStatus",
    "ApplicabilityResult",
    "parse_discount_value",
    "parse_scope",

    # Services
    "DiscountEngine",
    "AppliedDiscountSet",
    "DiscountCatalogService",
    "quantize_money"
]
