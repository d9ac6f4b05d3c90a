"""
Tests para el catálogo de productos
"""

import asyncio
from decimal import Decimal

import pytest

from app.common.exceptions import ValidationError
from app.modules.catalog.schemas import Product, SizeStock, normalize_sizes
from app.modules.catalog.service import CatalogService


class TestSizeNormalization:
    """Ambas formas del mapa de tallas terminan en SizeStock"""

    def test_modern_and_legacy_shapes(self):
        sizes = normalize_sizes({"S": {"quantity": 2, "price": 300}, "M": 5, "L": {"quantity": -1}})
        assert sizes["S"] == SizeStock(quantity=2, price=Decimal("300"))
        assert sizes["M"] == SizeStock(quantity=5)
        assert sizes["L"].quantity == 0

    def test_unknown_values_are_dropped(self):
        assert normalize_sizes({"S": "many", "M": True}) == {}
        assert normalize_sizes(None) == {}
        assert normalize_sizes([1, 2]) == {}

    def test_product_stock_and_price(self, products):
        tee = products["p-tee"]
        assert tee.has_sizes
        assert tee.stock_for("S") == 2
        assert tee.price_for("S") == Decimal("300")
        assert tee.price_for("M") == Decimal("250")

        jeans = products["p-jeans"]
        assert jeans.resolve_size("M") is None
        assert jeans.stock_for(None) == 10

    def test_size_errors(self, products):
        with pytest.raises(ValidationError):
            products["p-tee"].resolve_size(None)
        with pytest.raises(ValidationError):
            products["p-tee"].resolve_size("XXL")

    def test_numeric_id(self):
        product = Product.model_validate({"_id": 42, "itemName": "Sock", "currentStock": None})
        assert product.id == "42"
        assert product.current_stock == 0


class TestCatalogService:
    """Tests para la caché del catálogo"""

    def test_list_skips_invalid_products(self, backoffice):
        backoffice.products.append({"itemName": "sin id"})
        service = CatalogService(backoffice)

        products = asyncio.run(service.list_products())
        assert sorted(p.id for p in products) == ["p-cap", "p-jeans", "p-tee"]

    def test_cache_until_invalidated(self, backoffice):
        service = CatalogService(backoffice, ttl_seconds=60)
        asyncio.run(service.list_products())
        backoffice.products = []

        assert len(asyncio.run(service.list_products())) == 3
        assert service.cached_product("p-tee").name == "Basic Tee"

        service.invalidate()
        assert service.is_stale
        assert asyncio.run(service.list_products()) == []

    def test_get_product_refreshes_on_miss(self, backoffice):
        service = CatalogService(backoffice, ttl_seconds=60)
        asyncio.run(service.list_products())
        backoffice.products.append({"_id": "p-new", "itemName": "Nuevo", "itemPrice": 10})

        assert asyncio.run(service.get_product("p-new")).name == "Nuevo"
        assert asyncio.run(service.get_product("missing")) is None
