"""
Tests para el módulo de Descuentos

Cubren:
- Gramática del valor del descuento ([moneda] magnitud [%] [OFF])
- Reglas de aplicabilidad: estado, vigencia, usos, alcance y montos
- Cálculo combinado (additive / best_only / tope porcentual) y redondeo
- Retiro automático al cambiar el carrito
- Catálogo de descuentos y endpoints /terminal/discounts
"""

import asyncio
from datetime import date
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from app.common.exceptions import DiscountNotApplicableError, DiscountNotFoundError, ValidationError
from app.dependencies.terminalDependencies import get_terminal_registry
from app.main import app
from app.modules.cart.schemas import ItemKey, LineItem
from app.modules.catalog.service import CatalogService
from app.modules.discounts.schemas import (
    DiscountDefinition, DiscountScope, DiscountUnit, DiscountValue, parse_discount_value, parse_scope
)
from app.modules.discounts.service import (
    AppliedDiscountSet, DiscountCatalogService, DiscountEngine
)
from app.modules.terminal.service import TerminalRegistry, TerminalSession


TODAY = date(2026, 3, 15)


def make_discount(**overrides):
    data = {
        "_id": "d-1",
        "title": "Promo",
        "discountValue": "10% OFF",
        "appliesToType": "all",
        "status": "active",
    }
    data.update(overrides)
    return DiscountDefinition.model_validate(data)


def make_item(product_id="p-1", price="100", quantity=1, category="Tops", name=None):
    return LineItem(
        product_id=product_id,
        name=name or product_id,
        quantity=quantity,
        unit_price=Decimal(price),
        category=category,
        stock=99,
    )


@pytest.fixture
def engine():
    return DiscountEngine(stacking_policy="additive", today=lambda: TODAY)


# ===== TESTS DE GRAMÁTICA =====

class TestDiscountValueParsing:
    """Tests para parse_discount_value"""

    @pytest.mark.parametrize("raw,magnitude,unit", [
        ("15% OFF", "15", DiscountUnit.PERCENTAGE),
        ("12.5%", "12.5", DiscountUnit.PERCENTAGE),
        ("₱50 OFF", "50", DiscountUnit.FIXED),
        ("â‚±1,250.50 OFF", "1250.50", DiscountUnit.FIXED),
        ("PHP 100", "100", DiscountUnit.FIXED),
        ("$5 off", "5", DiscountUnit.FIXED),
    ])
    def test_valid_strings(self, raw, magnitude, unit):
        value = parse_discount_value(raw)
        assert value.magnitude == Decimal(magnitude)
        assert value.unit == unit

    @pytest.mark.parametrize("raw", ["", "abc", "₱10%", "150%", "10 OFF", None, True, "--5%"])
    def test_invalid_values(self, raw):
        assert parse_discount_value(raw) is None

    def test_numeric_value_needs_type(self):
        assert parse_discount_value(20) is None
        assert parse_discount_value(20, "percentage") == DiscountValue(
            magnitude=Decimal("20"), unit=DiscountUnit.PERCENTAGE
        )
        assert parse_discount_value("75", "fixed").unit == DiscountUnit.FIXED

    def test_structured_value(self):
        value = parse_discount_value({"discountType": "fixed", "discountValue": 30})
        assert value.magnitude == Decimal("30")
        assert value.unit == DiscountUnit.FIXED

    def test_display(self):
        assert parse_discount_value("15% OFF").display == "15% OFF"
        assert parse_discount_value("₱50").display == "₱50 OFF"


class TestDiscountDefinition:
    """Tests para el formato del catálogo"""

    @pytest.mark.parametrize("raw,scope", [
        ("all", DiscountScope.ALL),
        ("All Products", DiscountScope.ALL),
        ("Category: Tops", DiscountScope.CATEGORY),
        ("specific-products", DiscountScope.PRODUCTS),
    ])
    def test_parse_scope(self, raw, scope):
        assert parse_scope(raw) == scope

    def test_unknown_scope_fails(self):
        with pytest.raises(ValueError):
            parse_scope("everything")

    def test_wire_fields(self):
        discount = make_discount(
            discountCode="  summer24 ",
            validFrom="Permanent",
            usage={"used": 3, "total": 10},
            minPurchaseAmount=None,
        )
        assert discount.code == "SUMMER24"
        assert discount.no_expiration is True
        assert discount.valid_from is None
        assert discount.usage_limit == 10
        assert discount.usage_count == 3
        assert discount.min_purchase_amount == Decimal("0")

    def test_unparseable_value_is_kept_as_none(self):
        discount = make_discount(discountValue="mucho")
        assert discount.discount_value is None
        assert discount.display_value == ""


# ===== TESTS DE APLICABILIDAD =====

class TestApplicability:
    """Tests para DiscountEngine.is_applicable"""

    def test_inactive(self, engine):
        result = engine.is_applicable(make_discount(status="inactive"), [make_item()])
        assert result.valid is False

    def test_validity_window(self, engine):
        items = [make_item()]
        assert engine.is_applicable(make_discount(validFrom="2026-04-01"), items).valid is False
        assert engine.is_applicable(make_discount(validTo="2026-03-01"), items).valid is False
        assert engine.is_applicable(
            make_discount(validFrom="2026-03-01T00:00:00Z", validTo="2026-03-31"), items
        ).valid is True

    def test_no_expiration_ignores_end_date(self, engine):
        discount = make_discount(validTo="2020-01-01", noExpiration=True)
        assert engine.is_applicable(discount, [make_item()]).valid is True

    def test_usage_limit_reached(self, engine):
        discount = make_discount(usageLimit=5, usageCount=5)
        result = engine.is_applicable(discount, [make_item()])
        assert result.valid is False
        assert "límite" in result.reason

    def test_category_scope_lists_mismatched_categories(self, engine):
        discount = make_discount(appliesToType="category", category="Tops")
        items = [make_item("p-1", category="Tops"), make_item("p-2", category="Bottoms")]

        result = engine.is_applicable(discount, items)
        assert result.valid is False
        assert "Bottoms" in result.reason
        assert engine.is_applicable(discount, items[:1]).valid is True

    def test_category_resolved_from_catalog(self, backoffice):
        catalog = CatalogService(backoffice)
        asyncio.run(catalog.list_products())
        engine = DiscountEngine(catalog, stacking_policy="additive", today=lambda: TODAY)

        discount = make_discount(appliesToType="category", category="Bottoms")
        item = make_item("p-jeans", category=None)
        assert engine.resolve_category(item) == "Bottoms"
        assert engine.is_applicable(discount, [item]).valid is True

    def test_products_scope(self, engine):
        discount = make_discount(appliesToType="products", productIds=["p-1", 2])
        assert engine.is_applicable(discount, [make_item("p-1"), make_item("2")]).valid is True

        result = engine.is_applicable(discount, [make_item("p-1"), make_item("p-9", name="Hoodie")])
        assert result.valid is False
        assert "Hoodie" in result.reason

    def test_empty_cart_only_accepts_all_scope(self, engine):
        assert engine.is_applicable(make_discount(), []).valid is True
        assert engine.is_applicable(
            make_discount(appliesToType="category", category="Tops"), []
        ).valid is False

    def test_purchase_amount_bounds(self, engine):
        discount = make_discount(minPurchaseAmount=500, maxPurchaseAmount=1000)
        assert engine.is_applicable(discount, [make_item(price="499.99")]).valid is False
        assert engine.is_applicable(discount, [make_item(price="500")]).valid is True
        assert engine.is_applicable(discount, [make_item(price="1000.01")]).valid is False


# ===== TESTS DE CÁLCULO =====

class TestDiscountAmount:
    """Tests para compute_discount_amount"""

    def test_additive(self, engine):
        applied = [make_discount(), make_discount(_id="d-2", discountValue="₱50 OFF")]
        assert engine.compute_discount_amount(applied, Decimal("1000")) == Decimal("150.00")

    def test_best_only(self):
        engine = DiscountEngine(stacking_policy="best_only", today=lambda: TODAY)
        applied = [make_discount(), make_discount(_id="d-2", discountValue="₱50 OFF")]
        assert engine.compute_discount_amount(applied, Decimal("1000")) == Decimal("100.00")

    def test_max_total_percent(self):
        engine = DiscountEngine(stacking_policy="additive", max_total_percent=Decimal("12"),
                                today=lambda: TODAY)
        applied = [make_discount(), make_discount(_id="d-2", discountValue="₱50 OFF")]
        assert engine.compute_discount_amount(applied, Decimal("1000")) == Decimal("120.00")

    def test_never_exceeds_subtotal(self, engine):
        applied = [make_discount(discountValue="₱50 OFF")]
        assert engine.compute_discount_amount(applied, Decimal("30")) == Decimal("30.00")

    def test_rounds_half_up(self, engine):
        assert engine.compute_discount_amount([make_discount()], Decimal("333.35")) == Decimal("33.34")

    def test_unparseable_value_contributes_zero(self, engine):
        applied = [make_discount(discountValue="???"), make_discount(_id="d-2", discountValue="5%")]
        assert engine.compute_discount_amount(applied, Decimal("200")) == Decimal("10.00")
        assert engine.compute_discount_amount([], Decimal("200")) == Decimal("0.00")

    def test_unknown_policy_fails(self):
        with pytest.raises(ValueError):
            DiscountEngine(stacking_policy="stacked")


# ===== TESTS DE DESCUENTOS APLICADOS =====

class TestAppliedDiscountSet:
    """Tests para aplicar, buscar por código y revalidar"""

    @pytest.fixture
    def applied(self, backoffice, engine):
        return AppliedDiscountSet(engine, DiscountCatalogService(backoffice, engine))

    def test_apply_rejects_inapplicable(self, applied):
        discount = make_discount(appliesToType="category", category="Tops")
        with pytest.raises(DiscountNotApplicableError):
            applied.apply(discount, [make_item(category="Bottoms")])
        assert len(applied) == 0

    def test_apply_is_unique_by_id(self, applied):
        discount = make_discount()
        applied.apply(discount, [make_item()])
        applied.apply(discount, [make_item()])
        assert applied.ids == ["d-1"]

    def test_apply_code_case_insensitive(self, applied):
        discount = asyncio.run(applied.apply_code(" Save50 ", [make_item()]))
        assert discount.id == "d-save50"
        assert "d-save50" in applied

    def test_apply_code_errors(self, applied):
        with pytest.raises(ValidationError):
            asyncio.run(applied.apply_code("bad code!", [make_item()]))
        with pytest.raises(DiscountNotFoundError):
            asyncio.run(applied.apply_code("NOPE", [make_item()]))
        # Los descuentos inactivos no se encuentran por código
        with pytest.raises(DiscountNotFoundError):
            asyncio.run(applied.apply_code("OFF20", [make_item()]))

    def test_revalidate_evicts(self, applied):
        tops = make_discount(_id="d-tops", appliesToType="category", category="Tops")
        everyone = make_discount(_id="d-all", discountValue="₱20")
        items = [make_item(category="Tops")]
        applied.apply(tops, items)
        applied.apply(everyone, items)

        evicted = applied.revalidate(items + [make_item("p-2", category="Bottoms")])
        assert [d.id for d in evicted] == ["d-tops"]
        assert applied.ids == ["d-all"]


class TestDiscountCatalogService:
    """Tests para el catálogo de descuentos"""

    def test_list_active_skips_invalid_and_inactive(self, backoffice):
        backoffice.discounts.append({"_id": "broken", "title": "", "appliesToType": "??"})
        service = DiscountCatalogService(backoffice, DiscountEngine(today=lambda: TODAY))

        discounts = asyncio.run(service.list_active())
        assert sorted(d.id for d in discounts) == ["d-save50", "d-tops"]

    def test_cache_and_invalidate(self, backoffice):
        service = DiscountCatalogService(backoffice, DiscountEngine(today=lambda: TODAY))
        asyncio.run(service.list_active())
        backoffice.discounts = []

        assert len(asyncio.run(service.list_active())) == 2
        service.invalidate()
        assert asyncio.run(service.list_active()) == []

    def test_available_for_excludes_applied(self, backoffice):
        service = DiscountCatalogService(backoffice, DiscountEngine(today=lambda: TODAY))
        items = [make_item(category="Bottoms")]

        available = asyncio.run(service.available_for(items))
        assert [d.id for d in available] == ["d-save50"]
        assert asyncio.run(service.available_for(items, ["d-save50"])) == []


# ===== TESTS DE INTEGRACIÓN CON EL CARRITO =====

class TestDiscountEviction:
    """Un descuento de categoría se retira al agregar un producto de otra categoría"""

    def test_adding_other_category_evicts(self, backoffice, session_factory, products):
        catalog = CatalogService(backoffice)
        engine = DiscountEngine(catalog, stacking_policy="additive", today=lambda: TODAY)
        session = TerminalSession(
            "till-1", backoffice, catalog, DiscountCatalogService(backoffice, engine), engine=engine,
            session_factory=session_factory
        )
        session.cart.add_item(products["p-tee"], 2, "M")
        asyncio.run(session.discounts.apply_by_id("d-tops", session.cart.items))
        assert session.totals().discount == Decimal("50.00")

        session.cart.add_item(products["p-jeans"], 1)

        assert session.discounts.ids == []
        assert [d.id for d in session.last_evicted] == ["d-tops"]
        assert session.totals().discount == Decimal("0.00")
        assert session.totals().total == Decimal("1300.00")


# ===== TESTS DE ENDPOINTS =====

@pytest.fixture
def client(backoffice, session_factory):
    registry = TerminalRegistry(backoffice, session_factory=session_factory, debounce_seconds=0)
    app.dependency_overrides[get_terminal_registry] = lambda: registry
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _headers(token):
    return {"Authorization": f"Bearer {token}", "X-Terminal-Key": "till-1"}


class TestDiscountEndpoints:
    """Tests para /terminal/discounts"""

    def test_apply_by_code_and_remove(self, client, cashier_token):
        client.post("/terminal/cart/items", json={"product_id": "p-jeans"}, headers=_headers(cashier_token))

        response = client.post(
            "/terminal/discounts/applied", json={"code": "save50"}, headers=_headers(cashier_token)
        )
        assert response.status_code == 200
        data = response.json()
        assert [d["id"] for d in data["applied"]] == ["d-save50"]
        assert Decimal(data["discount_amount"]) == Decimal("50.00")

        response = client.delete("/terminal/discounts/applied/d-save50", headers=_headers(cashier_token))
        assert response.json()["applied"] == []

        response = client.delete("/terminal/discounts/applied/d-save50", headers=_headers(cashier_token))
        assert response.status_code == 404

    def test_inapplicable_discount(self, client, cashier_token):
        client.post("/terminal/cart/items", json={"product_id": "p-jeans"}, headers=_headers(cashier_token))
        response = client.post(
            "/terminal/discounts/applied", json={"discount_id": "d-tops"}, headers=_headers(cashier_token)
        )
        assert response.status_code == 409
        assert response.json()["code"] == "discount_not_applicable"

    def test_request_requires_id_or_code(self, client, cashier_token):
        response = client.post("/terminal/discounts/applied", json={}, headers=_headers(cashier_token))
        assert response.status_code == 422

    def test_available_and_eviction(self, client, cashier_token):
        client.post(
            "/terminal/cart/items",
            json={"product_id": "p-tee", "size": "M"},
            headers=_headers(cashier_token)
        )
        available = client.get("/terminal/discounts/available", headers=_headers(cashier_token)).json()
        assert {d["id"] for d in available} == {"d-tops", "d-save50"}

        client.post("/terminal/discounts/applied", json={"discount_id": "d-tops"}, headers=_headers(cashier_token))
        client.post("/terminal/cart/items", json={"product_id": "p-jeans"}, headers=_headers(cashier_token))

        applied = client.get("/terminal/discounts/applied", headers=_headers(cashier_token)).json()
        assert applied["applied"] == []
        assert applied["evicted"] == ["d-tops"]
