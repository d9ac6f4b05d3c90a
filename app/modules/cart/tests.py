"""
Tests para el módulo de Carrito

Cubren:
- Normalización de tallas y precio por talla al agregar
- Señal de duplicado y merge explícito
- Validación de stock por talla (mensaje con cantidad en carrito y disponible)
- Persistencia: espejo local inmediato, guardado remoto, fallos y rehidratación
- Tarea Celery de sincronización
- Endpoints /terminal/cart
"""

import asyncio
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient

from app.common.exceptions import (
    BackofficeError, InsufficientStockError, PersistenceWarning, ValidationError
)
from app.dependencies.terminalDependencies import get_terminal_registry
from app.main import app
from app.modules.cart import tasks as cart_tasks
from app.modules.cart.crud import local_cart_crud
from app.modules.cart.schemas import AddItemStatus, ItemKey, LineItem
from app.modules.cart.service import CartStore
from app.modules.terminal.service import TerminalRegistry


# ===== FIXTURES =====

@pytest.fixture
def cart(backoffice, session_factory):
    return CartStore("till-1", backoffice, session_factory=session_factory, debounce_seconds=0)


TEE_M = ItemKey("p-tee", "M")


# ===== TESTS DE ESQUEMAS =====

class TestLineItem:
    """Tests para LineItem y ItemKey"""

    def test_item_key_normalizes_empty_size(self):
        assert ItemKey.of("p-jeans", "  ") == ItemKey("p-jeans", None)
        assert ItemKey.of(12, " M ") == ItemKey("12", "M")

    def test_from_product_uses_size_price(self, products):
        """El precio de la talla tiene prioridad sobre el precio base"""
        item = LineItem.from_product(products["p-tee"], 1, "S")
        assert item.unit_price == Decimal("300")
        assert item.available_stock() == 2

        item = LineItem.from_product(products["p-tee"], 1, "M")
        assert item.unit_price == Decimal("250")
        assert item.available_stock() == 5

    def test_legacy_size_map_is_normalized(self, products):
        item = LineItem.from_product(products["p-cap"], 1, "One")
        assert item.sizes["One"].quantity == 3
        assert item.available_stock() == 3

    def test_sizeless_product_uses_product_stock(self, products):
        item = LineItem.from_product(products["p-jeans"], 2)
        assert item.selected_size is None
        assert item.available_stock() == 10
        assert item.line_total == Decimal("1600")

    def test_size_required_for_sized_product(self, products):
        with pytest.raises(ValidationError):
            LineItem.from_product(products["p-tee"], 1)
        with pytest.raises(ValidationError):
            LineItem.from_product(products["p-tee"], 1, "XL")

    def test_wire_format_round_trip(self, products):
        item = LineItem.from_product(products["p-tee"], 2, "M")
        wire = item.to_wire()
        assert wire["productId"] == "p-tee"
        assert wire["selectedSize"] == "M"
        assert wire["itemPrice"] == 250.0
        assert LineItem.model_validate(wire).key == TEE_M


# ===== TESTS DE MUTACIONES =====

class TestCartMutations:
    """Tests para agregar, merge y cantidades"""

    def test_add_item(self, cart, products):
        result = cart.add_item(products["p-tee"], 3, "M")
        assert result.status == AddItemStatus.ADDED
        assert cart.get_item(TEE_M).quantity == 3
        assert cart.subtotal() == Decimal("750")

    def test_add_existing_item_returns_duplicate(self, cart, products):
        """Agregar la misma línea no suma: se devuelve la señal de duplicado"""
        cart.add_item(products["p-tee"], 2, "M")
        result = cart.add_item(products["p-tee"], 1, "M")

        assert result.status == AddItemStatus.DUPLICATE
        assert result.existing_quantity == 2
        assert result.requested_quantity == 1
        assert cart.get_item(TEE_M).quantity == 2

    def test_same_product_different_size_is_new_line(self, cart, products):
        cart.add_item(products["p-tee"], 1, "M")
        result = cart.add_item(products["p-tee"], 1, "S")
        assert result.status == AddItemStatus.ADDED
        assert len(cart.items) == 2

    def test_merge_item(self, cart, products):
        cart.add_item(products["p-tee"], 2, "M")
        result = cart.merge_item(TEE_M, 2)
        assert result.status == AddItemStatus.MERGED
        assert result.existing_quantity == 2
        assert cart.get_item(TEE_M).quantity == 4

    def test_merge_over_stock_fails(self, cart, products):
        cart.add_item(products["p-tee"], 4, "M")
        with pytest.raises(InsufficientStockError):
            cart.merge_item(TEE_M, 2)
        assert cart.get_item(TEE_M).quantity == 4

    def test_add_over_size_stock_fails(self, cart, products):
        with pytest.raises(InsufficientStockError) as exc_info:
            cart.add_item(products["p-tee"], 3, "S")
        assert exc_info.value.available == 2
        assert cart.is_empty

    def test_set_quantity_checks_size_stock(self, cart, products):
        """Con 3 en el carrito y 5 disponibles: 4 se acepta, 6 no"""
        cart.add_item(products["p-tee"], 3, "M")

        cart.set_quantity(TEE_M, 4)
        assert cart.get_item(TEE_M).quantity == 4

        cart.set_quantity(TEE_M, 3)
        with pytest.raises(InsufficientStockError) as exc_info:
            cart.set_quantity(TEE_M, 6)
        assert "3 ya en el carrito, 5 disponibles" in str(exc_info.value)
        assert cart.get_item(TEE_M).quantity == 3

    def test_set_quantity_zero_removes_line(self, cart, products):
        cart.add_item(products["p-jeans"], 1)
        assert cart.set_quantity(ItemKey("p-jeans"), 0) is None
        assert cart.is_empty

    def test_unknown_line_fails(self, cart):
        with pytest.raises(ValidationError):
            cart.set_quantity(ItemKey("nope"), 2)

    def test_listeners_receive_items(self, cart, products):
        seen = []
        cart.add_listener(lambda items: seen.append(len(items)))
        cart.add_item(products["p-jeans"], 1)
        cart.add_item(products["p-tee"], 1, "M")
        cart.clear()
        assert seen == [1, 2, 0]

    def test_items_are_copies(self, cart, products):
        cart.add_item(products["p-jeans"], 1)
        cart.items[0].quantity = 9
        assert cart.get_item(ItemKey("p-jeans")).quantity == 1


# ===== TESTS DE PERSISTENCIA =====

class TestCartPersistence:
    """Tests para el espejo local y el almacén remoto"""

    def test_mutation_writes_local_mirror(self, cart, products, session_factory):
        cart.add_item(products["p-jeans"], 2)

        db = session_factory()
        try:
            stored = local_cart_crud.read_items(db, "till-1")
            assert stored[0]["productId"] == "p-jeans"
            assert stored[0]["quantity"] == 2
            assert local_cart_crud.get(db, "till-1").remote_dirty is True
        finally:
            db.close()

    def test_debounced_persist_reaches_remote(self, cart, products, backoffice):
        async def scenario():
            cart.add_item(products["p-jeans"], 1)
            cart.set_quantity(ItemKey("p-jeans"), 2)
            await asyncio.sleep(0.05)

        asyncio.run(scenario())
        # Las dos mutaciones se agrupan en un único guardado
        assert backoffice.save_calls == 1
        assert backoffice.carts["till-1"][0]["quantity"] == 2
        assert cart.remote_dirty is False

    def test_remote_failure_never_blocks_mutation(self, cart, products, backoffice):
        backoffice.fail_save_cart = True

        async def scenario():
            cart.add_item(products["p-jeans"], 1)
            await asyncio.sleep(0.05)

        asyncio.run(scenario())
        assert cart.get_item(ItemKey("p-jeans")).quantity == 1
        assert cart.remote_failures == 1
        assert cart.remote_dirty is True
        assert cart.persistence_status().degraded is False
        assert cart.cashier_warnings == []

    def test_persistent_failures_warn_cashier(self, backoffice, session_factory, products):
        cart = CartStore("till-1", backoffice, session_factory=session_factory,
                         debounce_seconds=0, warning_threshold=2)
        cart.add_item(products["p-jeans"], 1)
        backoffice.fail_save_cart = True

        with pytest.warns(PersistenceWarning):
            assert asyncio.run(cart.persist()) is False
            assert asyncio.run(cart.persist()) is False

        assert cart.persistence_status().degraded is True
        assert len(cart.cashier_warnings) == 1

        backoffice.fail_save_cart = False
        assert asyncio.run(cart.persist()) is True
        assert cart.remote_failures == 0
        assert cart.cashier_warnings == []

    def test_load_prefers_remote(self, backoffice, session_factory):
        backoffice.carts["till-1"] = [
            {"productId": "p-jeans", "quantity": 2, "itemPrice": 800, "currentStock": 10}
        ]
        cart = CartStore("till-1", backoffice, session_factory=session_factory)

        items = asyncio.run(cart.load())
        assert cart.loaded_from == "remote"
        assert items[0].quantity == 2

    def test_load_falls_back_to_local(self, cart, products, backoffice, session_factory):
        cart.add_item(products["p-jeans"], 3)
        backoffice.fail_get_cart = True

        reloaded = CartStore("till-1", backoffice, session_factory=session_factory)
        asyncio.run(reloaded.load())
        assert reloaded.loaded_from == "local"
        assert reloaded.get_item(ItemKey("p-jeans")).quantity == 3
        assert reloaded.remote_dirty is True

    def test_load_skips_invalid_and_duplicate_items(self, backoffice, session_factory):
        backoffice.carts["till-1"] = [
            {"productId": "p-jeans", "quantity": 1, "itemPrice": 800},
            {"productId": "p-jeans", "quantity": 5, "itemPrice": 800},
            {"productId": "p-cap", "quantity": 0},
        ]
        cart = CartStore("till-1", backoffice, session_factory=session_factory)
        asyncio.run(cart.load())

        assert len(cart.items) == 1
        assert cart.get_item(ItemKey("p-jeans")).quantity == 1

    def test_empty_everywhere(self, backoffice, session_factory):
        cart = CartStore("till-9", backoffice, session_factory=session_factory)
        asyncio.run(cart.load())
        assert cart.loaded_from == "empty"
        assert cart.is_empty

    def test_flush_persists_pending_changes(self, cart, products, backoffice):
        cart.add_item(products["p-jeans"], 1)  # sin event loop: solo local
        assert backoffice.save_calls == 0

        assert asyncio.run(cart.flush()) is True
        assert backoffice.carts["till-1"][0]["productId"] == "p-jeans"

    def test_restore_snapshot(self, cart, products):
        cart.add_item(products["p-jeans"], 1)
        snapshot = cart.snapshot()
        cart.clear()
        cart.restore(snapshot)
        assert cart.get_item(ItemKey("p-jeans")).quantity == 1


# ===== TESTS DE TAREAS =====

class TestCartSyncTask:
    """Tests para la tarea Celery sync_cart_to_remote"""

    def _client_factory(self, handler):
        def factory():
            return httpx.Client(base_url="http://backoffice.test", transport=httpx.MockTransport(handler))
        return factory

    def test_sync_uploads_dirty_cart(self, cart, products, session_factory, monkeypatch):
        cart.add_item(products["p-jeans"], 2)
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"success": True})

        monkeypatch.setattr(cart_tasks, "get_http_client", self._client_factory(handler))
        result = cart_tasks.sync_cart_to_remote("till-1")

        assert result["status"] == "success"
        assert requests[0].method == "PUT"
        assert requests[0].url.path == "/carts/till-1"
        db = session_factory()
        try:
            assert local_cart_crud.get(db, "till-1").remote_dirty is False
        finally:
            db.close()

    def test_sync_skips_clean_cart(self, monkeypatch):
        def handler(request):
            raise AssertionError("no debe llamar al back-office")

        monkeypatch.setattr(cart_tasks, "get_http_client", self._client_factory(handler))
        assert cart_tasks.sync_cart_to_remote("till-unknown")["status"] == "skipped"

    def test_rejected_envelope_keeps_cart_dirty(self, cart, products, session_factory, monkeypatch):
        """Un 200 con success=false no marca el carrito como sincronizado"""
        cart.add_item(products["p-jeans"], 1)

        def handler(request):
            return httpx.Response(200, json={"success": False, "message": "Cart locked"})

        monkeypatch.setattr(cart_tasks, "get_http_client", self._client_factory(handler))
        # Llamada directa: el reintento relanza la excepción original
        with pytest.raises(BackofficeError, match="Cart locked"):
            cart_tasks.sync_cart_to_remote("till-1")

        db = session_factory()
        try:
            assert local_cart_crud.get(db, "till-1").remote_dirty is True
        finally:
            db.close()


# ===== TESTS DE ENDPOINTS =====

@pytest.fixture
def client(backoffice, session_factory):
    registry = TerminalRegistry(backoffice, session_factory=session_factory, debounce_seconds=0)
    app.dependency_overrides[get_terminal_registry] = lambda: registry
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _headers(token, terminal="till-1"):
    return {"Authorization": f"Bearer {token}", "X-Terminal-Key": terminal}


class TestCartEndpoints:
    """Tests para /terminal/cart"""

    def test_requires_token(self, client):
        response = client.get("/terminal/cart/", headers={"X-Terminal-Key": "till-1"})
        assert response.status_code in (401, 403)

    def test_add_and_read_cart(self, client, cashier_token):
        response = client.post(
            "/terminal/cart/items",
            json={"product_id": "p-tee", "size": "M", "quantity": 2},
            headers=_headers(cashier_token)
        )
        assert response.status_code == 200
        assert response.json()["status"] == "added"

        response = client.get("/terminal/cart/", headers=_headers(cashier_token))
        data = response.json()
        assert data["terminal_key"] == "till-1"
        assert data["items"][0]["productId"] == "p-tee"
        assert Decimal(data["totals"]["subtotal"]) == Decimal("500.00")

    def test_cart_is_shared_per_terminal(self, client, cashier_token, manager_token):
        client.post(
            "/terminal/cart/items",
            json={"product_id": "p-jeans"},
            headers=_headers(cashier_token)
        )
        # Otro empleado en la misma terminal ve el mismo carrito
        shared = client.get("/terminal/cart/", headers=_headers(manager_token)).json()
        other = client.get("/terminal/cart/", headers=_headers(cashier_token, "till-2")).json()
        assert len(shared["items"]) == 1
        assert other["items"] == []

    def test_duplicate_then_merge(self, client, cashier_token):
        body = {"product_id": "p-tee", "size": "M", "quantity": 1}
        client.post("/terminal/cart/items", json=body, headers=_headers(cashier_token))
        duplicate = client.post("/terminal/cart/items", json=body, headers=_headers(cashier_token)).json()
        assert duplicate["status"] == "duplicate"
        assert duplicate["existing_quantity"] == 1

        merged = client.post("/terminal/cart/items/merge", json=body, headers=_headers(cashier_token)).json()
        assert merged["status"] == "merged"
        assert merged["item"]["quantity"] == 2

    def test_insufficient_stock_response(self, client, cashier_token):
        response = client.post(
            "/terminal/cart/items",
            json={"product_id": "p-tee", "size": "S", "quantity": 3},
            headers=_headers(cashier_token)
        )
        assert response.status_code == 409
        data = response.json()
        assert data["code"] == "insufficient_stock"
        assert data["available"] == 2

    def test_unknown_product(self, client, cashier_token):
        response = client.post(
            "/terminal/cart/items",
            json={"product_id": "missing"},
            headers=_headers(cashier_token)
        )
        assert response.status_code == 404
        assert response.json()["code"] == "product_not_found"
