"""
Tests para sesiones de terminal, middleware y autenticación
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from app.dependencies.terminalDependencies import get_terminal_registry
from app.main import app
from app.modules.auth.utils import create_access_token
from app.modules.terminal.service import TerminalRegistry


# ===== TESTS DE REGISTRO =====

class TestTerminalRegistry:
    """Una sesión por terminal, cargada en el primer acceso"""

    def test_same_session_per_key(self, backoffice, session_factory):
        registry = TerminalRegistry(backoffice, session_factory=session_factory, debounce_seconds=0)

        async def scenario():
            first = await registry.get("till-1")
            again = await registry.get("till-1")
            other = await registry.get("till-2")
            return first, again, other

        first, again, other = asyncio.run(scenario())
        assert first is again
        assert first is not other
        assert sorted(registry.terminal_keys) == ["till-1", "till-2"]

    def test_loads_remote_cart(self, backoffice, session_factory):
        backoffice.carts["till-1"] = [
            {"productId": "p-jeans", "itemName": "Relaxed Jeans", "itemPrice": 800,
             "quantity": 2, "category": "Bottoms"}
        ]
        registry = TerminalRegistry(backoffice, session_factory=session_factory, debounce_seconds=0)

        session = asyncio.run(registry.get("till-1"))
        assert len(session.cart.items) == 1
        assert session.totals().subtotal == Decimal("1600.00")
        assert not session.catalog.is_stale

    def test_close_flushes_carts(self, backoffice, session_factory, products):
        registry = TerminalRegistry(backoffice, session_factory=session_factory, debounce_seconds=30)

        async def scenario():
            session = await registry.get("till-1")
            session.cart.add_item(products["p-jeans"], 1)
            await registry.close()

        asyncio.run(scenario())
        assert [item["productId"] for item in backoffice.carts["till-1"]] == ["p-jeans"]
        assert registry.terminal_keys == []


# ===== TESTS HTTP =====

@pytest.fixture
def client(backoffice, session_factory):
    registry = TerminalRegistry(backoffice, session_factory=session_factory, debounce_seconds=0)
    app.dependency_overrides[get_terminal_registry] = lambda: registry
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


class TestTerminalScoping:
    """Tests para X-Terminal-Key y el token del cajero"""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_terminal_key_echoed(self, client, cashier_token):
        response = client.get("/terminal/cart/", headers={
            "Authorization": f"Bearer {cashier_token}", "X-Terminal-Key": "till-9"
        })
        assert response.status_code == 200
        assert response.headers["X-Terminal-Key"] == "till-9"
        assert response.json()["terminal_key"] == "till-9"

    def test_invalid_terminal_key(self, client, cashier_token):
        response = client.get("/terminal/cart/", headers={
            "Authorization": f"Bearer {cashier_token}", "X-Terminal-Key": "till 1/../x"
        })
        assert response.status_code == 400

    def test_token_bound_to_other_terminal(self, client):
        token = create_access_token({"sub": "emp-7", "name": "Ana", "role": "Cashier", "terminal_key": "till-2"})
        response = client.get("/terminal/cart/", headers={
            "Authorization": f"Bearer {token}", "X-Terminal-Key": "till-1"
        })
        assert response.status_code == 403

    def test_expired_token(self, client):
        token = create_access_token({"sub": "emp-7"}, expires_delta=timedelta(minutes=-5))
        response = client.get("/terminal/cart/", headers={
            "Authorization": f"Bearer {token}", "X-Terminal-Key": "till-1"
        })
        assert response.status_code == 401

    def test_token_without_subject(self, client):
        token = create_access_token({"name": "Sin id"})
        response = client.get("/terminal/cart/", headers={
            "Authorization": f"Bearer {token}", "X-Terminal-Key": "till-1"
        })
        assert response.status_code == 401
