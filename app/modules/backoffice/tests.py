"""
Tests para el cliente del back-office

Usan httpx.MockTransport: ninguna prueba sale a la red.
"""

import asyncio
import json

import httpx
import pytest

from app.common.exceptions import BackofficeError, BackofficeUnavailableError, PinRejectedError
from app.modules.backoffice.client import BackofficeClient, unwrap_envelope


def make_client(handler):
    return BackofficeClient(base_url="http://backoffice.test/api", timeout=1,
                            transport=httpx.MockTransport(handler))


def run(client, coro_factory):
    async def scenario():
        try:
            return await coro_factory(client)
        finally:
            await client.close()
    return asyncio.run(scenario())


class TestEnvelope:
    """Tests para el sobre {success, data, message}"""

    def test_unwraps_data(self):
        def handler(request):
            assert request.url.path == "/api/products"
            return httpx.Response(200, json={"success": True, "data": [{"_id": "p-1"}]})

        assert run(make_client(handler), lambda c: c.list_products()) == [{"_id": "p-1"}]

    def test_plain_list_body(self):
        def handler(request):
            return httpx.Response(200, json=[{"_id": "d-1"}])

        assert run(make_client(handler), lambda c: c.list_discounts()) == [{"_id": "d-1"}]

    def test_success_false_is_an_error(self):
        def handler(request):
            return httpx.Response(200, json={"success": False, "message": "Sin permiso"})

        with pytest.raises(BackofficeError) as exc_info:
            run(make_client(handler), lambda c: c.list_products())
        assert exc_info.value.message == "Sin permiso"

    def test_http_error_status(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        with pytest.raises(BackofficeError) as exc_info:
            run(make_client(handler), lambda c: c.record_transaction({}))
        assert exc_info.value.http_status == 500
        assert "500" in exc_info.value.message

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(BackofficeUnavailableError):
            run(make_client(handler), lambda c: c.list_products())

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(BackofficeUnavailableError):
            run(make_client(handler), lambda c: c.get_cart("till-1"))

    def test_unwrap_sync_response(self):
        """El mismo desempaquetado sirve a las tareas Celery con httpx.Client"""
        ok = httpx.Response(200, json={"success": True, "data": {"_id": "v-1"}})
        assert unwrap_envelope(ok, "/void-logs") == {"_id": "v-1"}

        rejected = httpx.Response(200, json={"success": False, "message": "Duplicate void"})
        with pytest.raises(BackofficeError) as exc_info:
            unwrap_envelope(rejected, "/void-logs")
        assert exc_info.value.http_status == 200
        assert exc_info.value.message == "Duplicate void"


class TestEndpoints:
    """Tests para rutas y cuerpos de cada operación"""

    def test_cart_round_trip(self):
        store = {}

        def handler(request):
            assert request.url.path == "/api/carts/till-1"
            if request.method == "PUT":
                store.update(json.loads(request.content))
                return httpx.Response(200, json={"success": True})
            return httpx.Response(200, json={"success": True, "data": store})

        async def scenario(client):
            await client.save_cart("till-1", [{"productId": "p-1", "quantity": 2}])
            return await client.get_cart("till-1")

        assert run(make_client(handler), scenario) == [{"productId": "p-1", "quantity": 2}]

    def test_update_stock_body(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True, "data": None})

        run(make_client(handler), lambda c: c.update_stock([{"productId": "p-1"}], "Ana", "emp-7"))
        assert bodies[0] == {
            "items": [{"productId": "p-1"}],
            "performedByName": "Ana",
            "performedById": "emp-7",
        }

    def test_verify_pin(self):
        def handler(request):
            body = json.loads(request.content)
            assert body == {"pin": "123456", "employeeId": "mgr-1"}
            return httpx.Response(200, json={"success": True, "data": {"_id": "mgr-1", "name": "Marta"}})

        data = run(make_client(handler), lambda c: c.verify_pin("123456", "mgr-1"))
        assert data["name"] == "Marta"

    @pytest.mark.parametrize("status_code", [401, 403, 404])
    def test_verify_pin_rejected(self, status_code):
        def handler(request):
            return httpx.Response(status_code, json={"success": False, "message": "Invalid PIN"})

        with pytest.raises(PinRejectedError):
            run(make_client(handler), lambda c: c.verify_pin("000000"))

    def test_verify_pin_server_error_is_not_rejection(self):
        def handler(request):
            return httpx.Response(500, json={"success": False, "message": "db down"})

        with pytest.raises(BackofficeError) as exc_info:
            run(make_client(handler), lambda c: c.verify_pin("123456"))
        assert not isinstance(exc_info.value, PinRejectedError)
