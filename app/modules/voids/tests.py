"""
Tests para el módulo de Anulaciones

Cubren:
- Máquina de estados COMMITTED -> PENDING -> AWAITING_AUTH -> VOIDED
- Autorización con PIN: aceptado, rechazado, servicio caído, timeout
- El VoidRecord solo se emite si la relectura muestra la disminución
- Anulación masiva con transacción 'Voided' agregada
- Cola local de bitácoras y su reenvío con Celery
- Endpoints /terminal/voids
"""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient

from app.common.exceptions import (
    AuthorizationError, AuthorizationInProgressError, CheckoutInProgressError, InvalidStateError,
    NoPendingChangeError, ValidationError, VoidNotAppliedError
)
from app.dependencies.terminalDependencies import get_terminal_registry
from app.main import app
from app.modules.auth.schemas import Performer
from app.modules.cart.schemas import ItemKey
from app.modules.cart.service import CartStore
from app.modules.terminal.service import TerminalRegistry
from app.modules.voids import tasks as void_tasks
from app.modules.voids.crud import pending_void_log_crud
from app.modules.voids.schemas import Approver, QuantityChangeState, VoidReason, generate_void_id
from app.modules.voids.service import QuantityChangeFlow


PIN = "123456"
WRONG_PIN = "000000"
TEE_M = ItemKey("p-tee", "M")
JEANS = ItemKey("p-jeans")
CASHIER = Performer(id="emp-7", name="Ana Cajera", role="Cashier")


# ===== FIXTURES =====

@pytest.fixture
def cart(backoffice, session_factory, products):
    cart = CartStore("till-1", backoffice, session_factory=session_factory, debounce_seconds=0)
    cart.add_item(products["p-tee"], 5, "M")
    return cart


@pytest.fixture
def flow(cart, backoffice, session_factory):
    return QuantityChangeFlow(cart, backoffice, session_factory=session_factory, pin_timeout=1)


def awaiting(flow, key=TEE_M, quantity=2):
    flow.propose(key, quantity)
    return flow.confirm(key)


# ===== TESTS DE ESQUEMAS =====

class TestVoidSchemas:
    """Tests para identificadores y datos del autorizador"""

    def test_void_id_format(self):
        void_id = generate_void_id()
        assert void_id.startswith("VOID-")
        assert len(void_id) == 11

    def test_approver_joins_names(self):
        approver = Approver.model_validate({"_id": 12, "firstName": "Marta", "lastName": "Reyes"})
        assert approver.id == "12"
        assert approver.name == "Marta Reyes"


# ===== TESTS DE MÁQUINA DE ESTADOS =====

class TestQuantityChangeStates:
    """Tests para propuestas, confirmación y cancelación"""

    def test_propose_does_not_touch_cart(self, flow, cart):
        pending = flow.propose(TEE_M, 2)
        assert pending.state == QuantityChangeState.PENDING
        assert cart.get_item(TEE_M).quantity == 5

    def test_adjust_is_clamped_to_stock(self, flow):
        assert flow.adjust(TEE_M, 10).proposed_quantity == 5
        assert flow.adjust(TEE_M, -10).proposed_quantity == 1
        assert flow.adjust(TEE_M, 2).proposed_quantity == 3

    def test_confirm_decrease_awaits_authorization(self, flow):
        pending = awaiting(flow)
        assert pending.state == QuantityChangeState.AWAITING_AUTH
        assert pending.void_quantity == 3
        assert pending.void_amount == Decimal("750")

    def test_confirm_increase_commits_without_pin(self, flow, cart):
        cart.set_quantity(TEE_M, 2)
        flow.propose(TEE_M, 4)
        pending = flow.confirm(TEE_M)

        assert pending.state == QuantityChangeState.COMMITTED
        assert cart.get_item(TEE_M).quantity == 4
        assert flow.get_pending(TEE_M) is None

    def test_confirm_same_quantity_is_noop(self, flow, cart):
        flow.propose(TEE_M, 5)
        assert flow.confirm(TEE_M).state == QuantityChangeState.COMMITTED
        assert cart.get_item(TEE_M).quantity == 5

    def test_confirm_without_proposal(self, flow):
        with pytest.raises(NoPendingChangeError):
            flow.confirm(TEE_M)

    def test_cancel_discards_proposal(self, flow, cart):
        awaiting(flow)
        assert flow.cancel(TEE_M) is True
        assert flow.pending_changes == []
        assert cart.get_item(TEE_M).quantity == 5
        assert flow.cancel(TEE_M) is False

    def test_authorize_requires_confirmation(self, flow):
        flow.propose(TEE_M, 2)
        with pytest.raises(InvalidStateError):
            asyncio.run(flow.authorize(TEE_M, VoidReason.OTHER, PIN))

    def test_unknown_line(self, flow):
        with pytest.raises(ValidationError):
            flow.propose(ItemKey("missing"), 1)


# ===== TESTS DE AUTORIZACIÓN =====

class TestAuthorization:
    """Tests para authorize"""

    def test_correct_pin_voids_difference(self, flow, cart, backoffice):
        """De 5 a 2: la línea queda en 2 y se registra una anulación de 3"""
        awaiting(flow)
        outcome = asyncio.run(
            flow.authorize(TEE_M, "Customer cancellation", PIN, performer=CASHIER, notes="cambio de talla")
        )

        assert cart.get_item(TEE_M).quantity == 2
        assert outcome.remaining_quantity == 2
        assert outcome.logged is True
        assert outcome.record.items[0].quantity == 3
        assert outcome.record.total_amount == Decimal("750")
        assert flow.get_pending(TEE_M) is None

        assert len(backoffice.void_logs) == 1
        log = backoffice.void_logs[0]
        assert log["items"][0]["quantity"] == 3
        assert log["voidReason"] == "Customer cancellation"
        assert log["approvedBy"] == "Marta Reyes"
        assert log["voidedById"] == "emp-7"
        assert log["bulk"] is False

    def test_wrong_pin_keeps_state(self, flow, cart, backoffice):
        awaiting(flow)
        with pytest.raises(AuthorizationError) as exc_info:
            asyncio.run(flow.authorize(TEE_M, VoidReason.OTHER, WRONG_PIN))

        assert exc_info.value.clear_pin is True
        assert flow.get_pending(TEE_M).state == QuantityChangeState.AWAITING_AUTH
        assert cart.get_item(TEE_M).quantity == 5
        assert backoffice.void_logs == []

        # El mismo cambio se puede reintentar
        asyncio.run(flow.authorize(TEE_M, VoidReason.OTHER, PIN))
        assert cart.get_item(TEE_M).quantity == 2

    def test_pin_service_down_keeps_pin(self, flow, cart, backoffice):
        awaiting(flow)
        backoffice.fail_pin_service = True
        with pytest.raises(AuthorizationError) as exc_info:
            asyncio.run(flow.authorize(TEE_M, VoidReason.OTHER, PIN))

        assert exc_info.value.clear_pin is False
        assert cart.get_item(TEE_M).quantity == 5

    def test_pin_timeout(self, cart, backoffice, session_factory):
        flow = QuantityChangeFlow(cart, backoffice, session_factory=session_factory, pin_timeout=0.05)
        backoffice.pin_delay = 1
        awaiting(flow)
        with pytest.raises(AuthorizationError) as exc_info:
            asyncio.run(flow.authorize(TEE_M, VoidReason.OTHER, PIN))

        assert exc_info.value.clear_pin is False
        assert flow.get_pending(TEE_M).state == QuantityChangeState.AWAITING_AUTH

    @pytest.mark.parametrize("pin", ["12345", "1234567", "12a456", ""])
    def test_malformed_pin_is_not_sent(self, flow, backoffice, pin):
        awaiting(flow)
        with pytest.raises(ValidationError):
            asyncio.run(flow.authorize(TEE_M, VoidReason.OTHER, pin))
        assert backoffice.pin_checks == []

    def test_unknown_reason(self, flow):
        awaiting(flow)
        with pytest.raises(ValidationError):
            asyncio.run(flow.authorize(TEE_M, "porque sí", PIN))

    def test_removal(self, flow, cart, backoffice):
        pending = flow.request_removal(TEE_M)
        assert pending.state == QuantityChangeState.AWAITING_AUTH
        assert pending.is_removal

        outcome = asyncio.run(flow.authorize(TEE_M, VoidReason.WRONG_TRANSACTION, PIN))
        assert cart.get_item(TEE_M) is None
        assert outcome.remaining_quantity == 0
        assert backoffice.void_logs[0]["items"][0]["quantity"] == 5

    def test_no_record_when_cart_did_not_decrease(self, flow, cart, backoffice):
        awaiting(flow)
        # Otro proceso ya dejó la línea en 2
        cart.set_quantity(TEE_M, 2)

        with pytest.raises(VoidNotAppliedError):
            asyncio.run(flow.authorize(TEE_M, VoidReason.OTHER, PIN))
        assert backoffice.void_logs == []
        assert pending_void_log_crud.list_unsent(cart.session_factory()) == []

    def test_cancel_during_authorization(self, flow, cart, backoffice):
        awaiting(flow)
        backoffice.pin_delay = 0.05

        async def scenario():
            task = asyncio.create_task(flow.authorize(TEE_M, VoidReason.OTHER, PIN))
            await asyncio.sleep(0.01)
            assert flow.cancel(TEE_M) is True
            with pytest.raises(InvalidStateError):
                await task

        asyncio.run(scenario())
        assert cart.get_item(TEE_M).quantity == 5
        assert backoffice.void_logs == []

    def test_concurrent_authorization_is_rejected(self, flow, cart, backoffice):
        awaiting(flow)
        backoffice.pin_delay = 0.05

        async def scenario():
            first = asyncio.create_task(flow.authorize(TEE_M, VoidReason.OTHER, PIN))
            await asyncio.sleep(0.01)
            with pytest.raises(AuthorizationInProgressError):
                await flow.authorize(TEE_M, VoidReason.OTHER, PIN)
            with pytest.raises(AuthorizationInProgressError):
                flow.adjust(TEE_M, 1)
            return await first

        outcome = asyncio.run(scenario())
        assert outcome.remaining_quantity == 2
        assert len(backoffice.void_logs) == 1


# ===== TESTS DE ANULACIÓN MASIVA =====

class TestBulkVoid:
    """Tests para begin_bulk / authorize_bulk"""

    def test_bulk_void(self, flow, cart, backoffice, products):
        cart.add_item(products["p-jeans"], 1)
        bulk = flow.begin_bulk([TEE_M, JEANS, TEE_M])
        assert bulk.keys == [TEE_M, JEANS]
        assert bulk.total_amount == Decimal("2050")

        outcome = asyncio.run(flow.authorize_bulk(VoidReason.SYSTEM_ERROR, PIN, performer=CASHIER))

        assert cart.is_empty
        assert flow.bulk is None
        assert outcome.record.transaction_id == "tx-1"
        assert backoffice.transactions[0]["status"] == "Voided"
        assert backoffice.transactions[0]["paymentMethod"] == "void"
        log = backoffice.void_logs[0]
        assert log["bulk"] is True
        assert log["originalTransactionId"] == "tx-1"
        assert len(log["items"]) == 2

    def test_bulk_wrong_pin(self, flow, cart):
        flow.begin_bulk([TEE_M])
        with pytest.raises(AuthorizationError):
            asyncio.run(flow.authorize_bulk(VoidReason.OTHER, WRONG_PIN))
        assert cart.get_item(TEE_M).quantity == 5
        assert flow.bulk is not None

    def test_bulk_still_logged_when_transaction_fails(self, flow, cart, backoffice):
        backoffice.fail_transaction = True
        flow.begin_bulk([TEE_M])
        outcome = asyncio.run(flow.authorize_bulk(VoidReason.OTHER, PIN))

        assert cart.is_empty
        assert outcome.record.transaction_id is None
        assert len(backoffice.void_logs) == 1

    def test_cancel_bulk(self, flow):
        flow.begin_bulk([TEE_M])
        assert flow.cancel_bulk() is True
        with pytest.raises(NoPendingChangeError):
            asyncio.run(flow.authorize_bulk(VoidReason.OTHER, PIN))

    def test_begin_bulk_requires_items(self, flow):
        with pytest.raises(ValidationError):
            flow.begin_bulk([])


# ===== TESTS DE EXCLUSIÓN CON EL COBRO =====

class CheckoutGate:
    """Simula el estado del cobro de la terminal"""

    def __init__(self):
        self.busy = False

    def __call__(self):
        if self.busy:
            raise CheckoutInProgressError("Ya hay un cobro en curso para esta terminal")


class TestCheckoutGuard:
    """Un cobro que empieza durante la verificación del PIN impide la mutación"""

    @pytest.fixture
    def gate(self):
        return CheckoutGate()

    @pytest.fixture
    def guarded_flow(self, cart, backoffice, session_factory, gate):
        return QuantityChangeFlow(
            cart, backoffice, session_factory=session_factory, pin_timeout=1, cart_guard=gate
        )

    def _start_checkout_during_pin(self, gate, coro):
        async def scenario():
            task = asyncio.create_task(coro)
            await asyncio.sleep(0.01)
            gate.busy = True
            return await task
        return asyncio.run(scenario())

    def test_checkout_during_pin_blocks_void(self, guarded_flow, cart, backoffice, gate):
        awaiting(guarded_flow)
        backoffice.pin_delay = 0.05

        with pytest.raises(CheckoutInProgressError):
            self._start_checkout_during_pin(
                gate, guarded_flow.authorize(TEE_M, VoidReason.OTHER, PIN)
            )

        assert cart.get_item(TEE_M).quantity == 5
        assert backoffice.void_logs == []
        assert guarded_flow.get_pending(TEE_M).state == QuantityChangeState.AWAITING_AUTH
        assert not guarded_flow.authorizing

        # Terminado el cobro, la misma anulación se puede reintentar
        gate.busy = False
        backoffice.pin_delay = 0
        outcome = asyncio.run(guarded_flow.authorize(TEE_M, VoidReason.OTHER, PIN))
        assert outcome.remaining_quantity == 2
        assert len(backoffice.void_logs) == 1

    def test_checkout_during_pin_blocks_bulk_void(self, guarded_flow, cart, backoffice, gate):
        guarded_flow.begin_bulk([TEE_M])
        backoffice.pin_delay = 0.05

        with pytest.raises(CheckoutInProgressError):
            self._start_checkout_during_pin(
                gate, guarded_flow.authorize_bulk(VoidReason.OTHER, PIN)
            )

        assert cart.get_item(TEE_M).quantity == 5
        assert backoffice.transactions == []
        assert backoffice.void_logs == []
        assert guarded_flow.bulk is not None

    def test_checkout_in_flight_skips_pin(self, guarded_flow, backoffice, gate):
        awaiting(guarded_flow)
        gate.busy = True

        with pytest.raises(CheckoutInProgressError):
            asyncio.run(guarded_flow.authorize(TEE_M, VoidReason.OTHER, PIN))
        assert backoffice.pin_checks == []


# ===== TESTS DE COLA LOCAL =====

class TestVoidLogOutbox:
    """La bitácora que no llega al back-office queda encolada y se reenvía"""

    def test_failed_log_is_queued_and_resent(self, flow, cart, backoffice, session_factory, monkeypatch):
        backoffice.fail_void_log = True
        awaiting(flow)
        outcome = asyncio.run(flow.authorize(TEE_M, VoidReason.OTHER, PIN))

        # La anulación ya se aplicó aunque la bitácora falló
        assert outcome.logged is False
        assert cart.get_item(TEE_M).quantity == 2

        db = session_factory()
        try:
            entries = pending_void_log_crud.list_unsent(db)
            assert len(entries) == 1
            assert entries[0].void_id == outcome.record.void_id
        finally:
            db.close()

        received = []

        def handler(request):
            received.append(json.loads(request.content))
            return httpx.Response(201, json={"success": True})

        monkeypatch.setattr(
            void_tasks, "get_http_client",
            lambda: httpx.Client(base_url="http://backoffice.test", transport=httpx.MockTransport(handler))
        )
        result = void_tasks.submit_pending_void_logs()

        assert result == {"status": "completed", "sent": 1, "failed": 0}
        assert received[0]["voidId"] == outcome.record.void_id
        db = session_factory()
        try:
            assert pending_void_log_crud.list_unsent(db) == []
        finally:
            db.close()

    def test_resend_failure_keeps_entry(self, flow, backoffice, session_factory, monkeypatch):
        backoffice.fail_void_log = True
        awaiting(flow)
        asyncio.run(flow.authorize(TEE_M, VoidReason.OTHER, PIN))

        monkeypatch.setattr(
            void_tasks, "get_http_client",
            lambda: httpx.Client(
                base_url="http://backoffice.test",
                transport=httpx.MockTransport(lambda request: httpx.Response(503))
            )
        )
        result = void_tasks.submit_pending_void_logs()

        assert result["failed"] == 1
        db = session_factory()
        try:
            entry = pending_void_log_crud.list_unsent(db)[0]
            assert entry.attempts == 2
        finally:
            db.close()

    def test_rejected_envelope_keeps_entry(self, flow, backoffice, session_factory, monkeypatch):
        """HTTP 200 con success=false no cuenta como enviado"""
        backoffice.fail_void_log = True
        awaiting(flow)
        asyncio.run(flow.authorize(TEE_M, VoidReason.OTHER, PIN))

        def handler(request):
            return httpx.Response(200, json={"success": False, "message": "Duplicate void"})

        monkeypatch.setattr(
            void_tasks, "get_http_client",
            lambda: httpx.Client(base_url="http://backoffice.test", transport=httpx.MockTransport(handler))
        )
        result = void_tasks.submit_pending_void_logs()

        assert result == {"status": "completed", "sent": 0, "failed": 1}
        db = session_factory()
        try:
            entry = pending_void_log_crud.list_unsent(db)[0]
            assert entry.last_error == "Duplicate void"
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


def _headers(token):
    return {"Authorization": f"Bearer {token}", "X-Terminal-Key": "till-1"}


class TestVoidEndpoints:
    """Tests para /terminal/voids"""

    def _seed(self, client, token):
        client.post(
            "/terminal/cart/items",
            json={"product_id": "p-tee", "size": "M", "quantity": 5},
            headers=_headers(token)
        )

    def test_decrease_flow(self, client, cashier_token, backoffice):
        self._seed(client, cashier_token)
        key = {"product_id": "p-tee", "size": "M"}

        pending = client.post(
            "/terminal/voids/propose", json={**key, "quantity": 2}, headers=_headers(cashier_token)
        ).json()
        assert pending["state"] == "pending"

        pending = client.post("/terminal/voids/confirm", json=key, headers=_headers(cashier_token)).json()
        assert pending["state"] == "awaiting_auth"
        assert pending["void_quantity"] == 3

        response = client.post(
            "/terminal/voids/authorize",
            json={**key, "reason": "Customer cancellation", "pin": WRONG_PIN},
            headers=_headers(cashier_token)
        )
        assert response.status_code == 401
        assert response.json()["clear_pin"] is True

        response = client.post(
            "/terminal/voids/authorize",
            json={**key, "reason": "Customer cancellation", "pin": PIN},
            headers=_headers(cashier_token)
        )
        assert response.status_code == 200
        assert response.json()["remaining_quantity"] == 2
        assert backoffice.void_logs[0]["voidedByName"] == "Ana Cajera"

        cart = client.get("/terminal/cart/", headers=_headers(cashier_token)).json()
        assert cart["items"][0]["quantity"] == 2

    def test_bulk_endpoints(self, client, cashier_token):
        self._seed(client, cashier_token)
        body = {"items": [{"product_id": "p-tee", "size": "M"}]}

        bulk = client.post("/terminal/voids/bulk", json=body, headers=_headers(cashier_token)).json()
        assert Decimal(bulk["total_amount"]) == Decimal("1250")

        response = client.post(
            "/terminal/voids/bulk/authorize",
            json={"reason": "Other", "pin": PIN},
            headers=_headers(cashier_token)
        )
        assert response.status_code == 200
        assert client.get("/terminal/cart/", headers=_headers(cashier_token)).json()["items"] == []

        response = client.delete("/terminal/voids/bulk", headers=_headers(cashier_token))
        assert response.status_code == 404

    def test_confirm_without_proposal(self, client, cashier_token):
        self._seed(client, cashier_token)
        response = client.post(
            "/terminal/voids/confirm",
            json={"product_id": "p-tee", "size": "M"},
            headers=_headers(cashier_token)
        )
        assert response.status_code == 404
        assert response.json()["code"] == "no_pending_change"
