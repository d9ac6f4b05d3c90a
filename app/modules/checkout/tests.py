"""
Tests para el módulo de Cobro

Cubren:
- Cobro en efectivo y QR con descuentos
- Falla al registrar la venta: el carrito queda idéntico y se puede reintentar
- Falla o timeout del stock: la venta no se deshace, se crea una incidencia
- Cobros concurrentes en la misma terminal
- Endpoints /terminal/checkout
"""

import asyncio
import re
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError as PydanticValidationError

from app.common.exceptions import (
    AuthorizationInProgressError, CheckoutInProgressError, ReconciliationWarning, TransactionError,
    ValidationError
)
from app.dependencies.terminalDependencies import get_terminal_registry
from app.main import app
from app.modules.auth.schemas import Performer
from app.modules.cart.schemas import ItemKey
from app.modules.catalog.service import CatalogService
from app.modules.checkout.crud import reconciliation_issue_crud
from app.modules.checkout.schemas import (
    PaymentMeta, PaymentMethod, TransactionDraft, TransactionLine, TransactionRecord, generate_receipt_number
)
from app.modules.checkout.service import RECONCILIATION_NOTICE, stock_deltas
from app.modules.discounts.service import DiscountCatalogService, DiscountEngine
from app.modules.terminal.service import TerminalRegistry, TerminalSession
from app.modules.voids.schemas import VoidReason


CASHIER = Performer(id="emp-7", name="Ana Cajera", role="Cashier")
PIN = "123456"
TEE_M = ItemKey("p-tee", "M")


# ===== FIXTURES =====

@pytest.fixture
def session(backoffice, session_factory, products):
    catalog = CatalogService(backoffice)
    engine = DiscountEngine(catalog, stacking_policy="additive")
    session = TerminalSession(
        "till-1", backoffice, catalog, DiscountCatalogService(backoffice, engine),
        engine=engine, session_factory=session_factory
    )
    session.cart.add_item(products["p-tee"], 2, "M")
    session.cart.add_item(products["p-jeans"], 1)
    return session


def cash(amount):
    return PaymentMeta(method=PaymentMethod.CASH, amount_received=Decimal(amount))


# ===== TESTS DE ESQUEMAS =====

class TestCheckoutSchemas:
    """Tests para datos de pago y recibos"""

    def test_receipt_number_format(self):
        receipt = generate_receipt_number(datetime(2026, 5, 4, tzinfo=timezone.utc))
        assert re.fullmatch(r"RCP-20260504-[A-Z0-9]{6}", receipt)

    def test_cash_requires_amount(self):
        with pytest.raises(PydanticValidationError):
            PaymentMeta(method="cash")

    def test_qr_requires_reference(self):
        with pytest.raises(PydanticValidationError):
            PaymentMeta(method="qr", reference_no="  ")
        assert PaymentMeta(method="qr", reference_no=" GC-881 ").reference_no == "GC-881"

    def test_void_is_not_a_payment(self):
        with pytest.raises(PydanticValidationError):
            PaymentMeta(method="void")

    def test_stock_deltas(self, session):
        deltas = stock_deltas(session.cart.items)
        assert {"productId": "p-tee", "size": "M", "quantity": 2} in deltas
        assert {"productId": "p-jeans", "size": None, "quantity": 1} in deltas

    def test_record_keeps_readable_server_ids(self):
        draft = TransactionDraft(
            items=[TransactionLine(product_id="p-1", quantity=1, unit_price=Decimal("10"))],
            payment_method=PaymentMethod.CASH, subtotal=Decimal("10"), total=Decimal("10")
        )
        record = TransactionRecord.from_response({"_id": 77, "receiptNo": "RCP-SERVER"}, draft)
        assert record.id == "77"
        assert record.receipt_number == "RCP-SERVER"
        assert record.total == Decimal("10")

    def test_record_falls_back_to_draft_on_unreadable_response(self):
        draft = TransactionDraft(
            items=[TransactionLine(product_id="p-1", quantity=1, unit_price=Decimal("10"))],
            payment_method=PaymentMethod.CASH, subtotal=Decimal("10"), total=Decimal("10")
        )
        record = TransactionRecord.from_response({
            "_id": "tx-9",
            "receiptNo": {"n": 1},
            "checkedOutAt": "Mon Oct 19 2026 10:00:00 GMT+0800",
        }, draft)

        assert record.id == "tx-9"
        assert record.receipt_number == draft.receipt_number
        assert record.checked_out_at == draft.checked_out_at


# ===== TESTS DE COBRO =====

class TestFinalize:
    """Tests para CheckoutFinalizer.finalize"""

    def test_cash_checkout_with_discount(self, session, backoffice):
        asyncio.run(session.catalog.list_products())
        asyncio.run(session.discounts.apply_by_id("d-save50", session.cart.items))
        assert not session.catalog.is_stale

        result = asyncio.run(session.finalizer.finalize(cash("1500"), performer=CASHIER))

        assert result.change_given == Decimal("250.00")
        assert result.warnings == []
        assert result.transaction.id == "tx-1"
        assert result.transaction.receipt_number.startswith("RCP-")
        assert result.transaction.total == Decimal("1250.00")

        payload = backoffice.transactions[0]
        assert payload["subtotal"] == 1300.0
        assert payload["discountAmount"] == 50.0
        assert payload["totalAmount"] == 1250.0
        assert payload["discountIds"] == ["d-save50"]
        assert payload["performedByName"] == "Ana Cajera"
        assert payload["status"] == "Completed"

        assert session.cart.is_empty
        assert session.discounts.ids == []
        assert session.catalog.is_stale
        assert {"productId": "p-tee", "size": "M", "quantity": 2} in backoffice.stock_updates[0]["items"]
        assert backoffice.stock_updates[0]["performedById"] == "emp-7"

    def test_qr_checkout(self, session, backoffice):
        payment = PaymentMeta(method="qr", reference_no="GC-881")
        result = asyncio.run(session.finalizer.finalize(payment))

        assert result.change_given is None
        assert result.transaction.reference_no == "GC-881"
        assert backoffice.transactions[0]["paymentMethod"] == "qr"

    def test_insufficient_cash(self, session, backoffice):
        with pytest.raises(ValidationError):
            asyncio.run(session.finalizer.finalize(cash("1000")))
        assert backoffice.transactions == []
        assert len(session.cart.items) == 2

    def test_empty_cart(self, session):
        session.cart.clear()
        with pytest.raises(ValidationError):
            asyncio.run(session.finalizer.finalize(cash("10")))

    def test_transaction_failure_leaves_cart_unchanged(self, session, backoffice):
        """Falla del registro: el carrito queda idéntico y el reintento repite solo el registro"""
        before = session.cart.snapshot()
        backoffice.fail_transaction = True

        with pytest.raises(TransactionError) as exc_info:
            asyncio.run(session.finalizer.finalize(cash("2000")))

        assert exc_info.value.to_dict()["retryable"] is True
        assert session.cart.snapshot() == before
        assert backoffice.stock_updates == []
        assert session.finalizer.in_flight is False

        backoffice.fail_transaction = False
        asyncio.run(session.finalizer.finalize(cash("2000")))
        assert len(backoffice.transactions) == 1
        assert len(backoffice.stock_updates) == 1

    def test_transaction_timeout(self, session, backoffice):
        before = session.cart.snapshot()
        session.finalizer.transaction_timeout = 0.05
        backoffice.transaction_delay = 1

        with pytest.raises(TransactionError):
            asyncio.run(session.finalizer.finalize(cash("2000")))
        assert session.cart.snapshot() == before

    def test_stock_timeout_keeps_sale(self, session, backoffice, session_factory):
        """Venta registrada y stock caído: carrito vacío, incidencia y advertencia no bloqueante"""
        session.finalizer.transaction_timeout = 0.05
        backoffice.stock_delay = 1

        with pytest.warns(ReconciliationWarning):
            result = asyncio.run(session.finalizer.finalize(cash("2000"), performer=CASHIER))

        assert session.cart.is_empty
        assert len(backoffice.transactions) == 1
        assert result.transaction.receipt_number.startswith("RCP-")
        assert result.warnings == [RECONCILIATION_NOTICE]
        assert result.reconciliation_issue_id is not None

        db = session_factory()
        try:
            issues = reconciliation_issue_crud.list_issues(db, "till-1")
            assert len(issues) == 1
            assert issues[0].transaction_id == "tx-1"
            assert issues[0].performed_by_name == "Ana Cajera"
        finally:
            db.close()

    def test_stock_failure_keeps_sale(self, session, backoffice):
        backoffice.fail_stock = True
        with pytest.warns(ReconciliationWarning):
            result = asyncio.run(session.finalizer.finalize(cash("2000")))
        assert session.cart.is_empty
        assert result.warnings == [RECONCILIATION_NOTICE]

    def test_concurrent_checkout_rejected(self, session, backoffice):
        backoffice.transaction_delay = 0.05

        async def scenario():
            first = asyncio.create_task(session.finalizer.finalize(cash("2000")))
            await asyncio.sleep(0.01)
            with pytest.raises(CheckoutInProgressError):
                await session.finalizer.finalize(cash("2000"))
            with pytest.raises(CheckoutInProgressError):
                session.ensure_idle()
            return await first

        asyncio.run(scenario())
        assert len(backoffice.transactions) == 1

    def test_stale_discount_dropped_at_checkout(self, session, backoffice):
        tops_only = [item for item in session.cart.items if item.category == "Tops"]
        asyncio.run(session.discounts.apply_by_id("d-tops", tops_only))

        asyncio.run(session.finalizer.finalize(cash("2000")))
        assert backoffice.transactions[0]["discountAmount"] == 0.0
        assert backoffice.transactions[0]["discountIds"] == []

    def test_unreadable_transaction_response_still_completes_sale(self, session, backoffice):
        """La venta ya registrada nunca queda en el carrito por una respuesta ilegible"""
        record_transaction = backoffice.record_transaction

        async def garbled_response(payload):
            data = await record_transaction(payload)
            data["checkedOutAt"] = "Mon Oct 19 2026 10:00:00 GMT+0800"
            return data

        backoffice.record_transaction = garbled_response
        result = asyncio.run(session.finalizer.finalize(cash("2000"), performer=CASHIER))

        assert result.transaction.id == "tx-1"
        assert result.transaction.receipt_number == backoffice.transactions[0]["receiptNo"]
        assert result.transaction.checked_out_at is not None
        assert session.cart.is_empty
        assert len(backoffice.transactions) == 1
        assert len(backoffice.stock_updates) == 1


# ===== TESTS DE ANULACIÓN Y COBRO CONCURRENTES =====

class TestVoidDuringCheckout:
    """Una anulación y un cobro nunca mutan el mismo carrito a la vez"""

    def _awaiting_void(self, session):
        session.flow.propose(TEE_M, 1)
        session.flow.confirm(TEE_M)

    def test_checkout_rejected_while_pin_is_verified(self, session, backoffice):
        """El cobro fallido posterior no deshace la anulación ya registrada"""
        self._awaiting_void(session)
        backoffice.pin_delay = 0.05
        backoffice.fail_transaction = True

        async def scenario():
            void = asyncio.create_task(session.flow.authorize(TEE_M, VoidReason.OTHER, PIN))
            await asyncio.sleep(0.01)
            with pytest.raises(AuthorizationInProgressError):
                await session.finalizer.finalize(cash("2000"))
            outcome = await void

            with pytest.raises(TransactionError):
                await session.finalizer.finalize(cash("2000"))
            return outcome

        outcome = asyncio.run(scenario())

        assert outcome.remaining_quantity == 1
        assert session.cart.get_item(TEE_M).quantity == 1
        assert len(backoffice.void_logs) == 1
        assert backoffice.void_logs[0]["items"][0]["quantity"] == 1
        assert backoffice.transactions == []

    def test_checkout_completes_after_void(self, session, backoffice):
        """Las unidades anuladas no se venden"""
        self._awaiting_void(session)
        backoffice.pin_delay = 0.05

        async def scenario():
            void = asyncio.create_task(session.flow.authorize(TEE_M, VoidReason.OTHER, PIN))
            await asyncio.sleep(0.01)
            with pytest.raises(AuthorizationInProgressError):
                await session.finalizer.finalize(cash("2000"))
            await void
            return await session.finalizer.finalize(cash("2000"))

        asyncio.run(scenario())

        sold = {line["productId"]: line["quantity"] for line in backoffice.transactions[0]["items"]}
        assert sold == {"p-tee": 1, "p-jeans": 1}
        assert len(backoffice.void_logs) == 1

    def test_void_rejected_while_checkout_in_flight(self, session, backoffice):
        """Un cobro en curso bloquea la anulación antes de pedir el PIN"""
        self._awaiting_void(session)
        backoffice.transaction_delay = 0.05

        async def scenario():
            checkout = asyncio.create_task(session.finalizer.finalize(cash("2000")))
            await asyncio.sleep(0.01)
            with pytest.raises(CheckoutInProgressError):
                await session.flow.authorize(TEE_M, VoidReason.OTHER, PIN)
            return await checkout

        asyncio.run(scenario())

        assert backoffice.pin_checks == []
        assert backoffice.void_logs == []
        sold = {line["productId"]: line["quantity"] for line in backoffice.transactions[0]["items"]}
        assert sold == {"p-tee": 2, "p-jeans": 1}
        assert not session.flow.authorizing


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


class TestCheckoutEndpoints:
    """Tests para /terminal/checkout"""

    def _seed(self, client, token):
        client.post("/terminal/cart/items", json={"product_id": "p-jeans"}, headers=_headers(token))

    def test_checkout(self, client, cashier_token):
        self._seed(client, cashier_token)
        response = client.post(
            "/terminal/checkout/",
            json={"payment": {"method": "cash", "amount_received": 1000}},
            headers=_headers(cashier_token)
        )
        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["change_given"]) == Decimal("200.00")
        assert data["transaction"]["performed_by_name"] == "Ana Cajera"
        assert client.get("/terminal/cart/", headers=_headers(cashier_token)).json()["items"] == []

    def test_transaction_failure_response(self, client, cashier_token, backoffice):
        self._seed(client, cashier_token)
        backoffice.fail_transaction = True
        response = client.post(
            "/terminal/checkout/",
            json={"payment": {"method": "cash", "amount_received": 1000}},
            headers=_headers(cashier_token)
        )
        assert response.status_code == 502
        assert response.json()["code"] == "transaction_failed"
        assert len(client.get("/terminal/cart/", headers=_headers(cashier_token)).json()["items"]) == 1

    def test_invalid_payment(self, client, cashier_token):
        self._seed(client, cashier_token)
        response = client.post(
            "/terminal/checkout/",
            json={"payment": {"method": "qr"}},
            headers=_headers(cashier_token)
        )
        assert response.status_code == 422

    def test_reconciliation_issues(self, client, cashier_token, manager_token, backoffice):
        self._seed(client, cashier_token)
        backoffice.fail_stock = True
        data = client.post(
            "/terminal/checkout/",
            json={"payment": {"method": "qr", "reference_no": "GC-1"}},
            headers=_headers(cashier_token)
        ).json()
        assert data["warnings"] == [RECONCILIATION_NOTICE]
        issue_id = data["reconciliation_issue_id"]

        response = client.get("/terminal/checkout/reconciliation-issues", headers=_headers(cashier_token))
        assert response.status_code == 403

        issues = client.get(
            "/terminal/checkout/reconciliation-issues", headers=_headers(manager_token)
        ).json()
        assert [i["id"] for i in issues] == [issue_id]

        resolved = client.post(
            f"/terminal/checkout/reconciliation-issues/{issue_id}/resolve", headers=_headers(manager_token)
        ).json()
        assert resolved["resolved_at"] is not None

        issues = client.get(
            "/terminal/checkout/reconciliation-issues", headers=_headers(manager_token)
        ).json()
        assert issues == []

        response = client.post(
            "/terminal/checkout/reconciliation-issues/999/resolve", headers=_headers(manager_token)
        )
        assert response.status_code == 404
