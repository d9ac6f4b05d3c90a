"""
Fixtures compartidas de las pruebas de la terminal

La configuración se fija antes de importar la aplicación: base local en
memoria, sin debounce y sin reintentos de Celery.
"""

import asyncio
import os

os.environ.setdefault("LOCAL_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("BACKGROUND_RETRY_ENABLED", "false")
os.environ.setdefault("CART_PERSIST_DEBOUNCE_SECONDS", "0")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest

from app.common.exceptions import BackofficeError, BackofficeUnavailableError, PinRejectedError
from app.database.database import Base, SessionLocal, init_local_db, local_engine
from app.modules.auth.utils import create_access_token


VALID_PIN = "123456"


class FakeBackoffice:
    """Back-office en memoria con fallas configurables"""

    def __init__(self, products=None, discounts=None):
        self.products = list(products or [])
        self.discounts = list(discounts or [])
        self.carts = {}
        self.transactions = []
        self.stock_updates = []
        self.void_logs = []
        self.pin_checks = []
        self.approver = {"_id": "mgr-1", "firstName": "Marta", "lastName": "Reyes", "role": "Manager"}

        # Fallas
        self.fail_get_cart = False
        self.fail_save_cart = False
        self.fail_transaction = False
        self.fail_stock = False
        self.fail_void_log = False
        self.fail_pin_service = False
        self.transaction_delay = 0
        self.stock_delay = 0
        self.pin_delay = 0
        self.save_calls = 0

    async def list_products(self):
        return [dict(p) for p in self.products]

    async def list_discounts(self):
        return [dict(d) for d in self.discounts]

    async def get_cart(self, terminal_key):
        if self.fail_get_cart:
            raise BackofficeUnavailableError("carts down")
        return [dict(item) for item in self.carts.get(terminal_key, [])]

    async def save_cart(self, terminal_key, items):
        self.save_calls += 1
        if self.fail_save_cart:
            raise BackofficeUnavailableError("carts down")
        self.carts[terminal_key] = [dict(item) for item in items]

    async def record_transaction(self, payload):
        if self.transaction_delay:
            await asyncio.sleep(self.transaction_delay)
        if self.fail_transaction:
            raise BackofficeError("Transaction service unavailable", http_status=500)
        self.transactions.append(payload)
        return {"_id": f"tx-{len(self.transactions)}", **payload}

    async def update_stock(self, items, performed_by_name, performed_by_id):
        if self.stock_delay:
            await asyncio.sleep(self.stock_delay)
        if self.fail_stock:
            raise BackofficeError("Stock service unavailable", http_status=500)
        self.stock_updates.append({
            "items": items,
            "performedByName": performed_by_name,
            "performedById": performed_by_id,
        })

    async def verify_pin(self, pin, employee_id=None):
        self.pin_checks.append(pin)
        if self.pin_delay:
            await asyncio.sleep(self.pin_delay)
        if self.fail_pin_service:
            raise BackofficeUnavailableError("pin service down")
        if pin != VALID_PIN:
            raise PinRejectedError("Invalid PIN", http_status=401)
        return dict(self.approver)

    async def create_void_log(self, payload):
        if self.fail_void_log:
            raise BackofficeUnavailableError("void logs down")
        self.void_logs.append(payload)
        return {"_id": f"vl-{len(self.void_logs)}"}

    async def close(self):
        pass


SAMPLE_PRODUCTS = [
    {
        "_id": "p-tee",
        "itemName": "Basic Tee",
        "sku": "TEE-001",
        "category": "Tops",
        "itemPrice": 250,
        "currentStock": 7,
        "sizes": {"S": {"quantity": 2, "price": 300}, "M": {"quantity": 5}},
    },
    {
        "_id": "p-cap",
        "itemName": "Cap",
        "sku": "CAP-001",
        "category": "Tops",
        "itemPrice": 150,
        "currentStock": 3,
        # registro heredado: solo cantidad
        "sizes": {"One": 3},
    },
    {
        "_id": "p-jeans",
        "itemName": "Jeans",
        "sku": "JNS-001",
        "category": "Bottoms",
        "itemPrice": 800,
        "currentStock": 10,
    },
]

SAMPLE_DISCOUNTS = [
    {
        "_id": "d-tops",
        "title": "Tops 10%",
        "discountCode": "TOPS10",
        "discountType": "percentage",
        "discountValue": "10% OFF",
        "appliesToType": "category",
        "category": "Tops",
        "status": "active",
        "validFrom": "Permanent",
    },
    {
        "_id": "d-save50",
        "title": "Save 50",
        "discountCode": "save50",
        "discountValue": "₱50 OFF",
        "appliesToType": "all",
        "status": "active",
        "validFrom": "2020-01-01",
        "validTo": "2099-12-31",
    },
    {
        "_id": "d-off",
        "title": "Apagado",
        "discountCode": "OFF20",
        "discountValue": "20%",
        "appliesToType": "all",
        "status": "inactive",
    },
]


@pytest.fixture(autouse=True)
def local_db():
    """Tablas locales limpias en cada prueba"""
    init_local_db()
    yield
    with local_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def session_factory():
    return SessionLocal


@pytest.fixture
def backoffice():
    return FakeBackoffice(products=SAMPLE_PRODUCTS, discounts=SAMPLE_DISCOUNTS)


@pytest.fixture
def cashier_token():
    return create_access_token({"sub": "emp-7", "name": "Ana Cajera", "role": "Cashier"})


@pytest.fixture
def manager_token():
    return create_access_token({"sub": "mgr-1", "name": "Marta Reyes", "role": "Manager"})


@pytest.fixture
def products():
    """Catálogo de ejemplo ya validado, por id"""
    from app.modules.catalog.schemas import Product
    return {raw["_id"]: Product.model_validate(raw) for raw in SAMPLE_PRODUCTS}
