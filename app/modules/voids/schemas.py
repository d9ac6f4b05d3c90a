"""
Esquemas Pydantic de anulaciones (voids)

- QuantityChangeState: estados del flujo de cambio de cantidad
- PendingQuantityChange: cambio propuesto, efímero, uno por línea
- VoidRecord: registro de auditoría inmutable enviado a la bitácora de anulaciones
"""

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from enum import Enum
import secrets
import string

from app.modules.auth.schemas import Performer
from app.modules.cart.schemas import ItemKey, LineItem


VOID_ID_ALPHABET = string.ascii_uppercase + string.digits


def generate_void_id() -> str:
    """Identificador de anulación con formato VOID-XXXXXX"""
    return "VOID-" + "".join(secrets.choice(VOID_ID_ALPHABET) for _ in range(6))


class VoidReason(str, Enum):
    CUSTOMER_CANCELLATION = "Customer cancellation"
    WRONG_TRANSACTION = "Wrong transaction"
    SYSTEM_ERROR = "System error"
    PAYMENT_ISSUE = "Payment issue"
    OTHER = "Other"


class QuantityChangeState(str, Enum):
    COMMITTED = "committed"
    PENDING = "pending"
    AWAITING_AUTH = "awaiting_auth"
    VOIDED = "voided"


class VoidSource(str, Enum):
    CART = "cart"
    BULK = "bulk"


class PendingQuantityChange(BaseModel):
    """Cambio de cantidad propuesto; no toca el carrito comprometido"""
    key: ItemKey
    committed_quantity: int = Field(..., ge=0)
    proposed_quantity: int = Field(..., ge=0)
    unit_price: Decimal
    state: QuantityChangeState = QuantityChangeState.PENDING

    @property
    def void_quantity(self) -> int:
        return max(self.committed_quantity - self.proposed_quantity, 0)

    @property
    def void_amount(self) -> Decimal:
        return self.unit_price * self.void_quantity

    @property
    def is_removal(self) -> bool:
        return self.proposed_quantity == 0


class Approver(BaseModel):
    """Empleado que autorizó la anulación con su PIN"""
    id: str = Field("", validation_alias=AliasChoices("_id", "id", "employeeId"))
    name: str = Field("", validation_alias=AliasChoices("name", "fullName", "employeeName"))
    role: str = Field("", validation_alias=AliasChoices("role", "userRole"))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="before")
    @classmethod
    def join_names(cls, data):
        if isinstance(data, dict) and not data.get("name") and (data.get("firstName") or data.get("lastName")):
            data = dict(data)
            data["name"] = " ".join(filter(None, [data.get("firstName"), data.get("lastName")]))
        return data

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v) if v is not None else ""


class VoidedItem(BaseModel):
    product_id: str
    name: str = ""
    sku: str = ""
    selected_size: Optional[str] = None
    quantity: int = Field(..., ge=1, description="Unidades anuladas")
    unit_price: Decimal
    image: str = ""

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_line(cls, item: LineItem, quantity: int) -> "VoidedItem":
        return cls(
            product_id=item.product_id,
            name=item.name,
            sku=item.sku,
            selected_size=item.selected_size,
            quantity=quantity,
            unit_price=item.unit_price,
            image=item.image,
        )

    @property
    def amount(self) -> Decimal:
        return self.unit_price * self.quantity


class VoidRecord(BaseModel):
    """Registro de auditoría de una anulación; se crea solo tras verificar la mutación"""
    void_id: str = Field(default_factory=generate_void_id)
    items: List[VoidedItem]
    total_amount: Decimal
    reason: VoidReason
    approver: Approver
    performer: Performer = Field(default_factory=Performer)
    source: VoidSource = VoidSource.CART
    terminal_key: str = ""
    transaction_id: Optional[str] = None
    notes: str = ""
    voided_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @field_serializer("total_amount", when_used="json")
    def serialize_total(self, value: Decimal) -> float:
        return float(value)

    def to_wire(self) -> Dict[str, Any]:
        """Cuerpo para POST /void-logs"""
        return {
            "voidId": self.void_id,
            "items": [
                {
                    "productId": item.product_id,
                    "itemName": item.name,
                    "sku": item.sku,
                    "selectedSize": item.selected_size,
                    "quantity": item.quantity,
                    "price": float(item.unit_price),
                    "itemImage": item.image,
                    "voidReason": self.reason.value,
                }
                for item in self.items
            ],
            "totalAmount": float(self.total_amount),
            "voidReason": self.reason.value,
            "voidedBy": self.performer.name or self.approver.name,
            "voidedById": self.performer.id,
            "voidedByName": self.performer.name or self.approver.name,
            "approvedBy": self.approver.name,
            "approvedById": self.approver.id,
            "approvedByRole": self.approver.role,
            "voidedAt": self.voided_at.isoformat(),
            "originalTransactionId": self.transaction_id,
            "source": "cart",
            "bulk": self.source == VoidSource.BULK,
            "terminalKey": self.terminal_key,
            "notes": self.notes,
        }


class VoidOutcome(BaseModel):
    """Resultado de una autorización exitosa"""
    record: VoidRecord
    logged: bool = Field(..., description="False si la bitácora quedó en la cola local")
    remaining_quantity: int = Field(0, description="Cantidad que queda en el carrito (0 = eliminado)")


# ===== ROUTER SCHEMAS =====

class ItemKeyIn(BaseModel):
    product_id: str = Field(..., min_length=1)
    size: Optional[str] = None

    def to_key(self) -> ItemKey:
        return ItemKey.of(self.product_id, self.size)


class AdjustRequest(ItemKeyIn):
    delta: int = Field(..., description="Unidades a sumar o restar a la propuesta")


class ProposeRequest(ItemKeyIn):
    quantity: int = Field(..., ge=1)


class AuthorizeRequest(ItemKeyIn):
    reason: VoidReason
    pin: str = Field(..., description="PIN de 6 dígitos del autorizador")
    approver_id: Optional[str] = Field(None, description="Empleado que autoriza, si se conoce")
    notes: str = ""


class BulkBeginRequest(BaseModel):
    items: List[ItemKeyIn] = Field(..., min_length=1)


class BulkAuthorizeRequest(BaseModel):
    reason: VoidReason
    pin: str
    approver_id: Optional[str] = None
    notes: str = ""


class BulkVoidOut(BaseModel):
    items: List[ItemKeyIn]
    total_amount: Decimal
    state: QuantityChangeState


class PendingChangeOut(BaseModel):
    product_id: str
    size: Optional[str]
    state: QuantityChangeState
    committed_quantity: int
    proposed_quantity: int
    void_quantity: int
    void_amount: Decimal

    @classmethod
    def from_pending(cls, pending: PendingQuantityChange) -> "PendingChangeOut":
        return cls(
            product_id=pending.key.product_id,
            size=pending.key.size,
            state=pending.state,
            committed_quantity=pending.committed_quantity,
            proposed_quantity=pending.proposed_quantity,
            void_quantity=pending.void_quantity,
            void_amount=pending.void_amount,
        )
