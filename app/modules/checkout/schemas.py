"""
Esquemas Pydantic del cobro

- PaymentMeta: método de pago y sus datos (efectivo: monto recibido; QR: referencia)
- TransactionDraft: venta armada en la terminal, lista para POST /transactions
- TransactionRecord: venta registrada devuelta por el back-office
- CheckoutResult: resultado del cobro con advertencias no bloqueantes
"""

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from enum import Enum
import logging
import secrets
import string

from app.modules.auth.schemas import Performer
from app.modules.cart.schemas import LineItem

logger = logging.getLogger(__name__)


RECEIPT_ALPHABET = string.ascii_uppercase + string.digits


def generate_receipt_number(now: Optional[datetime] = None) -> str:
    """Número de recibo con formato RCP-YYYYMMDD-XXXXXX"""
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(RECEIPT_ALPHABET) for _ in range(6))
    return f"RCP-{now.strftime('%Y%m%d')}-{suffix}"


class PaymentMethod(str, Enum):
    CASH = "cash"
    QR = "qr"
    VOID = "void"


class TransactionStatus(str, Enum):
    COMPLETED = "Completed"
    VOIDED = "Voided"


class PaymentMeta(BaseModel):
    """Datos de pago capturados por el cajero"""
    method: PaymentMethod
    amount_received: Optional[Decimal] = Field(None, ge=0, description="Monto recibido en efectivo")
    reference_no: Optional[str] = Field(None, description="Referencia del pago QR")

    @field_validator("reference_no", mode="before")
    @classmethod
    def clean_reference(cls, v):
        if v is None:
            return None
        return str(v).strip() or None

    @model_validator(mode="after")
    def check_method_fields(self):
        if self.method == PaymentMethod.VOID:
            raise ValueError("El método 'void' solo se usa para anulaciones")
        if self.method == PaymentMethod.CASH and self.amount_received is None:
            raise ValueError("El pago en efectivo requiere el monto recibido")
        if self.method == PaymentMethod.QR and not self.reference_no:
            raise ValueError("El pago QR requiere número de referencia")
        return self


class TransactionLine(BaseModel):
    product_id: str
    name: str = ""
    sku: str = ""
    selected_size: Optional[str] = None
    quantity: int = Field(..., ge=1)
    unit_price: Decimal

    @classmethod
    def from_line(cls, item: LineItem, quantity: Optional[int] = None) -> "TransactionLine":
        return cls(
            product_id=item.product_id,
            name=item.name,
            sku=item.sku,
            selected_size=item.selected_size,
            quantity=quantity if quantity is not None else item.quantity,
            unit_price=item.unit_price,
        )

    def to_wire(self) -> Dict[str, Any]:
        return {
            "productId": self.product_id,
            "itemName": self.name,
            "sku": self.sku,
            "selectedSize": self.selected_size,
            "quantity": self.quantity,
            "price": float(self.unit_price),
        }


class TransactionDraft(BaseModel):
    """Venta o anulación armada en la terminal"""
    items: List[TransactionLine]
    payment_method: PaymentMethod
    status: TransactionStatus = TransactionStatus.COMPLETED
    subtotal: Decimal
    discount_amount: Decimal = Decimal("0.00")
    total: Decimal
    performer: Performer = Field(default_factory=Performer)
    terminal_key: str = ""
    receipt_number: str = Field(default_factory=generate_receipt_number)
    reference_no: Optional[str] = None
    amount_received: Optional[Decimal] = None
    change_given: Optional[Decimal] = None
    discount_ids: List[str] = []
    checked_out_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_wire(self) -> Dict[str, Any]:
        """Cuerpo para POST /transactions"""
        return {
            "items": [line.to_wire() for line in self.items],
            "paymentMethod": self.payment_method.value,
            "status": self.status.value,
            "subtotal": float(self.subtotal),
            "discountAmount": float(self.discount_amount),
            "totalAmount": float(self.total),
            "amountReceived": float(self.amount_received) if self.amount_received is not None else None,
            "changeGiven": float(self.change_given) if self.change_given is not None else None,
            "referenceNo": self.reference_no,
            "receiptNo": self.receipt_number,
            "discountIds": self.discount_ids,
            "performedById": self.performer.id,
            "performedByName": self.performer.name,
            "terminalKey": self.terminal_key,
            "checkedOutAt": self.checked_out_at.isoformat(),
        }


class TransactionRecord(BaseModel):
    """Venta registrada por el back-office"""
    id: str = Field("", validation_alias=AliasChoices("_id", "id", "transactionId"))
    receipt_number: str = Field("", validation_alias=AliasChoices("receiptNo", "receipt_number"))
    reference_no: Optional[str] = Field(None, validation_alias=AliasChoices("referenceNo", "reference_no"))
    status: TransactionStatus = TransactionStatus.COMPLETED
    payment_method: PaymentMethod = Field(
        PaymentMethod.CASH, validation_alias=AliasChoices("paymentMethod", "payment_method")
    )
    total: Decimal = Field(Decimal("0"), validation_alias=AliasChoices("totalAmount", "total"))
    amount_received: Optional[Decimal] = Field(
        None, validation_alias=AliasChoices("amountReceived", "amount_received")
    )
    change_given: Optional[Decimal] = Field(None, validation_alias=AliasChoices("changeGiven", "change_given"))
    performed_by_id: str = Field("", validation_alias=AliasChoices("performedById", "performed_by_id"))
    performed_by_name: str = Field("", validation_alias=AliasChoices("performedByName", "performed_by_name"))
    checked_out_at: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("checkedOutAt", "checked_out_at")
    )

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v) if v is not None else ""

    @classmethod
    def from_response(cls, data: Dict[str, Any], draft: TransactionDraft) -> "TransactionRecord":
        """
        Arma el registro desde el borrador enviado; del back-office solo se
        toman los identificadores que genera (id, recibo, referencia, fecha).

        La venta ya está registrada cuando esto corre: si algún campo de la
        respuesta no se puede interpretar, se usa el valor del borrador.
        """
        base = {
            "receiptNo": draft.receipt_number,
            "referenceNo": draft.reference_no,
            "status": draft.status.value,
            "paymentMethod": draft.payment_method.value,
            "totalAmount": draft.total,
            "amountReceived": draft.amount_received,
            "changeGiven": draft.change_given,
            "performedById": draft.performer.id,
            "performedByName": draft.performer.name,
            "checkedOutAt": draft.checked_out_at,
        }
        data = data if isinstance(data, dict) else {}
        merged = dict(base)
        for key in ("_id", "id", "transactionId", "receiptNo", "referenceNo", "checkedOutAt"):
            if data.get(key) is not None:
                merged[key] = data[key]

        try:
            return cls.model_validate(merged)
        except PydanticValidationError as e:
            logger.warning(f"Respuesta de transacción ilegible, se usa el borrador {draft.receipt_number}: {e}")

        for key in ("_id", "id", "transactionId"):
            if data.get(key) is not None:
                base[key] = data[key]
                break
        return cls.model_validate(base)


class CheckoutResult(BaseModel):
    """Resultado de un cobro exitoso"""
    transaction: TransactionRecord
    change_given: Optional[Decimal] = None
    warnings: List[str] = []
    reconciliation_issue_id: Optional[int] = None


# ===== ROUTER SCHEMAS =====

class CheckoutRequest(BaseModel):
    payment: PaymentMeta


class ReconciliationIssueOut(BaseModel):
    id: int
    terminal_key: str
    transaction_id: str
    receipt_number: str
    error: str
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
