"""
Esquemas Pydantic de descuentos

El back-office entrega el valor del descuento ya formateado para mostrar
("15% OFF", "₱50 OFF") junto con el tipo, o el par estructurado
{discountType, discountValue}. Ambas formas se convierten al leer en un
DiscountValue (magnitud + unidad) con una gramática definida:

    [moneda] magnitud [%] [OFF]

moneda: ₱, PHP o $. Un valor que no cumple la gramática queda en None y
no aporta descuento.
"""

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional
from enum import Enum
import re


class DiscountUnit(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class DiscountScope(str, Enum):
    ALL = "all"
    CATEGORY = "category"
    PRODUCTS = "products"


class DiscountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class DiscountValue(BaseModel):
    """Magnitud y unidad de un descuento"""
    magnitude: Decimal = Field(..., ge=0)
    unit: DiscountUnit

    model_config = ConfigDict(frozen=True)

    def amount_for(self, subtotal: Decimal) -> Decimal:
        if self.unit == DiscountUnit.PERCENTAGE:
            return subtotal * self.magnitude / Decimal("100")
        return self.magnitude

    @property
    def display(self) -> str:
        if self.unit == DiscountUnit.PERCENTAGE:
            return f"{self.magnitude.normalize():f}% OFF"
        return f"₱{self.magnitude.normalize():f} OFF"


# "â‚±" es el signo de peso leído con la codificación equivocada
_CURRENCY = r"(?P<currency>₱|â‚±|PHP|\$)"
_MAGNITUDE = r"(?P<magnitude>\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?|\.\d+)"

DISCOUNT_VALUE_PATTERN = re.compile(
    rf"^\s*{_CURRENCY}?\s*{_MAGNITUDE}\s*(?P<percent>%)?\s*(?:OFF)?\s*$",
    re.IGNORECASE
)


def _parse_unit(value: Any) -> Optional[DiscountUnit]:
    if value is None:
        return None
    try:
        return DiscountUnit(str(value).strip().lower())
    except ValueError:
        return None


def parse_discount_value(raw: Any, discount_type: Any = None) -> Optional[DiscountValue]:
    """
    Convierte el valor crudo de un descuento en DiscountValue.

    Args:
        raw: texto ("15% OFF", "₱50 OFF"), número, dict {discountType, discountValue}
             o un DiscountValue ya construido
        discount_type: "percentage" | "fixed"; define la unidad cuando el texto no la trae

    Returns:
        DiscountValue, o None si el valor no se puede interpretar
    """
    if isinstance(raw, DiscountValue):
        return raw

    unit_hint = _parse_unit(discount_type)

    if isinstance(raw, dict):
        return parse_discount_value(
            raw.get("discountValue", raw.get("magnitude")),
            raw.get("discountType", raw.get("unit")) or discount_type
        )

    if isinstance(raw, bool) or raw is None:
        return None

    if isinstance(raw, (int, float, Decimal)):
        magnitude = Decimal(str(raw))
        unit = unit_hint
    elif isinstance(raw, str):
        match = DISCOUNT_VALUE_PATTERN.match(raw)
        if not match:
            return None
        try:
            magnitude = Decimal(match.group("magnitude").replace(",", ""))
        except InvalidOperation:
            return None

        if match.group("percent") and match.group("currency"):
            return None
        if match.group("percent"):
            unit = DiscountUnit.PERCENTAGE
        elif match.group("currency"):
            unit = DiscountUnit.FIXED
        else:
            unit = unit_hint
    else:
        return None

    if unit is None or magnitude < 0:
        return None
    if unit == DiscountUnit.PERCENTAGE and magnitude > 100:
        return None
    return DiscountValue(magnitude=magnitude, unit=unit)


def parse_scope(raw: Any) -> DiscountScope:
    """Acepta el tipo crudo ('all', 'category', 'products') y sus variantes de texto"""
    if isinstance(raw, DiscountScope):
        return raw
    value = str(raw or "").strip().lower()
    if value in ("all", "all products"):
        return DiscountScope.ALL
    if value.startswith("category"):
        return DiscountScope.CATEGORY
    if value in ("products", "specific-products", "specific products", "specific_products"):
        return DiscountScope.PRODUCTS
    raise ValueError(f"Alcance de descuento desconocido: {raw}")


def _parse_date(value: Any) -> Optional[date]:
    if value in (None, "", "Permanent"):
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


class DiscountDefinition(BaseModel):
    """Definición de descuento del catálogo; inmutable para la terminal"""
    id: str = Field(validation_alias=AliasChoices("_id", "id"))
    title: str = Field(..., min_length=1)
    code: Optional[str] = Field(None, validation_alias=AliasChoices("discountCode", "code"))
    discount_value: Optional[DiscountValue] = Field(
        None, validation_alias=AliasChoices("discountValue", "discount_value")
    )
    applies_to: DiscountScope = Field(
        DiscountScope.ALL,
        validation_alias=AliasChoices("appliesToType", "appliesToScope", "appliesTo", "applies_to")
    )
    category: Optional[str] = Field(None)
    product_ids: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("productIds", "product_ids")
    )
    status: DiscountStatus = Field(DiscountStatus.ACTIVE)
    valid_from: Optional[date] = Field(None, validation_alias=AliasChoices("validFrom", "valid_from"))
    valid_to: Optional[date] = Field(None, validation_alias=AliasChoices("validTo", "valid_to"))
    no_expiration: bool = Field(False, validation_alias=AliasChoices("noExpiration", "no_expiration"))
    min_purchase_amount: Decimal = Field(
        Decimal("0"), ge=0, validation_alias=AliasChoices("minPurchaseAmount", "min_purchase_amount")
    )
    max_purchase_amount: Optional[Decimal] = Field(
        None, ge=0, validation_alias=AliasChoices("maxPurchaseAmount", "max_purchase_amount")
    )
    usage_limit: Optional[int] = Field(None, ge=0, validation_alias=AliasChoices("usageLimit", "usage_limit"))
    usage_count: int = Field(0, ge=0, validation_alias=AliasChoices("usageCount", "usage_count"))
    description: str = Field("")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="before")
    @classmethod
    def normalize_wire_format(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)

        discount_type = data.get("discountType") or data.get("discount_type")
        for key in ("discountValue", "discount_value"):
            if key in data:
                data[key] = parse_discount_value(data[key], discount_type)

        if data.get("validFrom") == "Permanent":
            data["noExpiration"] = True

        # Formato de lista: usage = {used, total}
        usage = data.get("usage")
        if isinstance(usage, dict) and "usageLimit" not in data:
            data["usageLimit"] = usage.get("total")
            data["usageCount"] = usage.get("used") or 0
        return data

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v)

    @field_validator("code", mode="before")
    @classmethod
    def clean_code(cls, v):
        cleaned = str(v or "").strip()
        return cleaned.upper() or None

    @field_validator("applies_to", mode="before")
    @classmethod
    def clean_scope(cls, v):
        return parse_scope(v)

    @field_validator("product_ids", mode="before")
    @classmethod
    def coerce_product_ids(cls, v):
        return [str(pid) for pid in (v or [])]

    @field_validator("valid_from", "valid_to", mode="before")
    @classmethod
    def parse_dates(cls, v):
        return _parse_date(v)

    @field_validator("min_purchase_amount", "usage_count", mode="before")
    @classmethod
    def default_zero(cls, v):
        return v if v is not None else 0

    @property
    def is_active(self) -> bool:
        return self.status == DiscountStatus.ACTIVE

    @property
    def display_value(self) -> str:
        return self.discount_value.display if self.discount_value else ""


class ApplicabilityResult(BaseModel):
    """Resultado de la validación de un descuento contra el carrito"""
    valid: bool
    reason: Optional[str] = None


# ===== ROUTER SCHEMAS =====

class ApplyDiscountRequest(BaseModel):
    """Aplicar por id (selector) o por código"""
    discount_id: Optional[str] = Field(None, description="ID del descuento")
    code: Optional[str] = Field(None, description="Código de descuento")

    @model_validator(mode="after")
    def require_one(self):
        if not self.discount_id and not self.code:
            raise ValueError("Debe indicar discount_id o code")
        return self


class DiscountOut(BaseModel):
    id: str
    title: str
    code: Optional[str] = None
    display_value: str
    applies_to: DiscountScope
    category: Optional[str] = None

    @classmethod
    def from_definition(cls, discount: DiscountDefinition) -> "DiscountOut":
        return cls(
            id=discount.id,
            title=discount.title,
            code=discount.code,
            display_value=discount.display_value,
            applies_to=discount.applies_to,
            category=discount.category,
        )


class AppliedDiscountsOut(BaseModel):
    applied: List[DiscountOut]
    discount_amount: Decimal
    evicted: List[str] = []
