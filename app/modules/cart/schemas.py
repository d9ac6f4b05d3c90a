"""
Esquemas Pydantic del carrito de la terminal

Define:
- LineItem: una línea producto + talla + cantidad, con los datos del catálogo
  copiados al momento de agregarla (precio, stock por talla, categoría)
- ItemKey: identidad de una línea (product_id, talla)
- Entradas/salidas del router del carrito

Los nombres de campo en el almacén remoto siguen el formato del back-office
(productId, itemName, itemPrice, selectedSize...).
"""

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_serializer, field_validator
from decimal import Decimal
from typing import Any, Dict, List, NamedTuple, Optional
from enum import Enum

from app.common.validators import normalize_size
from app.modules.catalog.schemas import Product, SizeStock, normalize_sizes


class ItemKey(NamedTuple):
    """Identidad de una línea: a lo sumo una por (producto, talla)"""
    product_id: str
    size: Optional[str] = None

    @classmethod
    def of(cls, product_id: str, size: Optional[str] = None) -> "ItemKey":
        return cls(str(product_id), normalize_size(size))


class LineItem(BaseModel):
    """Línea del carrito"""
    product_id: str = Field(
        validation_alias=AliasChoices("productId", "_id", "product_id"),
        serialization_alias="productId"
    )
    selected_size: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("selectedSize", "selected_size"),
        serialization_alias="selectedSize"
    )
    quantity: int = Field(default=1, ge=1)
    unit_price: Decimal = Field(
        default=Decimal("0"), ge=0,
        validation_alias=AliasChoices("itemPrice", "unit_price"),
        serialization_alias="itemPrice"
    )
    name: str = Field(
        default="",
        validation_alias=AliasChoices("itemName", "name"),
        serialization_alias="itemName"
    )
    sku: str = Field(default="")
    image: str = Field(
        default="",
        validation_alias=AliasChoices("itemImage", "image"),
        serialization_alias="itemImage"
    )
    category: Optional[str] = Field(None)
    sizes: Dict[str, SizeStock] = Field(default_factory=dict)
    stock: int = Field(
        default=0,
        validation_alias=AliasChoices("currentStock", "stock"),
        serialization_alias="currentStock"
    )

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("product_id", mode="before")
    @classmethod
    def coerce_product_id(cls, v):
        return str(v)

    @field_validator("selected_size", mode="before")
    @classmethod
    def clean_size(cls, v):
        return normalize_size(v)

    @field_validator("sizes", mode="before")
    @classmethod
    def parse_sizes(cls, v):
        return normalize_sizes(v)

    @field_serializer("unit_price", when_used="json")
    def serialize_price(self, value: Decimal) -> float:
        return float(value)

    @property
    def key(self) -> ItemKey:
        return ItemKey(self.product_id, self.selected_size)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def available_stock(self) -> int:
        """Stock de la talla elegida, o del producto si no maneja tallas"""
        if self.sizes and self.selected_size in self.sizes:
            return self.sizes[self.selected_size].quantity
        return self.stock

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_product(cls, product: Product, quantity: int, size: Optional[str] = None) -> "LineItem":
        """Copia los datos del catálogo al momento de agregar"""
        size = product.resolve_size(size)
        return cls(
            product_id=product.id,
            selected_size=size,
            quantity=quantity,
            unit_price=product.price_for(size),
            name=product.name,
            sku=product.sku,
            image=product.image,
            category=product.category,
            sizes=dict(product.sizes),
            stock=product.current_stock,
        )


class AddItemStatus(str, Enum):
    ADDED = "added"
    DUPLICATE = "duplicate"
    MERGED = "merged"


class AddItemResult(BaseModel):
    """Resultado de agregar: DUPLICATE obliga a confirmar el merge explícitamente"""
    status: AddItemStatus
    item: LineItem
    existing_quantity: int = Field(default=0, description="Cantidad que ya estaba en el carrito")
    requested_quantity: int = Field(default=0, description="Cantidad solicitada")


# ===== ROUTER SCHEMAS =====

class AddItemRequest(BaseModel):
    """Esquema para agregar un producto al carrito"""
    product_id: str = Field(..., min_length=1, description="ID del producto")
    size: Optional[str] = Field(None, description="Talla seleccionada")
    quantity: int = Field(default=1, ge=1, description="Cantidad a agregar")


class MergeItemRequest(BaseModel):
    """Esquema para confirmar que se suma la cantidad a una línea existente"""
    product_id: str = Field(..., min_length=1)
    size: Optional[str] = Field(None)
    quantity: int = Field(..., ge=1, description="Cantidad adicional")


class PersistenceStatus(BaseModel):
    remote_failures: int = 0
    remote_dirty: bool = False
    degraded: bool = Field(default=False, description="Se muestra al cajero solo si persiste")


class CartTotals(BaseModel):
    subtotal: Decimal = Decimal("0.00")
    discount: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")


class CartOut(BaseModel):
    """Estado del carrito de la terminal"""
    terminal_key: str
    items: List[LineItem]
    totals: CartTotals
    applied_discount_ids: List[str] = []
    persistence: PersistenceStatus
    warnings: List[str] = []
