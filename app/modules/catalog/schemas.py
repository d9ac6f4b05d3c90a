"""
Esquemas Pydantic del catálogo de productos

El back-office entrega el mapa de tallas en dos formas:
- Registro moderno: {"M": {"quantity": 5, "price": 350}}
- Registro heredado: {"M": 5} (solo cantidad)

Ambas se normalizan a SizeStock al leer; el resto del código nunca
pregunta por la forma original.
"""

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from decimal import Decimal
from typing import Optional, Dict, Any

from app.common.exceptions import ValidationError, errmsg
from app.common.validators import normalize_size


class SizeStock(BaseModel):
    """Stock y precio de una talla"""
    quantity: int = Field(default=0, ge=0, description="Unidades disponibles")
    price: Optional[Decimal] = Field(None, ge=0, description="Precio específico de la talla")

    model_config = ConfigDict(frozen=True)


def normalize_sizes(raw: Any) -> Dict[str, SizeStock]:
    """Convierte el mapa de tallas crudo en {talla: SizeStock}."""
    if not raw or not isinstance(raw, dict):
        return {}

    sizes: Dict[str, SizeStock] = {}
    for size, value in raw.items():
        if isinstance(value, SizeStock):
            sizes[size] = value
        elif isinstance(value, dict):
            sizes[size] = SizeStock(
                quantity=max(int(value.get("quantity") or 0), 0),
                price=value.get("price")
            )
        elif isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
            sizes[size] = SizeStock(quantity=max(int(value), 0))
    return sizes


class Product(BaseModel):
    """Producto del catálogo tal como lo ve la terminal"""
    id: str = Field(validation_alias=AliasChoices("_id", "id", "productId"), description="ID del producto")
    name: str = Field(default="", validation_alias="itemName")
    sku: str = Field(default="")
    category: Optional[str] = Field(None)
    item_price: Decimal = Field(default=Decimal("0"), ge=0, validation_alias="itemPrice")
    current_stock: int = Field(default=0, validation_alias="currentStock")
    image: str = Field(default="", validation_alias="itemImage")
    sizes: Dict[str, SizeStock] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v)

    @field_validator("sizes", mode="before")
    @classmethod
    def parse_sizes(cls, v):
        return normalize_sizes(v)

    @field_validator("current_stock", mode="before")
    @classmethod
    def parse_stock(cls, v):
        return max(int(v or 0), 0)

    @property
    def has_sizes(self) -> bool:
        return bool(self.sizes)

    def resolve_size(self, size: Optional[str]) -> Optional[str]:
        """Valida la talla elegida contra el mapa del producto."""
        size = normalize_size(size)
        if not self.has_sizes:
            return None
        if size is None:
            raise ValidationError(errmsg.SIZE_REQUIRED)
        if size not in self.sizes:
            raise ValidationError(f"{errmsg.INVALID_SIZE}: {size}")
        return size

    def stock_for(self, size: Optional[str]) -> int:
        size = self.resolve_size(size)
        if size is None:
            return self.current_stock
        return self.sizes[size].quantity

    def price_for(self, size: Optional[str]) -> Decimal:
        size = self.resolve_size(size)
        if size is not None and self.sizes[size].price is not None:
            return self.sizes[size].price
        return self.item_price
