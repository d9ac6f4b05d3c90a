"""
Router del carrito de la terminal

- GET  /terminal/cart              estado del carrito con totales
- POST /terminal/cart/items        agregar producto (devuelve DUPLICATE si ya existe)
- POST /terminal/cart/items/merge  merge confirmado por el cajero

Las disminuciones y eliminaciones pasan por /terminal/voids (requieren PIN).
"""

from fastapi import APIRouter, Depends, status

from app.dependencies.terminalDependencies import TerminalSessionDep
from app.modules.auth.dependencies import AuthDependencies
from app.modules.cart.schemas import AddItemRequest, AddItemResult, CartOut, MergeItemRequest

router = APIRouter(
    prefix="/terminal/cart",
    tags=["Cart"],
    responses={404: {"description": "Not found"}}
)


@router.get("/", response_model=CartOut)
async def get_cart(
    session: TerminalSessionDep,
    auth_context=Depends(AuthDependencies.get_auth_context)
):
    """Carrito compartido de la terminal (X-Terminal-Key)"""
    return session.to_out()


@router.post("/items", response_model=AddItemResult, status_code=status.HTTP_200_OK)
async def add_item(
    item_data: AddItemRequest,
    session: TerminalSessionDep,
    auth_context=Depends(AuthDependencies.get_auth_context)
):
    """
    Agregar un producto al carrito

    - **product_id**: ID del producto del catálogo
    - **size**: talla, obligatoria si el producto maneja tallas
    - **quantity**: cantidad (limitada por el stock de la talla)

    Si ya existe la misma línea retorna `status=duplicate` sin sumar.
    """
    return await session.add_product(item_data.product_id, item_data.quantity, item_data.size)


@router.post("/items/merge", response_model=AddItemResult)
async def merge_item(
    merge_data: MergeItemRequest,
    session: TerminalSessionDep,
    auth_context=Depends(AuthDependencies.get_auth_context)
):
    """Sumar unidades a una línea existente tras confirmar el duplicado"""
    return session.merge_product(merge_data.product_id, merge_data.quantity, merge_data.size)
