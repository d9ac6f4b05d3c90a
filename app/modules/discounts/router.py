"""
Router de descuentos de la terminal

- GET    /terminal/discounts/available       selector: aplicables y no adjuntos
- GET    /terminal/discounts/applied         descuentos adjuntos y monto
- POST   /terminal/discounts/applied         aplicar por id o por código
- DELETE /terminal/discounts/applied/{id}    quitar
"""

from fastapi import APIRouter, Depends, HTTPException, Path, status
from typing import List

from app.dependencies.terminalDependencies import TerminalSessionDep
from app.modules.auth.dependencies import AuthDependencies
from app.modules.discounts.schemas import (
    AppliedDiscountsOut, ApplyDiscountRequest, DiscountOut
)
from app.modules.terminal.service import TerminalSession

router = APIRouter(
    prefix="/terminal/discounts",
    tags=["Discounts"],
    responses={404: {"description": "Not found"}}
)


def _applied_out(session: TerminalSession) -> AppliedDiscountsOut:
    return AppliedDiscountsOut(
        applied=[DiscountOut.from_definition(d) for d in session.discounts.discounts],
        discount_amount=session.totals().discount,
        evicted=[d.id for d in session.last_evicted],
    )


@router.get("/available", response_model=List[DiscountOut])
async def list_available_discounts(
    session: TerminalSessionDep,
    auth_context=Depends(AuthDependencies.get_auth_context)
):
    """Descuentos activos que aplican al carrito actual y aún no están adjuntos"""
    discounts = await session.discount_catalog.available_for(session.cart.items, session.discounts.ids)
    return [DiscountOut.from_definition(d) for d in discounts]


@router.get("/applied", response_model=AppliedDiscountsOut)
async def get_applied_discounts(
    session: TerminalSessionDep,
    auth_context=Depends(AuthDependencies.get_auth_context)
):
    return _applied_out(session)


@router.post("/applied", response_model=AppliedDiscountsOut)
async def apply_discount(
    discount_data: ApplyDiscountRequest,
    session: TerminalSessionDep,
    auth_context=Depends(AuthDependencies.get_auth_context)
):
    """
    Aplicar un descuento

    - **discount_id**: desde el selector
    - **code**: código ingresado por el cajero (sin distinguir mayúsculas)
    """
    session.ensure_idle()
    items = session.cart.items
    if discount_data.discount_id:
        await session.discounts.apply_by_id(discount_data.discount_id, items)
    else:
        await session.discounts.apply_code(discount_data.code, items)
    session.last_evicted = []
    return _applied_out(session)


@router.delete("/applied/{discount_id}", response_model=AppliedDiscountsOut)
async def remove_discount(
    session: TerminalSessionDep,
    discount_id: str = Path(..., description="ID del descuento"),
    auth_context=Depends(AuthDependencies.get_auth_context)
):
    session.ensure_idle()
    if not session.discounts.remove(discount_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="El descuento no está aplicado"
        )
    return _applied_out(session)
