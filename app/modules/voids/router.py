"""
Router de cambios de cantidad y anulaciones

Toda disminución o eliminación de una línea del carrito pasa por aquí:
propuesta -> confirmación -> autorización con motivo y PIN.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from typing import List

from app.dependencies.terminalDependencies import TerminalSessionDep
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.voids.schemas import (
    AdjustRequest, AuthorizeRequest, BulkAuthorizeRequest, BulkBeginRequest, BulkVoidOut,
    ItemKeyIn, PendingChangeOut, ProposeRequest, VoidOutcome
)
from app.modules.voids.service import BulkVoid

router = APIRouter(
    prefix="/terminal/voids",
    tags=["Voids"],
    responses={404: {"description": "Not found"}}
)


def _bulk_out(bulk: BulkVoid) -> BulkVoidOut:
    return BulkVoidOut(
        items=[ItemKeyIn(product_id=key.product_id, size=key.size) for key in bulk.keys],
        total_amount=bulk.total_amount,
        state=bulk.state,
    )


# ===== CAMBIO POR LÍNEA =====

@router.get("/pending", response_model=List[PendingChangeOut])
async def list_pending_changes(
    session: TerminalSessionDep,
    auth_context=Depends(AuthDependencies.get_auth_context)
):
    return [PendingChangeOut.from_pending(p) for p in session.flow.pending_changes]


@router.post("/adjust", response_model=PendingChangeOut)
async def adjust_quantity(
    adjust_data: AdjustRequest,
    session: TerminalSessionDep,
    auth_context=Depends(AuthDependencies.get_auth_context)
):
    """Botones +/-: la propuesta se limita a [1, stock disponible]"""
    session.ensure_idle()
    pending = session.flow.adjust(adjust_data.to_key(), adjust_data.delta)
    return PendingChangeOut.from_pending(pending)


@router.post("/propose", response_model=PendingChangeOut)
async def propose_quantity(
    propose_data: ProposeRequest,
    session: TerminalSessionDep,
    auth_context=Depends(AuthDependencies.get_auth_context)
):
    session.ensure_idle()
    pending = session.flow.propose(propose_data.to_key(), propose_data.quantity)
    return PendingChangeOut.from_pending(pending)


@router.post("/removal", response_model=PendingChangeOut)
async def request_removal(
    item_data: ItemKeyIn,
    session: TerminalSessionDep,
    auth_context=Depends(AuthDependencies.get_auth_context)
):
    """Eliminar la línea completa (requiere autorización)"""
    session.ensure_idle()
    pending = session.flow.request_removal(item_data.to_key())
    return PendingChangeOut.from_pending(pending)


@router.post("/confirm", response_model=PendingChangeOut)
async def confirm_change(
    item_data: ItemKeyIn,
    session: TerminalSessionDep,
    auth_context=Depends(AuthDependencies.get_auth_context)
):
    """
    Confirmar la propuesta

    - Aumento: se aplica directamente (`state=committed`)
    - Disminución: queda esperando autorización (`state=awaiting_auth`)
    """
    session.ensure_idle()
    pending = session.flow.confirm(item_data.to_key())
    return PendingChangeOut.from_pending(pending)


@router.post("/cancel")
async def cancel_change(
    item_data: ItemKeyIn,
    session: TerminalSessionDep,
    auth_context=Depends(AuthDependencies.get_auth_context)
):
    return {"cancelled": session.flow.cancel(item_data.to_key())}


@router.post("/authorize", response_model=VoidOutcome)
async def authorize_change(
    authorize_data: AuthorizeRequest,
    session: TerminalSessionDep,
    auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)
):
    """
    Autorizar la disminución con motivo y PIN de 6 dígitos

    Un PIN rechazado responde 401 con `clear_pin=true`; una falla del servicio
    de verificación responde 401 con `clear_pin=false` para no borrar el PIN.
    """
    session.ensure_idle()
    return await session.flow.authorize(
        authorize_data.to_key(),
        authorize_data.reason,
        authorize_data.pin,
        performer=auth_context.performer,
        notes=authorize_data.notes,
        approver_hint=authorize_data.approver_id
    )


# ===== ANULACIÓN MASIVA =====

@router.post("/bulk", response_model=BulkVoidOut)
async def begin_bulk_void(
    bulk_data: BulkBeginRequest,
    session: TerminalSessionDep,
    auth_context=Depends(AuthDependencies.get_auth_context)
):
    """Seleccionar varias líneas para eliminarlas con una sola autorización"""
    session.ensure_idle()
    bulk = session.flow.begin_bulk([item.to_key() for item in bulk_data.items])
    return _bulk_out(bulk)


@router.post("/bulk/authorize", response_model=VoidOutcome)
async def authorize_bulk_void(
    authorize_data: BulkAuthorizeRequest,
    session: TerminalSessionDep,
    auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)
):
    session.ensure_idle()
    return await session.flow.authorize_bulk(
        authorize_data.reason,
        authorize_data.pin,
        performer=auth_context.performer,
        notes=authorize_data.notes,
        approver_hint=authorize_data.approver_id
    )


@router.delete("/bulk")
async def cancel_bulk_void(
    session: TerminalSessionDep,
    auth_context=Depends(AuthDependencies.get_auth_context)
):
    if not session.flow.cancel_bulk():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No hay una anulación masiva en curso"
        )
    return {"cancelled": True}
