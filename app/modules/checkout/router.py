"""
Router de cobro e incidencias de conciliación
"""

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from typing import List

from app.dependencies.dbDependecies import db_dependency
from app.dependencies.terminalDependencies import TerminalKey, TerminalSessionDep
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.checkout.crud import reconciliation_issue_crud
from app.modules.checkout.schemas import CheckoutRequest, CheckoutResult, ReconciliationIssueOut

router = APIRouter(
    prefix="/terminal/checkout",
    tags=["Checkout"],
    responses={404: {"description": "Not found"}}
)

MANAGER_ROLES = ["Owner", "Manager", "owner", "manager", "admin"]


@router.post("/", response_model=CheckoutResult)
async def checkout(
    checkout_data: CheckoutRequest,
    session: TerminalSessionDep,
    auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)
):
    """
    Cobrar la venta en curso

    - **payment.method**: `cash` o `qr`
    - **payment.amount_received**: obligatorio en efectivo (>= total)
    - **payment.reference_no**: obligatorio en QR

    Si la venta no se registra responde 502 y el carrito queda intacto.
    Si la venta se registra pero el stock falla, responde 200 con `warnings`.
    """
    return await session.finalizer.finalize(checkout_data.payment, performer=auth_context.performer)


@router.get("/reconciliation-issues", response_model=List[ReconciliationIssueOut])
async def list_reconciliation_issues(
    db: db_dependency,
    terminal_key: TerminalKey,
    include_resolved: bool = Query(False),
    auth_context=Depends(AuthDependencies.require_role(MANAGER_ROLES))
):
    """Ventas registradas cuyo descuento de stock falló"""
    return reconciliation_issue_crud.list_issues(db, terminal_key, include_resolved=include_resolved)


@router.post("/reconciliation-issues/{issue_id}/resolve", response_model=ReconciliationIssueOut)
async def resolve_reconciliation_issue(
    db: db_dependency,
    issue_id: int = Path(..., ge=1),
    auth_context=Depends(AuthDependencies.require_role(MANAGER_ROLES))
):
    """Marcar una incidencia como corregida manualmente"""
    issue = reconciliation_issue_crud.get(db, issue_id)
    if issue is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Incidencia no encontrada"
        )
    return reconciliation_issue_crud.resolve(db, issue)
