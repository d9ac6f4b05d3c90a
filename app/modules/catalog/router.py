from fastapi import APIRouter, Depends, Query
from typing import List

from app.dependencies.terminalDependencies import TerminalRegistryDep
from app.modules.auth.dependencies import AuthDependencies
from app.modules.catalog.schemas import Product

router = APIRouter(prefix="/terminal/products", tags=["Catalog"])


@router.get("/", response_model=List[Product])
async def list_products(
    registry: TerminalRegistryDep,
    force: bool = Query(False, description="Ignorar la caché"),
    auth_context=Depends(AuthDependencies.get_auth_context)
):
    """Productos del catálogo con tallas normalizadas"""
    return await registry.catalog.list_products(force=force)
