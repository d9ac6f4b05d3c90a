from typing import Annotated
from fastapi import Depends, Request, HTTPException, status
from app.modules.terminal.service import TerminalRegistry, TerminalSession


def get_terminal_key(request: Request) -> str:
    """Extract terminal_key from request state set by TerminalMiddleware"""
    if not hasattr(request.state, 'terminal_key'):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Terminal context not found. Ensure X-Terminal-Key header is provided."
        )
    return request.state.terminal_key


def get_terminal_registry(request: Request) -> TerminalRegistry:
    """Registry created on application startup"""
    registry = getattr(request.app.state, 'terminal_registry', None)
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="La terminal aún no está inicializada"
        )
    return registry


async def get_terminal_session(
    terminal_key: Annotated[str, Depends(get_terminal_key)],
    registry: Annotated[TerminalRegistry, Depends(get_terminal_registry)]
) -> TerminalSession:
    return await registry.get(terminal_key)


TerminalKey = Annotated[str, Depends(get_terminal_key)]
TerminalRegistryDep = Annotated[TerminalRegistry, Depends(get_terminal_registry)]
TerminalSessionDep = Annotated[TerminalSession, Depends(get_terminal_session)]
