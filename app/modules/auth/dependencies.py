"""
Dependencias de autenticación para FastAPI.

La terminal no guarda usuarios: el token JWT emitido por el back-office
trae la identidad del cajero (sub, name, role), que se registra como
ejecutor en ventas y anulaciones.
"""
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt

from app.modules.auth.schemas import AuthContext
from app.core.config import settings

# Security scheme
security = HTTPBearer()


class AuthDependencies:
    """Dependencias de autenticación reutilizables."""

    @staticmethod
    def get_auth_context(
        request: Request,
        credentials: HTTPAuthorizationCredentials = Depends(security)
    ) -> AuthContext:
        """
        Obtener el contexto del cajero desde el token JWT.
        Si el token está asignado a una terminal, debe coincidir con X-Terminal-Key.
        """
        credentials_exception = HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No se pudieron validar las credenciales",
            headers={"WWW-Authenticate": "Bearer"},
        )

        try:
            payload = jwt.decode(
                credentials.credentials,
                settings.APP_SECRET_STRING,
                algorithms=[settings.ALGORITHM]
            )
            user_id = payload.get("sub")
            if user_id is None:
                raise credentials_exception
        except jwt.PyJWTError:
            raise credentials_exception

        token_terminal = payload.get("terminal_key")
        request_terminal = getattr(request.state, "terminal_key", None)
        if token_terminal and request_terminal and token_terminal != request_terminal:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="El token no corresponde a esta terminal"
            )

        return AuthContext(
            user_id=str(user_id),
            name=payload.get("name") or "",
            user_role=payload.get("role"),
            terminal_key=token_terminal
        )

    @staticmethod
    def require_role(allowed_roles: list[str]):
        """
        Dependencia para requerir roles específicos.
        """
        def role_checker(auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)):
            if auth_context.user_role not in allowed_roles:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Se requiere uno de estos roles: {', '.join(allowed_roles)}"
                )
            return auth_context
        return role_checker


# Instancias de dependencias
get_auth_context = AuthDependencies.get_auth_context
require_role = AuthDependencies.require_role
