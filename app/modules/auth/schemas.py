from pydantic import BaseModel, Field
from typing import Optional


class Performer(BaseModel):
    """Empleado que ejecuta la acción en la terminal (cajero)"""
    id: str = ""
    name: str = ""
    role: str = ""


class AuthContext(BaseModel):
    """Contexto de autenticación extraído del token JWT"""
    user_id: str
    name: str = ""
    user_role: Optional[str] = None
    terminal_key: Optional[str] = Field(None, description="Terminal a la que está asignado el token")

    @property
    def performer(self) -> Performer:
        return Performer(id=self.user_id, name=self.name, role=self.user_role or "")
