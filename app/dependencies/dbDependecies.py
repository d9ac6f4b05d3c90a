from fastapi import Depends
from sqlalchemy.orm import Session
from typing import Annotated
from app.database.database import get_db

# Base local de la terminal (espejo del carrito, outbox, conciliación)
db_dependency = Annotated[Session, Depends(get_db)]
