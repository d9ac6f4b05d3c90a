"""
CRUD operations for the local cart mirror
"""
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
import json

from app.modules.cart.models import LocalCart


class LocalCartCRUD:
    """CRUD operations for local cart mirror"""

    def get(self, db: Session, terminal_key: str) -> Optional[LocalCart]:
        return db.get(LocalCart, terminal_key)

    def read_items(self, db: Session, terminal_key: str) -> List[Dict[str, Any]]:
        """Items stored for the terminal, [] if never saved"""
        local_cart = self.get(db, terminal_key)
        if not local_cart or not local_cart.items:
            return []
        return json.loads(local_cart.items)

    def save_items(self, db: Session, terminal_key: str, items: List[Dict[str, Any]],
                   remote_dirty: Optional[bool] = None) -> LocalCart:
        """Full replace of the stored item list"""
        local_cart = self.get(db, terminal_key)
        if local_cart is None:
            local_cart = LocalCart(terminal_key=terminal_key, remote_dirty=bool(remote_dirty))
            db.add(local_cart)

        local_cart.items = json.dumps(items)
        if remote_dirty is not None:
            local_cart.remote_dirty = remote_dirty

        db.commit()
        db.refresh(local_cart)
        return local_cart

    def mark_remote_dirty(self, db: Session, terminal_key: str, dirty: bool) -> None:
        local_cart = self.get(db, terminal_key)
        if local_cart is None:
            return
        local_cart.remote_dirty = dirty
        db.commit()

    def list_dirty(self, db: Session) -> List[LocalCart]:
        return db.query(LocalCart).filter(LocalCart.remote_dirty == True).all()


local_cart_crud = LocalCartCRUD()
