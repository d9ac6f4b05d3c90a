"""
Tareas Celery del carrito: reintento en segundo plano de la sincronización remota
"""
import logging

import httpx

from app.core.celery import celery_app
from app.core.config import settings
from app.database.database import SessionLocal
from app.common.exceptions import BackofficeError
from app.modules.backoffice.client import unwrap_envelope
from app.modules.cart.crud import local_cart_crud

logger = logging.getLogger(__name__)


def get_http_client() -> httpx.Client:
    return httpx.Client(
        base_url=settings.BACKOFFICE_API_URL.rstrip("/"),
        timeout=settings.BACKOFFICE_TIMEOUT_SECONDS
    )


@celery_app.task(bind=True, max_retries=3)
def sync_cart_to_remote(self, terminal_key: str):
    """
    Sube el espejo local del carrito al almacén remoto.
    Reintenta con backoff exponencial mientras el back-office no responda.
    """
    db = SessionLocal()
    try:
        local_cart = local_cart_crud.get(db, terminal_key)
        if local_cart is None or not local_cart.remote_dirty:
            logger.info(f"Carrito {terminal_key} ya sincronizado")
            return {"status": "skipped", "terminal_key": terminal_key}

        items = local_cart_crud.read_items(db, terminal_key)
        with get_http_client() as client:
            response = client.put(f"/carts/{terminal_key}", json={"items": items})
            unwrap_envelope(response, f"/carts/{terminal_key}")

        local_cart_crud.mark_remote_dirty(db, terminal_key, False)
        logger.info(f"Carrito {terminal_key} sincronizado en segundo plano ({len(items)} ítems)")
        return {"status": "success", "terminal_key": terminal_key, "items": len(items)}

    except (httpx.HTTPError, BackofficeError) as exc:
        logger.error(f"Cart sync failed for {terminal_key}: {str(exc)}")

        # Backoff exponencial: 30s, 60s, 120s
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=30 * (2 ** self.request.retries))

        return {"status": "failed", "error": str(exc), "terminal_key": terminal_key}
    finally:
        db.close()
