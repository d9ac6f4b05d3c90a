"""
Tareas Celery de anulaciones: reenvío de la cola local de bitácoras
"""
import json
import logging

import httpx

from app.core.celery import celery_app
from app.core.config import settings
from app.database.database import SessionLocal
from app.common.exceptions import BackofficeError
from app.modules.backoffice.client import unwrap_envelope
from app.modules.voids.crud import pending_void_log_crud

logger = logging.getLogger(__name__)


def get_http_client() -> httpx.Client:
    return httpx.Client(
        base_url=settings.BACKOFFICE_API_URL.rstrip("/"),
        timeout=settings.BACKOFFICE_TIMEOUT_SECONDS
    )


@celery_app.task
def submit_pending_void_logs(limit: int = 50):
    """
    Periodic task to resend void logs whose submission failed after the cart mutation
    """
    db = SessionLocal()
    sent = 0
    failed = 0
    try:
        entries = pending_void_log_crud.list_unsent(db, limit=limit)
        if not entries:
            return {"status": "completed", "sent": 0, "failed": 0}

        logger.info(f"Reenviando {len(entries)} bitácoras de anulación pendientes")
        with get_http_client() as client:
            for entry in entries:
                try:
                    response = client.post("/void-logs", json=json.loads(entry.payload))
                    unwrap_envelope(response, "/void-logs")
                except (httpx.HTTPError, BackofficeError) as exc:
                    pending_void_log_crud.mark_failed(db, entry, str(exc))
                    failed += 1
                    logger.warning(f"Void log {entry.void_id} still pending (attempt {entry.attempts}): {exc}")
                    continue

                pending_void_log_crud.mark_sent(db, entry)
                sent += 1

        logger.info(f"Void logs resent: {sent}, still pending: {failed}")
        return {"status": "completed", "sent": sent, "failed": failed}
    finally:
        db.close()
