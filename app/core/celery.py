"""
Celery de la terminal: reintentos en segundo plano

- cart_sync: subida del espejo local del carrito al almacén remoto
- void_logs: envío de la bitácora de anulaciones pendiente
"""
from celery import Celery
import logging

logger = logging.getLogger(__name__)

try:
    from app.core.config import settings
    redis_url = settings.redis_url
except Exception as e:
    logger.warning(f"Configuración no disponible para Celery: {e}")
    # Broker local del docker-compose
    redis_url = "redis://redis:6379/0"

celery_app = Celery(
    "terminal",
    broker=redis_url,
    backend=redis_url,
    include=[
        "app.modules.cart.tasks",
        "app.modules.voids.tasks"
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # Límite por ejecución: aviso a los 4 min, corte a los 5
    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    result_expires=3600,

    # Una cola por tipo de reintento
    task_routes={
        "app.modules.cart.tasks.*": {"queue": "cart_sync"},
        "app.modules.voids.tasks.*": {"queue": "void_logs"},
    },

    # La bitácora pendiente se vacía cada 5 min aunque no haya anulaciones nuevas
    beat_schedule={
        "submit-pending-void-logs": {
            "task": "app.modules.voids.tasks.submit_pending_void_logs",
            "schedule": 300.0,
        }
    }
)

if __name__ == "__main__":
    celery_app.start()
