"""
Cliente HTTP asíncrono del back-office

Todas las dependencias externas de la terminal viven detrás de una sola API:
- Catálogo de productos y de descuentos (lectura)
- Almacén compartido del carrito por terminal (GET/PUT, reemplazo completo)
- Registro de transacciones y bitácora de anulaciones
- Descuento de stock
- Verificación de PIN de gerente/empleado

Las respuestas usan el sobre {"success": bool, "data": ..., "message": str}.
Cualquier timeout o error de red se traduce en BackofficeUnavailableError;
respuestas con estado de error o success=false en BackofficeError.
"""

from typing import Any, Dict, List, Optional
import logging

import httpx

from app.core.config import settings
from app.common.exceptions import (
    BackofficeError, BackofficeUnavailableError, PinRejectedError
)

logger = logging.getLogger(__name__)


# Estados con los que el servicio de PIN rechaza un código
PIN_REJECTION_STATUSES = (401, 403, 404)


def unwrap_envelope(response: httpx.Response, endpoint: str) -> Any:
    """
    Desempaqueta {"success", "data", "message"}.

    Compartido por el cliente asíncrono y las tareas Celery: un estado de
    error o success=false siempre es BackofficeError, aunque el HTTP sea 200.
    """
    try:
        body = response.json()
    except ValueError:
        body = {}

    if not isinstance(body, dict):
        body = {"success": response.is_success, "data": body}

    if response.is_error or body.get("success") is False:
        message = body.get("message") or f"HTTP error! status: {response.status_code}"
        logger.error(f"API Error [{endpoint}]: {message}")
        raise BackofficeError(message, http_status=response.status_code)

    return body.get("data")


class BackofficeClient:
    """Cliente del back-office compartido por todas las sesiones de terminal."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = (base_url or settings.BACKOFFICE_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.BACKOFFICE_TIMEOUT_SECONDS
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json"}
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def _request(self, method: str, endpoint: str, json: Optional[Dict[str, Any]] = None) -> Any:
        """Ejecuta la petición y desempaqueta el sobre de respuesta."""
        try:
            response = await self._get_client().request(method, endpoint, json=json)
        except httpx.TimeoutException as e:
            logger.warning(f"Back-office timeout [{method} {endpoint}]")
            raise BackofficeUnavailableError(f"Tiempo de espera agotado en {endpoint}", cause=e)
        except httpx.HTTPError as e:
            logger.warning(f"Back-office network error [{method} {endpoint}]: {e}")
            raise BackofficeUnavailableError(f"Error de red en {endpoint}", cause=e)

        return unwrap_envelope(response, endpoint)

    # ===== CATÁLOGOS =====

    async def list_products(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/products") or []

    async def list_discounts(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/discounts") or []

    # ===== CARRITO COMPARTIDO =====

    async def get_cart(self, terminal_key: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/carts/{terminal_key}") or {}
        return data.get("items") or []

    async def save_cart(self, terminal_key: str, items: List[Dict[str, Any]]) -> None:
        await self._request("PUT", f"/carts/{terminal_key}", json={"items": items})

    # ===== TRANSACCIONES Y STOCK =====

    async def record_transaction(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/transactions", json=payload) or {}

    async def update_stock(self, items: List[Dict[str, Any]], performed_by_name: str,
                           performed_by_id: str) -> Any:
        return await self._request("POST", "/products/update-stock", json={
            "items": items,
            "performedByName": performed_by_name,
            "performedById": performed_by_id,
        })

    # ===== AUTORIZACIÓN Y AUDITORÍA =====

    async def verify_pin(self, pin: str, employee_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Verifica un PIN de 6 dígitos.

        Returns:
            Datos del empleado autorizador (id, nombre, rol)

        Raises:
            PinRejectedError: el servicio rechazó el PIN
            BackofficeUnavailableError: timeout o error de red
        """
        payload: Dict[str, Any] = {"pin": pin}
        if employee_id:
            payload["employeeId"] = employee_id

        try:
            return await self._request("POST", "/employees/verify-pin", json=payload) or {}
        except BackofficeUnavailableError:
            raise
        except BackofficeError as e:
            if e.http_status in PIN_REJECTION_STATUSES:
                raise PinRejectedError(e.message, http_status=e.http_status)
            raise

    async def create_void_log(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/void-logs", json=payload) or {}
