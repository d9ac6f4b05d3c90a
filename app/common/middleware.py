"""
Middleware for handling terminal scoping
"""
from fastapi import Request, status
from fastapi.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware
import logging
import re

from app.core.config import settings

logger = logging.getLogger(__name__)

TERMINAL_KEY_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_\-\.]{0,99}$')


class TerminalMiddleware(BaseHTTPMiddleware):
    """
    Middleware that extracts the terminal key from X-Terminal-Key header
    and sets it on request.state for use in endpoint handlers.

    The cart is shared by every employee of the till, so the key
    identifies the terminal, never the user.
    """

    # Only terminal endpoints need a terminal context
    SCOPED_PREFIX = "/terminal"

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(self.SCOPED_PREFIX):
            return await call_next(request)

        # Skip for OPTIONS requests (CORS preflight)
        if request.method == "OPTIONS":
            return await call_next(request)

        terminal_key = request.headers.get("X-Terminal-Key") or settings.DEFAULT_TERMINAL_KEY

        if not TERMINAL_KEY_PATTERN.match(terminal_key):
            return Response(
                content='{"detail":"Invalid X-Terminal-Key format"}',
                status_code=status.HTTP_400_BAD_REQUEST,
                media_type="application/json"
            )

        request.state.terminal_key = terminal_key
        logger.debug(f"Request to {request.url.path} for terminal: {terminal_key}")

        response = await call_next(request)
        response.headers["X-Terminal-Key"] = terminal_key

        return response
