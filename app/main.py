from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
import logging

# Import database components
from app.database.database import init_local_db

# Import middleware
from app.common.middleware import TerminalMiddleware
from app.common.exceptions import TerminalError

# Import routers
from app.modules.catalog.router import router as catalog_router
from app.modules.cart.router import router as cart_router
from app.modules.discounts.router import router as discounts_router
from app.modules.voids.router import router as voids_router
from app.modules.checkout.router import router as checkout_router

from app.modules.backoffice import BackofficeClient
from app.modules.terminal.service import TerminalRegistry

from app.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="Terminal Checkout API",
    description="Carrito, descuentos, anulaciones autorizadas y cobro para terminales POS",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

# Add middleware (order matters!)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(TerminalMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(catalog_router)
app.include_router(cart_router)
app.include_router(discounts_router)
app.include_router(voids_router)
app.include_router(checkout_router)


@app.exception_handler(TerminalError)
async def terminal_error_handler(request: Request, exc: TerminalError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} en {request.url.path}: {exc}")
    else:
        logger.info(f"{exc.code} en {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/")
async def read_root():
    return {
        "message": "Terminal Checkout API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


@app.get("/health")
async def health_check():
    registry = getattr(app.state, "terminal_registry", None)
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
        "terminals": registry.terminal_keys if registry else []
    }


@app.on_event("startup")
async def startup_event():
    logger.info("Terminal Checkout API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Back-office: {settings.BACKOFFICE_API_URL}")

    init_local_db()

    backoffice = BackofficeClient()
    app.state.backoffice = backoffice
    app.state.terminal_registry = TerminalRegistry(backoffice)


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Terminal Checkout API shutting down...")
    registry = getattr(app.state, "terminal_registry", None)
    if registry is not None:
        # Guardar los carritos con cambios pendientes antes de salir
        await registry.close()
    backoffice = getattr(app.state, "backoffice", None)
    if backoffice is not None:
        await backoffice.close()
