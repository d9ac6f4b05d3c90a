from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from app.core.config import settings
import logging

logger = logging.getLogger(__name__)

def _engine_options(url: str) -> dict:
    """Opciones del engine según el backend configurado."""
    if url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            options["poolclass"] = StaticPool
        return options
    return {"pool_pre_ping": True, "pool_size": 5, "max_overflow": 10}

# Engine de la base local de la terminal (espejo del carrito, outbox, conciliación)
local_engine = create_engine(
    settings.LOCAL_DATABASE_URL,
    echo=False,
    **_engine_options(settings.LOCAL_DATABASE_URL)
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=local_engine)

Base = declarative_base()

def get_db():
    """Genera una sesión de la base de datos local."""
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error(f"Database error: {e}")
        db.rollback()
        raise
    finally:
        db.close()

def init_local_db(engine=None):
    """Crea las tablas locales si no existen."""
    # Registrar modelos en el metadata antes de crear tablas
    import app.modules.cart.models  # noqa: F401
    import app.modules.voids.models  # noqa: F401
    import app.modules.checkout.models  # noqa: F401

    Base.metadata.create_all(bind=engine or local_engine)
