from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from decimal import Decimal
from pydantic import field_validator

class Settings(BaseSettings):
    # Back-office API (catálogo, descuentos, carritos, transacciones, stock, PIN, anulaciones)
    BACKOFFICE_API_URL: str = 'http://localhost:5000/api'
    BACKOFFICE_TIMEOUT_SECONDS: float = 10.0

    # Timeouts de cliente para operaciones críticas
    PIN_VERIFY_TIMEOUT_SECONDS: float = 8.0
    TRANSACTION_TIMEOUT_SECONDS: float = 15.0

    # Terminal
    DEFAULT_TERMINAL_KEY: str = 'terminal-1'

    # Persistencia del carrito
    CART_PERSIST_DEBOUNCE_SECONDS: float = 0.5
    CART_SYNC_WARNING_THRESHOLD: int = 3

    # Caché de catálogo y descuentos
    CATALOG_CACHE_TTL_SECONDS: float = 60.0

    # Política de combinación de descuentos
    DISCOUNT_STACKING_POLICY: str = 'additive'  # additive | best_only
    DISCOUNT_MAX_TOTAL_PERCENT: Optional[Decimal] = None

    # Base de datos local de la terminal (espejo del carrito, outbox, conciliación)
    LOCAL_DATABASE_URL: str = 'sqlite:///./terminal_local.db'

    # Redis settings (broker de Celery)
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    BACKGROUND_RETRY_ENABLED: bool = True

    # JWT settings
    APP_SECRET_STRING: str = 'your-super-secret-key-here-change-in-production-2024'
    ALGORITHM: str = 'HS256'
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 720  # un turno

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("DEBUG", mode="before")
    @classmethod
    def parse_debug(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("BACKGROUND_RETRY_ENABLED", mode="before")
    @classmethod
    def parse_background_retry(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("DISCOUNT_STACKING_POLICY", mode="before")
    @classmethod
    def parse_stacking_policy(cls, v):
        value = str(v).lower().strip('"').strip("'").strip()
        if value not in ("additive", "best_only"):
            raise ValueError("DISCOUNT_STACKING_POLICY debe ser 'additive' o 'best_only'")
        return value

    @field_validator("DISCOUNT_MAX_TOTAL_PERCENT", mode="before")
    @classmethod
    def parse_max_percent(cls, v):
        if v is None or (isinstance(v, str) and v.strip() == ""):
            return None
        return v

settings = Settings()
