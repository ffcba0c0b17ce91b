"""
Configuración de la aplicación
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import List, Optional


class Settings(BaseSettings):
    # App
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    APP_NAME: str = "QUIKLII"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./quiklii.db"
    DB_ECHO: bool = False

    # Security (los tokens los emite el servicio de autenticación externo)
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 10080  # 7 días

    # CORS
    BACKEND_CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
    ]
    FRONTEND_URL: str = "http://localhost:5173"

    # Moneda
    DEFAULT_CURRENCY: str = "COP"
    SUPPORTED_CURRENCIES: List[str] = ["COP", "USD"]

    # Wompi
    WOMPI_API_URL: str = "https://sandbox.wompi.co/v1"
    WOMPI_CHECKOUT_URL: str = "https://checkout.wompi.co/p/"
    WOMPI_PUBLIC_KEY: Optional[str] = None
    WOMPI_PRIVATE_KEY: Optional[str] = None
    WOMPI_EVENTS_SECRET: Optional[str] = None
    WOMPI_INTEGRITY_SECRET: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # Proveedores de pago
    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Tiempo real: 'memory' (un solo proceso) o 'redis'
    REALTIME_BACKEND: str = "memory"
    REDIS_URL: str = "redis://localhost:6379"
    REALTIME_CHANNEL: str = "quiklii:realtime"
    REALTIME_RECONNECT_SECONDS: float = 2.0

    # Devoluciones
    REFUND_MAX_ATTEMPTS: int = 3
    REFUND_RETRY_DELAYS_SECONDS: List[int] = [300, 1800, 7200]  # 5 min, 30 min, 2 h
    REFUND_WORKER_INTERVAL_SECONDS: int = 0  # 0 = desactivado

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=True
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
