from pydantic_settings import BaseSettings
from typing import List

class Settings(BaseSettings):
    # Database - supports both SQLite (dev) and PostgreSQL (prod)
    DATABASE_URL: str = "sqlite:///./courier.db"

    # CORS
    BACKEND_CORS_ORIGINS: List[str] = ["*"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # Offer sequencing (seconds)
    OFFER_TIMEOUT_SECONDS: int = 120  # Per-rider window
    ORDER_TIMEOUT_SECONDS: int = 1800  # Global budget from order creation

    # On-route rule
    ON_ROUTE_MAX_PICKUP_KM: float = 5.0
    ON_ROUTE_MAX_DETOUR_RATIO: float = 1.5

    # Background sweep of expired offers
    SWEEP_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: float = 5.0

    class Config:
        env_file = ".env"

settings = Settings()
