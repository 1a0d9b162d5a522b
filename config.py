import os
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel


def _split(value: Optional[str], default: List[str]) -> List[str]:
    if not value:
        return default
    return [part.strip() for part in value.split(",") if part.strip()]


class AppConfig(BaseModel):
    """Process-wide configuration, read from the environment once at startup."""

    database_url: Optional[str] = None
    database_name: str = "storefront"
    jwt_secret: str = "dev-secret-change-me"
    jwt_expires_min: int = 60 * 24
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    frontend_url: str = "http://localhost:5173"
    cors_origins: List[str] = ["*"]
    gemini_api_key: Optional[str] = None
    gemini_models: List[str] = ["gemini-2.5-flash", "gemini-2.5-flash-lite", "gemini-2.0-flash"]
    shipping_countries: List[str] = ["US", "CA", "GB"]
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "AppConfig":
        defaults = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME", defaults.database_name),
            jwt_secret=os.getenv("JWT_SECRET", defaults.jwt_secret),
            jwt_expires_min=int(os.getenv("JWT_EXPIRES_MIN", defaults.jwt_expires_min)),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            frontend_url=os.getenv("FRONTEND_URL", defaults.frontend_url).rstrip("/"),
            cors_origins=_split(os.getenv("CORS_ORIGINS"), defaults.cors_origins),
            gemini_api_key=os.getenv("GEMINI_API_KEY"),
            gemini_models=_split(os.getenv("GEMINI_MODELS"), defaults.gemini_models),
            shipping_countries=_split(os.getenv("SHIPPING_COUNTRIES"), defaults.shipping_countries),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
            port=int(os.getenv("PORT", defaults.port)),
        )


@lru_cache
def get_config() -> AppConfig:
    return AppConfig.from_env()
