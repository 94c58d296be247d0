from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # App Config
    APP_NAME: str = "Learning Track Billing Service"
    DEBUG: bool = False
    CORS_ORIGINS: list[str] = ["*"]
    RATE_LIMIT_ENABLED: bool = True

    # Razorpay
    RAZORPAY_KEY_ID: Optional[str] = None
    RAZORPAY_KEY_SECRET: Optional[str] = None
    RAZORPAY_API_BASE: str = "https://api.razorpay.com/v1"
    RAZORPAY_TIMEOUT_SECONDS: float = 15.0
    PAYMENT_CURRENCY: str = "INR"

    # Reconciliation
    ORPHAN_SWEEP_WINDOW_HOURS: int = 24
    # Lookup step 3: most recent active subscription of any track
    SUBSCRIPTION_LATEST_FALLBACK: bool = True

    # Auth
    JWT_SECRET_KEY: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    AUTH_COOKIE_NAME: str = "auth-token"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings():
    return Settings()
