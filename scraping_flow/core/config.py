"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Tuple

from dotenv import load_dotenv

from scraping_flow.models import DEFAULT_LANGUAGE_CODE

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGIN = "http://localhost:3000"


@dataclass(frozen=True)
class Settings:
    google_api_key: str
    database_url: str
    credits_database_url: str
    redis_url: str
    jwt_secret: str
    google_base_url: str = "https://places.googleapis.com/v1"
    notify_channel: str = "scraping-credits-updated"
    port: int = 4336
    db_pool_max: int = 10
    default_language_code: str = DEFAULT_LANGUAGE_CODE
    cors_origins: Tuple[str, ...] = (DEFAULT_CORS_ORIGIN,)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    google_api_key = os.getenv("GOOGLE_PLACES_API_KEY", "")
    google_base_url = os.getenv("GOOGLE_PLACES_BASE_URL", "https://places.googleapis.com/v1").rstrip("/")
    database_url = os.getenv("DATABASE_URL", "")
    credits_database_url = os.getenv("CREDITS_DATABASE_URL") or database_url
    redis_url = os.getenv("REDIS_URL", "")
    notify_channel = os.getenv("NOTIFY_CHANNEL", "scraping-credits-updated")
    jwt_secret = os.getenv("JWT_SECRET", "")
    port = int(os.getenv("PORT", "4336"))
    db_pool_max = int(os.getenv("DB_POOL_MAX", "10"))
    default_language_code = os.getenv("DEFAULT_LANGUAGE_CODE", "").strip() or DEFAULT_LANGUAGE_CODE
    cors_origins = tuple(
        origin.strip() for origin in os.getenv("CORS_ORIGIN", DEFAULT_CORS_ORIGIN).split(",") if origin.strip()
    )

    if not database_url:
        logger.warning("DATABASE_URL is not set; search persistence will fail.")
    if not credits_database_url:
        logger.warning("CREDITS_DATABASE_URL is not set; credit checks will fail.")
    if not google_api_key:
        logger.warning("GOOGLE_PLACES_API_KEY is not configured; Google Places requests will fail.")
    if not redis_url:
        logger.warning("REDIS_URL is not configured; balance notifications are disabled.")
    if not jwt_secret:
        logger.warning("JWT_SECRET is not configured; every API request will be rejected.")

    return Settings(
        google_api_key=google_api_key,
        database_url=database_url,
        credits_database_url=credits_database_url,
        redis_url=redis_url,
        jwt_secret=jwt_secret,
        google_base_url=google_base_url,
        notify_channel=notify_channel,
        port=port,
        db_pool_max=db_pool_max,
        default_language_code=default_language_code,
        cors_origins=cors_origins,
    )
