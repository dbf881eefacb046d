"""Centralized application settings using Pydantic BaseSettings.

Matching engine knobs (circle size, minimum pool size, diversity metric)
live in ``services.matching.config`` next to the code that reads them.
"""
from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings
import os


class Settings(BaseSettings):
    # Core
    app_name: str = "Dinner Circles Backend"
    environment: str = Field("development", alias="ENVIRONMENT")
    debug: bool = False

    # Database
    mongo_uri: str = Field("mongodb://mongo:27017/dinnercircles", alias="MONGO_URI")
    mongo_db: str = Field("dinnercircles", alias="MONGO_DB")

    # Auth
    # JWT secret must be set in production. Default empty to encourage configuring.
    jwt_secret: str = Field("", alias="JWT_SECRET")
    jwt_issuer: str = Field("", alias="JWT_ISSUER")

    # CORS
    allowed_origins: str = Field("*", alias="ALLOWED_ORIGINS")
    cors_allow_credentials: bool = Field(True, alias="CORS_ALLOW_CREDENTIALS")

    # Startup housekeeping
    recover_stale_on_startup: bool = Field(True, alias="MATCH_RECOVER_ON_STARTUP")

    class Config:
        case_sensitive = False
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    s = Settings()  # type: ignore[arg-type]

    # Production safety checks
    env = (s.environment or os.getenv('ENVIRONMENT', '')).lower()
    if env in ('production', 'prod'):
        if not s.jwt_secret or s.jwt_secret in ('change-me', ''):
            raise RuntimeError('JWT_SECRET must be set to a secure value in production')
        if not s.allowed_origins or str(s.allowed_origins).strip() in ('*', ''):
            raise RuntimeError('ALLOWED_ORIGINS must be set to specific origins in production (no "*")')

    return s


__all__ = ["Settings", "get_settings"]
