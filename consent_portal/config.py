# consent_portal/config.py
from __future__ import annotations

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ---- App ----
    APP_NAME: str = "Consent Portal"
    LOG_LEVEL: str = "INFO"

    # ---- DB ----
    DATABASE_URL: str = "sqlite:///./consent_portal.db"
    DB_ECHO: bool = False

    # ---- Access tokens ----
    SIGN_KEY: str = "dev-secret-key"
    JWT_ALG: str = "HS256"

    # ---- Consent policy ----
    CONSENT_EXPIRY_DAYS: int = Field(365, gt=0)
    # grant scopes owned by the consent subsystem
    GRANT_SCOPES: List[str] = Field(default_factory=lambda: ["view", "update_contact"])

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_prefix="CONSENT_PORTAL_",
    )


settings = Settings()
