# /convoflow/config/settings.py

import re
from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # App
    environment: str = Field(default="production")
    log_level: str = "INFO"
    api_version: str = "v1"
    workers: int = 4

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017/convoflow"
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = False

    # Redis (distributed conversation locks)
    redis_url: str = "redis://localhost:6379"
    redis_enabled: bool = True

    # WhatsApp Cloud API
    whatsapp_api_version: str = "v18.0"
    whatsapp_graph_url: str = "https://graph.facebook.com"
    whatsapp_access_token: str | None = None  # fallback when a tenant has no channel token
    whatsapp_phone_id: str | None = None
    whatsapp_verify_token: str | None = None
    whatsapp_app_secret: str = ""

    # Security
    jwt_secret_key: str = Field(default="change-me-change-me-change-me-change-me", min_length=32)
    jwt_algorithm: str = "HS256"
    api_key: str | None = None

    # Flow engine
    interactive_footer_text: str = "Powered by Convoflow"
    interactive_list_button_text: str = "View options"
    flow_max_auto_steps: int = 100
    flow_input_ttl_seconds: int | None = None  # None = wait for input indefinitely
    flow_lock_timeout_seconds: int = 30
    flow_lock_wait_seconds: float = 10.0
    action_http_timeout_seconds: float = 10.0

    # Observability
    sentry_dsn: str | None = None
    sentry_environment: str = "production"

    # Limits
    rate_limit_per_minute: int = 100
    cors_allowed_origins: List[str] = Field(default_factory=list)

    # ---------------- Validators ---------------- #

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def parse_cors_allowed_origins(cls, v):
        """Accept comma-separated strings as well as lists."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("whatsapp_phone_id")
    @classmethod
    def phone_id_must_be_digits(cls, v):
        if v and not re.match(r"^\d+$", v):
            raise ValueError("WHATSAPP_PHONE_ID must contain only digits")
        return v

    @field_validator("flow_max_auto_steps")
    @classmethod
    def auto_steps_must_be_positive(cls, v):
        if v < 1:
            raise ValueError("FLOW_MAX_AUTO_STEPS must be at least 1")
        return v

    @property
    def whatsapp_base_url(self) -> str:
        return f"{self.whatsapp_graph_url.rstrip('/')}/{self.whatsapp_api_version}"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
