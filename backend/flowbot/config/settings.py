# /flowbot/config/settings.py

import sys
import re
from typing import List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class WhatsAppCredentials(BaseModel):
    """
    Transport credentials for one WhatsApp business phone number.
    Passed through the engine untouched and only read by the message sender.
    """
    phone_number_id: str
    access_token: str

    class Config:
        frozen = True


class Settings(BaseSettings):
    # MongoDB (durable state tier)
    mongo_uri: str = "mongodb://localhost:27017/flowbot"
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_tls: bool = False

    # Redis (state cache, locks, job dispatcher)
    redis_url: str = "redis://localhost:6379"

    # WhatsApp Cloud API
    whatsapp_access_token: str = ""
    whatsapp_phone_id: str = "000000000000000"
    whatsapp_verify_token: str = "flowbot-verify"
    whatsapp_app_secret: str = ""
    whatsapp_api_version: str = "v21.0"

    # AI
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"

    # Engine behaviour
    bot_name: str = "Flowbot"
    timezone: str = "UTC"
    session_timeout_minutes: int = 30
    max_nodes_per_execution: int = 100
    max_node_visits: int = 10
    max_send_retries: int = 3
    max_inline_delay_seconds: int = 30
    conversation_history_limit: int = 20
    default_country_code: str = "55"

    # Campaign mode
    campaign_batch_size: int = 50
    campaign_rate_limit_ms: int = 6000
    campaign_max_retries: int = 3
    dispatcher_workers: int = 4

    # Per-contact locking and caching
    lock_ttl_ms: int = 30000
    lock_wait_timeout: float = 10.0
    state_cache_ttl: int = 3600

    # Deployment
    environment: str = "development"
    workers: int = 4
    api_version: str = "v1"
    rate_limit_per_minute: int = 300
    api_key: str | None = None
    cors_allowed_origins: List[str] = Field(default_factory=list)

    # Observability
    alerting_webhook_url: str | None = None

    # ---------------- Validators ---------------- #

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def parse_cors_allowed_origins(cls, v):
        """Accept either a comma-separated string or a list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("whatsapp_phone_id")
    @classmethod
    def phone_id_must_be_digits(cls, v):
        if not re.match(r"^\d+$", v):
            raise ValueError("WHATSAPP_PHONE_ID must contain only digits")
        return v

    @field_validator("timezone")
    @classmethod
    def timezone_must_exist(cls, v):
        try:
            ZoneInfo(v)
        except ZoneInfoNotFoundError:
            raise ValueError(f"Unknown timezone '{v}'")
        return v

    @field_validator("session_timeout_minutes", "max_nodes_per_execution", "max_node_visits", "campaign_batch_size")
    @classmethod
    def must_be_positive(cls, v):
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @model_validator(mode="after")
    def lock_ttl_is_sane(self):
        if self.lock_ttl_ms < 1000:
            raise ValueError("LOCK_TTL_MS must be at least 1000")
        return self

    def default_credentials(self) -> WhatsAppCredentials:
        return WhatsAppCredentials(
            phone_number_id=self.whatsapp_phone_id,
            access_token=self.whatsapp_access_token,
        )

    def credentials_for(self, phone_number_id: str | None) -> WhatsAppCredentials:
        """Credentials for the business number a job or webhook names; the token is never carried in jobs."""
        if not phone_number_id or phone_number_id == self.whatsapp_phone_id:
            return self.default_credentials()
        return WhatsAppCredentials(phone_number_id=phone_number_id, access_token=self.whatsapp_access_token)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.environment == "production":
            for var in ["whatsapp_access_token", "whatsapp_app_secret"]:
                if not getattr(settings_obj, var):
                    raise ValueError(f"{var.upper()} is required in production")
        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
