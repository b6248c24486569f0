# /app/config/settings.py

import sys
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Storage
    storage_backend: str = "memory"  # "memory" or "mongo"
    mongo_uri: str | None = None
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = False

    # AI APIs
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    ai_request_timeout_seconds: float = 20.0

    # Companies registry (lookup.registry tool)
    registry_api_url: str = "https://data.gov.il/api/3/action/datastore_search"
    registry_resource_id: str = "f004176c-b85f-4542-8901-7b3176f9a054"
    registry_timeout_seconds: float = 8.0

    # Flow engine behaviour
    default_flow_slug: str = "welcome"
    action_error_window_minutes: int = 30
    invalid_marker_window_minutes: int = 10
    max_silent_stage_walk: int = 5
    max_stage_transitions: int = 25
    seed_built_in_flows: bool = True

    # Security
    api_key: str | None = None

    # Deployment
    workers: int = 4
    environment: str = Field(default="production")

    cors_allowed_origins: str = Field(default="http://localhost:3000")
    allowed_hosts: str = Field(default="*")

    # Observability
    log_level: str = "INFO"
    alerting_webhook_url: str | None = None

    # App Metadata & Limits
    api_version: str = "v1"
    rate_limit_per_minute: int = 100
    request_timeout_seconds: float = 30.0

    @property
    def cors_origins(self) -> list:
        return [origin.strip() for origin in self.cors_allowed_origins.split(",") if origin.strip()]

    # ---------------- Validators ---------------- #

    @field_validator("storage_backend")
    @classmethod
    def storage_backend_must_be_known(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("memory", "mongo"):
            raise ValueError("STORAGE_BACKEND must be 'memory' or 'mongo'")
        return v

    @field_validator("max_silent_stage_walk", "max_stage_transitions")
    @classmethod
    def limits_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Flow engine limits must be at least 1")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.storage_backend == "mongo" and not settings_obj.mongo_uri:
            raise ValueError("MONGO_URI is required when STORAGE_BACKEND=mongo")

        if settings_obj.environment == "production" and not settings_obj.openai_api_key:
            print("--- [WARN] OPENAI_API_KEY is not set; falling back to template replies.")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
