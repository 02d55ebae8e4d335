# /chatflow/config/settings.py

import re
from typing import Dict, List
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Storage
    storage_backend: str = "mongo"  # "mongo" or "memory"
    mongo_uri: str = "mongodb://localhost:27017/chatflow"
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = False

    # Redis
    redis_url: str = "redis://localhost:6379"
    use_redis: bool = True

    # WhatsApp channel
    whatsapp_access_token: str = ""
    whatsapp_phone_id: str = ""
    whatsapp_verify_token: str = ""
    whatsapp_app_secret: str = ""
    whatsapp_api_version: str = "v18.0"

    # Flow routing
    default_flow_id: str | None = None
    flow_bindings: Dict[str, str] = {}  # phone_number_id -> flow_id

    # Engine limits
    max_steps_per_event: int = 50
    max_loop_iterations: int = 100
    session_idle_ttl_seconds: int = 60 * 60 * 24 * 30
    group_idle_archive_days: int = 7
    max_group_participants: int = 10000
    error_reply_text: str = "Sorry, something went wrong. Please try again later."

    # External calls made by webhook / api / integration nodes
    external_call_timeout_seconds: float = 30.0
    external_call_max_retries: int = 2
    external_call_backoff_seconds: float = 1.0
    integration_endpoints: Dict[str, str] = {}  # service -> url

    # Deferred work
    deferred_poll_interval_seconds: float = 1.0
    deferred_max_attempts: int = 5
    deferred_lease_seconds: int = 120
    deferred_workers: int = 2
    deferred_retry_backoff_seconds: int = 15

    # Inbound queue + locking
    inbound_queue_workers: int = 5
    inbound_stream_name: str = "chatflow_inbound"
    session_lock_timeout_seconds: int = 60
    session_lock_wait_seconds: int = 30
    dedupe_ttl_seconds: int = 300
    inbound_max_attempts: int = 3
    inbound_retry_backoff_seconds: float = 0.5
    inbound_reclaim_idle_seconds: int = 300
    inbound_reclaim_interval_seconds: float = 60.0
    effect_ledger_ttl_seconds: int = 60 * 60 * 24

    # Security
    api_key: str | None = None
    rate_limit_per_minute: int = 300

    # Deployment / observability
    environment: str = Field(default="production")
    api_version: str = "v1"
    workers: int = 4
    alerting_webhook_url: str | None = None
    cors_allowed_origins: List[str] = []
    allowed_hosts: str = "*"

    # ---------------- Validators ---------------- #

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def parse_cors_allowed_origins(cls, v):
        """Accept both a comma-separated string and a list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("storage_backend")
    @classmethod
    def storage_backend_must_be_known(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ("mongo", "memory"):
            raise ValueError("STORAGE_BACKEND must be 'mongo' or 'memory'")
        return v

    @field_validator("whatsapp_phone_id")
    @classmethod
    def phone_id_must_be_digits(cls, v):
        if v and not re.match(r"^\d+$", v):
            raise ValueError("WHATSAPP_PHONE_ID must contain only digits")
        return v

    @model_validator(mode="after")
    def bind_default_flow(self):
        if self.default_flow_id and self.whatsapp_phone_id and self.whatsapp_phone_id not in self.flow_bindings:
            self.flow_bindings[self.whatsapp_phone_id] = self.default_flow_id
        return self

    def flow_for_channel(self, channel_id: str | None) -> str | None:
        """Resolves which flow handles events arriving on a channel identifier."""
        if channel_id and channel_id in self.flow_bindings:
            return self.flow_bindings[channel_id]
        return self.default_flow_id


settings = Settings()
