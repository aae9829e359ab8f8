from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"
    base_url: str = "http://localhost:8000"
    secret_key: str = "change-me"

    database_url: str = "sqlite:///./receipt_nest.db"
    redis_url: str = "redis://localhost:6379/0"

    storage_backend: Literal["local", "s3"] = "local"
    local_storage_path: Path = Path(".local_storage")

    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_bucket: str = "receipt-nest"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None

    receipt_inbound_domain: str | None = None
    email_ingest_webhook_key: str | None = None
    telegram_bot_token: str | None = None

    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    receipt_ai_enabled: bool = True
    receipt_ai_timeout_seconds: float = 30.0
    receipt_ai_max_chars: int = 12000

    structured_extractor_url: str | None = None
    structured_extractor_api_key: str | None = None
    structured_extractor_timeout_seconds: float = 30.0

    category_rules_path: Path | None = None

    free_plan_receipt_limit: int = 200
    max_attachment_bytes: int = 10 * 1024 * 1024
    max_attachments_per_email: int = 6

    access_token_exp_minutes: int = 60 * 24

    init_user_email: str | None = None
    init_user_first_name: str | None = None
    init_user_last_name: str | None = None
    init_user_telegram_chat_id: int | None = None


settings = Settings()
