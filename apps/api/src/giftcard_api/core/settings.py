from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./giftcard.db"
    database_echo: bool = False

    # Internal API security
    engine_api_key: str = ""

    # Supplier (purchase + balance API)
    supplier_name: str = "tillo"
    supplier_base_url: str = "https://api.tillo.tech/v2"
    supplier_api_key: str | None = None
    supplier_secret_key: str | None = None
    supplier_timeout_seconds: float = 10.0
    supplier_currency: str = "USD"

    # SMS delivery (Infobip primary, Twilio fallback by default)
    sms_primary_provider: Literal["infobip", "twilio"] = "infobip"
    sms_enable_fallback: bool = True
    sms_fallback_on_error: bool = True

    infobip_api_key: str | None = None
    infobip_base_url: str = "https://api.infobip.com"
    infobip_sender_id: str | None = None
    infobip_timeout_seconds: float = 10.0

    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_from_number: str | None = None
    twilio_base_url: str = "https://api.twilio.com"
    twilio_timeout_seconds: float = 10.0

    # Email / notification settings
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    smtp_sender_email: str | None = None
    smtp_timeout_seconds: float = 10.0

    # Delivery retry policy
    delivery_max_attempts: int = Field(default=3, ge=1)
    delivery_backoff_base_seconds: float = 2.0
    delivery_backoff_max_seconds: float = 60.0
    delivery_message_brand_label: str = "Your reward"

    # Claims
    # Unset: supplier_timeout_seconds + claim_replay_wait_margin_seconds
    claim_replay_wait_seconds: float | None = None
    claim_replay_wait_margin_seconds: float = 5.0
    claim_replay_poll_interval_seconds: float = 0.1
    claim_pending_timeout_seconds: int = 300
    claim_recovery_worker_enabled: bool = False
    claim_recovery_interval_seconds: int = 120
    claim_recovery_limit: int = 50
    claim_recovery_max_attempts: int = 3
    claim_recovery_trigger_label: str = "scheduler"

    # Inventory
    inventory_reserve_max_candidates: int = 10
    inventory_low_threshold: int = 10
    inventory_import_default_owner: str | None = None

    # Balance reconciliation
    balance_check_concurrency: int = 5
    balance_check_batch_limit: int = 200
    balance_check_brands_excluded: list[str] = Field(default_factory=list)

    @field_validator("balance_check_brands_excluded", mode="before")
    @classmethod
    def _parse_brand_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []

    @property
    def replay_wait_seconds(self) -> float:
        if self.claim_replay_wait_seconds is not None:
            return self.claim_replay_wait_seconds
        return self.supplier_timeout_seconds + self.claim_replay_wait_margin_seconds

    @property
    def supplier_configured(self) -> bool:
        return bool(self.supplier_api_key and self.supplier_secret_key)

    @property
    def infobip_configured(self) -> bool:
        return bool(self.infobip_api_key)

    @property
    def twilio_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_sender_email)


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
