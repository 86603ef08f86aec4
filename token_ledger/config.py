from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Ledger settings loaded from LEDGER_* environment variables."""

    model_config = SettingsConfigDict(env_prefix="LEDGER_", env_file=".env", extra="ignore")

    # Storage
    storage_backend: str = Field(default="memory", pattern="^(memory|firestore)$")
    firestore_project: Optional[str] = None

    # Referral rules
    referral_commission_rate: float = Field(default=0.05, gt=0, lt=1)
    referral_token_expiry_days: int = Field(default=30, gt=0)
    referral_analysis_days: int = Field(default=30, gt=0)

    # Query limits
    cleanup_batch_size: int = Field(default=100, gt=0)
    default_list_limit: int = Field(default=50, gt=0)
    admin_list_limit: int = Field(default=100, gt=0)

    # Comma-separated; empty means any caller may approve or reject
    admin_user_ids: str = ""

    log_level: str = "INFO"
    log_file: Optional[str] = None

    cache_ttl_seconds: int = Field(default=300, gt=0)

    @property
    def admin_ids(self) -> set[str]:
        return {i.strip() for i in self.admin_user_ids.split(",") if i.strip()}


def get_settings() -> Settings:
    return Settings()
