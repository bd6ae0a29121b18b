"""All settings, loaded from the .env file."""
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # App
    app_url: str = "http://localhost:8000"
    secret_key: str = "change-me"
    database_url: str = "sqlite:///./dealflow.db"
    token_max_age_hours: int = 12

    # External adapters (blank = log only)
    notification_webhook_url: str = ""
    notify_in_background: bool = True
    storage_api_url: str = ""
    storage_api_key: str = ""

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_timezone: str = "Asia/Kolkata"
    cron_secret: str = ""

    # Onboarding & risk
    dormancy_days: int = 90
    cooling_period_months: int = 6
    kyc_validity_months: int = 12
    kyc_expiry_warning_days: int = 30

    # Deals
    founder_approval_threshold: float = 10_000_000  # 1 crore
    default_interest_rate: float = 12
    default_tenor_days: int = 30
    recourse_trigger_days: int = 7
    critical_overdue_days: int = 30
    repayment_reminder_days: int = 30

    # SLA milestones (days after creation)
    sla_milestone_days: list[int] = [3, 7, 10, 14]


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
