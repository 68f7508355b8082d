"""Configuration for Volatility Guardian service."""

from datetime import date
from decimal import Decimal
from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List, Optional


class Settings(BaseSettings):
    """Volatility Guardian configuration."""

    # Database - Watchlist store (PostgreSQL, read-only)
    db_host: str = Field(default="postgres", alias="DB_HOST")
    db_port: int = Field(default=5432, alias="DB_PORT")
    db_user: str = Field(default="watchlist", alias="DB_USER")
    db_password: str = Field(default="watchlist", alias="DB_PASSWORD")
    db_name: str = Field(default="watchlist", alias="DB_NAME")

    # Redis - Market data cache + run lock
    redis_host: str = Field(default="redis", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_db: int = Field(default=0, alias="REDIS_DB")
    redis_enabled: bool = Field(default=True, alias="REDIS_ENABLED")

    # Market data
    finnhub_api_key: Optional[str] = Field(default=None, alias="FINNHUB_API_KEY")
    finnhub_base_url: str = Field(default="https://finnhub.io/api/v1", alias="FINNHUB_BASE_URL")
    history_days: int = Field(default=90, alias="HISTORY_DAYS")
    price_cache_seconds: int = Field(default=1800, alias="PRICE_CACHE_SECONDS")
    history_cache_seconds: int = Field(default=21600, alias="HISTORY_CACHE_SECONDS")
    recommendation_cache_seconds: int = Field(default=21600, alias="RECOMMENDATION_CACHE_SECONDS")

    # Twilio - WhatsApp alerts
    twilio_account_sid: Optional[str] = Field(default=None, alias="TWILIO_ACCOUNT_SID")
    twilio_auth_token: Optional[str] = Field(default=None, alias="TWILIO_AUTH_TOKEN")
    twilio_whatsapp_number: Optional[str] = Field(default=None, alias="TWILIO_WHATSAPP_NUMBER")
    admin_phone: Optional[str] = Field(default=None, alias="ADMIN_PHONE")  # Batch summaries

    # Firebase - Push notifications
    firebase_service_account_json: Optional[str] = Field(default=None, alias="FIREBASE_SERVICE_ACCOUNT_JSON")

    # SMTP - Email alerts
    smtp_host: Optional[str] = Field(default=None, alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_user: Optional[str] = Field(default=None, alias="SMTP_USER")
    smtp_password: Optional[str] = Field(default=None, alias="SMTP_PASSWORD")
    smtp_use_ssl: bool = Field(default=False, alias="SMTP_USE_SSL")
    email_from: str = Field(default="Stock Alerts <alerts@localhost>", alias="EMAIL_FROM")

    # Volatility policy
    default_atr_period: int = Field(default=14, alias="DEFAULT_ATR_PERIOD")
    default_atr_multiplier: Decimal = Field(default=Decimal("2.0"), alias="DEFAULT_ATR_MULTIPLIER")
    low_volatility_pct: Decimal = Field(default=Decimal("5.0"), alias="LOW_VOLATILITY_PCT")
    high_volatility_pct: Decimal = Field(default=Decimal("10.0"), alias="HIGH_VOLATILITY_PCT")
    alert_on_high_volatility: bool = Field(default=False, alias="ALERT_ON_HIGH_VOLATILITY")

    # Market calendars - extra closures on top of the built-in holiday lists
    extra_us_holidays: List[date] = Field(default_factory=list, alias="EXTRA_US_HOLIDAYS")
    extra_india_holidays: List[date] = Field(default_factory=list, alias="EXTRA_INDIA_HOLIDAYS")

    # Batch
    batch_enabled: bool = Field(default=False, alias="BATCH_ENABLED")
    batch_interval_seconds: int = Field(default=3600, alias="BATCH_INTERVAL_SECONDS")
    batch_timeout_seconds: float = Field(default=300.0, alias="BATCH_TIMEOUT_SECONDS")
    max_workers: int = Field(default=4, alias="MAX_WORKERS")
    fetch_recommendations: bool = Field(default=True, alias="FETCH_RECOMMENDATIONS")
    run_overlap_policy: str = Field(default="allow", alias="RUN_OVERLAP_POLICY")  # allow | single_flight
    run_lock_ttl_seconds: int = Field(default=900, alias="RUN_LOCK_TTL_SECONDS")

    # Trigger server
    http_port: int = Field(default=8080, alias="HTTP_PORT")
    cron_secret: Optional[str] = Field(default=None, alias="CRON_SECRET")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def database_url(self) -> str:
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def twilio_enabled(self) -> bool:
        return all([self.twilio_account_sid, self.twilio_auth_token, self.twilio_whatsapp_number])

    @property
    def firebase_enabled(self) -> bool:
        return bool(self.firebase_service_account_json)

    @property
    def smtp_enabled(self) -> bool:
        return bool(self.smtp_host)

    @property
    def single_flight(self) -> bool:
        return self.run_overlap_policy.lower() == "single_flight"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }


settings = Settings()
