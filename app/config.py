"""Service settings read from the environment and the project's .env file."""
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent

SUPPORTED_CURRENCIES = ("usd", "eur", "gbp")


class Settings(BaseSettings):
    # Application
    database_url: str = Field(
        default=f"sqlite:///{BASE_DIR / 'crystal_orders.db'}", description="SQLAlchemy database URL"
    )
    app_env: str = Field(default="development", description="Environment (development/test/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    frontend_url: str = Field(default="http://localhost:3000", description="Storefront base URL")
    jwt_secret: Optional[str] = Field(default=None, description="HS256 secret for admin tokens")
    min_payment_amount: int = Field(default=50, description="Smallest accepted amount in minor units")

    # Stripe
    stripe_secret_key: Optional[str] = Field(default=None, description="Stripe secret API key")
    stripe_webhook_secret: Optional[str] = Field(default=None, description="Stripe webhook signing secret")

    # PayPal
    paypal_client_id: Optional[str] = Field(default=None, description="PayPal REST client id")
    paypal_client_secret: Optional[str] = Field(default=None, description="PayPal REST client secret")
    paypal_mode: str = Field(default="sandbox", description="sandbox or live")
    paypal_webhook_id: Optional[str] = Field(default=None, description="PayPal webhook id for verification")

    # OpenAI
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    openai_model: str = Field(default="gpt-4", description="Chat model used for consultations")

    # Email
    smtp_host: str = Field(default="smtp.gmail.com", description="SMTP host")
    smtp_port: int = Field(default=587, description="SMTP port (STARTTLS)")
    smtp_user: Optional[str] = Field(default=None, description="SMTP username")
    smtp_password: Optional[str] = Field(default=None, description="SMTP password")
    email_from: str = Field(
        default="CrystalEnergy.com <no-reply@crystalenergy.com>", description="From header on outgoing mail"
    )

    # Timeouts
    provider_timeout_seconds: float = Field(default=20.0, description="Stripe and PayPal call timeout")
    llm_timeout_seconds: float = Field(default=60.0, description="OpenAI call timeout")
    smtp_timeout_seconds: float = Field(default=15.0, description="SMTP connection timeout")

    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def upper_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("frontend_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("paypal_mode")
    @classmethod
    def lower_paypal_mode(cls, v: str) -> str:
        v = v.lower()
        if v not in ("sandbox", "live"):
            raise ValueError("PAYPAL_MODE must be 'sandbox' or 'live'")
        return v

    @property
    def stripe_enabled(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def paypal_enabled(self) -> bool:
        return bool(self.paypal_client_id and self.paypal_client_secret)

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Settings are read from the environment once per process."""
    return Settings()
