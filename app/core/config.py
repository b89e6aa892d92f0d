from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings

# .env lives at the project root: app/core/config.py -> app/core -> app -> root
_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _ROOT / ".env"

PAYSTACK_DEFAULT_BASE_URL = "https://api.paystack.co"


class Settings(BaseSettings):
    secret_key: str = "change-me-in-production"
    database_url: str = "sqlite:///./coursepay.db"
    # Comma separated origin list; "*" in development
    cors_origins: str = "*"
    # Requests per IP per minute
    rate_limit_per_minute: int = 60
    # Callback page refreshes and retries hit verify; kept separate from the global limit
    rate_limit_verify_per_minute: int = 30
    # Paystack: initialize -> redirect -> callback/webhook -> verify
    paystack_secret_key: str = ""
    paystack_base_url: str = PAYSTACK_DEFAULT_BASE_URL
    paystack_timeout_seconds: float = 20.0
    # Frontend base; the gateway redirects to {client_base_url}/payment/callback
    client_base_url: str = "http://127.0.0.1:3000"
    # A VERIFYING row older than this is treated as abandoned by a crashed worker.
    # Must stay above paystack_timeout_seconds.
    verification_lease_seconds: int = 120
    environment: str = "development"

    model_config = {
        "env_file": _ENV_FILE if _ENV_FILE.is_file() else ".env",
        "extra": "ignore",
    }

    @field_validator("paystack_secret_key", mode="before")
    @classmethod
    def strip_paystack_key(cls, v: str | None) -> str:
        """Trailing whitespace from copy/paste breaks the Authorization header."""
        return (v or "").strip()

    @field_validator("paystack_base_url", "client_base_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v: str | None) -> str:
        return (v or "").strip().rstrip("/")


settings = Settings()


def is_paystack_configured() -> bool:
    return bool(settings.paystack_secret_key and settings.paystack_base_url)


def payment_callback_url() -> str:
    base = settings.client_base_url or "http://127.0.0.1:3000"
    return f"{base}/payment/callback"
