import os
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str = ""
    db_timeout: int = 10

    log_level: str = "INFO"
    log_json: bool = False

    jwt_secret: str = ""
    jwt_audience: str = "authenticated"

    min_charge_amount: Decimal = Decimal("10")
    max_charge_amount: Decimal = Decimal("250000")

    provider_connect_timeout: float = 5.0
    provider_read_timeout: float = 25.0
    initiate_max_attempts: int = 3
    initiate_backoff_base: float = 0.5
    initiate_backoff_max: float = 5.0

    callback_lookup_attempts: int = 3
    callback_lookup_delay: float = 0.5

    pending_ttl_seconds: int = 900
    expiry_sweep_interval: int = 60

    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_shortcode: str = ""
    mpesa_passkey: str = ""
    mpesa_callback_url: str = ""
    mpesa_base_url: str = "https://sandbox.safaricom.co.ke"
    mpesa_callback_secret: str = ""
    mpesa_account_reference: str = "BlessPay"

    paystack_secret_key: str = ""
    paystack_webhook_secret: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    paystack_currency: str = "KES"
    paystack_callback_url: str = ""

    @property
    def provider_timeout(self) -> tuple:
        return (self.provider_connect_timeout, self.provider_read_timeout)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", ""),
            db_timeout=int(os.getenv("DB_TIMEOUT", "10")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_json=_env_bool("LOG_JSON"),
            jwt_secret=os.getenv("JWT_SECRET", ""),
            jwt_audience=os.getenv("JWT_AUDIENCE", "authenticated"),
            min_charge_amount=Decimal(os.getenv("MIN_CHARGE_AMOUNT", "10")),
            max_charge_amount=Decimal(os.getenv("MAX_CHARGE_AMOUNT", "250000")),
            provider_connect_timeout=float(os.getenv("PROVIDER_CONNECT_TIMEOUT", "5")),
            provider_read_timeout=float(os.getenv("PROVIDER_READ_TIMEOUT", "25")),
            initiate_max_attempts=int(os.getenv("INITIATE_MAX_ATTEMPTS", "3")),
            initiate_backoff_base=float(os.getenv("INITIATE_BACKOFF_BASE", "0.5")),
            initiate_backoff_max=float(os.getenv("INITIATE_BACKOFF_MAX", "5")),
            callback_lookup_attempts=int(os.getenv("CALLBACK_LOOKUP_ATTEMPTS", "3")),
            callback_lookup_delay=float(os.getenv("CALLBACK_LOOKUP_DELAY", "0.5")),
            pending_ttl_seconds=int(os.getenv("PENDING_TTL_SECONDS", "900")),
            expiry_sweep_interval=int(os.getenv("EXPIRY_SWEEP_INTERVAL", "60")),
            mpesa_consumer_key=os.getenv("MPESA_CONSUMER_KEY", ""),
            mpesa_consumer_secret=os.getenv("MPESA_CONSUMER_SECRET", ""),
            mpesa_shortcode=os.getenv("MPESA_SHORTCODE", ""),
            mpesa_passkey=os.getenv("MPESA_PASSKEY", ""),
            mpesa_callback_url=os.getenv("MPESA_CALLBACK_URL", ""),
            mpesa_base_url=os.getenv("MPESA_BASE_URL", "https://sandbox.safaricom.co.ke"),
            mpesa_callback_secret=os.getenv("MPESA_CALLBACK_SECRET", ""),
            mpesa_account_reference=os.getenv("MPESA_ACCOUNT_REFERENCE", "BlessPay"),
            paystack_secret_key=os.getenv("PAYSTACK_SECRET_KEY", ""),
            # Paystack signs webhooks with the secret key unless told otherwise
            paystack_webhook_secret=(
                os.getenv("PAYSTACK_WEBHOOK_SECRET") or os.getenv("PAYSTACK_SECRET_KEY", "")
            ),
            paystack_base_url=os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co"),
            paystack_currency=os.getenv("PAYSTACK_CURRENCY", "KES"),
            paystack_callback_url=os.getenv("PAYSTACK_CALLBACK_URL", ""),
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()
