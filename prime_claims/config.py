import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv(override=True)


def _env_bool(name: str, default: bool = False) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw_value = os.getenv(name, default)
    return tuple(item.strip() for item in raw_value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = os.getenv("DATABASE_URL", "")
    db_pool_size: int = int(os.getenv("DB_POOL_SIZE", "10"))
    db_connect_timeout_seconds: int = int(os.getenv("DB_CONNECT_TIMEOUT_SECONDS", "10"))
    reservation_ttl_seconds: int = int(os.getenv("RESERVATION_TTL_SECONDS", "3600"))
    abandoned_payment_ttl_seconds: int = int(
        os.getenv("ABANDONED_PAYMENT_TTL_SECONDS", "7200")
    )
    allocation_max_retries: int = int(os.getenv("ALLOCATION_MAX_RETRIES", "5"))
    sweep_interval_seconds: int = int(os.getenv("SWEEP_INTERVAL_SECONDS", "300"))
    oracle_timeout_seconds: int = int(os.getenv("ORACLE_TIMEOUT_SECONDS", "5"))
    http_timeout_seconds: int = int(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))
    enable_bitcoin: bool = _env_bool("ENABLE_BITCOIN", True)
    enable_dogecoin: bool = _env_bool("ENABLE_DOGECOIN", True)
    bitcoin_address_service_url: str = os.getenv("BITCOIN_ADDRESS_SERVICE_URL", "")
    dogecoin_address_service_url: str = os.getenv("DOGECOIN_ADDRESS_SERVICE_URL", "")
    confirmation_email_sender: str = (
        os.getenv("CONFIRMATION_EMAIL_SENDER")
        or os.getenv("GMAIL_SENDER")
        or os.getenv("FROM_EMAIL", "")
    )
    confirmation_email_subject: str = os.getenv(
        "CONFIRMATION_EMAIL_SUBJECT", "You are Prime #{prime}"
    )
    gmail_token_file: str = os.getenv("GMAIL_TOKEN_FILE", "")
    gmail_credentials_file: str = os.getenv(
        "GMAIL_CREDENTIALS_FILE", os.getenv("GOOGLE_SERVICE_ACCOUNT_FILE", "")
    )
    cors_origins: tuple[str, ...] = _env_list("CORS_ORIGINS", "http://localhost:3000")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    def validate(self) -> None:
        problems = []
        if not self.database_url:
            problems.append("DATABASE_URL is not configured")
        if self.reservation_ttl_seconds <= 0:
            problems.append("RESERVATION_TTL_SECONDS must be positive")
        if self.abandoned_payment_ttl_seconds <= 0:
            problems.append("ABANDONED_PAYMENT_TTL_SECONDS must be positive")
        if self.allocation_max_retries < 1:
            problems.append("ALLOCATION_MAX_RETRIES must be at least 1")
        if self.sweep_interval_seconds <= 0:
            problems.append("SWEEP_INTERVAL_SECONDS must be positive")
        if self.enable_bitcoin and not self.bitcoin_address_service_url:
            problems.append("BITCOIN_ADDRESS_SERVICE_URL is required when bitcoin is enabled")
        if self.enable_dogecoin and not self.dogecoin_address_service_url:
            problems.append(
                "DOGECOIN_ADDRESS_SERVICE_URL is required when dogecoin is enabled"
            )
        if problems:
            raise RuntimeError("Invalid configuration: " + "; ".join(problems))


settings = Settings()
