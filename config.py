import logging
import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    db_timeout: float = float(os.getenv("DB_TIMEOUT", "5"))  # seconds to wait on a locked database
    lock_timeout: float = float(os.getenv("LOCK_TIMEOUT", "5"))  # in-memory store record locks

    # Circulation rules
    loan_quota: int = int(os.getenv("LOAN_QUOTA", "3"))
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "7"))

    # Security settings
    secret_key: str = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")
    jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", os.getenv("JWT_SECRET", secret_key))
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_expiration_minutes: int = int(os.getenv("JWT_EXPIRATION_MINUTES", "10080"))  # 7 days

    # Reporting settings
    report_interval_seconds: float = float(os.getenv("REPORT_INTERVAL_SECONDS", "86400"))
    report_recipient: Optional[str] = os.getenv("LIBRARY_EMAIL")
    enable_reports: bool = _env_flag("ENABLE_REPORTS")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Circulation Service")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Set up root logging once for the CLI and API entry points."""
    name = (level or settings.log_level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
