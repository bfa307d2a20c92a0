import logging
import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Storage
    # None means a per-process file in the temp directory (see database.default_db_file)
    db_file: str | None = os.getenv("LIBRARY_DB_FILE") or os.getenv("LIBRARY_DATA_FILE")

    # Circulation
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    lifecycle_timeout: float = float(os.getenv("LIFECYCLE_TIMEOUT", "5.0"))  # seconds

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Validation
    strict_isbn: bool = _env_flag("STRICT_ISBN")

    # Application
    app_name: str = os.getenv("APP_NAME", "Library API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    debug: bool = _env_flag("DEBUG")
    environment: str = os.getenv("ENVIRONMENT", "development")


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
