import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv(".env.config")


COUNTRIES_URL = "https://restcountries.com/v3.1/all?fields=name,capital,region,population,flags,currencies"
COUNTRIES_FALLBACK_URL = "https://restcountries.com/v2/all?fields=name,capital,region,population,flag,currencies"
EXCHANGE_URL = "https://open.er-api.com/v6/latest/USD"


@dataclass
class Settings:
    """Application settings read from the environment (and `.env.config`)."""

    # --- Database ---
    db_type: str = "mysql"
    db_url: Optional[str] = None
    db_user: str = "root"
    db_password: str = ""
    db_host: str = "localhost"
    db_port: str = "3306"
    db_name: str = "countries_db"

    # --- Upstreams ---
    countries_url: str = COUNTRIES_URL
    countries_fallback_url: str = COUNTRIES_FALLBACK_URL
    exchange_url: str = EXCHANGE_URL
    fetch_timeout_seconds: float = 10.0
    fetch_max_attempts: int = 3

    # --- Summary image ---
    artifact_dir: str = "cache"
    dropbox_token: Optional[str] = None
    dropbox_path: str = "/cache/summary.png"

    # --- Logging ---
    log_level: str = "INFO"
    log_file: Optional[str] = None


def load_settings() -> Settings:
    """
    Build a fresh Settings from the current environment.
    Called once per app instance so tests can monkeypatch env vars.
    """
    return Settings(
        db_type=os.getenv("DB_TYPE", "mysql").lower(),
        db_url=os.getenv("DB_URL") or None,
        db_user=os.getenv("DB_USER", "root"),
        db_password=os.getenv("DB_PASSWORD", ""),
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=os.getenv("DB_PORT", "3306"),
        db_name=os.getenv("DB_NAME", "countries_db"),
        countries_url=os.getenv("COUNTRIES_URL", COUNTRIES_URL),
        countries_fallback_url=os.getenv("COUNTRIES_FALLBACK_URL", COUNTRIES_FALLBACK_URL),
        exchange_url=os.getenv("EXCHANGE_URL", EXCHANGE_URL),
        fetch_timeout_seconds=float(os.getenv("FETCH_TIMEOUT_SECONDS", "10")),
        fetch_max_attempts=int(os.getenv("FETCH_MAX_ATTEMPTS", "3")),
        artifact_dir=os.getenv("ARTIFACT_DIR", "cache"),
        dropbox_token=os.getenv("DROPBOX_TOKEN") or None,
        dropbox_path=os.getenv("DROPBOX_PATH", "/cache/summary.png"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_file=os.getenv("LOG_FILE") or None,
    )
