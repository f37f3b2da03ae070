import logging
import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Catalog store: memory | sqlite | redis
    store_backend: str = os.getenv("LIBRARY_STORE", "sqlite").lower()
    db_file: str = os.getenv("LIBRARY_DB_FILE", "lending_desk.db")
    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    redis_prefix: str = os.getenv("REDIS_PREFIX", "lending_desk:")
    redis_password: Optional[str] = os.getenv("REDIS_PASSWORD")

    # Seed the demo accounts and books on first start
    seed_demo_data: bool = os.getenv("SEED_DEMO_DATA", "True").lower() in ("true", "1", "yes")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Lending Desk")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    environment: str = os.getenv("ENVIRONMENT", "development")

    # Reports
    default_popular_limit: int = int(os.getenv("DEFAULT_POPULAR_LIMIT", "10"))


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Set up root logging once for the API process or the CLI."""
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
