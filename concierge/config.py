import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env from current directory so DB_PATH, ENCRYPTION_KEY etc. are set automatically.
load_dotenv()


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    db_path: str = "./data/concierge.db"
    database_url: Optional[str] = None
    cors_origins: str = "*"
    auth_token: Optional[str] = None
    jwt_secret: Optional[str] = None
    encryption_key: Optional[str] = None

    history_limit: Optional[int] = None
    provider_timeout_seconds: float = 30.0
    tool_timeout_seconds: float = 15.0
    provider_max_retries: int = 2
    provider_retry_base_delay: float = 0.5
    price_table_path: Optional[str] = None
    retrieval_url: Optional[str] = None

    currency: str = "PEN"
    currency_symbol: str = "S/"
    log_level: str = "info"

    service_name: str = "tenant-concierge"
    http_host: str = "0.0.0.0"
    http_port: int = 4280


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Defaults only.

    `get_settings` re-reads the environment on each call so tests can mutate
    os.environ between requests.
    """
    return Settings()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    return float(raw)


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if not raw:
        return default
    return int(raw)


def get_settings() -> Settings:
    """Return Settings built from the *current* environment."""

    base = _base_settings()
    return Settings(
        db_path=os.getenv("DB_PATH") or base.db_path,
        database_url=os.getenv("DATABASE_URL") or None,
        cors_origins=os.getenv("CORS_ORIGINS") or base.cors_origins,
        auth_token=os.getenv("AUTH_TOKEN") or None,
        jwt_secret=os.getenv("JWT_SECRET") or os.getenv("SESSION_SECRET") or None,
        encryption_key=os.getenv("ENCRYPTION_KEY") or None,
        history_limit=_env_int("HISTORY_LIMIT", base.history_limit),
        provider_timeout_seconds=_env_float("PROVIDER_TIMEOUT_SECONDS", base.provider_timeout_seconds),
        tool_timeout_seconds=_env_float("TOOL_TIMEOUT_SECONDS", base.tool_timeout_seconds),
        provider_max_retries=_env_int("PROVIDER_MAX_RETRIES", base.provider_max_retries) or 0,
        provider_retry_base_delay=_env_float("PROVIDER_RETRY_BASE_DELAY", base.provider_retry_base_delay),
        price_table_path=os.getenv("PRICE_TABLE_PATH") or None,
        retrieval_url=os.getenv("RETRIEVAL_URL") or None,
        currency=os.getenv("CURRENCY") or base.currency,
        currency_symbol=os.getenv("CURRENCY_SYMBOL") or base.currency_symbol,
        log_level=(os.getenv("LOG_LEVEL") or base.log_level).lower(),
        service_name=base.service_name,
        http_host=os.getenv("HOST") or base.http_host,
        http_port=_env_int("PORT", base.http_port) or base.http_port,
    )
