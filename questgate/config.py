import os
from dataclasses import dataclass


# ----------------------------
# Config & Constants
# ----------------------------
DEFAULT_GAME_API_BASE = "http://localhost:8080/api"
DEFAULT_DATABASE_URL = "sqlite:///./questgate.db"

MAX_EXTEND_DAYS = 90  # gamepass_extend.php rejects anything above this


@dataclass(frozen=True)
class Settings:
    game_api_base: str = DEFAULT_GAME_API_BASE
    database_url: str = DEFAULT_DATABASE_URL
    redis_url: str = "redis://127.0.0.1:6379"
    webhook_secret: str = "dev-webhook-secret"
    http_timeout: float = 10.0
    order_ttl_seconds: int = 60 * 60
    environment: str = "development"
    log_level: str = "INFO"
    session_idle_seconds: int = 4 * 60 * 60
    max_sessions: int = 10_000
    # empty disables the operator endpoints
    admin_token: str = ""


def load_settings() -> Settings:
    return Settings(
        game_api_base=os.environ.get(
            "GAME_API_BASE", DEFAULT_GAME_API_BASE
        ).rstrip("/"),
        database_url=os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL),
        redis_url=os.getenv("REDIS_URL", "redis://127.0.0.1:6379"),
        webhook_secret=os.environ.get("WEBHOOK_SECRET", "dev-webhook-secret"),
        http_timeout=float(os.getenv("HTTP_TIMEOUT", "10")),
        order_ttl_seconds=int(os.getenv("ORDER_TTL_SECONDS", "3600")),
        environment=os.getenv("ENVIRONMENT", "development").lower(),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        session_idle_seconds=int(os.getenv("SESSION_IDLE_SECONDS", "14400")),
        max_sessions=int(os.getenv("MAX_SESSIONS", "10000")),
        admin_token=os.environ.get("ADMIN_TOKEN", ""),
    )
