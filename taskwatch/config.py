"""Environment configuration for the Taskwatch routines backend."""
from dataclasses import dataclass
from functools import lru_cache
import os

from dotenv import load_dotenv

# Load environment variables but prioritize local development
load_dotenv()


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Runtime settings resolved from the environment."""

    database_url: str = "sqlite:///./taskwatch_routines.db"
    auth_secret: str = "taskwatch-dev-secret"
    environment: str = "development"
    frontend_url: str = "http://localhost:3000"
    dapr_enabled: bool = False
    dapr_pubsub_name: str = "routine-pubsub"
    routine_events_topic: str = "routine-events"
    enable_remote_exceptions: bool = False
    sync_lock_ttl_seconds: int = 120
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        try:
            ttl = int(os.environ.get("SYNC_LOCK_TTL_SECONDS", cls.sync_lock_ttl_seconds))
        except ValueError:
            ttl = cls.sync_lock_ttl_seconds
        return cls(
            database_url=os.environ.get("DATABASE_URL", cls.database_url),
            auth_secret=os.environ.get("AUTH_SECRET", cls.auth_secret),
            environment=os.environ.get("ENVIRONMENT", cls.environment),
            frontend_url=os.environ.get("FRONTEND_URL", cls.frontend_url),
            dapr_enabled=_env_flag("DAPR_ENABLED"),
            dapr_pubsub_name=os.environ.get("DAPR_PUBSUB_NAME", cls.dapr_pubsub_name),
            routine_events_topic=os.environ.get("ROUTINE_EVENTS_TOPIC", cls.routine_events_topic),
            enable_remote_exceptions=_env_flag("ENABLE_REMOTE_EXCEPTIONS"),
            sync_lock_ttl_seconds=max(1, ttl),
            log_level=os.environ.get("LOG_LEVEL", cls.log_level).upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor used by the app and its dependencies."""
    return Settings.from_env()
