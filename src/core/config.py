"""Application configuration using pydantic-settings."""
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database (owner-scoped bookmark table)
    database_url: str

    # Redis carries both the push feed and the cross-tab channel.
    # Disabling it leaves the app functional without live updates.
    redis_url: str = "redis://localhost:6379"
    redis_enabled: bool = True

    # Pub/sub channel names
    sync_channel: str = "bookmarks-sync"
    changes_channel_prefix: str = "bookmarks-changes"

    # OAuth broker (login redirect target)
    oauth_broker_url: str = ""
    oauth_provider: str = "google"
    session_cookie_name: str = "bookmarks-session"

    # Development mode - bypasses auth for local development
    dev_mode: bool = False
    dev_user_id: str = "dev-user"
    dev_user_email: str | None = "dev@localhost"

    @property
    def oauth_authorize_url(self) -> str:
        """Authorize endpoint of the OAuth broker, empty when not configured."""
        if not self.oauth_broker_url:
            return ""
        return f"{self.oauth_broker_url.rstrip('/')}/authorize"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
