"""Application settings for Pick a Winner.

Values are read from environment variables (and an optional ``.env`` file)
via pydantic-settings. Use :func:`get_settings` rather than instantiating
:class:`Settings` directly so the parsed configuration is shared.
"""

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_MIN_SESSION_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Runtime configuration, overridable through environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Instagram app credentials. Optional so the API can start without them;
    # the OAuth endpoints report a configuration error instead.
    instagram_client_id: str | None = Field(default=None, description="Instagram app client ID")
    instagram_client_secret: str | None = Field(default=None, description="Instagram app client secret")
    instagram_redirect_uri: str | None = Field(default=None, description="OAuth redirect URI registered with Instagram")

    session_secret: str = Field(
        min_length=_MIN_SESSION_SECRET_LENGTH,
        description="Secret used to sign the session cookie (at least 32 characters)",
    )
    environment: Literal["development", "production"] = Field(default="development")
    log_level: str = Field(default="INFO", description="Log level for the pickawinner loggers")

    graph_api_base_url: str = Field(default="https://graph.instagram.com")
    oauth_authorize_url: str = Field(default="https://www.instagram.com/oauth/authorize")
    oauth_token_url: str = Field(default="https://api.instagram.com/oauth/access_token")

    request_timeout_seconds: float = Field(default=30.0, gt=0)
    max_comment_pages: int = Field(default=50, ge=1, description="Safety ceiling on comment pages per collection")
    comment_page_size: int = Field(default=50, ge=1, le=50)
    username_batch_size: int = Field(default=5, ge=1, description="Concurrent username lookups per batch")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def oauth_configured(self) -> bool:
        """True when every credential needed for the OAuth flow is present."""
        return bool(self.instagram_client_id and self.instagram_client_secret and self.instagram_redirect_uri)


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()  # type: ignore[call-arg]


def configure_logging(settings: Settings) -> None:
    """Apply the configured level to the ``pickawinner`` logger hierarchy.

    Installs a root handler only if none is configured yet (e.g. by uvicorn
    or pytest).
    """
    logging.basicConfig(format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    logging.getLogger("pickawinner").setLevel(settings.log_level.upper())
