# ABOUTME: Runtime configuration for billsync
# ABOUTME: Reads remote ledger endpoints, OAuth client, and storage location from environment

import logging
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://secure.splitwise.com/api/v3.0"
DEFAULT_OAUTH_BASE = "https://secure.splitwise.com"
DEFAULT_DATA_DIR = Path.home() / ".billsync"


class Settings(BaseSettings):
    """Settings shared by the ledger client, token broker, and syncers."""

    model_config = SettingsConfigDict(
        env_prefix="BILLSYNC_",
        env_ignore_empty=True,
        populate_by_name=True,
        extra="ignore",
    )

    api_base: str = DEFAULT_API_BASE
    oauth_base: str = DEFAULT_OAUTH_BASE
    client_id: str | None = None
    client_secret: str | None = None
    data_dir: Path = DEFAULT_DATA_DIR
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        validation_alias=AliasChoices("BILLSYNC_TIMEOUT", "request_timeout"),
        description="Seconds per remote call",
    )

    # Sync policy
    page_size: int = 100
    max_pages: int = 20
    currency_code: str = "USD"
    details_item_limit: int = 25

    @property
    def can_refresh(self) -> bool:
        """Whether OAuth client credentials are available for token refresh."""
        return bool(self.client_id and self.client_secret)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from BILLSYNC_* environment variables."""
        settings = cls()
        if not settings.can_refresh:
            logger.debug("OAuth client credentials not set; token refresh disabled")
        return settings
