"""
Application configuration.

All settings are loaded from environment variables. No defaults for secrets:
if the encryption key is missing, construction fails with a clear error.

The core never looks settings up on its own: a Settings instance is passed
into the vault, every provider client and the services. Only the process
entry point calls get_settings().

Usage:
    from gtdmail.config import Settings
    settings = Settings()
    vault = CredentialVault(settings, store)
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- Credential encryption ---
    encryption_key: str = Field(description="Secret used to encrypt stored provider credentials")

    # --- Gmail ---
    gmail_client_id: str = Field(default="", description="Google OAuth client ID")
    gmail_client_secret: str = Field(default="", description="Google OAuth client secret")
    gmail_api_base_url: str = Field(default="https://gmail.googleapis.com/gmail/v1/users/me")
    gmail_auth_url: str = Field(default="https://accounts.google.com/o/oauth2/v2/auth")
    gmail_token_url: str = Field(default="https://oauth2.googleapis.com/token")
    gmail_scopes: list[str] = Field(
        default=["https://www.googleapis.com/auth/gmail.readonly"],
    )

    # --- Outlook / Microsoft Graph ---
    outlook_client_id: str = Field(default="", description="Azure AD app registration client ID")
    outlook_client_secret: str = Field(default="", description="Azure AD app registration client secret")
    outlook_graph_base_url: str = Field(default="https://graph.microsoft.com/v1.0")
    outlook_auth_url: str = Field(
        default="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
    )
    outlook_token_url: str = Field(
        default="https://login.microsoftonline.com/common/oauth2/v2.0/token",
    )
    outlook_scopes: list[str] = Field(default=["offline_access", "Mail.Read"])

    # --- Fetching ---
    http_timeout_seconds: float = Field(default=30.0)
    fetch_default_max_results: int = Field(default=50, ge=1)
    fetch_concurrency: int = Field(
        default=8,
        ge=1,
        description="Maximum in-flight message detail requests per REST fetch",
    )
    fetch_timeout_seconds: float = Field(default=60.0, gt=0)
    token_refresh_skew_seconds: int = Field(
        default=0,
        ge=0,
        description="Refresh OAuth tokens this many seconds before they expire",
    )

    # --- IMAP ---
    imap_mailbox: str = Field(default="INBOX")
    imap_chunk_size: int = Field(default=16384, ge=1)
    imap_fetch_page_size: int = Field(
        default=50,
        ge=1,
        description="Messages requested per IMAP FETCH command",
    )

    # --- Classification ---
    rules_config_path: str = Field(default="config/rules.yaml")
    backup_dir: str = Field(default="data/classifications")

    # --- App ---
    app_name: str = Field(default="GTD Mail")
    app_env: Literal["development", "staging", "production"] = Field(default="development")
    log_level: str = Field(default="info")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Settings for the running process. Call only at the entry point."""
    return Settings()
