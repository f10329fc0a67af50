"""Application configuration"""

import base64
import binascii

from pydantic_settings import BaseSettings


def decode_private_key(value: str) -> str:
    """Accept a PEM private key either verbatim or base64-encoded."""
    value = value.strip()
    if value.startswith("-----BEGIN"):
        return value
    try:
        return base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ValueError(f"Unable to decode private key from base64: {e}") from e


class Settings(BaseSettings):
    """Application settings"""

    # Database
    database_url: str = "sqlite:///./issue_relay.db"
    # Upper bound on waiting for a pooled connection or a locked SQLite database.
    database_timeout_seconds: float = 30.0

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    shutdown_grace_seconds: int = 30

    # Hub repository receiving the mirrored issues
    hub_org: str | None = None
    hub_repo: str | None = None

    # GitHub
    github_api_url: str = "https://api.github.com"
    request_timeout_seconds: float = 30.0

    # App installed on the source organizations
    source_app_id: int | None = None
    source_app_private_key: str | None = None
    source_bot_login: str | None = None

    # App installed on the hub organization
    hub_app_id: int | None = None
    hub_app_private_key: str | None = None
    hub_bot_login: str | None = None

    # Installations
    # Comma-separated installation ids that must never be treated as a sync target.
    excluded_installation_ids: str | None = None
    installation_page_size: int = 100
    token_refresh_margin_seconds: int = 300

    # Webhooks
    # When set, X-Hub-Signature-256 is verified on every delivery.
    webhook_secret: str | None = None

    # Intent ledger monitoring
    intent_check_interval_minutes: int = 10
    intent_stale_after_minutes: int = 15

    # Logging
    log_level: str = "INFO"

    # Auth (optional)
    # When enabled, the admin API is protected by HTTP Basic auth.
    # /health and the webhook routes are always reachable.
    auth_enabled: bool = False
    auth_username: str | None = None
    auth_password: str | None = None

    class Config:
        env_file = ".env"
        case_sensitive = False

    def excluded_installation_id_set(self) -> set[int]:
        if not self.excluded_installation_ids:
            return set()
        return {int(part) for part in self.excluded_installation_ids.split(",") if part.strip()}

    def validate_github(self):
        """Fail fast when the relay cannot act on either side."""
        missing = [
            name
            for name in (
                "hub_org",
                "hub_repo",
                "source_app_id",
                "source_app_private_key",
                "source_bot_login",
                "hub_app_id",
                "hub_app_private_key",
                "hub_bot_login",
            )
            if not getattr(self, name)
        ]
        if missing:
            raise RuntimeError(
                "Missing required settings: " + ", ".join(name.upper() for name in missing)
            )


settings = Settings()
