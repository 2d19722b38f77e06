"""Pydantic configuration schema for mailfilter.

Mirrors the structure of config.yaml. The file is validated against these
models when it is loaded.

Usage:
    from mailfilter.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

CURRENT_SCHEMA_VERSION = 1


def _no_traversal(v: str, what: str) -> str:
    if not v or not v.strip():
        raise ValueError(f"{what} cannot be empty")
    if ".." in v:
        raise ValueError(f"{what} cannot contain '..' (path traversal)")
    return v


class AuthConfig(BaseModel):
    """Microsoft identity platform settings."""

    client_id: str = Field(description="Entra ID application (client) ID")
    tenant_id: str = Field(
        default="common",
        description="Directory (tenant) ID or 'common' for personal accounts",
    )
    scopes: list[str] = Field(
        default=[
            "Mail.ReadWrite",
            "MailboxSettings.ReadWrite",
            "User.Read",
        ],
        description="Microsoft Graph permission scopes",
    )
    token_cache_path: str = Field(
        default="data/token_cache.json",
        description="Path to the MSAL token cache file",
    )
    encryption_key_env: str = Field(
        default="TOKEN_ENCRYPTION_KEY",
        description="Environment variable holding a Fernet key for the token cache",
    )

    @field_validator("token_cache_path")
    @classmethod
    def validate_token_cache_path(cls, v: str) -> str:
        return _no_traversal(v, "Token cache path")


class WatcherConfig(BaseModel):
    """Poll scheduling and sync bookkeeping."""

    poll_interval_ms: int = Field(
        default=60_000,
        ge=1_000,
        le=86_400_000,
        description="Delay between poll cycles in milliseconds",
    )
    full_sync_size: int = Field(
        default=20,
        ge=1,
        le=500,
        description="Recent inbox messages fetched when no sync cursor is usable",
    )
    max_processed_ids: int = Field(
        default=10_000,
        ge=100,
        description="Processed message ids retained (oldest evicted first)",
    )
    max_message_attempts: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Failed attempts before a message is abandoned",
    )
    auto_start: bool = Field(
        default=False,
        description="Start the watcher when the HTTP server starts",
    )


class LabelsConfig(BaseModel):
    """Mailbox categories applied for each classification outcome."""

    important: str = Field(default="AI-Important")
    review: str = Field(default="AI-Review")
    junk: str = Field(default="AI-Junk")
    review_destination: str = Field(
        default="archive",
        description="Folder (well-known name or id) REVIEW messages are moved to",
    )

    @model_validator(mode="after")
    def labels_distinct(self) -> "LabelsConfig":
        names = [self.important, self.review, self.junk]
        if len(set(names)) != len(names):
            raise ValueError("labels.important, labels.review and labels.junk must differ")
        return self

    def all(self) -> tuple[str, str, str]:
        return (self.important, self.review, self.junk)


class ClassifierConfig(BaseModel):
    """Claude classification settings."""

    model: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model used for email classification",
    )
    max_tokens: int = Field(default=256, ge=64, le=4096)
    body_preview_chars: int = Field(
        default=1000,
        ge=0,
        le=20_000,
        description="Characters of body text included in the prompt",
    )
    always_important_domains: list[str] = Field(
        default_factory=list,
        description="Sender domains that must always be classified IMPORTANT",
    )

    @field_validator("always_important_domains")
    @classmethod
    def normalize_domains(cls, v: list[str]) -> list[str]:
        return [d.strip().lstrip("@").lower() for d in v if d.strip()]


class StateConfig(BaseModel):
    """Watcher state persistence."""

    db_path: str = Field(default="data/mailfilter.db")

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: str) -> str:
        return _no_traversal(v, "Database path")


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    json_output: bool = Field(
        default=True,
        alias="json",
        description="JSON lines (server) instead of console rendering",
    )

    model_config = {"populate_by_name": True}


class AppConfig(BaseModel):
    """Root configuration schema.

    If validation fails the application exits with the list of field errors.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )
    auth: AuthConfig
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    labels: LabelsConfig = Field(default_factory=LabelsConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
