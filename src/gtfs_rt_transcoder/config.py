"""Configuration loading and settings for the GTFS-RT Transcoder."""

from pathlib import Path
from typing import Self

from pydantic import Field, HttpUrl, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gtfs_rt_transcoder.errors import ConfigError
from gtfs_rt_transcoder.fetcher import DEFAULT_CREDENTIAL_HEADER, DEFAULT_TIMEOUT_SECONDS
from gtfs_rt_transcoder.schema import default_schema_path

DEFAULT_ROOT_TYPE = "transit_realtime.FeedMessage"


class Settings(BaseSettings):
    """Service settings loaded from environment variables (and ``.env``)."""

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Upstream feed
    endpoint_url: HttpUrl = Field(
        validation_alias="API_URL",
        description="Upstream GTFS-RT endpoint returning the binary feed",
    )
    credential: str | None = Field(
        default=None,
        min_length=1,
        validation_alias="API_KEY",
        description="Credential sent to the upstream API",
    )
    credential_header: str = Field(
        default=DEFAULT_CREDENTIAL_HEADER,
        min_length=1,
        validation_alias="API_KEY_HEADER",
        description="Request header carrying the credential",
    )
    fetch_timeout_seconds: float = Field(
        default=DEFAULT_TIMEOUT_SECONDS,
        gt=0,
        le=120,
        validation_alias="FETCH_TIMEOUT_SECONDS",
        description="Deadline for one upstream fetch",
    )

    # Secret Manager (alternative credential source)
    credential_secret: str | None = Field(
        default=None,
        pattern=r"^[a-zA-Z0-9_-]+$",
        validation_alias="API_KEY_SECRET",
        description="Secret Manager secret holding the credential",
    )
    gcp_project_id: str | None = Field(
        default=None,
        validation_alias="GCP_PROJECT_ID",
        description="GCP project ID for Secret Manager",
    )

    # Schema and decoding
    schema_path: Path = Field(
        default_factory=default_schema_path,
        validation_alias="SCHEMA_PATH",
        description="Path to the .proto schema describing the feed",
    )
    root_type: str = Field(
        default=DEFAULT_ROOT_TYPE,
        min_length=1,
        validation_alias="ROOT_TYPE",
        description="Message type the payload is decoded as",
    )
    strict_oneof: bool = Field(
        default=False,
        validation_alias="STRICT_ONEOF",
        description="Fail decoding when a oneof receives a second member",
    )

    # Server settings
    port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        validation_alias="PORT",
        description="Port for the HTTP trigger, health and metrics server",
    )

    # Logging settings
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    log_format: str = Field(
        default="json",
        pattern=r"^(json|text)$",
        validation_alias="LOG_FORMAT",
        description="Log output format (json or text)",
    )

    @model_validator(mode="after")
    def validate_credential_source(self) -> Self:
        """Require either a direct credential or a resolvable secret."""
        if self.credential is not None:
            return self
        if self.credential_secret is None:
            raise ValueError("API_KEY or API_KEY_SECRET is required")
        if not self.gcp_project_id:
            raise ValueError("GCP_PROJECT_ID is required when API_KEY_SECRET is set")
        return self


def load_settings(**overrides: object) -> Settings:
    """Load settings from the environment.

    Args:
        **overrides: Values that take precedence over the environment,
            keyed by environment variable name (e.g. ``API_URL``).

    Returns:
        Validated Settings.

    Raises:
        ConfigError: If required values are missing or invalid.
    """
    try:
        return Settings(**overrides)  # type: ignore[arg-type]
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from e
