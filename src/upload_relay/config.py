"""Configuration settings for the upload relay."""

import os
import re
from pathlib import Path
from typing import Any, ClassVar

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from upload_relay.exceptions import ConfigurationError

MIB = 1024 * 1024

# S3 rejects non-final parts smaller than this
MIN_PART_SIZE = 5 * MIB

# -----------------------------------------------------------------------------
# Environment Variable Substitution
# -----------------------------------------------------------------------------

ENV_VAR_PATTERN = re.compile(r"\$\{env\.([A-Z_][A-Z0-9_]*)(?::=([^}]*))?\}")


def replace_env_vars(config: Any) -> Any:
    """Recursively replace ${env.VAR:=default} patterns in config.

    Raises:
        ConfigurationError: naming every variable that is required but unset
    """
    missing: list[str] = []

    def substitute(value: Any) -> Any:
        if isinstance(value, dict):
            return {k: substitute(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [substitute(v) for v in value]
        elif isinstance(value, str):

            def replacer(match: re.Match) -> str:
                var_name = match.group(1)
                default = match.group(2)
                env_value = os.environ.get(var_name)
                if env_value is not None:
                    return env_value
                if default is not None:
                    return default
                missing.append(var_name)
                return ""

            return ENV_VAR_PATTERN.sub(replacer, value)
        return value

    resolved = substitute(config)
    if missing:
        raise ConfigurationError(missing)
    return resolved


# -----------------------------------------------------------------------------
# Object Storage
# -----------------------------------------------------------------------------


class StorageConfig(BaseModel):
    """S3-compatible (Cloudflare R2 by default) storage backend."""

    account_id: str | None = Field(default=None, description="R2 account id")
    access_key: str | None = Field(default=None)
    secret_key: str | None = Field(default=None)
    bucket_name: str | None = Field(default=None, description="Target bucket")
    endpoint: str | None = Field(
        default=None,
        description="Custom endpoint URL (MinIO, AWS, ...); derived from account_id if unset",
    )
    region: str = Field(default="auto")

    # env name for each required field, used when reporting what is missing
    REQUIRED_ENV: ClassVar[dict[str, str]] = {
        "account_id": "R2_ACCOUNT_ID",
        "access_key": "R2_ACCESS_KEY",
        "secret_key": "R2_SECRET_KEY",
        "bucket_name": "R2_BUCKET_NAME",
    }

    @property
    def endpoint_url(self) -> str:
        if self.endpoint:
            return self.endpoint
        return f"https://{self.account_id}.r2.cloudflarestorage.com"

    def missing_settings(self) -> list[str]:
        return [
            env_name
            for field_name, env_name in self.REQUIRED_ENV.items()
            if not getattr(self, field_name)
        ]

    @classmethod
    def sample_config(cls) -> dict[str, Any]:
        return {
            "account_id": "${env.R2_ACCOUNT_ID}",
            "access_key": "${env.R2_ACCESS_KEY}",
            "secret_key": "${env.R2_SECRET_KEY}",
            "bucket_name": "${env.R2_BUCKET_NAME}",
            "endpoint": "${env.R2_ENDPOINT:=}",
        }


# -----------------------------------------------------------------------------
# Transfer Tuning
# -----------------------------------------------------------------------------


class TransferConfig(BaseModel):
    """Multipart transfer and retry tuning."""

    part_size_bytes: int = Field(default=5 * MIB, description="Size of each non-final part")
    queue_size: int = Field(default=4, ge=1, description="Parts uploaded concurrently")
    leave_parts_on_error: bool = Field(
        default=False,
        description="Keep server-side parts when a transfer fails",
    )
    max_retries: int = Field(default=2, ge=0)
    retry_delay_seconds: float = Field(default=0.25, ge=0)
    http_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts made by botocore itself below the retry executor",
    )
    completion_grace_seconds: float = Field(
        default=10.0,
        ge=0,
        description="How long a finished transfer stays visible to pollers",
    )
    failure_grace_seconds: float = Field(
        default=0.0,
        ge=0,
        description="How long a failed transfer stays visible (0 deletes it immediately)",
    )

    @field_validator("part_size_bytes")
    @classmethod
    def _check_part_size(cls, value: int) -> int:
        if value < MIN_PART_SIZE:
            raise ValueError(f"part_size_bytes must be at least {MIN_PART_SIZE}")
        return value


# -----------------------------------------------------------------------------
# Server / Logging
# -----------------------------------------------------------------------------


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    staging_dir: Path = Field(
        default=Path("./uploads"),
        description="Where incoming request bodies are staged before relaying",
    )


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)
    log_file: Path | None = Field(
        default=Path("./log.txt"),
        description="Append-only operational log",
    )


# -----------------------------------------------------------------------------
# Main Configuration
# -----------------------------------------------------------------------------


class RelayConfig(BaseModel):
    """Main configuration for the upload relay."""

    version: int = Field(default=1, description="Config schema version")

    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def missing_settings(self) -> list[str]:
        return self.storage.missing_settings()

    def require_complete(self) -> None:
        """Raise ConfigurationError if any required storage setting is absent."""
        missing = self.missing_settings()
        if missing:
            raise ConfigurationError(missing)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RelayConfig":
        """Create config from dict with environment variable substitution."""
        resolved = replace_env_vars(data)
        return cls.model_validate(resolved)

    @classmethod
    def sample_config(cls) -> dict[str, Any]:
        """Generate sample configuration for documentation."""
        return {
            "version": 1,
            "server": {"host": "0.0.0.0", "port": 3000, "staging_dir": "./uploads"},
            "storage": StorageConfig.sample_config(),
            "transfer": {
                "part_size_bytes": 5 * MIB,
                "queue_size": 4,
                "max_retries": 2,
                "retry_delay_seconds": 0.25,
                "completion_grace_seconds": 10,
            },
            "logging": {"level": "INFO", "log_file": "./log.txt"},
        }


# -----------------------------------------------------------------------------
# Settings (environment-based config)
# -----------------------------------------------------------------------------


class StorageSettings(BaseSettings):
    """Storage credentials read from R2_* variables."""

    model_config = SettingsConfigDict(
        env_prefix="R2_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    account_id: str | None = None
    access_key: str | None = None
    secret_key: str | None = None
    bucket_name: str | None = None
    endpoint: str | None = None
    region: str = "auto"


class Settings(BaseSettings):
    """Process settings read from UPLOAD_RELAY_* variables."""

    model_config = SettingsConfigDict(
        env_prefix="UPLOAD_RELAY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Config file path (if using YAML config)
    config_file: Path | None = Field(
        default=None,
        description="Path to YAML configuration file",
    )

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)
    debug: bool = Field(default=False)

    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)
    log_file: Path | None = Field(default=Path("./log.txt"))
    staging_dir: Path = Field(default=Path("./uploads"))

    storage: StorageSettings = Field(default_factory=StorageSettings)

    def to_relay_config(self) -> RelayConfig:
        """Convert environment settings to a full RelayConfig."""
        return RelayConfig(
            server=ServerConfig(
                host=self.host,
                port=self.port,
                staging_dir=self.staging_dir,
            ),
            storage=StorageConfig(**self.storage.model_dump()),
            logging=LoggingConfig(
                level=self.log_level,
                json_logs=self.json_logs,
                log_file=self.log_file,
            ),
        )
