"""Application configuration using pydantic-settings."""
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dumpsync.core.errors import ConfigurationError


class TargetDatabase(BaseModel):
    """One target database and the file pattern that feeds it."""

    model_config = {"frozen": True}

    name: str
    file_pattern: str
    url: Optional[str] = None


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    env: str = "local"
    app_name: str = "dumpsync-api"
    log_level: str = "INFO"
    admin_api_key: str = Field("", validation_alias="ADMIN_API_KEY")

    # Master switch + schedule
    import_enabled: bool = Field(False, validation_alias="IMPORT_ENABLED")
    import_schedule: str = Field("0 2 * * *", validation_alias="IMPORT_SCHEDULE")

    # Remote host (SFTP)
    scp_host: str = Field("localhost", validation_alias="IMPORT_SCP_HOST")
    scp_port: int = Field(22, validation_alias="IMPORT_SCP_PORT")
    scp_username: str = Field("", validation_alias="IMPORT_SCP_USERNAME")
    scp_password: str = Field("", validation_alias="IMPORT_SCP_PASSWORD")
    scp_remote_path: str = Field("/data/exports/", validation_alias="IMPORT_SCP_REMOTE_PATH")
    scp_file_patterns: str = Field(
        "mvdsb_*.zip,portal64_bdw_*.zip",
        validation_alias="IMPORT_SCP_FILE_PATTERNS",
    )
    scp_timeout_seconds: float = Field(300, validation_alias="IMPORT_SCP_TIMEOUT")

    # Archives
    zip_password: str = Field("", validation_alias="IMPORT_ZIP_PASSWORD")
    zip_passwords: str = Field("", validation_alias="IMPORT_ZIP_PASSWORDS")  # target=password,...
    zip_extract_timeout_seconds: float = Field(60, validation_alias="IMPORT_ZIP_EXTRACT_TIMEOUT")

    # Target databases
    import_targets: str = Field(
        "mvdsb=mvdsb*,portal64_bdw=portal64_bdw*",
        validation_alias="IMPORT_TARGETS",
    )
    database_url_template: str = Field(
        "sqlite:///./data/{name}.db",
        validation_alias="IMPORT_DATABASE_URL_TEMPLATE",
    )
    database_timeout_seconds: float = Field(600, validation_alias="IMPORT_DATABASE_TIMEOUT")
    max_statement_error_ratio: float = Field(0.1, validation_alias="IMPORT_MAX_STATEMENT_ERROR_RATIO")

    # Storage
    temp_dir: str = Field("./data/import/temp", validation_alias="IMPORT_TEMP_DIR")
    metadata_file: str = Field("./data/import/last_import.json", validation_alias="IMPORT_METADATA_FILE")
    cleanup_on_success: bool = Field(True, validation_alias="IMPORT_CLEANUP_ON_SUCCESS")
    keep_failed_files: bool = Field(True, validation_alias="IMPORT_KEEP_FAILED_FILES")

    # Freshness
    freshness_enabled: bool = Field(True, validation_alias="IMPORT_FRESHNESS_ENABLED")
    freshness_compare_timestamp: bool = Field(True, validation_alias="IMPORT_FRESHNESS_COMPARE_TIMESTAMP")
    freshness_compare_size: bool = Field(True, validation_alias="IMPORT_FRESHNESS_COMPARE_SIZE")
    freshness_compare_checksum: bool = Field(False, validation_alias="IMPORT_FRESHNESS_COMPARE_CHECKSUM")
    freshness_skip_if_not_newer: bool = Field(True, validation_alias="IMPORT_FRESHNESS_SKIP_IF_NOT_NEWER")

    # Retry
    retry_max_attempts: int = Field(2, validation_alias="IMPORT_RETRY_MAX_ATTEMPTS")
    retry_delay_seconds: float = Field(300, validation_alias="IMPORT_RETRY_DELAY")
    retry_max_delay_seconds: float = Field(1800, validation_alias="IMPORT_RETRY_MAX_DELAY")

    log_buffer_size: int = Field(1000, validation_alias="IMPORT_LOG_BUFFER_SIZE")

    @field_validator(
        "scp_timeout_seconds",
        "zip_extract_timeout_seconds",
        "database_timeout_seconds",
        "retry_delay_seconds",
        "retry_max_delay_seconds",
    )
    @classmethod
    def non_negative(cls, v: float) -> float:
        """Timeouts and delays cannot be negative."""
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("retry_max_attempts", "log_buffer_size")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        """Attempt bound and log capacity need at least one slot."""
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @property
    def file_patterns_list(self) -> list[str]:
        """Remote glob patterns as a list."""
        return [p.strip() for p in self.scp_file_patterns.split(",") if p.strip()]

    @property
    def targets(self) -> list[TargetDatabase]:
        """Ordered target list; earlier entries win when patterns overlap."""
        targets: list[TargetDatabase] = []
        seen: set[str] = set()
        for name, pattern in _parse_pairs(self.import_targets, "IMPORT_TARGETS"):
            if name in seen:
                raise ConfigurationError(f"IMPORT_TARGETS: duplicate target '{name}'")
            seen.add(name)
            targets.append(
                TargetDatabase(
                    name=name,
                    file_pattern=pattern,
                    url=self.database_url_template.format(name=name),
                )
            )
        if not targets:
            raise ConfigurationError("IMPORT_TARGETS must name at least one target database")
        return targets

    @property
    def zip_passwords_map(self) -> dict[str, str]:
        """Per-target archive passwords."""
        return dict(_parse_pairs(self.zip_passwords, "IMPORT_ZIP_PASSWORDS"))

    def password_for(self, target: Optional[str]) -> str:
        """Archive password for a target, falling back to IMPORT_ZIP_PASSWORD."""
        if target:
            return self.zip_passwords_map.get(target, self.zip_password)
        return self.zip_password


def _parse_pairs(raw: str, var_name: str) -> list[tuple[str, str]]:
    """Parse 'a=x,b=y' into ordered pairs."""
    pairs: list[tuple[str, str]] = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        name, sep, value = chunk.partition("=")
        name = name.strip()
        value = value.strip()
        if not sep or not name or not value:
            raise ConfigurationError(f"{var_name}: expected 'name=value', got '{chunk}'")
        pairs.append((name, value))
    return pairs


def get_settings() -> Settings:
    """Build settings from the environment."""
    try:
        return Settings()
    except ValidationError as e:
        raise ConfigurationError(f"invalid settings: {e}") from e
